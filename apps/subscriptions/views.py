from rest_framework import viewsets
from rest_framework.response import Response
from rest_framework.views import APIView

from drf_spectacular.utils import extend_schema, extend_schema_view, OpenApiResponse

from common.permissions import IsTenantRequest, get_request_entitlements

from . import services
from .serializers import SubscriptionPlanSerializer, OrganizationSerializer


class SubscriptionContextView(APIView):
    """
    Everything the client needs to gate its UI: plan, status, features,
    limits and current usage for the caller's organization.
    """
    permission_classes = [IsTenantRequest]

    @extend_schema(
        summary="Get subscription context",
        description="Resolved plan features, limits, usage and subscription status for the current tenant.",
        responses={200: OpenApiResponse(description="Subscription context")},
        tags=['Subscriptions']
    )
    def get(self, request):
        organization = services.get_organization(request.tenant_id)
        data = get_request_entitlements(request).as_dict()
        data['organization'] = OrganizationSerializer(organization).data if organization else None
        return Response({'success': True, 'data': data})


@extend_schema_view(
    list=extend_schema(
        summary="List subscription plans",
        description="Active plan tiers with their limits and features.",
        tags=['Subscriptions']
    ),
    retrieve=extend_schema(
        summary="Get subscription plan",
        description="Retrieve one plan tier.",
        tags=['Subscriptions']
    ),
)
class SubscriptionPlanViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = SubscriptionPlanSerializer
    permission_classes = [IsTenantRequest]
    pagination_class = None

    def get_queryset(self):
        return services.get_active_plans()

    def list(self, request, *args, **kwargs):
        s = self.get_serializer(self.get_queryset(), many=True)
        return Response({'success': True, 'data': s.data})

    def retrieve(self, request, *args, **kwargs):
        return Response({'success': True, 'data': self.get_serializer(self.get_object()).data})
