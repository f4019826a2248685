from django.db import transaction

from rest_framework import viewsets, status, filters
from rest_framework.decorators import action
from rest_framework.exceptions import PermissionDenied
from rest_framework.response import Response
from django_filters.rest_framework import DjangoFilterBackend

from drf_spectacular.utils import (
    extend_schema, extend_schema_view,
    OpenApiParameter, OpenApiExample, OpenApiResponse
)
import logging

from common.mixins import TenantViewSetMixin
from common.permissions import (
    IsTenantRequest, PlanFeaturePermission, PatientLimitPermission, get_request_entitlements
)
from apps.subscriptions.services import reserve_patient_slot, decrement_patient_count

from .models import PatientProfile
from .serializers import (
    PatientProfileListSerializer,
    PatientProfileDetailSerializer,
    PatientProfileCreateUpdateSerializer,
)

logger = logging.getLogger(__name__)


@extend_schema_view(
    list=extend_schema(
        summary="List patients",
        description="Get the clinic's patients with filtering, search and ordering.",
        parameters=[
            OpenApiParameter(name='status', type=str, description='Filter by status'),
            OpenApiParameter(name='search', type=str, description='Search by name, patient ID, phone or email'),
        ],
        tags=['Patients']
    ),
    retrieve=extend_schema(
        summary="Get patient details",
        description="Retrieve a patient profile with the open invoice balance.",
        tags=['Patients']
    ),
    create=extend_schema(
        summary="Register patient",
        description="Create a patient. Refused with 403 once the plan's patient limit is reached.",
        examples=[
            OpenApiExample(
                'Patient Registration Example',
                value={
                    'first_name': 'John',
                    'last_name': 'Doe',
                    'date_of_birth': '1990-01-15',
                    'mobile_primary': '+15551234567',
                    'email': 'john.doe@example.com',
                },
                request_only=True,
            ),
        ],
        tags=['Patients']
    ),
    update=extend_schema(
        summary="Update patient profile",
        description="Update patient profile information.",
        tags=['Patients']
    ),
    partial_update=extend_schema(
        summary="Partial update patient profile",
        description="Partially update patient profile.",
        tags=['Patients']
    ),
    destroy=extend_schema(
        summary="Deactivate patient profile",
        description="Soft delete - set status to inactive and release the patient slot.",
        tags=['Patients']
    ),
)
class PatientProfileViewSet(TenantViewSetMixin, viewsets.ModelViewSet):
    """
    Patient registry. Active patients count toward the plan's patient limit.
    """
    queryset = PatientProfile.objects.all()
    permission_classes = [IsTenantRequest, PlanFeaturePermission, PatientLimitPermission]
    required_feature = 'patients'

    filter_backends = [DjangoFilterBackend, filters.SearchFilter, filters.OrderingFilter]
    filterset_fields = ['status']
    search_fields = ['patient_id', 'first_name', 'last_name', 'mobile_primary', 'email']
    ordering_fields = ['created_at', 'first_name', 'last_name', 'patient_id']
    ordering = ['-created_at']

    def get_serializer_class(self):
        if self.action == 'list':
            return PatientProfileListSerializer
        elif self.action in ['create', 'update', 'partial_update']:
            return PatientProfileCreateUpdateSerializer
        return PatientProfileDetailSerializer

    def list(self, request, *args, **kwargs):
        qs = self.filter_queryset(self.get_queryset())
        page = self.paginate_queryset(qs)
        if page is not None:
            s = self.get_serializer(page, many=True)
            return self.get_paginated_response(s.data)
        s = self.get_serializer(qs, many=True)
        return Response({'success': True, 'data': s.data})

    def retrieve(self, request, *args, **kwargs):
        s = self.get_serializer(self.get_object())
        return Response({'success': True, 'data': s.data})

    def create(self, request, *args, **kwargs):
        s = self.get_serializer(data=request.data)
        s.is_valid(raise_exception=True)
        with transaction.atomic():
            refused = reserve_patient_slot(request.tenant_id)
            if refused:
                raise PermissionDenied(refused)
            self.perform_create(s)
        logger.info(f"Registered patient {s.instance.patient_id} for tenant {request.tenant_id}")
        return Response(
            {'success': True, 'message': 'Patient registered successfully',
             'data': PatientProfileDetailSerializer(s.instance).data},
            status=status.HTTP_201_CREATED
        )

    def update(self, request, *args, **kwargs):
        partial = kwargs.pop('partial', False)
        s = self.get_serializer(self.get_object(), data=request.data, partial=partial)
        s.is_valid(raise_exception=True)
        patient = s.save()
        return Response({'success': True, 'message': 'Patient profile updated successfully',
                         'data': PatientProfileDetailSerializer(patient).data})

    def destroy(self, request, *args, **kwargs):
        patient = self.get_object()
        if patient.status == 'active':
            with transaction.atomic():
                patient.status = 'inactive'  # soft-delete
                patient.save(update_fields=['status', 'updated_at'])
                decrement_patient_count(request.tenant_id)
        return Response({'success': True, 'message': 'Patient profile deactivated successfully'},
                        status=status.HTTP_204_NO_CONTENT)

    @extend_schema(
        summary="Reactivate patient",
        description="Set an inactive patient back to active. Takes a patient slot, so the plan limit applies.",
        request=None,
        responses={200: PatientProfileDetailSerializer, 403: OpenApiResponse(description="Patient limit reached")},
        tags=['Patients']
    )
    @action(detail=True, methods=['post'])
    def activate(self, request, pk=None):
        patient = self.get_object()
        if patient.status != 'active':
            entitlements = get_request_entitlements(request)
            if not entitlements.can_add_patient:
                raise PermissionDenied(entitlements.patient_limit_message())
            with transaction.atomic():
                refused = reserve_patient_slot(request.tenant_id)
                if refused:
                    raise PermissionDenied(refused)
                patient.status = 'active'
                patient.save(update_fields=['status', 'updated_at'])
        return Response({'success': True, 'message': 'Patient profile activated successfully',
                         'data': PatientProfileDetailSerializer(patient).data})
