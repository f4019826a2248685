from rest_framework import viewsets, mixins, status, filters
from rest_framework.decorators import action
from rest_framework.response import Response
from django_filters.rest_framework import DjangoFilterBackend

from drf_spectacular.utils import (
    extend_schema, extend_schema_view,
    OpenApiExample, OpenApiResponse
)

from common.mixins import TenantViewSetMixin
from common.permissions import IsTenantRequest, PlanFeaturePermission

from . import services
from .models import PaymentPlan
from .serializers import (
    PaymentPlanListSerializer,
    PaymentPlanDetailSerializer,
    PaymentPlanCreateSerializer,
    InstallmentPaymentSerializer,
)


@extend_schema_view(
    list=extend_schema(
        summary="List payment plans",
        description="Get the tenant's payment plans, filterable by status, invoice and patient.",
        tags=['Payment Plans']
    ),
    retrieve=extend_schema(
        summary="Get payment plan",
        description="Retrieve a plan with its installment schedule and collection progress.",
        tags=['Payment Plans']
    ),
    create=extend_schema(
        summary="Create payment plan",
        description=(
            "Finance an invoice's outstanding balance in installments. "
            "The schedule is fixed at creation; to change terms, cancel and create a new plan."
        ),
        request=PaymentPlanCreateSerializer,
        examples=[
            OpenApiExample(
                'Monthly Plan Example',
                value={
                    'invoice': '6f1c2a4e-3b5d-4c8e-9f0a-1b2c3d4e5f60',
                    'installment_count': 6,
                    'frequency': 'monthly',
                    'start_date': '2025-03-01',
                    'down_payment': '200.00',
                    'down_payment_method': 'card',
                },
                request_only=True,
            ),
        ],
        tags=['Payment Plans']
    ),
)
class PaymentPlanViewSet(TenantViewSetMixin,
                         mixins.ListModelMixin,
                         mixins.RetrieveModelMixin,
                         viewsets.GenericViewSet):
    """Installment plans over invoice balances"""
    queryset = PaymentPlan.objects.select_related('invoice', 'patient').prefetch_related('installments')
    permission_classes = [IsTenantRequest, PlanFeaturePermission]
    required_feature = 'financials'

    filter_backends = [DjangoFilterBackend, filters.OrderingFilter]
    filterset_fields = ['status', 'invoice', 'patient', 'frequency']
    ordering_fields = ['created_at', 'start_date', 'total_amount']
    ordering = ['-created_at']

    def get_serializer_class(self):
        if self.action == 'list':
            return PaymentPlanListSerializer
        elif self.action == 'create':
            return PaymentPlanCreateSerializer
        return PaymentPlanDetailSerializer

    def _detail(self, plan, message=None, status_code=status.HTTP_200_OK):
        payload = {'success': True, 'data': PaymentPlanDetailSerializer(plan).data}
        if message:
            payload['message'] = message
        return Response(payload, status=status_code)

    def list(self, request, *args, **kwargs):
        qs = self.filter_queryset(self.get_queryset())
        page = self.paginate_queryset(qs)
        if page is not None:
            s = self.get_serializer(page, many=True)
            return self.get_paginated_response(s.data)
        s = self.get_serializer(qs, many=True)
        return Response({'success': True, 'data': s.data})

    def retrieve(self, request, *args, **kwargs):
        return self._detail(self.get_object())

    def create(self, request, *args, **kwargs):
        s = self.get_serializer(data=request.data)
        if not s.is_valid():
            return Response({'success': False, 'errors': s.errors}, status=status.HTTP_400_BAD_REQUEST)

        data = s.validated_data
        plan = services.create_payment_plan(
            tenant_id=request.tenant_id,
            invoice_id=data['invoice'],
            installment_count=data['installment_count'],
            frequency=data['frequency'],
            start_date=data.get('start_date'),
            down_payment=data.get('down_payment') or 0,
            down_payment_method=data.get('down_payment_method'),
            notes=data.get('notes'),
            created_by_id=request.user_id,
        )
        return self._detail(plan, 'Payment plan created successfully', status.HTTP_201_CREATED)

    @extend_schema(
        summary="Pay installment",
        description="Pay one installment. The same amount is recorded as a payment on the plan's invoice.",
        request=InstallmentPaymentSerializer,
        responses={
            200: PaymentPlanDetailSerializer,
            404: OpenApiResponse(description="No such installment"),
            409: OpenApiResponse(description="Plan not active or installment already paid"),
        },
        examples=[OpenApiExample('Installment Payment Example', value={
            'installment_number': 1,
            'amount': '133.34',
            'payment_method': 'cash',
        }, request_only=True)],
        tags=['Payment Plans']
    )
    @action(detail=True, methods=['post'])
    def pay(self, request, pk=None):
        s = InstallmentPaymentSerializer(data=request.data)
        if not s.is_valid():
            return Response({'success': False, 'errors': s.errors}, status=status.HTTP_400_BAD_REQUEST)
        plan = services.pay_installment(
            request.tenant_id,
            pk,
            s.validated_data['installment_number'],
            s.validated_data['amount'],
            s.validated_data['payment_method'],
            payment_date=s.validated_data.get('payment_date'),
            reference=s.validated_data.get('reference_number'),
            created_by_id=request.user_id,
        )
        return self._detail(plan, 'Installment payment recorded')

    @extend_schema(
        summary="Mark plan defaulted",
        description="Operator-triggered default of an active plan.",
        request=None,
        responses={200: PaymentPlanDetailSerializer, 409: OpenApiResponse(description="Plan completed or canceled")},
        tags=['Payment Plans']
    )
    @action(detail=True, methods=['post'])
    def default(self, request, pk=None):
        plan = services.mark_plan_defaulted(request.tenant_id, pk)
        return self._detail(plan, 'Payment plan marked defaulted')

    @extend_schema(
        summary="Cancel plan",
        description="Cancel an active or defaulted plan. Payments already taken stay on the invoice.",
        request=None,
        responses={200: PaymentPlanDetailSerializer, 409: OpenApiResponse(description="Plan completed or canceled")},
        tags=['Payment Plans']
    )
    @action(detail=True, methods=['post'])
    def cancel(self, request, pk=None):
        plan = services.cancel_payment_plan(request.tenant_id, pk)
        return self._detail(plan, 'Payment plan canceled')
