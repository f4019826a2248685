from django.utils import timezone

from rest_framework import viewsets, mixins, status, filters
from rest_framework.decorators import action
from rest_framework.response import Response
from django_filters.rest_framework import DjangoFilterBackend

from drf_spectacular.utils import (
    extend_schema, extend_schema_view,
    OpenApiParameter, OpenApiExample, OpenApiResponse
)

from common.mixins import TenantViewSetMixin
from common.permissions import IsTenantRequest, PlanFeaturePermission

from . import services
from .models import Invoice
from .serializers import (
    InvoiceListSerializer,
    InvoiceDetailSerializer,
    InvoiceCreateSerializer,
    LineItemInputSerializer,
    PaymentCreateSerializer,
    PaymentSerializer,
    RefundSerializer,
    AdjustmentCreateSerializer,
    RevenueQuerySerializer,
    AgingQuerySerializer,
    InvoiceListQuerySerializer,
)


@extend_schema_view(
    list=extend_schema(
        summary="List invoices",
        description="Get the tenant's invoices with filtering, search and ordering.",
        parameters=[
            OpenApiParameter(name='status', type=str, description='Filter by status'),
            OpenApiParameter(name='patient', type=int, description='Filter by patient'),
            OpenApiParameter(name='date_from', type=str, description='Issued from date (YYYY-MM-DD)'),
            OpenApiParameter(name='date_to', type=str, description='Issued to date (YYYY-MM-DD)'),
            OpenApiParameter(name='search', type=str, description='Search by invoice number or patient name'),
        ],
        tags=['Invoices']
    ),
    retrieve=extend_schema(
        summary="Get invoice details",
        description="Retrieve an invoice with its items, adjustments, payments and ledger summary.",
        tags=['Invoices']
    ),
    create=extend_schema(
        summary="Create invoice",
        description="Create a draft invoice. Line items can change until the invoice is sent.",
        request=InvoiceCreateSerializer,
        examples=[
            OpenApiExample(
                'Invoice Example',
                value={
                    'patient': 1,
                    'items': [
                        {'description': 'Composite filling', 'quantity': 2, 'unit_price': '120.00'},
                        {'description': 'Panoramic X-ray', 'quantity': 1, 'unit_price': '60.00'},
                    ],
                    'discount_type': 'percentage',
                    'discount_value': '10.00',
                    'due_date': '2025-02-15',
                },
                request_only=True,
            ),
        ],
        tags=['Invoices']
    ),
)
class InvoiceViewSet(TenantViewSetMixin,
                     mixins.ListModelMixin,
                     mixins.RetrieveModelMixin,
                     viewsets.GenericViewSet):
    """
    Invoice ledger: drafts, sending, payments, refunds, adjustments, voids
    and receivables reports. Invoices are never edited or deleted directly;
    every change goes through a ledger action.
    """
    queryset = Invoice.objects.select_related('patient')
    permission_classes = [IsTenantRequest, PlanFeaturePermission]
    required_feature = 'financials'

    filter_backends = [DjangoFilterBackend, filters.SearchFilter, filters.OrderingFilter]
    filterset_fields = ['status', 'patient']
    search_fields = ['invoice_number', 'patient__first_name', 'patient__last_name', 'patient__patient_id']
    ordering_fields = ['issued_date', 'due_date', 'final_amount', 'balance_amount', 'created_at']
    ordering = ['-issued_date', '-created_at']

    def get_serializer_class(self):
        if self.action == 'list':
            return InvoiceListSerializer
        elif self.action == 'create':
            return InvoiceCreateSerializer
        return InvoiceDetailSerializer

    def _detail(self, invoice, message=None, status_code=status.HTTP_200_OK):
        payload = {'success': True, 'data': InvoiceDetailSerializer(invoice).data}
        if message:
            payload['message'] = message
        return Response(payload, status=status_code)

    # ----- standard actions -----
    def list(self, request, *args, **kwargs):
        params = InvoiceListQuerySerializer(data=request.query_params)
        if not params.is_valid():
            return Response({'success': False, 'errors': params.errors}, status=status.HTTP_400_BAD_REQUEST)

        qs = self.filter_queryset(self.get_queryset())
        if params.validated_data.get('date_from'):
            qs = qs.filter(issued_date__gte=params.validated_data['date_from'])
        if params.validated_data.get('date_to'):
            qs = qs.filter(issued_date__lte=params.validated_data['date_to'])
        page = self.paginate_queryset(qs)
        if page is not None:
            s = self.get_serializer(page, many=True)
            return self.get_paginated_response(s.data)
        s = self.get_serializer(qs, many=True)
        return Response({'success': True, 'data': s.data})

    def retrieve(self, request, *args, **kwargs):
        return self._detail(self.get_object())

    def create(self, request, *args, **kwargs):
        s = self.get_serializer(data=request.data, context={'request': request})
        if not s.is_valid():
            return Response({'success': False, 'errors': s.errors}, status=status.HTTP_400_BAD_REQUEST)

        invoice = services.create_invoice(
            tenant_id=request.tenant_id,
            patient=s.validated_data['patient'],
            items=s.line_items(),
            issued_date=s.validated_data.get('issued_date'),
            discount=s.discount(),
            due_date=s.validated_data.get('due_date'),
            notes=s.validated_data.get('notes'),
            created_by_id=request.user_id,
        )
        return self._detail(invoice, 'Invoice created successfully', status.HTTP_201_CREATED)

    # ----- draft editing -----
    @extend_schema(
        summary="Add line item",
        description="Append a line item to a draft invoice.",
        request=LineItemInputSerializer,
        responses={200: InvoiceDetailSerializer, 409: OpenApiResponse(description="Invoice is not a draft")},
        tags=['Invoices']
    )
    @action(detail=True, methods=['post'])
    def items(self, request, pk=None):
        s = LineItemInputSerializer(data=request.data)
        if not s.is_valid():
            return Response({'success': False, 'errors': s.errors}, status=status.HTTP_400_BAD_REQUEST)
        invoice = services.add_line_item(request.tenant_id, pk, s.to_domain())
        return self._detail(invoice, 'Line item added')

    @extend_schema(
        summary="Remove line item",
        description="Remove the line item at a 1-based position from a draft invoice.",
        responses={200: InvoiceDetailSerializer, 404: OpenApiResponse(description="No such line item")},
        tags=['Invoices']
    )
    @action(detail=True, methods=['delete'], url_path=r'items/(?P<position>\d+)')
    def remove_item(self, request, pk=None, position=None):
        invoice = services.remove_line_item(request.tenant_id, pk, int(position) - 1)
        return self._detail(invoice, 'Line item removed')

    # ----- lifecycle -----
    @extend_schema(
        summary="Send invoice",
        description="Issue a draft invoice. Line items are frozen from here on.",
        request=None,
        responses={200: InvoiceDetailSerializer, 409: OpenApiResponse(description="Invoice is not a draft")},
        tags=['Invoices']
    )
    @action(detail=True, methods=['post'])
    def send(self, request, pk=None):
        invoice = services.send_invoice(request.tenant_id, pk)
        return self._detail(invoice, 'Invoice sent')

    @extend_schema(
        summary="Void invoice",
        description="Cancel an invoice that is not yet paid or canceled.",
        request=None,
        responses={200: InvoiceDetailSerializer, 409: OpenApiResponse(description="Invoice already paid or canceled")},
        tags=['Invoices']
    )
    @action(detail=True, methods=['post'])
    def void(self, request, pk=None):
        invoice = services.void_invoice(request.tenant_id, pk)
        return self._detail(invoice, 'Invoice voided')

    # ----- money -----
    @extend_schema(
        methods=['GET'],
        summary="List payments",
        description="Payments recorded against the invoice, refunded ones included.",
        responses={200: PaymentSerializer(many=True)},
        tags=['Payments']
    )
    @extend_schema(
        methods=['POST'],
        summary="Record payment",
        description="Record a payment. The invoice moves to partial or paid as the total allows.",
        request=PaymentCreateSerializer,
        responses={201: InvoiceDetailSerializer, 409: OpenApiResponse(description="Invoice does not accept payments")},
        examples=[OpenApiExample('Payment Example', value={
            'amount': '150.00',
            'payment_method': 'card',
            'reference_number': 'TXN-88213',
        }, request_only=True)],
        tags=['Payments']
    )
    @action(detail=True, methods=['get', 'post'])
    def payments(self, request, pk=None):
        if request.method == 'GET':
            invoice = self.get_object()
            s = PaymentSerializer(invoice.payments.all(), many=True)
            return Response({'success': True, 'data': s.data})

        s = PaymentCreateSerializer(data=request.data)
        if not s.is_valid():
            return Response({'success': False, 'errors': s.errors}, status=status.HTTP_400_BAD_REQUEST)
        invoice, _ = services.record_payment(
            request.tenant_id,
            pk,
            amount=s.validated_data['amount'],
            method=s.validated_data['payment_method'],
            payment_date=s.validated_data.get('payment_date'),
            reference=s.validated_data.get('reference_number'),
            notes=s.validated_data.get('notes'),
            created_by_id=request.user_id,
        )
        return self._detail(invoice, 'Payment recorded', status.HTTP_201_CREATED)

    @extend_schema(
        summary="Refund payment",
        description="Mark a payment refunded. It stays on the invoice for audit but no longer counts as paid.",
        request=RefundSerializer,
        responses={200: InvoiceDetailSerializer, 404: OpenApiResponse(description="Payment not on this invoice")},
        tags=['Payments']
    )
    @action(detail=True, methods=['post'])
    def refund(self, request, pk=None):
        s = RefundSerializer(data=request.data)
        if not s.is_valid():
            return Response({'success': False, 'errors': s.errors}, status=status.HTTP_400_BAD_REQUEST)
        invoice = services.refund_payment(
            request.tenant_id, pk, s.validated_data['payment_id'], s.validated_data['reason']
        )
        return self._detail(invoice, 'Payment refunded')

    @extend_schema(
        summary="Apply adjustment",
        description="Append a discount, write-off, fee or correction to a sent invoice.",
        request=AdjustmentCreateSerializer,
        responses={201: InvoiceDetailSerializer, 409: OpenApiResponse(description="Invoice does not accept adjustments")},
        examples=[OpenApiExample('Write-off Example', value={
            'adjustment_type': 'write_off',
            'amount': '25.00',
            'reason': 'Courtesy write-off approved by the practice owner',
        }, request_only=True)],
        tags=['Invoices']
    )
    @action(detail=True, methods=['post'])
    def adjustments(self, request, pk=None):
        s = AdjustmentCreateSerializer(data=request.data)
        if not s.is_valid():
            return Response({'success': False, 'errors': s.errors}, status=status.HTTP_400_BAD_REQUEST)
        invoice = services.apply_adjustment(
            request.tenant_id,
            pk,
            s.validated_data['adjustment_type'],
            s.validated_data['amount'],
            s.validated_data['reason'],
            applied_date=s.validated_data.get('applied_date'),
            created_by_id=request.user_id,
        )
        return self._detail(invoice, 'Adjustment applied', status.HTTP_201_CREATED)

    # ----- reports -----
    @extend_schema(
        summary="Accounts receivable aging",
        description="Open balances bucketed by days past due.",
        parameters=[OpenApiParameter(name='as_of', type=str, description='Report date (YYYY-MM-DD), default today')],
        responses={200: OpenApiResponse(description="Aging buckets")},
        tags=['Reports']
    )
    @action(detail=False, methods=['get'])
    def aging(self, request):
        s = AgingQuerySerializer(data=request.query_params)
        if not s.is_valid():
            return Response({'success': False, 'errors': s.errors}, status=status.HTTP_400_BAD_REQUEST)
        today = s.validated_data.get('as_of') or timezone.localdate()
        return Response({'success': True, 'data': services.ar_aging_report(request.tenant_id, today)})

    @extend_schema(
        summary="Revenue report",
        description="Billed, collected, refunded and adjusted totals for a date range with a monthly breakdown.",
        parameters=[
            OpenApiParameter(name='start_date', type=str, required=True, description='From date (YYYY-MM-DD)'),
            OpenApiParameter(name='end_date', type=str, required=True, description='To date (YYYY-MM-DD)'),
        ],
        responses={200: OpenApiResponse(description="Revenue totals")},
        tags=['Reports']
    )
    @action(detail=False, methods=['get'])
    def revenue(self, request):
        s = RevenueQuerySerializer(data=request.query_params)
        if not s.is_valid():
            return Response({'success': False, 'errors': s.errors}, status=status.HTTP_400_BAD_REQUEST)
        report = services.revenue_report(
            request.tenant_id, s.validated_data['start_date'], s.validated_data['end_date']
        )
        return Response({'success': True, 'data': report})
