from rest_framework import serializers

from apps.patients.models import PatientProfile

from . import domain, ledger
from .models import Invoice, InvoiceItem, InvoiceAdjustment, Payment


class InvoiceItemSerializer(serializers.ModelSerializer):

    class Meta:
        model = InvoiceItem
        fields = ['id', 'description', 'quantity', 'unit_price', 'total_price', 'treatment_id', 'item_order']
        read_only_fields = fields


class InvoiceAdjustmentSerializer(serializers.ModelSerializer):
    """Adjustment with its signed effect on the amount owed"""
    effect = serializers.SerializerMethodField()

    class Meta:
        model = InvoiceAdjustment
        fields = ['id', 'adjustment_type', 'amount', 'effect', 'reason', 'applied_date', 'created_by_id', 'created_at']
        read_only_fields = fields

    def get_effect(self, obj):
        return f"{obj.to_domain().effect:.2f}"


class PaymentSerializer(serializers.ModelSerializer):

    class Meta:
        model = Payment
        fields = [
            'id', 'amount', 'payment_date', 'payment_method', 'reference_number', 'notes',
            'installment', 'is_refunded', 'refund_reason', 'refunded_at', 'created_at'
        ]
        read_only_fields = fields


class InvoiceListSerializer(serializers.ModelSerializer):
    """Lightweight serializer for invoice lists"""
    patient_name = serializers.CharField(source='patient.full_name', read_only=True)

    class Meta:
        model = Invoice
        fields = [
            'id', 'invoice_number', 'patient', 'patient_name', 'status',
            'final_amount', 'effective_final_amount', 'paid_amount', 'balance_amount',
            'issued_date', 'due_date', 'created_at'
        ]


class InvoiceDetailSerializer(serializers.ModelSerializer):
    """Invoice with items, adjustment and payment logs and the ledger summary"""
    patient_name = serializers.CharField(source='patient.full_name', read_only=True)
    items = InvoiceItemSerializer(many=True, read_only=True)
    adjustments = InvoiceAdjustmentSerializer(many=True, read_only=True)
    payments = PaymentSerializer(many=True, read_only=True)
    summary = serializers.SerializerMethodField()

    class Meta:
        model = Invoice
        fields = [
            'id', 'invoice_number', 'patient', 'patient_name', 'status',
            'discount_type', 'discount_value', 'summary',
            'issued_date', 'due_date', 'notes',
            'items', 'adjustments', 'payments',
            'created_by_id', 'created_at', 'updated_at'
        ]

    def get_summary(self, obj):
        return ledger.ledger_summary(obj.to_domain())


class LineItemInputSerializer(serializers.Serializer):
    description = serializers.CharField(max_length=255)
    quantity = serializers.IntegerField(min_value=1)
    unit_price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0)
    treatment_id = serializers.UUIDField(required=False, allow_null=True)

    def to_domain(self, data=None):
        data = data if data is not None else self.validated_data
        return domain.LineItem(
            description=data['description'],
            quantity=data['quantity'],
            unit_price=data['unit_price'],
            treatment_id=data.get('treatment_id'),
        )


class InvoiceCreateSerializer(serializers.Serializer):
    """Create a draft invoice for one of the tenant's patients"""
    patient = serializers.PrimaryKeyRelatedField(queryset=PatientProfile.objects.none())
    items = LineItemInputSerializer(many=True)
    discount_type = serializers.ChoiceField(choices=Invoice.DISCOUNT_TYPE_CHOICES, required=False, allow_null=True)
    discount_value = serializers.DecimalField(max_digits=10, decimal_places=2, required=False, allow_null=True)
    issued_date = serializers.DateField(required=False)
    due_date = serializers.DateField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        request = self.context.get('request')
        tenant_id = getattr(request, 'tenant_id', None)
        if tenant_id:
            self.fields['patient'].queryset = PatientProfile.objects.filter(tenant_id=tenant_id)

    def validate(self, attrs):
        discount_type = attrs.get('discount_type')
        discount_value = attrs.get('discount_value')
        if bool(discount_type) != (discount_value is not None):
            raise serializers.ValidationError({
                'discount_value': 'discount_type and discount_value must be given together'
            })
        return attrs

    def line_items(self):
        return [LineItemInputSerializer().to_domain(item) for item in self.validated_data['items']]

    def discount(self):
        discount_type = self.validated_data.get('discount_type')
        if not discount_type:
            return None
        return domain.Discount(
            type=domain.DiscountType(discount_type),
            value=self.validated_data['discount_value'],
        )


class PaymentCreateSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=10, decimal_places=2)
    payment_method = serializers.ChoiceField(choices=Payment.PAYMENT_METHOD_CHOICES)
    payment_date = serializers.DateField(required=False)
    reference_number = serializers.CharField(max_length=100, required=False, allow_blank=True, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class RefundSerializer(serializers.Serializer):
    payment_id = serializers.UUIDField()
    reason = serializers.CharField()


class AdjustmentCreateSerializer(serializers.Serializer):
    """Amounts are entered positive; only corrections may be negative"""
    adjustment_type = serializers.ChoiceField(choices=InvoiceAdjustment.TYPE_CHOICES)
    amount = serializers.DecimalField(max_digits=10, decimal_places=2)
    reason = serializers.CharField()
    applied_date = serializers.DateField(required=False)


class RevenueQuerySerializer(serializers.Serializer):
    start_date = serializers.DateField()
    end_date = serializers.DateField()


class AgingQuerySerializer(serializers.Serializer):
    as_of = serializers.DateField(required=False)


class InvoiceListQuerySerializer(serializers.Serializer):
    date_from = serializers.DateField(required=False)
    date_to = serializers.DateField(required=False)
