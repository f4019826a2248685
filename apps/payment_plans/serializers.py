from rest_framework import serializers

from apps.billing.models import Payment

from .models import PaymentPlan, PaymentPlanInstallment
from .services import plan_progress


class PaymentPlanInstallmentSerializer(serializers.ModelSerializer):

    class Meta:
        model = PaymentPlanInstallment
        fields = ['id', 'installment_number', 'due_date', 'amount', 'paid_amount', 'is_paid', 'paid_date']
        read_only_fields = fields


class PaymentPlanListSerializer(serializers.ModelSerializer):
    invoice_number = serializers.CharField(source='invoice.invoice_number', read_only=True)
    patient_name = serializers.CharField(source='patient.full_name', read_only=True)

    class Meta:
        model = PaymentPlan
        fields = [
            'id', 'invoice', 'invoice_number', 'patient', 'patient_name',
            'total_amount', 'down_payment', 'installment_count', 'frequency',
            'start_date', 'status', 'created_at'
        ]


class PaymentPlanDetailSerializer(PaymentPlanListSerializer):
    """Plan with its schedule and collection progress"""
    installments = PaymentPlanInstallmentSerializer(many=True, read_only=True)
    progress = serializers.SerializerMethodField()

    class Meta(PaymentPlanListSerializer.Meta):
        fields = PaymentPlanListSerializer.Meta.fields + ['notes', 'installments', 'progress', 'updated_at']

    def get_progress(self, obj):
        return plan_progress(obj)


class PaymentPlanCreateSerializer(serializers.Serializer):
    """Finance an invoice's outstanding balance"""
    invoice = serializers.UUIDField()
    installment_count = serializers.IntegerField(min_value=2)
    frequency = serializers.ChoiceField(choices=PaymentPlan.FREQUENCY_CHOICES)
    start_date = serializers.DateField(required=False)
    down_payment = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, min_value=0)
    down_payment_method = serializers.ChoiceField(
        choices=Payment.PAYMENT_METHOD_CHOICES,
        required=False,
        allow_null=True,
        help_text="Record the down payment on the invoice with this method"
    )
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class InstallmentPaymentSerializer(serializers.Serializer):
    installment_number = serializers.IntegerField()
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    payment_method = serializers.ChoiceField(choices=Payment.PAYMENT_METHOD_CHOICES)
    payment_date = serializers.DateField(required=False)
    reference_number = serializers.CharField(max_length=100, required=False, allow_blank=True, allow_null=True)
