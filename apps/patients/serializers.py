from rest_framework import serializers

from .models import PatientProfile


class PatientProfileListSerializer(serializers.ModelSerializer):
    """Lightweight serializer for patient lists"""
    full_name = serializers.ReadOnlyField()

    class Meta:
        model = PatientProfile
        fields = ['id', 'patient_id', 'full_name', 'mobile_primary', 'email', 'status', 'created_at']


class PatientProfileDetailSerializer(serializers.ModelSerializer):
    full_name = serializers.ReadOnlyField()
    open_balance = serializers.SerializerMethodField()

    class Meta:
        model = PatientProfile
        fields = [
            'id', 'patient_id', 'first_name', 'last_name', 'full_name',
            'date_of_birth', 'mobile_primary', 'email', 'notes', 'status',
            'open_balance', 'created_at', 'updated_at'
        ]

    def get_open_balance(self, obj):
        """Outstanding balance across the patient's open invoices"""
        from apps.billing import money
        from apps.billing.services import OPEN_STATUSES
        balances = obj.invoices.filter(status__in=OPEN_STATUSES).values_list('balance_amount', flat=True)
        return money.format_money(money.money_sum(balances))


class PatientProfileCreateUpdateSerializer(serializers.ModelSerializer):

    class Meta:
        model = PatientProfile
        fields = ['first_name', 'last_name', 'date_of_birth', 'mobile_primary', 'email', 'notes']

    def validate_first_name(self, value):
        if not value.strip():
            raise serializers.ValidationError("First name is required")
        return value.strip()
