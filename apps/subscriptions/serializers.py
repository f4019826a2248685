from rest_framework import serializers

from .models import SubscriptionPlan, Organization


class SubscriptionPlanSerializer(serializers.ModelSerializer):
    """Plan tier with its limits and feature map"""
    features = serializers.ReadOnlyField()

    class Meta:
        model = SubscriptionPlan
        fields = ['id', 'plan_type', 'name', 'patient_limit', 'user_limit', 'trial_days', 'features']


class OrganizationSerializer(serializers.ModelSerializer):
    plan_type = serializers.CharField(source='plan.plan_type', read_only=True, allow_null=True)

    class Meta:
        model = Organization
        fields = [
            'id', 'tenant_id', 'name', 'plan_type', 'subscription_status',
            'trial_ends_at', 'subscription_end_date', 'last_synced_at'
        ]
