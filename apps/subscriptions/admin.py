from django.contrib import admin

from .models import SubscriptionPlan, Organization


@admin.register(SubscriptionPlan)
class SubscriptionPlanAdmin(admin.ModelAdmin):
    list_display = ['name', 'plan_type', 'patient_limit', 'user_limit', 'trial_days', 'is_active']
    list_filter = ['is_active']
    readonly_fields = ['created_at', 'updated_at']


@admin.register(Organization)
class OrganizationAdmin(admin.ModelAdmin):
    list_display = [
        'name', 'tenant_id', 'plan', 'subscription_status',
        'current_patient_count', 'current_user_count', 'last_synced_at'
    ]
    list_filter = ['subscription_status', 'plan']
    search_fields = ['name', 'tenant_id', 'provider_customer_id']
    readonly_fields = ['current_patient_count', 'current_user_count', 'last_synced_at', 'created_at', 'updated_at']

    fieldsets = (
        ('Organization', {
            'fields': ('tenant_id', 'name', 'plan')
        }),
        ('Subscription', {
            'fields': (
                'subscription_status', 'trial_ends_at', 'subscription_end_date',
                'provider_customer_id', 'last_synced_at'
            )
        }),
        ('Usage', {
            'fields': ('current_patient_count', 'current_user_count')
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at')
        }),
    )
