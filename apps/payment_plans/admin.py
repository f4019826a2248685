from django.contrib import admin

from .models import PaymentPlan, PaymentPlanInstallment


class PaymentPlanInstallmentInline(admin.TabularInline):
    model = PaymentPlanInstallment
    extra = 0
    fields = ['installment_number', 'due_date', 'amount', 'paid_amount', 'is_paid', 'paid_date']
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(PaymentPlan)
class PaymentPlanAdmin(admin.ModelAdmin):
    list_display = [
        'id', 'invoice', 'patient', 'total_amount', 'down_payment',
        'installment_count', 'frequency', 'status', 'start_date'
    ]
    list_filter = ['status', 'frequency', 'start_date']
    search_fields = ['invoice__invoice_number', 'patient__first_name', 'patient__last_name']
    readonly_fields = [
        'tenant_id', 'invoice', 'patient', 'total_amount', 'down_payment',
        'installment_count', 'frequency', 'start_date', 'status',
        'created_by_id', 'created_at', 'updated_at'
    ]
    inlines = [PaymentPlanInstallmentInline]

    def has_delete_permission(self, request, obj=None):
        return False
