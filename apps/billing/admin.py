from django.contrib import admin
from django.utils.html import format_html

from .models import Invoice, InvoiceItem, InvoiceAdjustment, Payment


class InvoiceItemInline(admin.TabularInline):
    model = InvoiceItem
    extra = 0
    fields = ['item_order', 'description', 'quantity', 'unit_price', 'total_price', 'treatment_id']
    readonly_fields = fields
    can_delete = False


class InvoiceAdjustmentInline(admin.TabularInline):
    """Adjustments are append-only; the admin only shows them"""
    model = InvoiceAdjustment
    extra = 0
    fields = ['adjustment_type', 'amount', 'reason', 'applied_date', 'created_by_id', 'created_at']
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


class PaymentInline(admin.TabularInline):
    model = Payment
    fk_name = 'invoice'
    extra = 0
    fields = [
        'amount', 'payment_date', 'payment_method', 'reference_number',
        'is_refunded', 'refund_reason', 'refunded_at'
    ]
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    """
    Read-mostly view of the ledger. Amounts and status only change through
    the billing services, so nothing derived is editable here.
    """
    list_display = [
        'invoice_number',
        'patient',
        'status_badge',
        'final_amount',
        'effective_final_amount',
        'paid_amount',
        'balance_amount',
        'issued_date',
        'due_date',
    ]
    list_filter = ['status', 'issued_date', 'due_date']
    search_fields = ['invoice_number', 'patient__first_name', 'patient__last_name', 'patient__patient_id']
    readonly_fields = [
        'tenant_id', 'invoice_number', 'patient', 'status',
        'discount_type', 'discount_value',
        'subtotal', 'discount_amount', 'final_amount', 'adjustment_total',
        'effective_final_amount', 'paid_amount', 'balance_amount',
        'issued_date', 'created_by_id', 'created_at', 'updated_at'
    ]
    inlines = [InvoiceItemInline, InvoiceAdjustmentInline, PaymentInline]
    date_hierarchy = 'issued_date'

    fieldsets = (
        ('Invoice', {
            'fields': ('tenant_id', 'invoice_number', 'patient', 'status', 'issued_date', 'due_date', 'notes')
        }),
        ('Discount', {
            'fields': ('discount_type', 'discount_value')
        }),
        ('Amounts', {
            'fields': (
                'subtotal', 'discount_amount', 'final_amount', 'adjustment_total',
                'effective_final_amount', 'paid_amount', 'balance_amount'
            )
        }),
        ('Audit', {
            'fields': ('created_by_id', 'created_at', 'updated_at')
        }),
    )

    def has_delete_permission(self, request, obj=None):
        return False

    def status_badge(self, obj):
        """Colorful status representation"""
        color_map = {
            'draft': 'gray',
            'sent': 'blue',
            'partial': 'orange',
            'paid': 'green',
            'overdue': 'red',
            'canceled': 'black',
        }
        return format_html(
            '<span style="color:{}; font-weight:bold;">{}</span>',
            color_map.get(obj.status, 'gray'),
            obj.get_status_display()
        )
    status_badge.short_description = 'Status'


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ['invoice', 'amount', 'payment_method', 'payment_date', 'is_refunded', 'created_at']
    list_filter = ['payment_method', 'is_refunded', 'payment_date']
    search_fields = ['invoice__invoice_number', 'reference_number']
    readonly_fields = [
        'invoice', 'installment', 'amount', 'payment_date', 'payment_method',
        'reference_number', 'notes', 'is_refunded', 'refund_reason', 'refunded_at',
        'created_by_id', 'created_at'
    ]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
