from django.db import models
from django.core.validators import MinValueValidator, MaxValueValidator
from django.utils import timezone
from decimal import Decimal
import uuid

from common.mixins import TenantMixin

from . import domain
from . import ledger


class Invoice(TenantMixin):
    """
    Patient invoice.

    The amount columns are a cache of the ledger's derived figures, rewritten
    on every save through ``apply_domain``. They exist for filtering, sorting
    and reporting; the ledger never reads them back.
    """

    STATUS_CHOICES = [
        ('draft', 'Draft'),
        ('sent', 'Sent'),
        ('partial', 'Partially Paid'),
        ('paid', 'Paid'),
        ('overdue', 'Overdue'),
        ('canceled', 'Canceled'),
    ]

    DISCOUNT_TYPE_CHOICES = [
        ('percentage', 'Percentage'),
        ('fixed', 'Fixed Amount'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    invoice_number = models.CharField(
        max_length=50,
        editable=False,
        help_text="Invoice identifier, unique per tenant (e.g., INV20250001)"
    )
    patient = models.ForeignKey(
        'patients.PatientProfile',
        on_delete=models.PROTECT,
        related_name='invoices'
    )

    # Discount
    discount_type = models.CharField(
        max_length=20,
        choices=DISCOUNT_TYPE_CHOICES,
        null=True,
        blank=True
    )
    discount_value = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal('0.00'))]
    )

    # Derived amounts
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    final_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    adjustment_total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    effective_final_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    balance_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))

    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default='draft'
    )
    issued_date = models.DateField()
    due_date = models.DateField(null=True, blank=True)
    notes = models.TextField(blank=True, null=True)

    created_by_id = models.UUIDField(
        null=True,
        blank=True,
        help_text="User ID who created this invoice"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'invoices'
        verbose_name = 'Invoice'
        verbose_name_plural = 'Invoices'
        ordering = ['-issued_date', '-created_at']
        unique_together = ['tenant_id', 'invoice_number']
        indexes = [
            models.Index(fields=['tenant_id', 'status'], name='invoice_tenant_status_idx'),
            models.Index(fields=['patient', 'status'], name='invoice_patient_status_idx'),
            models.Index(fields=['due_date'], name='invoice_due_date_idx'),
        ]

    def __str__(self):
        return f"{self.invoice_number} - {self.get_status_display()}"

    def save(self, *args, **kwargs):
        if not self.invoice_number:
            self.invoice_number = self.generate_invoice_number(self.tenant_id)
        super().save(*args, **kwargs)

    @staticmethod
    def generate_invoice_number(tenant_id):
        """Generate invoice number: INV{year}{seq:04d}, sequential per tenant"""
        year = timezone.now().year
        last_invoice = Invoice.objects.filter(
            tenant_id=tenant_id,
            invoice_number__startswith=f'INV{year}'
        ).order_by('-invoice_number').first()

        num = 1
        if last_invoice:
            try:
                num = int(last_invoice.invoice_number[len(f'INV{year}'):]) + 1
            except ValueError:
                num = 1

        return f'INV{year}{num:04d}'

    # ------------------------------------------------------------------
    # Domain conversion
    # ------------------------------------------------------------------

    def to_domain(self):
        discount = None
        if self.discount_type:
            discount = domain.Discount(
                type=domain.DiscountType(self.discount_type),
                value=self.discount_value or Decimal('0.00'),
            )

        return domain.Invoice(
            id=self.id,
            number=self.invoice_number,
            patient_id=self.patient_id,
            issued_date=self.issued_date,
            due_date=self.due_date,
            status=domain.InvoiceStatus(self.status),
            discount=discount,
            line_items=tuple(item.to_domain() for item in self.items.all()),
            adjustments=tuple(adj.to_domain() for adj in self.adjustments.order_by('created_at')),
            payments=tuple(p.to_domain() for p in self.payments.order_by('created_at')),
        )

    def apply_domain(self, invoice):
        """Copy status and derived figures from a domain invoice."""
        self.status = invoice.status.value
        self.due_date = invoice.due_date
        if invoice.discount is not None:
            self.discount_type = invoice.discount.type.value
            self.discount_value = invoice.discount.value
        else:
            self.discount_type = None
            self.discount_value = None

        self.subtotal = invoice.subtotal
        self.discount_amount = invoice.discount_amount
        self.final_amount = invoice.final_amount
        self.adjustment_total = invoice.adjustment_total
        self.effective_final_amount = invoice.effective_final_amount
        self.paid_amount = invoice.paid_amount
        self.balance_amount = ledger.outstanding_balance(invoice)


class InvoiceItem(models.Model):
    """Invoice line item. Frozen once the invoice leaves draft."""

    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.CASCADE,
        related_name='items'
    )
    treatment_id = models.UUIDField(
        null=True,
        blank=True,
        help_text="Patient treatment this line bills for"
    )
    description = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField(
        default=1,
        validators=[MinValueValidator(1)]
    )
    unit_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.00'))]
    )
    total_price = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Quantity × Unit Price"
    )
    item_order = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = 'invoice_items'
        ordering = ['item_order', 'id']
        verbose_name = 'Invoice Item'
        verbose_name_plural = 'Invoice Items'

    def __str__(self):
        return f"{self.description} - {self.quantity} × {self.unit_price}"

    def save(self, *args, **kwargs):
        self.total_price = Decimal(self.quantity) * self.unit_price
        super().save(*args, **kwargs)

    def to_domain(self):
        return domain.LineItem(
            description=self.description,
            quantity=self.quantity,
            unit_price=self.unit_price,
            treatment_id=self.treatment_id,
        )


class AppendOnlyError(Exception):
    pass


class InvoiceAdjustment(models.Model):
    """
    Adjustment applied to a sent invoice.

    Append-only: rows can be created but never updated or deleted.
    """

    TYPE_CHOICES = [
        ('discount', 'Discount'),
        ('write_off', 'Write-off'),
        ('fee', 'Fee'),
        ('correction', 'Correction'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.PROTECT,
        related_name='adjustments'
    )
    adjustment_type = models.CharField(max_length=20, choices=TYPE_CHOICES)
    amount = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        help_text="Amount as entered; the type decides its sign"
    )
    reason = models.TextField()
    applied_date = models.DateField()

    created_by_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'invoice_adjustments'
        ordering = ['-applied_date', '-created_at']
        verbose_name = 'Invoice Adjustment'
        verbose_name_plural = 'Invoice Adjustments'

    def __str__(self):
        return f"{self.get_adjustment_type_display()} {self.amount} on {self.invoice_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise AppendOnlyError("Invoice adjustments cannot be edited")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise AppendOnlyError("Invoice adjustments cannot be deleted")

    def to_domain(self):
        return domain.Adjustment(
            id=self.id,
            type=domain.AdjustmentType(self.adjustment_type),
            amount=self.amount,
            reason=self.reason,
            applied_date=self.applied_date,
        )

    @classmethod
    def from_domain(cls, invoice_row, adjustment, created_by_id=None):
        return cls(
            id=adjustment.id,
            invoice=invoice_row,
            adjustment_type=adjustment.type.value,
            amount=adjustment.amount,
            reason=adjustment.reason,
            applied_date=adjustment.applied_date,
            created_by_id=created_by_id,
        )


class Payment(models.Model):
    """
    Payment received against an invoice.

    Immutable apart from the one-way transition to refunded; never deleted.
    """

    PAYMENT_METHOD_CHOICES = [
        ('cash', 'Cash'),
        ('card', 'Card'),
        ('bank_transfer', 'Bank Transfer'),
        ('insurance', 'Insurance'),
        ('other', 'Other'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.PROTECT,
        related_name='payments'
    )
    installment = models.ForeignKey(
        'payment_plans.PaymentPlanInstallment',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='payments'
    )
    amount = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))]
    )
    payment_date = models.DateField()
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES)
    reference_number = models.CharField(max_length=100, blank=True, null=True)
    notes = models.TextField(blank=True, null=True)

    # Refund
    is_refunded = models.BooleanField(default=False)
    refund_reason = models.TextField(blank=True, null=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    created_by_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'payments'
        ordering = ['-payment_date', '-created_at']
        verbose_name = 'Payment'
        verbose_name_plural = 'Payments'
        indexes = [
            models.Index(fields=['invoice', 'is_refunded'], name='payment_invoice_refund_idx'),
            models.Index(fields=['payment_date'], name='payment_date_idx'),
        ]

    def __str__(self):
        suffix = ' (refunded)' if self.is_refunded else ''
        return f"{self.amount} via {self.get_payment_method_display()}{suffix}"

    def delete(self, *args, **kwargs):
        raise AppendOnlyError("Payments are refunded, never deleted")

    def to_domain(self):
        return domain.Payment(
            id=self.id,
            amount=self.amount,
            method=domain.PaymentMethod(self.payment_method),
            payment_date=self.payment_date,
            reference=self.reference_number,
            notes=self.notes,
            installment_id=self.installment_id,
            is_refunded=self.is_refunded,
            refund_reason=self.refund_reason,
            refunded_at=self.refunded_at,
        )

    @classmethod
    def from_domain(cls, invoice_row, payment, created_by_id=None):
        return cls(
            id=payment.id,
            invoice=invoice_row,
            installment_id=payment.installment_id,
            amount=payment.amount,
            payment_date=payment.payment_date,
            payment_method=payment.method.value,
            reference_number=payment.reference,
            notes=payment.notes,
            is_refunded=payment.is_refunded,
            refund_reason=payment.refund_reason,
            refunded_at=payment.refunded_at,
            created_by_id=created_by_id,
        )
