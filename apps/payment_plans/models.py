from django.db import models
from django.core.validators import MinValueValidator
from decimal import Decimal
import uuid

from common.mixins import TenantMixin

from . import schedule


class PaymentPlan(TenantMixin):
    """
    Installment plan financing an invoice's outstanding balance.

    Installments are generated once at creation and never regenerated;
    changing the terms means canceling and creating a new plan.
    """

    FREQUENCY_CHOICES = [
        ('weekly', 'Weekly'),
        ('biweekly', 'Every Two Weeks'),
        ('monthly', 'Monthly'),
    ]

    STATUS_CHOICES = [
        ('active', 'Active'),
        ('completed', 'Completed'),
        ('canceled', 'Canceled'),
        ('defaulted', 'Defaulted'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    invoice = models.ForeignKey(
        'billing.Invoice',
        on_delete=models.PROTECT,
        related_name='payment_plans'
    )
    patient = models.ForeignKey(
        'patients.PatientProfile',
        on_delete=models.PROTECT,
        related_name='payment_plans'
    )
    total_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))]
    )
    down_payment = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal('0.00'),
        validators=[MinValueValidator(Decimal('0.00'))]
    )
    installment_count = models.PositiveIntegerField(
        validators=[MinValueValidator(schedule.MIN_INSTALLMENTS)]
    )
    frequency = models.CharField(max_length=20, choices=FREQUENCY_CHOICES)
    start_date = models.DateField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='active')
    notes = models.TextField(blank=True, null=True)

    created_by_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'payment_plans'
        verbose_name = 'Payment Plan'
        verbose_name_plural = 'Payment Plans'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['tenant_id', 'status'], name='plan_tenant_status_idx'),
            models.Index(fields=['invoice', 'status'], name='plan_invoice_status_idx'),
        ]

    def __str__(self):
        return f"Plan {self.total_amount} x{self.installment_count} ({self.get_status_display()})"

    def to_domain(self):
        return schedule.PaymentPlan(
            total_amount=self.total_amount,
            down_payment=self.down_payment,
            installment_count=self.installment_count,
            frequency=schedule.Frequency(self.frequency),
            start_date=self.start_date,
            status=schedule.PlanStatus(self.status),
            installments=tuple(i.to_domain() for i in self.installments.all()),
        )


class PaymentPlanInstallment(models.Model):
    """One scheduled installment of a payment plan."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    payment_plan = models.ForeignKey(
        PaymentPlan,
        on_delete=models.CASCADE,
        related_name='installments'
    )
    installment_number = models.PositiveIntegerField()
    due_date = models.DateField()
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    is_paid = models.BooleanField(default=False)
    paid_date = models.DateField(null=True, blank=True)

    class Meta:
        db_table = 'payment_plan_installments'
        verbose_name = 'Payment Plan Installment'
        verbose_name_plural = 'Payment Plan Installments'
        ordering = ['installment_number']
        unique_together = ['payment_plan', 'installment_number']

    def __str__(self):
        return f"#{self.installment_number} {self.amount} due {self.due_date}"

    def to_domain(self):
        return schedule.Installment(
            number=self.installment_number,
            due_date=self.due_date,
            amount=self.amount,
            paid_amount=self.paid_amount,
            is_paid=self.is_paid,
            paid_date=self.paid_date,
        )

    def apply_domain(self, installment):
        self.paid_amount = installment.paid_amount
        self.is_paid = installment.is_paid
        self.paid_date = installment.paid_date
