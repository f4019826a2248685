"""
Invoice persistence and host operations.

Each public operation runs in one transaction: lock the invoice row, convert
it to a domain value, apply the pure ledger function, write the result back.
The row lock serializes concurrent payments against the same invoice.
"""

from datetime import date
from decimal import Decimal

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import Count, Sum
from django.db.models.functions import TruncMonth
from django.utils import timezone
import logging

from common.exceptions import InvalidStateError, NotFoundError, ValidationError

from . import domain, ledger, money
from .models import Invoice, InvoiceAdjustment, InvoiceItem, Payment

logger = logging.getLogger(__name__)

OPEN_STATUSES = ['sent', 'partial', 'overdue']


# -------------------------------------------------------------------
# Persistence collaborator
# -------------------------------------------------------------------

def get_invoice(tenant_id, invoice_id, for_update=False):
    """Load one tenant invoice or raise NotFoundError."""
    queryset = Invoice.objects.filter(tenant_id=tenant_id)
    if for_update:
        queryset = queryset.select_for_update()
    try:
        return queryset.get(pk=invoice_id)
    except (Invoice.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError(f"Invoice {invoice_id} not found")


def _sync_line_items(row, invoice, was_draft):
    current = [item.to_domain() for item in row.items.all()]
    if current == list(invoice.line_items):
        return
    if not was_draft:
        raise InvalidStateError(f"Line items of invoice {row.invoice_number} are frozen once sent")

    row.items.all().delete()
    InvoiceItem.objects.bulk_create([
        InvoiceItem(
            invoice=row,
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            total_price=item.total,
            treatment_id=item.treatment_id,
            item_order=position,
        )
        for position, item in enumerate(invoice.line_items)
    ])


def save_invoice(row, invoice, created_by_id=None):
    """
    Write a domain invoice back onto its row.

    New adjustments and payments are inserted; existing payments only ever
    change by being refunded.
    """
    was_draft = row.status == 'draft'
    row.apply_domain(invoice)
    row.save()

    _sync_line_items(row, invoice, was_draft)

    existing_adjustments = set(row.adjustments.values_list('id', flat=True))
    for adjustment in invoice.adjustments:
        if adjustment.id not in existing_adjustments:
            InvoiceAdjustment.from_domain(row, adjustment, created_by_id).save()

    existing_payments = {p.id: p for p in row.payments.all()}
    for payment in invoice.payments:
        stored = existing_payments.get(payment.id)
        if stored is None:
            Payment.from_domain(row, payment, created_by_id).save()
        elif payment.is_refunded and not stored.is_refunded:
            Payment.objects.filter(pk=stored.pk).update(
                is_refunded=True,
                refund_reason=payment.refund_reason,
                refunded_at=payment.refunded_at,
            )

    return row


# -------------------------------------------------------------------
# Operations
# -------------------------------------------------------------------

def create_invoice(tenant_id, patient, items, issued_date=None, discount=None,
                   due_date=None, notes=None, created_by_id=None):
    """
    Create a draft invoice.

    ``items`` is an iterable of domain LineItems; ``discount`` an optional
    domain Discount.
    """
    issued_date = issued_date or timezone.localdate()
    with transaction.atomic():
        row = Invoice(
            tenant_id=tenant_id,
            patient=patient,
            issued_date=issued_date,
            due_date=due_date,
            notes=notes,
            created_by_id=created_by_id,
        )
        row.invoice_number = Invoice.generate_invoice_number(tenant_id)
        invoice = ledger.create_invoice(
            number=row.invoice_number,
            patient_id=patient.pk,
            line_items=items,
            issued_date=issued_date,
            discount=discount,
            due_date=due_date,
        )
        save_invoice(row, invoice, created_by_id)

    logger.info(f"Created invoice {row.invoice_number} for tenant {tenant_id} (total {row.final_amount})")
    return row


def add_line_item(tenant_id, invoice_id, item):
    with transaction.atomic():
        row = get_invoice(tenant_id, invoice_id, for_update=True)
        save_invoice(row, ledger.add_line_item(row.to_domain(), item))

    logger.info(f"Added line item to draft invoice {row.invoice_number} (tenant {tenant_id})")
    return row


def remove_line_item(tenant_id, invoice_id, index):
    """Remove the item at zero-based ``index`` from a draft."""
    with transaction.atomic():
        row = get_invoice(tenant_id, invoice_id, for_update=True)
        save_invoice(row, ledger.remove_line_item(row.to_domain(), index))

    logger.info(f"Removed line item {index + 1} from draft invoice {row.invoice_number} (tenant {tenant_id})")
    return row


def send_invoice(tenant_id, invoice_id):
    with transaction.atomic():
        row = get_invoice(tenant_id, invoice_id, for_update=True)
        save_invoice(row, ledger.send_invoice(row.to_domain()))

    logger.info(f"Sent invoice {row.invoice_number} for tenant {tenant_id}")
    return row


def record_payment(tenant_id, invoice_id, amount, method, payment_date=None,
                   reference=None, notes=None, installment_id=None, created_by_id=None):
    """Record a payment and return ``(invoice_row, payment_row)``."""
    try:
        method = domain.PaymentMethod(method)
    except ValueError:
        raise ValidationError(f"Unknown payment method '{method}'", field='payment_method')

    payment = domain.Payment(
        amount=money.to_money(amount),
        method=method,
        payment_date=payment_date or timezone.localdate(),
        reference=reference,
        notes=notes,
        installment_id=installment_id,
    )

    with transaction.atomic():
        row = get_invoice(tenant_id, invoice_id, for_update=True)
        save_invoice(row, ledger.record_payment(row.to_domain(), payment), created_by_id)

    logger.info(
        f"Recorded payment {payment.id} of {payment.amount} on invoice {row.invoice_number} "
        f"(tenant {tenant_id}, status {row.status})"
    )
    return row, Payment.objects.get(pk=payment.id)


def refund_payment(tenant_id, invoice_id, payment_id, reason):
    """
    Refund one payment.

    A payment taken against a plan installment reopens that installment in
    the same transaction; the plan row is locked before the invoice row.
    """
    from apps.payment_plans import services as plan_services

    with transaction.atomic():
        invoice_pk = get_invoice(tenant_id, invoice_id).pk
        linked = (
            Payment.objects
            .filter(invoice_id=invoice_pk, pk=payment_id, is_refunded=False, installment__isnull=False)
            .select_related('installment')
            .first()
        )
        if linked is not None:
            plan_services.reverse_installment_payment(tenant_id, linked.installment, linked.amount)

        row = get_invoice(tenant_id, invoice_pk, for_update=True)
        save_invoice(row, ledger.refund_payment(row.to_domain(), payment_id, reason))

    logger.info(f"Refunded payment {payment_id} on invoice {row.invoice_number} (tenant {tenant_id})")
    return row


def apply_adjustment(tenant_id, invoice_id, adjustment_type, amount, reason,
                     applied_date=None, created_by_id=None):
    try:
        adjustment_type = domain.AdjustmentType(adjustment_type)
    except ValueError:
        raise ValidationError(f"Unknown adjustment type '{adjustment_type}'", field='adjustment_type')

    adjustment = domain.Adjustment(
        type=adjustment_type,
        amount=money.to_money(amount),
        reason=reason,
        applied_date=applied_date or timezone.localdate(),
    )

    with transaction.atomic():
        row = get_invoice(tenant_id, invoice_id, for_update=True)
        save_invoice(row, ledger.apply_adjustment(row.to_domain(), adjustment), created_by_id)

    logger.info(
        f"Applied {adjustment.type.value} adjustment of {adjustment.amount} to invoice "
        f"{row.invoice_number} (tenant {tenant_id})"
    )
    return row


def void_invoice(tenant_id, invoice_id):
    """Cancel the invoice together with any open payment plan on it."""
    from apps.payment_plans import services as plan_services

    with transaction.atomic():
        invoice_pk = get_invoice(tenant_id, invoice_id).pk
        plans_canceled = plan_services.cancel_invoice_plans(tenant_id, invoice_pk)

        row = get_invoice(tenant_id, invoice_pk, for_update=True)
        save_invoice(row, ledger.void_invoice(row.to_domain()))

    logger.info(
        f"Voided invoice {row.invoice_number} (tenant {tenant_id}, {plans_canceled} plan(s) canceled)"
    )
    return row


def mark_overdue_invoices(today=None, tenant_id=None):
    """Flip every past-due open invoice to overdue. Returns the count."""
    today = today or timezone.localdate()
    candidates = Invoice.objects.filter(
        status__in=['sent', 'partial'],
        due_date__lt=today,
    )
    if tenant_id is not None:
        candidates = candidates.filter(tenant_id=tenant_id)

    updated = 0
    for invoice_id, row_tenant in candidates.values_list('id', 'tenant_id'):
        with transaction.atomic():
            row = get_invoice(row_tenant, invoice_id, for_update=True)
            invoice = row.to_domain()
            swept = ledger.mark_overdue(invoice, today)
            if swept is not invoice:
                save_invoice(row, swept)
                updated += 1

    logger.info(f"Marked {updated} invoices overdue as of {today}")
    return updated


# -------------------------------------------------------------------
# Reports
# -------------------------------------------------------------------

AGING_BUCKETS = (
    ('current', 30),
    ('days_31_60', 60),
    ('days_61_90', 90),
)


def aging_bucket(days_past_due):
    for name, limit in AGING_BUCKETS:
        if days_past_due <= limit:
            return name
    return 'over_90'


def ar_aging_report(tenant_id, today=None):
    """
    Accounts-receivable aging by days past the due date (issued date when
    no due date is set). Balances come from the ledger-maintained
    ``balance_amount`` column.
    """
    today = today or timezone.localdate()
    buckets = {name: Decimal('0.00') for name, _ in AGING_BUCKETS}
    buckets['over_90'] = Decimal('0.00')

    open_invoices = Invoice.objects.filter(
        tenant_id=tenant_id,
        status__in=OPEN_STATUSES,
    ).values_list('balance_amount', 'due_date', 'issued_date')

    for balance, due_date, issued_date in open_invoices:
        days_past_due = (today - (due_date or issued_date)).days
        name = aging_bucket(days_past_due)
        buckets[name] = money.add(buckets[name], balance)

    report = {name: money.format_money(amount) for name, amount in buckets.items()}
    report['total'] = money.format_money(money.money_sum(buckets.values()))
    return report


def revenue_report(tenant_id, start_date: date, end_date: date):
    """Billed, collected, refunded and adjusted totals with a monthly breakdown."""
    if start_date > end_date:
        raise ValidationError("start_date must not be after end_date", field='start_date')

    invoices = Invoice.objects.filter(
        tenant_id=tenant_id,
        issued_date__gte=start_date,
        issued_date__lte=end_date,
    ).exclude(status__in=['draft', 'canceled'])

    payments = Payment.objects.filter(
        invoice__tenant_id=tenant_id,
        payment_date__gte=start_date,
        payment_date__lte=end_date,
    )
    collected = payments.filter(is_refunded=False)

    adjustments = InvoiceAdjustment.objects.filter(
        invoice__tenant_id=tenant_id,
        applied_date__gte=start_date,
        applied_date__lte=end_date,
    ).values('adjustment_type').annotate(total=Sum('amount'))

    adjustment_total = money.money_sum(
        domain.AdjustmentType(row['adjustment_type']).signed_effect(row['total'])
        for row in adjustments
    )

    by_month = {}
    for row in invoices.annotate(month=TruncMonth('issued_date')).values('month').annotate(
            revenue=Sum('effective_final_amount'), invoice_count=Count('id')):
        key = row['month'].strftime('%Y-%m')
        by_month[key] = {
            'month': key,
            'revenue': money.to_money(row['revenue'] or 0),
            'collections': Decimal('0.00'),
            'invoice_count': row['invoice_count'],
        }
    for row in collected.annotate(month=TruncMonth('payment_date')).values('month').annotate(
            collections=Sum('amount')):
        key = row['month'].strftime('%Y-%m')
        entry = by_month.setdefault(key, {
            'month': key,
            'revenue': Decimal('0.00'),
            'collections': Decimal('0.00'),
            'invoice_count': 0,
        })
        entry['collections'] = money.to_money(row['collections'] or 0)

    return {
        'start_date': start_date.isoformat(),
        'end_date': end_date.isoformat(),
        'total_revenue': money.format_money(
            invoices.aggregate(total=Sum('effective_final_amount'))['total'] or 0
        ),
        'total_collections': money.format_money(
            collected.aggregate(total=Sum('amount'))['total'] or 0
        ),
        'total_refunds': money.format_money(
            payments.filter(is_refunded=True).aggregate(total=Sum('amount'))['total'] or 0
        ),
        'total_adjustments': money.format_money(adjustment_total),
        'by_month': [
            {
                'month': entry['month'],
                'revenue': money.format_money(entry['revenue']),
                'collections': money.format_money(entry['collections']),
                'invoice_count': entry['invoice_count'],
            }
            for _, entry in sorted(by_month.items())
        ],
    }
