"""
Payment-plan persistence and host operations.

Lock order is plan row first, then invoice row, everywhere both are taken.
"""

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.utils import timezone
import logging

from apps.billing import ledger, money
from apps.billing import services as billing_services
from common.exceptions import InvalidStateError, NotFoundError

from . import schedule
from .models import PaymentPlan, PaymentPlanInstallment

logger = logging.getLogger(__name__)


def get_payment_plan(tenant_id, plan_id, for_update=False):
    """Load one tenant payment plan or raise NotFoundError."""
    queryset = PaymentPlan.objects.filter(tenant_id=tenant_id)
    if for_update:
        queryset = queryset.select_for_update()
    try:
        return queryset.get(pk=plan_id)
    except (PaymentPlan.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError(f"Payment plan {plan_id} not found")


def save_payment_plan(row, plan):
    """Write plan status and installment progress back onto the rows."""
    row.status = plan.status.value
    row.save()

    stored = {i.installment_number: i for i in row.installments.all()}
    for installment in plan.installments:
        installment_row = stored.get(installment.number)
        if installment_row is None:
            installment_row = PaymentPlanInstallment(
                payment_plan=row,
                installment_number=installment.number,
                due_date=installment.due_date,
                amount=installment.amount,
            )
            installment_row.apply_domain(installment)
            installment_row.save()
        elif (installment_row.paid_amount != installment.paid_amount
              or installment_row.is_paid != installment.is_paid):
            installment_row.apply_domain(installment)
            installment_row.save(update_fields=['paid_amount', 'is_paid', 'paid_date'])
    return row


def create_payment_plan(tenant_id, invoice_id, installment_count, frequency, start_date=None,
                        down_payment=0, down_payment_method=None, notes=None, created_by_id=None):
    """
    Finance an invoice's outstanding balance.

    With ``down_payment_method`` set, the down payment is recorded on the
    invoice in the same transaction.
    """
    start_date = start_date or timezone.localdate()
    with transaction.atomic():
        invoice_row = billing_services.get_invoice(tenant_id, invoice_id, for_update=True)
        if invoice_row.status not in billing_services.OPEN_STATUSES:
            raise InvalidStateError(
                f"Cannot create a payment plan for a {invoice_row.status} invoice"
            )
        if invoice_row.payment_plans.filter(status='active').exists():
            raise InvalidStateError(
                f"Invoice {invoice_row.invoice_number} already has an active payment plan"
            )

        balance = ledger.outstanding_balance(invoice_row.to_domain())
        plan = schedule.create_plan(balance, down_payment, installment_count, frequency, start_date)

        row = PaymentPlan(
            tenant_id=tenant_id,
            invoice=invoice_row,
            patient_id=invoice_row.patient_id,
            total_amount=plan.total_amount,
            down_payment=plan.down_payment,
            installment_count=plan.installment_count,
            frequency=plan.frequency.value,
            start_date=plan.start_date,
            notes=notes,
            created_by_id=created_by_id,
        )
        save_payment_plan(row, plan)

        if down_payment_method and plan.down_payment > money.ZERO:
            billing_services.record_payment(
                tenant_id,
                invoice_row.id,
                plan.down_payment,
                down_payment_method,
                payment_date=start_date,
                notes='Payment plan down payment',
                created_by_id=created_by_id,
            )

    logger.info(
        f"Created payment plan {row.id} on invoice {invoice_row.invoice_number} "
        f"(tenant {tenant_id}, {plan.installment_count} x {plan.frequency.value}, financed {plan.financed_amount})"
    )
    return row


def pay_installment(tenant_id, plan_id, installment_number, amount, method,
                    payment_date=None, reference=None, created_by_id=None):
    """
    Pay one installment and record the matching invoice payment.

    Both writes commit together or not at all.
    """
    payment_date = payment_date or timezone.localdate()
    with transaction.atomic():
        row = get_payment_plan(tenant_id, plan_id, for_update=True)
        plan = schedule.record_installment_payment(
            row.to_domain(), installment_number, amount, paid_date=payment_date
        )
        installment_row = row.installments.get(installment_number=installment_number)

        billing_services.record_payment(
            tenant_id,
            row.invoice_id,
            amount,
            method,
            payment_date=payment_date,
            reference=reference,
            notes=f"Installment {installment_number}",
            installment_id=installment_row.id,
            created_by_id=created_by_id,
        )
        save_payment_plan(row, plan)

    logger.info(
        f"Paid installment {installment_number} of plan {row.id} (tenant {tenant_id}, plan {row.status})"
    )
    return row


def mark_plan_defaulted(tenant_id, plan_id):
    with transaction.atomic():
        row = get_payment_plan(tenant_id, plan_id, for_update=True)
        save_payment_plan(row, schedule.mark_defaulted(row.to_domain()))

    logger.info(f"Marked payment plan {row.id} defaulted (tenant {tenant_id})")
    return row


def cancel_payment_plan(tenant_id, plan_id):
    with transaction.atomic():
        row = get_payment_plan(tenant_id, plan_id, for_update=True)
        save_payment_plan(row, schedule.cancel_plan(row.to_domain()))

    logger.info(f"Canceled payment plan {row.id} (tenant {tenant_id})")
    return row


def reverse_installment_payment(tenant_id, installment_row, amount):
    """
    Reopen the installment a refunded invoice payment was taken against.

    Runs inside the caller's transaction and must precede the invoice lock.
    A plan whose invoice is already canceled is canceled rather than
    reopened.
    """
    row = get_payment_plan(tenant_id, installment_row.payment_plan_id, for_update=True)
    plan = schedule.reverse_installment_payment(
        row.to_domain(), installment_row.installment_number, amount
    )
    if plan.status is schedule.PlanStatus.ACTIVE and row.invoice.status == 'canceled':
        plan = schedule.cancel_plan(plan)
    save_payment_plan(row, plan)

    logger.info(
        f"Reversed {amount} on installment {installment_row.installment_number} of plan {row.id} "
        f"(tenant {tenant_id}, plan {row.status})"
    )
    return row


def cancel_invoice_plans(tenant_id, invoice_id):
    """
    Cancel every open plan on an invoice that is being voided.

    Runs inside the caller's transaction, before the invoice lock. Returns
    the number of plans canceled.
    """
    rows = PaymentPlan.objects.select_for_update().filter(
        tenant_id=tenant_id,
        invoice_id=invoice_id,
        status__in=['active', 'defaulted'],
    )
    canceled = 0
    for row in rows:
        save_payment_plan(row, schedule.cancel_plan(row.to_domain()))
        canceled += 1
        logger.info(f"Canceled payment plan {row.id} with its voided invoice (tenant {tenant_id})")
    return canceled


def plan_progress(row, today=None):
    """Collection summary for one plan."""
    today = today or timezone.localdate()
    plan = row.to_domain()
    next_due = schedule.next_due_installment(plan)
    overdue = schedule.overdue_installments(plan, today)
    return {
        'financed_amount': money.format_money(plan.financed_amount),
        'paid_amount': money.format_money(plan.paid_amount),
        'remaining_amount': money.format_money(plan.remaining_amount),
        'next_due_installment': next_due.number if next_due else None,
        'next_due_date': next_due.due_date.isoformat() if next_due else None,
        'overdue_installments': [i.number for i in overdue],
    }
