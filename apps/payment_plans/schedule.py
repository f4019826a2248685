"""
Payment-plan schedule engine.

Splits a financed amount into installments that sum to it exactly and tracks
installment payments. Pure functions over frozen dataclasses; the Django
models in ``apps.payment_plans.models`` convert to and from these values.
"""

from dataclasses import dataclass, replace
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple

from dateutil.relativedelta import relativedelta

from apps.billing import money
from common.exceptions import InvalidStateError, NotFoundError, ValidationError

MIN_INSTALLMENTS = 2


class Frequency(str, Enum):
    WEEKLY = 'weekly'
    BIWEEKLY = 'biweekly'
    MONTHLY = 'monthly'

    def due_date(self, start_date: date, offset: int) -> date:
        """Due date of the installment ``offset`` steps after ``start_date``."""
        if self is Frequency.WEEKLY:
            return start_date + timedelta(days=7 * offset)
        if self is Frequency.BIWEEKLY:
            return start_date + timedelta(days=14 * offset)
        # Month steps are taken from the start date, not chained, so a plan
        # starting on the 31st lands on each month's last day.
        return start_date + relativedelta(months=offset)


class PlanStatus(str, Enum):
    ACTIVE = 'active'
    COMPLETED = 'completed'
    CANCELED = 'canceled'
    DEFAULTED = 'defaulted'


@dataclass(frozen=True)
class Installment:
    number: int
    due_date: date
    amount: Decimal
    paid_amount: Decimal = money.ZERO
    is_paid: bool = False
    paid_date: Optional[date] = None

    @property
    def remaining(self) -> Decimal:
        return money.clamp_non_negative(money.subtract(self.amount, self.paid_amount))


@dataclass(frozen=True)
class PaymentPlan:
    total_amount: Decimal
    down_payment: Decimal
    installment_count: int
    frequency: Frequency
    start_date: date
    installments: Tuple[Installment, ...] = ()
    status: PlanStatus = PlanStatus.ACTIVE

    @property
    def financed_amount(self) -> Decimal:
        return money.subtract(self.total_amount, self.down_payment)

    @property
    def paid_amount(self) -> Decimal:
        return money.money_sum(i.paid_amount for i in self.installments)

    @property
    def remaining_amount(self) -> Decimal:
        return money.money_sum(i.remaining for i in self.installments)

    def installment(self, number: int) -> Installment:
        for installment in self.installments:
            if installment.number == number:
                return installment
        raise NotFoundError(
            f"Installment {number} does not exist; plan has {len(self.installments)} installments",
            field='installment_number',
        )


def _parse_frequency(frequency) -> Frequency:
    try:
        return Frequency(frequency)
    except ValueError:
        raise ValidationError(f"Unknown frequency '{frequency}'", field='frequency')


def _validate_count(count):
    if isinstance(count, bool) or not isinstance(count, int) or count < MIN_INSTALLMENTS:
        raise ValidationError(
            f"Installment count must be an integer of at least {MIN_INSTALLMENTS}",
            field='installment_count',
        )


def generate_installments(financed_amount, count, frequency, start_date) -> Tuple[Installment, ...]:
    """
    Split ``financed_amount`` into ``count`` installments.

    Every installment gets the amount floored to the cent; the last one
    absorbs the remainder so the schedule sums exactly. The first
    installment is due on ``start_date``.
    """
    _validate_count(count)
    frequency = _parse_frequency(frequency)
    financed_amount = money.to_money(financed_amount, field='financed_amount')
    if financed_amount < money.ZERO:
        raise ValidationError("Financed amount cannot be negative", field='financed_amount')

    base = money.floor_money(financed_amount / count)
    last = money.subtract(financed_amount, money.multiply(base, count - 1))

    installments = []
    for offset in range(count):
        amount = last if offset == count - 1 else base
        installments.append(Installment(
            number=offset + 1,
            due_date=frequency.due_date(start_date, offset),
            amount=amount,
            # Nothing to collect on a zero installment
            is_paid=amount == money.ZERO,
        ))
    return tuple(installments)


def create_plan(total_amount, down_payment, installment_count, frequency, start_date) -> PaymentPlan:
    """
    Build an active plan with its full schedule.

    Zero installments start paid, so a down payment equal to the total (or
    any schedule with nothing left to collect) starts completed.
    """
    total_amount = money.to_money(total_amount, field='total_amount')
    down_payment = money.to_money(down_payment or 0, field='down_payment')

    if total_amount <= money.ZERO:
        raise ValidationError("Total amount must be positive", field='total_amount')
    if down_payment < money.ZERO:
        raise ValidationError("Down payment cannot be negative", field='down_payment')
    if down_payment > total_amount:
        raise ValidationError("Down payment cannot exceed the total amount", field='down_payment')
    _validate_count(installment_count)
    frequency = _parse_frequency(frequency)

    installments = generate_installments(
        money.subtract(total_amount, down_payment),
        installment_count,
        frequency,
        start_date,
    )
    plan = PaymentPlan(
        total_amount=total_amount,
        down_payment=down_payment,
        installment_count=installment_count,
        frequency=frequency,
        start_date=start_date,
        installments=installments,
    )
    if all(i.is_paid for i in installments):
        plan = replace(plan, status=PlanStatus.COMPLETED)
    return plan


def record_installment_payment(plan: PaymentPlan, installment_number, amount, paid_date=None) -> PaymentPlan:
    """
    Apply a payment to one installment.

    Payments accumulate; the installment is paid once they reach its amount.
    The plan completes when every installment is paid.
    """
    if plan.status is not PlanStatus.ACTIVE:
        raise InvalidStateError(f"Cannot take payments on a {plan.status.value} plan")

    target = plan.installment(installment_number)
    if target.is_paid:
        raise InvalidStateError(f"Installment {installment_number} is already paid")

    amount = money.to_money(amount)
    if amount <= money.ZERO:
        raise ValidationError("Payment amount must be positive", field='amount')

    paid_amount = money.add(target.paid_amount, amount)
    is_paid = paid_amount >= target.amount
    updated = replace(
        target,
        paid_amount=paid_amount,
        is_paid=is_paid,
        paid_date=(paid_date or date.today()) if is_paid else None,
    )

    installments = tuple(updated if i.number == target.number else i for i in plan.installments)
    status = PlanStatus.COMPLETED if all(i.is_paid for i in installments) else plan.status
    return replace(plan, installments=installments, status=status)


def reverse_installment_payment(plan: PaymentPlan, installment_number, amount) -> PaymentPlan:
    """
    Take a refunded payment back off one installment.

    The installment reopens once its paid amount falls short again, and a
    completed plan goes back to active. Other statuses are kept.
    """
    target = plan.installment(installment_number)
    amount = money.to_money(amount)
    if amount <= money.ZERO:
        raise ValidationError("Refunded amount must be positive", field='amount')

    paid_amount = money.clamp_non_negative(money.subtract(target.paid_amount, amount))
    is_paid = paid_amount >= target.amount
    updated = replace(
        target,
        paid_amount=paid_amount,
        is_paid=is_paid,
        paid_date=target.paid_date if is_paid else None,
    )

    installments = tuple(updated if i.number == target.number else i for i in plan.installments)
    status = plan.status
    if status is PlanStatus.COMPLETED and not all(i.is_paid for i in installments):
        status = PlanStatus.ACTIVE
    return replace(plan, installments=installments, status=status)


def mark_defaulted(plan: PaymentPlan) -> PaymentPlan:
    if plan.status in (PlanStatus.COMPLETED, PlanStatus.CANCELED):
        raise InvalidStateError(f"Cannot default a {plan.status.value} plan")
    if plan.status is PlanStatus.DEFAULTED:
        return plan
    return replace(plan, status=PlanStatus.DEFAULTED)


def cancel_plan(plan: PaymentPlan) -> PaymentPlan:
    if plan.status in (PlanStatus.COMPLETED, PlanStatus.CANCELED):
        raise InvalidStateError(f"Cannot cancel a {plan.status.value} plan")
    return replace(plan, status=PlanStatus.CANCELED)


def next_due_installment(plan: PaymentPlan) -> Optional[Installment]:
    for installment in sorted(plan.installments, key=lambda i: i.number):
        if not installment.is_paid:
            return installment
    return None


def overdue_installments(plan: PaymentPlan, today: date) -> Tuple[Installment, ...]:
    if plan.status is not PlanStatus.ACTIVE:
        return ()
    return tuple(i for i in plan.installments if not i.is_paid and i.due_date < today)
