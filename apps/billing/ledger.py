"""
Invoice ledger.

Pure, deterministic functions over ``apps.billing.domain`` values. Nothing
here touches the database; callers load an invoice, pass it through one of
these functions and persist the returned value.

State machine::

    draft --send--> sent --payment--> partial --payment--> paid
    draft|sent|partial|overdue --void--> canceled
    sent|partial --overdue sweep--> overdue --payment--> partial|paid

``paid`` and ``canceled`` accept no further payments, adjustments or voids.
"""

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

from common.exceptions import InvalidStateError, NotFoundError, ValidationError

from . import money
from .domain import (
    Adjustment,
    AdjustmentType,
    Discount,
    DiscountType,
    Invoice,
    InvoiceStatus,
    LineItem,
    Payment,
)


# -------------------------------------------------------------------
# Totals
# -------------------------------------------------------------------

def _validate_line_item(item: LineItem, position: int):
    if not (item.description or '').strip():
        raise ValidationError(f"Line item {position}: description is required", field='description')
    if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity <= 0:
        raise ValidationError(f"Line item {position}: quantity must be a positive integer", field='quantity')
    if money.to_money(item.unit_price, field='unit_price') < money.ZERO:
        raise ValidationError(f"Line item {position}: unit price cannot be negative", field='unit_price')


def compute_subtotal(line_items) -> Decimal:
    """Sum of quantity x unit price over all items."""
    subtotal = money.ZERO
    for position, item in enumerate(line_items, start=1):
        _validate_line_item(item, position)
        subtotal = money.add(subtotal, item.total)
    return subtotal


def validate_discount(discount: Discount):
    if discount is None:
        return
    value = money.to_money(discount.value, field='discount_value')
    if value < money.ZERO:
        raise ValidationError("Discount value cannot be negative", field='discount_value')
    if discount.type is DiscountType.PERCENTAGE and value > money.HUNDRED:
        raise ValidationError("Percentage discount cannot exceed 100", field='discount_value')


def compute_discount_amount(subtotal, discount: Discount) -> Decimal:
    """
    Discount in currency.

    Percentage discounts take ``value`` percent of the subtotal; fixed
    discounts are capped at the subtotal so they can never invert its sign.
    """
    if discount is None:
        return money.ZERO
    validate_discount(discount)
    subtotal = money.to_money(subtotal)
    if discount.type is DiscountType.PERCENTAGE:
        amount = money.percent_of(subtotal, discount.value)
    else:
        amount = money.to_money(discount.value)
    return min(amount, money.clamp_non_negative(subtotal))


def compute_final_amount(subtotal, discount_amount) -> Decimal:
    return money.clamp_non_negative(money.subtract(subtotal, discount_amount))


def outstanding_balance(invoice: Invoice) -> Decimal:
    return money.clamp_non_negative(
        money.subtract(invoice.effective_final_amount, invoice.paid_amount)
    )


# -------------------------------------------------------------------
# Status
# -------------------------------------------------------------------

def _settle(invoice: Invoice) -> Invoice:
    """Recompute status from the payment and adjustment logs."""
    if invoice.status in (InvoiceStatus.DRAFT, InvoiceStatus.CANCELED):
        return invoice

    paid = invoice.paid_amount
    effective = invoice.effective_final_amount

    if paid >= effective:
        status = InvoiceStatus.PAID
    elif paid > money.ZERO:
        status = InvoiceStatus.PARTIAL
    elif invoice.status in (InvoiceStatus.PARTIAL, InvoiceStatus.PAID):
        status = InvoiceStatus.SENT
    else:
        status = invoice.status

    if status is invoice.status:
        return invoice
    return replace(invoice, status=status)


def _require_status(invoice: Invoice, allowed, action):
    if invoice.status not in allowed:
        raise InvalidStateError(
            f"Cannot {action} invoice {invoice.number} while it is {invoice.status.value}"
        )


# -------------------------------------------------------------------
# Lifecycle
# -------------------------------------------------------------------

def create_invoice(number, patient_id, line_items, issued_date,
                   discount=None, due_date=None) -> Invoice:
    """Build a draft invoice after validating its items and discount."""
    if not (number or '').strip():
        raise ValidationError("Invoice number is required", field='number')
    line_items = tuple(line_items)
    compute_subtotal(line_items)
    validate_discount(discount)
    if due_date is not None and due_date < issued_date:
        raise ValidationError("Due date cannot be before the issued date", field='due_date')

    return Invoice(
        number=number,
        patient_id=patient_id,
        issued_date=issued_date,
        due_date=due_date,
        line_items=line_items,
        discount=discount,
    )


def add_line_item(invoice: Invoice, item: LineItem) -> Invoice:
    _require_status(invoice, (InvoiceStatus.DRAFT,), 'add items to')
    _validate_line_item(item, len(invoice.line_items) + 1)
    return replace(invoice, line_items=invoice.line_items + (item,))


def remove_line_item(invoice: Invoice, index: int) -> Invoice:
    _require_status(invoice, (InvoiceStatus.DRAFT,), 'remove items from')
    if index < 0 or index >= len(invoice.line_items):
        raise NotFoundError(f"Invoice {invoice.number} has no line item at position {index + 1}")
    items = invoice.line_items[:index] + invoice.line_items[index + 1:]
    return replace(invoice, line_items=items)


def send_invoice(invoice: Invoice) -> Invoice:
    """Issue a draft; line items are frozen from here on."""
    _require_status(invoice, (InvoiceStatus.DRAFT,), 'send')
    if not invoice.line_items:
        raise ValidationError(f"Invoice {invoice.number} has no line items")
    compute_subtotal(invoice.line_items)
    return _settle(replace(invoice, status=InvoiceStatus.SENT))


def apply_adjustment(invoice: Invoice, adjustment: Adjustment) -> Invoice:
    """Append an adjustment and recompute the effective amount and status."""
    if invoice.status in (InvoiceStatus.DRAFT, InvoiceStatus.CANCELED, InvoiceStatus.PAID):
        raise InvalidStateError(
            f"Adjustments only apply to sent, partial or overdue invoices; "
            f"{invoice.number} is {invoice.status.value}"
        )
    if not isinstance(adjustment.type, AdjustmentType):
        raise ValidationError("Unknown adjustment type", field='type')
    if not (adjustment.reason or '').strip():
        raise ValidationError("Adjustment reason is required", field='reason')

    amount = money.to_money(adjustment.amount)
    if adjustment.type is AdjustmentType.CORRECTION:
        if amount == money.ZERO:
            raise ValidationError("Correction amount cannot be zero", field='amount')
    elif amount <= money.ZERO:
        raise ValidationError(
            f"{adjustment.type.value} amount must be positive", field='amount'
        )

    adjustment = replace(adjustment, amount=amount, reason=adjustment.reason.strip())
    return _settle(replace(invoice, adjustments=invoice.adjustments + (adjustment,)))


def record_payment(invoice: Invoice, payment: Payment) -> Invoice:
    """Append a payment; status moves to partial or paid as the sum allows."""
    _require_status(
        invoice,
        (InvoiceStatus.SENT, InvoiceStatus.PARTIAL, InvoiceStatus.OVERDUE),
        'record a payment on',
    )
    amount = money.to_money(payment.amount)
    if amount <= money.ZERO:
        raise ValidationError("Payment amount must be positive", field='amount')
    if payment.is_refunded:
        raise ValidationError("A new payment cannot already be refunded")
    if invoice.find_payment(payment.id) is not None:
        raise ValidationError(f"Payment {payment.id} is already recorded")

    payment = replace(payment, amount=amount)
    return _settle(replace(invoice, payments=invoice.payments + (payment,)))


def refund_payment(invoice: Invoice, payment_id, reason: str, refunded_at=None) -> Invoice:
    """
    Mark one payment refunded.

    The payment stays in the log for audit; it simply stops counting toward
    ``paid_amount``.
    """
    payment = invoice.find_payment(payment_id)
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} does not belong to invoice {invoice.number}")
    if payment.is_refunded:
        raise InvalidStateError(f"Payment {payment_id} is already refunded")
    if not (reason or '').strip():
        raise ValidationError("Refund reason is required", field='reason')

    refunded = replace(
        payment,
        is_refunded=True,
        refund_reason=reason.strip(),
        refunded_at=refunded_at or datetime.now(timezone.utc),
    )
    payments = tuple(refunded if p is payment else p for p in invoice.payments)
    return _settle(replace(invoice, payments=payments))


def void_invoice(invoice: Invoice) -> Invoice:
    if invoice.status.is_terminal:
        raise InvalidStateError(
            f"Cannot void invoice {invoice.number}: it is already {invoice.status.value}"
        )
    return replace(invoice, status=InvoiceStatus.CANCELED)


def mark_overdue(invoice: Invoice, today) -> Invoice:
    """Time-based sweep; returns the invoice unchanged when nothing applies."""
    if invoice.status not in (InvoiceStatus.SENT, InvoiceStatus.PARTIAL):
        return invoice
    if invoice.due_date is None or invoice.due_date >= today:
        return invoice
    if outstanding_balance(invoice) == money.ZERO:
        return invoice
    return replace(invoice, status=InvoiceStatus.OVERDUE)


def ledger_summary(invoice: Invoice) -> dict:
    return {
        'subtotal': money.format_money(invoice.subtotal),
        'discount_amount': money.format_money(invoice.discount_amount),
        'final_amount': money.format_money(invoice.final_amount),
        'adjustment_total': money.format_money(invoice.adjustment_total),
        'effective_final_amount': money.format_money(invoice.effective_final_amount),
        'paid_amount': money.format_money(invoice.paid_amount),
        'refunded_amount': money.format_money(invoice.refunded_amount),
        'balance': money.format_money(outstanding_balance(invoice)),
        'status': invoice.status.value,
    }
