"""
Immutable value types for the invoice ledger.

Pure data, no I/O. The ledger functions in ``apps.billing.ledger`` take these
values and return new ones via ``dataclasses.replace``; the Django models in
``apps.billing.models`` convert to and from them.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple
import uuid

from . import money


class InvoiceStatus(str, Enum):
    DRAFT = 'draft'
    SENT = 'sent'
    PARTIAL = 'partial'
    PAID = 'paid'
    OVERDUE = 'overdue'
    CANCELED = 'canceled'

    @property
    def is_terminal(self):
        return self in (InvoiceStatus.PAID, InvoiceStatus.CANCELED)

    @property
    def accepts_money(self):
        """Statuses that accept payments and adjustments"""
        return self in (InvoiceStatus.SENT, InvoiceStatus.PARTIAL, InvoiceStatus.OVERDUE)


class DiscountType(str, Enum):
    PERCENTAGE = 'percentage'
    FIXED = 'fixed'


class AdjustmentType(str, Enum):
    """
    Closed set of invoice adjustments.

    Each variant owns its sign rule: discounts and write-offs always reduce
    the amount owed, fees always increase it, corrections keep the sign the
    operator entered.
    """
    DISCOUNT = 'discount'
    WRITE_OFF = 'write_off'
    FEE = 'fee'
    CORRECTION = 'correction'

    def signed_effect(self, amount: Decimal) -> Decimal:
        amount = money.to_money(amount)
        if self in (AdjustmentType.DISCOUNT, AdjustmentType.WRITE_OFF):
            return -abs(amount)
        if self is AdjustmentType.FEE:
            return abs(amount)
        return amount


class PaymentMethod(str, Enum):
    CASH = 'cash'
    CARD = 'card'
    BANK_TRANSFER = 'bank_transfer'
    INSURANCE = 'insurance'
    OTHER = 'other'


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: int
    unit_price: Decimal
    treatment_id: Optional[uuid.UUID] = None

    @property
    def total(self) -> Decimal:
        return money.multiply(self.unit_price, self.quantity)


@dataclass(frozen=True)
class Discount:
    type: DiscountType
    value: Decimal


@dataclass(frozen=True)
class Adjustment:
    type: AdjustmentType
    amount: Decimal
    reason: str
    applied_date: date
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    @property
    def effect(self) -> Decimal:
        return self.type.signed_effect(self.amount)


@dataclass(frozen=True)
class Payment:
    amount: Decimal
    method: PaymentMethod
    payment_date: date
    reference: Optional[str] = None
    notes: Optional[str] = None
    installment_id: Optional[uuid.UUID] = None
    is_refunded: bool = False
    refund_reason: Optional[str] = None
    refunded_at: Optional[datetime] = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)


@dataclass(frozen=True)
class Invoice:
    """
    An invoice and everything that has happened to it.

    ``adjustments`` and ``payments`` are append-only logs; the amounts below
    are always derived from them, never stored independently.
    """
    number: str
    patient_id: Optional[object]
    issued_date: date
    line_items: Tuple[LineItem, ...] = ()
    discount: Optional[Discount] = None
    status: InvoiceStatus = InvoiceStatus.DRAFT
    due_date: Optional[date] = None
    adjustments: Tuple[Adjustment, ...] = ()
    payments: Tuple[Payment, ...] = ()
    id: Optional[uuid.UUID] = None

    @property
    def subtotal(self) -> Decimal:
        return money.money_sum(item.total for item in self.line_items)

    @property
    def discount_amount(self) -> Decimal:
        from .ledger import compute_discount_amount
        return compute_discount_amount(self.subtotal, self.discount)

    @property
    def final_amount(self) -> Decimal:
        from .ledger import compute_final_amount
        return compute_final_amount(self.subtotal, self.discount_amount)

    @property
    def adjustment_total(self) -> Decimal:
        return money.money_sum(adj.effect for adj in self.adjustments)

    @property
    def effective_final_amount(self) -> Decimal:
        """Final amount with every adjustment folded in, floored at zero"""
        return money.clamp_non_negative(
            money.add(self.final_amount, self.adjustment_total)
        )

    @property
    def paid_amount(self) -> Decimal:
        return money.money_sum(p.amount for p in self.payments if not p.is_refunded)

    @property
    def refunded_amount(self) -> Decimal:
        return money.money_sum(p.amount for p in self.payments if p.is_refunded)

    @property
    def balance(self) -> Decimal:
        return money.clamp_non_negative(
            money.subtract(self.effective_final_amount, self.paid_amount)
        )

    def find_payment(self, payment_id) -> Optional[Payment]:
        for payment in self.payments:
            if str(payment.id) == str(payment_id):
                return payment
        return None
