"""
Fixed-point currency helpers.

All amounts are ``Decimal`` values quantized to two fraction digits. Floats
are only accepted through their ``str()`` form so binary drift never reaches
a stored amount.
"""

from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP

from common.exceptions import ValidationError

CENT = Decimal('0.01')
ZERO = Decimal('0.00')
HUNDRED = Decimal('100')


def to_money(value, field='amount'):
    """Parse ``value`` into a two-digit Decimal or raise ValidationError."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a decimal amount", field=field)
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a decimal amount", field=field)
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite amount", field=field)
    amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    # -0.00 compares equal to zero but renders with a sign
    return amount if amount else ZERO


def add(a, b):
    return to_money(to_money(a) + to_money(b))


def subtract(a, b):
    return to_money(to_money(a) - to_money(b))


def multiply(amount, quantity):
    """Multiply an amount by an integer quantity."""
    return to_money(to_money(amount) * Decimal(quantity))


def percent_of(amount, pct):
    """Return ``pct`` percent of ``amount``, rounded half-up to the cent."""
    try:
        pct = Decimal(str(pct))
    except InvalidOperation:
        raise ValidationError("percentage must be numeric", field='percentage')
    if not pct.is_finite():
        raise ValidationError("percentage must be numeric", field='percentage')
    return to_money(to_money(amount) * pct / HUNDRED)


def floor_money(value):
    """Truncate toward zero at the cent."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_DOWN)


def clamp_non_negative(amount):
    amount = to_money(amount)
    return amount if amount > ZERO else ZERO


def money_sum(amounts):
    total = ZERO
    for amount in amounts:
        total += to_money(amount)
    return to_money(total)


def format_money(amount):
    """Two-decimal string used at API and report boundaries."""
    return f"{to_money(amount):.2f}"
