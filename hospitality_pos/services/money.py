from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from hospitality_pos.config import settings
from hospitality_pos.models import DiscountType, PaymentStatus

CURRENCY_SYMBOLS = {
    'USD': '$',
    'EUR': '€',
    'GBP': '£',
    'JPY': '¥',
    'NGN': '₦',
    'CHF': 'CHF ',
}


def _round_half_up(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_HALF_UP))


def to_cents(major: Decimal | int | str, minor_units: int | None = None) -> int:
    """Convert a major-unit amount (e.g. ``'4.50'``) to integer minor units."""
    unit = minor_units or settings.minor_units
    try:
        value = Decimal(str(major).strip())
    except InvalidOperation as exc:
        raise ValueError(f'Invalid amount: {major!r}') from exc
    if not value.is_finite():
        raise ValueError(f'Invalid amount: {major!r}')
    return _round_half_up(value * Decimal(unit))


def from_cents(cents: int, minor_units: int | None = None) -> Decimal:
    unit = minor_units or settings.minor_units
    return Decimal(cents) / Decimal(unit)


def validate_cents(value: int, field: str = 'price') -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f'{field} must be integer cents: {value!r}')
    if value < 0:
        raise ValueError(f'{field} cannot be negative: {value} cents')


def percentage_of(cents: int, percent: Decimal | int) -> int:
    pct = Decimal(str(percent))
    if pct < 0 or pct > 100:
        raise ValueError(f'Percentage must be between 0 and 100: {percent}')
    return _round_half_up(Decimal(cents) * pct / Decimal(100))


def calculate_discount(base: int, value: Decimal | int, discount_type: DiscountType | str) -> int:
    """Discount in cents for ``base``.

    Percentage-style rules take ``value`` as 0..100. Fixed rules take ``value``
    in major units and never discount more than ``base``.
    """
    kind = DiscountType(discount_type)
    if kind == DiscountType.FIXED:
        return min(abs(to_cents(value)), max(base, 0))
    return percentage_of(base, value)


def calculate_tax(taxable: int, rate_percent: Decimal | int | None = None) -> int:
    rate = settings.tax_rate_percent if rate_percent is None else rate_percent
    return percentage_of(max(taxable, 0), rate)


def calculate_total(subtotal: int, discount: int = 0, tax: int = 0) -> int:
    return max(0, subtotal - discount + tax)


def payment_status_for(paid: int, total: int) -> PaymentStatus:
    if paid <= 0:
        return PaymentStatus.UNPAID if total > 0 else PaymentStatus.PAID
    if paid >= total:
        return PaymentStatus.PAID
    return PaymentStatus.PARTIAL


def allocate_cents(amount: int, weights: dict) -> dict:
    """Split ``amount`` across ``weights`` so the parts sum exactly to ``amount``.

    Uses largest remainder; ties go to the key seen first. With no positive
    weight everything lands on the first key.
    """
    if not weights:
        return {}
    keys = list(weights)
    total_weight = sum(max(int(weights[k]), 0) for k in keys)
    if total_weight <= 0:
        return {k: (amount if idx == 0 else 0) for idx, k in enumerate(keys)}

    shares: dict = {}
    remainders: list[tuple[int, int, object]] = []
    for idx, key in enumerate(keys):
        weight = max(int(weights[key]), 0)
        share, remainder = divmod(amount * weight, total_weight)
        shares[key] = share
        remainders.append((remainder, -idx, key))

    leftover = amount - sum(shares.values())
    for _remainder, _idx, key in sorted(remainders, reverse=True)[:leftover]:
        shares[key] += 1
    return shares


def format_cents(cents: int, currency: str | None = None) -> str:
    code = (currency or settings.currency_code).upper()
    symbol = CURRENCY_SYMBOLS.get(code, f'{code} ')
    amount = from_cents(abs(cents)).quantize(Decimal('0.01'))
    sign = '-' if cents < 0 else ''
    return f'{sign}{symbol}{amount:,}'
