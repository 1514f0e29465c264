# marketplace/domain/money.py
"""
Decimal helpers for every amount the cart and order code touches.

Amounts are ``Decimal`` quantized to two places with ROUND_HALF_UP. Floats
are only accepted at the boundary and go through ``str()`` first.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable, Mapping

from marketplace.domain.errors import ValidationFailure

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

_SYMBOLS = {"MXN": "$", "USD": "$", "EUR": "€"}


def to_money(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationFailure(f"Invalid monetary amount: {value!r}")


def line_total(quantity: int, unit_price) -> Decimal:
    return to_money(Decimal(quantity) * to_money(unit_price))


def sum_money(amounts: Iterable) -> Decimal:
    return to_money(sum((to_money(a) for a in amounts), ZERO))


def apply_rate(amount, rate) -> Decimal:
    return to_money(to_money(amount) * Decimal(str(rate)))


def convert(amount, from_currency: str, to_currency: str, rates: Mapping[str, Decimal]) -> Decimal:
    from_currency = (from_currency or "").upper()
    to_currency = (to_currency or "").upper()
    if not from_currency or from_currency == to_currency:
        return to_money(amount)

    rate = rates.get(f"{from_currency}:{to_currency}")
    if rate is None:
        inverse = rates.get(f"{to_currency}:{from_currency}")
        if not inverse:
            raise ValidationFailure(
                f"No exchange rate for {from_currency} -> {to_currency}",
                from_currency=from_currency,
                to_currency=to_currency,
            )
        rate = Decimal(1) / Decimal(str(inverse))
    return apply_rate(amount, rate)


def format_currency(amount, currency: str = "MXN") -> str:
    symbol = _SYMBOLS.get(currency.upper(), "")
    return f"{symbol}{to_money(amount):,.2f} {currency.upper()}"


def same_amount(a, b) -> bool:
    return to_money(a) == to_money(b)
