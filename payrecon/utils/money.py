from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

MONEY_QUANT = Decimal("0.01")
ZERO = Decimal("0.00")

ZERO_DECIMAL_CURRENCIES = {"CLP", "JPY", "VND", "KRW"}
# Stripe expects these in thousandths, with the last digit 0 for card payments.
THREE_DECIMAL_CURRENCIES = {"BHD", "JOD", "KWD", "OMR", "TND"}


def to_money(value: Any | None, *, default: Decimal | None = None) -> Decimal | None:
    """Coerce ``value`` to a two-decimal ``Decimal``; ``None`` yields ``default``."""
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid monetary amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid monetary amount: {value!r}")
    return amount.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def minor_unit_factor(currency: str) -> Decimal:
    code = currency.upper()
    if code in ZERO_DECIMAL_CURRENCIES:
        return Decimal("1")
    if code in THREE_DECIMAL_CURRENCIES:
        return Decimal("1000")
    return Decimal("100")


def to_minor_units(amount: Decimal, currency: str) -> int:
    factor = minor_unit_factor(currency)
    if factor == 1:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    quantized = amount.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)
    return int((quantized * factor).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, currency: str) -> Decimal:
    value = Decimal(amount) / minor_unit_factor(currency)
    return value.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)
