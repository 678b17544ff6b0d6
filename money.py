from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

from models import CurrencyCode


MINOR_UNIT_SCALE: dict[CurrencyCode, int] = {
    CurrencyCode.usd: 100,
    CurrencyCode.krw: 1,
}
CURRENCY_SYMBOL: dict[CurrencyCode, str] = {
    CurrencyCode.usd: "$",
    CurrencyCode.krw: "₩",
}


class FxUnavailable(ValueError):
    pass


@dataclass(frozen=True)
class FxSnapshot:
    usd_krw: Decimal  # KRW per 1 USD

    @classmethod
    def from_value(cls, value: Union[float, Decimal, str, None]) -> Optional[FxSnapshot]:
        if value is None:
            return None
        try:
            rate = Decimal(str(value))
        except InvalidOperation:
            return None
        if not rate.is_finite() or rate <= 0:
            return None
        return cls(usd_krw=rate)


def normalize_currency(
    value: object, fallback: CurrencyCode = CurrencyCode.usd
) -> CurrencyCode:
    if isinstance(value, CurrencyCode):
        return value
    try:
        return CurrencyCode(str(value or "").strip().upper())
    except ValueError:
        return fallback


def _to_int_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def convert_minor(
    amount_minor: int,
    from_currency: CurrencyCode,
    to_currency: CurrencyCode,
    fx_usd_krw: Union[float, Decimal, str, None],
) -> int:
    if from_currency == to_currency:
        return int(amount_minor)
    snapshot = FxSnapshot.from_value(fx_usd_krw)
    if snapshot is None:
        raise FxUnavailable(
            f"FX snapshot required for {from_currency.value}->{to_currency.value}"
        )

    major = Decimal(int(amount_minor)) / MINOR_UNIT_SCALE[from_currency]
    if from_currency == CurrencyCode.usd and to_currency == CurrencyCode.krw:
        converted = major * snapshot.usd_krw
    elif from_currency == CurrencyCode.krw and to_currency == CurrencyCode.usd:
        converted = major / snapshot.usd_krw
    else:
        raise FxUnavailable(
            f"Unsupported currency pair {from_currency.value}->{to_currency.value}"
        )
    return _to_int_half_up(converted * MINOR_UNIT_SCALE[to_currency])


def safe_non_negative_int(value: object) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return max(0, int(number))


def format_money(amount_minor: int, currency: CurrencyCode) -> str:
    scale = MINOR_UNIT_SCALE[currency]
    sign = "-" if amount_minor < 0 else ""
    absolute = abs(amount_minor)
    symbol = CURRENCY_SYMBOL[currency]
    if scale == 1:
        return f"{sign}{symbol}{absolute:,}"
    return f"{sign}{symbol}{absolute / scale:,.2f}"
