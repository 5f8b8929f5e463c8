"""金额工具 - 账本内使用两位小数 Decimal，网关边界使用最小货币单位整数"""
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW"}
CENT = Decimal("0.01")


def quantize(amount: Union[Decimal, int, float, str]) -> Decimal:
    """规范化为两位小数"""
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal, currency: str) -> int:
    exponent = 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2
    return int((Decimal(amount) * (Decimal(10) ** exponent)).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int, currency: str) -> Decimal:
    exponent = 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2
    return quantize(Decimal(amount_minor) / (Decimal(10) ** exponent))
