"""
Order Service: 金額・重量の固定小数点ヘルパー

金額は小数2桁、重量は小数3桁、いずれも四捨五入 (HALF_UP)。
"""

from decimal import ROUND_HALF_UP, Decimal

ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

_CENTS = Decimal("0.01")
_GRAMS = Decimal("0.001")


def to_decimal(value: object) -> Decimal:
    """int / float / str / Decimal を Decimal に変換する。float は str 経由で誤差を避ける。"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round2(value: Decimal) -> Decimal:
    return to_decimal(value).quantize(_CENTS, rounding=ROUND_HALF_UP)


def round3(value: Decimal) -> Decimal:
    return to_decimal(value).quantize(_GRAMS, rounding=ROUND_HALF_UP)


def percentage_of(base: Decimal, percentage: Decimal) -> Decimal:
    """base の percentage% を返す。掛けてから100で割る。"""
    return round2(to_decimal(base) * to_decimal(percentage) / HUNDRED)
