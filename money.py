from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union


def to_cents(value: Union[Decimal, int, float, str]) -> int:
    """
    Convert a currency amount (e.g. ``Decimal("12.34")``) into integer cents.
    Strings may use a comma as decimal separator.
    """
    if isinstance(value, str):
        clean = value.strip().replace("€", "").replace("$", "").replace(" ", "")
        clean = clean.replace(",", ".")
        if clean.count(".") > 1:
            parts = clean.split(".")
            clean = "".join(parts[:-1]) + "." + parts[-1]
        value = clean
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_amount(cents: int) -> float:
    return round(cents / 100, 2)


def round_money(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
