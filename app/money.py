from decimal import ROUND_HALF_UP, Decimal
from typing import Union

Number = Union[int, float, Decimal, str]


def to_decimal(value: Number) -> Decimal:
    # str() first so floats like 0.3333 stay 0.3333 instead of their binary expansion
    return value if isinstance(value, Decimal) else Decimal(str(value))


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def cents_share(amount_cents: int, fraction: Number) -> int:
    return round_half_up(Decimal(amount_cents) * to_decimal(fraction))


def split_cents(amount_cents: int, fractions: list[tuple[int, Number]]) -> list[tuple[int, int]]:
    """Split ``amount_cents`` over ``(employee_id, fraction)`` pairs in the given order.

    Every share but the last is rounded half up, never past what is still
    unallocated; the last takes whatever is left, so the shares always add back
    to ``amount_cents``.
    """
    shares: list[tuple[int, int]] = []
    allocated = 0
    for index, (employee_id, fraction) in enumerate(fractions):
        if index == len(fractions) - 1:
            shares.append((employee_id, amount_cents - allocated))
        else:
            share = min(cents_share(amount_cents, fraction), amount_cents - allocated)
            shares.append((employee_id, share))
            allocated += share
    return shares
