"""Fixed-point money and percentage arithmetic.

Amounts are Python ints in the token's minor units; percentages are integer
basis points (100% == 10_000). Decimal is used only to parse and format
display strings at the API boundary. Floats are rejected outright.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from milestone_escrow.domain.exceptions import ValidationError

BPS_PER_PERCENT = 100
FULL_BPS = 100 * BPS_PER_PERCENT


def _to_decimal(value: Decimal | str | int, field: str) -> Decimal:
    if isinstance(value, float):
        raise ValidationError(f"{field} must not be a floating-point number", field=field)
    try:
        result = Decimal(str(value)) if not isinstance(value, Decimal) else value
    except InvalidOperation as err:
        raise ValidationError(f"{field} is not a number: {value!r}", field=field) from err
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite", field=field)
    return result


def percentage_to_bps(value: Decimal | str | int) -> int:
    """Convert a percentage (e.g. "33.33") to basis points, exactly.

    Raises ValidationError for more than two decimal places or a value
    outside 0 < p <= 100.
    """
    pct = _to_decimal(value, "percentage")
    scaled = pct * BPS_PER_PERCENT
    if scaled != scaled.to_integral_value():
        raise ValidationError(
            f"percentage {pct} has more than two decimal places", field="percentage"
        )
    bps = int(scaled)
    if bps <= 0 or bps > FULL_BPS:
        raise ValidationError(
            f"percentage must be greater than 0 and at most 100, got {pct}",
            field="percentage",
        )
    return bps


def bps_to_percentage(bps: int) -> Decimal:
    return (Decimal(bps) / BPS_PER_PERCENT).quantize(Decimal("0.01"))


def split_by_bps(total: int, shares_bps: list[int]) -> list[int]:
    """Split a total into tranches by basis points.

    Every tranche but the last gets floor(total * bps / 10000); the last one
    takes the remainder, so the result always sums to total.

    >>> split_by_bps(1000, [3000, 4000, 3000])
    [300, 400, 300]
    >>> split_by_bps(100, [3333, 3333, 3334])
    [33, 33, 34]
    """
    if not shares_bps:
        raise ValidationError("at least one milestone is required", field="milestones")
    if sum(shares_bps) != FULL_BPS:
        raise ValidationError(
            f"milestone percentages must sum to exactly 100, got {bps_to_percentage(sum(shares_bps))}",
            field="milestones",
        )
    amounts = [total * bps // FULL_BPS for bps in shares_bps[:-1]]
    amounts.append(total - sum(amounts))
    return amounts


def parse_amount(value: Decimal | str | int, decimals: int) -> int:
    """Parse a display amount (e.g. "12.50") into integer minor units."""
    amount = _to_decimal(value, "amount")
    scaled = amount.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValidationError(
            f"amount {amount} has more than {decimals} decimal places", field="amount"
        )
    return int(scaled)


def format_amount(minor_units: int, decimals: int) -> str:
    """Format integer minor units as a display string with fixed decimals."""
    if decimals == 0:
        return str(minor_units)
    quantum = Decimal(1).scaleb(-decimals)
    return str(Decimal(minor_units).scaleb(-decimals).quantize(quantum))
