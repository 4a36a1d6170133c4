"""
PayDrop — Pricing table
Storage fee (USDC) per retention duration. Only the listed durations are sold.
"""
from decimal import Decimal

PRICING: dict[int, Decimal] = {
    1:  Decimal("0.05"),   # 1 day   = $0.05 USDC
    7:  Decimal("0.15"),   # 7 days  = $0.15 USDC
    30: Decimal("0.25"),   # 30 days = $0.25 USDC
}

DURATION_OPTIONS: tuple[int, ...] = tuple(sorted(PRICING))


def price_for(days: int) -> Decimal | None:
    """Fee for a retention period, or None when the duration is not on offer."""
    return PRICING.get(days)


def is_valid_duration(value: int | str | None) -> bool:
    try:
        return int(value) in PRICING
    except (TypeError, ValueError):
        return False
