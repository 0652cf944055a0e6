"""
Customs value allocation across the line items of one order.

The distribution is randomised so that repeated orders do not carry identical,
uniform-looking customs values, while always honouring a total cap. The
algorithm is a sequence of pure stages so each one can be exercised on its own:

    draw_weights -> proportional_shares -> scale_to_cap
        -> redistribute_remainder -> enforce_cap -> to_cents

Floor policy: the cap always wins over the per-item floor. When ``cap / n`` is
below the configured floor, every stage uses ``cap / n`` as the floor instead
(see ``effective_floor``), so the total can never exceed the cap.

Usage:
    from customs_sync.allocation import distribute

    results = distribute(record.line_items, Decimal("25.00"), rng=random.Random(7))
"""

from __future__ import annotations

import random
from decimal import ROUND_DOWN, Decimal
from typing import Dict, List, Optional, Sequence, Tuple, Union

from customs_sync.domain.models import LineItem
from customs_sync.domain.results import AllocationResult

Number = Union[Decimal, float, int]

TOLERANCE = 0.01
DEFAULT_FLOOR = Decimal("0.50")
DEFAULT_CEILING = Decimal("8.00")
_CENT = Decimal("0.01")
_ZERO = Decimal("0.00")
_MIN_WEIGHT = 1e-3

_default_rng = random.Random()


def partition(items: Sequence[LineItem]) -> Tuple[List[LineItem], List[LineItem]]:
    """Split items into (billable, complimentary), preserving order."""
    billable = [item for item in items if item.unit_price > 0]
    complimentary = [item for item in items if item.unit_price <= 0]
    return billable, complimentary


def draw_weights(count: int, rng: random.Random) -> List[float]:
    """Positive, skewed random weights (product of two uniforms)."""
    weights: List[float] = []
    for _ in range(count):
        base = rng.random()
        skew = rng.random() * 0.5 + 0.75
        weights.append(max(base * skew, _MIN_WEIGHT))
    return weights


def effective_floor(floor: float, cap: float, count: int) -> float:
    if count <= 0:
        return floor
    return min(floor, cap / count)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def proportional_shares(
    weights: Sequence[float], cap: float, floor: float, ceiling: float
) -> List[float]:
    total = sum(weights)
    return [_clamp(weight / total * cap, floor, ceiling) for weight in weights]


def scale_to_cap(shares: Sequence[float], cap: float, floor: float) -> List[float]:
    """Scale all shares down proportionally when they exceed the cap, never below floor."""
    total = sum(shares)
    if total <= cap:
        return list(shares)
    factor = cap / total
    return [max(floor, share * factor) for share in shares]


def redistribute_remainder(shares: Sequence[float], cap: float, ceiling: float) -> List[float]:
    """
    Spread unused cap across shares still below the ceiling.

    Repeats while there is room and at least one share can still grow; each pass
    either saturates a share or exhausts the remainder, so at most ``len(shares)``
    passes are needed.
    """
    result = list(shares)
    for _ in range(len(result)):
        remaining = cap - sum(result)
        if remaining < TOLERANCE:
            break
        open_slots = [i for i, share in enumerate(result) if share < ceiling - TOLERANCE]
        if not open_slots:
            break
        extra = remaining / len(open_slots)
        for i in open_slots:
            result[i] = min(ceiling, result[i] + extra)
    return result


def enforce_cap(shares: Sequence[float], cap: float, floor: float) -> List[float]:
    """Remove any excess over the cap from the largest shares first, down to floor."""
    result = list(shares)
    excess = sum(result) - cap
    if excess <= 0:
        return result
    for i in sorted(range(len(result)), key=lambda idx: result[idx], reverse=True):
        if excess <= 0:
            break
        reduction = min(excess, max(0.0, result[i] - floor))
        result[i] -= reduction
        excess -= reduction
    return result


def to_cents(value: float) -> Decimal:
    """Truncate to two decimals; truncation keeps the rounded total within the cap."""
    if value <= 0:
        return _ZERO
    return Decimal(str(round(value, 6))).quantize(_CENT, rounding=ROUND_DOWN)


def allocate_shares(
    count: int,
    cap: float,
    floor: float,
    ceiling: float,
    rng: random.Random,
) -> List[float]:
    """Run the weighted multi-item stages and return unrounded shares."""
    floor = effective_floor(floor, cap, count)
    shares = proportional_shares(draw_weights(count, rng), cap, floor, ceiling)
    shares = scale_to_cap(shares, cap, floor)
    shares = redistribute_remainder(shares, cap, ceiling)
    return enforce_cap(shares, cap, floor)


def distribute(
    items: Sequence[LineItem],
    cap: Number,
    *,
    floor: Number = DEFAULT_FLOOR,
    ceiling: Number = DEFAULT_CEILING,
    rng: Optional[random.Random] = None,
) -> List[AllocationResult]:
    """
    Distribute at most ``cap`` across the billable items.

    Parameters
    ----------
    items : Sequence[LineItem]
        Line items of one order; items priced <= 0 are complimentary and get 0.00.
    cap : Decimal | float
        Maximum total customs value for the billable items.
    floor, ceiling : Decimal | float
        Per-item bounds for billable items. The cap dominates the floor.
    rng : random.Random, optional
        Source of randomness. Defaults to the module-level generator.

    Returns
    -------
    List[AllocationResult]
        One result per input item, in input order.
    """
    if not items:
        return []

    rng = rng or _default_rng
    cap_f = max(0.0, float(cap))
    floor_f = float(floor)
    ceiling_f = float(ceiling)

    billable, _ = partition(items)
    values: Dict[str, Decimal] = {}

    if len(billable) == 1:
        values[billable[0].id] = to_cents(min(cap_f, ceiling_f))
    elif billable:
        shares = allocate_shares(len(billable), cap_f, floor_f, ceiling_f, rng)
        for item, share in zip(billable, shares):
            values[item.id] = to_cents(share)

    results: List[AllocationResult] = []
    for item in items:
        if item.unit_price > 0:
            results.append(AllocationResult(item.id, values[item.id], False))
        else:
            results.append(AllocationResult(item.id, _ZERO, True))
    return results


def billable_total(results: Sequence[AllocationResult]) -> Decimal:
    return sum((r.value for r in results if not r.is_complimentary), _ZERO)


def validate_distribution(
    results: Sequence[AllocationResult],
    cap: Number,
    floor: Number = DEFAULT_FLOOR,
    ceiling: Number = DEFAULT_CEILING,
) -> List[str]:
    """
    Check a distribution against its constraints and return human-readable violations.

    The floor is checked against the effective floor (see module docstring).
    """
    errors: List[str] = []
    cap_d = Decimal(str(cap))
    tolerance = Decimal(str(TOLERANCE))
    total = billable_total(results)
    billable_count = sum(1 for r in results if not r.is_complimentary)

    if total > cap_d + tolerance:
        errors.append(f"Total customs value {total} exceeds maximum {cap_d}")

    floor_d = Decimal(str(effective_floor(float(floor), float(cap_d), billable_count)))
    ceiling_d = Decimal(str(ceiling))
    for r in results:
        if r.is_complimentary:
            if r.value != 0:
                errors.append(f"Complimentary item {r.line_item_id} has non-zero value {r.value}")
            continue
        if billable_count > 1 and r.value < floor_d - tolerance:
            errors.append(f"Item {r.line_item_id} value {r.value} below minimum {floor_d}")
        if r.value > ceiling_d + tolerance:
            errors.append(f"Item {r.line_item_id} value {r.value} exceeds maximum {ceiling_d}")
    return errors


__all__ = [
    "TOLERANCE",
    "DEFAULT_FLOOR",
    "DEFAULT_CEILING",
    "partition",
    "draw_weights",
    "effective_floor",
    "proportional_shares",
    "scale_to_cap",
    "redistribute_remainder",
    "enforce_cap",
    "to_cents",
    "allocate_shares",
    "distribute",
    "billable_total",
    "validate_distribution",
]
