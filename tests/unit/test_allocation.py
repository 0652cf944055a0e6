from __future__ import annotations

import random
from decimal import Decimal

import pytest

from customs_sync import allocation
from customs_sync.allocation import (
    billable_total,
    distribute,
    effective_floor,
    enforce_cap,
    redistribute_remainder,
    scale_to_cap,
    to_cents,
    validate_distribution,
)
from customs_sync.domain.models import LineItem

CAP = Decimal("25.00")
FLOOR = Decimal("0.50")
CEILING = Decimal("8.00")
TOLERANCE = Decimal("0.01")
PROPERTY_SEEDS = 300


def _items(*prices: str) -> list[LineItem]:
    return [LineItem(id=f"li-{i}", sku=f"SKU{i}", unit_price=Decimal(p)) for i, p in enumerate(prices)]


def test_scenario_prices_50_30_20_stay_within_cap_and_item_bounds(rng: random.Random) -> None:
    results = distribute(_items("50", "30", "20"), CAP, floor=FLOOR, ceiling=CEILING, rng=rng)

    assert billable_total(results) <= CAP + TOLERANCE
    for result in results:
        assert FLOOR <= result.value <= CEILING
        assert not result.is_complimentary
    assert validate_distribution(results, CAP, FLOOR, CEILING) == []


def test_complimentary_items_get_zero_and_keep_input_order(rng: random.Random) -> None:
    items = _items("0", "12.50", "-3", "7")

    results = distribute(items, CAP, rng=rng)

    assert [r.line_item_id for r in results] == [item.id for item in items]
    assert results[0].value == Decimal("0.00") and results[0].is_complimentary
    assert results[2].value == Decimal("0.00") and results[2].is_complimentary
    assert not results[1].is_complimentary
    assert not results[3].is_complimentary


@pytest.mark.parametrize(
    ("cap", "expected"),
    [
        (Decimal("25.00"), Decimal("8.00")),
        (Decimal("5.00"), Decimal("5.00")),
        (Decimal("0"), Decimal("0.00")),
    ],
)
def test_single_billable_item_gets_min_of_cap_and_ceiling(cap: Decimal, expected: Decimal) -> None:
    results = distribute(_items("0", "99.99"), cap, floor=FLOOR, ceiling=CEILING)

    assert results[1].value == expected
    assert results[0].value == Decimal("0.00")


def test_empty_and_all_complimentary_inputs() -> None:
    assert distribute([], CAP) == []

    results = distribute(_items("0", "0"), CAP)
    assert all(r.is_complimentary and r.value == Decimal("0.00") for r in results)


def test_negative_cap_is_treated_as_zero(rng: random.Random) -> None:
    results = distribute(_items("10", "20", "30"), Decimal("-5"), rng=rng)

    assert billable_total(results) == Decimal("0.00")


def test_cap_below_floor_budget_shrinks_floor_instead_of_exceeding_cap(rng: random.Random) -> None:
    cap = Decimal("1.00")
    results = distribute(_items("10", "10", "10", "10"), cap, floor=FLOOR, ceiling=CEILING, rng=rng)

    assert billable_total(results) <= cap + TOLERANCE
    assert validate_distribution(results, cap, FLOOR, CEILING) == []


def test_cap_invariant_holds_across_many_seeds() -> None:
    for seed in range(PROPERTY_SEEDS):
        rng = random.Random(seed)
        count = rng.randint(0, 10)
        prices = [str(rng.choice([0, -1, rng.uniform(0.01, 200)])) for _ in range(count)]
        cap = Decimal(str(round(rng.uniform(0, 40), 2)))
        items = _items(*prices)

        results = distribute(items, cap, floor=FLOOR, ceiling=CEILING, rng=rng)

        assert len(results) == len(items), seed
        assert billable_total(results) <= cap + TOLERANCE, seed
        for item, result in zip(items, results):
            assert result.line_item_id == item.id
            if item.unit_price <= 0:
                assert result.is_complimentary and result.value == Decimal("0.00"), seed
            else:
                assert result.value <= CEILING, seed
        assert validate_distribution(results, cap, FLOOR, CEILING) == [], seed


def test_repeated_calls_vary_but_same_seed_repeats() -> None:
    items = _items("40", "25", "15", "10")
    shared = random.Random(11)

    outcomes = {tuple(r.value for r in distribute(items, CAP, rng=shared)) for _ in range(20)}
    assert len(outcomes) > 1

    first = distribute(items, CAP, rng=random.Random(3))
    second = distribute(items, CAP, rng=random.Random(3))
    assert first == second


def test_default_generator_is_used_without_rng(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(allocation, "_default_rng", random.Random(5))
    expected = distribute(_items("10", "20"), CAP, rng=random.Random(5))

    assert distribute(_items("10", "20"), CAP) == expected


def test_effective_floor_shrinks_only_when_cap_cannot_cover_it() -> None:
    assert effective_floor(0.5, 25.0, 3) == 0.5
    assert effective_floor(0.5, 1.0, 4) == 0.25
    assert effective_floor(0.5, 1.0, 0) == 0.5


def test_scale_to_cap_only_scales_down() -> None:
    assert scale_to_cap([1.0, 2.0], 10.0, 0.5) == [1.0, 2.0]
    assert scale_to_cap([4.0, 6.0], 5.0, 0.5) == [2.0, 3.0]


def test_redistribute_remainder_respects_ceiling() -> None:
    shares = redistribute_remainder([7.5, 1.0, 1.0], 20.0, 8.0)

    assert all(share <= 8.0 for share in shares)
    assert sum(shares) <= 20.0 + 1e-9
    assert shares[0] == 8.0


def test_enforce_cap_trims_largest_first_down_to_floor() -> None:
    shares = enforce_cap([5.0, 1.0, 3.0], 7.0, 0.5)

    assert shares == [3.0, 1.0, 3.0]
    assert enforce_cap([1.0, 1.0], 5.0, 0.5) == [1.0, 1.0]


def test_to_cents_truncates() -> None:
    assert to_cents(1.239) == Decimal("1.23")
    assert to_cents(0.4999999999) == Decimal("0.50")
    assert to_cents(-2.0) == Decimal("0.00")


def test_validate_distribution_reports_violations() -> None:
    results = distribute(_items("10", "10"), CAP, rng=random.Random(1))
    assert validate_distribution(results, CAP) == []

    errors = validate_distribution(results, Decimal("1.00"))
    assert any("exceeds maximum" in error for error in errors)
