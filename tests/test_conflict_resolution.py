from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from stocktake.core.errors import ErrorCode
from stocktake.models import CountConflict, ResolutionRule
from stocktake.services.conflict_resolution_service import Observation, evaluate_product

from conftest import EAN_FILM_A, EAN_FILM_B, lines

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def obs(count_type, quantity, minutes=None):
    return Observation(
        run_id=uuid4(),
        count_type=count_type,
        quantity=Decimal(str(quantity)),
        operator=f"operator {count_type}",
        completed_at=T0 + timedelta(minutes=minutes if minutes is not None else count_type * 10),
    )


# ============================================================================
# PURE RULES
# ============================================================================

def test_matching_counts_resolve():
    evaluation = evaluate_product([obs(1, 10), obs(2, 10)])

    assert evaluation.resolved
    assert evaluation.rule == ResolutionRule.COUNTS_MATCHED
    assert evaluation.quantity == Decimal("10")
    assert evaluation.resolved_at == T0 + timedelta(minutes=20)


def test_two_disagreeing_counts_stay_unresolved():
    evaluation = evaluate_product([obs(1, 10), obs(2, 12)])

    assert not evaluation.resolved
    assert evaluation.quantity is None
    assert evaluation.sample_variance == pytest.approx(2.0)


def test_majority_of_three():
    evaluation = evaluate_product([obs(1, 10), obs(2, 12), obs(3, 10)])

    assert evaluation.resolved
    assert evaluation.rule == ResolutionRule.MAJORITY_OF_THREE
    assert evaluation.quantity == Decimal("10")
    assert evaluation.resolved_at == T0 + timedelta(minutes=30)


def test_three_distinct_counts_need_manual_adjudication():
    evaluation = evaluate_product([obs(1, 10), obs(2, 12), obs(3, 14)])

    assert not evaluation.resolved
    assert evaluation.sample_variance == pytest.approx(4.0)


def test_tolerance_match_keeps_latest_value():
    evaluation = evaluate_product([obs(1, 10, minutes=30), obs(2, 11, minutes=10)], Decimal("1"))

    assert evaluation.resolved
    assert evaluation.rule == ResolutionRule.COUNTS_MATCHED
    assert evaluation.quantity == Decimal("10")


def test_tolerance_majority_prefers_most_recent_pair():
    evaluation = evaluate_product([obs(1, 10), obs(2, 11), obs(3, 12)], Decimal("1"))

    assert evaluation.rule == ResolutionRule.MAJORITY_OF_THREE
    assert evaluation.quantity == Decimal("12")


def test_observation_count_limits():
    with pytest.raises(ValueError):
        evaluate_product([])
    with pytest.raises(ValueError):
        evaluate_product([obs(1, 1), obs(2, 1), obs(3, 1), obs(3, 1)])


# ============================================================================
# SESSION VIEW
# ============================================================================

async def _count(lifecycle, seed, clock, owner, count_type, scan_lines, zone=None):
    zone = zone or seed.zone_b1
    started = await lifecycle().start_run(zone, seed.shop_id, owner, count_type)
    assert started.success, started.error
    clock.advance(timedelta(minutes=15))
    completed = await lifecycle().complete_run(zone, owner, count_type, scan_lines)
    assert completed.success, completed.error
    return completed


async def test_disagreement_is_reported_with_observations(lifecycle, conflicts, seed, clock, count_rows):
    await _count(lifecycle, seed, clock, seed.alice, 1, lines((EAN_FILM_A, 10)))
    second = await _count(lifecycle, seed, clock, seed.bob, 2, lines((EAN_FILM_A, 12)))

    result = await conflicts().get_session_conflicts(second.session_id)

    assert result.success
    assert result.resolved == []
    assert len(result.conflicts) == 1
    conflict = result.conflicts[0]
    assert conflict.product.code == EAN_FILM_A
    assert conflict.product.sku == "DVD-001"
    assert conflict.zone_code == "B1"
    assert [o.quantity for o in conflict.observations] == [Decimal("10"), Decimal("12")]
    assert [o.operator for o in conflict.observations] == ["Alice", "Bob"]
    assert conflict.evaluation.sample_variance > 0
    assert await count_rows(CountConflict) == 1


async def test_matching_counts_are_resolved(lifecycle, conflicts, seed, clock, count_rows):
    await _count(lifecycle, seed, clock, seed.alice, 1, lines((EAN_FILM_A, 10)))
    second = await _count(lifecycle, seed, clock, seed.bob, 2, lines((EAN_FILM_A, 10)))

    result = await conflicts().get_session_conflicts(second.session_id)

    assert result.conflicts == []
    assert len(result.resolved) == 1
    resolved = result.resolved[0]
    assert resolved.evaluation.rule == ResolutionRule.COUNTS_MATCHED
    assert resolved.evaluation.quantity == Decimal("10")
    assert resolved.evaluation.resolved_at == second.completed_at
    assert await count_rows(CountConflict) == 0


async def test_tiebreak_majority_clears_projection(lifecycle, conflicts, seed, clock, count_rows):
    await _count(lifecycle, seed, clock, seed.alice, 1, lines((EAN_FILM_A, 10)))
    await _count(lifecycle, seed, clock, seed.bob, 2, lines((EAN_FILM_A, 12)))
    assert await count_rows(CountConflict) == 1

    third = await _count(lifecycle, seed, clock, seed.carol, 3, lines((EAN_FILM_A, 10)))

    result = await conflicts().get_session_conflicts(third.session_id)
    assert result.conflicts == []
    assert result.resolved[0].evaluation.rule == ResolutionRule.MAJORITY_OF_THREE
    assert result.resolved[0].evaluation.quantity == Decimal("10")
    assert await count_rows(CountConflict) == 0


async def test_missing_product_counts_as_zero(lifecycle, conflicts, seed, clock):
    await _count(lifecycle, seed, clock, seed.alice, 1, lines((EAN_FILM_A, 2), (EAN_FILM_B, 1)))
    second = await _count(lifecycle, seed, clock, seed.bob, 2, lines((EAN_FILM_A, 2)))

    result = await conflicts().get_session_conflicts(second.session_id)

    assert [c.product.code for c in result.conflicts] == [EAN_FILM_B]
    assert [o.quantity for o in result.conflicts[0].observations] == [Decimal("1"), Decimal("0")]
    assert [r.product.code for r in result.resolved] == [EAN_FILM_A]


async def test_single_completed_run_has_nothing_to_compare(lifecycle, conflicts, seed, clock):
    first = await _count(lifecycle, seed, clock, seed.alice, 1, lines((EAN_FILM_A, 2)))

    result = await conflicts().get_session_conflicts(first.session_id)

    assert result.conflicts == []
    assert result.resolved == []


async def test_zones_are_compared_independently(lifecycle, conflicts, seed, clock):
    await _count(lifecycle, seed, clock, seed.alice, 1, lines((EAN_FILM_A, 5)))
    await _count(lifecycle, seed, clock, seed.bob, 2, lines((EAN_FILM_A, 5)))
    await _count(lifecycle, seed, clock, seed.alice, 1, lines((EAN_FILM_A, 3)), zone=seed.zone_b2)
    last = await _count(lifecycle, seed, clock, seed.bob, 2, lines((EAN_FILM_A, 4)), zone=seed.zone_b2)

    result = await conflicts().get_session_conflicts(last.session_id)

    assert [c.zone_code for c in result.conflicts] == ["B2"]
    assert [r.zone_code for r in result.resolved] == ["B1"]


async def test_restarted_runs_do_not_contribute(lifecycle, conflicts, seed, clock):
    await _count(lifecycle, seed, clock, seed.alice, 1, lines((EAN_FILM_A, 10)))
    await lifecycle().start_run(seed.zone_b1, seed.shop_id, seed.bob, 2)
    restarted = await lifecycle().restart_run(seed.zone_b1, seed.bob, 2)
    assert restarted.closed_runs == 1

    second = await _count(lifecycle, seed, clock, seed.bob, 2, lines((EAN_FILM_A, 10)))
    result = await conflicts().get_session_conflicts(second.session_id)

    assert result.conflicts == []
    assert len(result.resolved[0].observations) == 2


async def test_tolerance_from_service(lifecycle, conflicts, seed, clock):
    await _count(lifecycle, seed, clock, seed.alice, 1, lines((EAN_FILM_A, "10")))
    second = await _count(lifecycle, seed, clock, seed.bob, 2, lines((EAN_FILM_A, "10.5")))

    strict = await conflicts().get_session_conflicts(second.session_id)
    lenient = await conflicts(tolerance=Decimal("0.5")).get_session_conflicts(second.session_id)

    assert len(strict.conflicts) == 1
    assert lenient.resolved[0].evaluation.quantity == Decimal("10.5")


async def test_unknown_session(conflicts):
    result = await conflicts().get_session_conflicts(uuid4())

    assert result.error.code == ErrorCode.SESSION_NOT_FOUND
