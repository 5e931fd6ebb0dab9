from __future__ import annotations

import pytest

from dual_nback.adaptive import (
    AdaptiveAction,
    AdaptiveAdjustment,
    TriggerKind,
    Urgency,
    analyze_adaptive_triggers,
    apply_adjustment,
    calculate_adaptive_adjustments,
    calculate_dynamic_match_probabilities,
    excellent_threshold,
    poor_threshold,
    snapshot_adjustment,
    target_accuracy,
)
from dual_nback.core import Channel
from dual_nback.performance import PerformanceSnapshot, ResponseEvent, ResponseOutcome
from dual_nback.profiles import profile_for


def _snap(accuracy: float, missed: int = 0, round_index: int = 0) -> PerformanceSnapshot:
    return PerformanceSnapshot(
        accuracy=accuracy,
        mean_response_time_ms=550.0,
        missed_count=missed,
        total_attempts=20,
        captured_at_round=round_index,
    )


def test_thresholds_depend_on_level() -> None:
    assert excellent_threshold(2) == 91.0
    assert excellent_threshold(10) == 85.0
    assert poor_threshold(2) == 59.0
    assert poor_threshold(5) == 50.0
    assert target_accuracy(2) == 85.0
    assert target_accuracy(3) == 80.0
    assert target_accuracy(7) == 60.0


def test_insufficient_history_maintains() -> None:
    trigger = analyze_adaptive_triggers([_snap(99.0), _snap(99.0)], 2)
    assert trigger.kind is TriggerKind.INSUFFICIENT_DATA
    assert not trigger.should_adjust
    assert trigger.recommended_action is AdaptiveAction.MAINTAIN
    assert calculate_adaptive_adjustments([_snap(99.0)], 2) == AdaptiveAdjustment()


def test_excellent_run_recommends_increase_with_high_urgency() -> None:
    history = [_snap(95.0, missed=1), _snap(96.0, missed=1), _snap(97.0, missed=1)]
    trigger = analyze_adaptive_triggers(history, 2)
    assert trigger.kind is TriggerKind.EXCELLENT
    assert trigger.should_adjust
    assert trigger.recommended_action is AdaptiveAction.INCREASE
    assert trigger.urgency is Urgency.HIGH


def test_poor_run_recommends_decrease() -> None:
    trigger = analyze_adaptive_triggers([_snap(40.0), _snap(38.0), _snap(35.0)], 3)
    assert trigger.kind is TriggerKind.POOR
    assert trigger.recommended_action is AdaptiveAction.DECREASE
    assert trigger.urgency is Urgency.HIGH


def test_heavy_missing_counts_as_poor() -> None:
    trigger = analyze_adaptive_triggers([_snap(75.0, missed=10)] * 3, 2)
    assert trigger.kind is TriggerKind.POOR
    assert trigger.urgency is Urgency.MEDIUM


def test_declining_trend_and_stable() -> None:
    declining = analyze_adaptive_triggers([_snap(80.0), _snap(75.0), _snap(62.0)], 2)
    assert declining.kind is TriggerKind.DECLINING_TREND
    assert declining.recommended_action is AdaptiveAction.DECREASE
    assert declining.urgency is Urgency.MEDIUM

    stable = analyze_adaptive_triggers([_snap(75.0), _snap(76.0), _snap(74.0)], 2)
    assert stable.kind is TriggerKind.STABLE
    assert not stable.should_adjust


def test_only_latest_snapshots_drive_the_trigger() -> None:
    history = [_snap(20.0)] * 10 + [_snap(95.0), _snap(96.0), _snap(97.0)]
    assert analyze_adaptive_triggers(history, 2).recommended_action is AdaptiveAction.INCREASE


def test_continuous_adjustments_move_toward_target() -> None:
    up = calculate_adaptive_adjustments(
        [_snap(95.0, missed=1), _snap(96.0, missed=1), _snap(97.0, missed=1)], 2
    )
    assert 1.0 < up.match_rate_multiplier <= 1.5
    assert up.complexity_bonus_delta > 0.0
    assert up.pacing_delta == pytest.approx(-1.0)
    assert 0.0 < up.confidence <= 1.0

    down = calculate_adaptive_adjustments([_snap(40.0), _snap(38.0), _snap(35.0)], 3)
    assert down.match_rate_multiplier == pytest.approx(0.5)
    assert down.complexity_bonus_delta == pytest.approx(-0.1)
    assert down.pacing_delta == pytest.approx(2.0)


def test_apply_adjustment_clamps_profile() -> None:
    base = profile_for("medium")
    assert apply_adjustment(base, AdaptiveAdjustment()) == base

    harder = apply_adjustment(
        base, AdaptiveAdjustment(match_rate_multiplier=1.5, complexity_bonus_delta=0.2, pacing_delta=-1.0)
    )
    assert harder.position_match_rate == pytest.approx(0.45)
    assert harder.audio_match_rate == pytest.approx(0.45)
    assert harder.overlap_bonus == pytest.approx(0.2)
    assert harder.min_gap == 1

    easier = apply_adjustment(
        base, AdaptiveAdjustment(match_rate_multiplier=0.5, complexity_bonus_delta=-0.1, pacing_delta=2.0)
    )
    assert easier.position_match_rate == pytest.approx(0.15)
    assert easier.overlap_bonus == pytest.approx(0.0)
    assert easier.min_gap == 3
    assert easier.max_consecutive == base.max_consecutive


def test_snapshot_adjustment_rule() -> None:
    assert snapshot_adjustment(_snap(90.0)).match_rate_multiplier == pytest.approx(1.2)
    assert snapshot_adjustment(_snap(90.0, missed=4)).match_rate_multiplier == pytest.approx(1.0)
    assert snapshot_adjustment(_snap(50.0)).match_rate_multiplier == pytest.approx(0.8)
    assert snapshot_adjustment(_snap(70.0, missed=8)).complexity_bonus_delta == pytest.approx(-0.05)
    assert snapshot_adjustment(_snap(70.0)) == AdaptiveAdjustment(confidence=1.0)


def test_dynamic_match_probabilities() -> None:
    few = [
        ResponseEvent(round_index=i, channel=Channel.POSITION, outcome=ResponseOutcome.HIT)
        for i in range(3)
    ]
    result = calculate_dynamic_match_probabilities(0.3, 0.3, few, 4)
    assert (result.position, result.audio, result.confidence) == (0.3, 0.3, 0.0)

    events: list[ResponseEvent] = []
    for i in range(5):
        events.append(ResponseEvent(i, Channel.POSITION, ResponseOutcome.HIT, 500.0))
        events.append(ResponseEvent(i, Channel.AUDIO, ResponseOutcome.FALSE_POSITIVE, 500.0))
    result = calculate_dynamic_match_probabilities(0.3, 0.3, events, 4)
    assert result.position == pytest.approx(0.3 * 0.7 + 0.3 * 1.15 * 0.3)
    assert result.audio == pytest.approx(0.3 * 0.7 + 0.3 * 0.5 * 0.3)
    assert result.confidence == pytest.approx(1.0)
