"""Closed-loop difficulty control from performance snapshots.

Everything here is a pure function of the snapshot history passed in. Two
views are offered:

* ``analyze_adaptive_triggers``: a discrete recommendation (increase,
  decrease, maintain) with an urgency, driven by n-level dependent
  thresholds over the last three snapshots.
* ``calculate_adaptive_adjustments``: continuous, clamped parameter
  adjustments that move smoothly toward a target accuracy band and react to
  the trend before a discrete threshold is crossed.

Recommendations are advisory; ``apply_adjustment`` turns one into a concrete
``DifficultyProfile`` for the next segment.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace
from enum import StrEnum

from loguru import logger

from .core import Channel, clamp, clamp01, round_half_up
from .performance import HISTORY_LIMIT, PerformanceSnapshot, ResponseEvent, ResponseOutcome
from .profiles import MAX_MATCH_RATE, MAX_OVERLAP_BONUS, MIN_MATCH_RATE, DifficultyProfile

TRIGGER_WINDOW = 3
SMOOTHING_WINDOW = 5


class AdaptiveAction(StrEnum):
    INCREASE = "increase"
    DECREASE = "decrease"
    MAINTAIN = "maintain"


class Urgency(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TriggerKind(StrEnum):
    INSUFFICIENT_DATA = "insufficient_data"
    EXCELLENT = "excellent"
    POOR = "poor"
    DECLINING_TREND = "declining_trend"
    STABLE = "stable"


@dataclass(frozen=True, slots=True)
class AdaptiveTrigger:
    kind: TriggerKind
    should_adjust: bool
    urgency: Urgency
    recommended_action: AdaptiveAction
    reason: str


@dataclass(frozen=True, slots=True)
class AdaptiveAdjustment:
    match_rate_multiplier: float = 1.0  # 0.5..1.5
    complexity_bonus_delta: float = 0.0  # -0.1..0.2
    pacing_delta: float = 0.0  # -1..2, positive widens spacing between matches
    confidence: float = 0.0  # 0..1


def excellent_threshold(n_level: int) -> float:
    return float(max(85, 95 - 2 * n_level))


def poor_threshold(n_level: int) -> float:
    return float(max(50, 65 - 3 * n_level))


def target_accuracy(n_level: int) -> float:
    return float(max(60, 85 - 5 * (n_level - 2)))


def _bounded(history: Sequence[PerformanceSnapshot]) -> list[PerformanceSnapshot]:
    return list(history)[-HISTORY_LIMIT:]


def analyze_adaptive_triggers(
    history: Sequence[PerformanceSnapshot], n_level: int
) -> AdaptiveTrigger:
    snaps = _bounded(history)
    if len(snaps) < TRIGGER_WINDOW:
        return AdaptiveTrigger(
            kind=TriggerKind.INSUFFICIENT_DATA,
            should_adjust=False,
            urgency=Urgency.LOW,
            recommended_action=AdaptiveAction.MAINTAIN,
            reason="Insufficient data for analysis",
        )

    recent = snaps[-TRIGGER_WINDOW:]
    avg_accuracy = sum(s.accuracy for s in recent) / len(recent)
    avg_missed = sum(s.missed_rate for s in recent) / len(recent)
    excellent = excellent_threshold(n_level)
    poor = poor_threshold(n_level)

    if avg_accuracy >= excellent and avg_missed < 0.1:
        all_excellent = all(s.accuracy >= excellent for s in recent)
        trigger = AdaptiveTrigger(
            kind=TriggerKind.EXCELLENT,
            should_adjust=True,
            urgency=Urgency.HIGH if all_excellent else Urgency.MEDIUM,
            recommended_action=AdaptiveAction.INCREASE,
            reason=f"Excellent performance ({avg_accuracy:.1f}% accuracy)",
        )
    elif avg_accuracy <= poor or avg_missed > 0.4:
        trigger = AdaptiveTrigger(
            kind=TriggerKind.POOR,
            should_adjust=True,
            urgency=Urgency.HIGH if avg_accuracy <= poor - 10.0 else Urgency.MEDIUM,
            recommended_action=AdaptiveAction.DECREASE,
            reason=f"Poor performance ({avg_accuracy:.1f}% accuracy, {avg_missed * 100.0:.1f}% missed)",
        )
    elif recent[-1].accuracy - recent[0].accuracy < -15.0:
        drop = recent[-1].accuracy - recent[0].accuracy
        trigger = AdaptiveTrigger(
            kind=TriggerKind.DECLINING_TREND,
            should_adjust=True,
            urgency=Urgency.MEDIUM,
            recommended_action=AdaptiveAction.DECREASE,
            reason=f"Declining performance trend ({drop:.1f}% drop)",
        )
    else:
        trigger = AdaptiveTrigger(
            kind=TriggerKind.STABLE,
            should_adjust=False,
            urgency=Urgency.LOW,
            recommended_action=AdaptiveAction.MAINTAIN,
            reason="Performance within acceptable range",
        )

    logger.debug(
        "Adaptive trigger n={} avg_accuracy={:.1f}% avg_missed={:.1f}% -> {} ({})",
        n_level,
        avg_accuracy,
        avg_missed * 100.0,
        trigger.recommended_action,
        trigger.urgency,
    )
    return trigger


def calculate_adaptive_adjustments(
    history: Sequence[PerformanceSnapshot], n_level: int
) -> AdaptiveAdjustment:
    snaps = _bounded(history)
    if len(snaps) < TRIGGER_WINDOW:
        return AdaptiveAdjustment()

    recent = snaps[-SMOOTHING_WINDOW:]
    smoothed = recent[0].accuracy
    for s in recent[1:]:
        smoothed = 0.6 * s.accuracy + 0.4 * smoothed

    target = target_accuracy(n_level)
    error = (smoothed - target) / 100.0
    trend = (recent[-1].accuracy - recent[0].accuracy) / 100.0 / float(len(recent) - 1)
    missed = sum(s.missed_rate for s in recent) / len(recent)

    # Improving users get nudged harder before they cross a discrete threshold.
    drive = error + trend - 0.5 * max(0.0, missed - 0.1)

    depth = min(1.0, len(snaps) / 10.0)
    closeness = clamp01(1.0 - abs(smoothed - target) / 50.0)

    return AdaptiveAdjustment(
        match_rate_multiplier=clamp(1.0 + 1.5 * drive, 0.5, 1.5),
        complexity_bonus_delta=clamp(0.5 * drive, -0.1, 0.2),
        pacing_delta=clamp(-10.0 * drive, -1.0, 2.0),
        confidence=clamp01(depth * closeness),
    )


def snapshot_adjustment(snapshot: PerformanceSnapshot) -> AdaptiveAdjustment:
    """Single-snapshot rule used while streaming."""

    if snapshot.accuracy > 85.0 and snapshot.missed_rate < 0.1:
        return AdaptiveAdjustment(match_rate_multiplier=1.2, complexity_bonus_delta=0.05, confidence=1.0)
    if snapshot.accuracy < 60.0 or snapshot.missed_rate > 0.3:
        return AdaptiveAdjustment(match_rate_multiplier=0.8, complexity_bonus_delta=-0.05, confidence=1.0)
    return AdaptiveAdjustment(confidence=1.0)


def apply_adjustment(profile: DifficultyProfile, adjustment: AdaptiveAdjustment) -> DifficultyProfile:
    mult = adjustment.match_rate_multiplier
    adjusted = replace(
        profile,
        position_match_rate=clamp(profile.position_match_rate * mult, MIN_MATCH_RATE, MAX_MATCH_RATE),
        audio_match_rate=clamp(profile.audio_match_rate * mult, MIN_MATCH_RATE, MAX_MATCH_RATE),
        overlap_bonus=clamp(
            profile.overlap_bonus + adjustment.complexity_bonus_delta, 0.0, MAX_OVERLAP_BONUS
        ),
        min_gap=max(1, profile.min_gap + round_half_up(adjustment.pacing_delta)),
    )
    if adjusted != profile:
        logger.info(
            "Difficulty adjusted: rates {:.3f}/{:.3f} -> {:.3f}/{:.3f}, overlap bonus {:.3f}, min gap {}",
            profile.position_match_rate,
            profile.audio_match_rate,
            adjusted.position_match_rate,
            adjusted.audio_match_rate,
            adjusted.overlap_bonus,
            adjusted.min_gap,
        )
    return adjusted


@dataclass(frozen=True, slots=True)
class DynamicMatchProbabilities:
    position: float
    audio: float
    confidence: float


def _channel_accuracy(events: Sequence[ResponseEvent], channel: Channel) -> float:
    scored = [
        e
        for e in events
        if e.channel is channel and e.outcome is not ResponseOutcome.NO_OPPORTUNITY
    ]
    if not scored:
        return 0.5
    hits = sum(1 for e in scored if e.outcome is ResponseOutcome.HIT)
    return hits / float(len(scored))


def _tuned_rate(base: float, accuracy: float, target: float) -> float:
    factor = 1.0
    if accuracy > target + 0.2:
        factor = 1.0 + (accuracy - target) * 0.5
    elif accuracy < target - 0.2:
        factor = max(0.5, 1.0 - (target - accuracy) * 0.8)
    smoothing = 0.7
    rate = base * smoothing + base * factor * (1.0 - smoothing)
    return clamp(rate, 0.1, 0.5)


def calculate_dynamic_match_probabilities(
    base_position_rate: float,
    base_audio_rate: float,
    responses: Sequence[ResponseEvent],
    n_level: int,
    window_size: int = 5,
) -> DynamicMatchProbabilities:
    """Per-channel match rates retuned from the last ``window_size`` rounds."""

    rounds = sorted({e.round_index for e in responses})
    if len(rounds) < window_size:
        return DynamicMatchProbabilities(
            position=base_position_rate, audio=base_audio_rate, confidence=0.0
        )

    kept = set(rounds[-window_size:])
    window = [e for e in responses if e.round_index in kept]
    target = max(0.6, 0.8 - (n_level - 2) * 0.05)
    return DynamicMatchProbabilities(
        position=_tuned_rate(base_position_rate, _channel_accuracy(window, Channel.POSITION), target),
        audio=_tuned_rate(base_audio_rate, _channel_accuracy(window, Channel.AUDIO), target),
        confidence=min(1.0, len(kept) / float(window_size)),
    )
