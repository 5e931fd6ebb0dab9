from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger

from .composer import match_spacing, spacing_variance
from .core import Channel, SeededRng, Stimulus, match_flags
from .materializer import generate_classic_sequence, generate_engaging_sequence
from .performance import ResponseEvent

IDEAL_MATCH_RATE = 0.30
IDLE_RUN_MIN = 3
MAX_EXPECTED_VARIANCE = 4.0


@dataclass(frozen=True, slots=True)
class EngagementMetrics:
    actual_position_match_rate: float
    actual_audio_match_rate: float
    response_rate: float
    engagement_score: float  # 0..100
    idle_periods: int
    max_idle_period: int


@dataclass(frozen=True, slots=True)
class MatchDistribution:
    position_match_spacing: tuple[int, ...]
    audio_match_spacing: tuple[int, ...]
    average_position_spacing: float
    average_audio_spacing: float
    distribution_score: float  # 0..100, higher is more even


def idle_runs(sequence: Sequence[Stimulus], n_level: int) -> tuple[int, int]:
    """(runs of >= 3 eligible stimuli with no match on either channel, longest such run)."""

    position = match_flags(sequence, n_level, Channel.POSITION)
    audio = match_flags(sequence, n_level, Channel.AUDIO)
    periods = 0
    current = 0
    longest = 0
    for p, a in zip(position, audio):
        if not p and not a:
            current += 1
            longest = max(longest, current)
            continue
        if current >= IDLE_RUN_MIN:
            periods += 1
        current = 0
    if current >= IDLE_RUN_MIN:
        periods += 1
    return periods, longest


def calculate_engagement_metrics(
    sequence: Sequence[Stimulus],
    responses: Sequence[ResponseEvent],
    n_level: int,
) -> EngagementMetrics:
    if len(sequence) <= n_level:
        return EngagementMetrics(
            actual_position_match_rate=0.0,
            actual_audio_match_rate=0.0,
            response_rate=0.0,
            engagement_score=0.0,
            idle_periods=0,
            max_idle_period=0,
        )

    eligible = float(len(sequence) - n_level)
    position_rate = sum(match_flags(sequence, n_level, Channel.POSITION)) / eligible
    audio_rate = sum(match_flags(sequence, n_level, Channel.AUDIO)) / eligible

    rounds = {r.round_index for r in responses}
    answered = {r.round_index for r in responses if r.responded}
    response_rate = 0.0 if not rounds else len(answered) / float(len(rounds))

    periods, longest = idle_runs(sequence, n_level)

    # Mean per-channel distance from the ideal rate, weighted double.
    drift = (abs(position_rate - IDEAL_MATCH_RATE) + abs(audio_rate - IDEAL_MATCH_RATE)) / 2.0
    balance = max(0.0, 1.0 - drift * 2.0)
    idle_penalty = max(0.0, 1.0 - periods * 0.1 - longest * 0.05)
    score = (balance * 0.4 + response_rate * 0.4 + idle_penalty * 0.2) * 100.0

    return EngagementMetrics(
        actual_position_match_rate=position_rate,
        actual_audio_match_rate=audio_rate,
        response_rate=response_rate,
        engagement_score=score,
        idle_periods=periods,
        max_idle_period=longest,
    )


def _mean(values: Sequence[int]) -> float:
    return 0.0 if not values else sum(values) / float(len(values))


def analyze_match_distribution(sequence: Sequence[Stimulus], n_level: int) -> MatchDistribution:
    position_flags = match_flags(sequence, n_level, Channel.POSITION)
    audio_flags = match_flags(sequence, n_level, Channel.AUDIO)
    position = match_spacing(position_flags)
    audio = match_spacing(audio_flags)
    # Spacing starts at the first eligible index.
    mean_variance = (spacing_variance(position_flags) + spacing_variance(audio_flags)) / 2.0
    return MatchDistribution(
        position_match_spacing=position,
        audio_match_spacing=audio,
        average_position_spacing=_mean(position),
        average_audio_spacing=_mean(audio),
        distribution_score=100.0 * max(0.0, 1.0 - mean_variance / MAX_EXPECTED_VARIANCE),
    )


@dataclass(frozen=True, slots=True)
class GenerationSummary:
    position_match_rate: float
    audio_match_rate: float
    idle_periods: float
    max_idle_period: float
    distribution_score: float


@dataclass(frozen=True, slots=True)
class EngagementComparison:
    classic: GenerationSummary
    engaging: GenerationSummary
    improvement_score: int  # 0..100 in steps of 20


def _summarize(sequences: Sequence[Sequence[Stimulus]], n_level: int) -> GenerationSummary:
    metrics = [calculate_engagement_metrics(s, (), n_level) for s in sequences]
    spreads = [analyze_match_distribution(s, n_level) for s in sequences]
    n = float(len(sequences))
    return GenerationSummary(
        position_match_rate=sum(m.actual_position_match_rate for m in metrics) / n,
        audio_match_rate=sum(m.actual_audio_match_rate for m in metrics) / n,
        idle_periods=sum(m.idle_periods for m in metrics) / n,
        max_idle_period=sum(m.max_idle_period for m in metrics) / n,
        distribution_score=sum(d.distribution_score for d in spreads) / n,
    )


def _in_band(rate: float) -> bool:
    return 0.25 < rate < 0.35


def compare_sequence_engagement(
    length: int = 20,
    grid_size: int = 3,
    n_level: int = 2,
    iterations: int = 10,
    *,
    rng: SeededRng,
) -> EngagementComparison:
    """Average engagement of classic vs planned generation over ``iterations`` runs."""

    if iterations < 1:
        raise ValueError("iterations must be >= 1")

    total = length + n_level
    classic = [generate_classic_sequence(total, grid_size, n_level, rng=rng) for _ in range(iterations)]
    engaging = [generate_engaging_sequence(total, grid_size, n_level, rng=rng) for _ in range(iterations)]
    old = _summarize(classic, n_level)
    new = _summarize(engaging, n_level)

    score = 0
    score += 20 if _in_band(new.position_match_rate) else 0
    score += 20 if _in_band(new.audio_match_rate) else 0
    score += 20 if new.idle_periods < old.idle_periods else 0
    score += 20 if new.max_idle_period < old.max_idle_period else 0
    score += 20 if new.distribution_score > old.distribution_score else 0

    logger.info(
        "Engagement {}-back x{}: match rate {:.1%}/{:.1%} -> {:.1%}/{:.1%}, "
        "idle {:.1f} -> {:.1f}, distribution {:.1f} -> {:.1f}, improvement {}%",
        n_level,
        iterations,
        old.position_match_rate,
        old.audio_match_rate,
        new.position_match_rate,
        new.audio_match_rate,
        old.idle_periods,
        new.idle_periods,
        old.distribution_score,
        new.distribution_score,
        score,
    )
    return EngagementComparison(classic=old, engaging=new, improvement_score=score)
