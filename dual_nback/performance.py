from __future__ import annotations

from collections import deque
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from enum import StrEnum

from loguru import logger

from .core import Channel, Stimulus, channel_matches

HISTORY_LIMIT = 20


class ResponseOutcome(StrEnum):
    NO_OPPORTUNITY = "no_opportunity"  # no match, no response
    HIT = "hit"
    MISS = "miss"  # match, no response
    FALSE_POSITIVE = "false_positive"


@dataclass(frozen=True, slots=True)
class ResponseEvent:
    round_index: int
    channel: Channel
    outcome: ResponseOutcome
    response_time_ms: float | None = None

    @property
    def correct(self) -> bool:
        return self.outcome in (ResponseOutcome.HIT, ResponseOutcome.NO_OPPORTUNITY)

    @property
    def responded(self) -> bool:
        return self.outcome in (ResponseOutcome.HIT, ResponseOutcome.FALSE_POSITIVE)


def classify_response(
    sequence: Sequence[Stimulus],
    index: int,
    n_level: int,
    channel: Channel,
    *,
    responded: bool,
    response_time_ms: float | None = None,
) -> ResponseEvent:
    """Score one channel of one round against the materialized ground truth."""

    is_match = channel_matches(sequence, index, n_level, channel)
    if is_match:
        outcome = ResponseOutcome.HIT if responded else ResponseOutcome.MISS
    else:
        outcome = ResponseOutcome.FALSE_POSITIVE if responded else ResponseOutcome.NO_OPPORTUNITY
    return ResponseEvent(
        round_index=int(index),
        channel=channel,
        outcome=outcome,
        response_time_ms=response_time_ms if responded else None,
    )


@dataclass(frozen=True, slots=True)
class PerformanceSnapshot:
    accuracy: float  # percent, 0..100
    mean_response_time_ms: float
    missed_count: int
    total_attempts: int
    captured_at_round: int
    difficulty: int = 1

    @property
    def missed_rate(self) -> float:
        if self.total_attempts <= 0:
            return 0.0
        return self.missed_count / float(self.total_attempts)


def calculate_accuracy(correct: int, incorrect: int, missed: int, total_rounds: int) -> float:
    """Percent of rounds handled correctly; staying silent on a non-match counts."""

    if total_rounds <= 0:
        return 0.0
    correct_non_responses = max(0, total_rounds - correct - incorrect - missed)
    return (correct + correct_non_responses) / float(total_rounds) * 100.0


def create_performance_snapshot(
    responses: Sequence[ResponseEvent],
    current_round: int,
    window_size: int = 5,
) -> PerformanceSnapshot:
    if window_size < 1:
        raise ValueError("window_size must be >= 1")

    window = list(responses)[-window_size:]
    if not window:
        return PerformanceSnapshot(
            accuracy=0.0,
            mean_response_time_ms=0.0,
            missed_count=0,
            total_attempts=0,
            captured_at_round=int(current_round),
        )

    hits = sum(1 for r in window if r.outcome is ResponseOutcome.HIT)
    false_positives = sum(1 for r in window if r.outcome is ResponseOutcome.FALSE_POSITIVE)
    missed = sum(1 for r in window if r.outcome is ResponseOutcome.MISS)
    total = len(window)

    rts = [float(r.response_time_ms) for r in window if r.response_time_ms and r.response_time_ms > 0]
    mean_rt = 0.0 if not rts else sum(rts) / len(rts)

    snapshot = PerformanceSnapshot(
        accuracy=calculate_accuracy(hits, false_positives, missed, total),
        mean_response_time_ms=mean_rt,
        missed_count=missed,
        total_attempts=total,
        captured_at_round=int(current_round),
    )
    logger.debug(
        "Performance snapshot at round {}: accuracy={:.1f}% rt={:.0f}ms missed={}/{}",
        snapshot.captured_at_round,
        snapshot.accuracy,
        snapshot.mean_response_time_ms,
        missed,
        total,
    )
    return snapshot


class PerformanceHistory:
    """Most recent snapshots, oldest evicted first."""

    def __init__(self, limit: int = HISTORY_LIMIT) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self._snapshots: deque[PerformanceSnapshot] = deque(maxlen=int(limit))

    def append(self, snapshot: PerformanceSnapshot) -> None:
        self._snapshots.append(snapshot)

    def recent(self, count: int) -> tuple[PerformanceSnapshot, ...]:
        if count <= 0:
            return ()
        return tuple(self._snapshots)[-count:]

    def snapshots(self) -> tuple[PerformanceSnapshot, ...]:
        return tuple(self._snapshots)

    def clear(self) -> None:
        self._snapshots.clear()

    def __len__(self) -> int:
        return len(self._snapshots)

    def __iter__(self) -> Iterator[PerformanceSnapshot]:
        return iter(tuple(self._snapshots))


def should_snapshot(response_count: int, every: int = 3) -> bool:
    return every > 0 and response_count > 0 and response_count % every == 0


class PerformanceTracker:
    """Ordered response log that folds a snapshot into history every ``snapshot_every`` events."""

    def __init__(
        self,
        *,
        window_size: int = 5,
        snapshot_every: int = 3,
        history_limit: int = HISTORY_LIMIT,
    ) -> None:
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        if snapshot_every < 1:
            raise ValueError("snapshot_every must be >= 1")
        self._window_size = int(window_size)
        self._snapshot_every = int(snapshot_every)
        self._events: list[ResponseEvent] = []
        self._history = PerformanceHistory(history_limit)

    @property
    def history(self) -> PerformanceHistory:
        return self._history

    def events(self) -> list[ResponseEvent]:
        return list(self._events)

    def record(self, event: ResponseEvent) -> PerformanceSnapshot | None:
        self._events.append(event)
        if not should_snapshot(len(self._events), self._snapshot_every):
            return None
        snapshot = create_performance_snapshot(
            self._events,
            current_round=event.round_index + 1,
            window_size=self._window_size,
        )
        self._history.append(snapshot)
        return snapshot
