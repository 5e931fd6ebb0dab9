from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace

from loguru import logger

from .adaptive import (
    TRIGGER_WINDOW,
    apply_adjustment,
    calculate_adaptive_adjustments,
    snapshot_adjustment,
)
from .clock import Clock, RealClock, timestamp_ms
from .composer import MatchPlan, compose_match_plan
from .core import Channel, SeededRng, Stimulus, match_flags, validate_session_shape
from .materializer import SequenceMaterializer
from .performance import PerformanceSnapshot
from .profiles import Difficulty, DifficultyProfile, profile_for, resolve_difficulty

MIN_SEGMENT_SIZE = 5
STREAMING_SEGMENT_SIZE = 5
STIMULUS_INTERVAL_MS = 3000


@dataclass(frozen=True, slots=True)
class SegmentPlan:
    start: int  # sequence index of the segment's first stimulus
    profile: DifficultyProfile
    plan: MatchPlan


@dataclass(frozen=True, slots=True)
class AdaptiveSequence:
    stimuli: tuple[Stimulus, ...]
    segments: tuple[SegmentPlan, ...]
    n_level: int

    def match_plan(self) -> MatchPlan:
        """All segment plans joined into one plan over the eligible region."""

        return MatchPlan(
            position=tuple(f for s in self.segments for f in s.plan.position),
            audio=tuple(f for s in self.segments for f in s.plan.audio),
            position_target=sum(s.plan.position_target for s in self.segments),
            audio_target=sum(s.plan.audio_target for s in self.segments),
            overlap_target=sum(s.plan.overlap_target for s in self.segments),
        )


def segment_size_for(eligible: int) -> int:
    return max(MIN_SEGMENT_SIZE, eligible // 4)


def trailing_flags(
    sequence: Sequence[Stimulus], n_level: int, span: int
) -> tuple[list[bool], list[bool]]:
    """Position and audio match flags of the last ``span`` eligible stimuli."""

    span = max(0, span)
    tail = list(sequence[-(n_level + span):]) if span else []
    return match_flags(tail, n_level, Channel.POSITION), match_flags(tail, n_level, Channel.AUDIO)


def _context_span(profile: DifficultyProfile, size: int) -> int:
    # Enough history to see the previous segment and any run or gap crossing into this one.
    return max(size, profile.max_consecutive, profile.min_gap)


def profile_for_segment(
    base: DifficultyProfile,
    history: Sequence[PerformanceSnapshot],
    *,
    start_round: int,
    n_level: int,
) -> DifficultyProfile:
    """Profile from the three latest snapshots taken before ``start_round``."""

    available = [s for s in history if s.captured_at_round <= start_round]
    recent = available[-TRIGGER_WINDOW:]
    if len(recent) < TRIGGER_WINDOW:
        return base
    return apply_adjustment(base, calculate_adaptive_adjustments(recent, n_level))


def generate_adaptive_sequence(
    length: int,
    grid_size: int,
    n_level: int,
    difficulty: str | Difficulty = Difficulty.MEDIUM,
    performance_history: Sequence[PerformanceSnapshot] = (),
    *,
    rng: SeededRng,
) -> AdaptiveSequence:
    """Batch generation with the difficulty re-derived at every segment boundary."""

    validate_session_shape(length=length, grid_size=grid_size, n_level=n_level)
    base = profile_for(difficulty)
    eligible = length - n_level
    size = segment_size_for(eligible)
    history = list(performance_history)

    materializer = SequenceMaterializer(grid_size=grid_size, n_level=n_level, rng=rng)
    sequence = materializer.seed_stimuli()
    segments: list[SegmentPlan] = []
    for offset in range(0, eligible, size):
        seg_len = min(size, eligible - offset)
        start = n_level + offset
        profile = profile_for_segment(base, history, start_round=start, n_level=n_level)
        position_target, audio_target = profile.targets(seg_len)
        position_history, audio_history = trailing_flags(
            sequence, n_level, _context_span(profile, size)
        )
        plan = compose_match_plan(
            seg_len,
            position_target,
            audio_target,
            max_consecutive=profile.max_consecutive,
            min_gap=profile.min_gap,
            n_level=n_level,
            rng=rng,
            overlap_bonus=profile.overlap_bonus,
            position_history=position_history,
            audio_history=audio_history,
        )
        materializer.extend(sequence, plan)
        segments.append(SegmentPlan(start=start, profile=profile, plan=plan))

    return AdaptiveSequence(stimuli=tuple(sequence), segments=tuple(segments), n_level=n_level)


@dataclass(frozen=True, slots=True)
class StreamingConfig:
    n_level: int = 2
    grid_size: int = 3
    difficulty: Difficulty = Difficulty.MEDIUM
    segment_size: int = STREAMING_SEGMENT_SIZE
    position_match_rate: float = 0.30
    audio_match_rate: float = 0.30
    max_consecutive: int = 2
    min_gap: int = 1
    overlap_bonus: float = 0.10
    stimulus_interval_ms: int = STIMULUS_INTERVAL_MS

    @classmethod
    def for_difficulty(
        cls,
        difficulty: str | Difficulty = Difficulty.MEDIUM,
        *,
        n_level: int = 2,
        grid_size: int = 3,
        segment_size: int = STREAMING_SEGMENT_SIZE,
    ) -> StreamingConfig:
        level = resolve_difficulty(difficulty)
        base = cls(n_level=n_level, grid_size=grid_size, difficulty=level, segment_size=segment_size)
        return base.with_profile(profile_for(level))

    @property
    def profile(self) -> DifficultyProfile:
        return DifficultyProfile(
            position_match_rate=self.position_match_rate,
            audio_match_rate=self.audio_match_rate,
            max_consecutive=self.max_consecutive,
            min_gap=self.min_gap,
            overlap_bonus=self.overlap_bonus,
        )

    def with_profile(self, profile: DifficultyProfile) -> StreamingConfig:
        return replace(
            self,
            position_match_rate=profile.position_match_rate,
            audio_match_rate=profile.audio_match_rate,
            max_consecutive=profile.max_consecutive,
            min_gap=profile.min_gap,
            overlap_bonus=profile.overlap_bonus,
        )


@dataclass(frozen=True, slots=True)
class StreamingStats:
    generated_count: int
    config: StreamingConfig
    planned_position: int
    planned_audio: int
    planned_overlap: int


class StreamingSequenceGenerator:
    """Generates stimuli on demand from a small forward plan.

    The generator owns its RNG, its cursor and everything it has emitted.
    ``update_config`` retunes the live profile and replans the in-flight
    segment from the next unemitted index; emitted stimuli never change.
    """

    def __init__(self, config: StreamingConfig, *, seed: int, clock: Clock | None = None) -> None:
        self._rng = SeededRng(seed)
        self._clock: Clock = clock or RealClock()
        self._start(config)

    def _start(self, config: StreamingConfig) -> None:
        if config.segment_size < 1:
            raise ValueError("segment_size must be >= 1")
        validate_session_shape(
            length=config.n_level + 1, grid_size=config.grid_size, n_level=config.n_level
        )
        self._config = config
        self._origin_ms = timestamp_ms(self._clock)
        self._materializer = SequenceMaterializer(
            grid_size=config.grid_size, n_level=config.n_level, rng=self._rng
        )
        self._sequence: list[Stimulus] = self._materializer.seed_stimuli(
            timestamp_for=self._timestamp_for
        )
        self._cursor = 0
        self._pending: Stimulus | None = None
        self._plan_segment()

    @property
    def config(self) -> StreamingConfig:
        return self._config

    @property
    def generated_count(self) -> int:
        return self._cursor

    def _timestamp_for(self, index: int) -> int:
        return self._origin_ms + index * int(self._config.stimulus_interval_ms)

    def _plan_segment(self) -> None:
        cfg = self._config
        profile = cfg.profile
        position_target, audio_target = profile.targets(cfg.segment_size)
        self._segment_start = len(self._sequence)
        position_history, audio_history = trailing_flags(
            self._sequence, cfg.n_level, _context_span(profile, cfg.segment_size)
        )
        self._segment_plan = compose_match_plan(
            cfg.segment_size,
            position_target,
            audio_target,
            max_consecutive=profile.max_consecutive,
            min_gap=profile.min_gap,
            n_level=cfg.n_level,
            rng=self._rng,
            overlap_bonus=profile.overlap_bonus,
            position_history=position_history,
            audio_history=audio_history,
        )
        self._pending = None
        logger.debug(
            "Planned streaming segment at {}: size={} position={} audio={}",
            self._segment_start,
            cfg.segment_size,
            [self._segment_start + k for k, f in enumerate(self._segment_plan.position) if f],
            [self._segment_start + k for k, f in enumerate(self._segment_plan.audio) if f],
        )

    def _materialize_next(self) -> Stimulus:
        index = len(self._sequence)
        k = index - self._segment_start
        if k >= self._segment_plan.length:
            self._plan_segment()
            k = 0
        return self._materializer.next_stimulus(
            self._sequence,
            position_match=self._segment_plan.position[k],
            audio_match=self._segment_plan.audio[k],
            timestamp_ms=self._timestamp_for(index),
        )

    def peek_next_stimulus(self) -> Stimulus:
        if self._cursor < len(self._sequence):
            return self._sequence[self._cursor]
        if self._pending is None:
            self._pending = self._materialize_next()
        return self._pending

    def get_next_stimulus(self) -> Stimulus:
        stimulus = self.peek_next_stimulus()
        if self._cursor == len(self._sequence):
            self._sequence.append(stimulus)
            self._pending = None
        self._cursor += 1
        logger.debug(
            "Emitted stimulus {}: position={} audio={}", self._cursor - 1, stimulus.position, stimulus.audio
        )
        return stimulus

    def update_config(self, snapshot: PerformanceSnapshot) -> StreamingConfig:
        profile = apply_adjustment(self._config.profile, snapshot_adjustment(snapshot))
        self._config = self._config.with_profile(profile)
        logger.debug(
            "Streaming config updated from accuracy={:.1f}% missed={:.1f}%",
            snapshot.accuracy,
            snapshot.missed_rate * 100.0,
        )
        self._plan_segment()
        return self._config

    def stats(self) -> StreamingStats:
        plan = self._segment_plan
        return StreamingStats(
            generated_count=self._cursor,
            config=self._config,
            planned_position=plan.position_count,
            planned_audio=plan.audio_count,
            planned_overlap=plan.overlap_count,
        )

    def generated_sequence(self) -> list[Stimulus]:
        return list(self._sequence[: self._cursor])

    def reset(self, config: StreamingConfig | None = None) -> None:
        self._start(config or self._config)


def create_streaming_generator(
    n_level: int = 2,
    grid_size: int = 3,
    difficulty: str | Difficulty = Difficulty.MEDIUM,
    *,
    seed: int,
    clock: Clock | None = None,
) -> StreamingSequenceGenerator:
    config = StreamingConfig.for_difficulty(difficulty, n_level=n_level, grid_size=grid_size)
    return StreamingSequenceGenerator(config, seed=seed, clock=clock)
