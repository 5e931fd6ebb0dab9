from __future__ import annotations

import math
from collections import Counter, deque
from collections.abc import Callable, Sequence

from .composer import MatchPlan, compose_match_plan
from .core import (
    AUDIO_CHOICES,
    Channel,
    SeededRng,
    Stimulus,
    round_half_up,
    validate_session_shape,
)
from .profiles import Difficulty, profile_for, resolve_difficulty


class SequenceMaterializer:
    """Turns boolean match plans into concrete stimuli.

    Planned matches copy the n-back value; planned non-matches draw uniformly
    from every value except the n-back one, so the materialized sequence
    matches exactly where the plan says it does. With ``avoid_recent_repeats``
    a draw also skips values already seen twice within the last ``2 * n_level``
    stimuli.
    """

    def __init__(
        self,
        *,
        grid_size: int,
        n_level: int,
        rng: SeededRng,
        avoid_recent_repeats: bool = True,
    ) -> None:
        if n_level < 1:
            raise ValueError("n_level must be >= 1")
        if grid_size < 2:
            raise ValueError("grid_size must be >= 2")
        self._n_level = int(n_level)
        self._rng = rng
        self._avoid_recent_repeats = bool(avoid_recent_repeats)
        self._choices = {
            Channel.POSITION: int(grid_size) * int(grid_size),
            Channel.AUDIO: AUDIO_CHOICES,
        }

    @property
    def n_level(self) -> int:
        return self._n_level

    def seed_stimuli(self, *, timestamp_for: Callable[[int], int] | None = None) -> list[Stimulus]:
        """The first ``n_level`` stimuli; nothing precedes them to match against."""

        out: list[Stimulus] = []
        for i in range(self._n_level):
            out.append(
                Stimulus(
                    position=self._rng.randint(0, self._choices[Channel.POSITION] - 1),
                    audio=self._rng.randint(0, AUDIO_CHOICES - 1),
                    timestamp_ms=0 if timestamp_for is None else timestamp_for(i),
                )
            )
        return out

    def next_stimulus(
        self,
        history: Sequence[Stimulus],
        *,
        position_match: bool,
        audio_match: bool,
        timestamp_ms: int = 0,
    ) -> Stimulus:
        if len(history) < self._n_level:
            raise ValueError("history must hold at least n_level stimuli")
        return Stimulus(
            position=self._draw(history, Channel.POSITION, position_match),
            audio=self._draw(history, Channel.AUDIO, audio_match),
            timestamp_ms=timestamp_ms,
        )

    def extend(
        self,
        sequence: list[Stimulus],
        plan: MatchPlan,
        *,
        timestamp_for: Callable[[int], int] | None = None,
    ) -> list[Stimulus]:
        """Append one stimulus per plan slot; n-back lookups reach into ``sequence``."""

        for k in range(plan.length):
            index = len(sequence)
            sequence.append(
                self.next_stimulus(
                    sequence,
                    position_match=plan.position[k],
                    audio_match=plan.audio[k],
                    timestamp_ms=0 if timestamp_for is None else timestamp_for(index),
                )
            )
        return sequence

    def materialize(self, plan: MatchPlan) -> list[Stimulus]:
        return self.extend(self.seed_stimuli(), plan)

    def _draw(self, history: Sequence[Stimulus], channel: Channel, should_match: bool) -> int:
        index = len(history)
        back = history[index - self._n_level].value(channel)
        if should_match:
            return back

        excluded = {back}
        if self._avoid_recent_repeats:
            window = history[max(0, index - 2 * self._n_level) : index]
            counts = Counter(s.value(channel) for s in window)
            excluded.update(v for v, c in counts.items() if c > 1)

        choices = self._choices[channel]
        candidates = [v for v in range(choices) if v not in excluded]
        if not candidates:
            candidates = [v for v in range(choices) if v != back]
        return self._rng.choice(candidates)


def plan_engaging_sequence(
    length: int,
    grid_size: int,
    n_level: int,
    difficulty: str | Difficulty = Difficulty.MEDIUM,
    *,
    rng: SeededRng,
) -> MatchPlan:
    validate_session_shape(length=length, grid_size=grid_size, n_level=n_level)
    profile = profile_for(difficulty)
    eligible = length - n_level
    position_target, audio_target = profile.targets(eligible)
    return compose_match_plan(
        eligible,
        position_target,
        audio_target,
        max_consecutive=profile.max_consecutive,
        min_gap=profile.min_gap,
        n_level=n_level,
        rng=rng,
        overlap_bonus=profile.overlap_bonus,
    )


def generate_engaging_sequence(
    length: int,
    grid_size: int,
    n_level: int,
    difficulty: str | Difficulty = Difficulty.MEDIUM,
    *,
    rng: SeededRng,
) -> list[Stimulus]:
    """Plan per-channel matches for ``difficulty`` and materialize ``length`` stimuli."""

    plan = plan_engaging_sequence(length, grid_size, n_level, difficulty, rng=rng)
    materializer = SequenceMaterializer(grid_size=grid_size, n_level=n_level, rng=rng)
    return materializer.materialize(plan)


# Single-pass probabilistic generator kept as the comparison baseline.
_CLASSIC_SETTINGS: dict[Difficulty, tuple[float, float]] = {
    Difficulty.EASY: (0.28, 0.08),
    Difficulty.MEDIUM: (0.23, 0.12),
    Difficulty.HARD: (0.20, 0.15),
}


def _anti_cluster_value(
    rng: SeededRng, choices: int, exclude: int | None, recent: Sequence[int]
) -> int:
    weights = [1.0] * choices
    if exclude is not None and 0 <= exclude < choices:
        weights[exclude] = 0.0
    # ``recent`` is oldest first, so the newest value is damped hardest.
    for idx, value in enumerate(recent):
        recency = (idx + 1) / float(len(recent))
        weights[value] *= max(0.1, 1.0 - recency * 0.7)

    r = rng.random() * sum(weights)
    last_open = 0
    for value, w in enumerate(weights):
        if w <= 0.0:
            continue
        last_open = value
        r -= w
        if r <= 0.0:
            return value
    return last_open


def generate_classic_sequence(
    length: int,
    grid_size: int,
    n_level: int,
    difficulty: str | Difficulty = Difficulty.MEDIUM,
    *,
    rng: SeededRng,
) -> list[Stimulus]:
    """Decide matches on the fly from remaining need, recent rate and idle streaks.

    Unlike the engaging generator there is no plan: match counts drift, lures
    (n-1 / n+1 repeats) are mixed in, and accidental matches are possible.
    """

    validate_session_shape(length=length, grid_size=grid_size, n_level=n_level)
    match_rate, lure_rate = _CLASSIC_SETTINGS[resolve_difficulty(difficulty)]
    choices = {Channel.POSITION: grid_size * grid_size, Channel.AUDIO: AUDIO_CHOICES}
    cluster_window = min(4, math.ceil(grid_size * 0.6))
    recent = {ch: deque(maxlen=cluster_window) for ch in Channel}

    sequence: list[Stimulus] = []
    for _ in range(n_level):
        values = {ch: _anti_cluster_value(rng, choices[ch], None, recent[ch]) for ch in Channel}
        for ch in Channel:
            recent[ch].append(values[ch])
        sequence.append(Stimulus(position=values[Channel.POSITION], audio=values[Channel.AUDIO]))

    remaining = length - n_level
    break_window = min(5, math.ceil(remaining / 4))
    target = round_half_up(remaining * match_rate)
    totals = {ch: 0 for ch in Channel}
    recent_hits = {ch: deque(maxlen=break_window) for ch in Channel}
    idle = 0

    for i in range(remaining):
        index = n_level + i
        back = sequence[index - n_level]
        left = remaining - i

        chance: dict[Channel, float] = {}
        for ch in Channel:
            needed = target - totals[ch]
            p = min(0.6, needed / left) if needed > 0 else 0.0
            hits = recent_hits[ch]
            if hits:
                rate = sum(hits) / float(len(hits))
                if rate > match_rate * 1.5:
                    p *= 0.3
                if rate < match_rate * 0.5 and needed > 0:
                    p = min(0.7, p * 2.0)
            if idle >= 4 and needed > 0:
                p = max(0.4, p)
            chance[ch] = p

        if rng.random() < chance[Channel.POSITION] and rng.random() < chance[Channel.AUDIO]:
            # Keep both only occasionally; otherwise drop one, audio favoured.
            if rng.random() >= 0.3:
                if rng.random() < 0.6:
                    chance[Channel.POSITION] = 0.0
                else:
                    chance[Channel.AUDIO] = 0.0

        jitter = 0.7 + rng.random() * 0.6
        will = {ch: rng.random() < chance[ch] * jitter for ch in Channel}

        values: dict[Channel, int] = {}
        for ch in Channel:
            other = Channel.AUDIO if ch is Channel.POSITION else Channel.POSITION
            if will[ch]:
                values[ch] = back.value(ch)
                totals[ch] += 1
                continue
            if n_level > 1 and not will[other] and rng.random() < lure_rate:
                lure_index = index - n_level + (1 if rng.random() < 0.7 else 2)
                if lure_index < len(sequence):
                    values[ch] = sequence[lure_index].value(ch)
                    continue
            values[ch] = _anti_cluster_value(rng, choices[ch], back.value(ch), recent[ch])

        stimulus = Stimulus(position=values[Channel.POSITION], audio=values[Channel.AUDIO])
        matched = {ch: stimulus.value(ch) == back.value(ch) for ch in Channel}
        idle = 0 if any(matched.values()) else idle + 1
        for ch in Channel:
            recent[ch].append(values[ch])
            recent_hits[ch].append(1 if matched[ch] else 0)
        sequence.append(stimulus)

    return sequence
