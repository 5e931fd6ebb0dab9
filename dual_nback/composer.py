from __future__ import annotations

from collections.abc import Sequence, Set
from dataclasses import dataclass

from loguru import logger

from .core import Channel, SeededRng, round_half_up
from .placement import can_place, place_matches

_ALTERNATION_SPAN = 5
_STRIDE = 3
_CLEAR_CHANCE = 0.6
_CLEAR_CHANCE_PROTECTED = 0.25
_OVERLAP_PREFERENCE = 1.5
_MAX_OVERLAP_FRACTION = 0.7
_EVEN_SHIFTS = (-1, 1, -2, 2)
_EPSILON = 1e-9
_RELOCATE_STRETCHES = 3


@dataclass(frozen=True, slots=True)
class MatchPlan:
    """Per-channel match flags over the eligible region of a sequence.

    Slot ``k`` describes sequence index ``k + n_level``.
    """

    position: tuple[bool, ...]
    audio: tuple[bool, ...]
    position_target: int = 0
    audio_target: int = 0
    overlap_target: int = 0

    def __post_init__(self) -> None:
        if len(self.position) != len(self.audio):
            raise ValueError("position and audio flags must have equal length")

    @property
    def length(self) -> int:
        return len(self.position)

    @property
    def position_count(self) -> int:
        return sum(self.position)

    @property
    def audio_count(self) -> int:
        return sum(self.audio)

    @property
    def overlap_count(self) -> int:
        return count_overlap(self.position, self.audio)

    @property
    def position_shortfall(self) -> int:
        return max(0, self.position_target - self.position_count)

    @property
    def audio_shortfall(self) -> int:
        return max(0, self.audio_target - self.audio_count)

    def flags(self, channel: Channel) -> tuple[bool, ...]:
        return self.position if channel is Channel.POSITION else self.audio


def count_overlap(a: Sequence[bool], b: Sequence[bool]) -> int:
    return sum(1 for x, y in zip(a, b) if x and y)


def overlap_threshold(n_level: int, rng: SeededRng) -> float:
    """Tolerated fraction of simultaneous matches, with per-session jitter."""

    base = min(0.2 + (n_level - 1) * 0.1, 0.6)
    return min(_MAX_OVERLAP_FRACTION, rng.uniform(0.9, 1.1) * base)


def match_spacing(flags: Sequence[bool]) -> tuple[int, ...]:
    """Gaps between consecutive matches; the first is measured from slot 0."""

    out: list[int] = []
    last = 0
    for i, f in enumerate(flags):
        if f:
            out.append(i - last)
            last = i
    return tuple(out)


def spacing_variance(flags: Sequence[bool]) -> float:
    gaps = match_spacing(flags)
    if len(gaps) <= 1:
        return 0.0
    mean = sum(gaps) / float(len(gaps))
    return sum((g - mean) ** 2 for g in gaps) / float(len(gaps))


def _is_stride_run(flags: Sequence[bool], start: int) -> bool:
    last = start + 2 * _STRIDE
    if last >= len(flags):
        return False
    for j in range(start, last + 1):
        if flags[j] != ((j - start) % _STRIDE == 0):
            return False
    return True


def find_regular_runs(flags: Sequence[bool]) -> list[int]:
    """Match slot to clear for each mechanically regular stretch, left to right.

    Two shapes count as regular: strict match/non-match alternation over at
    least five slots, and three matches spaced exactly three apart.
    """

    picks: list[int] = []
    n = len(flags)
    i = 0
    while i < n:
        end = i
        while end + 1 < n and flags[end + 1] != flags[end]:
            end += 1
        if end - i + 1 >= _ALTERNATION_SPAN:
            hits = [j for j in range(i, end + 1) if flags[j]]
            picks.append(hits[len(hits) // 2])
            i = end + 1
            continue
        if flags[i] and _is_stride_run(flags, i):
            picks.append(i + _STRIDE)
            i += 2 * _STRIDE + 1
            continue
        i += 1
    return picks


def _regular_count(flags: Sequence[bool], start: int) -> int:
    return sum(1 for slot in find_regular_runs(flags) if slot >= start)


def _neighbours(flags: Sequence[bool], slot: int) -> tuple[int, int]:
    """Closest match on each side of ``slot``; the block edges stand in at -1 and len."""

    left = slot - 1
    while left >= 0 and not flags[left]:
        left -= 1
    right = slot + 1
    while right < len(flags) and not flags[right]:
        right += 1
    return left, right


def _backfill(
    flags: list[bool],
    target: int,
    other: Sequence[bool],
    *,
    overlap_target: int,
    max_consecutive: int,
    min_gap: int,
    excluded: set[int],
    rng: SeededRng,
    start: int = 0,
) -> None:
    while sum(flags[start:]) < target:
        below_overlap = count_overlap(flags[start:], other[start:]) < overlap_target
        best: int | None = None
        best_key: tuple[float, int, float] | None = None
        for slot in range(start, len(flags)):
            if slot in excluded:
                continue
            if not can_place(flags, slot, max_consecutive=max_consecutive, min_gap=min_gap):
                continue
            # Widest empty stretch first, then its middle.
            left, right = _neighbours(flags, slot)
            score = float(right - left)
            if below_overlap and other[slot]:
                score *= _OVERLAP_PREFERENCE
            key = (score, min(slot - left, right - slot), rng.random())
            if best_key is None or key > best_key:
                best, best_key = slot, key
        if best is None:
            return
        flags[best] = True


def _stretch_midpoints(flags: Sequence[bool], start: int) -> list[int]:
    """Middle slots of the widest empty stretches at or after ``start``."""

    bounds = [start - 1] + [i for i in range(start, len(flags)) if flags[i]] + [len(flags)]
    stretches = [(right - left, (left + right) // 2) for left, right in zip(bounds, bounds[1:])]
    stretches.sort(key=lambda s: (-s[0], s[1]))
    return [
        mid + step
        for width, mid in stretches[:_RELOCATE_STRETCHES]
        if width > 1
        for step in (0, -1, 1)
    ]


def _try_move(
    flags: list[bool],
    slot: int,
    dest: int,
    other: Sequence[bool],
    *,
    max_consecutive: int,
    min_gap: int,
    start: int,
    excluded: Set[int],
    current: float,
    regular: int,
) -> tuple[float, int] | None:
    if dest < start or dest >= len(flags) or dest in excluded:
        return None
    if flags[dest] or bool(other[dest]) != bool(other[slot]):
        return None
    flags[slot] = False
    if can_place(flags, dest, max_consecutive=max_consecutive, min_gap=min_gap):
        flags[dest] = True
        variance = spacing_variance(flags)
        if variance < current - _EPSILON:
            runs = _regular_count(flags, start)
            if runs <= regular:
                return variance, runs
        flags[dest] = False
    flags[slot] = True
    return None


def even_out(
    flags: list[bool],
    other: Sequence[bool],
    *,
    max_consecutive: int,
    min_gap: int,
    start: int = 0,
    excluded: Set[int] = frozenset(),
) -> int:
    """Move single matches while that lowers the spacing variance.

    Each pass first tries shifting a match by one or two slots. When no shift
    helps it tries lifting a match out of the tightest spot and dropping it
    into the middle of one of the widest empty stretches. A move keeps the
    match count, the overlap with ``other`` and every placement constraint,
    and never adds a regular run. Slots before ``start`` are read-only.
    Returns the number of moves made.
    """

    moves = 0
    current = spacing_variance(flags)
    regular = _regular_count(flags, start)
    limits = dict(
        max_consecutive=max_consecutive, min_gap=min_gap, start=start, excluded=excluded
    )
    for _ in range(2 * len(flags)):
        accepted: tuple[float, int] | None = None
        slots = [i for i in range(start, len(flags)) if flags[i]]
        for slot in slots:
            for step in _EVEN_SHIFTS:
                accepted = _try_move(
                    flags, slot, slot + step, other, current=current, regular=regular, **limits
                )
                if accepted is not None:
                    break
            if accepted is not None:
                break
        if accepted is None:
            # Tightest spot: the match whose two neighbouring gaps sum smallest.
            anchored = [start - 1] + slots + [len(flags)]
            ranked = sorted(
                range(1, len(anchored) - 1), key=lambda k: (anchored[k + 1] - anchored[k - 1], k)
            )
            midpoints = _stretch_midpoints(flags, start)
            for k in ranked:
                for dest in midpoints:
                    accepted = _try_move(
                        flags, anchored[k], dest, other, current=current, regular=regular, **limits
                    )
                    if accepted is not None:
                        break
                if accepted is not None:
                    break
        if accepted is None:
            break
        current, regular = accepted
        moves += 1
    return moves


def add_pattern_breaking(
    position: list[bool],
    audio: list[bool],
    *,
    position_target: int,
    audio_target: int,
    n_level: int,
    max_consecutive: int,
    min_gap: int,
    rng: SeededRng,
    overlap_bonus: float = 0.0,
    start: int = 0,
) -> int:
    """Break up regular runs in place, then restore per-channel counts and spacing.

    Slots before ``start`` are history: they take part in run detection and
    constraint checks but are never changed. Returns the overlap target the
    pass worked towards.
    """

    fraction = min(_MAX_OVERLAP_FRACTION, overlap_threshold(n_level, rng) + max(0.0, overlap_bonus))
    overlap_target = round_half_up(min(position_target, audio_target) * fraction)

    cleared: dict[int, set[int]] = {0: set(), 1: set()}
    for key, flags, other in ((0, position, audio), (1, audio, position)):
        for slot in find_regular_runs(flags):
            if slot < start:
                continue
            protected = other[slot] and count_overlap(position[start:], audio[start:]) <= overlap_target
            chance = _CLEAR_CHANCE_PROTECTED if protected else _CLEAR_CHANCE
            if rng.random() < chance:
                flags[slot] = False
                cleared[key].add(slot)

    for key, flags, other, target in (
        (0, position, audio, position_target),
        (1, audio, position, audio_target),
    ):
        _backfill(
            flags,
            target,
            other,
            overlap_target=overlap_target,
            max_consecutive=max_consecutive,
            min_gap=min_gap,
            excluded=cleared[key],
            rng=rng,
            start=start,
        )
        even_out(
            flags,
            other,
            max_consecutive=max_consecutive,
            min_gap=min_gap,
            start=start,
            excluded=cleared[key],
        )
    return overlap_target


def compose_match_plan(
    length: int,
    position_target: int,
    audio_target: int,
    *,
    max_consecutive: int,
    min_gap: int,
    n_level: int,
    rng: SeededRng,
    overlap_bonus: float = 0.0,
    break_patterns: bool = True,
    position_history: Sequence[bool] = (),
    audio_history: Sequence[bool] = (),
) -> MatchPlan:
    """Plan both channels for ``length`` slots.

    ``position_history`` and ``audio_history`` are the flags immediately
    before the block, so spacing and run limits hold across a segment
    boundary. They must have equal length and are never modified.
    """

    if len(position_history) != len(audio_history):
        raise ValueError("position_history and audio_history must have equal length")
    start = len(position_history)

    position = place_matches(
        length,
        position_target,
        max_consecutive=max_consecutive,
        min_gap=min_gap,
        rng=rng,
        use_bell_curve=True,
        history=position_history,
    )
    # Low n-levels keep the channels disjoint; higher levels allow dual matches.
    audio = place_matches(
        length,
        audio_target,
        max_consecutive=max_consecutive,
        min_gap=min_gap,
        rng=rng,
        use_bell_curve=True,
        avoid_overlap=n_level < 3,
        other_channel=position,
        history=audio_history,
    )

    position_full = [bool(f) for f in position_history] + position
    audio_full = [bool(f) for f in audio_history] + audio
    overlap_target = 0
    if break_patterns:
        overlap_target = add_pattern_breaking(
            position_full,
            audio_full,
            position_target=min(position_target, length),
            audio_target=min(audio_target, length),
            n_level=n_level,
            max_consecutive=max_consecutive,
            min_gap=min_gap,
            rng=rng,
            overlap_bonus=overlap_bonus,
            start=start,
        )
    else:
        for flags, other in ((position_full, audio_full), (audio_full, position_full)):
            even_out(flags, other, max_consecutive=max_consecutive, min_gap=min_gap, start=start)

    plan = MatchPlan(
        position=tuple(position_full[start:]),
        audio=tuple(audio_full[start:]),
        position_target=max(0, int(position_target)),
        audio_target=max(0, int(audio_target)),
        overlap_target=overlap_target,
    )
    if plan.position_shortfall or plan.audio_shortfall:
        logger.warning(
            "Match plan under target: position {}/{}, audio {}/{} over {} slots",
            plan.position_count,
            plan.position_target,
            plan.audio_count,
            plan.audio_target,
            length,
        )
    logger.debug(
        "Composed match plan: length={} position={} audio={} overlap={} (target {})",
        length,
        plan.position_count,
        plan.audio_count,
        plan.overlap_count,
        overlap_target,
    )
    return plan
