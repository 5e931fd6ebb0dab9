"""Constrained weighted-random placement of match flags on one channel.

``place_matches`` decides *where* matches go before any stimulus value is
chosen. Every slot gets a base weight (optionally bell-curve shaped so matches
gather away from the block edges), the slots are visited once in shuffled
order and accepted with a probability that decays as the target fills and
shrinks for slots crowded by a nearby match or block edge. Any remaining
deficit is filled deterministically, farthest-from-any-match first.

Hard constraints, checked against every already placed slot and any
read-only history preceding the block:

* no two matches closer than ``min_gap`` index positions;
* no run of adjacent matches longer than ``max_consecutive``;
* with ``avoid_overlap``, no match where the other channel already matches.

Infeasible targets are not an error: the result simply holds fewer matches.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from .core import SeededRng, clamp01, round_half_up

_BELL_FLOOR = 0.2
_BELL_SIGMA = 0.3
_FILL_HEADROOM = 1.2
_SOFT_GAP_FACTOR = 0.9


def bell_curve_weight(slot: int, length: int) -> float:
    if length <= 1:
        return 1.0
    x = slot / float(length - 1)
    return _BELL_FLOOR + (1.0 - _BELL_FLOOR) * math.exp(-((x - 0.5) ** 2) / (2.0 * _BELL_SIGMA**2))


def run_length_if_placed(flags: Sequence[bool], slot: int) -> int:
    left = 0
    j = slot - 1
    while j >= 0 and flags[j]:
        left += 1
        j -= 1
    right = 0
    j = slot + 1
    while j < len(flags) and flags[j]:
        right += 1
        j += 1
    return left + 1 + right


def nearest_match_distance(flags: Sequence[bool], slot: int, *, bounded: bool = False) -> int:
    """Distance to the closest other match.

    With ``bounded`` the positions just outside the block (-1 and ``len(flags)``)
    count as matches, so edge slots read as crowded. Without it an empty
    channel yields ``len(flags)``.
    """

    n = len(flags)
    if bounded:
        return min(_scan_distance(flags, slot), slot + 1, n - slot)
    return _scan_distance(flags, slot)


def _scan_distance(flags: Sequence[bool], slot: int) -> int:
    n = len(flags)
    for d in range(1, n):
        lo = slot - d
        hi = slot + d
        if lo < 0 and hi >= n:
            break
        if (lo >= 0 and flags[lo]) or (hi < n and flags[hi]):
            return d
    return n


def can_place(
    flags: Sequence[bool],
    slot: int,
    *,
    max_consecutive: int,
    min_gap: int,
    other_channel: Sequence[bool] | None = None,
) -> bool:
    if flags[slot] or max_consecutive <= 0:
        return False
    if other_channel is not None and other_channel[slot]:
        return False
    if min_gap > 1 and nearest_match_distance(flags, slot) < min_gap:
        return False
    return run_length_if_placed(flags, slot) <= max_consecutive


def place_matches(
    length: int,
    target_count: int,
    *,
    max_consecutive: int,
    min_gap: int,
    rng: SeededRng,
    use_bell_curve: bool = True,
    avoid_overlap: bool = False,
    other_channel: Sequence[bool] | None = None,
    history: Sequence[bool] = (),
) -> list[bool]:
    """Place up to ``target_count`` matches over ``length`` slots.

    Acceptance in the shuffled pass is ``weight * (1.2 - placed / target)``
    scaled by a spacing factor, ``(distance / soft_gap) ** 3``, where distance
    counts the block edges as matches and ``soft_gap`` is 0.9 of the even
    stride. The fill then repeatedly takes the valid slot farthest from any
    match or edge, with the slot weight breaking ties.

    ``history`` holds the flags just before the block. They are checked by
    every constraint but never changed, and the result covers only the new
    ``length`` slots.
    """

    offset = len(history)
    flags = [bool(f) for f in history] + [False] * max(0, int(length))
    target = min(int(target_count), len(flags) - offset)
    if target <= 0:
        return flags[offset:]

    blocked: list[bool] | None = None
    if avoid_overlap and other_channel is not None:
        if len(other_channel) != len(flags) - offset:
            raise ValueError("other_channel must have the same length as the placement")
        blocked = [False] * offset + [bool(f) for f in other_channel]

    size = len(flags) - offset
    if use_bell_curve:
        weights = [1.0] * offset + [bell_curve_weight(i, size) for i in range(size)]
    else:
        weights = [1.0] * len(flags)

    # Matches closer than the even stride, or near the block edges, are
    # accepted less readily.
    stride = size / float(target)
    soft_gap = max(int(min_gap), round_half_up(stride * _SOFT_GAP_FACTOR), 1)

    order = list(range(offset, len(flags)))
    rng.shuffle(order)

    placed = 0
    for slot in order:
        if placed >= target:
            break
        if not can_place(
            flags, slot, max_consecutive=max_consecutive, min_gap=min_gap, other_channel=blocked
        ):
            continue
        spread = clamp01(nearest_match_distance(flags, slot, bounded=True) / float(soft_gap)) ** 3
        chance = weights[slot] * (_FILL_HEADROOM - placed / float(target)) * spread
        if rng.random() < chance:
            flags[slot] = True
            placed += 1

    while placed < target:
        best: int | None = None
        best_key: tuple[int, float] | None = None
        for slot in range(offset, len(flags)):
            if not can_place(
                flags, slot, max_consecutive=max_consecutive, min_gap=min_gap, other_channel=blocked
            ):
                continue
            key = (nearest_match_distance(flags, slot, bounded=True), weights[slot])
            if best_key is None or key > best_key:
                best, best_key = slot, key
        if best is None:
            break
        flags[best] = True
        placed += 1

    return flags[offset:]


def check_placement(
    flags: Sequence[bool], *, max_consecutive: int, min_gap: int
) -> tuple[bool, str]:
    """Validate run-length and spacing constraints. Returns (ok, reason)."""

    run = 0
    for f in flags:
        run = run + 1 if f else 0
        if run > max_consecutive:
            return False, f">{max_consecutive} consecutive matches"
    last: int | None = None
    for i, f in enumerate(flags):
        if not f:
            continue
        if last is not None and i - last < min_gap:
            return False, f"matches at {last} and {i} closer than {min_gap}"
        last = i
    return True, "ok"
