from __future__ import annotations

import pytest

from dual_nback.core import SeededRng
from dual_nback.placement import (
    bell_curve_weight,
    can_place,
    check_placement,
    nearest_match_distance,
    place_matches,
    run_length_if_placed,
)


def test_bell_curve_weight_peaks_in_the_middle() -> None:
    middle = bell_curve_weight(50, 101)
    edge = bell_curve_weight(0, 101)
    assert middle == pytest.approx(1.0)
    assert 0.2 < edge < middle
    assert bell_curve_weight(0, 101) == pytest.approx(bell_curve_weight(100, 101))
    assert bell_curve_weight(0, 1) == 1.0


def test_distance_and_run_length_helpers() -> None:
    empty = [False] * 10
    assert nearest_match_distance(empty, 4) == 10
    assert nearest_match_distance(empty, 0, bounded=True) == 1
    assert nearest_match_distance(empty, 4, bounded=True) == 5

    flags = [False, True, False, False, False, True]
    assert nearest_match_distance(flags, 3) == 2
    assert nearest_match_distance(flags, 2) == 1

    assert run_length_if_placed([True, False, True], 1) == 3
    assert run_length_if_placed([False, False, False], 1) == 1


def test_can_place_respects_every_constraint() -> None:
    flags = [True, True, False, False, False]
    assert not can_place(flags, 2, max_consecutive=2, min_gap=1)
    assert can_place(flags, 2, max_consecutive=3, min_gap=1)
    assert not can_place(flags, 3, max_consecutive=3, min_gap=3)
    assert can_place(flags, 4, max_consecutive=3, min_gap=3)
    assert not can_place(flags, 0, max_consecutive=3, min_gap=1)

    other = [False, False, False, True, False]
    assert not can_place(flags, 3, max_consecutive=3, min_gap=1, other_channel=other)


@pytest.mark.parametrize(
    "target,max_consecutive,min_gap",
    [(5, 2, 1), (6, 1, 2), (5, 3, 1)],
)
def test_place_matches_hits_target_within_constraints(
    target: int, max_consecutive: int, min_gap: int
) -> None:
    for seed in range(40):
        flags = place_matches(
            18,
            target,
            max_consecutive=max_consecutive,
            min_gap=min_gap,
            rng=SeededRng(seed),
        )
        assert len(flags) == 18
        assert sum(flags) == target
        ok, reason = check_placement(flags, max_consecutive=max_consecutive, min_gap=min_gap)
        assert ok, reason


def test_place_matches_zero_and_oversized_targets() -> None:
    assert place_matches(10, 0, max_consecutive=2, min_gap=1, rng=SeededRng(1)) == [False] * 10
    assert place_matches(0, 3, max_consecutive=2, min_gap=1, rng=SeededRng(1)) == []
    assert place_matches(5, 10, max_consecutive=5, min_gap=1, rng=SeededRng(1)) == [True] * 5


def test_place_matches_is_short_when_infeasible() -> None:
    flags = place_matches(6, 6, max_consecutive=1, min_gap=2, rng=SeededRng(3))
    assert sum(flags) <= 3
    ok, _ = check_placement(flags, max_consecutive=1, min_gap=2)
    assert ok


def test_place_matches_avoids_other_channel_when_asked() -> None:
    for seed in range(20):
        rng = SeededRng(seed)
        position = place_matches(18, 5, max_consecutive=2, min_gap=1, rng=rng)
        audio = place_matches(
            18,
            5,
            max_consecutive=2,
            min_gap=1,
            rng=rng,
            avoid_overlap=True,
            other_channel=position,
        )
        assert sum(audio) == 5
        assert not any(p and a for p, a in zip(position, audio))


def test_place_matches_rejects_mismatched_other_channel() -> None:
    with pytest.raises(ValueError):
        place_matches(
            10,
            3,
            max_consecutive=2,
            min_gap=1,
            rng=SeededRng(0),
            avoid_overlap=True,
            other_channel=[False] * 9,
        )


def test_place_matches_determinism_same_seed_same_flags() -> None:
    a = place_matches(40, 12, max_consecutive=2, min_gap=1, rng=SeededRng(77))
    b = place_matches(40, 12, max_consecutive=2, min_gap=1, rng=SeededRng(77))
    assert a == b


def test_check_placement_reports_violations() -> None:
    ok, reason = check_placement([True, True, True], max_consecutive=2, min_gap=1)
    assert not ok
    assert "consecutive" in reason

    ok, reason = check_placement([True, False, True], max_consecutive=2, min_gap=3)
    assert not ok
    assert "closer" in reason

    assert check_placement([True, False, False, True], max_consecutive=1, min_gap=3) == (True, "ok")


def test_place_matches_treats_history_as_read_only_prefix() -> None:
    history = [False, False, True]
    for seed in range(20):
        flags = place_matches(
            8, 3, max_consecutive=1, min_gap=2, rng=SeededRng(seed), history=history
        )
        assert len(flags) == 8
        assert not flags[0]
        ok, reason = check_placement(history + flags, max_consecutive=1, min_gap=2)
        assert ok, reason
    assert history == [False, False, True]


def test_place_matches_history_blocks_runs_across_the_boundary() -> None:
    for seed in range(20):
        flags = place_matches(
            6, 4, max_consecutive=2, min_gap=1, rng=SeededRng(seed), history=[True, True]
        )
        assert not flags[0]
        ok, reason = check_placement([True, True] + flags, max_consecutive=2, min_gap=1)
        assert ok, reason
