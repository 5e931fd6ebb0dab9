from __future__ import annotations

from dataclasses import dataclass

import pytest

from dual_nback.composer import MatchPlan
from dual_nback.core import AUDIO_CHOICES, Channel, SeededRng, Stimulus, match_flags
from dual_nback.materializer import (
    SequenceMaterializer,
    _anti_cluster_value,
    generate_classic_sequence,
    generate_engaging_sequence,
    plan_engaging_sequence,
)


@dataclass
class FakeClock:
    t: float = 0.0

    def now(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += float(dt)


def test_materialized_matches_equal_the_plan() -> None:
    for seed in range(25):
        rng = SeededRng(seed)
        plan = plan_engaging_sequence(30, 3, 2, "medium", rng=rng)
        seq = SequenceMaterializer(grid_size=3, n_level=2, rng=rng).materialize(plan)

        assert len(seq) == 30
        assert match_flags(seq, 2, Channel.POSITION) == list(plan.position)
        assert match_flags(seq, 2, Channel.AUDIO) == list(plan.audio)


def test_generate_engaging_sequence_default_session_shape() -> None:
    for seed in range(20):
        seq = generate_engaging_sequence(20, 3, 2, "medium", rng=SeededRng(seed))
        assert len(seq) == 20
        assert all(0 <= s.position < 9 for s in seq)
        assert all(0 <= s.audio < AUDIO_CHOICES for s in seq)

        position = match_flags(seq, 2, Channel.POSITION)
        audio = match_flags(seq, 2, Channel.AUDIO)
        assert len(position) == 18
        assert 5 <= sum(position) <= 6
        assert 5 <= sum(audio) <= 6


def test_rematerializing_a_plan_keeps_outcomes_but_changes_values() -> None:
    plan = plan_engaging_sequence(20, 3, 2, rng=SeededRng(4))
    seq_a = SequenceMaterializer(grid_size=3, n_level=2, rng=SeededRng(100)).materialize(plan)
    seq_b = SequenceMaterializer(grid_size=3, n_level=2, rng=SeededRng(200)).materialize(plan)

    assert seq_a != seq_b
    for channel in Channel:
        assert match_flags(seq_a, 2, channel) == match_flags(seq_b, 2, channel)


def test_explicit_plan_is_honoured_without_constraints() -> None:
    plan = MatchPlan(
        position=(True, True, True, False),
        audio=(False, True, False, True),
    )
    seq = SequenceMaterializer(grid_size=2, n_level=1, rng=SeededRng(9)).materialize(plan)
    assert len(seq) == 5
    assert match_flags(seq, 1, Channel.POSITION) == [True, True, True, False]
    assert match_flags(seq, 1, Channel.AUDIO) == [False, True, False, True]


def test_non_match_draws_skip_recent_repeats() -> None:
    history = [Stimulus(1, 1), Stimulus(1, 1), Stimulus(2, 2), Stimulus(3, 3)]
    for seed in range(100):
        m = SequenceMaterializer(grid_size=3, n_level=2, rng=SeededRng(seed))
        s = m.next_stimulus(history, position_match=False, audio_match=False)
        assert s.position not in (1, 2)
        assert s.audio not in (1, 2)

    plain = [
        SequenceMaterializer(
            grid_size=3, n_level=2, rng=SeededRng(seed), avoid_recent_repeats=False
        ).next_stimulus(history, position_match=False, audio_match=False)
        for seed in range(200)
    ]
    assert all(s.position != 2 for s in plain)
    assert any(s.position == 1 for s in plain)


def test_next_stimulus_copies_n_back_on_match() -> None:
    history = [Stimulus(4, 6), Stimulus(0, 1)]
    m = SequenceMaterializer(grid_size=3, n_level=2, rng=SeededRng(0))
    s = m.next_stimulus(history, position_match=True, audio_match=True, timestamp_ms=1234)
    assert (s.position, s.audio, s.timestamp_ms) == (4, 6, 1234)

    with pytest.raises(ValueError):
        m.next_stimulus(history[:1], position_match=False, audio_match=False)


def test_extend_stamps_timestamps() -> None:
    clock = FakeClock(t=2.0)
    rng = SeededRng(3)
    m = SequenceMaterializer(grid_size=3, n_level=2, rng=rng)

    def stamp(i: int) -> int:
        return int(clock.now() * 1000) + i * 3000

    seq = m.seed_stimuli(timestamp_for=stamp)
    plan = plan_engaging_sequence(8, 3, 2, rng=rng)
    m.extend(seq, plan, timestamp_for=stamp)
    assert [s.timestamp_ms for s in seq] == [2000 + i * 3000 for i in range(8)]


def test_invalid_requests_raise() -> None:
    with pytest.raises(ValueError):
        generate_engaging_sequence(2, 3, 2, rng=SeededRng(0))
    with pytest.raises(ValueError):
        generate_engaging_sequence(20, 1, 2, rng=SeededRng(0))
    with pytest.raises(ValueError):
        generate_engaging_sequence(20, 3, 2, "impossible", rng=SeededRng(0))
    with pytest.raises(ValueError):
        SequenceMaterializer(grid_size=3, n_level=0, rng=SeededRng(0))


def test_generator_determinism_same_seed_same_sequence() -> None:
    a = generate_engaging_sequence(40, 3, 3, "hard", rng=SeededRng(2024))
    b = generate_engaging_sequence(40, 3, 3, "hard", rng=SeededRng(2024))
    assert a == b


def test_classic_sequence_shape_and_determinism() -> None:
    a = generate_classic_sequence(30, 3, 2, "easy", rng=SeededRng(5))
    b = generate_classic_sequence(30, 3, 2, "easy", rng=SeededRng(5))
    assert a == b
    assert len(a) == 30
    assert all(0 <= s.position < 9 and 0 <= s.audio < AUDIO_CHOICES for s in a)
    with pytest.raises(ValueError):
        generate_classic_sequence(2, 3, 2, rng=SeededRng(0))


def test_anti_cluster_draws_penalise_the_newest_value_most() -> None:
    rng = SeededRng(13)
    counts = [0, 0, 0]
    for _ in range(2000):
        counts[_anti_cluster_value(rng, 3, None, [0, 1])] += 1
    # Weights 0.65, 0.3 and 1.0 for the older value, the newest and a fresh one.
    assert counts[1] < counts[0] < counts[2]

    for _ in range(50):
        assert _anti_cluster_value(rng, 3, 2, [0, 1]) != 2
