from __future__ import annotations

import math
import random
from collections.abc import Mapping, MutableSequence, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import TypeVar

T = TypeVar("T")

AUDIO_CHOICES = 8  # audio indices 0..7
MAX_N_LEVEL = 10


class Channel(StrEnum):
    POSITION = "position"
    AUDIO = "audio"


@dataclass(frozen=True, slots=True)
class Stimulus:
    position: int  # row-major grid cell, 0..grid_size**2 - 1
    audio: int  # 0..AUDIO_CHOICES - 1
    timestamp_ms: int = 0

    def value(self, channel: Channel) -> int:
        return self.position if channel is Channel.POSITION else self.audio


class SeededRng:
    """Seeded RNG wrapper; every generator owns one so sessions never share state."""

    def __init__(self, seed: int) -> None:
        self._seed = int(seed)
        self._rng = random.Random(self._seed)

    @property
    def seed(self) -> int:
        return self._seed

    def random(self) -> float:
        return self._rng.random()

    def randint(self, a: int, b: int) -> int:
        return self._rng.randint(a, b)

    def choice(self, seq: Sequence[T]) -> T:
        return self._rng.choice(seq)

    def uniform(self, a: float, b: float) -> float:
        return self._rng.uniform(a, b)

    def shuffle(self, items: MutableSequence[object]) -> None:
        self._rng.shuffle(items)

    def sample(self, population: Sequence[T], k: int) -> list[T]:
        return self._rng.sample(population, k)


def clamp(x: float, lo: float, hi: float) -> float:
    return lo if x <= lo else hi if x >= hi else float(x)


def clamp01(x: float) -> float:
    return clamp(x, 0.0, 1.0)


def round_half_up(x: float) -> int:
    # Target counts round .5 upward: round_half_up(2.5) == 3.
    return int(math.floor(x + 0.5))


def eligible_length(sequence_length: int, n_level: int) -> int:
    return max(0, int(sequence_length) - int(n_level))


def validate_session_shape(*, length: int, grid_size: int, n_level: int) -> None:
    """Reject requests that would leave no stimulus with a back-reference."""

    if n_level < 1:
        raise ValueError("n_level must be >= 1")
    if grid_size < 2:
        raise ValueError("grid_size must be >= 2")
    if length <= n_level:
        raise ValueError("length must be > n_level (no eligible stimuli)")


def channel_matches(
    sequence: Sequence[Stimulus], index: int, n_level: int, channel: Channel
) -> bool:
    back = index - n_level
    if n_level < 1 or back < 0 or index >= len(sequence):
        return False
    return sequence[index].value(channel) == sequence[back].value(channel)


def position_matches(sequence: Sequence[Stimulus], index: int, n_level: int) -> bool:
    return channel_matches(sequence, index, n_level, Channel.POSITION)


def audio_matches(sequence: Sequence[Stimulus], index: int, n_level: int) -> bool:
    return channel_matches(sequence, index, n_level, Channel.AUDIO)


def match_flags(sequence: Sequence[Stimulus], n_level: int, channel: Channel) -> list[bool]:
    """Ground-truth match flags over the eligible region (index i -> sequence[i + n_level])."""

    return [
        channel_matches(sequence, i, n_level, channel) for i in range(n_level, len(sequence))
    ]


def index_to_row_col(index: int, grid_size: int) -> tuple[int, int]:
    return index // grid_size, index % grid_size


def row_col_to_index(row: int, col: int, grid_size: int) -> int:
    return row * grid_size + col


def is_valid_n_level(n_level: object) -> bool:
    return isinstance(n_level, int) and not isinstance(n_level, bool) and 1 <= n_level <= MAX_N_LEVEL


def difficulty_label(n_level: int) -> str:
    if n_level <= 2:
        return "Beginner"
    if n_level <= 4:
        return "Intermediate"
    if n_level <= 6:
        return "Advanced"
    return "Expert"


@dataclass(frozen=True, slots=True)
class LevelProgress:
    games_played: int
    average_score: float
    best_score: float = 0.0


def recommend_n_level(progress: Mapping[int, LevelProgress]) -> int:
    """Next level once a level has 3+ games averaging 80%, else the highest level played."""

    if not progress:
        return 2
    levels = sorted(progress, reverse=True)
    for level in levels:
        p = progress[level]
        if p.games_played >= 3 and p.average_score >= 80.0:
            return min(level + 1, MAX_N_LEVEL)
    return levels[0]
