from __future__ import annotations

from dataclasses import dataclass, replace
from enum import StrEnum

from .core import round_half_up

MIN_MATCH_RATE = 0.15
MAX_MATCH_RATE = 0.45
MAX_OVERLAP_BONUS = 0.20


class Difficulty(StrEnum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


@dataclass(frozen=True, slots=True)
class DifficultyProfile:
    position_match_rate: float
    audio_match_rate: float
    max_consecutive: int  # longest run of matches allowed on one channel
    min_gap: int  # smallest index distance between two matches on one channel
    overlap_bonus: float = 0.0  # added to the tolerated overlap fraction

    def targets(self, eligible: int) -> tuple[int, int]:
        """Per-channel match counts for ``eligible`` slots."""

        return (
            round_half_up(eligible * self.position_match_rate),
            round_half_up(eligible * self.audio_match_rate),
        )

    def with_rates(self, position: float, audio: float) -> DifficultyProfile:
        return replace(self, position_match_rate=float(position), audio_match_rate=float(audio))


DIFFICULTY_PROFILES: dict[Difficulty, DifficultyProfile] = {
    Difficulty.EASY: DifficultyProfile(
        position_match_rate=0.35,
        audio_match_rate=0.35,
        max_consecutive=1,
        min_gap=2,
        overlap_bonus=0.05,
    ),
    Difficulty.MEDIUM: DifficultyProfile(
        position_match_rate=0.30,
        audio_match_rate=0.30,
        max_consecutive=2,
        min_gap=1,
        overlap_bonus=0.10,
    ),
    Difficulty.HARD: DifficultyProfile(
        position_match_rate=0.25,
        audio_match_rate=0.25,
        max_consecutive=3,
        min_gap=1,
        overlap_bonus=0.15,
    ),
}


def resolve_difficulty(name: str | Difficulty) -> Difficulty:
    try:
        return Difficulty(str(name).strip().lower())
    except ValueError:
        raise ValueError(f"unknown difficulty: {name!r}") from None


def profile_for(name: str | Difficulty) -> DifficultyProfile:
    return DIFFICULTY_PROFILES[resolve_difficulty(name)]
