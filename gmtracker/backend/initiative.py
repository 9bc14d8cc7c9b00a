"""Initiative rolling, ordering and turn advancement."""

from __future__ import annotations

import random
from dataclasses import replace
from typing import Any, Sequence, TypeVar

T = TypeVar("T")

INITIATIVE_DIE = 20


def roll_initiative(entries: Sequence[T], rng: Any = random) -> list[T]:
    """Roll a d20 for every monster entry that has no initiative yet.

    Player entries are returned untouched; players roll their own initiative.
    """
    rolled: list[T] = []
    for entry in entries:
        if getattr(entry, "participant_type") == "monster" and not getattr(entry, "initiative_roll"):
            entry = replace(entry, initiative_roll=rng.randint(1, INITIATIVE_DIE))
        rolled.append(entry)
    return rolled


def sort_by_initiative(entries: Sequence[T]) -> list[T]:
    """Stable descending sort; equal initiatives keep their prior order."""
    return sorted(entries, key=lambda entry: getattr(entry, "initiative_roll"), reverse=True)


def next_turn_position(turn_index: int, round_number: int, count: int) -> tuple[int, int]:
    new_turn_index = turn_index + 1
    if new_turn_index >= count:
        return 0, round_number + 1
    return new_turn_index, round_number
