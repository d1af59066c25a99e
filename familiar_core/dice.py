"""Rank-to-die mapping and enumeration of the dice space."""

from __future__ import annotations

import math
import re
from collections.abc import Iterator, Sequence
from itertools import product
from typing import Optional

from .data import DEFAULT_DIE_SIZE, RANK_DICE_MAP, UNRANKED_DIE_CAP
from .models import ConditionalBonus, Familiar, RankLike, rank_name

_DICE_CAP_PATTERN = re.compile(r"prevents dice from rolling over (\d+)", re.IGNORECASE)


def max_dice_for_rank(rank: Optional[RankLike]) -> int:
    """Return the number of sides of the die rolled for ``rank``.

    Unknown ranks fall back to a three-sided die.
    """

    name = rank_name(rank)
    if name is None:
        return DEFAULT_DIE_SIZE
    return RANK_DICE_MAP.get(name, DEFAULT_DIE_SIZE)


def average_dice_for_rank(rank: Optional[RankLike]) -> float:
    """Return the mean roll of the die for ``rank``."""

    return (1 + max_dice_for_rank(rank)) / 2


def max_dice_for_familiars(familiars: Sequence[Familiar]) -> list[int]:
    """Return the per-position die maxima for a lineup."""

    return [max_dice_for_rank(familiar.rank) for familiar in familiars]


def average_dice_for_familiars(familiars: Sequence[Familiar]) -> list[int]:
    """Return the per-position mean rolls, rounded up to a legal face."""

    return [math.ceil(average_dice_for_rank(familiar.rank)) for familiar in familiars]


def count_dice_combinations(familiars: Sequence[Familiar]) -> int:
    """Return the size of the dice space for a lineup."""

    return math.prod(max_dice_for_familiars(familiars))


def iter_dice_space(max_per_position: Sequence[int]) -> Iterator[list[int]]:
    """Yield every roll with position ``i`` ranging over ``1..max_per_position[i]``.

    Rolls come out in lexicographic order. The iterator is single-use; call
    again to restart.
    """

    ranges = [range(1, int(limit) + 1) for limit in max_per_position]
    for roll in product(*ranges):
        yield list(roll)


def generate_dice_combinations(familiars: Sequence[Familiar]) -> Iterator[list[int]]:
    """Yield every possible roll for a lineup, based on rank maxima."""

    return iter_dice_space(max_dice_for_familiars(familiars))


# ---- dice caps ---------------------------------------------------------------


def dice_cap_from_conditional(conditional: Optional[ConditionalBonus]) -> Optional[int]:
    """Extract ``N`` from a bonus named like "Prevents dice from rolling over N"."""

    if conditional is None or not conditional.name:
        return None
    match = _DICE_CAP_PATTERN.search(conditional.name)
    if match:
        return int(match.group(1))
    return None


def global_dice_cap(familiars: Sequence[Optional[Familiar]]) -> Optional[int]:
    """Return the tightest cap imposed by any familiar's conditional."""

    caps = [
        cap
        for cap in (
            dice_cap_from_conditional(familiar.conditional)
            for familiar in familiars
            if familiar is not None
        )
        if cap is not None
    ]
    return min(caps) if caps else None


def effective_dice_cap(familiar: Optional[Familiar], global_cap: Optional[int]) -> int:
    """Return the highest face a familiar's die may show.

    This is the minimum of the rank maximum, the familiar's own conditional
    cap, and ``global_cap``. Slots without a ranked familiar allow 6.
    """

    if familiar is None or not rank_name(familiar.rank):
        return UNRANKED_DIE_CAP

    effective = max_dice_for_rank(familiar.rank)
    own_cap = dice_cap_from_conditional(familiar.conditional)
    if own_cap is not None:
        effective = min(effective, own_cap)
    if global_cap is not None:
        effective = min(effective, global_cap)
    return effective


def effective_dice_caps(familiars: Sequence[Familiar]) -> list[int]:
    """Return effective caps for every position of a lineup."""

    cap = global_dice_cap(familiars)
    return [effective_dice_cap(familiar, cap) for familiar in familiars]
