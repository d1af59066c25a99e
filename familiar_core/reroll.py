"""Reroll analysis: which dice changes could turn a roll into a pass."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Optional

from .conditions import ConditionEvaluator
from .data import DEFAULT_TOP_COMBINATIONS
from .dice import effective_dice_caps, iter_dice_space, max_dice_for_rank
from .models import (
    BonusItem,
    ConditionalBonus,
    Familiar,
    FamiliarContext,
    PassingCombination,
    PassingValue,
    RerollSuggestion,
    RerollSummary,
    rank_name,
)
from .scoring import calculate_score, round_half_up, to_familiar_context

logger = logging.getLogger(__name__)


def calculate_reroll_suggestions(
    current_dice: Sequence[int],
    familiars: Sequence[FamiliarContext],
    bonus_items: Sequence[BonusItem],
    conditional_bonuses: Sequence[ConditionalBonus],
    difficulty: float,
    evaluator: Optional[ConditionEvaluator] = None,
) -> list[RerollSuggestion]:
    """Return, per die, every value that would make the roll meet ``difficulty``.

    Each position is tried with every face ``1..max`` for its familiar's rank
    while the other dice keep their current values. ``odds`` is the rounded
    percentage of passing faces, or ``None`` when no face passes.
    """

    suggestions: list[RerollSuggestion] = []
    for die_index, current_value in enumerate(current_dice):
        context = familiars[die_index] if die_index < len(familiars) else None
        rank = rank_name(context.rank if context is not None else None) or "Common"
        max_dice = max_dice_for_rank(rank)

        passing_values: list[PassingValue] = []
        for test_value in range(1, max_dice + 1):
            test_dice = list(current_dice)
            test_dice[die_index] = test_value
            result = calculate_score(
                test_dice, familiars, bonus_items, conditional_bonuses, evaluator
            )
            if result.final_result >= difficulty:
                passing_values.append(
                    PassingValue(
                        value=test_value,
                        dice_sum=result.dice_sum,
                        total_flat=result.total_flat,
                        total_multiplier=result.total_multiplier,
                        final_result=result.final_result,
                        active_conditionals=result.active_conditional_names,
                    )
                )

        odds = (
            round_half_up(len(passing_values) / max_dice * 100) if passing_values else None
        )
        suggestions.append(
            RerollSuggestion(
                die_index=die_index,
                die_name=f"Dice {die_index + 1}",
                current_value=current_value,
                passing_values=passing_values,
                odds=odds,
                current_passes=any(p.value == current_value for p in passing_values),
                max_dice=max_dice,
                rank=rank,
            )
        )
    return suggestions


def get_best_reroll_option(suggestions: Sequence[RerollSuggestion]) -> Optional[RerollSuggestion]:
    """Return the die worth rerolling with the best odds, if any.

    Dice that already pass are not candidates. Ties go to the earlier die.
    """

    rerollable = [s for s in suggestions if s.passing_values and not s.current_passes]
    if not rerollable:
        return None
    return max(rerollable, key=lambda s: s.odds or 0)


def can_pass_with_single_reroll(suggestions: Sequence[RerollSuggestion]) -> bool:
    return any(s.passing_values for s in suggestions)


def get_reroll_summary(suggestions: Sequence[RerollSuggestion]) -> RerollSummary:
    possible = [s for s in suggestions if s.passing_values]
    return RerollSummary(
        can_pass=bool(possible),
        best_odds=max((s.odds or 0) for s in possible) if possible else None,
        impossible_count=len(suggestions) - len(possible),
    )


def find_top_passing_combinations(
    familiars: Sequence[Familiar],
    bonus_items: Sequence[BonusItem],
    conditional_bonuses: Sequence[ConditionalBonus],
    difficulty: float,
    limit: int = DEFAULT_TOP_COMBINATIONS,
    evaluator: Optional[ConditionEvaluator] = None,
) -> list[PassingCombination]:
    """Return the most likely full rolls that meet ``difficulty``.

    The search covers every roll allowed by the familiars' effective dice
    caps. A roll's probability is the product over positions of
    ``(cap - value + 1) / cap``, i.e. the chance of rolling at least that
    value, expressed as a percentage.
    """

    caps = effective_dice_caps(familiars)
    contexts = [to_familiar_context(familiar) for familiar in familiars]

    passing: list[PassingCombination] = []
    for roll in iter_dice_space(caps):
        result = calculate_score(roll, contexts, bonus_items, conditional_bonuses, evaluator)
        if result.final_result < difficulty:
            continue
        probability = 1.0
        for value, cap in zip(roll, caps):
            probability *= (cap - value + 1) / cap
        passing.append(
            PassingCombination(
                dice=roll,
                dice_sum=result.dice_sum,
                final_score=result.final_result,
                probability=probability * 100,
                active_conditionals=result.active_conditional_names,
            )
        )

    logger.debug(
        "%d of the rolls under caps %s meet difficulty %s", len(passing), caps, difficulty
    )
    passing.sort(key=lambda combination: combination.probability, reverse=True)
    return passing[:limit]
