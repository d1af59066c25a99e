"""Score calculation shared by the live calculator, optimizer, and reroll analysis."""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Optional

from .conditions import ConditionEvaluator, default_evaluator, normalize_multiplier
from .dice import iter_dice_space
from .models import (
    BonusItem,
    CalculationResult,
    CalculationResultWithStatus,
    ConditionalBonus,
    Familiar,
    FamiliarBreakdown,
    FamiliarContext,
    LineupEvaluation,
    rank_name,
)


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (``-2.5`` becomes ``-2``)."""

    return math.floor(value + 0.5)


def apply_multiplier(after_flat: float, multiplier: float) -> int | float:
    """Return ``floor(after_flat * multiplier)``, or ``after_flat`` when ``multiplier`` is 0."""

    if multiplier != 0:
        return math.floor(after_flat * multiplier)
    return after_flat


def item_bonus_totals(items: Sequence[BonusItem]) -> tuple[float, float]:
    """Sum flat bonuses and normalised multipliers of equipped items."""

    flat: float = 0
    multiplier = 0.0
    for item in items:
        flat += item.flat_bonus or 0
        multiplier += normalize_multiplier(item.multiplier_bonus)
    return flat, multiplier


def to_familiar_context(familiar: Familiar) -> FamiliarContext:
    """Return the view of ``familiar`` that condition expressions can see."""

    return FamiliarContext(
        type=familiar.type,
        element=familiar.element,
        rank=rank_name(familiar.rank),
    )


def calculate_score(
    dice: Sequence[int],
    familiars: Sequence[FamiliarContext],
    bonus_items: Sequence[BonusItem],
    conditional_bonuses: Sequence[ConditionalBonus],
    evaluator: Optional[ConditionEvaluator] = None,
) -> CalculationResult:
    """Score a single roll.

    Parameters
    ----------
    dice:
        Rolled value per position.
    familiars:
        Familiar contexts visible to the conditions.
    bonus_items:
        Unconditional item bonuses.
    conditional_bonuses:
        Bonuses whose condition is evaluated against ``dice``/``familiars``.
    evaluator:
        Condition evaluator (defaults to the shared one).

    Returns
    -------
    CalculationResult
        ``final_result`` is ``floor((dice_sum + total_flat) * multiplier)``
        when any multiplier applies, otherwise ``dice_sum + total_flat``.
    """

    evaluator = evaluator or default_evaluator
    dice_sum = sum(dice)
    item_flat, item_multiplier = item_bonus_totals(bonus_items)
    conditional = evaluator.evaluate_bonuses(conditional_bonuses, dice, familiars)

    total_flat = item_flat + conditional.total_flat
    total_multiplier = item_multiplier + conditional.total_multiplier

    final_multiplier = total_multiplier if total_multiplier != 0 else None
    return CalculationResult(
        dice_sum=dice_sum,
        total_flat=total_flat,
        total_multiplier=final_multiplier,
        final_result=apply_multiplier(dice_sum + total_flat, total_multiplier),
        active_conditional_names=conditional.active_names,
    )


def calculate_score_with_status(
    dice: Sequence[int],
    familiars: Sequence[FamiliarContext],
    bonus_items: Sequence[BonusItem],
    conditional_bonuses: Sequence[ConditionalBonus],
    difficulty: float,
    evaluator: Optional[ConditionEvaluator] = None,
) -> CalculationResultWithStatus:
    """Score a roll and compare it against ``difficulty``."""

    result = calculate_score(dice, familiars, bonus_items, conditional_bonuses, evaluator)
    return CalculationResultWithStatus(
        dice_sum=result.dice_sum,
        total_flat=result.total_flat,
        total_multiplier=result.total_multiplier,
        final_result=result.final_result,
        active_conditional_names=result.active_conditional_names,
        passed=result.final_result >= difficulty,
        difference=result.final_result - difficulty,
    )


def evaluate_lineup(
    familiars: Sequence[Familiar],
    additional_bonuses: Sequence[ConditionalBonus],
    dice: Sequence[int],
    evaluator: Optional[ConditionEvaluator] = None,
) -> LineupEvaluation:
    """Score a lineup for one roll, including each familiar's own conditional."""

    evaluator = evaluator or default_evaluator
    dice_sum = sum(dice)
    contexts = [to_familiar_context(familiar) for familiar in familiars]

    total_flat: float = 0
    total_mult = 0.0
    active_bonus_names: list[str] = []
    breakdown: list[FamiliarBreakdown] = []

    for index, familiar in enumerate(familiars):
        entry = FamiliarBreakdown(
            familiar_index=index,
            name=familiar.name,
            element=familiar.element,
            type=familiar.type,
            rank=rank_name(familiar.rank) or "",
        )
        if familiar.conditional is not None:
            result = evaluator.evaluate_bonus(familiar.conditional, dice, contexts)
            if result.is_active:
                entry.conditional_triggered = True
                entry.conditional_name = familiar.conditional.name
                entry.flat_contribution = result.flat_bonus
                entry.multiplier_contribution = result.multiplier_bonus
                active_bonus_names.append(familiar.conditional.name)
                total_flat += result.flat_bonus
                total_mult += result.multiplier_bonus
        breakdown.append(entry)

    extra = evaluator.evaluate_bonuses(additional_bonuses, dice, contexts)
    active_bonus_names.extend(extra.active_names)
    total_flat += extra.total_flat
    total_mult += extra.total_multiplier

    return LineupEvaluation(
        score=apply_multiplier(dice_sum + total_flat, total_mult),
        dice_sum=dice_sum,
        total_flat=total_flat,
        total_mult=total_mult,
        active_bonus_names=active_bonus_names,
        familiar_breakdown=breakdown,
    )


def lineup_score_distribution(
    familiars: Sequence[Familiar],
    additional_bonuses: Sequence[ConditionalBonus],
    max_dice_per_position: Sequence[int],
    evaluator: Optional[ConditionEvaluator] = None,
) -> list[int]:
    """Return the lineup score for every roll in the dice space, in roll order."""

    return [
        evaluate_lineup(familiars, additional_bonuses, roll, evaluator).score
        for roll in iter_dice_space(max_dice_per_position)
    ]


def calculate_expected_score(
    familiars: Sequence[Familiar],
    additional_bonuses: Sequence[ConditionalBonus],
    max_dice_per_position: Sequence[int],
    evaluator: Optional[ConditionEvaluator] = None,
) -> float:
    """Return the exact mean lineup score over the full dice space."""

    scores = lineup_score_distribution(
        familiars, additional_bonuses, max_dice_per_position, evaluator
    )
    return sum(scores) / len(scores) if scores else 0.0
