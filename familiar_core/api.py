"""High-level entry points used by front-ends and callers."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from time import perf_counter
from typing import Optional

from .conditions import ConditionEvaluator
from .data import DEFAULT_LINEUP_SIZE, DEFAULT_TOP_COMBINATIONS
from .models import (
    BonusItem,
    CalculationResultWithStatus,
    ConditionalBonus,
    Familiar,
    OptimizerConfig,
    PassingCombination,
    RankLike,
    RerollSuggestion,
    RerollSummary,
    StrategyResults,
)
from .optimizer import (
    filter_roster_for_optimization,
    generate_combinations,
    run_all_strategies_exact,
    run_all_strategies_fast,
)
from .reroll import (
    calculate_reroll_suggestions,
    find_top_passing_combinations,
    get_best_reroll_option,
    get_reroll_summary,
)
from .scoring import calculate_score_with_status, to_familiar_context

logger = logging.getLogger(__name__)


@dataclass
class LineupComputationResult:
    """Bundle containing per-strategy lineups and run metadata."""

    strategies: StrategyResults
    pool_size: int
    lineup_size: int
    combination_count: int
    compute_seconds: float
    config: OptimizerConfig


def compute_optimal_lineups(
    roster: Sequence[Familiar],
    bonuses: Sequence[ConditionalBonus] = (),
    lineup_size: int = DEFAULT_LINEUP_SIZE,
    config: Optional[OptimizerConfig] = None,
    exact: bool = False,
    elements: Optional[Iterable[str]] = None,
    types: Optional[Iterable[str]] = None,
    min_rank: Optional[RankLike] = None,
    evaluator: Optional[ConditionEvaluator] = None,
) -> LineupComputationResult:
    """Filter the roster, build every lineup, and run all enabled strategies.

    Parameters
    ----------
    roster:
        Candidate familiars; disabled ones are skipped.
    bonuses:
        Additional conditional bonuses applied to every lineup.
    lineup_size:
        Number of familiars per lineup.
    config:
        Strategy switches and ignored bonus ids (defaults to all enabled).
    exact:
        Score ``overall`` by the exact expected value instead of the
        average roll.
    elements, types, min_rank:
        Optional roster filters.
    evaluator:
        Condition evaluator (defaults to the shared one).

    Returns
    -------
    LineupComputationResult
        Strategy results together with pool/combination counts and timing.
    """

    config = config or OptimizerConfig()
    pool = filter_roster_for_optimization(roster, elements, types, min_rank)
    combinations = generate_combinations(pool, lineup_size)

    compute_start = perf_counter()
    runner = run_all_strategies_exact if exact else run_all_strategies_fast
    strategies = runner(combinations, bonuses, config, evaluator)
    compute_seconds = perf_counter() - compute_start
    logger.info(
        "Evaluated %d lineups of %d from %d familiars in %.2fs",
        len(combinations),
        lineup_size,
        len(pool),
        compute_seconds,
    )

    return LineupComputationResult(
        strategies=strategies,
        pool_size=len(pool),
        lineup_size=lineup_size,
        combination_count=len(combinations),
        compute_seconds=compute_seconds,
        config=config,
    )


@dataclass
class RollAnalysis:
    """Everything the calculator view needs for one roll against a difficulty."""

    result: CalculationResultWithStatus
    suggestions: list[RerollSuggestion]
    summary: RerollSummary
    best_option: Optional[RerollSuggestion]
    top_combinations: list[PassingCombination]


def analyze_roll(
    dice: Sequence[int],
    familiars: Sequence[Familiar],
    bonus_items: Sequence[BonusItem] = (),
    conditional_bonuses: Sequence[ConditionalBonus] = (),
    difficulty: float = 0,
    top_limit: int = DEFAULT_TOP_COMBINATIONS,
    evaluator: Optional[ConditionEvaluator] = None,
) -> RollAnalysis:
    """Score ``dice`` for ``familiars`` and work out the reroll outlook.

    The familiars' own conditionals are evaluated alongside
    ``conditional_bonuses``.
    """

    if len(dice) != len(familiars):
        raise ValueError(
            f"Expected one die per familiar, got {len(dice)} dice for {len(familiars)} familiars"
        )

    contexts = [to_familiar_context(familiar) for familiar in familiars]
    conditionals = [f.conditional for f in familiars if f.conditional is not None]
    conditionals.extend(conditional_bonuses)

    result = calculate_score_with_status(
        dice, contexts, bonus_items, conditionals, difficulty, evaluator
    )
    suggestions = calculate_reroll_suggestions(
        dice, contexts, bonus_items, conditionals, difficulty, evaluator
    )
    top = find_top_passing_combinations(
        familiars, bonus_items, conditionals, difficulty, top_limit, evaluator
    )
    return RollAnalysis(
        result=result,
        suggestions=suggestions,
        summary=get_reroll_summary(suggestions),
        best_option=get_best_reroll_option(suggestions),
        top_combinations=top,
    )
