"""Lineup optimizer: searches familiar combinations under several strategies."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Iterable, Sequence
from itertools import combinations as _combinations
from time import perf_counter
from typing import Any, Literal, Optional, TypeVar

import numpy as np

from .conditions import ConditionEvaluator, default_evaluator, references_name
from .data import (
    ASYNC_BATCH_SIZE,
    BALANCED_WEIGHTS,
    FLOOR_COVERAGE_PERCENT,
    FLOOR_RATIO,
    STRATEGY_BALANCED,
    STRATEGY_DICE_INDEPENDENT,
    STRATEGY_FLOOR_GUARANTEE,
    STRATEGY_HIGH_ROLLS,
    STRATEGY_LOW_ROLLS,
    STRATEGY_MEDIAN,
    STRATEGY_MIN_VARIANCE,
    STRATEGY_OVERALL,
    rank_index,
)
from .dice import average_dice_for_familiars, max_dice_for_familiars
from .models import (
    BalancedComponents,
    ConditionalBonus,
    Familiar,
    LineupEvaluation,
    OptimizedLineup,
    OptimizerConfig,
    RankLike,
    StrategyResults,
)
from .scoring import (
    calculate_expected_score,
    evaluate_lineup,
    lineup_score_distribution,
    round_half_up,
    to_familiar_context,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ScoringStrategy = Literal["overall", "lowRolls", "highRolls"]
ProgressCallback = Callable[[int], None]
CancelPredicate = Callable[[], bool]
Combination = list[Familiar]
LineupFinder = Callable[
    [Sequence[Combination], Sequence[ConditionalBonus], Optional[ConditionEvaluator]],
    Optional[OptimizedLineup],
]


def generate_combinations(pool: Sequence[T], size: int) -> list[list[T]]:
    """Return every ``size``-element subset of ``pool`` in lexicographic order.

    Members keep their pool order inside each subset.
    """

    if size < 0:
        return []
    return [list(combo) for combo in _combinations(pool, size)]


def filter_roster_for_optimization(
    roster: Iterable[Familiar],
    elements: Optional[Iterable[str]] = None,
    types: Optional[Iterable[str]] = None,
    min_rank: Optional[RankLike] = None,
) -> list[Familiar]:
    """Drop disabled familiars and those outside the requested filters."""

    element_set = set(elements or ())
    type_set = set(types or ())
    min_index = rank_index(min_rank) if min_rank is not None else None

    selected: list[Familiar] = []
    for familiar in roster:
        if familiar.disabled:
            continue
        if element_set and familiar.element not in element_set:
            continue
        if type_set and familiar.type not in type_set:
            continue
        if min_index is not None and rank_index(familiar.rank) < min_index:
            continue
        selected.append(familiar)
    return selected


# ---- ignored conditionals ----------------------------------------------------


def _without_ignored(familiar: Familiar, ignored: frozenset[str]) -> Familiar:
    conditional = familiar.conditional
    if conditional is not None and conditional.id and conditional.id in ignored:
        return dataclasses.replace(familiar, conditional=None)
    return familiar


def filter_ignored_conditionals(
    familiars: Sequence[Familiar],
    bonuses: Sequence[ConditionalBonus],
    ignored_ids: Iterable[str],
) -> tuple[list[Familiar], list[ConditionalBonus]]:
    """Null familiar conditionals and drop bonuses whose id is ignored."""

    ignored = frozenset(ignored_ids)
    if not ignored:
        return list(familiars), list(bonuses)
    return (
        [_without_ignored(familiar, ignored) for familiar in familiars],
        [bonus for bonus in bonuses if not bonus.id or bonus.id not in ignored],
    )


def filter_combinations_for_strategy(
    combinations: Sequence[Combination],
    bonuses: Sequence[ConditionalBonus],
    ignored_ids: Iterable[str],
) -> tuple[list[Combination], list[ConditionalBonus]]:
    """Apply :func:`filter_ignored_conditionals` to every combination."""

    ignored = frozenset(ignored_ids)
    if not ignored:
        return list(combinations), list(bonuses)
    filtered = [[_without_ignored(familiar, ignored) for familiar in combo] for combo in combinations]
    return filtered, [bonus for bonus in bonuses if not bonus.id or bonus.id not in ignored]


# ---- representative dice -----------------------------------------------------


def dice_for_strategy(familiars: Sequence[Familiar], strategy: str) -> list[int]:
    """Return the roll a strategy uses to score (and display) a lineup."""

    if strategy == STRATEGY_LOW_ROLLS:
        return [1] * len(familiars)
    if strategy == STRATEGY_HIGH_ROLLS:
        return max_dice_for_familiars(familiars)
    return average_dice_for_familiars(familiars)


def score_label(familiars: Sequence[Familiar], strategy: str) -> str:
    """Return the human-readable description of the dice behind a score."""

    dice = dice_for_strategy(familiars, strategy)
    joined = "-".join(str(value) for value in dice)
    if strategy in (STRATEGY_LOW_ROLLS, STRATEGY_HIGH_ROLLS):
        return f"Score with dice: {joined}"
    return f"Avg dice: {joined}"


def _lineup(
    combo: Combination,
    score: float,
    label: str,
    test_dice: list[int],
    evaluation: LineupEvaluation,
    **extras: Any,
) -> OptimizedLineup:
    return OptimizedLineup(
        familiars=list(combo),
        score=round_half_up(score),
        score_label=label,
        test_dice=test_dice,
        evaluation=evaluation,
        **extras,
    )


# ---- single-roll strategies --------------------------------------------------


def find_best_lineup(
    combinations: Sequence[Combination],
    bonuses: Sequence[ConditionalBonus],
    strategy: ScoringStrategy,
    evaluator: Optional[ConditionEvaluator] = None,
) -> Optional[OptimizedLineup]:
    """Return the highest scoring combination under ``strategy``.

    ``overall`` is scored by the exact expected score over the lineup's dice
    space; the other strategies use their representative roll. Ties keep the
    combination seen first.
    """

    evaluator = evaluator or default_evaluator
    best: Optional[OptimizedLineup] = None
    best_score = float("-inf")

    for combo in combinations:
        test_dice = dice_for_strategy(combo, strategy)
        evaluation = evaluate_lineup(combo, bonuses, test_dice, evaluator)
        if strategy == STRATEGY_OVERALL:
            score: float = calculate_expected_score(
                combo, bonuses, max_dice_for_familiars(combo), evaluator
            )
        else:
            score = evaluation.score

        if score > best_score:
            best_score = score
            best = _lineup(combo, score, score_label(combo, strategy), test_dice, evaluation)
    return best


def find_best_lineup_fast(
    combinations: Sequence[Combination],
    bonuses: Sequence[ConditionalBonus],
    strategy: ScoringStrategy,
    evaluator: Optional[ConditionEvaluator] = None,
) -> Optional[OptimizedLineup]:
    """Like :func:`find_best_lineup` but ``overall`` uses the average roll only."""

    evaluator = evaluator or default_evaluator
    best: Optional[OptimizedLineup] = None
    best_score = float("-inf")

    for combo in combinations:
        test_dice = dice_for_strategy(combo, strategy)
        evaluation = evaluate_lineup(combo, bonuses, test_dice, evaluator)
        if evaluation.score > best_score:
            best_score = evaluation.score
            best = _lineup(
                combo, evaluation.score, score_label(combo, strategy), test_dice, evaluation
            )
    return best


async def find_best_lineup_async(
    combinations: Sequence[Combination],
    bonuses: Sequence[ConditionalBonus],
    strategy: ScoringStrategy,
    on_progress: Optional[ProgressCallback] = None,
    should_cancel: Optional[CancelPredicate] = None,
    evaluator: Optional[ConditionEvaluator] = None,
    batch_size: int = ASYNC_BATCH_SIZE,
) -> Optional[OptimizedLineup]:
    """Cooperative version of :func:`find_best_lineup_fast`.

    Every ``batch_size`` combinations the progress callback receives the
    rounded completion percentage and control returns to the event loop.
    ``should_cancel`` is polled before each combination; once it returns
    True the best lineup found so far is returned.
    """

    evaluator = evaluator or default_evaluator
    best: Optional[OptimizedLineup] = None
    best_score = float("-inf")
    total = len(combinations)
    processed = 0

    for combo in combinations:
        if should_cancel is not None and should_cancel():
            logger.info(
                "Lineup search (%s) cancelled after %d of %d combinations",
                strategy,
                processed,
                total,
            )
            return best

        test_dice = dice_for_strategy(combo, strategy)
        evaluation = evaluate_lineup(combo, bonuses, test_dice, evaluator)
        if evaluation.score > best_score:
            best_score = evaluation.score
            best = _lineup(
                combo, evaluation.score, score_label(combo, strategy), test_dice, evaluation
            )

        processed += 1
        if processed % batch_size == 0:
            if on_progress is not None:
                on_progress(round_half_up(processed / total * 100))
            await asyncio.sleep(0)

    if on_progress is not None:
        on_progress(100)
    return best


# ---- distribution strategies -------------------------------------------------


def _score_array(
    combo: Combination,
    bonuses: Sequence[ConditionalBonus],
    evaluator: ConditionEvaluator,
) -> np.ndarray:
    scores = lineup_score_distribution(combo, bonuses, max_dice_for_familiars(combo), evaluator)
    return np.asarray(scores, dtype=np.float64)


def _average_roll(
    combo: Combination,
    bonuses: Sequence[ConditionalBonus],
    evaluator: ConditionEvaluator,
) -> tuple[list[int], LineupEvaluation]:
    avg_dice = average_dice_for_familiars(combo)
    return avg_dice, evaluate_lineup(combo, bonuses, avg_dice, evaluator)


def find_best_lineup_median(
    combinations: Sequence[Combination],
    bonuses: Sequence[ConditionalBonus],
    evaluator: Optional[ConditionEvaluator] = None,
) -> Optional[OptimizedLineup]:
    """Return the lineup whose median outcome is highest."""

    evaluator = evaluator or default_evaluator
    best: Optional[OptimizedLineup] = None
    best_median = float("-inf")

    for combo in combinations:
        median = float(np.median(_score_array(combo, bonuses, evaluator)))
        if median > best_median:
            best_median = median
            avg_dice, evaluation = _average_roll(combo, bonuses, evaluator)
            best = _lineup(
                combo,
                median,
                "Median of all outcomes",
                avg_dice,
                evaluation,
                median_score=median,
            )
    return best


def find_best_lineup_min_variance(
    combinations: Sequence[Combination],
    bonuses: Sequence[ConditionalBonus],
    evaluator: Optional[ConditionEvaluator] = None,
) -> Optional[OptimizedLineup]:
    """Return the most consistent lineup (lowest population standard deviation).

    Equal deviations are broken by the higher mean.
    """

    evaluator = evaluator or default_evaluator
    best: Optional[OptimizedLineup] = None
    lowest_std = float("inf")
    best_mean = 0.0

    for combo in combinations:
        scores = _score_array(combo, bonuses, evaluator)
        mean = float(scores.mean())
        std = float(scores.std())
        if std < lowest_std or (std == lowest_std and mean > best_mean):
            lowest_std = std
            best_mean = mean
            avg_dice, evaluation = _average_roll(combo, bonuses, evaluator)
            best = _lineup(
                combo,
                mean,
                f"Std Dev: {std:.1f}",
                avg_dice,
                evaluation,
                standard_deviation=std,
            )
    return best


def find_best_lineup_floor_guarantee(
    combinations: Sequence[Combination],
    bonuses: Sequence[ConditionalBonus],
    evaluator: Optional[ConditionEvaluator] = None,
) -> Optional[OptimizedLineup]:
    """Return the lineup with the best score floor.

    The floor of a lineup is 80% of its mean score. Among lineups where at
    least 80% of outcomes reach their floor, the highest floor wins. When no
    lineup clears that bar, a second pass picks the lineup with the highest
    share of outcomes at or above its floor instead.
    """

    evaluator = evaluator or default_evaluator
    stats: list[tuple[Combination, float, float]] = []
    for combo in combinations:
        scores = _score_array(combo, bonuses, evaluator)
        threshold = float(scores.mean()) * FLOOR_RATIO
        percentage = float(np.count_nonzero(scores >= threshold)) / scores.size * 100
        stats.append((combo, threshold, percentage))

    chosen: Optional[tuple[Combination, float, float]] = None
    best_floor = float("-inf")
    for entry in stats:
        _, threshold, percentage = entry
        if percentage >= FLOOR_COVERAGE_PERCENT and threshold > best_floor:
            best_floor = threshold
            chosen = entry

    if chosen is None and stats:
        logger.debug("No lineup reaches %.0f%% floor coverage; ranking by coverage", FLOOR_COVERAGE_PERCENT)
        best_percentage = float("-inf")
        for entry in stats:
            if entry[2] > best_percentage:
                best_percentage = entry[2]
                chosen = entry

    if chosen is None:
        return None
    combo, threshold, percentage = chosen
    avg_dice, evaluation = _average_roll(combo, bonuses, evaluator)
    return _lineup(
        combo,
        threshold,
        f"{round_half_up(percentage)}% above {round_half_up(threshold)}",
        avg_dice,
        evaluation,
        floor_percentage=percentage,
        floor_threshold=threshold,
    )


def find_best_lineup_balanced(
    combinations: Sequence[Combination],
    bonuses: Sequence[ConditionalBonus],
    evaluator: Optional[ConditionEvaluator] = None,
) -> Optional[OptimizedLineup]:
    """Return the lineup with the best 25/50/25 blend of low, average and high rolls."""

    evaluator = evaluator or default_evaluator
    low_weight, avg_weight, high_weight = BALANCED_WEIGHTS
    best: Optional[OptimizedLineup] = None
    best_weighted = float("-inf")

    for combo in combinations:
        low = evaluate_lineup(combo, bonuses, dice_for_strategy(combo, STRATEGY_LOW_ROLLS), evaluator)
        avg_dice, average = _average_roll(combo, bonuses, evaluator)
        high = evaluate_lineup(combo, bonuses, max_dice_for_familiars(combo), evaluator)
        weighted = low_weight * low.score + avg_weight * average.score + high_weight * high.score

        if weighted > best_weighted:
            best_weighted = weighted
            best = _lineup(
                combo,
                weighted,
                "Weighted (25/50/25)",
                avg_dice,
                average,
                balanced_components=BalancedComponents(
                    low_roll_score=low.score,
                    avg_score=average.score,
                    high_roll_score=high.score,
                ),
            )
    return best


def is_dice_independent(conditional: Optional[ConditionalBonus]) -> bool:
    """Return True when a conditional can activate without looking at the dice."""

    if conditional is None:
        return True
    condition = (conditional.condition or "").strip()
    if not condition or condition == "true":
        return True
    return not references_name(condition, "dice")


def find_best_lineup_dice_independent(
    combinations: Sequence[Combination],
    bonuses: Sequence[ConditionalBonus],
    evaluator: Optional[ConditionEvaluator] = None,
) -> Optional[OptimizedLineup]:
    """Return the lineup with the most bonuses guaranteed by its composition alone.

    Only lineups whose familiar conditionals never read the dice qualify.
    Guaranteed bonuses are counted with an empty roll; ties go to the higher
    score at average dice.
    """

    evaluator = evaluator or default_evaluator
    independent_bonuses = [bonus for bonus in bonuses if is_dice_independent(bonus)]
    best: Optional[OptimizedLineup] = None
    best_key: Optional[tuple[int, float]] = None

    for combo in combinations:
        if not all(is_dice_independent(familiar.conditional) for familiar in combo):
            continue
        contexts = [to_familiar_context(familiar) for familiar in combo]
        candidates = [f.conditional for f in combo if f.conditional is not None]
        candidates.extend(independent_bonuses)
        guaranteed = sum(
            1 for bonus in candidates if evaluator.evaluate(bonus.condition, [], contexts)
        )
        avg_dice, evaluation = _average_roll(combo, independent_bonuses, evaluator)
        key = (guaranteed, evaluation.score)
        if best_key is None or key > best_key:
            best_key = key
            plural = "" if guaranteed == 1 else "es"
            best = _lineup(
                combo,
                evaluation.score,
                f"{guaranteed} guaranteed bonus{plural}",
                avg_dice,
                evaluation,
                guaranteed_bonus_count=guaranteed,
            )
    return best


# ---- running every strategy --------------------------------------------------


def _single_roll_finder(
    finder: Callable[..., Optional[OptimizedLineup]], strategy: str
) -> LineupFinder:
    def run(
        combos: Sequence[Combination],
        bons: Sequence[ConditionalBonus],
        evaluator: Optional[ConditionEvaluator],
    ) -> Optional[OptimizedLineup]:
        return finder(combos, bons, strategy, evaluator)

    return run


_DISTRIBUTION_STRATEGIES: list[tuple[str, str, LineupFinder]] = [
    (STRATEGY_MEDIAN, "best_median", find_best_lineup_median),
    (STRATEGY_MIN_VARIANCE, "best_min_variance", find_best_lineup_min_variance),
    (STRATEGY_FLOOR_GUARANTEE, "best_floor_guarantee", find_best_lineup_floor_guarantee),
    (STRATEGY_BALANCED, "best_balanced", find_best_lineup_balanced),
    (STRATEGY_DICE_INDEPENDENT, "best_dice_independent", find_best_lineup_dice_independent),
]


def _run_strategy(
    key: str,
    finder: LineupFinder,
    combinations: Sequence[Combination],
    bonuses: Sequence[ConditionalBonus],
    config: OptimizerConfig,
    evaluator: ConditionEvaluator,
) -> Optional[OptimizedLineup]:
    strategy_config = config.for_strategy(key)
    if not strategy_config.enabled:
        logger.debug("Strategy %s disabled", key)
        return None

    combos, bons = filter_combinations_for_strategy(
        combinations, bonuses, strategy_config.ignored_conditional_ids
    )
    start = perf_counter()
    try:
        result = finder(combos, bons, evaluator)
    except Exception:
        logger.exception("Strategy %s failed; leaving its result empty", key)
        return None
    logger.debug("Strategy %s finished in %.3fs", key, perf_counter() - start)
    return result


def _run_all(
    combinations: Sequence[Combination],
    bonuses: Sequence[ConditionalBonus],
    config: Optional[OptimizerConfig],
    evaluator: Optional[ConditionEvaluator],
    single_roll: Callable[..., Optional[OptimizedLineup]],
) -> StrategyResults:
    config = config or OptimizerConfig()
    evaluator = evaluator or default_evaluator
    logger.info("Running all strategies over %d combinations", len(combinations))

    results = StrategyResults()
    for key, attribute in (
        (STRATEGY_OVERALL, "best_overall"),
        (STRATEGY_LOW_ROLLS, "best_low"),
        (STRATEGY_HIGH_ROLLS, "best_high"),
    ):
        finder = _single_roll_finder(single_roll, key)
        setattr(results, attribute, _run_strategy(key, finder, combinations, bonuses, config, evaluator))
    for key, attribute, finder in _DISTRIBUTION_STRATEGIES:
        setattr(results, attribute, _run_strategy(key, finder, combinations, bonuses, config, evaluator))
    return results


def run_all_strategies_fast(
    combinations: Sequence[Combination],
    bonuses: Sequence[ConditionalBonus],
    config: Optional[OptimizerConfig] = None,
    evaluator: Optional[ConditionEvaluator] = None,
) -> StrategyResults:
    """Run every enabled strategy; ``overall`` uses the average roll."""

    return _run_all(combinations, bonuses, config, evaluator, find_best_lineup_fast)


def run_all_strategies_exact(
    combinations: Sequence[Combination],
    bonuses: Sequence[ConditionalBonus],
    config: Optional[OptimizerConfig] = None,
    evaluator: Optional[ConditionEvaluator] = None,
) -> StrategyResults:
    """Run every enabled strategy; ``overall`` uses the exact expected score."""

    return _run_all(combinations, bonuses, config, evaluator, find_best_lineup)


async def run_all_strategies(
    combinations: Sequence[Combination],
    bonuses: Sequence[ConditionalBonus],
    on_progress: Optional[ProgressCallback] = None,
    should_cancel: Optional[CancelPredicate] = None,
    config: Optional[OptimizerConfig] = None,
    evaluator: Optional[ConditionEvaluator] = None,
) -> StrategyResults:
    """Run the overall, low-roll and high-roll searches cooperatively.

    Progress is reported on a single 0-100 scale split evenly across the
    three phases. When cancelled, phases that have not run stay ``None``.
    """

    config = config or OptimizerConfig()
    evaluator = evaluator or default_evaluator
    phases: list[tuple[ScoringStrategy, str]] = [
        ("overall", "best_overall"),
        ("lowRolls", "best_low"),
        ("highRolls", "best_high"),
    ]
    results = StrategyResults()
    last_reported = -1

    def report(percent: int) -> None:
        nonlocal last_reported
        if on_progress is not None and percent > last_reported:
            last_reported = percent
            on_progress(percent)

    for completed, (strategy, attribute) in enumerate(phases):
        if completed and should_cancel is not None and should_cancel():
            return results

        strategy_config = config.for_strategy(strategy)
        if not strategy_config.enabled:
            continue
        combos, bons = filter_combinations_for_strategy(
            combinations, bonuses, strategy_config.ignored_conditional_ids
        )

        def phase_progress(percent: int, completed: int = completed) -> None:
            report(round_half_up((completed + percent / 100) / len(phases) * 100))

        try:
            best = await find_best_lineup_async(
                combos, bons, strategy, phase_progress, should_cancel, evaluator
            )
        except Exception:
            logger.exception("Strategy %s failed; leaving its result empty", strategy)
            best = None
        setattr(results, attribute, best)

    if should_cancel is None or not should_cancel():
        report(100)
    return results
