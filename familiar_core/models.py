"""Dataclasses shared across the dice, scoring, optimizer, and reroll modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


class Rank(str, Enum):
    """Familiar tier; controls the number of sides on the familiar's die."""

    COMMON = "Common"
    RARE = "Rare"
    EPIC = "Epic"
    UNIQUE = "Unique"
    LEGENDARY = "Legendary"


RankLike = Union[Rank, str]


def rank_name(rank: Optional[RankLike]) -> Optional[str]:
    """Return the plain string form of a rank (``None`` stays ``None``)."""

    if rank is None:
        return None
    if isinstance(rank, Rank):
        return rank.value
    return str(rank)


@dataclass(frozen=True)
class ConditionalBonus:
    """Named rule whose condition string decides whether its payoff applies."""

    name: str
    condition: str
    flat_bonus: float = 0
    multiplier_bonus: float = 0.0
    id: Optional[str] = None
    rarity: Optional[str] = None
    rank: Optional[str] = None
    color: Optional[str] = None
    pre_patch: bool = False


@dataclass(frozen=True)
class BonusItem:
    """Equipped item granting an unconditional flat and/or multiplier bonus."""

    id: str
    name: str
    flat_bonus: float = 0
    multiplier_bonus: float = 0.0
    description: str = ""


@dataclass(frozen=True)
class FamiliarContext:
    """Minimal familiar view exposed to condition expressions."""

    type: str
    element: str
    rank: Optional[str] = None


@dataclass(frozen=True)
class Familiar:
    """Familiar roster record, also used as a calculator slot."""

    name: str
    rank: Optional[RankLike]
    element: str
    type: str
    conditional: Optional[ConditionalBonus] = None
    id: Optional[int] = None
    wave: Optional[int] = None
    disabled: bool = False


@dataclass
class BonusContribution:
    """Outcome of evaluating a single conditional bonus."""

    is_active: bool
    flat_bonus: float
    multiplier_bonus: float


@dataclass
class ConditionalTotals:
    """Aggregate outcome of evaluating several conditional bonuses."""

    active_names: list[str]
    total_flat: float
    total_multiplier: float


@dataclass
class CalculationResult:
    """Score for a single roll; ``total_multiplier`` is ``None`` without a multiplier."""

    dice_sum: int
    total_flat: float
    total_multiplier: Optional[float]
    final_result: int
    active_conditional_names: list[str]


@dataclass
class CalculationResultWithStatus(CalculationResult):
    """Calculation result compared against a difficulty threshold."""

    passed: bool = False
    difference: float = 0


@dataclass
class FamiliarBreakdown:
    """Contribution of one lineup position."""

    familiar_index: int
    name: str
    element: str
    type: str
    rank: str
    conditional_triggered: bool = False
    conditional_name: Optional[str] = None
    flat_contribution: float = 0
    multiplier_contribution: float = 0.0


@dataclass
class LineupEvaluation:
    """Score of a lineup for one roll, with per-position breakdown."""

    score: int
    dice_sum: int
    total_flat: float
    total_mult: float
    active_bonus_names: list[str]
    familiar_breakdown: list[FamiliarBreakdown]


@dataclass
class BalancedComponents:
    """Scores feeding the weighted balanced strategy."""

    low_roll_score: int
    avg_score: int
    high_roll_score: int


@dataclass
class OptimizedLineup:
    """Best lineup found by a strategy, with the score that ranked it."""

    familiars: list[Familiar]
    score: int
    score_label: str
    test_dice: list[int]
    evaluation: LineupEvaluation
    median_score: Optional[float] = None
    standard_deviation: Optional[float] = None
    floor_percentage: Optional[float] = None
    floor_threshold: Optional[float] = None
    balanced_components: Optional[BalancedComponents] = None
    guaranteed_bonus_count: Optional[int] = None

    @property
    def active_bonus_names(self) -> list[str]:
        return self.evaluation.active_bonus_names


@dataclass
class PassingValue:
    """A die value that makes the roll meet the difficulty."""

    value: int
    dice_sum: int
    total_flat: float
    total_multiplier: Optional[float]
    final_result: int
    active_conditionals: list[str]


@dataclass
class RerollSuggestion:
    """Reroll outlook for a single die position."""

    die_index: int
    die_name: str
    current_value: int
    passing_values: list[PassingValue]
    odds: Optional[int]
    current_passes: bool
    max_dice: int
    rank: str


@dataclass
class RerollSummary:
    """Aggregate view over all reroll suggestions."""

    can_pass: bool
    best_odds: Optional[int]
    impossible_count: int


@dataclass
class PassingCombination:
    """A full dice outcome meeting the difficulty, with its likelihood."""

    dice: list[int]
    dice_sum: int
    final_score: int
    probability: float
    active_conditionals: list[str]


@dataclass(frozen=True)
class StrategyConfig:
    """Per-strategy switches."""

    enabled: bool = True
    ignored_conditional_ids: frozenset[str] = frozenset()


@dataclass(frozen=True)
class OptimizerConfig:
    """Optimizer configuration keyed by canonical strategy name."""

    version: str = "1.0"
    strategies: dict[str, StrategyConfig] = field(default_factory=dict)

    def for_strategy(self, key: str) -> StrategyConfig:
        """Return the configuration for ``key``; unknown keys use defaults."""

        return self.strategies.get(key, StrategyConfig())


@dataclass
class StrategyResults:
    """Best lineup per strategy; ``None`` when disabled, empty, or failed."""

    best_overall: Optional[OptimizedLineup] = None
    best_low: Optional[OptimizedLineup] = None
    best_high: Optional[OptimizedLineup] = None
    best_median: Optional[OptimizedLineup] = None
    best_min_variance: Optional[OptimizedLineup] = None
    best_floor_guarantee: Optional[OptimizedLineup] = None
    best_balanced: Optional[OptimizedLineup] = None
    best_dice_independent: Optional[OptimizedLineup] = None
