"""
Unit tests for optimizer.py - combination generation, every strategy, and the
cooperative runner.
"""
import asyncio

import pytest

from familiar_core import optimizer
from familiar_core.data import STRATEGY_HIGH_ROLLS, STRATEGY_LOW_ROLLS, STRATEGY_MEDIAN
from familiar_core.models import (
    ConditionalBonus,
    Familiar,
    OptimizerConfig,
    StrategyConfig,
)
from familiar_core.optimizer import (
    filter_ignored_conditionals,
    filter_roster_for_optimization,
    find_best_lineup,
    find_best_lineup_async,
    find_best_lineup_balanced,
    find_best_lineup_dice_independent,
    find_best_lineup_fast,
    find_best_lineup_floor_guarantee,
    find_best_lineup_median,
    find_best_lineup_min_variance,
    generate_combinations,
    is_dice_independent,
    run_all_strategies,
    run_all_strategies_exact,
    run_all_strategies_fast,
    score_label,
)


def familiar(name, rank="Common", element="Fire", type_="Beast", conditional=None, disabled=False):
    return Familiar(
        name=name,
        rank=rank,
        element=element,
        type=type_,
        conditional=conditional,
        disabled=disabled,
    )


ALWAYS_PLUS_FIVE = ConditionalBonus(name="Always", condition="true", flat_bonus=5, id="always")

COMMON_PAIR = [familiar("C1"), familiar("C2")]
LEGENDARY_PAIR = [familiar("L1", "Legendary"), familiar("L2", "Legendary")]


def names(lineup):
    return [f.name for f in lineup.familiars]


class TestCombinations:
    """Tests for lineup generation and roster filtering."""

    def test_lexicographic_subsets(self):
        combos = generate_combinations(list("abcd"), 2)
        assert len(combos) == 6
        assert combos[0] == ["a", "b"]
        assert combos[-1] == ["c", "d"]

    def test_edge_sizes(self):
        assert generate_combinations(list("abc"), 0) == [[]]
        assert generate_combinations(list("abc"), 4) == []
        assert generate_combinations(list("abc"), -1) == []

    def test_filter_roster(self):
        roster = [
            familiar("A", "Common"),
            familiar("B", "Rare", element="Water"),
            familiar("C", "Epic", type_="Spirit"),
            familiar("D", "Legendary", disabled=True),
        ]
        assert [f.name for f in filter_roster_for_optimization(roster)] == ["A", "B", "C"]
        assert [f.name for f in filter_roster_for_optimization(roster, elements=["Fire"])] == ["A", "C"]
        assert [f.name for f in filter_roster_for_optimization(roster, types=["Spirit"])] == ["C"]
        assert [f.name for f in filter_roster_for_optimization(roster, min_rank="Rare")] == ["B", "C"]

    def test_filter_ignored_conditionals(self):
        holder = familiar("H", conditional=ALWAYS_PLUS_FIVE)
        other = ConditionalBonus(name="Other", condition="true", id="other")
        members, bonuses = filter_ignored_conditionals([holder], [ALWAYS_PLUS_FIVE, other], ["always"])
        assert members[0].conditional is None
        assert holder.conditional is ALWAYS_PLUS_FIVE
        assert bonuses == [other]


class TestSingleRollStrategies:
    """Tests for overall, low-roll and high-roll searches."""

    def test_labels(self):
        lineup = [familiar("A", "Common"), familiar("B", "Rare"), familiar("C", "Epic")]
        assert score_label(lineup, "lowRolls") == "Score with dice: 1-1-1"
        assert score_label(lineup, "highRolls") == "Score with dice: 3-4-5"
        assert score_label(lineup, "overall") == "Avg dice: 2-3-3"

    def test_high_rolls_prefers_bigger_dice(self):
        best = find_best_lineup_fast([COMMON_PAIR, LEGENDARY_PAIR], [], "highRolls")
        assert names(best) == ["L1", "L2"]
        assert best.score == 12
        assert best.test_dice == [6, 6]

    def test_low_rolls_prefers_conditional(self):
        pool = [familiar("A"), familiar("B", "Legendary"), familiar("Boost", conditional=ALWAYS_PLUS_FIVE)]
        best = find_best_lineup_fast(generate_combinations(pool, 2), [], "lowRolls")
        assert "Boost" in names(best)
        assert best.score == 7
        assert best.active_bonus_names == ["Always"]

    def test_ties_keep_first(self):
        combos = [[familiar("X")], [familiar("Y")]]
        assert names(find_best_lineup_fast(combos, [], "lowRolls")) == ["X"]

    def test_exact_overall_uses_expected_score(self):
        best = find_best_lineup([COMMON_PAIR], [], "overall")
        assert best.score == 4
        assert best.score_label == "Avg dice: 2-2"

    @pytest.mark.parametrize("strategy", ["overall", "lowRolls", "highRolls"])
    def test_empty_combinations(self, strategy):
        assert find_best_lineup_fast([], [], strategy) is None
        assert find_best_lineup([], [], strategy) is None


class TestDistributionStrategies:
    """Tests for the strategies that look at the whole dice space."""

    def test_median(self):
        best = find_best_lineup_median([COMMON_PAIR, LEGENDARY_PAIR], [])
        assert names(best) == ["L1", "L2"]
        assert best.median_score == 7
        assert best.score_label == "Median of all outcomes"

    def test_min_variance(self):
        best = find_best_lineup_min_variance([LEGENDARY_PAIR, COMMON_PAIR], [])
        assert names(best) == ["C1", "C2"]
        assert best.standard_deviation == pytest.approx(1.1547, abs=1e-4)
        assert best.score_label == "Std Dev: 1.2"
        assert best.score == 4

    def test_floor_guarantee_falls_back_to_coverage(self):
        """Neither lineup reaches 80% coverage, so coverage decides."""
        best = find_best_lineup_floor_guarantee([COMMON_PAIR, LEGENDARY_PAIR], [])
        assert names(best) == ["L1", "L2"]
        assert best.floor_percentage == pytest.approx(26 / 36 * 100)
        assert best.floor_threshold == pytest.approx(5.6)
        assert best.score_label == "72% above 6"

    def test_floor_guarantee_prefers_highest_floor(self):
        flat = ConditionalBonus(name="Flat", condition="true", flat_bonus=100)
        best = find_best_lineup_floor_guarantee([COMMON_PAIR, LEGENDARY_PAIR], [flat])
        assert names(best) == ["L1", "L2"]
        assert best.floor_percentage == 100

    def test_floor_coverage_beats_higher_mean(self):
        """A lineup reaching 80% coverage wins even against a higher mean."""
        steady_bonus = ConditionalBonus(name="Steady", condition="true", flat_bonus=20)
        steady = [familiar("Steady", conditional=steady_bonus), familiar("C3")]
        jackpot = [
            familiar("J1", "Legendary", conditional=ConditionalBonus(
                name="Jackpot", condition="dice[0] === 6 && dice[1] === 6", flat_bonus=1000
            )),
            familiar("J2", "Legendary"),
        ]
        best = find_best_lineup_floor_guarantee([jackpot, steady], [])
        assert names(best) == ["Steady", "C3"]
        assert best.floor_percentage == 100

    def test_balanced(self):
        best = find_best_lineup_balanced([COMMON_PAIR, LEGENDARY_PAIR], [])
        assert names(best) == ["L1", "L2"]
        assert best.score == 8
        assert best.score_label == "Weighted (25/50/25)"
        components = best.balanced_components
        assert (components.low_roll_score, components.avg_score, components.high_roll_score) == (2, 8, 12)

    def test_dice_independent(self):
        team = familiar("Team", conditional=ConditionalBonus(
            name="Pair", condition="familiars.length === 2", flat_bonus=3
        ))
        roller = familiar("Roller", conditional=ConditionalBonus(
            name="Roll", condition="dice[0] > 2", flat_bonus=50
        ))
        plain_a, plain_b = familiar("A"), familiar("B")
        best = find_best_lineup_dice_independent(
            [[team, roller], [plain_a, plain_b], [team, plain_a]], []
        )
        assert names(best) == ["Team", "A"]
        assert best.guaranteed_bonus_count == 1
        assert best.score_label == "1 guaranteed bonus"

    @pytest.mark.parametrize(
        "condition, expected",
        [
            ("", True),
            ("true", True),
            ("familiars.some(f => f.type === 'Beast')", True),
            ("dice[0] > 1", False),
            ("sum(dice) >= 10", False),
        ],
    )
    def test_is_dice_independent(self, condition, expected):
        assert is_dice_independent(ConditionalBonus(name="X", condition=condition)) is expected

    def test_missing_conditional_is_dice_independent(self):
        assert is_dice_independent(None) is True


class TestRunAllStrategies:
    """Tests for running every strategy with a configuration."""

    def test_all_slots_filled(self):
        results = run_all_strategies_fast([COMMON_PAIR, LEGENDARY_PAIR], [])
        for attribute in (
            "best_overall",
            "best_low",
            "best_high",
            "best_median",
            "best_min_variance",
            "best_floor_guarantee",
            "best_balanced",
            "best_dice_independent",
        ):
            assert getattr(results, attribute) is not None

    def test_disabled_strategy_is_none(self):
        config = OptimizerConfig(strategies={"median": StrategyConfig(enabled=False)})
        results = run_all_strategies_exact([COMMON_PAIR], [], config)
        assert results.best_median is None
        assert results.best_overall is not None

    def test_ignored_conditionals_apply_per_strategy(self):
        pool = [familiar("A"), familiar("B"), familiar("Boost", conditional=ALWAYS_PLUS_FIVE)]
        config = OptimizerConfig(
            strategies={STRATEGY_LOW_ROLLS: StrategyConfig(ignored_conditional_ids=frozenset({"always"}))}
        )
        results = run_all_strategies_fast(generate_combinations(pool, 2), [], config)
        assert results.best_low.active_bonus_names == []
        assert results.best_low.score == 2
        assert results.best_high.active_bonus_names == ["Always"]

    def test_failing_strategy_is_isolated(self, monkeypatch):
        def boom(combinations, bonuses, evaluator):
            raise RuntimeError("broken strategy")

        monkeypatch.setattr(optimizer, "_DISTRIBUTION_STRATEGIES", [(STRATEGY_MEDIAN, "best_median", boom)])
        results = run_all_strategies_fast([COMMON_PAIR], [])
        assert results.best_median is None
        assert results.best_overall is not None


class TestAsyncSearch:
    """Tests for the cooperative searches."""

    def setup_method(self):
        pool = [familiar(f"F{i}", "Rare" if i % 2 else "Common") for i in range(4)]
        self.combinations = generate_combinations(pool, 2)

    def test_progress_batches(self):
        progress = []
        best = asyncio.run(
            find_best_lineup_async(self.combinations, [], "highRolls", progress.append, batch_size=2)
        )
        assert progress == [33, 67, 100, 100]
        assert names(best) == names(find_best_lineup_fast(self.combinations, [], "highRolls"))

    def test_cancel_before_start(self):
        progress = []
        best = asyncio.run(
            find_best_lineup_async(self.combinations, [], "overall", progress.append, lambda: True)
        )
        assert best is None
        assert progress == []

    def test_cancel_midway_returns_partial_best(self):
        calls = []

        def should_cancel():
            calls.append(None)
            return len(calls) > 2

        best = asyncio.run(
            find_best_lineup_async(self.combinations, [], "highRolls", None, should_cancel)
        )
        assert names(best) == ["F0", "F1"]

    def test_run_all_progress_is_monotonic(self):
        progress = []
        results = asyncio.run(run_all_strategies(self.combinations, [], progress.append))
        assert progress == [33, 67, 100]
        assert results.best_overall is not None
        assert results.best_low is not None
        assert results.best_high is not None
        assert results.best_median is None

    def test_run_all_cancel_between_phases(self):
        progress = []
        cancelled = []

        def on_progress(percent):
            progress.append(percent)
            cancelled.append(True)

        results = asyncio.run(
            run_all_strategies(self.combinations, [], on_progress, lambda: bool(cancelled))
        )
        assert results.best_overall is not None
        assert results.best_low is None
        assert results.best_high is None
        assert progress == [33]

    def test_run_all_applies_per_strategy_config(self):
        pool = [familiar("A"), familiar("B"), familiar("Boost", conditional=ALWAYS_PLUS_FIVE)]
        config = OptimizerConfig(strategies={
            STRATEGY_HIGH_ROLLS: StrategyConfig(enabled=False),
            STRATEGY_LOW_ROLLS: StrategyConfig(ignored_conditional_ids=frozenset({"always"})),
        })
        progress = []
        results = asyncio.run(
            run_all_strategies(generate_combinations(pool, 2), [], progress.append, config=config)
        )
        assert results.best_high is None
        assert results.best_low.active_bonus_names == []
        assert results.best_low.score == 2
        assert results.best_overall.active_bonus_names == ["Always"]
        assert progress[-1] == 100

    def test_run_all_isolates_failing_phase(self, monkeypatch):
        real_search = optimizer.find_best_lineup_async

        async def flaky_search(combinations, bonuses, strategy, *args, **kwargs):
            if strategy == STRATEGY_LOW_ROLLS:
                raise RuntimeError("broken search")
            return await real_search(combinations, bonuses, strategy, *args, **kwargs)

        monkeypatch.setattr(optimizer, "find_best_lineup_async", flaky_search)
        results = asyncio.run(run_all_strategies(self.combinations, []))
        assert results.best_low is None
        assert results.best_overall is not None
        assert results.best_high is not None
