"""
Unit tests for reroll.py - single-die reroll suggestions and likely passing rolls.
"""
import pytest

from familiar_core.models import ConditionalBonus, Familiar, FamiliarContext
from familiar_core.reroll import (
    calculate_reroll_suggestions,
    can_pass_with_single_reroll,
    find_top_passing_combinations,
    get_best_reroll_option,
    get_reroll_summary,
)


COMMONS = [FamiliarContext(type="Beast", element="Fire", rank="Common") for _ in range(3)]


def common(name, conditional=None):
    return Familiar(name=name, rank="Common", element="Fire", type="Beast", conditional=conditional)


class TestRerollSuggestions:
    """Tests for per-die reroll suggestions."""

    def test_impossible_difficulty(self):
        suggestions = calculate_reroll_suggestions([1, 1, 1], COMMONS, [], [], 10)
        assert all(s.passing_values == [] for s in suggestions)
        assert all(s.odds is None for s in suggestions)
        assert can_pass_with_single_reroll(suggestions) is False
        assert get_best_reroll_option(suggestions) is None
        summary = get_reroll_summary(suggestions)
        assert summary.can_pass is False
        assert summary.best_odds is None
        assert summary.impossible_count == 3

    def test_single_die_can_pass(self):
        suggestions = calculate_reroll_suggestions([3, 3, 1], COMMONS, [], [], 8)
        third = suggestions[2]
        assert third.die_name == "Dice 3"
        assert [p.value for p in third.passing_values] == [2, 3]
        assert [p.final_result for p in third.passing_values] == [8, 9]
        assert third.odds == 67
        assert third.current_passes is False
        assert suggestions[0].passing_values == []

        best = get_best_reroll_option(suggestions)
        assert best.die_index == 2
        summary = get_reroll_summary(suggestions)
        assert summary.can_pass is True
        assert summary.best_odds == 67
        assert summary.impossible_count == 2

    def test_dice_already_passing_are_not_rerolled(self):
        suggestions = calculate_reroll_suggestions([3, 3, 3], COMMONS, [], [], 8)
        assert all(s.current_passes for s in suggestions)
        assert get_best_reroll_option(suggestions) is None
        assert can_pass_with_single_reroll(suggestions) is True

    def test_best_option_ties_go_to_first_die(self):
        suggestions = calculate_reroll_suggestions([1, 1, 3], COMMONS, [], [], 6)
        best = get_best_reroll_option(suggestions)
        assert best.die_index == 0
        assert best.odds == 67

    def test_rank_sets_die_size(self):
        contexts = [
            FamiliarContext(type="Beast", element="Fire", rank="Legendary"),
            FamiliarContext(type="Beast", element="Fire", rank=None),
        ]
        suggestions = calculate_reroll_suggestions([1, 1], contexts, [], [], 0)
        assert suggestions[0].max_dice == 6
        assert suggestions[0].rank == "Legendary"
        assert suggestions[1].max_dice == 3
        assert suggestions[1].rank == "Common"
        assert suggestions[0].odds == 100

    def test_conditionals_count_towards_pass(self):
        bonus = ConditionalBonus(name="Triple", condition="dice[0] === dice[1] && dice[1] === dice[2]", flat_bonus=10)
        suggestions = calculate_reroll_suggestions([2, 2, 1], COMMONS, [], [bonus], 15)
        assert [p.value for p in suggestions[2].passing_values] == [2]
        assert suggestions[2].passing_values[0].active_conditionals == ["Triple"]


class TestTopPassingCombinations:
    """Tests for the most likely passing rolls."""

    def test_probability_and_order(self):
        lineup = [common("A"), common("B")]
        top = find_top_passing_combinations(lineup, [], [], 5)
        assert [c.dice for c in top] == [[2, 3], [3, 2], [3, 3]]
        assert top[0].probability == pytest.approx(200 / 9)
        assert top[2].probability == pytest.approx(100 / 9)
        assert top[0].final_score == 5

    def test_limit(self):
        lineup = [common("A"), common("B")]
        assert len(find_top_passing_combinations(lineup, [], [], 5, limit=2)) == 2

    def test_caps_restrict_search(self):
        capped = ConditionalBonus(name="Prevents dice from rolling over 2", condition="true")
        lineup = [common("A", capped), common("B")]
        assert find_top_passing_combinations(lineup, [], [], 5) == []
        top = find_top_passing_combinations(lineup, [], [], 4)
        assert [c.dice for c in top] == [[2, 2]]
        assert top[0].probability == pytest.approx(25.0)
