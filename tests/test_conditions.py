"""
Unit tests for conditions.py - the sandboxed condition interpreter and its cache.
"""
import pytest

from familiar_core.conditions import (
    ConditionEvaluator,
    ConditionSyntaxError,
    compile_condition,
    default_evaluator,
    evaluate_condition,
    evaluate_conditional_bonus,
    evaluate_conditional_bonuses,
    references_name,
    truthy,
)
from familiar_core.models import ConditionalBonus, FamiliarContext


BEASTS = [
    FamiliarContext(type="Beast", element="Fire", rank="Rare"),
    FamiliarContext(type="Beast", element="Water", rank="Epic"),
    FamiliarContext(type="Beast", element="Fire", rank="Common"),
]
MIXED = [
    FamiliarContext(type="Beast", element="Fire", rank="Rare"),
    FamiliarContext(type="Spirit", element="Fire", rank="Epic"),
    FamiliarContext(type="Beast", element="Earth", rank="Common"),
]


class TestExpressions:
    """Tests for the supported expression syntax."""

    def test_index_and_arithmetic(self):
        assert evaluate_condition("dice[0] + dice[1] + dice[2] >= 12", [3, 4, 5], []) is True
        assert evaluate_condition("dice[0] + dice[1] + dice[2] >= 13", [3, 4, 5], []) is False

    def test_every_with_arrow_function(self):
        condition = "familiars.every(f => f.type === 'Beast')"
        assert evaluate_condition(condition, [1, 1, 1], BEASTS) is True
        assert evaluate_condition(condition, [1, 1, 1], MIXED) is False

    def test_filter_length(self):
        condition = "familiars.filter(f => f.element === \"Fire\").length >= 2"
        assert evaluate_condition(condition, [], MIXED) is True

    def test_math_spread(self):
        assert evaluate_condition("Math.max(...dice) === 6", [2, 6, 1], []) is True
        assert evaluate_condition("Math.min(...dice) > 1", [2, 6, 1], []) is False

    def test_helpers(self):
        assert evaluate_condition("sum(dice) > 7", [3, 3, 2], []) is True
        assert evaluate_condition("count(dice, d => d === 1) >= 2", [1, 4, 1], []) is True
        assert evaluate_condition("all(dice, d => d % 2 === 0)", [2, 4, 6], []) is True
        assert evaluate_condition("any(dice, d => d > 5)", [2, 4, 5], []) is False

    def test_two_parameter_arrow(self):
        condition = "dice.every((d, i) => i === 0 || d >= dice[i - 1])"
        assert evaluate_condition(condition, [1, 2, 3], []) is True
        assert evaluate_condition(condition, [3, 2, 1], []) is False

    def test_reduce_and_includes(self):
        assert evaluate_condition("dice.reduce((a, b) => a + b, 0) === 9", [2, 3, 4], []) is True
        assert evaluate_condition("dice.includes(4) && !dice.includes(6)", [2, 3, 4], []) is True

    def test_ternary_and_logical(self):
        assert evaluate_condition("dice[0] > 2 ? dice[1] === 1 : false", [3, 1], []) is True
        assert evaluate_condition("dice[0] === 1 || dice[1] === 1", [2, 2], []) is False

    @pytest.mark.parametrize(
        "condition, expected",
        [
            ("0 == ''", True),
            ("0 == '  '", True),
            ("dice[0] == ' 3 '", True),
            ("dice[0] == 'x'", False),
            ("0 === ''", False),
        ],
    )
    def test_loose_equality_coerces_strings(self, condition, expected):
        assert evaluate_condition(condition, [3], []) is expected

    def test_rank_field(self):
        condition = "familiars.some(f => f.rank === 'Epic')"
        assert evaluate_condition(condition, [], MIXED) is True

    def test_string_methods(self):
        condition = "familiars[1].type.toLowerCase().startsWith('spi')"
        assert evaluate_condition(condition, [], MIXED) is True

    def test_loose_and_strict_equality(self):
        assert evaluate_condition("dice[0] == '3'", [3], []) is True
        assert evaluate_condition("dice[0] === '3'", [3], []) is False

    def test_division_by_zero_is_infinite(self):
        assert evaluate_condition("dice[0] / 0 > 100", [2], []) is True

    def test_array_literal_is_truthy(self):
        assert evaluate_condition("[] ? true : false", [], []) is True


class TestFailuresEvaluateFalse:
    """Any failure to compile or evaluate counts as an inactive condition."""

    def test_out_of_range_index(self):
        assert evaluate_condition("dice[5] > 1", [1, 2, 3], []) is False

    def test_syntax_error(self):
        assert evaluate_condition("dice[0] +", [1], []) is False

    def test_unknown_name(self):
        assert evaluate_condition("process.exit()", [1], []) is False

    def test_private_attribute_access(self):
        assert evaluate_condition("dice.__class__", [1], []) is False
        assert evaluate_condition("familiars[0]._secret", [], BEASTS) is False

    def test_missing_field_of_undefined(self):
        assert evaluate_condition("familiars[5].type === 'Beast'", [], BEASTS) is False

    def test_calling_non_function(self):
        assert evaluate_condition("dice.length()", [1], []) is False

    def test_compile_raises_for_invalid_input(self):
        with pytest.raises(ConditionSyntaxError):
            compile_condition("dice[")
        with pytest.raises(ConditionSyntaxError):
            compile_condition(42)


class TestTruthiness:
    """JavaScript truthiness rules."""

    @pytest.mark.parametrize("value", [0, 0.0, "", None, False, float("nan")])
    def test_falsy(self, value):
        assert truthy(value) is False

    @pytest.mark.parametrize("value", [1, -1, "0", [], True])
    def test_truthy(self, value):
        assert truthy(value) is True


class TestReferencesName:
    """Tests for variable reference detection."""

    def test_variable_reference(self):
        assert references_name("dice[0] > 1", "dice") is True

    def test_property_access_does_not_count(self):
        assert references_name("familiars.some(f => f.dice)", "dice") is False

    def test_string_literal_does_not_count(self):
        assert references_name("'dice' === 'dice'", "dice") is False


class TestEvaluator:
    """Tests for bonus evaluation and the compiled-condition cache."""

    def test_cache_reuses_compiled_condition(self):
        evaluator = ConditionEvaluator()
        assert evaluator.evaluate("dice[0] === 1", [1], []) is True
        assert evaluator.evaluate("dice[0] === 1", [2], []) is False
        assert evaluator.evaluate("dice[0] === 1", [1], []) is True
        assert len(evaluator.cache) == 1
        assert "dice[0] === 1" in evaluator.cache

    def test_explicit_evaluator_keeps_its_own_cache(self):
        condition = "dice[0] === 4 && dice.length === 1"
        default_evaluator.clear_cache()
        private = ConditionEvaluator()
        assert evaluate_condition(condition, [4], [], private) is True
        assert condition in private.cache
        assert condition not in default_evaluator.cache
        assert evaluate_condition(condition, [4], []) is True
        assert condition in default_evaluator.cache

    def test_clear_cache(self):
        evaluator = ConditionEvaluator()
        evaluator.evaluate("dice[0] === 1", [1], [])
        evaluator.clear_cache()
        assert len(evaluator.cache) == 0

    def test_invalid_condition_is_cached_as_false(self):
        evaluator = ConditionEvaluator()
        assert evaluator.evaluate("dice[", [1], []) is False
        assert evaluator.evaluate("dice[", [1], []) is False
        assert len(evaluator.cache) == 1

    def test_inactive_bonus_contributes_nothing(self):
        bonus = ConditionalBonus(name="Big", condition="dice[0] > 5", flat_bonus=4, multiplier_bonus=2)
        result = evaluate_conditional_bonus(bonus, [1], [])
        assert result.is_active is False
        assert result.flat_bonus == 0
        assert result.multiplier_bonus == 0.0

    def test_multiplier_of_one_is_ignored(self):
        bonus = ConditionalBonus(name="Neutral", condition="true", flat_bonus=2, multiplier_bonus=1)
        result = evaluate_conditional_bonus(bonus, [1], [])
        assert result.is_active is True
        assert result.flat_bonus == 2
        assert result.multiplier_bonus == 0.0

    def test_aggregate_bonuses(self):
        bonuses = [
            ConditionalBonus(name="A", condition="true", flat_bonus=2),
            ConditionalBonus(name="B", condition="dice[0] === 6", flat_bonus=10),
            ConditionalBonus(name="C", condition="dice.length === 1", multiplier_bonus=1.5),
        ]
        totals = evaluate_conditional_bonuses(bonuses, [3], [])
        assert totals.active_names == ["A", "C"]
        assert totals.total_flat == 2
        assert totals.total_multiplier == 1.5
