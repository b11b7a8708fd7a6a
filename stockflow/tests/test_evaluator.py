"""
Tests for the formula evaluator
"""

import math

import pytest

from stockflow.evaluator import (
    FormulaEvaluator,
    evaluate,
    extract_function_calls,
    extract_variable_references,
    formula_references,
    tokenize,
)
from stockflow.exceptions import EvaluationError


def _strict(formula, scope=None):
    return FormulaEvaluator().evaluate_strict(formula, scope or {})


def test_evaluator_basic_arithmetic():
    """Test basic arithmetic operations"""
    scope = {"x": 10, "y": 5}

    assert _strict("x + y", scope) == 15
    assert _strict("x - y", scope) == 5
    assert _strict("x * y", scope) == 50
    assert _strict("x / y", scope) == 2.0
    assert _strict("x ** 2", scope) == 100
    assert _strict("1 + 2 * 3") == 7
    assert _strict("(1 + 2) * 3") == 9
    assert _strict("10 - 4 - 3") == 3


def test_evaluator_number_forms():
    """Test decimal, leading-dot and exponent literals"""
    assert _strict(".5 + 0.25") == 0.75
    assert _strict("1e-3 * 1000") == pytest.approx(1.0)
    assert _strict("2.5E2") == 250


def test_evaluator_power_is_right_associative():
    assert _strict("2 ** 3 ** 2") == 512
    assert _strict("(2 ** 3) ** 2") == 64


def test_evaluator_modulo_keeps_dividend_sign():
    assert _strict("7 % 3") == 1
    assert _strict("-7 % 3") == -1


def test_evaluator_comparisons_yield_numbers():
    """Test comparison operators produce 1.0 / 0.0"""
    scope = {"x": 10, "y": 5}

    assert _strict("x > y", scope) == 1.0
    assert _strict("x < y", scope) == 0.0
    assert _strict("x >= 10", scope) == 1.0
    assert _strict("x <= 9", scope) == 0.0
    assert _strict("x == 10", scope) == 1.0
    assert _strict("x === 10", scope) == 1.0
    assert _strict("x != 10", scope) == 0.0
    assert _strict("x !== 10", scope) == 0.0
    assert _strict("(x > y) + (x > 1)", scope) == 2.0


def test_evaluator_logical_operators():
    """Test &&, || and ! with short-circuiting"""
    assert _strict("0 || 5") == 5
    assert _strict("3 && 4") == 4
    assert _strict("1 > 2 || 2 > 1") == 1.0
    assert _strict("!0") == 1.0
    assert _strict("!x", {"x": 10}) == 0.0
    # The right operand is never evaluated, so the missing name is harmless
    assert _strict("0 && missing") == 0
    assert _strict("1 || missing") == 1


def test_evaluator_ternary():
    """Test ternary conditional expressions"""
    scope = {"x": 10}

    assert _strict("x > 5 ? 1 : 2", scope) == 1
    assert _strict("x < 5 ? 1 : 2", scope) == 2
    assert _strict("x > 20 ? 1 : x > 5 ? 2 : 3", scope) == 2
    assert _strict("(x > 5 ? x : 0) * 2", scope) == 20
    # Only the taken branch is evaluated
    assert _strict("x > 5 ? x : missing", scope) == 10


def test_evaluator_helpers():
    """Test every helper function"""
    assert _strict("min(3)") == 3
    assert _strict("min(4, 1, 7)") == 1
    assert _strict("max(4, 1, 7)") == 7
    assert _strict("clamp(0, 10, 15)") == 10
    assert _strict("clamp(0, 10, -5)") == 0
    assert _strict("clamp(0, 10, 4)") == 4
    assert _strict("abs(-4)") == 4
    assert _strict("sqrt(16)") == 4
    assert _strict("pow(2, 10)") == 1024
    assert _strict("exp(0)") == 1
    assert _strict("log(1)") == 0
    assert _strict("sin(0)") == 0
    assert _strict("cos(0)") == 1


def test_evaluator_round_half_toward_positive_infinity():
    assert _strict("round(2.5)") == 3
    assert _strict("round(-2.5)") == -2
    assert _strict("round(2.4)") == 2


def test_evaluator_math_prefix_and_literals():
    """Test Math. spelling, Math constants and boolean literals"""
    assert _strict("Math.min(1, 2)") == 1
    assert _strict("Math.max(1, 2) + Math.abs(-1)") == 3
    assert _strict("Math.PI") == pytest.approx(math.pi)
    assert _strict("Math.E") == pytest.approx(math.e)
    assert _strict("true + true") == 2
    assert _strict("false ? 1 : 2") == 2


def test_evaluator_scope_shadows_literals():
    assert _strict("true", {"true": 7}) == 7


@pytest.mark.parametrize(
    "formula,code",
    [
        ("y + 5", "undefined_variable"),
        ("PI", "undefined_variable"),
        ("eval(1)", "function_not_allowed"),
        ("Math.floor(1.5)", "function_not_allowed"),
        ("sqrt(1, 2)", "invalid_function_args"),
        ("clamp(1, 2)", "invalid_function_args"),
        ("max()", "invalid_function_args"),
        ("1 +", "syntax_error"),
        ("(1 + 2", "syntax_error"),
        ("x y", "syntax_error"),
        ("a.b", "syntax_error"),
        ("x = 1", "syntax_error"),
        ("1 ? 2", "syntax_error"),
    ],
)
def test_evaluate_strict_error_codes(formula, code):
    """Test that each failure raises EvaluationError with its code"""
    with pytest.raises(EvaluationError) as exc_info:
        FormulaEvaluator().evaluate_strict(formula, {"x": 1, "a": 1}, element_id="e1")

    assert exc_info.value.code == code
    assert exc_info.value.element_id == "e1"


def test_evaluate_never_raises_and_reports():
    """Test that failures degrade to 0 and reach the diagnostic sink"""
    seen = []
    evaluator = FormulaEvaluator(on_diagnostic=seen.append)

    assert evaluator.evaluate("missing * 2", {}, element_id="c1") == 0.0
    assert evaluator.evaluate("1 / 0", {}, element_id="c2") == 0.0
    assert evaluator.evaluate("((", {}, element_id="c3") == 0.0

    assert [e.code for e in seen] == ["undefined_variable", "non_finite_result", "syntax_error"]
    assert [e.element_id for e in seen] == ["c1", "c2", "c3"]
    assert seen[0].formula == "missing * 2"


def test_evaluate_quiet_suppresses_diagnostics():
    seen = []
    evaluator = FormulaEvaluator(on_diagnostic=seen.append)

    assert evaluator.evaluate("missing", {}, quiet=True) == 0.0
    assert seen == []


def test_evaluate_empty_formula_is_zero():
    seen = []
    evaluator = FormulaEvaluator(on_diagnostic=seen.append)

    assert evaluator.evaluate("", {}) == 0.0
    assert evaluator.evaluate("   ", {}) == 0.0
    assert seen == []


def test_evaluate_non_finite_result_is_zero():
    """Test that an infinite result is coerced to 0 with a diagnostic"""
    seen = []
    evaluator = FormulaEvaluator(on_diagnostic=seen.append)

    assert evaluator.evaluate_strict("1e308 * 10", {}) == math.inf
    assert evaluator.evaluate("1e308 * 10", {}, element_id="big") == 0.0
    assert seen[0].code == "non_finite_result"
    assert seen[0].element_id == "big"


def test_ieee_arithmetic_inside_formula():
    """Test that non-finite intermediates propagate like floating point"""
    assert _strict("1 / 0") == math.inf
    assert _strict("-1 / 0") == -math.inf
    assert math.isnan(_strict("0 / 0"))
    assert math.isnan(_strict("5 % 0"))
    assert math.isnan(_strict("sqrt(-1)"))
    assert _strict("log(0)") == -math.inf
    assert _strict("exp(1000)") == math.inf
    assert _strict("10 ** 400") == math.inf
    assert _strict("pow(0, -1)") == math.inf


def test_non_finite_intermediates_can_be_bounded():
    """Test that a guard around a division by zero keeps its finite bound"""
    seen = []
    evaluator = FormulaEvaluator(on_diagnostic=seen.append)

    assert evaluator.evaluate("min(5, 1 / 0)", {}) == 5.0
    assert evaluator.evaluate("min(cap, demand / rate)", {"cap": 7.0, "demand": 3.0, "rate": 0.0}) == 7.0
    assert evaluator.evaluate("max(2, log(0))", {}) == 2.0
    assert evaluator.evaluate("1 / (1 / 0)", {}) == 0.0
    assert seen == []


def test_nan_propagates_and_is_falsy():
    assert math.isnan(_strict("min(1, 0 / 0)"))
    assert math.isnan(_strict("clamp(0, 1, 0 / 0)"))
    assert _strict("(0 / 0) ? 1 : 2") == 2
    assert _strict("!(0 / 0)") == 1
    assert math.isnan(_strict("(0 / 0) && 1"))
    assert _strict("(0 / 0) || 3") == 3


def test_evaluate_does_not_modify_scope():
    scope = {"x": 1.0, "y": 2.0}
    FormulaEvaluator().evaluate("x + y + missing", scope)
    assert scope == {"x": 1.0, "y": 2.0}


def test_formula_length_limit():
    evaluator = FormulaEvaluator(max_length=10)

    with pytest.raises(EvaluationError) as exc_info:
        evaluator.evaluate_strict("1+1+1+1+1+1+1", {})
    assert exc_info.value.code == "formula_too_long"


def test_formula_depth_limit():
    evaluator = FormulaEvaluator(max_depth=5)

    with pytest.raises(EvaluationError) as exc_info:
        evaluator.evaluate_strict("((((((1))))))", {})
    assert exc_info.value.code == "formula_too_complex"

    assert evaluator.evaluate_strict("((1))", {}) == 1


def test_parse_cache_reuses_trees():
    evaluator = FormulaEvaluator()
    first = evaluator.parse_formula("a + b")
    second = evaluator.parse_formula("  a + b  ")
    assert first is second

    evaluator.clear_cache()
    assert evaluator.parse_formula("a + b") is not first


def test_parse_errors_are_cached_per_formula():
    evaluator = FormulaEvaluator()
    for element_id in ("e1", "e2"):
        with pytest.raises(EvaluationError) as exc_info:
            evaluator.parse_formula("1 +", element_id)
        assert exc_info.value.element_id == element_id


def test_tokenize_folds_math_prefix():
    tokens = tokenize("Math.min(a, 2)")
    assert [t.value for t in tokens] == ["Math.min", "(", "a", ",", "2", ")", ""]
    assert tokens[-1].kind == "end"


def test_extract_variable_references():
    """Test identifier extraction"""
    tree = FormulaEvaluator().parse_formula("min(a, b) + Math.PI + true + time")
    assert extract_variable_references(tree) == {"a", "b", "time"}


def test_extract_variable_references_ternary():
    tree = FormulaEvaluator().parse_formula("x > 0 ? y : -z")
    assert extract_variable_references(tree) == {"x", "y", "z"}


def test_extract_function_calls():
    tree = FormulaEvaluator().parse_formula("Math.min(a, sqrt(b)) + eval(c)")
    assert extract_function_calls(tree) == {"Math.min", "sqrt", "eval"}


def test_formula_references_unparseable_is_empty():
    assert formula_references("a +") == set()
    assert formula_references("") == set()
    assert formula_references("a * b") == {"a", "b"}


def test_module_level_evaluate():
    assert evaluate("2 * x", {"x": 3}) == 6
    assert evaluate("missing", {}) == 0.0
