"""Tests for dotfactory.engine.conditions — edge guard parsing and evaluation."""
from __future__ import annotations

import pytest

from dotfactory.engine.conditions import (
    Clause,
    check_condition_syntax,
    evaluate_condition,
    is_valid_condition,
    parse_condition,
    stringify,
)
from dotfactory.engine.exceptions import ConditionSyntaxError
from dotfactory.engine.outcome import Outcome, OutcomeStatus


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class TestParseCondition:
    def test_empty_expression_has_no_clauses(self) -> None:
        assert parse_condition("") == []
        assert parse_condition("   ") == []

    def test_single_equality(self) -> None:
        assert parse_condition("outcome=success") == [Clause("outcome", "=", "success")]

    def test_double_equals_is_equality(self) -> None:
        assert parse_condition("outcome == fail") == [Clause("outcome", "=", "fail")]

    def test_inequality(self) -> None:
        assert parse_condition("context.mode != fast") == [Clause("context.mode", "!=", "fast")]

    def test_bare_key(self) -> None:
        assert parse_condition("context.ready") == [Clause("context.ready")]

    def test_conjunction(self) -> None:
        clauses = parse_condition("outcome=success && context.tests_passed=true")
        assert [c.key for c in clauses] == ["outcome", "context.tests_passed"]

    def test_quoted_values_may_contain_spaces_and_ampersands(self) -> None:
        clauses = parse_condition("preferred_label=\"Ship it && go\" && x='a b'")
        assert clauses == [
            Clause("preferred_label", "=", "Ship it && go"),
            Clause("x", "=", "a b"),
        ]

    @pytest.mark.parametrize(
        "expression",
        [
            "outcome=success &&",
            "&& outcome=success",
            "=success",
            "outcome=",
            "outcome=a b",
            "a=b=c",
            "bad key=1",
            "x='unterminated",
        ],
    )
    def test_malformed(self, expression: str) -> None:
        with pytest.raises(ConditionSyntaxError):
            check_condition_syntax(expression)
        assert not is_valid_condition(expression)

    def test_error_keeps_expression(self) -> None:
        with pytest.raises(ConditionSyntaxError) as exc_info:
            parse_condition("outcome=")
        assert exc_info.value.expression == "outcome="


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

class TestEvaluateCondition:
    def test_empty_is_true(self) -> None:
        assert evaluate_condition("", {})

    def test_outcome_comparison_is_case_insensitive_on_the_literal(self) -> None:
        outcome = Outcome(status=OutcomeStatus.SUCCESS)
        assert evaluate_condition("outcome=SUCCESS", {}, outcome=outcome)
        assert not evaluate_condition("outcome=fail", {}, outcome=outcome)
        assert evaluate_condition("outcome!=fail", {}, outcome=outcome)

    def test_outcome_without_outcome_is_empty(self) -> None:
        assert not evaluate_condition("outcome=success", {})

    def test_preferred_label(self) -> None:
        outcome = Outcome(status=OutcomeStatus.SUCCESS, preferred_label="Approve")
        assert evaluate_condition("preferred_label=Approve", {}, outcome=outcome)
        assert not evaluate_condition("preferred_label=approve", {}, outcome=outcome)

    def test_context_prefix_falls_back_to_bare_key(self) -> None:
        context = {"mode": "fast"}
        assert evaluate_condition("context.mode=fast", context)
        assert evaluate_condition("mode=fast", context)

    def test_prefixed_key_stored_verbatim_wins(self) -> None:
        context = {"context.mode": "slow", "mode": "fast"}
        assert evaluate_condition("context.mode=slow", context)

    def test_missing_key_is_empty_string(self) -> None:
        assert evaluate_condition("context.missing!=x", {})
        assert not evaluate_condition("context.missing=x", {})

    def test_node_outputs_consulted_after_context(self) -> None:
        assert evaluate_condition("draft=hello", {}, {"draft": "hello"})
        assert evaluate_condition("draft=ctx", {"draft": "ctx"}, {"draft": "hello"})

    def test_bare_key_truthiness(self) -> None:
        assert evaluate_condition("context.ready", {"ready": "yes"})
        assert not evaluate_condition("context.ready", {"ready": ""})
        assert not evaluate_condition("context.ready", {})

    def test_booleans_and_numbers_compare_as_strings(self) -> None:
        context = {"passed": True, "count": 3.0, "ratio": 0.5}
        assert evaluate_condition("context.passed=true", context)
        assert evaluate_condition("context.count=3", context)
        assert evaluate_condition("context.ratio=0.5", context)

    def test_all_clauses_must_hold(self) -> None:
        outcome = Outcome(status=OutcomeStatus.SUCCESS)
        context = {"ready": "true"}
        assert evaluate_condition("outcome=success && context.ready=true", context, outcome=outcome)
        assert not evaluate_condition("outcome=success && context.ready=false", context, outcome=outcome)

    def test_malformed_expression_raises(self) -> None:
        with pytest.raises(ConditionSyntaxError):
            evaluate_condition("outcome=", {})


class TestStringify:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (None, ""),
            (True, "true"),
            (False, "false"),
            (2.0, "2"),
            (2.5, "2.5"),
            (7, "7"),
            ("text", "text"),
        ],
    )
    def test_stringify(self, value, expected: str) -> None:
        assert stringify(value) == expected
