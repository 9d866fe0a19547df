"""Tests for safe predicate evaluation."""

from __future__ import annotations

import pytest

from agentflow.core.conditions import evaluate_all, evaluate_predicate, lookup
from agentflow.core.graph_schema import Predicate


def p(field, operator, value=None):
    return Predicate(field=field, operator=operator, value=value)


class TestLookup:
    """Tests for dotted key path resolution."""

    def test_nested_dicts_and_lists(self):
        data = {"result": {"items": [{"name": "first"}, {"name": "second"}]}}
        assert lookup(data, "result.items.1.name") == "second"

    def test_missing_returns_default(self):
        assert lookup({"a": 1}, "a.b", default="none") == "none"
        assert lookup({"a": [1]}, "a.5") is None

    def test_empty_path_returns_data(self):
        assert lookup([1, 2], None) == [1, 2]


class TestEvaluatePredicate:
    """Tests for each operator."""

    def test_greater_than_numeric(self):
        assert evaluate_predicate(p("score", "greater_than", 50), {"score": 70})
        assert not evaluate_predicate(p("score", "greater_than", 50), {"score": 30})

    def test_numeric_strings_are_coerced(self):
        assert evaluate_predicate(p("score", "less_than", "10"), {"score": "9.5"})
        assert evaluate_predicate(p("count", "equals", "3"), {"count": 3})

    def test_non_numeric_comparison_is_false(self):
        assert not evaluate_predicate(p("score", "greater_than", 1), {"score": "high"})
        assert not evaluate_predicate(p("flag", "greater_than", 0), {"flag": True})

    def test_equals_bool_string(self):
        assert evaluate_predicate(p("ok", "equals", "true"), {"ok": True})

    def test_contains_is_case_insensitive_for_text(self):
        assert evaluate_predicate(p("msg", "contains", "ERROR"), {"msg": "an error occurred"})

    def test_contains_membership(self):
        assert evaluate_predicate(p("tags", "contains", "x"), {"tags": ["x", "y"]})
        assert evaluate_predicate(p("meta", "contains", "k"), {"meta": {"k": 1}})
        assert not evaluate_predicate(p("n", "contains", 1), {"n": 1})

    @pytest.mark.parametrize("value", [None, "", "   ", [], {}])
    def test_is_empty(self, value):
        assert evaluate_predicate(p("v", "is_empty"), {"v": value})
        assert not evaluate_predicate(p("v", "is_not_empty"), {"v": value})

    def test_missing_field(self):
        data = {"status": "ok"}
        assert evaluate_predicate(p("other", "is_empty"), data)
        assert not evaluate_predicate(p("other", "not_equals", "failed"), data)
        assert not evaluate_predicate(p("other", "equals", None), data)

    def test_non_dict_input(self):
        assert not evaluate_predicate(p("score", "greater_than", 1), "plain text")


class TestEvaluateAll:
    """Tests for AND-combination."""

    def test_all_must_hold(self):
        preds = [p("a", "equals", 1), p("b", "equals", 2)]
        assert evaluate_all(preds, {"a": 1, "b": 2})
        assert not evaluate_all(preds, {"a": 1, "b": 3})

    def test_empty_list_is_true(self):
        assert evaluate_all([], {})
