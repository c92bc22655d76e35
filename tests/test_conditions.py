"""Tests for condition evaluation, edge activity and edge-derived node input."""

from __future__ import annotations

import pytest

from flowloom.service.conditions import EdgeEvaluator, build_edge_input, compare, normalize_operator
from flowloom.service.variables import MISSING


@pytest.fixture
def evaluator():
    return EdgeEvaluator(param_snapshot={"params": {"threshold": 50}, "region": "EU"}, meta={"executionId": "e1"})


class TestCompare:
    def test_numeric_strings_compare_as_numbers(self):
        assert compare("10", ">", 9)
        assert compare(3, "==", "3.0")

    def test_missing_never_matches(self):
        assert not compare(MISSING, "==", None)
        assert compare(MISSING, "not_exists")
        assert not compare(None, "exists")

    def test_membership(self):
        assert compare("EU", "in", ["EU", "US"])
        assert compare("APAC", "not_in", ["EU", "US"])
        assert not compare("EU", "in", 5)

    def test_mixed_types_do_not_order(self):
        assert not compare("abc", ">", 3)

    def test_aliases(self):
        assert normalize_operator("GTE") == ">="
        assert normalize_operator("===") == "=="
        assert normalize_operator("~=") is None


class TestEvaluate:
    def test_literal_and_field_conditions(self, evaluator):
        assert evaluator.evaluate(True, {})
        assert evaluator.evaluate({"field": "score", "operator": "gt", "value": 50}, {"score": 80})
        assert not evaluator.evaluate({"field": "score", "operator": "gt", "value": 50}, {"score": 20})

    def test_template_reads_source_params_and_meta(self, evaluator):
        output = {"score": 80, "tags": ["hot"]}
        assert evaluator.evaluate("{{A.score}} > {{params.threshold}}", output, "A")
        assert evaluator.evaluate("{{score}} >= 80", output, "A")
        assert evaluator.evaluate("{{params.region}} == 'EU'", output, "A")
        assert evaluator.evaluate("{{meta.executionId}} == e1", output, "A")
        assert evaluator.evaluate("{{A.tags[0]}} == hot", output, "A")

    def test_bare_reference_is_truthiness(self, evaluator):
        assert evaluator.evaluate("{{approved}}", {"approved": True})
        assert not evaluator.evaluate("{{approved}}", {})

    def test_only_one_comparison_is_allowed(self, evaluator):
        assert not evaluator.evaluate("{{a}} > 1 && {{b}} < 2", {"a": 5, "b": 0})
        assert not evaluator.evaluate("{{a}} > 1 > 0", {"a": 5})

    @pytest.mark.parametrize("condition", ["", "   ", {"operator": "=="}, {"field": "x", "operator": "~"}, 42])
    def test_malformed_conditions_are_false(self, evaluator, condition):
        assert evaluator.evaluate(condition, {"x": 1}) is False


class TestEdgeActivity:
    def test_skipped_source_deactivates_every_edge_type(self, evaluator):
        outputs = {"A": {"skipped": True}}
        for edge_type in ("data-edge", "control-edge", "condition-edge", "error-edge"):
            edge = {"from": "A", "to": "B", "edgeType": edge_type, "condition": True}
            assert not evaluator.is_edge_active(edge, outputs)

    def test_error_edge_needs_route_marker(self, evaluator):
        edge = {"from": "A", "to": "C", "edgeType": "error-edge"}
        assert not evaluator.is_edge_active(edge, {"A": {"error": "x", "_meta": {}}})
        assert evaluator.is_edge_active(edge, {"A": {"error": "x", "_meta": {"onErrorRouting": "ROUTE_TO_ERROR"}}})

    def test_should_run(self, evaluator):
        assert evaluator.should_run([], {}) == (True, [])
        inbound = [
            {"from": "A", "to": "C", "edgeType": "condition-edge", "condition": "{{v}} > 1"},
            {"from": "B", "to": "C", "edgeType": "data-edge"},
        ]
        runs, active = evaluator.should_run(inbound, {"A": {"v": 0}, "B": {"skipped": True}})
        assert runs is False and active == []
        runs, active = evaluator.should_run(inbound, {"A": {"v": 5}, "B": {"skipped": True}})
        assert runs is True and [e["from"] for e in active] == ["A"]


class TestBuildEdgeInput:
    def test_no_sources(self):
        assert build_edge_input([], {}) == {}

    def test_single_source_is_flattened_without_meta(self):
        outputs = {"A": {"value": 1, "_meta": {"attempts": 1}}}
        assert build_edge_input([{"from": "A", "to": "B"}], outputs) == {"value": 1}

    def test_multiple_sources_become_branches(self):
        outputs = {"A": {"value": 1}, "B": {"value": 2, "_meta": {}}}
        edges = [{"from": "A", "to": "C"}, {"from": "B", "to": "C"}, {"from": "A", "to": "C"}]
        assert build_edge_input(edges, outputs) == {"branches": {"A": {"value": 1}, "B": {"value": 2}}}
