"""Tests for reference paths, input binding resolution and lineage."""

from __future__ import annotations

import pytest

from flowloom.service.variables import (
    MISSING,
    ResolutionContext,
    VariableResolver,
    build_lineage_graph,
    parse_default_literal,
    read_path,
    split_path,
)


@pytest.fixture
def resolver():
    return VariableResolver(
        ResolutionContext(
            outputs_by_node={
                "fetch": {"records": [{"price": 101.5}, {"price": 99}], "source": "MarketIntel"},
                "score": {"value": 0},
            },
            param_snapshot={"params": {"region": "EU"}, "commodity": "copper"},
            meta={"executionId": "exec-1"},
        )
    )


class TestPaths:
    def test_split_path(self):
        assert split_path("a.b[0].c") == ["a", "b", 0, "c"]
        assert split_path("") == []

    def test_read_path(self):
        data = {"a": {"b": [{"c": 3}]}}
        assert read_path(data, "a.b[0].c") == 3
        assert read_path(data, "a.b.0.c") == 3
        assert read_path(data, "a.b[4]") is MISSING
        assert read_path(data, "a.x") is MISSING
        assert read_path({"a": None}, "a") is None

    def test_missing_is_falsy_but_not_none(self):
        assert not MISSING
        assert MISSING is not None

    @pytest.mark.parametrize(
        "raw, expected",
        [("null", None), ("true", True), ("'x'", "x"), ("3", 3), ("2.5", 2.5), ("abc", "abc")],
    )
    def test_default_literals(self, raw, expected):
        assert parse_default_literal(raw) == expected


class TestResolveMapping:
    def test_whole_expression_keeps_type(self, resolver):
        result = resolver.resolve_mapping({"price": "{{fetch.records[0].price}}", "fixed": 7})
        assert result.resolved == {"price": 101.5, "fixed": 7}
        assert result.unresolved == []
        [entry] = result.lineage
        assert entry.source_node_id == "fetch"
        assert entry.source_field_path == "records.0.price"
        assert entry.to_dict()["resolvedValue"] == 101.5

    def test_params_fall_back_to_snapshot_root(self, resolver):
        result = resolver.resolve_mapping({"region": "{{params.region}}", "commodity": "{{params.commodity}}"})
        assert result.resolved == {"region": "EU", "commodity": "copper"}

    def test_falsy_values_resolve(self, resolver):
        assert resolver.resolve_mapping({"v": "{{score.value}}"}).resolved == {"v": 0}

    def test_default_applies_only_when_missing(self, resolver):
        result = resolver.resolve_mapping(
            {"limit": "{{params.limit | default: 10}}", "v": "{{score.value | default: 5}}"}
        )
        assert result.resolved == {"limit": 10, "v": 0}

    def test_templates_interpolate(self, resolver):
        result = resolver.resolve_mapping({"label": "run {{meta.executionId}} in {{params.region}}"})
        assert result.resolved == {"label": "run exec-1 in EU"}

    def test_unresolved_references_are_reported(self, resolver):
        result = resolver.resolve_mapping({"a": "{{ghost.value}}", "b": "x {{fetch.nope}} y"})
        assert result.resolved == {}
        assert result.unresolved == ["{{ghost.value}}", "{{fetch.nope}}"]


def test_lineage_graph_matches_fields_from_inbound_sources():
    nodes = [{"id": "a"}, {"id": "b"}]
    edges = [{"from": "a", "to": "b"}]
    outputs = {"a": {"price": 1, "_meta": {}}, "b": {"price": 1, "extra": True, "_meta": {}}}
    graph = build_lineage_graph(nodes, edges, outputs)
    assert list(graph) == ["b"]
    assert graph["b"][0]["expression"] == "{{a.price}}"
    assert graph["b"][0]["sourceNodeId"] == "a"
