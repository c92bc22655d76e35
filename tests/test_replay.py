"""Tests for evidence collection and replay bundle assembly."""

from __future__ import annotations

import pytest

from flowloom.service.errors import NotFoundError
from flowloom.service.evidence import EvidenceCollector
from flowloom.service.executors import FunctionNodeExecutor
from flowloom.service.replay import REPLAY_VERSION, ReplayAssembler
from flowloom.service.runtime import reset_runtime_for_tests

USER = "user-1"

OUTPUTS = {
    "fetch": {
        "records": [{"price": 101.5}, {"price": 99.0}],
        "connectorCode": "MarketIntel",
        "connectorType": "DB",
    },
    "report": {"totalRecords": 5, "dataSource": "ResearchReport"},
    "agent": {
        "agentCode": "analyst",
        "parsed": {
            "action": "BUY",
            "confidence": 0.8,
            "summary": "supply tightening",
            "evidence": [{"title": "port strike", "source": "Newswire"}],
        },
    },
}


def _fixed_output(context):
    return dict(OUTPUTS[context.node["id"]])


DSL = {
    "nodes": [
        {"id": "start", "type": "trigger"},
        {"id": "fetch", "type": "data-fetch", "name": "Copper prices"},
        {"id": "report", "type": "report-fetch"},
        {"id": "agent", "type": "agent-call"},
    ],
    "edges": [
        {"from": "start", "to": "fetch"},
        {"from": "fetch", "to": "report"},
        {"from": "report", "to": "agent"},
    ],
}


async def _run():
    runtime = reset_runtime_for_tests(
        [FunctionNodeExecutor(["data-fetch", "report-fetch", "agent-call"], _fixed_output)]
    )
    definition = runtime.definitions.create_definition(USER, "research", "Research")
    runtime.definitions.create_version(USER, definition.id, "v1", DSL, publish=True)
    execution = await runtime.workflow.trigger(USER, {"workflow_definition_id": definition.id})
    return runtime, execution


async def test_bundle_is_stored_with_the_execution():
    runtime, execution = await _run()

    bundle = runtime.workflow.replay(execution.id, USER)

    assert bundle == execution.output_snapshot["replayBundle"]
    assert bundle["version"] == REPLAY_VERSION
    assert bundle["execution"]["status"] == "SUCCESS"
    assert bundle["dslSnapshot"]["nodeCount"] == 4
    assert [s["nodeId"] for s in bundle["timeline"]] == ["start", "fetch", "report", "agent"]
    assert bundle["timeline"][1]["nodeName"] == "Copper prices"

    evidence = bundle["evidenceBundle"]
    assert evidence["strongEvidenceCount"] == 3
    assert evidence["externalEvidenceCount"] == 1
    assert evidence["meetsMinStrongEvidence"] is True
    assert evidence["countByType"] == {"DATA_SNAPSHOT": 2, "AGENT_OPINION": 2}

    decision = bundle["decisionOutput"]
    assert decision["nodeId"] == "agent"
    assert decision["action"] == "BUY"
    assert decision["confidence"] == 0.8
    assert decision["publishable"] is True

    stats = bundle["stats"]
    assert (stats["totalNodes"], stats["executedNodes"], stats["failedNodes"]) == (4, 4, 0)
    assert stats["softFailureCount"] == 0

    [annotation] = [e for e in bundle["dataLineage"]["edges"] if e["from"] == "report"]
    assert {f["inputField"] for f in annotation["fields"]} == {"totalRecords", "dataSource"}


async def test_missing_bundle_is_reassembled():
    runtime, execution = await _run()
    stored = runtime.store.get_workflow_execution(execution.id)
    stored.output_snapshot = {k: v for k, v in stored.output_snapshot.items() if k != "replayBundle"}

    bundle = runtime.workflow.replay(execution.id)

    assert bundle["execution"]["id"] == execution.id
    assert bundle["evidenceBundle"]["strongEvidenceCount"] == 3


async def test_replay_is_owner_scoped():
    runtime, execution = await _run()
    with pytest.raises(NotFoundError):
        runtime.workflow.replay(execution.id, "someone-else")
    with pytest.raises(NotFoundError):
        runtime.workflow.replay("missing-id")


class TestEvidenceCollector:
    def test_rule_hits_and_risk_verdict(self):
        collector = EvidenceCollector(min_strong_evidence=1)
        node = {"id": "gate", "type": "risk-gate"}
        output = {
            "hits": [{"ruleId": "R1", "ruleName": "Inventory low", "score": 0.7}],
            "riskLevel": "HIGH",
            "degradeAction": "HOLD",
            "blockers": ["liquidity"],
        }
        bundle = collector.collect([node], {"gate": output})
        assert [e["id"] for e in bundle["evidence"]] == ["gate_rule_R1", "gate_risk_gate"]
        assert bundle["evidence"][0]["confidence"] == 0.7
        assert bundle["meetsMinStrongEvidence"] is True

    def test_skipped_and_unknown_nodes_contribute_nothing(self):
        collector = EvidenceCollector()
        nodes = [{"id": "a", "type": "data-fetch"}, {"id": "b", "type": "custom"}]
        bundle = collector.collect(nodes, {"a": {"skipped": True}, "b": {"records": [1]}})
        assert bundle["evidence"] == []
        assert bundle["meetsMinStrongEvidence"] is False

    def test_unlisted_source_is_external(self):
        [item] = EvidenceCollector().extract_from_node(
            {"id": "f", "type": "external-api-fetch"}, {"records": [{}], "dataSource": "SomeBlog"}
        )
        assert item.is_external is True
        assert item.raw_data["recordCount"] == 1

    def test_compute_nodes_report_their_result(self):
        [item] = EvidenceCollector().extract_from_node(
            {"id": "calc", "type": "formula-calc"}, {"result": 12.5, "precision": 2}
        )
        assert item.type == "COMPUTED_METRIC"
        assert "12.5" in item.summary


class TestAssemblerPieces:
    def test_stats_ignore_skipped_nodes(self):
        snapshots = [
            {"nodeId": "a", "status": "SUCCESS", "durationMs": 10},
            {"nodeId": "b", "status": "FAILED", "durationMs": 30},
            {"nodeId": "c", "status": "SKIPPED", "durationMs": 0},
        ]
        stats = ReplayAssembler.build_stats(snapshots, 50, None)
        assert stats["executedNodes"] == 2
        assert stats["avgNodeDurationMs"] == 20
        assert stats["maxNodeId"] == "b"
        assert stats["softFailureCount"] == 1

    def test_blockers_make_a_decision_unpublishable(self):
        snapshots = [
            {
                "nodeId": "gate",
                "nodeType": "risk-gate",
                "status": "SUCCESS",
                "outputSnapshot": {"action": "SELL", "riskLevel": "HIGH", "blockers": ["limit"]},
            }
        ]
        decision = ReplayAssembler.extract_decision_output(snapshots, {"meetsMinStrongEvidence": True})
        assert decision["action"] == "SELL"
        assert decision["publishable"] is False
        assert ReplayAssembler.extract_decision_output([], {}) is None
