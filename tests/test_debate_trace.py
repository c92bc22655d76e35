"""Tests for debate round traces and their availability to DEBATE-mode executors."""

from __future__ import annotations

import pytest

from flowloom.service.errors import BadRequestError
from flowloom.service.executors import FunctionNodeExecutor
from flowloom.service.runtime import reset_runtime_for_tests

USER = "user-1"

CONFIDENCE = {"bull": (0.6, 0.5), "bear": (0.8, 0.5)}


def debate_round(context):
    confidence, previous = CONFIDENCE[context.node["id"]]
    context.debate_traces.create_batch(
        [
            {
                "workflow_execution_id": context.execution_id,
                "round_number": 1,
                "participant_code": context.node["id"],
                "participant_role": context.config.get("role"),
                "statement_text": f"{context.node['id']} case",
                "confidence": confidence,
                "previous_confidence": previous,
                "key_points": ["inventory"],
            }
        ]
    )
    return {"confidence": confidence}


def judge(context):
    context.debate_traces.create_batch(
        [
            {
                "workflow_execution_id": context.execution_id,
                "round_number": 2,
                "participant_code": "judge",
                "is_judgement": True,
                "statement_text": "bear wins",
                "consensus_score": 0.7,
            }
        ]
    )
    return {"action": "SELL"}


def _publish(runtime, dsl, code):
    definition = runtime.definitions.create_definition(USER, code, code, mode=dsl.get("mode", "LINEAR"))
    runtime.definitions.create_version(USER, definition.id, "v1", dsl, publish=True)
    return definition


async def test_debate_executors_write_traces_and_timeline_summarizes_rounds():
    runtime = reset_runtime_for_tests(
        [FunctionNodeExecutor(["debater"], debate_round), FunctionNodeExecutor(["judge"], judge)]
    )
    definition = _publish(
        runtime,
        {
            "mode": "DEBATE",
            "nodes": [
                {"id": "bull", "type": "debater", "config": {"role": "BULL"}},
                {"id": "bear", "type": "debater", "config": {"role": "BEAR"}},
                {"id": "verdict", "type": "judge"},
            ],
            "edges": [{"from": "bull", "to": "bear"}, {"from": "bear", "to": "verdict"}],
        },
        "debate",
    )

    execution = await runtime.workflow.trigger(USER, {"workflow_definition_id": definition.id})

    assert execution.status == "SUCCESS"
    timeline = runtime.debate_traces.debate_timeline(execution.id)
    assert timeline["totalRounds"] == 2
    first, second = timeline["rounds"]
    assert first["roundSummary"]["participantCount"] == 2
    assert first["roundSummary"]["avgConfidence"] == pytest.approx(0.7)
    assert first["roundSummary"]["confidenceDelta"] == pytest.approx(0.2)
    assert second["roundSummary"]["hasJudgement"] is True
    assert second["roundSummary"]["confidenceDelta"] is None
    judgements = runtime.debate_traces.find_by_execution(execution.id, is_judgement=True)
    assert [t.participant_code for t in judgements] == ["judge"]
    assert runtime.debate_traces.find_by_execution(execution.id, participant_code="bull")[0].participant_role == "BULL"


async def test_linear_executors_get_no_trace_service():
    seen = {}

    def capture(context):
        seen["traces"] = context.debate_traces
        return {}

    runtime = reset_runtime_for_tests([FunctionNodeExecutor(["task"], capture)])
    definition = _publish(runtime, {"nodes": [{"id": "a", "type": "task"}]}, "linear")

    await runtime.workflow.trigger(USER, {"workflow_definition_id": definition.id})

    assert seen["traces"] is None


class TestCreateBatch:
    def test_invalid_trace_is_rejected(self):
        runtime = reset_runtime_for_tests()
        with pytest.raises(BadRequestError) as info:
            runtime.debate_traces.create_batch(
                [{"workflow_execution_id": "x", "round_number": -1, "participant_code": ""}]
            )
        assert info.value.detail["errors"]

    def test_unknown_execution_is_rejected(self):
        runtime = reset_runtime_for_tests()
        with pytest.raises(BadRequestError):
            runtime.debate_traces.create_batch(
                [{"workflow_execution_id": "missing", "round_number": 1, "participant_code": "bull"}]
            )

    def test_empty_batch(self):
        runtime = reset_runtime_for_tests()
        assert runtime.debate_traces.create_batch([]) == {"count": 0}
        assert runtime.debate_traces.debate_timeline("none") == {
            "executionId": "none",
            "totalRounds": 0,
            "rounds": [],
        }
