"""Tests for DAG-mode scheduling: readiness, bounded concurrency, conditions, aborts."""

from __future__ import annotations

import asyncio

import pytest

from flowloom.service.errors import WorkflowExecutionFailed
from flowloom.service.executors import FunctionNodeExecutor
from flowloom.service.runtime import reset_runtime_for_tests

USER = "user-1"


class Recorder:
    """Executor body that sleeps ``config.delay`` seconds and tracks overlap."""

    def __init__(self):
        self.active = 0
        self.peak = 0
        self.finished = []

    async def __call__(self, context):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(context.config.get("delay", 0))
            if context.config.get("fail"):
                raise RuntimeError(f"{context.node['id']} failed")
            return {"node": context.node["id"]}
        finally:
            self.active -= 1
            self.finished.append(context.node["id"])


def _publish(runtime, dsl, code="dag"):
    definition = runtime.definitions.create_definition(USER, code, code, mode=dsl.get("mode", "LINEAR"))
    runtime.definitions.create_version(USER, definition.id, "v1", dsl, publish=True)
    return definition


def _work(node_id, **config):
    return {"id": node_id, "type": "work", "config": config}


async def _trigger(runtime, definition, **params):
    return await runtime.workflow.trigger(
        USER, {"workflow_definition_id": definition.id, "param_snapshot": {"params": params}}
    )


def _rows(runtime, execution_id):
    return {r.node_id: r for r in runtime.workflow.list_node_executions(USER, execution_id)}


async def test_concurrency_is_bounded(monkeypatch):
    monkeypatch.setenv("DAG_MAX_CONCURRENCY", "2")
    recorder = Recorder()
    runtime = reset_runtime_for_tests([FunctionNodeExecutor(["work"], recorder)])
    workers = [_work(f"w{i}", delay=0.05) for i in range(5)]
    definition = _publish(
        runtime,
        {
            "mode": "DAG",
            "nodes": [{"id": "start", "type": "trigger"}, *workers],
            "edges": [{"from": "start", "to": w["id"]} for w in workers],
        },
    )

    execution = await _trigger(runtime, definition)

    assert runtime.dag_scheduler.max_concurrency == 2
    assert execution.status == "SUCCESS"
    assert recorder.peak == 2
    assert execution.output_snapshot["executedNodeCount"] == 6


async def test_ready_nodes_do_not_wait_for_their_layer():
    recorder = Recorder()
    runtime = reset_runtime_for_tests([FunctionNodeExecutor(["work"], recorder)])
    definition = _publish(
        runtime,
        {
            "mode": "DAG",
            "nodes": [
                {"id": "start", "type": "trigger"},
                _work("slow", delay=0.3),
                _work("fast"),
                _work("after_fast"),
            ],
            "edges": [
                {"from": "start", "to": "slow"},
                {"from": "start", "to": "fast"},
                {"from": "fast", "to": "after_fast"},
            ],
        },
    )

    execution = await _trigger(runtime, definition)

    assert recorder.finished.index("after_fast") < recorder.finished.index("slow")
    layers = runtime.workflow.timeline(USER, execution.id, event_type="DAG_LAYERS_RESOLVED")
    assert layers[0].detail["layerCount"] == 3


async def test_condition_edges_pick_a_branch():
    recorder = Recorder()
    runtime = reset_runtime_for_tests([FunctionNodeExecutor(["work"], recorder)])
    definition = _publish(
        runtime,
        {
            "mode": "DAG",
            "nodes": [{"id": "start", "type": "trigger"}, _work("hot"), _work("cold"), _work("report")],
            "edges": [
                {"from": "start", "to": "hot", "edgeType": "condition-edge", "condition": "{{start.score}} > 50"},
                {
                    "from": "start",
                    "to": "cold",
                    "edgeType": "condition-edge",
                    "condition": {"field": "score", "operator": "<=", "value": 50},
                },
                {"from": "hot", "to": "report"},
                {"from": "cold", "to": "report"},
            ],
        },
    )

    execution = await _trigger(runtime, definition, score=80)

    rows = _rows(runtime, execution.id)
    assert rows["hot"].status == "SUCCESS"
    assert rows["cold"].status == "SKIPPED"
    assert rows["cold"].output_snapshot["skipType"] == "EDGE_INACTIVE"
    assert rows["report"].status == "SUCCESS"
    assert rows["report"].input_snapshot == {"node": "hot"}


async def test_cycle_fails_the_execution():
    runtime = reset_runtime_for_tests([FunctionNodeExecutor(["work"], Recorder())])
    definition = _publish(
        runtime,
        {
            "mode": "DAG",
            "nodes": [_work("a"), _work("b")],
            "edges": [{"from": "a", "to": "b"}, {"from": "b", "to": "a"}],
        },
    )

    with pytest.raises(WorkflowExecutionFailed) as info:
        await _trigger(runtime, definition)

    assert (info.value.failure_category, info.value.failure_code) == ("INTERNAL", "DAG_CYCLE_DETECTED")


async def test_fail_fast_drains_in_flight_nodes_and_starts_nothing_new():
    recorder = Recorder()
    runtime = reset_runtime_for_tests([FunctionNodeExecutor(["work"], recorder)])
    bad = _work("bad", delay=0.05, fail=True)
    bad["runtimePolicy"] = {"onError": "FAIL_FAST"}
    definition = _publish(
        runtime,
        {
            "mode": "DAG",
            "nodes": [{"id": "start", "type": "trigger"}, bad, _work("slow", delay=0.2), _work("n1"), _work("n2")],
            "edges": [
                {"from": "start", "to": "bad"},
                {"from": "start", "to": "slow"},
                {"from": "bad", "to": "n1"},
                {"from": "slow", "to": "n2"},
            ],
        },
    )

    with pytest.raises(WorkflowExecutionFailed) as info:
        await _trigger(runtime, definition)

    rows = _rows(runtime, info.value.execution_id)
    assert rows["bad"].status == "FAILED"
    assert rows["slow"].status == "SUCCESS"
    assert "n1" not in rows and "n2" not in rows
    execution = runtime.workflow.get_execution(USER, info.value.execution_id)
    assert execution.failure_code == "NODE_EXECUTOR_ERROR"


async def test_linear_mode_falls_back_to_dsl_order_on_cycle():
    runtime = reset_runtime_for_tests([FunctionNodeExecutor(["work"], Recorder())])
    definition = _publish(
        runtime,
        {
            "nodes": [_work("a"), _work("b")],
            "edges": [{"from": "a", "to": "b"}, {"from": "b", "to": "a"}],
        },
        code="linear-cycle",
    )

    execution = await _trigger(runtime, definition)

    assert execution.status == "SUCCESS"
    fallback = runtime.workflow.timeline(USER, execution.id, event_type="LINEAR_ORDER_FALLBACK")
    assert fallback[0].detail["nodeIds"] == ["a", "b"]
    assert [r.status for r in _rows(runtime, execution.id).values()] == ["SKIPPED", "SKIPPED"]


async def test_route_to_error_skips_normal_paths_and_runs_handlers():
    recorder = Recorder()
    runtime = reset_runtime_for_tests([FunctionNodeExecutor(["work"], recorder)])
    failing = _work("a", fail=True)
    failing["runtimePolicy"] = {"onError": "ROUTE_TO_ERROR"}
    definition = _publish(
        runtime,
        {
            "mode": "DAG",
            "nodes": [
                {"id": "start", "type": "trigger"},
                failing,
                _work("b"),
                _work("c"),
                _work("handler"),
                _work("notify"),
                _work("side", delay=0.05),
            ],
            "edges": [
                {"from": "start", "to": "a"},
                {"from": "start", "to": "side"},
                {"from": "a", "to": "b"},
                {"from": "b", "to": "c"},
                {"from": "a", "to": "c", "edgeType": "error-edge"},
                {"from": "a", "to": "handler", "edgeType": "error-edge"},
                {"from": "handler", "to": "notify"},
            ],
        },
    )

    execution = await _trigger(runtime, definition)

    assert execution.status == "SUCCESS"
    rows = _rows(runtime, execution.id)
    assert rows["a"].status == "FAILED"
    for node_id in ("b", "c"):
        assert rows[node_id].status == "SKIPPED"
        assert rows[node_id].output_snapshot["skipType"] == "ROUTE_TO_ERROR"
    assert rows["handler"].status == "SUCCESS"
    assert rows["handler"].input_snapshot == {"error": "a failed"}
    assert rows["notify"].input_snapshot == {"node": "handler"}
    assert rows["side"].status == "SUCCESS"
    assert execution.output_snapshot["softFailureCount"] == 1


async def test_cancel_stops_before_the_next_ready_node():
    holder = {}
    recorder = Recorder()

    def stop(context):
        holder["runtime"].workflow.cancel(USER, context.execution_id, "operator stop")
        return {"stopped": True}

    runtime = reset_runtime_for_tests(
        [FunctionNodeExecutor(["stop"], stop), FunctionNodeExecutor(["work"], recorder)]
    )
    holder["runtime"] = runtime
    definition = _publish(
        runtime,
        {
            "mode": "DAG",
            "nodes": [
                {"id": "start", "type": "trigger"},
                {"id": "stop", "type": "stop"},
                _work("slow", delay=0.1),
                _work("after_stop"),
                _work("after_slow"),
            ],
            "edges": [
                {"from": "start", "to": "stop"},
                {"from": "start", "to": "slow"},
                {"from": "stop", "to": "after_stop"},
                {"from": "slow", "to": "after_slow"},
            ],
        },
    )

    execution = await _trigger(runtime, definition)

    assert execution.status == "CANCELED"
    assert execution.failure_code == "EXECUTION_CANCELED"
    assert execution.error_message == "operator stop"
    rows = _rows(runtime, execution.id)
    assert set(rows) == {"start", "stop", "slow"}
    assert rows["slow"].status == "SUCCESS"
    assert recorder.finished == ["slow"]


async def test_diamond_join_runs_once_when_one_branch_is_skipped():
    recorder = Recorder()
    runtime = reset_runtime_for_tests([FunctionNodeExecutor(["work"], recorder)])
    disabled = _work("left")
    disabled["enabled"] = False
    definition = _publish(
        runtime,
        {
            "mode": "DAG",
            "nodes": [{"id": "start", "type": "trigger"}, disabled, _work("right", delay=0.02), _work("join")],
            "edges": [
                {"from": "start", "to": "left"},
                {"from": "start", "to": "right"},
                {"from": "left", "to": "join"},
                {"from": "right", "to": "join"},
            ],
        },
    )

    execution = await _trigger(runtime, definition)

    assert execution.status == "SUCCESS"
    rows = runtime.workflow.list_node_executions(USER, execution.id)
    assert sorted(r.node_id for r in rows) == ["join", "left", "right", "start"]
    by_id = {r.node_id: r for r in rows}
    assert by_id["left"].status == "SKIPPED"
    assert by_id["left"].output_snapshot["skipType"] == "DISABLED"
    assert by_id["join"].status == "SUCCESS"
    assert by_id["join"].input_snapshot == {"node": "right"}
    assert recorder.finished == ["right", "join"]
