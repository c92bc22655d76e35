"""Tests for the executor registry and built-in executors."""

from __future__ import annotations

from flowloom.service.executors import (
    FunctionNodeExecutor,
    NodeExecutionContext,
    NodeExecutionResult,
    PassthroughNodeExecutor,
    TriggerNodeExecutor,
    default_registry,
)


def _context(node, *, input=None, params=None, snapshot=None, **kwargs):
    return NodeExecutionContext(
        execution_id="exec-1",
        trigger_user_id="user-1",
        node=node,
        input=input or {},
        param_snapshot={"params": params or {}, **(snapshot or {})},
        **kwargs,
    )


class TestRegistry:
    def test_first_supporting_executor_wins(self):
        first = FunctionNodeExecutor(["task"], lambda context: {"by": "first"}, name="first")
        second = FunctionNodeExecutor(["task"], lambda context: {"by": "second"}, name="second")
        registry = default_registry([first, second])
        assert registry.resolve({"id": "a", "type": "task"}) is first
        assert isinstance(registry.resolve({"id": "t", "type": "trigger"}), TriggerNodeExecutor)
        assert isinstance(registry.resolve({"id": "x", "type": "unknown"}), PassthroughNodeExecutor)

    def test_with_executors_returns_new_registry(self):
        base = default_registry()
        override = FunctionNodeExecutor(["trigger"], lambda context: {}, name="custom-trigger")
        extended = base.with_executors(override)
        assert extended is not base
        assert extended.resolve({"type": "trigger"}) is override
        assert isinstance(base.resolve({"type": "trigger"}), TriggerNodeExecutor)
        assert extended.fallback is base.fallback
        assert len(extended.executors) == len(base.executors) + 1


class TestFunctionExecutor:
    async def test_sync_and_async_functions(self):
        async def fetch(context):
            return {"attempt": context.attempt}

        sync_result = await FunctionNodeExecutor(["task"], lambda context: None).execute(_context({"type": "task"}))
        async_result = await FunctionNodeExecutor(["task"], fetch).execute(_context({"type": "task"}, attempt=2))
        assert sync_result.output == {}
        assert async_result.output == {"attempt": 2}
        assert FunctionNodeExecutor(["task"], fetch).name == "fetch"

    async def test_result_objects_pass_through(self):
        failed = NodeExecutionResult(status="FAILED", message="nope")
        result = await FunctionNodeExecutor(["task"], lambda context: failed).execute(_context({"type": "task"}))
        assert result is failed
        assert result.failed


class TestTriggerExecutor:
    async def test_merges_defaults_params_and_input(self):
        node = {"id": "start", "type": "manual-trigger", "config": {"defaults": {"region": "US", "limit": 5}}}
        result = await TriggerNodeExecutor().execute(
            _context(node, input={"limit": 7}, params={"region": "EU"}, snapshot={"subflowInput": {"a": 1}})
        )
        assert not result.failed
        assert result.output["region"] == "EU"
        assert result.output["limit"] == 7
        assert result.output["triggered"] is True
        assert result.output["triggerNodeType"] == "manual-trigger"
        assert result.output["executionId"] == "exec-1"
        assert result.output["subflowInput"] == {"a": 1}

    async def test_missing_required_fields_fail(self):
        node = {"id": "start", "type": "trigger", "config": {"requiredFields": ["region", "commodity"]}}
        result = await TriggerNodeExecutor().execute(_context(node, params={"region": "EU"}))
        assert result.failed
        assert result.output == {"missingFields": ["commodity"]}
        assert "commodity" in result.message

    def test_supports_trigger_types_only(self):
        executor = TriggerNodeExecutor()
        assert executor.supports({"type": "trigger"})
        assert executor.supports({"type": "schedule-trigger"})
        assert not executor.supports({"type": "triggered-task"})


async def test_passthrough_echoes_input():
    result = await PassthroughNodeExecutor().execute(_context({"type": "x"}, input={"v": 1}))
    assert result.output == {"v": 1}
