from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple, Union

from flowloom.logging import get_logger

logger = get_logger(__name__)

NODE_STATUS_SUCCESS = "SUCCESS"
NODE_STATUS_FAILED = "FAILED"
NODE_STATUS_SKIPPED = "SKIPPED"

SUBFLOW_NODE_TYPE = "subflow-call"


@dataclass
class NodeExecutionContext:
    """What an executor sees for one attempt of one node."""

    execution_id: str
    trigger_user_id: str
    node: Dict[str, Any]
    input: Dict[str, Any]
    param_snapshot: Dict[str, Any] = field(default_factory=dict)
    attempt: int = 0
    workflow_definition_id: Optional[str] = None
    # definition ids of the enclosing executions, outermost first
    call_path: Tuple[str, ...] = ()
    subflow_depth: int = 0
    mode: str = "LINEAR"
    debate_traces: Any = None

    @property
    def config(self) -> Dict[str, Any]:
        return self.node.get("config") or {}


@dataclass
class NodeExecutionResult:
    status: str = NODE_STATUS_SUCCESS
    output: Dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == NODE_STATUS_FAILED


class NodeExecutor:
    """Capability implemented by concrete node business logic."""

    name = "NodeExecutor"

    def supports(self, node: Dict[str, Any]) -> bool:
        return False

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        raise NotImplementedError


class PassthroughNodeExecutor(NodeExecutor):
    """Fallback for node types nobody claims: echoes the derived input."""

    name = "PassthroughNodeExecutor"

    def supports(self, node: Dict[str, Any]) -> bool:
        return True

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        return NodeExecutionResult(output=dict(context.input))


class TriggerNodeExecutor(NodeExecutor):
    """Built-in executor for ``trigger`` and ``*-trigger`` nodes.

    Emits the trigger metadata merged with caller params. ``config.requiredFields``
    lists params that must be present, otherwise the node fails.
    """

    name = "TriggerNodeExecutor"

    def supports(self, node: Dict[str, Any]) -> bool:
        node_type = str(node.get("type", ""))
        return node_type == "trigger" or node_type.endswith("-trigger")

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        params = context.param_snapshot.get("params") or {}
        merged = {**(context.config.get("defaults") or {}), **params, **context.input}
        missing = [
            name for name in context.config.get("requiredFields") or []
            if merged.get(name) is None
        ]
        if missing:
            return NodeExecutionResult(
                status=NODE_STATUS_FAILED,
                output={"missingFields": missing},
                message=f"missing required trigger fields: {', '.join(missing)}",
            )
        output = dict(merged)
        output.update(
            {
                "triggered": True,
                "triggerNodeType": context.node.get("type"),
                "triggerUserId": context.trigger_user_id,
                "executionId": context.execution_id,
                "triggeredAt": datetime.utcnow().isoformat(),
            }
        )
        subflow_input = context.param_snapshot.get("subflowInput")
        if isinstance(subflow_input, dict):
            output.setdefault("subflowInput", subflow_input)
        return NodeExecutionResult(output=output)


ExecutorFunction = Callable[
    [NodeExecutionContext],
    Union[Dict[str, Any], NodeExecutionResult, Awaitable[Union[Dict[str, Any], NodeExecutionResult]]],
]


class FunctionNodeExecutor(NodeExecutor):
    """Adapts a plain (sync or async) function into an executor for given node types."""

    def __init__(self, node_types: Iterable[str], func: ExecutorFunction, *, name: Optional[str] = None) -> None:
        self.node_types = frozenset(node_types)
        self.func = func
        self.name = name or getattr(func, "__name__", "FunctionNodeExecutor")

    def supports(self, node: Dict[str, Any]) -> bool:
        return node.get("type") in self.node_types

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        result = self.func(context)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, NodeExecutionResult):
            return result
        return NodeExecutionResult(output=dict(result or {}))


class NodeExecutorRegistry:
    """Immutable ordered executor list; the first executor that supports a node wins.

    Built once at startup and passed by reference. ``with_executors`` returns a
    new registry rather than mutating this one.
    """

    def __init__(
        self,
        executors: Iterable[NodeExecutor] = (),
        *,
        fallback: Optional[NodeExecutor] = None,
    ) -> None:
        self._executors: Tuple[NodeExecutor, ...] = tuple(executors)
        self._fallback = fallback or PassthroughNodeExecutor()

    @property
    def executors(self) -> Tuple[NodeExecutor, ...]:
        return self._executors

    @property
    def fallback(self) -> NodeExecutor:
        return self._fallback

    def resolve(self, node: Dict[str, Any]) -> NodeExecutor:
        for executor in self._executors:
            if executor.supports(node):
                return executor
        logger.debug("node_executor_fallback", node_id=node.get("id"), node_type=node.get("type"))
        return self._fallback

    def with_executors(self, *executors: NodeExecutor) -> "NodeExecutorRegistry":
        """New registry whose extra executors take precedence over the current ones."""

        return NodeExecutorRegistry((*executors, *self._executors), fallback=self._fallback)


def default_registry(extra: Iterable[NodeExecutor] = ()) -> NodeExecutorRegistry:
    # caller executors first so they can claim trigger types too
    return NodeExecutorRegistry((*tuple(extra), TriggerNodeExecutor()))


__all__ = [
    "NodeExecutionContext",
    "NodeExecutionResult",
    "NodeExecutor",
    "PassthroughNodeExecutor",
    "TriggerNodeExecutor",
    "FunctionNodeExecutor",
    "NodeExecutorRegistry",
    "default_registry",
    "NODE_STATUS_SUCCESS",
    "NODE_STATUS_FAILED",
    "NODE_STATUS_SKIPPED",
    "SUBFLOW_NODE_TYPE",
]
