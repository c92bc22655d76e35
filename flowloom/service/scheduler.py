from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from flowloom.logging import get_logger
from flowloom.service.conditions import EdgeEvaluator
from flowloom.service.dsl import (
    dag_layers,
    inbound_edge_map,
    linear_order,
    outbound_edge_map,
    reachable_without_error_edges,
)
from flowloom.service.errors import NodeExecutorError, NodeInputUnresolvedError, WorkflowFailure
from flowloom.service.executors import (
    NODE_STATUS_FAILED,
    NODE_STATUS_SKIPPED,
    NODE_STATUS_SUCCESS,
    NodeExecutionContext,
    NodeExecutionResult,
    NodeExecutorRegistry,
)
from flowloom.service.failure import FailureClassification
from flowloom.service.runtime_policy import (
    ON_ERROR_FAIL_FAST,
    ON_ERROR_ROUTE_TO_ERROR,
    RuntimePolicy,
)

SKIP_ROUTE_TO_ERROR = "ROUTE_TO_ERROR"
SKIP_EDGE_INACTIVE = "EDGE_INACTIVE"
SKIP_DISABLED = "DISABLED"

DEFAULT_MAX_CONCURRENCY = 5


@dataclass
class SchedulerCallbacks:
    """Host effects the node loop and DAG scheduler call back into.

    ``resolve_node_input(node, active_edges, outputs_by_node)`` returns the
    input snapshot and raises ``NodeInputUnresolvedError`` on unresolved bindings.
    ``execute_with_timeout(awaitable, timeout_ms, message)`` awaits with a bound.
    """

    throw_if_canceled: Callable[[], Awaitable[None]]
    record_event: Callable[..., Awaitable[Any]]
    persist_node_execution: Callable[..., Awaitable[Any]]
    resolve_runtime_policy: Callable[[Mapping[str, Any], Optional[Mapping[str, Any]]], RuntimePolicy]
    resolve_node_input: Callable[
        [Mapping[str, Any], List[Mapping[str, Any]], Mapping[str, Any]], Dict[str, Any]
    ]
    execute_with_timeout: Callable[[Awaitable[Any], int, str], Awaitable[Any]]
    sleep: Callable[[int], Awaitable[None]]
    classify_failure: Callable[[BaseException], FailureClassification]


@dataclass
class ExecutionScope:
    """Per-run identity handed to every executor context."""

    execution_id: str
    trigger_user_id: str
    param_snapshot: Dict[str, Any] = field(default_factory=dict)
    workflow_definition_id: Optional[str] = None
    call_path: Tuple[str, ...] = ()
    subflow_depth: int = 0
    mode: str = "LINEAR"
    debate_traces: Any = None


@dataclass
class NodeOutcome:
    node_id: str
    node_type: str
    status: str
    output: Dict[str, Any]
    on_error: str
    error: Optional[BaseException] = None
    classification: Optional[FailureClassification] = None

    @property
    def failed(self) -> bool:
        return self.status == NODE_STATUS_FAILED


@dataclass
class RunResult:
    outputs_by_node: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    soft_failure_count: int = 0
    executed_node_count: int = 0
    latest_node: Optional[Mapping[str, Any]] = None


def escalate(outcome: NodeOutcome) -> WorkflowFailure:
    """Turn a FAIL_FAST node outcome into the error that aborts the execution."""

    if isinstance(outcome.error, WorkflowFailure):
        return outcome.error
    classification = outcome.classification
    return NodeExecutorError(
        classification.message if classification else f"node {outcome.node_id} failed",
        failure_category=classification.failure_category if classification else None,
        failure_code=classification.failure_code if classification else None,
        detail={"nodeId": outcome.node_id},
    )


class NodeRunner:
    """Shared per-node lifecycle: policy, input, attempts, persistence, events."""

    def __init__(
        self,
        registry: NodeExecutorRegistry,
        callbacks: SchedulerCallbacks,
        scope: ExecutionScope,
        run_policy: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.registry = registry
        self.callbacks = callbacks
        self.scope = scope
        self.run_policy = run_policy or {}
        self.logger = get_logger(__name__)

    def _context(self, node: Mapping[str, Any], node_input: Dict[str, Any], attempt: int) -> NodeExecutionContext:
        return NodeExecutionContext(
            execution_id=self.scope.execution_id,
            trigger_user_id=self.scope.trigger_user_id,
            node=dict(node),
            input=dict(node_input),
            param_snapshot=self.scope.param_snapshot,
            attempt=attempt,
            workflow_definition_id=self.scope.workflow_definition_id,
            call_path=self.scope.call_path,
            subflow_depth=self.scope.subflow_depth,
            mode=self.scope.mode,
            debate_traces=self.scope.debate_traces,
        )

    async def persist_skip(self, node: Mapping[str, Any], skip_type: str, reason: str) -> Dict[str, Any]:
        now = datetime.utcnow()
        output = {
            "skipped": True,
            "skipType": skip_type,
            "skipReason": reason,
            "nodeId": node["id"],
            "nodeType": node["type"],
            "_meta": {"skipType": skip_type},
        }
        record = await self.callbacks.persist_node_execution(
            node_id=node["id"],
            node_type=node["type"],
            status=NODE_STATUS_SKIPPED,
            started_at=now,
            completed_at=now,
            duration_ms=0,
            error_message=reason,
            failure_category=None,
            failure_code=None,
            input_snapshot={},
            output_snapshot=output,
        )
        await self.callbacks.record_event(
            "NODE_SKIPPED",
            "INFO",
            f"node {node['id']} skipped: {reason}",
            detail={"nodeId": node["id"], "skipType": skip_type},
            node_execution_id=getattr(record, "id", None),
        )
        return output

    async def run(
        self,
        node: Mapping[str, Any],
        active_edges: List[Mapping[str, Any]],
        outputs_by_node: Mapping[str, Dict[str, Any]],
    ) -> NodeOutcome:
        node_id, node_type = node["id"], node["type"]
        started_at = datetime.utcnow()
        started = time.monotonic()
        policy = self.callbacks.resolve_runtime_policy(node, self.run_policy)
        executor = self.registry.resolve(dict(node))
        await self.callbacks.record_event(
            "NODE_STARTED",
            "INFO",
            f"node {node_id} started",
            detail={"nodeId": node_id, "nodeType": node_type, "executor": executor.name},
        )

        node_input: Dict[str, Any] = {}
        output: Dict[str, Any] = {}
        last_error: Optional[BaseException] = None
        attempts = 0
        try:
            node_input = self.callbacks.resolve_node_input(node, active_edges, outputs_by_node)
        except NodeInputUnresolvedError as exc:
            last_error = exc
            self.logger.warning("workflow_node_input_unresolved", node=node_id, error=exc.message)

        if last_error is None:
            for attempt in range(policy.retry_count + 1):
                attempts = attempt + 1
                try:
                    result: NodeExecutionResult = await self.callbacks.execute_with_timeout(
                        executor.execute(self._context(node, node_input, attempt)),
                        policy.timeout_ms,
                        f"node {node_id} timed out after {policy.timeout_ms}ms",
                    )
                    if result.failed:
                        raise NodeExecutorError(
                            result.message or f"node {node_id} returned FAILED",
                            detail={"output": dict(result.output or {})},
                        )
                    output = dict(result.output or {})
                    last_error = None
                    break
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    last_error = exc
                    if attempt < policy.retry_count:
                        classification = self.callbacks.classify_failure(exc)
                        self.logger.warning(
                            "workflow_node_retry",
                            node=node_id,
                            attempt=attempts,
                            max_retries=policy.retry_count,
                            error=classification.message,
                        )
                        await self.callbacks.record_event(
                            "NODE_RETRY",
                            "WARN",
                            f"node {node_id} attempt {attempts} failed, retrying",
                            detail={
                                "nodeId": node_id,
                                "attempt": attempts,
                                "backoffMs": policy.retry_backoff_ms,
                                "failureCode": classification.failure_code,
                                "error": classification.message,
                            },
                        )
                        await self.callbacks.sleep(policy.retry_backoff_ms)

        meta: Dict[str, Any] = {
            "executor": executor.name,
            "attempts": attempts,
            "runtimePolicy": policy.to_dict(),
        }
        classification: Optional[FailureClassification] = None
        if last_error is None:
            status = NODE_STATUS_SUCCESS
            existing_meta = output.get("_meta") if isinstance(output.get("_meta"), dict) else {}
            output["_meta"] = {**existing_meta, **meta}
        else:
            status = NODE_STATUS_FAILED
            classification = self.callbacks.classify_failure(last_error)
            meta["lastError"] = classification.message
            if policy.on_error == ON_ERROR_ROUTE_TO_ERROR:
                meta["onErrorRouting"] = ON_ERROR_ROUTE_TO_ERROR
            failed_output = {}
            if isinstance(last_error, NodeExecutorError):
                failed_output = dict(last_error.detail.get("output") or {})
            failed_output.pop("_meta", None)
            output = {**failed_output, "error": classification.message, "_meta": meta}
            self.logger.error(
                "workflow_node_failed",
                node=node_id,
                attempts=attempts,
                failure_code=classification.failure_code,
                on_error=policy.on_error,
            )

        completed_at = datetime.utcnow()
        record = await self.callbacks.persist_node_execution(
            node_id=node_id,
            node_type=node_type,
            status=status,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=max(0, int((time.monotonic() - started) * 1000)),
            error_message=classification.message if classification else None,
            failure_category=classification.failure_category if classification else None,
            failure_code=classification.failure_code if classification else None,
            input_snapshot=node_input,
            output_snapshot=output,
        )
        if classification is None:
            await self.callbacks.record_event(
                "NODE_SUCCEEDED",
                "INFO",
                f"node {node_id} succeeded",
                detail={"nodeId": node_id, "attempts": attempts},
                node_execution_id=getattr(record, "id", None),
            )
        else:
            await self.callbacks.record_event(
                "NODE_FAILED",
                "ERROR",
                f"node {node_id} failed: {classification.message}",
                detail={
                    "nodeId": node_id,
                    "attempts": attempts,
                    "onError": policy.on_error,
                    "failureCategory": classification.failure_category,
                    "failureCode": classification.failure_code,
                },
                node_execution_id=getattr(record, "id", None),
            )
        return NodeOutcome(
            node_id=node_id,
            node_type=node_type,
            status=status,
            output=output,
            on_error=policy.on_error,
            error=last_error,
            classification=classification,
        )


class _RunState:
    """Accumulators private to one run."""

    def __init__(self, nodes: List[Mapping[str, Any]], edges: List[Mapping[str, Any]]) -> None:
        self.inbound = inbound_edge_map(edges)
        self.outbound = outbound_edge_map(edges)
        self.outputs_by_node: Dict[str, Dict[str, Any]] = {}
        self.skip_reason_by_node: Dict[str, Tuple[str, str]] = {}
        self.soft_failure_count = 0
        self.executed_node_count = 0
        self.latest_node: Optional[Mapping[str, Any]] = None
        for node in nodes:
            if node.get("enabled") is False:
                self.skip_reason_by_node[node["id"]] = (SKIP_DISABLED, "node disabled")

    def skip_for(
        self, node: Mapping[str, Any], evaluator: EdgeEvaluator
    ) -> Tuple[Optional[Tuple[str, str]], List[Mapping[str, Any]]]:
        marked = self.skip_reason_by_node.get(node["id"])
        if marked:
            return marked, []
        runs, active = evaluator.should_run(self.inbound.get(node["id"], []), self.outputs_by_node)
        if not runs:
            return (SKIP_EDGE_INACTIVE, "no satisfied inbound edge"), []
        return None, active

    def absorb(self, outcome: NodeOutcome) -> Optional[WorkflowFailure]:
        """Fold a finished node into the run; returns the abort error on FAIL_FAST."""

        self.outputs_by_node[outcome.node_id] = outcome.output
        self.executed_node_count += 1
        if not outcome.failed:
            return None
        if outcome.on_error == ON_ERROR_FAIL_FAST:
            return escalate(outcome)
        self.soft_failure_count += 1
        if outcome.on_error == ON_ERROR_ROUTE_TO_ERROR:
            reason = f"upstream node {outcome.node_id} failed and routed to its error branch"
            for target in reachable_without_error_edges(
                outcome.node_id, self.outbound, self.skip_reason_by_node
            ):
                self.skip_reason_by_node[target] = (SKIP_ROUTE_TO_ERROR, reason)
        return None

    def result(self) -> RunResult:
        return RunResult(
            outputs_by_node=self.outputs_by_node,
            soft_failure_count=self.soft_failure_count,
            executed_node_count=self.executed_node_count,
            latest_node=self.latest_node,
        )


async def run_linear(
    *,
    nodes: List[Mapping[str, Any]],
    edges: List[Mapping[str, Any]],
    runner: NodeRunner,
    evaluator: EdgeEvaluator,
) -> RunResult:
    """Sequential node loop used by LINEAR and DEBATE modes."""

    order, fell_back = linear_order(nodes, edges)
    if fell_back:
        await runner.callbacks.record_event(
            "LINEAR_ORDER_FALLBACK",
            "WARN",
            "edges contain a cycle, running nodes in DSL order",
            detail={"nodeIds": [n["id"] for n in order]},
        )
    state = _RunState(nodes, edges)
    for node in order:
        await runner.callbacks.throw_if_canceled()
        state.latest_node = node
        skip, active = state.skip_for(node, evaluator)
        if skip:
            state.outputs_by_node[node["id"]] = await runner.persist_skip(node, *skip)
            continue
        outcome = await runner.run(node, active, state.outputs_by_node)
        failure = state.absorb(outcome)
        if failure is not None:
            raise failure
    return state.result()


class DagScheduler:
    """Ready-set DAG scheduler.

    A node starts as soon as every inbound source has resolved (output or
    skip); it never waits for the rest of its layer. Running nodes are
    bounded by a semaphore. On FAIL_FAST no new node starts, in-flight nodes
    are awaited, then the error is raised.
    """

    def __init__(self, registry: NodeExecutorRegistry, *, max_concurrency: int = DEFAULT_MAX_CONCURRENCY) -> None:
        self.registry = registry
        self.max_concurrency = max(1, max_concurrency)
        self.logger = get_logger(__name__)

    def build_layers(self, nodes: List[Mapping[str, Any]], edges: List[Mapping[str, Any]]) -> List[List[str]]:
        return dag_layers(nodes, edges)

    async def execute(
        self,
        *,
        nodes: List[Mapping[str, Any]],
        edges: List[Mapping[str, Any]],
        scope: ExecutionScope,
        callbacks: SchedulerCallbacks,
        evaluator: EdgeEvaluator,
        run_policy: Optional[Mapping[str, Any]] = None,
    ) -> RunResult:
        layers = self.build_layers(nodes, edges)
        await callbacks.record_event(
            "DAG_LAYERS_RESOLVED",
            "INFO",
            f"DAG resolved into {len(layers)} layers",
            detail={
                "layerCount": len(layers),
                "layers": [{"depth": depth, "nodeIds": ids} for depth, ids in enumerate(layers)],
            },
        )
        self.logger.info("dag_layers_resolved", layers=len(layers), nodes=len(nodes))

        runner = NodeRunner(self.registry, callbacks, scope, run_policy)
        semaphore = asyncio.Semaphore(self.max_concurrency)
        state = _RunState(nodes, edges)
        pending: List[Mapping[str, Any]] = list(nodes)
        running: Dict["asyncio.Task[NodeOutcome]", str] = {}
        failure: Optional[BaseException] = None

        async def _bounded(node: Mapping[str, Any], active: List[Mapping[str, Any]]) -> NodeOutcome:
            async with semaphore:
                return await runner.run(node, active, state.outputs_by_node)

        def _eligible(node: Mapping[str, Any]) -> bool:
            return all(
                edge["from"] in state.outputs_by_node
                for edge in state.inbound.get(node["id"], [])
            )

        try:
            while pending or running:
                if failure is None:
                    try:
                        started_any = True
                        while started_any and failure is None:
                            started_any = False
                            for node in [n for n in pending if _eligible(n)]:
                                await callbacks.throw_if_canceled()
                                pending.remove(node)
                                state.latest_node = node
                                skip, active = state.skip_for(node, evaluator)
                                if skip:
                                    state.outputs_by_node[node["id"]] = await runner.persist_skip(node, *skip)
                                    # a skip resolves the node, which may unblock others
                                    started_any = True
                                    continue
                                task = asyncio.create_task(_bounded(node, active))
                                running[task] = node["id"]
                    except Exception as exc:
                        failure = exc
                if not running:
                    if pending and failure is None:
                        raise RuntimeError("DAG scheduler stalled with pending nodes")
                    break
                done, _ = await asyncio.wait(list(running), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    node_id = running.pop(task)
                    try:
                        outcome = task.result()
                    except asyncio.CancelledError:
                        raise
                    except Exception as exc:
                        self.logger.error("dag_node_task_failed", node=node_id, error=str(exc))
                        if failure is None:
                            failure = exc
                        continue
                    node_failure = state.absorb(outcome)
                    if node_failure is not None and failure is None:
                        failure = node_failure
                if failure is not None and not running:
                    break
        finally:
            if running:
                # only reached when this coroutine itself is being torn down
                for task in running:
                    task.cancel()
                await asyncio.gather(*running, return_exceptions=True)
        if failure is not None:
            raise failure
        return state.result()


__all__ = [
    "SchedulerCallbacks",
    "ExecutionScope",
    "NodeOutcome",
    "NodeRunner",
    "RunResult",
    "DagScheduler",
    "run_linear",
    "escalate",
    "SKIP_ROUTE_TO_ERROR",
    "SKIP_EDGE_INACTIVE",
    "SKIP_DISABLED",
]
