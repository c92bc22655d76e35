from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from flowloom.logging import bind_execution_id, get_logger, log_execution_trace
from flowloom.service.conditions import EdgeEvaluator, build_edge_input
from flowloom.service.debate import DebateTraceService
from flowloom.service.definitions import DefinitionService
from flowloom.service.dsl import PreparedDsl, prepare_dsl
from flowloom.service.errors import (
    BadRequestError,
    ConflictError,
    ExecutionCanceledError,
    ExecutionTimeoutError,
    InternalEngineError,
    NodeInputUnresolvedError,
    NodeTimeoutError,
    NotFoundError,
    WorkflowExecutionFailed,
)
from flowloom.service.executors import NodeExecutorRegistry
from flowloom.service.experiment import ExperimentRoutingContext, ExperimentService
from flowloom.service.failure import classify_failure
from flowloom.service.params import ParamSnapshotBuilder
from flowloom.service.replay import ReplayAssembler
from flowloom.service.runtime_policy import ON_ERROR_FAIL_FAST, resolve_runtime_policy
from flowloom.service.scheduler import (
    DagScheduler,
    ExecutionScope,
    NodeRunner,
    RunResult,
    SchedulerCallbacks,
    run_linear,
)
from flowloom.service.variables import ResolutionContext, VariableResolver
from flowloom.storage.errors import ConstraintViolation
from flowloom.storage.memory import MemoryStore
from flowloom.storage.models import NodeExecution, WorkflowExecution, WorkflowRuntimeEvent

TRIGGER_TYPES = ("MANUAL", "ON_DEMAND", "SCHEDULED", "EVENT", "API")
DEFAULT_TIMELINE_LIMIT = 200


class TriggerRequest(BaseModel):
    """Caller payload for :meth:`WorkflowExecutionService.trigger`."""

    model_config = ConfigDict(extra="forbid")

    workflow_definition_id: str = Field(min_length=1)
    workflow_version_id: Optional[str] = None
    trigger_type: str = "MANUAL"
    param_snapshot: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
    experiment_id: Optional[str] = None


@dataclass(frozen=True)
class BestEffort:
    """Outcome of a write whose failure must never change an execution's status."""

    ok: bool
    value: Any = None
    error: Optional[str] = None


class WorkflowExecutionService:
    """Triggers, runs and finalizes workflow executions.

    ``trigger`` performs, in order: idempotency lookup, experiment routing,
    version resolution, parameter snapshot, execution record creation, the
    node loop (LINEAR/DEBATE) or DAG scheduler, the single terminal write,
    replay assembly and experiment outcome recording.
    """

    def __init__(
        self,
        store: MemoryStore,
        definitions: DefinitionService,
        registry: NodeExecutorRegistry,
        *,
        dag_scheduler: Optional[DagScheduler] = None,
        snapshot_builder: Optional[ParamSnapshotBuilder] = None,
        experiments: Optional[ExperimentService] = None,
        replay_assembler: Optional[ReplayAssembler] = None,
        debate_traces: Optional[DebateTraceService] = None,
        timeline_default_limit: int = DEFAULT_TIMELINE_LIMIT,
    ) -> None:
        self.store = store
        self.definitions = definitions
        self.registry = registry
        self.dag_scheduler = dag_scheduler or DagScheduler(registry)
        self.snapshot_builder = snapshot_builder or ParamSnapshotBuilder(store)
        self.experiments = experiments
        self.replay_assembler = replay_assembler or ReplayAssembler()
        self.debate_traces = debate_traces or DebateTraceService(store)
        self.timeline_default_limit = timeline_default_limit
        self.logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Best-effort writes
    # ------------------------------------------------------------------

    def _record_event(
        self,
        execution_id: str,
        event_type: str,
        level: str,
        message: str,
        *,
        detail: Optional[Dict[str, Any]] = None,
        node_execution_id: Optional[str] = None,
    ) -> BestEffort:
        try:
            event = self.store.append_runtime_event(
                execution_id,
                event_type,
                level,
                message,
                detail=detail,
                node_execution_id=node_execution_id,
            )
        except Exception as exc:
            self.logger.warning(
                "workflow_event_write_failed",
                event_type=event_type,
                execution_id=execution_id,
                error=str(exc),
            )
            return BestEffort(ok=False, error=str(exc))
        return BestEffort(ok=True, value=event)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _owned_execution(self, user_id: str, execution_id: str) -> WorkflowExecution:
        execution = self.store.get_workflow_execution(execution_id)
        if not execution or execution.trigger_user_id != user_id:
            raise NotFoundError("execution not found", detail={"execution_id": execution_id})
        return execution

    def _find_idempotent(
        self,
        user_id: str,
        key: str,
        *,
        experiment_id: Optional[str],
        version_id: Optional[str],
    ) -> Optional[WorkflowExecution]:
        if experiment_id:
            return self.store.find_execution_by_experiment_idempotency(experiment_id, user_id, key)
        if version_id:
            return self.store.find_execution_by_idempotency(version_id, user_id, key)
        return None

    def get_execution(self, user_id: str, execution_id: str) -> WorkflowExecution:
        return self._owned_execution(user_id, execution_id)

    def list_executions(
        self,
        user_id: str,
        *,
        workflow_definition_id: Optional[str] = None,
        workflow_version_id: Optional[str] = None,
        status: Optional[str] = None,
        trigger_type: Optional[str] = None,
        source_execution_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        page, page_size = max(page, 1), min(max(page_size, 1), 200)
        items, total = self.store.list_workflow_executions(
            trigger_user_id=user_id,
            workflow_definition_id=workflow_definition_id,
            workflow_version_id=workflow_version_id,
            status=status,
            trigger_type=trigger_type,
            source_execution_id=source_execution_id,
            page=page,
            page_size=page_size,
        )
        return {
            "data": items,
            "total": total,
            "page": page,
            "pageSize": page_size,
            "totalPages": -(-total // page_size),
        }

    def list_node_executions(self, user_id: str, execution_id: str) -> List[NodeExecution]:
        self._owned_execution(user_id, execution_id)
        return self.store.list_node_executions(execution_id)

    def timeline(
        self,
        user_id: str,
        execution_id: str,
        event_type: Optional[str] = None,
        level: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[WorkflowRuntimeEvent]:
        self._owned_execution(user_id, execution_id)
        limit = self.timeline_default_limit if limit is None else max(1, min(limit, 1000))
        return self.store.list_runtime_events(
            execution_id, event_type=event_type, level=level, limit=limit
        )

    def replay(self, execution_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Return the stored replay bundle, re-assembling it when none was stored."""

        if user_id is not None:
            execution = self._owned_execution(user_id, execution_id)
        else:
            execution = self.store.get_workflow_execution(execution_id)
            if not execution:
                raise NotFoundError("execution not found", detail={"execution_id": execution_id})
        bundle = (execution.output_snapshot or {}).get("replayBundle")
        if isinstance(bundle, dict):
            return bundle
        version = self.store.get_workflow_version(execution.workflow_version_id)
        if not version:
            raise NotFoundError(
                "workflow version not found",
                detail={"workflow_version_id": execution.workflow_version_id},
            )
        return self.replay_assembler.assemble(
            execution,
            version.dsl_snapshot,
            self.store.list_node_executions(execution_id),
            soft_failure_count=(execution.output_snapshot or {}).get("softFailureCount"),
        )

    # ------------------------------------------------------------------
    # Trigger
    # ------------------------------------------------------------------

    async def trigger(
        self,
        user_id: str,
        request: TriggerRequest | Mapping[str, Any],
        *,
        source_execution_id: Optional[str] = None,
        call_path: Tuple[str, ...] = (),
        subflow_depth: int = 0,
    ) -> WorkflowExecution:
        if not isinstance(request, TriggerRequest):
            request = TriggerRequest.model_validate(dict(request))
        trigger_type = request.trigger_type.upper()
        if trigger_type not in TRIGGER_TYPES:
            raise BadRequestError(f"unknown trigger type: {request.trigger_type}")
        definition = self.definitions.get_definition(user_id, request.workflow_definition_id)
        if not definition.is_active:
            raise BadRequestError(
                "workflow definition is inactive",
                detail={"workflow_definition_id": definition.id},
            )
        key = request.idempotency_key

        # duplicates are answered before routing so they never consume experiment traffic
        if key:
            version_hint = request.workflow_version_id
            if not version_hint and not request.experiment_id:
                published = self.store.get_published_version(definition.id)
                version_hint = published.id if published else None
            existing = self._find_idempotent(
                user_id, key, experiment_id=request.experiment_id, version_id=version_hint
            )
            if existing:
                self.logger.info("workflow_trigger_idempotent_hit", execution_id=existing.id, key=key)
                return existing

        routing: Optional[ExperimentRoutingContext] = None
        version_id = request.workflow_version_id
        if request.experiment_id:
            routing = self._route_experiment(request.experiment_id, definition.id)
            version_id = routing.version_id

        version = self.definitions.resolve_version(definition, version_id)
        prepared = prepare_dsl(version.dsl_snapshot)
        param_snapshot = self.snapshot_builder.build(user_id, prepared.canonical, request.param_snapshot)

        try:
            execution = self.store.create_workflow_execution(
                workflow_version_id=version.id,
                workflow_definition_id=definition.id,
                trigger_type=trigger_type,
                trigger_user_id=user_id,
                idempotency_key=key,
                param_snapshot=param_snapshot,
                trigger_snapshot=request.param_snapshot,
                source_execution_id=source_execution_id,
                experiment_id=routing.experiment_id if routing else None,
                experiment_variant=routing.variant if routing else None,
                subflow_depth=subflow_depth,
            )
        except ConstraintViolation as exc:
            if not exc.is_idempotency_collision:
                raise BadRequestError(exc.message, detail=exc.detail) from exc
            winner = self._find_idempotent(
                user_id,
                key,
                experiment_id=routing.experiment_id if routing else None,
                version_id=version.id,
            )
            if winner is None:
                raise InternalEngineError(
                    "idempotency collision reported without a winning execution",
                    detail={"idempotency_key": key},
                ) from exc
            self.logger.info("workflow_trigger_idempotent_collision", execution_id=winner.id, key=key)
            return winner

        with bind_execution_id(execution.id):
            return await self._run(
                execution,
                prepared,
                routing=routing,
                call_path=call_path,
                subflow_depth=subflow_depth,
            )

    def _route_experiment(self, experiment_id: str, definition_id: str) -> ExperimentRoutingContext:
        if self.experiments is None:
            raise BadRequestError("experiments are not enabled", detail={"experiment_id": experiment_id})
        experiment = self.store.get_experiment(experiment_id)
        if not experiment or experiment.workflow_definition_id != definition_id:
            raise BadRequestError(
                "experiment does not belong to the workflow definition",
                detail={"experiment_id": experiment_id},
            )
        return self.experiments.route_traffic(experiment_id)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def _callbacks(
        self,
        execution: WorkflowExecution,
        started: float,
        execution_timeout_ms: Optional[int],
        meta: Dict[str, Any],
    ) -> SchedulerCallbacks:
        execution_id = execution.id

        async def throw_if_canceled() -> None:
            current = self.store.get_workflow_execution(execution_id)
            if current is None:
                raise InternalEngineError(
                    "execution record disappeared while running",
                    detail={"execution_id": execution_id},
                )
            if current.status == "CANCELED":
                raise ExecutionCanceledError(current.error_message or "execution canceled")
            if execution_timeout_ms is not None:
                elapsed_ms = int((time.monotonic() - started) * 1000)
                if elapsed_ms > execution_timeout_ms:
                    raise ExecutionTimeoutError(
                        f"execution exceeded {execution_timeout_ms}ms",
                        detail={"elapsedMs": elapsed_ms},
                    )

        async def record_event(
            event_type: str,
            level: str,
            message: str,
            detail: Optional[Dict[str, Any]] = None,
            node_execution_id: Optional[str] = None,
        ) -> BestEffort:
            return self._record_event(
                execution_id,
                event_type,
                level,
                message,
                detail=detail,
                node_execution_id=node_execution_id,
            )

        async def persist_node_execution(**values: Any) -> NodeExecution:
            return self.store.create_node_execution(workflow_execution_id=execution_id, **values)

        def resolve_node_input(
            node: Mapping[str, Any],
            active_edges: List[Mapping[str, Any]],
            outputs_by_node: Mapping[str, Any],
        ) -> Dict[str, Any]:
            node_input = build_edge_input(active_edges, outputs_by_node)
            bindings = node.get("inputBindings")
            if not bindings:
                return node_input
            resolver = VariableResolver(
                ResolutionContext(
                    outputs_by_node={
                        k: v for k, v in outputs_by_node.items() if not (v or {}).get("skipped")
                    },
                    param_snapshot=execution.param_snapshot,
                    meta=meta,
                )
            )
            resolution = resolver.resolve_mapping(bindings)
            if resolution.unresolved:
                raise NodeInputUnresolvedError(
                    f"node {node['id']} has unresolved input bindings: {', '.join(resolution.unresolved)}",
                    detail={"nodeId": node["id"], "unresolved": resolution.unresolved},
                )
            # explicit bindings win over edge-derived fields
            return {**node_input, **resolution.resolved}

        async def execute_with_timeout(awaitable: Any, timeout_ms: int, message: str) -> Any:
            try:
                return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)
            except asyncio.TimeoutError as exc:
                self.logger.warning("workflow_node_timeout", timeout_ms=timeout_ms)
                raise NodeTimeoutError(message, detail={"timeoutMs": timeout_ms}) from exc

        async def sleep(ms: int) -> None:
            if ms > 0:
                await asyncio.sleep(ms / 1000)

        return SchedulerCallbacks(
            throw_if_canceled=throw_if_canceled,
            record_event=record_event,
            persist_node_execution=persist_node_execution,
            resolve_runtime_policy=resolve_runtime_policy,
            resolve_node_input=resolve_node_input,
            execute_with_timeout=execute_with_timeout,
            sleep=sleep,
            classify_failure=classify_failure,
        )

    @staticmethod
    def _summarize_rows(rows: List[NodeExecution], node_count: int) -> Dict[str, Any]:
        """Execution output summary rebuilt from persisted rows after an abort."""

        executed = [r for r in rows if r.status != "SKIPPED"]
        soft_failures = 0
        for row in rows:
            if row.status != "FAILED":
                continue
            meta = (row.output_snapshot or {}).get("_meta") or {}
            on_error = (meta.get("runtimePolicy") or {}).get("onError")
            if on_error != ON_ERROR_FAIL_FAST:
                soft_failures += 1
        latest = rows[-1] if rows else None
        return {
            "nodeCount": node_count,
            "executedNodeCount": len(executed),
            "latestNodeId": latest.node_id if latest else None,
            "latestNodeType": latest.node_type if latest else None,
            "softFailureCount": soft_failures,
        }

    @staticmethod
    def _summarize_result(result: RunResult, node_count: int) -> Dict[str, Any]:
        latest = result.latest_node or {}
        return {
            "nodeCount": node_count,
            "executedNodeCount": result.executed_node_count,
            "latestNodeId": latest.get("id"),
            "latestNodeType": latest.get("type"),
            "softFailureCount": result.soft_failure_count,
        }

    async def _run(
        self,
        execution: WorkflowExecution,
        prepared: PreparedDsl,
        *,
        routing: Optional[ExperimentRoutingContext],
        call_path: Tuple[str, ...],
        subflow_depth: int,
    ) -> WorkflowExecution:
        started = time.monotonic()
        run_policy = prepared.run_policy
        raw_timeout = run_policy.get("executionTimeoutMs")
        execution_timeout_ms = (
            raw_timeout
            if isinstance(raw_timeout, int) and not isinstance(raw_timeout, bool) and raw_timeout > 0
            else None
        )
        meta = {
            "executionId": execution.id,
            "workflowDefinitionId": execution.workflow_definition_id,
            "workflowVersionId": execution.workflow_version_id,
            "triggerUserId": execution.trigger_user_id,
            "triggerType": execution.trigger_type,
            "subflowDepth": subflow_depth,
        }
        callbacks = self._callbacks(execution, started, execution_timeout_ms, meta)
        scope = ExecutionScope(
            execution_id=execution.id,
            trigger_user_id=execution.trigger_user_id,
            param_snapshot=execution.param_snapshot,
            workflow_definition_id=execution.workflow_definition_id,
            call_path=call_path,
            subflow_depth=subflow_depth,
            mode=prepared.mode,
            debate_traces=self.debate_traces if prepared.mode == "DEBATE" else None,
        )
        evaluator = EdgeEvaluator(param_snapshot=execution.param_snapshot, meta=meta)
        node_count = len(prepared.nodes)
        self._record_event(
            execution.id,
            "EXECUTION_STARTED",
            "INFO",
            f"execution started in {prepared.mode} mode",
            detail={
                "mode": prepared.mode,
                "nodeCount": node_count,
                "fingerprint": prepared.fingerprint,
                "subflowDepth": subflow_depth,
                "unresolvedBindings": execution.param_snapshot.get("unresolvedBindings") or [],
            },
        )
        self.logger.info("workflow_execution_started", mode=prepared.mode, nodes=node_count)

        status, error_message, failure_category, failure_code = "SUCCESS", None, None, None
        output: Dict[str, Any]
        try:
            if prepared.mode == "DAG":
                result = await self.dag_scheduler.execute(
                    nodes=prepared.nodes,
                    edges=prepared.edges,
                    scope=scope,
                    callbacks=callbacks,
                    evaluator=evaluator,
                    run_policy=run_policy,
                )
            else:
                runner = NodeRunner(self.registry, callbacks, scope, run_policy)
                result = await run_linear(
                    nodes=prepared.nodes,
                    edges=prepared.edges,
                    runner=runner,
                    evaluator=evaluator,
                )
            await callbacks.throw_if_canceled()
            output = self._summarize_result(result, node_count)
        except ExecutionCanceledError as exc:
            status = "CANCELED"
            error_message, failure_category, failure_code = exc.message, exc.failure_category, exc.failure_code
            output = self._summarize_rows(self.store.list_node_executions(execution.id), node_count)
        except Exception as exc:
            classification = classify_failure(exc)
            status = "FAILED"
            error_message = classification.message
            failure_category, failure_code = classification.failure_category, classification.failure_code
            output = self._summarize_rows(self.store.list_node_executions(execution.id), node_count)
            self.logger.error(
                "workflow_execution_failed",
                failure_category=failure_category,
                failure_code=failure_code,
                error=error_message,
            )

        finished = self.store.finish_workflow_execution(
            execution.id,
            status=status,
            error_message=error_message,
            failure_category=failure_category,
            failure_code=failure_code,
            output_snapshot=output,
        )
        if finished is None:
            # cancel() already wrote the terminal row; keep its status and add the summary
            finished = self.store.merge_execution_output(execution.id, output)
            if finished is None:
                raise InternalEngineError(
                    "execution record disappeared before finalization",
                    detail={"execution_id": execution.id},
                )
        else:
            self._record_event(
                execution.id,
                f"EXECUTION_{status}",
                "INFO" if status == "SUCCESS" else "ERROR",
                error_message or "execution finished",
                detail={**output, "failureCategory": failure_category, "failureCode": failure_code},
            )

        rows = self.store.list_node_executions(execution.id)
        log_execution_trace(
            [{"node": r.node_id, "status": r.status, "durationMs": r.duration_ms} for r in rows],
            logger=self.logger,
        )
        self._assemble_replay(finished, prepared, rows)
        if routing is not None:
            self._record_experiment_outcome(finished, routing, started)

        finished = self.store.get_workflow_execution(execution.id) or finished
        self.logger.info(
            "workflow_execution_finished",
            status=finished.status,
            soft_failures=(finished.output_snapshot or {}).get("softFailureCount"),
        )
        if finished.status == "FAILED":
            raise WorkflowExecutionFailed(
                finished.error_message or "workflow execution failed",
                execution_id=finished.id,
                failure_category=finished.failure_category,
                failure_code=finished.failure_code,
            )
        return finished

    def _assemble_replay(
        self, execution: WorkflowExecution, prepared: PreparedDsl, rows: List[NodeExecution]
    ) -> BestEffort:
        try:
            bundle = self.replay_assembler.assemble(
                execution,
                prepared.canonical,
                rows,
                soft_failure_count=(execution.output_snapshot or {}).get("softFailureCount"),
            )
            self.store.merge_execution_output(execution.id, {"replayBundle": bundle})
        except Exception as exc:
            self.logger.warning("workflow_replay_assembly_failed", error=str(exc))
            self._record_event(
                execution.id,
                "REPLAY_ASSEMBLY_FAILED",
                "WARN",
                f"replay assembly failed: {exc}",
            )
            return BestEffort(ok=False, error=str(exc))
        return BestEffort(ok=True, value=bundle)

    def _record_experiment_outcome(
        self, execution: WorkflowExecution, routing: ExperimentRoutingContext, started: float
    ) -> BestEffort:
        try:
            recorded = self.experiments.record_metrics(
                routing.experiment_id,
                variant=routing.variant,
                success=execution.status == "SUCCESS",
                duration_ms=max(0, int((time.monotonic() - started) * 1000)),
                node_count=(execution.output_snapshot or {}).get("executedNodeCount", 0),
                failure_category=execution.failure_category,
                execution_id=execution.id,
            )
        except Exception as exc:
            message = getattr(exc, "message", str(exc))
            self.logger.warning(
                "workflow_experiment_record_failed",
                experiment_id=routing.experiment_id,
                error=message,
            )
            self._record_event(
                execution.id,
                "EXPERIMENT_RECORD_FAILED",
                "WARN",
                f"experiment outcome not recorded: {message}",
                detail={"experimentId": routing.experiment_id, "variant": routing.variant},
            )
            return BestEffort(ok=False, error=message)
        return BestEffort(ok=True, value=recorded)

    # ------------------------------------------------------------------
    # Cancel and rerun
    # ------------------------------------------------------------------

    def cancel(self, user_id: str, execution_id: str, reason: Optional[str] = None) -> WorkflowExecution:
        """Mark a RUNNING execution CANCELED; the run observes it at its next check."""

        execution = self._owned_execution(user_id, execution_id)
        if execution.is_terminal:
            raise ConflictError(
                f"execution already finished with status {execution.status}",
                detail={"execution_id": execution_id, "status": execution.status},
            )
        reason = reason or "execution canceled by user"
        canceled = self.store.finish_workflow_execution(
            execution_id,
            status="CANCELED",
            error_message=reason,
            failure_category=ExecutionCanceledError.failure_category,
            failure_code=ExecutionCanceledError.failure_code,
        )
        if canceled is None:
            raise ConflictError("execution finished before it could be canceled", detail={"execution_id": execution_id})
        self._record_event(
            execution_id,
            "EXECUTION_CANCELED",
            "WARN",
            reason,
            detail={"canceledBy": user_id},
        )
        self.logger.info("workflow_execution_canceled", execution_id=execution_id, user_id=user_id)
        return canceled

    async def rerun(self, user_id: str, execution_id: str) -> WorkflowExecution:
        """Trigger a fresh execution of a FAILED one on the same version and caller payload."""

        source = self._owned_execution(user_id, execution_id)
        if source.status != "FAILED":
            raise BadRequestError(
                "only FAILED executions can be rerun",
                detail={"execution_id": execution_id, "status": source.status},
            )
        request = TriggerRequest(
            workflow_definition_id=source.workflow_definition_id,
            workflow_version_id=source.workflow_version_id,
            trigger_type=source.trigger_type,
            param_snapshot=source.trigger_snapshot or {},
        )
        return await self.trigger(user_id, request, source_execution_id=source.id)


__all__ = ["WorkflowExecutionService", "TriggerRequest", "BestEffort", "TRIGGER_TYPES"]
