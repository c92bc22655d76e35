from __future__ import annotations

import copy
import json
import threading
from dataclasses import asdict, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type

from flowloom.logging import get_logger
from flowloom.storage.errors import (
    IDEMPOTENCY_BY_EXPERIMENT,
    IDEMPOTENCY_BY_VERSION,
    NODE_EXECUTION_ONCE,
    ConstraintViolation,
)
from flowloom.storage.models import (
    CatalogRecord,
    DebateRoundTrace,
    ExperimentRun,
    NodeExecution,
    ParameterItem,
    ParameterSet,
    UserConfigBinding,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowExperiment,
    WorkflowRuntimeEvent,
    WorkflowVersion,
    new_id,
)

TERMINAL_EXECUTION_STATUSES = frozenset({"SUCCESS", "FAILED", "CANCELED"})

# collection name -> record type, in the order they are written to disk
_COLLECTIONS: Tuple[Tuple[str, Type], ...] = (
    ("definitions", WorkflowDefinition),
    ("versions", WorkflowVersion),
    ("executions", WorkflowExecution),
    ("node_executions", NodeExecution),
    ("runtime_events", WorkflowRuntimeEvent),
    ("parameter_sets", ParameterSet),
    ("parameter_items", ParameterItem),
    ("catalog", CatalogRecord),
    ("config_bindings", UserConfigBinding),
    ("experiments", WorkflowExperiment),
    ("experiment_runs", ExperimentRun),
    ("debate_traces", DebateRoundTrace),
)


class MemoryStore:
    """Thread-safe in-memory durable store for the execution engine.

    Every collection is a dict keyed by record id. Unique indexes are checked
    under ``_data_lock`` and reported as ``ConstraintViolation`` so callers
    can treat this store like a relational backend with unique constraints.
    When ``state_path`` is given the whole state is snapshotted to JSON after
    each write and reloaded on construction.
    """

    def __init__(self, state_path: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.definitions: Dict[str, WorkflowDefinition] = {}
        self.versions: Dict[str, WorkflowVersion] = {}
        self.executions: Dict[str, WorkflowExecution] = {}
        self.node_executions: Dict[str, NodeExecution] = {}
        self.runtime_events: Dict[str, WorkflowRuntimeEvent] = {}
        self.parameter_sets: Dict[str, ParameterSet] = {}
        self.parameter_items: Dict[str, ParameterItem] = {}
        self.catalog: Dict[str, CatalogRecord] = {}
        self.config_bindings: Dict[str, UserConfigBinding] = {}
        self.experiments: Dict[str, WorkflowExperiment] = {}
        self.experiment_runs: Dict[str, ExperimentRun] = {}
        self.debate_traces: Dict[str, DebateRoundTrace] = {}
        # RLock for all data operations; nested acquisitions within one thread are allowed
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path is not None:
            self._load_state()

    # ------------------------------------------------------------------
    # Workflow definitions and versions
    # ------------------------------------------------------------------

    def create_workflow_definition(
        self,
        workflow_code: str,
        name: str,
        owner_user_id: str,
        *,
        mode: str = "LINEAR",
        template_source: str = "PRIVATE",
        meta: Optional[Dict] = None,
    ) -> WorkflowDefinition:
        with self._data_lock:
            if any(d.workflow_code == workflow_code for d in self.definitions.values()):
                raise ConstraintViolation(
                    "workflow code already exists", {"workflow_code": workflow_code}
                )
            definition = WorkflowDefinition(
                id=new_id(),
                workflow_code=workflow_code,
                name=name,
                owner_user_id=owner_user_id,
                mode=mode,
                template_source=template_source,
                meta=meta or {},
            )
            self.definitions[definition.id] = definition
            self._persist_state()
            return definition

    def get_workflow_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        with self._data_lock:
            return self.definitions.get(definition_id)

    def create_workflow_version(
        self,
        workflow_definition_id: str,
        version_code: str,
        dsl_snapshot: dict,
        created_by_user_id: str,
        *,
        dsl_fingerprint: Optional[str] = None,
        changelog: Optional[str] = None,
    ) -> WorkflowVersion:
        with self._data_lock:
            if workflow_definition_id not in self.definitions:
                raise ConstraintViolation(
                    "workflow definition missing",
                    {"workflow_definition_id": workflow_definition_id},
                )
            for existing in self.versions.values():
                if (
                    existing.workflow_definition_id == workflow_definition_id
                    and existing.version_code == version_code
                ):
                    raise ConstraintViolation(
                        "version code already exists",
                        {"workflow_definition_id": workflow_definition_id, "version_code": version_code},
                    )
            version = WorkflowVersion(
                id=new_id(),
                workflow_definition_id=workflow_definition_id,
                version_code=version_code,
                dsl_snapshot=copy.deepcopy(dsl_snapshot),
                created_by_user_id=created_by_user_id,
                dsl_fingerprint=dsl_fingerprint,
                changelog=changelog,
            )
            self.versions[version.id] = version
            self._persist_state()
            return version

    def get_workflow_version(self, version_id: str) -> Optional[WorkflowVersion]:
        with self._data_lock:
            return self.versions.get(version_id)

    def list_workflow_versions(self, workflow_definition_id: str) -> List[WorkflowVersion]:
        with self._data_lock:
            versions = [
                v for v in self.versions.values()
                if v.workflow_definition_id == workflow_definition_id
            ]
        return sorted(versions, key=lambda v: v.created_at)

    def get_published_version(self, workflow_definition_id: str) -> Optional[WorkflowVersion]:
        published = [
            v for v in self.list_workflow_versions(workflow_definition_id)
            if v.status == "PUBLISHED"
        ]
        return published[-1] if published else None

    def publish_workflow_version(self, version_id: str) -> Optional[WorkflowVersion]:
        """Mark ``version_id`` published and archive the previously published one."""
        with self._data_lock:
            version = self.versions.get(version_id)
            if not version:
                return None
            for other in self.versions.values():
                if (
                    other.workflow_definition_id == version.workflow_definition_id
                    and other.status == "PUBLISHED"
                    and other.id != version.id
                ):
                    other.status = "ARCHIVED"
            version.status = "PUBLISHED"
            version.published_at = datetime.utcnow()
            definition = self.definitions.get(version.workflow_definition_id)
            if definition:
                definition.updated_at = datetime.utcnow()
            self._persist_state()
            return version

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def create_workflow_execution(
        self,
        *,
        workflow_version_id: str,
        workflow_definition_id: str,
        trigger_type: str,
        trigger_user_id: str,
        idempotency_key: Optional[str] = None,
        param_snapshot: Optional[Dict[str, Any]] = None,
        trigger_snapshot: Optional[Dict[str, Any]] = None,
        source_execution_id: Optional[str] = None,
        experiment_id: Optional[str] = None,
        experiment_variant: Optional[str] = None,
        subflow_depth: int = 0,
    ) -> WorkflowExecution:
        with self._data_lock:
            if workflow_version_id not in self.versions:
                raise ConstraintViolation(
                    "workflow version missing", {"workflow_version_id": workflow_version_id}
                )
            if idempotency_key:
                if experiment_id:
                    winner = self._find_by_experiment_key(
                        experiment_id, trigger_user_id, idempotency_key
                    )
                    constraint = IDEMPOTENCY_BY_EXPERIMENT
                else:
                    winner = self._find_by_version_key(
                        workflow_version_id, trigger_user_id, idempotency_key
                    )
                    constraint = IDEMPOTENCY_BY_VERSION
                if winner:
                    raise ConstraintViolation(
                        "idempotency key already used",
                        {"execution_id": winner.id, "idempotency_key": idempotency_key},
                        constraint=constraint,
                    )
            execution = WorkflowExecution(
                id=new_id(),
                workflow_version_id=workflow_version_id,
                workflow_definition_id=workflow_definition_id,
                trigger_type=trigger_type,
                trigger_user_id=trigger_user_id,
                idempotency_key=idempotency_key,
                param_snapshot=copy.deepcopy(param_snapshot or {}),
                trigger_snapshot=copy.deepcopy(trigger_snapshot or {}),
                source_execution_id=source_execution_id,
                experiment_id=experiment_id,
                experiment_variant=experiment_variant,
                subflow_depth=subflow_depth,
            )
            self.executions[execution.id] = execution
            self._persist_state()
            return execution

    def get_workflow_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        with self._data_lock:
            return self.executions.get(execution_id)

    def _find_by_version_key(
        self, version_id: str, user_id: str, key: str
    ) -> Optional[WorkflowExecution]:
        for execution in self.executions.values():
            if (
                execution.workflow_version_id == version_id
                and execution.trigger_user_id == user_id
                and execution.idempotency_key == key
                and execution.experiment_id is None
            ):
                return execution
        return None

    def _find_by_experiment_key(
        self, experiment_id: str, user_id: str, key: str
    ) -> Optional[WorkflowExecution]:
        for execution in self.executions.values():
            if (
                execution.experiment_id == experiment_id
                and execution.trigger_user_id == user_id
                and execution.idempotency_key == key
            ):
                return execution
        return None

    def find_execution_by_idempotency(
        self, workflow_version_id: str, trigger_user_id: str, idempotency_key: str
    ) -> Optional[WorkflowExecution]:
        with self._data_lock:
            return self._find_by_version_key(workflow_version_id, trigger_user_id, idempotency_key)

    def find_execution_by_experiment_idempotency(
        self, experiment_id: str, trigger_user_id: str, idempotency_key: str
    ) -> Optional[WorkflowExecution]:
        with self._data_lock:
            return self._find_by_experiment_key(experiment_id, trigger_user_id, idempotency_key)

    def finish_workflow_execution(
        self,
        execution_id: str,
        *,
        status: str,
        error_message: Optional[str] = None,
        failure_category: Optional[str] = None,
        failure_code: Optional[str] = None,
        output_snapshot: Optional[Dict[str, Any]] = None,
    ) -> Optional[WorkflowExecution]:
        """Move a RUNNING execution to a terminal status.

        Returns None when the execution is missing or already terminal; the
        first terminal write wins.
        """
        if status not in TERMINAL_EXECUTION_STATUSES:
            raise ValueError(f"not a terminal status: {status}")
        with self._data_lock:
            execution = self.executions.get(execution_id)
            if not execution or execution.status != "RUNNING":
                return None
            execution.status = status
            execution.completed_at = datetime.utcnow()
            execution.error_message = error_message
            execution.failure_category = failure_category
            execution.failure_code = failure_code
            if output_snapshot is not None:
                execution.output_snapshot = copy.deepcopy(output_snapshot)
            self._persist_state()
            return execution

    def merge_execution_output(
        self, execution_id: str, patch: Dict[str, Any]
    ) -> Optional[WorkflowExecution]:
        with self._data_lock:
            execution = self.executions.get(execution_id)
            if not execution:
                return None
            merged = dict(execution.output_snapshot or {})
            merged.update(copy.deepcopy(patch))
            execution.output_snapshot = merged
            self._persist_state()
            return execution

    def list_workflow_executions(
        self,
        *,
        trigger_user_id: Optional[str] = None,
        workflow_definition_id: Optional[str] = None,
        workflow_version_id: Optional[str] = None,
        status: Optional[str] = None,
        trigger_type: Optional[str] = None,
        source_execution_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[WorkflowExecution], int]:
        with self._data_lock:
            items = list(self.executions.values())
        if trigger_user_id:
            items = [e for e in items if e.trigger_user_id == trigger_user_id]
        if workflow_definition_id:
            items = [e for e in items if e.workflow_definition_id == workflow_definition_id]
        if workflow_version_id:
            items = [e for e in items if e.workflow_version_id == workflow_version_id]
        if status:
            items = [e for e in items if e.status == status]
        if trigger_type:
            items = [e for e in items if e.trigger_type == trigger_type]
        if source_execution_id:
            items = [e for e in items if e.source_execution_id == source_execution_id]
        items.sort(key=lambda e: e.created_at, reverse=True)
        page = max(page, 1)
        page_size = max(page_size, 1)
        start = (page - 1) * page_size
        return items[start : start + page_size], len(items)

    # ------------------------------------------------------------------
    # Node executions and runtime events
    # ------------------------------------------------------------------

    def create_node_execution(
        self,
        *,
        workflow_execution_id: str,
        node_id: str,
        node_type: str,
        status: str,
        started_at: datetime,
        completed_at: datetime,
        duration_ms: int,
        error_message: Optional[str] = None,
        failure_category: Optional[str] = None,
        failure_code: Optional[str] = None,
        input_snapshot: Optional[Dict[str, Any]] = None,
        output_snapshot: Optional[Dict[str, Any]] = None,
    ) -> NodeExecution:
        with self._data_lock:
            if workflow_execution_id not in self.executions:
                raise ConstraintViolation(
                    "execution missing", {"workflow_execution_id": workflow_execution_id}
                )
            for existing in self.node_executions.values():
                if existing.workflow_execution_id == workflow_execution_id and existing.node_id == node_id:
                    raise ConstraintViolation(
                        "node already recorded for execution",
                        {"workflow_execution_id": workflow_execution_id, "node_id": node_id},
                        constraint=NODE_EXECUTION_ONCE,
                    )
            record = NodeExecution(
                id=new_id(),
                workflow_execution_id=workflow_execution_id,
                node_id=node_id,
                node_type=node_type,
                status=status,
                started_at=started_at,
                completed_at=completed_at,
                duration_ms=duration_ms,
                error_message=error_message,
                failure_category=failure_category,
                failure_code=failure_code,
                input_snapshot=copy.deepcopy(input_snapshot or {}),
                output_snapshot=copy.deepcopy(output_snapshot or {}),
            )
            self.node_executions[record.id] = record
            self._persist_state()
            return record

    def list_node_executions(self, workflow_execution_id: str) -> List[NodeExecution]:
        # dict preserves insertion order, which is the write order
        with self._data_lock:
            return [
                r for r in self.node_executions.values()
                if r.workflow_execution_id == workflow_execution_id
            ]

    def append_runtime_event(
        self,
        workflow_execution_id: str,
        event_type: str,
        level: str,
        message: str,
        *,
        detail: Optional[Dict[str, Any]] = None,
        node_execution_id: Optional[str] = None,
    ) -> WorkflowRuntimeEvent:
        with self._data_lock:
            if workflow_execution_id not in self.executions:
                raise ConstraintViolation(
                    "execution missing", {"workflow_execution_id": workflow_execution_id}
                )
            event = WorkflowRuntimeEvent(
                id=new_id(),
                workflow_execution_id=workflow_execution_id,
                event_type=event_type,
                level=level,
                message=message,
                detail=copy.deepcopy(detail or {}),
                node_execution_id=node_execution_id,
            )
            self.runtime_events[event.id] = event
            self._persist_state()
            return event

    def list_runtime_events(
        self,
        workflow_execution_id: str,
        *,
        event_type: Optional[str] = None,
        level: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[WorkflowRuntimeEvent]:
        with self._data_lock:
            events = [
                e for e in self.runtime_events.values()
                if e.workflow_execution_id == workflow_execution_id
            ]
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        if level:
            events = [e for e in events if e.level == level]
        if limit is not None:
            events = events[: max(limit, 0)]
        return events

    # ------------------------------------------------------------------
    # Parameter sets and catalog
    # ------------------------------------------------------------------

    def create_parameter_set(
        self,
        set_code: str,
        name: str,
        owner_user_id: str,
        *,
        template_source: str = "PRIVATE",
    ) -> ParameterSet:
        with self._data_lock:
            if any(s.set_code == set_code for s in self.parameter_sets.values()):
                raise ConstraintViolation("set code already exists", {"set_code": set_code})
            param_set = ParameterSet(
                id=new_id(),
                set_code=set_code,
                name=name,
                owner_user_id=owner_user_id,
                template_source=template_source,
            )
            self.parameter_sets[param_set.id] = param_set
            self._persist_state()
            return param_set

    def get_parameter_set(self, set_id: str) -> Optional[ParameterSet]:
        with self._data_lock:
            return self.parameter_sets.get(set_id)

    def find_parameter_set_by_code(self, set_code: str) -> Optional[ParameterSet]:
        with self._data_lock:
            return next(
                (s for s in self.parameter_sets.values() if s.set_code == set_code), None
            )

    def deactivate_parameter_set(self, set_id: str) -> Optional[ParameterSet]:
        with self._data_lock:
            param_set = self.parameter_sets.get(set_id)
            if not param_set:
                return None
            param_set.is_active = False
            param_set.updated_at = datetime.utcnow()
            self._persist_state()
            return param_set

    def add_parameter_item(
        self,
        parameter_set_id: str,
        param_code: str,
        *,
        value: Any = None,
        default_value: Any = None,
        param_name: Optional[str] = None,
        param_type: str = "string",
        scope_level: str = "GLOBAL",
        scope_value: Optional[str] = None,
        effective_from: Optional[datetime] = None,
        effective_to: Optional[datetime] = None,
    ) -> ParameterItem:
        with self._data_lock:
            param_set = self.parameter_sets.get(parameter_set_id)
            if not param_set:
                raise ConstraintViolation(
                    "parameter set missing", {"parameter_set_id": parameter_set_id}
                )
            for existing in self.parameter_items.values():
                if (
                    existing.parameter_set_id == parameter_set_id
                    and existing.param_code == param_code
                    and existing.scope_level == scope_level
                    and existing.scope_value == scope_value
                ):
                    raise ConstraintViolation(
                        "parameter item already exists for scope",
                        {"param_code": param_code, "scope_level": scope_level},
                    )
            item = ParameterItem(
                id=new_id(),
                parameter_set_id=parameter_set_id,
                param_code=param_code,
                value=copy.deepcopy(value),
                default_value=copy.deepcopy(default_value),
                param_name=param_name,
                param_type=param_type,
                scope_level=scope_level,
                scope_value=scope_value,
                effective_from=effective_from,
                effective_to=effective_to,
            )
            self.parameter_items[item.id] = item
            param_set.version += 1
            param_set.updated_at = datetime.utcnow()
            self._persist_state()
            return item

    def deactivate_parameter_item(self, parameter_set_id: str, item_id: str) -> Optional[ParameterItem]:
        with self._data_lock:
            item = self.parameter_items.get(item_id)
            if not item or item.parameter_set_id != parameter_set_id:
                return None
            item.is_active = False
            param_set = self.parameter_sets.get(parameter_set_id)
            if param_set:
                param_set.version += 1
                param_set.updated_at = datetime.utcnow()
            self._persist_state()
            return item

    def list_parameter_items(self, parameter_set_id: str) -> List[ParameterItem]:
        with self._data_lock:
            return [
                i for i in self.parameter_items.values()
                if i.parameter_set_id == parameter_set_id
            ]

    def create_catalog_record(
        self,
        kind: str,
        code: str,
        name: str,
        owner_user_id: str,
        *,
        template_source: str = "PRIVATE",
        config: Optional[Dict[str, Any]] = None,
    ) -> CatalogRecord:
        with self._data_lock:
            if any(r.kind == kind and r.code == code for r in self.catalog.values()):
                raise ConstraintViolation("catalog code already exists", {"kind": kind, "code": code})
            record = CatalogRecord(
                id=new_id(),
                kind=kind,
                code=code,
                name=name,
                owner_user_id=owner_user_id,
                template_source=template_source,
                config=copy.deepcopy(config or {}),
            )
            self.catalog[record.id] = record
            self._persist_state()
            return record

    def get_catalog_record(self, kind: str, record_id: str) -> Optional[CatalogRecord]:
        with self._data_lock:
            record = self.catalog.get(record_id)
        if record and record.kind == kind:
            return record
        return None

    def find_catalog_record(self, kind: str, code: str) -> Optional[CatalogRecord]:
        with self._data_lock:
            return next(
                (r for r in self.catalog.values() if r.kind == kind and r.code == code), None
            )

    def create_config_binding(
        self,
        user_id: str,
        binding_type: str,
        target_id: str,
        *,
        priority: int = 100,
    ) -> UserConfigBinding:
        with self._data_lock:
            binding = UserConfigBinding(
                id=new_id(),
                user_id=user_id,
                binding_type=binding_type,
                target_id=target_id,
                priority=priority,
            )
            self.config_bindings[binding.id] = binding
            self._persist_state()
            return binding

    def list_config_bindings(
        self, user_id: str, *, active_only: bool = True
    ) -> List[UserConfigBinding]:
        with self._data_lock:
            bindings = [b for b in self.config_bindings.values() if b.user_id == user_id]
        if active_only:
            bindings = [b for b in bindings if b.is_active]
        return sorted(bindings, key=lambda b: (b.priority, b.created_at))

    # ------------------------------------------------------------------
    # Experiments
    # ------------------------------------------------------------------

    def create_experiment(self, **values: Any) -> WorkflowExperiment:
        with self._data_lock:
            code = values.get("experiment_code")
            if any(e.experiment_code == code for e in self.experiments.values()):
                raise ConstraintViolation("experiment code already exists", {"experiment_code": code})
            experiment = WorkflowExperiment(id=new_id(), **values)
            self.experiments[experiment.id] = experiment
            self._persist_state()
            return experiment

    def get_experiment(self, experiment_id: str) -> Optional[WorkflowExperiment]:
        with self._data_lock:
            return self.experiments.get(experiment_id)

    def update_experiment(self, experiment_id: str, **changes: Any) -> Optional[WorkflowExperiment]:
        with self._data_lock:
            experiment = self.experiments.get(experiment_id)
            if not experiment:
                return None
            updated = replace(experiment, **changes)
            self.experiments[experiment_id] = updated
            self._persist_state()
            return updated

    def increment_experiment_counter(
        self, experiment_id: str, variant: str
    ) -> Optional[WorkflowExperiment]:
        with self._data_lock:
            experiment = self.experiments.get(experiment_id)
            if not experiment:
                return None
            if variant == "A":
                experiment.current_executions_a += 1
            else:
                experiment.current_executions_b += 1
            self._persist_state()
            return experiment

    def append_experiment_run(self, **values: Any) -> ExperimentRun:
        with self._data_lock:
            if values.get("experiment_id") not in self.experiments:
                raise ConstraintViolation(
                    "experiment missing", {"experiment_id": values.get("experiment_id")}
                )
            run = ExperimentRun(id=new_id(), **values)
            self.experiment_runs[run.id] = run
            self._persist_state()
            return run

    def list_experiment_runs(
        self,
        experiment_id: str,
        *,
        variant: Optional[str] = None,
        success: Optional[bool] = None,
    ) -> List[ExperimentRun]:
        with self._data_lock:
            runs = [r for r in self.experiment_runs.values() if r.experiment_id == experiment_id]
        if variant:
            runs = [r for r in runs if r.variant == variant]
        if success is not None:
            runs = [r for r in runs if r.success == success]
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    # ------------------------------------------------------------------
    # Debate traces
    # ------------------------------------------------------------------

    def append_debate_traces(self, traces: Iterable[Dict[str, Any]]) -> int:
        with self._data_lock:
            created = 0
            for values in traces:
                execution_id = values.get("workflow_execution_id")
                if execution_id not in self.executions:
                    raise ConstraintViolation(
                        "execution missing", {"workflow_execution_id": execution_id}
                    )
                trace = DebateRoundTrace(id=new_id(), **values)
                self.debate_traces[trace.id] = trace
                created += 1
            self._persist_state()
            return created

    def list_debate_traces(
        self,
        workflow_execution_id: str,
        *,
        round_number: Optional[int] = None,
        participant_code: Optional[str] = None,
        is_judgement: Optional[bool] = None,
    ) -> List[DebateRoundTrace]:
        with self._data_lock:
            traces = [
                t for t in self.debate_traces.values()
                if t.workflow_execution_id == workflow_execution_id
            ]
        if round_number is not None:
            traces = [t for t in traces if t.round_number == round_number]
        if participant_code:
            traces = [t for t in traces if t.participant_code == participant_code]
        if is_judgement is not None:
            traces = [t for t in traces if t.is_judgement == is_judgement]
        return sorted(traces, key=lambda t: (t.round_number, t.created_at))

    # ------------------------------------------------------------------
    # State persistence
    # ------------------------------------------------------------------

    @staticmethod
    def _serialize_record(record: Any) -> dict:
        data = asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize_record(record_type: Type, data: dict) -> Any:
        values = {}
        for f in fields(record_type):
            if f.name not in data:
                continue
            raw = data[f.name]
            if raw is not None and "datetime" in str(f.type):
                raw = datetime.fromisoformat(raw)
            values[f.name] = raw
        return record_type(**values)

    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        state = {
            name: [self._serialize_record(r) for r in getattr(self, name).values()]
            for name, _ in _COLLECTIONS
        }
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.state_path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(state, indent=2, default=str))
            tmp_path.replace(self.state_path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self.state_path
        if path is None or not path.exists():
            return False
        try:
            state = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.error("memory_store_load_failed", error=str(exc), path=str(path))
            return False
        for name, record_type in _COLLECTIONS:
            collection: Dict[str, Any] = getattr(self, name)
            for raw in state.get(name, []):
                record = self._deserialize_record(record_type, raw)
                collection[record.id] = record
        self.logger.info(
            "memory_store_loaded",
            path=str(path),
            executions=len(self.executions),
            versions=len(self.versions),
        )
        return True
