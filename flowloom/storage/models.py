from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class WorkflowDefinition:
    id: str
    workflow_code: str
    name: str
    owner_user_id: str
    mode: str = "LINEAR"
    template_source: str = "PRIVATE"
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    meta: Dict | None = None


@dataclass
class WorkflowVersion:
    id: str
    workflow_definition_id: str
    version_code: str
    dsl_snapshot: dict
    created_by_user_id: str
    status: str = "DRAFT"
    dsl_fingerprint: Optional[str] = None
    changelog: Optional[str] = None
    published_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class WorkflowExecution:
    id: str
    workflow_version_id: str
    workflow_definition_id: str
    trigger_type: str
    trigger_user_id: str
    status: str = "RUNNING"
    idempotency_key: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    failure_category: Optional[str] = None
    failure_code: Optional[str] = None
    param_snapshot: Dict[str, Any] = field(default_factory=dict)
    output_snapshot: Dict[str, Any] = field(default_factory=dict)
    # caller payload before binding resolution; rerun replays it
    trigger_snapshot: Dict[str, Any] = field(default_factory=dict)
    source_execution_id: Optional[str] = None
    experiment_id: Optional[str] = None
    experiment_variant: Optional[str] = None
    subflow_depth: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in {"SUCCESS", "FAILED", "CANCELED"}


@dataclass
class NodeExecution:
    id: str
    workflow_execution_id: str
    node_id: str
    node_type: str
    status: str
    started_at: datetime
    completed_at: datetime
    duration_ms: int = 0
    error_message: Optional[str] = None
    failure_category: Optional[str] = None
    failure_code: Optional[str] = None
    input_snapshot: Dict[str, Any] = field(default_factory=dict)
    output_snapshot: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class WorkflowRuntimeEvent:
    id: str
    workflow_execution_id: str
    event_type: str
    level: str
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)
    node_execution_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ParameterSet:
    id: str
    set_code: str
    name: str
    owner_user_id: str
    template_source: str = "PRIVATE"
    is_active: bool = True
    version: int = 1
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ParameterItem:
    id: str
    parameter_set_id: str
    param_code: str
    value: Any = None
    default_value: Any = None
    param_name: Optional[str] = None
    param_type: str = "string"
    scope_level: str = "GLOBAL"
    scope_value: Optional[str] = None
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class CatalogRecord:
    """Agent profile, decision rule pack or data connector a DSL may bind to."""

    id: str
    kind: str
    code: str
    name: str
    owner_user_id: str
    template_source: str = "PRIVATE"
    is_active: bool = True
    config: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class UserConfigBinding:
    id: str
    user_id: str
    binding_type: str
    target_id: str
    priority: int = 100
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class WorkflowExperiment:
    id: str
    experiment_code: str
    name: str
    workflow_definition_id: str
    variant_a_version_id: str
    variant_b_version_id: str
    created_by_user_id: str
    traffic_split_percent: int = 50
    status: str = "DRAFT"
    max_executions: Optional[int] = None
    current_executions_a: int = 0
    current_executions_b: int = 0
    auto_stop_enabled: bool = True
    bad_case_threshold: float = 0.2
    metrics_snapshot: Dict[str, Any] | None = None
    winner_variant: Optional[str] = None
    conclusion_summary: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ExperimentRun:
    id: str
    experiment_id: str
    workflow_execution_id: str
    variant: str
    success: bool
    duration_ms: int
    node_count: int = 0
    failure_category: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class DebateRoundTrace:
    id: str
    workflow_execution_id: str
    round_number: int
    participant_code: str
    participant_role: Optional[str] = None
    statement_text: str = ""
    confidence: Optional[float] = None
    previous_confidence: Optional[float] = None
    is_judgement: bool = False
    key_points: List[str] = field(default_factory=list)
    evidence_refs: Dict[str, Any] = field(default_factory=dict)
    consensus_score: Optional[float] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
