from __future__ import annotations

import hashlib
import heapq
import json
import re
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

from jsonschema import Draft202012Validator
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from flowloom.logging import get_logger
from flowloom.service.conditions import EDGE_CONDITION, EDGE_TYPES, normalize_operator
from flowloom.service.errors import InternalEngineError, ValidationError

logger = get_logger(__name__)

BINDING_FIELDS = (
    "agentBindings",
    "paramSetBindings",
    "dataConnectorBindings",
    "decisionRulePackBindings",
)

_DSL_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "workflowId": {"type": ["string", "null"]},
        "name": {"type": ["string", "null"]},
        "mode": {"type": "string"},
        "nodes": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "type": {"type": "string", "minLength": 1},
                    "name": {"type": ["string", "null"]},
                    "enabled": {"type": "boolean"},
                    "config": {"type": ["object", "null"]},
                    "runtimePolicy": {"type": ["object", "null"]},
                    "inputBindings": {"type": ["object", "null"]},
                },
                "required": ["id", "type"],
            },
        },
        "edges": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": ["string", "null"]},
                    "from": {"type": "string", "minLength": 1},
                    "to": {"type": "string", "minLength": 1},
                    "edgeType": {"type": ["string", "null"]},
                    "condition": {"type": ["boolean", "object", "string", "null"]},
                },
                "required": ["from", "to"],
            },
        },
        "runPolicy": {"type": ["object", "null"]},
        "agentBindings": {"type": "array", "items": {"type": "string"}},
        "paramSetBindings": {"type": "array", "items": {"type": "string"}},
        "dataConnectorBindings": {"type": "array", "items": {"type": "string"}},
        "decisionRulePackBindings": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["nodes"],
}

_DSL_VALIDATOR = Draft202012Validator(_DSL_SCHEMA)


class WorkflowNodeModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    name: Optional[str] = None
    enabled: bool = True
    config: Dict[str, Any] = Field(default_factory=dict)
    runtimePolicy: Optional[Dict[str, Any]] = None
    inputBindings: Optional[Dict[str, Any]] = None

    @field_validator("id", "type")
    @classmethod
    def _strip(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped

    @field_validator("config", mode="before")
    @classmethod
    def _config_default(cls, value: Any) -> Any:
        return {} if value is None else value


def normalize_edge_type(value: Any) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        return "data-edge"
    if not isinstance(value, str):
        raise ValueError("edgeType must be a string")
    normalized = value.strip().lower().replace("_", "-")
    if not normalized.endswith("-edge"):
        normalized = f"{normalized}-edge"
    if normalized not in EDGE_TYPES:
        raise ValueError(f"unknown edgeType: {value}")
    return normalized


class WorkflowEdgeModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = None
    source: str = Field(alias="from")
    target: str = Field(alias="to")
    edgeType: str = "data-edge"
    condition: Any = None

    @field_validator("source", "target")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("edgeType", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> str:
        return normalize_edge_type(value)


class WorkflowDsl(BaseModel):
    model_config = ConfigDict(extra="allow")

    workflowId: Optional[str] = None
    name: Optional[str] = None
    mode: Literal["LINEAR", "DAG", "DEBATE"] = "LINEAR"
    nodes: List[WorkflowNodeModel]
    edges: List[WorkflowEdgeModel] = Field(default_factory=list)
    runPolicy: Dict[str, Any] = Field(default_factory=dict)
    agentBindings: List[str] = Field(default_factory=list)
    paramSetBindings: List[str] = Field(default_factory=list)
    dataConnectorBindings: List[str] = Field(default_factory=list)
    decisionRulePackBindings: List[str] = Field(default_factory=list)

    @field_validator("mode", mode="before")
    @classmethod
    def _upper_mode(cls, value: Any) -> Any:
        if value is None:
            return "LINEAR"
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("runPolicy", mode="before")
    @classmethod
    def _run_policy_default(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator(*BINDING_FIELDS)
    @classmethod
    def _dedupe(cls, value: List[str]) -> List[str]:
        seen: List[str] = []
        for item in value:
            item = item.strip()
            if item and item not in seen:
                seen.append(item)
        return seen


@dataclass(frozen=True)
class DslIssue:
    code: str
    severity: str
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code, "severity": self.severity, "message": self.message}
        if self.node_id:
            data["nodeId"] = self.node_id
        if self.edge_id:
            data["edgeId"] = self.edge_id
        return data


@dataclass(frozen=True)
class PreparedDsl:
    """A parsed, structurally valid DSL with its canonical form and fingerprint."""

    model: WorkflowDsl
    canonical: Dict[str, Any]
    fingerprint: str

    @property
    def mode(self) -> str:
        return self.model.mode

    @property
    def nodes(self) -> List[Dict[str, Any]]:
        return self.canonical["nodes"]

    @property
    def edges(self) -> List[Dict[str, Any]]:
        return self.canonical["edges"]

    @property
    def run_policy(self) -> Dict[str, Any]:
        return self.canonical.get("runPolicy") or {}


def _invalid(issues: List[Dict[str, Any]]) -> ValidationError:
    return ValidationError(
        "workflow DSL is invalid",
        detail={"issues": issues, "failure_code": "DSL_INVALID"},
    )


def parse_dsl(raw: Any) -> WorkflowDsl:
    """Shape-check ``raw`` with jsonschema then type it with pydantic."""

    if isinstance(raw, WorkflowDsl):
        return raw
    if not isinstance(raw, Mapping):
        raise _invalid([{"code": "WF001", "severity": "ERROR", "message": "DSL must be an object"}])
    schema_errors = sorted(_DSL_VALIDATOR.iter_errors(dict(raw)), key=lambda e: list(e.path))
    if schema_errors:
        raise _invalid(
            [
                {
                    "code": "WF001",
                    "severity": "ERROR",
                    "message": e.message,
                    "path": "/".join(str(p) for p in e.path),
                }
                for e in schema_errors
            ]
        )
    try:
        return WorkflowDsl.model_validate(dict(raw))
    except PydanticValidationError as exc:
        raise _invalid(
            [
                {
                    "code": "WF001",
                    "severity": "ERROR",
                    "message": err.get("msg", "invalid value"),
                    "path": "/".join(str(p) for p in err.get("loc", ())),
                }
                for err in exc.errors()
            ]
        ) from exc


_TEMPLATE_REF_RE = re.compile(r"\{\{\s*[^{}]+?\s*\}\}")


def condition_syntax_error(condition: Any) -> Optional[str]:
    """Static check of a condition-edge condition; None when it looks well formed."""

    if condition is None:
        return "condition-edge requires a condition"
    if isinstance(condition, bool):
        return None
    if isinstance(condition, Mapping):
        field_path = condition.get("field")
        if not isinstance(field_path, str) or not field_path.strip():
            return "condition requires a non-empty field"
        if normalize_operator(condition.get("operator", "==")) is None:
            return f"unknown operator: {condition.get('operator')}"
        return None
    if isinstance(condition, str):
        text = condition.strip()
        if not text:
            return "condition must not be empty"
        leftover = _TEMPLATE_REF_RE.sub("", text)
        if "{{" in leftover or "}}" in leftover:
            return "unbalanced template braces"
        return None
    return f"unsupported condition type: {type(condition).__name__}"


def validate_dsl(dsl: WorkflowDsl) -> List[DslIssue]:
    """Structural checks: duplicate ids, dangling edges, orphans, condition syntax."""

    issues: List[DslIssue] = []
    node_ids: List[str] = []
    for node in dsl.nodes:
        if node.id in node_ids:
            issues.append(DslIssue("WF002", "ERROR", f"duplicate node id: {node.id}", node_id=node.id))
        else:
            node_ids.append(node.id)
    edge_ids: List[str] = []
    connected = set()
    for index, edge in enumerate(dsl.edges):
        edge_ref = edge.id or f"#{index}"
        if edge.id:
            if edge.id in edge_ids:
                issues.append(DslIssue("WF002", "ERROR", f"duplicate edge id: {edge.id}", edge_id=edge.id))
            edge_ids.append(edge.id)
        for endpoint in (edge.source, edge.target):
            if endpoint not in node_ids:
                issues.append(
                    DslIssue(
                        "WF003",
                        "ERROR",
                        f"edge {edge_ref} references unknown node {endpoint}",
                        edge_id=edge_ref,
                    )
                )
        connected.update({edge.source, edge.target})
        if edge.edgeType == EDGE_CONDITION:
            problem = condition_syntax_error(edge.condition)
            if problem:
                issues.append(DslIssue("WF205", "ERROR", problem, edge_id=edge_ref))
    if len(node_ids) > 1:
        for node_id in node_ids:
            if node_id not in connected:
                issues.append(DslIssue("WF004", "WARN", f"node {node_id} has no edges", node_id=node_id))
    return issues


def canonicalize(dsl: WorkflowDsl) -> Dict[str, Any]:
    """Canonical JSON-ready dict: trimmed ids, normalized edge types, sorted keys.

    Node and edge order are preserved since node order breaks LINEAR ties.
    """

    dumped = dsl.model_dump(by_alias=True, exclude_none=True)
    return json.loads(json.dumps(dumped, sort_keys=True, default=str))


def fingerprint(canonical: Mapping[str, Any]) -> str:
    payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def prepare_dsl(raw: Any) -> PreparedDsl:
    """Parse, validate and canonicalize; structural errors raise ``ValidationError``."""

    model = parse_dsl(raw)
    issues = validate_dsl(model)
    errors = [i for i in issues if i.severity == "ERROR"]
    if errors:
        raise _invalid([i.to_dict() for i in issues])
    for warning in issues:
        logger.info("dsl_validation_warning", code=warning.code, message=warning.message)
    canonical = canonicalize(model)
    return PreparedDsl(model=model, canonical=canonical, fingerprint=fingerprint(canonical))


# ---------------------------------------------------------------------------
# Graph helpers
# ---------------------------------------------------------------------------


def inbound_edge_map(edges: List[Mapping[str, Any]]) -> Dict[str, List[Mapping[str, Any]]]:
    mapping: Dict[str, List[Mapping[str, Any]]] = {}
    for edge in edges:
        mapping.setdefault(edge["to"], []).append(edge)
    return mapping


def outbound_edge_map(edges: List[Mapping[str, Any]]) -> Dict[str, List[Mapping[str, Any]]]:
    mapping: Dict[str, List[Mapping[str, Any]]] = {}
    for edge in edges:
        mapping.setdefault(edge["from"], []).append(edge)
    return mapping


def linear_order(
    nodes: List[Mapping[str, Any]], edges: List[Mapping[str, Any]]
) -> Tuple[List[Mapping[str, Any]], bool]:
    """Kahn sort with DSL position as tie-break.

    Returns ``(order, fell_back)``; on a cycle the DSL order is returned with
    ``fell_back`` set.
    """

    position = {node["id"]: index for index, node in enumerate(nodes)}
    in_degree = {node_id: 0 for node_id in position}
    adjacency: Dict[str, List[str]] = {node_id: [] for node_id in position}
    for edge in edges:
        if edge["from"] not in position or edge["to"] not in position:
            continue
        in_degree[edge["to"]] += 1
        adjacency[edge["from"]].append(edge["to"])
    ready = [position[n] for n, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)
    order: List[Mapping[str, Any]] = []
    while ready:
        index = heapq.heappop(ready)
        node = nodes[index]
        order.append(node)
        for neighbor in adjacency[node["id"]]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                heapq.heappush(ready, position[neighbor])
    if len(order) < len(nodes):
        return list(nodes), True
    return order, False


def dag_layers(
    nodes: List[Mapping[str, Any]], edges: List[Mapping[str, Any]]
) -> List[List[str]]:
    """Kahn layering; a cycle raises ``InternalEngineError`` (DAG_CYCLE_DETECTED)."""

    position = {node["id"]: index for index, node in enumerate(nodes)}
    in_degree = {node_id: 0 for node_id in position}
    adjacency: Dict[str, List[str]] = {node_id: [] for node_id in position}
    for edge in edges:
        if edge["from"] not in position or edge["to"] not in position:
            continue
        in_degree[edge["to"]] += 1
        adjacency[edge["from"]].append(edge["to"])
    layers: List[List[str]] = []
    current = [n for n, degree in in_degree.items() if degree == 0]
    processed = 0
    while current:
        current.sort(key=position.__getitem__)
        layers.append(current)
        processed += len(current)
        following: List[str] = []
        for node_id in current:
            for neighbor in adjacency[node_id]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    following.append(neighbor)
        current = following
    if processed < len(nodes):
        remaining = sorted(n for n, degree in in_degree.items() if degree > 0)
        raise InternalEngineError(
            "DAG contains a cycle",
            failure_code="DAG_CYCLE_DETECTED",
            detail={"nodes": remaining},
        )
    return layers


def reachable_without_error_edges(
    start_id: str, outbound: Mapping[str, List[Mapping[str, Any]]], already_marked: Mapping[str, Any]
) -> List[str]:
    """Breadth-first targets of non-error edges from ``start_id``, stopping at marked nodes.

    Direct error-edge targets of ``start_id`` are left out of the first hop
    only. A handler that is also reachable through a normal path further
    down is still returned.
    """

    error_targets = {
        edge["to"] for edge in outbound.get(start_id, []) if edge.get("edgeType") == "error-edge"
    }
    found: List[str] = []
    seen = {start_id}
    queue = deque([start_id])
    while queue:
        current = queue.popleft()
        for edge in outbound.get(current, []):
            if edge.get("edgeType") == "error-edge":
                continue
            target = edge["to"]
            if current == start_id and target in error_targets:
                continue
            if target in seen or target in already_marked:
                continue
            seen.add(target)
            found.append(target)
            queue.append(target)
    return found


__all__ = [
    "WorkflowDsl",
    "WorkflowNodeModel",
    "WorkflowEdgeModel",
    "DslIssue",
    "PreparedDsl",
    "parse_dsl",
    "validate_dsl",
    "canonicalize",
    "fingerprint",
    "prepare_dsl",
    "condition_syntax_error",
    "normalize_edge_type",
    "inbound_edge_map",
    "outbound_edge_map",
    "linear_order",
    "dag_layers",
    "reachable_without_error_edges",
]
