from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from flowloom.logging import get_logger

logger = get_logger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


# Sentinel for "reference did not resolve"; distinct from a resolved None
MISSING: Any = _Missing()

_EXPRESSION_RE = re.compile(r"\{\{\s*(.+?)\s*\}\}")
_FULL_EXPRESSION_RE = re.compile(r"^\s*\{\{\s*(.+?)\s*\}\}\s*$")
_PATH_TOKEN_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]")
_DEFAULT_RE = re.compile(r"^(.*?)\|\s*default\s*:\s*(.*)$")

PathSegment = Union[str, int]


def split_path(path: str) -> List[PathSegment]:
    """Split ``a.b[0].c`` into ``["a", "b", 0, "c"]``."""

    segments: List[PathSegment] = []
    for name, index in _PATH_TOKEN_RE.findall(path or ""):
        if index:
            segments.append(int(index))
        elif name.strip():
            segments.append(name.strip())
    return segments


def read_path(value: Any, path: Union[str, Iterable[PathSegment]]) -> Any:
    """Walk ``path`` into nested dicts/lists; returns ``MISSING`` when any hop fails."""

    segments = split_path(path) if isinstance(path, str) else list(path)
    current = value
    for segment in segments:
        if isinstance(current, Mapping):
            key = segment if isinstance(segment, str) else str(segment)
            if key not in current:
                return MISSING
            current = current[key]
        elif isinstance(current, (list, tuple)):
            if isinstance(segment, str):
                if not segment.isdigit():
                    return MISSING
                segment = int(segment)
            if segment >= len(current):
                return MISSING
            current = current[segment]
        else:
            return MISSING
    return current


def is_expression(value: Any) -> bool:
    return isinstance(value, str) and bool(_EXPRESSION_RE.search(value))


def parse_default_literal(raw: str) -> Any:
    text = raw.strip()
    if text == "null":
        return None
    if text == "true":
        return True
    if text == "false":
        return False
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {"'", '"'}:
        return text[1:-1]
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


@dataclass
class LineageEntry:
    expression: str
    resolved_value: Any
    source_node_id: Optional[str]
    source_field_path: str
    resolved_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expression": self.expression,
            "resolvedValue": self.resolved_value,
            "sourceNodeId": self.source_node_id,
            "sourceFieldPath": self.source_field_path,
            "resolvedAt": self.resolved_at,
        }


@dataclass
class MappingResolution:
    resolved: Dict[str, Any] = field(default_factory=dict)
    lineage: List[LineageEntry] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)


@dataclass
class ResolutionContext:
    """Everything a reference expression may read from."""

    outputs_by_node: Mapping[str, Any] = field(default_factory=dict)
    param_snapshot: Mapping[str, Any] = field(default_factory=dict)
    meta: Mapping[str, Any] = field(default_factory=dict)


class VariableResolver:
    """Resolves ``{{ref}}`` expressions in node input bindings.

    Supported references:
    - ``{{nodeId.path}}`` reads an upstream node output
    - ``{{params.code}}`` reads ``paramSnapshot.params`` then ``paramSnapshot``
    - ``{{meta.executionId}}`` and friends read execution metadata
    - ``{{ref | default: literal}}`` falls back to the literal
    """

    def __init__(self, context: ResolutionContext) -> None:
        self.context = context

    def resolve_reference(self, ref: str) -> Tuple[Any, Optional[str], str]:
        """Return ``(value, source_node_id, field_path)`` for one bare reference."""

        segments = split_path(ref)
        if not segments:
            return MISSING, None, ""
        head, rest = segments[0], segments[1:]
        rest_path = ".".join(str(s) for s in rest)
        if head == "params":
            params = self.context.param_snapshot.get("params")
            value = read_path(params, rest) if isinstance(params, Mapping) else MISSING
            if value is MISSING:
                value = read_path(self.context.param_snapshot, rest)
            return value, None, rest_path
        if head == "meta":
            return read_path(self.context.meta, rest), None, rest_path
        node_id = str(head)
        if node_id not in self.context.outputs_by_node:
            return MISSING, node_id, rest_path
        output = self.context.outputs_by_node[node_id]
        return read_path(output, rest), node_id, rest_path

    def resolve_expression(self, inner: str) -> Tuple[Any, Optional[str], str]:
        default_match = _DEFAULT_RE.match(inner)
        if default_match:
            ref, raw_default = default_match.group(1).strip(), default_match.group(2)
            value, source, path = self.resolve_reference(ref)
            if value is MISSING:
                return parse_default_literal(raw_default), source, path
            return value, source, path
        return self.resolve_reference(inner.strip())

    def resolve_template(self, text: str) -> str:
        """Substitute every ``{{...}}`` in ``text``; unresolved refs become empty strings."""

        def _substitute(match: "re.Match[str]") -> str:
            value, _, _ = self.resolve_expression(match.group(1))
            if value is MISSING or value is None:
                return ""
            return str(value)

        return _EXPRESSION_RE.sub(_substitute, text)

    def resolve_mapping(self, bindings: Optional[Mapping[str, Any]]) -> MappingResolution:
        result = MappingResolution()
        for target, expression in (bindings or {}).items():
            if not is_expression(expression):
                result.resolved[target] = expression
                continue
            full = _FULL_EXPRESSION_RE.match(expression)
            if full:
                value, source, path = self.resolve_expression(full.group(1))
                if value is MISSING:
                    result.unresolved.append(expression)
                    continue
            else:
                unresolved = [
                    m.group(0)
                    for m in _EXPRESSION_RE.finditer(expression)
                    if self.resolve_expression(m.group(1))[0] is MISSING
                ]
                if unresolved:
                    result.unresolved.extend(unresolved)
                    continue
                value, source, path = self.resolve_template(expression), None, ""
            result.resolved[target] = value
            result.lineage.append(
                LineageEntry(
                    expression=expression,
                    resolved_value=value,
                    source_node_id=source,
                    source_field_path=path,
                )
            )
        if result.unresolved:
            logger.debug("input_bindings_unresolved", unresolved=result.unresolved)
        return result


def build_lineage_graph(
    nodes: Iterable[Mapping[str, Any]],
    edges: Iterable[Mapping[str, Any]],
    outputs_by_node: Mapping[str, Mapping[str, Any]],
) -> Dict[str, List[Dict[str, Any]]]:
    """For each node, list output fields that also appear on an upstream output."""

    edge_list = list(edges)
    graph: Dict[str, List[Dict[str, Any]]] = {}
    for node in nodes:
        node_id = node.get("id")
        output = outputs_by_node.get(node_id)
        if not isinstance(output, Mapping):
            continue
        inbound = [e for e in edge_list if e.get("to") == node_id]
        entries: List[Dict[str, Any]] = []
        for field_name, value in output.items():
            if field_name == "_meta":
                continue
            for edge in inbound:
                source_id = edge.get("from")
                source_output = outputs_by_node.get(source_id)
                if not isinstance(source_output, Mapping) or field_name not in source_output:
                    continue
                entries.append(
                    LineageEntry(
                        expression=f"{{{{{source_id}.{field_name}}}}}",
                        resolved_value=value,
                        source_node_id=source_id,
                        source_field_path=field_name,
                    ).to_dict()
                )
        if entries:
            graph[node_id] = entries
    return graph


__all__ = [
    "MISSING",
    "LineageEntry",
    "MappingResolution",
    "ResolutionContext",
    "VariableResolver",
    "build_lineage_graph",
    "read_path",
    "split_path",
    "parse_default_literal",
]
