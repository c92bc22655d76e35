from __future__ import annotations

import json
import math
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from flowloom.logging import get_logger
from flowloom.service.variables import MISSING, parse_default_literal, read_path, split_path

logger = get_logger(__name__)

EDGE_DATA = "data-edge"
EDGE_CONTROL = "control-edge"
EDGE_CONDITION = "condition-edge"
EDGE_ERROR = "error-edge"
EDGE_TYPES = (EDGE_DATA, EDGE_CONTROL, EDGE_CONDITION, EDGE_ERROR)

ON_ERROR_ROUTING_MARKER = "ROUTE_TO_ERROR"

_OPERATOR_ALIASES = {
    "==": "==",
    "===": "==",
    "eq": "==",
    "!=": "!=",
    "!==": "!=",
    "neq": "!=",
    "ne": "!=",
    ">": ">",
    "gt": ">",
    ">=": ">=",
    "gte": ">=",
    "<": "<",
    "lt": "<",
    "<=": "<=",
    "lte": "<=",
    "in": "in",
    "not_in": "not_in",
    "exists": "exists",
    "not_exists": "not_exists",
}
UNARY_OPERATORS = frozenset({"exists", "not_exists"})

_REF_RE = re.compile(r"\{\{\s*(.+?)\s*\}\}")
# Longest symbols first so ">=" is not read as ">"
_TEMPLATE_OPERATOR_RE = re.compile(
    r"\s*(===|!==|==|!=|>=|<=|>|<|\bnot_in\b|\bnot_exists\b|\bexists\b|\bin\b"
    r"|\bneq\b|\bgte\b|\blte\b|\beq\b|\bgt\b|\blt\b)\s*"
)
_PLACEHOLDER_RE = re.compile(r"^__ref(\d+)__$")


class ConditionError(ValueError):
    """A condition is malformed; evaluation treats it as false."""


def normalize_operator(operator: Any) -> Optional[str]:
    if not isinstance(operator, str):
        return None
    return _OPERATOR_ALIASES.get(operator.strip().lower())


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None or value is MISSING:
        return None
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else float(value)
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return None if math.isnan(parsed) else parsed
    return None


def compare(left: Any, operator: str, right: Any = None) -> bool:
    """Apply one normalized comparison operator."""

    if operator == "exists":
        return left is not MISSING and left is not None
    if operator == "not_exists":
        return left is MISSING or left is None
    if left is MISSING or right is MISSING:
        return False
    if operator in {"in", "not_in"}:
        if not isinstance(right, (list, tuple, set, frozenset, str, Mapping)):
            return False
        try:
            contained = left in right
        except TypeError:
            return False
        return contained if operator == "in" else not contained
    left_num, right_num = _as_number(left), _as_number(right)
    numeric = left_num is not None and right_num is not None
    if operator == "==":
        return left_num == right_num if numeric else left == right
    if operator == "!=":
        return left_num != right_num if numeric else left != right
    if numeric:
        a, b = left_num, right_num
    elif isinstance(left, str) and isinstance(right, str):
        a, b = left, right
    else:
        return False
    if operator == ">":
        return a > b
    if operator == ">=":
        return a >= b
    if operator == "<":
        return a < b
    if operator == "<=":
        return a <= b
    raise ConditionError(f"unsupported operator: {operator}")


def _parse_literal(raw: str) -> Any:
    text = raw.strip()
    if text[:1] in {"[", "{"}:
        try:
            return json.loads(text)
        except ValueError:
            return text
    return parse_default_literal(text)


class EdgeEvaluator:
    """Decides which edges are active and which nodes may run.

    Conditions are a tagged union validated when evaluated:
    - ``bool``: literal
    - ``{"field", "operator", "value"}``: field read from the source output
    - ``"{{ref}} op literal"``: a single binary comparison template
    """

    def __init__(
        self,
        *,
        param_snapshot: Optional[Mapping[str, Any]] = None,
        meta: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.param_snapshot = param_snapshot or {}
        self.meta = meta or {}

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    def evaluate(
        self,
        condition: Any,
        source_output: Optional[Mapping[str, Any]],
        source_id: Optional[str] = None,
    ) -> bool:
        """Evaluate ``condition``; malformed or unresolvable conditions are false."""

        try:
            return self._evaluate(condition, source_output or {}, source_id)
        except ConditionError as exc:
            logger.warning(
                "condition_invalid",
                source_node=source_id,
                condition=condition if isinstance(condition, (str, bool, dict)) else repr(condition),
                error=str(exc),
            )
            return False

    def _evaluate(self, condition: Any, output: Mapping[str, Any], source_id: Optional[str]) -> bool:
        if isinstance(condition, bool):
            return condition
        if isinstance(condition, Mapping):
            return self._evaluate_field(condition, output)
        if isinstance(condition, str):
            return self._evaluate_template(condition, output, source_id)
        raise ConditionError(f"unsupported condition type: {type(condition).__name__}")

    def _evaluate_field(self, condition: Mapping[str, Any], output: Mapping[str, Any]) -> bool:
        field_path = condition.get("field")
        if not isinstance(field_path, str) or not field_path.strip():
            raise ConditionError("field condition requires a non-empty 'field'")
        operator = normalize_operator(condition.get("operator", "=="))
        if operator is None:
            raise ConditionError(f"unknown operator: {condition.get('operator')}")
        left = read_path(output, field_path)
        return compare(left, operator, condition.get("value"))

    def resolve_ref(self, ref: str, output: Mapping[str, Any], source_id: Optional[str]) -> Any:
        segments = split_path(ref)
        if not segments:
            return MISSING
        head = segments[0]
        if head == "params":
            params = self.param_snapshot.get("params")
            value = read_path(params, segments[1:]) if isinstance(params, Mapping) else MISSING
            if value is MISSING:
                value = read_path(self.param_snapshot, segments[1:])
            return value
        if head == "meta":
            return read_path(self.meta, segments[1:])
        if source_id is not None and head == source_id and len(segments) > 1:
            value = read_path(output, segments[1:])
            if value is not MISSING:
                return value
        return read_path(output, segments)

    def _evaluate_template(self, text: str, output: Mapping[str, Any], source_id: Optional[str]) -> bool:
        refs: List[str] = []

        def _placeholder(match: "re.Match[str]") -> str:
            refs.append(match.group(1))
            return f"__ref{len(refs) - 1}__"

        masked = _REF_RE.sub(_placeholder, text).strip()
        if not masked:
            raise ConditionError("empty condition")
        parts = _TEMPLATE_OPERATOR_RE.split(masked, maxsplit=1)
        if len(parts) == 1:
            # no operator: truthiness of the single operand
            value = self._operand(parts[0], refs, output, source_id)
            return value is not MISSING and bool(value)
        left_raw, raw_operator, right_raw = parts
        operator = normalize_operator(raw_operator)
        if operator is None or not left_raw.strip():
            raise ConditionError(f"malformed condition: {text}")
        if _TEMPLATE_OPERATOR_RE.search(right_raw):
            raise ConditionError("only a single binary comparison is supported")
        left = self._operand(left_raw, refs, output, source_id)
        if operator in UNARY_OPERATORS:
            if right_raw.strip():
                raise ConditionError(f"{operator} takes no right operand")
            return compare(left, operator)
        if not right_raw.strip():
            raise ConditionError(f"missing right operand: {text}")
        right = self._operand(right_raw, refs, output, source_id)
        return compare(left, operator, right)

    def _operand(
        self,
        raw: str,
        refs: List[str],
        output: Mapping[str, Any],
        source_id: Optional[str],
    ) -> Any:
        text = raw.strip()
        match = _PLACEHOLDER_RE.match(text)
        if match:
            return self.resolve_ref(refs[int(match.group(1))], output, source_id)
        if "__ref" in text:
            raise ConditionError("references must be whole operands")
        return _parse_literal(text)

    # ------------------------------------------------------------------
    # Edge and node activity
    # ------------------------------------------------------------------

    def is_edge_active(
        self, edge: Mapping[str, Any], outputs_by_node: Mapping[str, Mapping[str, Any]]
    ) -> bool:
        source_id = edge.get("from")
        output = outputs_by_node.get(source_id)
        if not isinstance(output, Mapping) or output.get("skipped"):
            return False
        edge_type = edge.get("edgeType") or EDGE_DATA
        if edge_type == EDGE_ERROR:
            meta = output.get("_meta")
            return isinstance(meta, Mapping) and meta.get("onErrorRouting") == ON_ERROR_ROUTING_MARKER
        if edge_type == EDGE_CONDITION:
            return self.evaluate(edge.get("condition"), output, source_id)
        return True

    def active_inbound_edges(
        self,
        inbound_edges: Iterable[Mapping[str, Any]],
        outputs_by_node: Mapping[str, Mapping[str, Any]],
    ) -> List[Mapping[str, Any]]:
        return [edge for edge in inbound_edges if self.is_edge_active(edge, outputs_by_node)]

    def should_run(
        self,
        inbound_edges: List[Mapping[str, Any]],
        outputs_by_node: Mapping[str, Mapping[str, Any]],
    ) -> Tuple[bool, List[Mapping[str, Any]]]:
        """Return ``(runs, active_edges)``; nodes without inbound edges always run."""

        if not inbound_edges:
            return True, []
        active = self.active_inbound_edges(inbound_edges, outputs_by_node)
        return bool(active), active


def build_edge_input(
    active_edges: Iterable[Mapping[str, Any]],
    outputs_by_node: Mapping[str, Mapping[str, Any]],
) -> Dict[str, Any]:
    """Derive node input from active inbound edges, stripping upstream ``_meta``."""

    sources: Dict[str, Dict[str, Any]] = {}
    for edge in active_edges:
        source_id = edge.get("from")
        if source_id in sources:
            continue
        output = outputs_by_node.get(source_id) or {}
        sources[source_id] = {k: v for k, v in output.items() if k != "_meta"}
    if not sources:
        return {}
    if len(sources) == 1:
        return dict(next(iter(sources.values())))
    return {"branches": sources}


__all__ = [
    "EdgeEvaluator",
    "ConditionError",
    "build_edge_input",
    "compare",
    "normalize_operator",
    "EDGE_TYPES",
    "EDGE_DATA",
    "EDGE_CONTROL",
    "EDGE_CONDITION",
    "EDGE_ERROR",
]
