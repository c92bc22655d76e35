from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from flowloom.logging import get_logger
from flowloom.service.errors import BadRequestError, NotFoundError
from flowloom.storage.errors import ConstraintViolation
from flowloom.storage.memory import MemoryStore
from flowloom.storage.models import ParameterItem, ParameterSet

# Least to most specific; later scopes override earlier ones
PARAM_SCOPE_PRIORITY = (
    "PUBLIC_TEMPLATE",
    "USER_TEMPLATE",
    "GLOBAL",
    "COMMODITY",
    "REGION",
    "ROUTE",
    "STRATEGY",
    "SESSION",
)
_CONTEXT_SCOPES = {
    "COMMODITY": "commodity",
    "REGION": "region",
    "ROUTE": "route",
    "STRATEGY": "strategy",
}

BINDING_AGENT_PROFILE = "AGENT_PROFILE"
BINDING_PARAMETER_SET = "PARAMETER_SET"
BINDING_DECISION_RULE_PACK = "DECISION_RULE_PACK"
BINDING_DATA_CONNECTOR = "DATA_CONNECTOR"

# DSL binding field -> (binding type, key under paramSnapshot._bindings)
_DSL_BINDINGS: Tuple[Tuple[str, str, str], ...] = (
    ("agentBindings", BINDING_AGENT_PROFILE, "agentProfiles"),
    ("paramSetBindings", BINDING_PARAMETER_SET, "parameterSets"),
    ("decisionRulePackBindings", BINDING_DECISION_RULE_PACK, "decisionRulePacks"),
    ("dataConnectorBindings", BINDING_DATA_CONNECTOR, "dataConnectors"),
)
_BINDING_KEYS = {binding_type: key for _, binding_type, key in _DSL_BINDINGS}


@dataclass(frozen=True)
class ResolvedParam:
    param_code: str
    value: Any
    source_scope: str
    parameter_set_id: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paramCode": self.param_code,
            "value": self.value,
            "sourceScope": self.source_scope,
            "parameterSetId": self.parameter_set_id,
        }


def _is_accessible(owner_user_id: str, template_source: str, user_id: str) -> bool:
    return owner_user_id == user_id or template_source == "PUBLIC"


class ParameterCenter:
    """Parameter sets, their scoped items, and scope resolution."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store
        self.logger = get_logger(__name__)

    def create_set(
        self, user_id: str, set_code: str, name: str, *, template_source: str = "PRIVATE"
    ) -> ParameterSet:
        try:
            return self.store.create_parameter_set(
                set_code, name, user_id, template_source=template_source
            )
        except ConstraintViolation as exc:
            raise BadRequestError(exc.message, detail=exc.detail) from exc

    def get_set(self, user_id: str, set_id: str) -> ParameterSet:
        param_set = self.store.get_parameter_set(set_id)
        if not param_set or not _is_accessible(param_set.owner_user_id, param_set.template_source, user_id):
            raise NotFoundError("parameter set not found", detail={"parameter_set_id": set_id})
        return param_set

    def _editable_set(self, user_id: str, set_id: str) -> ParameterSet:
        param_set = self.store.get_parameter_set(set_id)
        if not param_set or param_set.owner_user_id != user_id:
            raise NotFoundError("parameter set not found or not editable", detail={"parameter_set_id": set_id})
        return param_set

    def add_item(
        self,
        user_id: str,
        set_id: str,
        param_code: str,
        *,
        value: Any = None,
        default_value: Any = None,
        param_type: str = "string",
        scope_level: str = "GLOBAL",
        scope_value: Optional[str] = None,
        effective_from: Optional[datetime] = None,
        effective_to: Optional[datetime] = None,
    ) -> ParameterItem:
        self._editable_set(user_id, set_id)
        if scope_level not in PARAM_SCOPE_PRIORITY:
            raise BadRequestError(f"unknown scope level: {scope_level}")
        if effective_from and effective_to and effective_from > effective_to:
            raise BadRequestError("effective_from must not be later than effective_to")
        try:
            return self.store.add_parameter_item(
                set_id,
                param_code,
                value=value,
                default_value=default_value,
                param_type=param_type,
                scope_level=scope_level,
                scope_value=scope_value,
                effective_from=effective_from,
                effective_to=effective_to,
            )
        except ConstraintViolation as exc:
            raise BadRequestError(exc.message, detail=exc.detail) from exc

    def remove_item(self, user_id: str, set_id: str, item_id: str) -> ParameterItem:
        self._editable_set(user_id, set_id)
        item = self.store.deactivate_parameter_item(set_id, item_id)
        if not item:
            raise NotFoundError("parameter item not found", detail={"item_id": item_id})
        return item

    @staticmethod
    def _matches_scope(item: ParameterItem, context: Mapping[str, Any]) -> bool:
        if item.scope_level in {"PUBLIC_TEMPLATE", "USER_TEMPLATE", "GLOBAL"}:
            return True
        context_key = _CONTEXT_SCOPES.get(item.scope_level)
        if context_key is None:
            # SESSION and unknown scopes only arrive through sessionOverrides
            return False
        expected = context.get(context_key)
        return bool(expected) and item.scope_value == expected

    @staticmethod
    def _is_effective(item: ParameterItem, now: datetime) -> bool:
        if item.effective_from and item.effective_from > now:
            return False
        if item.effective_to and item.effective_to < now:
            return False
        return True

    def resolve_set(
        self,
        param_set: ParameterSet,
        context: Optional[Mapping[str, Any]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> List[ResolvedParam]:
        """Resolve one set against a scope context; sessionOverrides in ``context`` win."""

        context = context or {}
        now = now or datetime.utcnow()
        items = [
            item
            for item in self.store.list_parameter_items(param_set.id)
            if item.is_active and self._is_effective(item, now) and self._matches_scope(item, context)
        ]
        items.sort(key=lambda i: (PARAM_SCOPE_PRIORITY.index(i.scope_level), i.created_at))
        resolved: Dict[str, ResolvedParam] = {}
        for item in items:
            value = item.value if item.value is not None else item.default_value
            resolved[item.param_code] = ResolvedParam(
                item.param_code, copy.deepcopy(value), item.scope_level, param_set.id
            )
        for code, value in (context.get("sessionOverrides") or {}).items():
            resolved[code] = ResolvedParam(code, copy.deepcopy(value), "SESSION", param_set.id)
        return list(resolved.values())

    def resolve(self, user_id: str, set_id: str, context: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        param_set = self.get_set(user_id, set_id)
        return {
            "parameterSetId": param_set.id,
            "resolved": [r.to_dict() for r in self.resolve_set(param_set, context)],
        }


class ParamSnapshotBuilder:
    """Builds the execution ``paramSnapshot`` from bindings and parameter sets.

    Resolution order:
    1. the user's active config bindings (by priority), then DSL bindings
    2. each ref resolved to an accessible active record; misses are collected
       in ``unresolvedBindings`` without failing the trigger
    3. parameter sets merged in binding order, later sets overriding earlier
    4. ``sessionOverrides`` from the payload always win
    """

    def __init__(self, store: MemoryStore, parameter_center: Optional[ParameterCenter] = None) -> None:
        self.store = store
        self.parameter_center = parameter_center or ParameterCenter(store)
        self.logger = get_logger(__name__)

    def _binding_refs(self, user_id: str, dsl: Mapping[str, Any]) -> List[Tuple[str, str, str]]:
        refs: List[Tuple[str, str, str]] = []
        for binding in self.store.list_config_bindings(user_id):
            refs.append((binding.binding_type, binding.target_id, "USER_BINDING"))
        for field_name, binding_type, _ in _DSL_BINDINGS:
            for ref in dsl.get(field_name) or []:
                refs.append((binding_type, ref, "DSL"))
        return refs

    def _resolve_ref(self, user_id: str, binding_type: str, ref: str) -> Tuple[Optional[Any], Optional[str]]:
        if binding_type == BINDING_PARAMETER_SET:
            record = self.store.get_parameter_set(ref) or self.store.find_parameter_set_by_code(ref)
        elif binding_type in _BINDING_KEYS:
            record = self.store.get_catalog_record(binding_type, ref) or self.store.find_catalog_record(
                binding_type, ref
            )
        else:
            return None, "unsupported binding type"
        if record is None:
            return None, "not found"
        if not record.is_active:
            return None, "inactive"
        if not _is_accessible(record.owner_user_id, record.template_source, user_id):
            return None, "not accessible"
        return record, None

    def build(
        self,
        user_id: str,
        dsl: Mapping[str, Any],
        payload: Optional[Mapping[str, Any]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        snapshot: Dict[str, Any] = copy.deepcopy(dict(payload or {}))
        bindings: Dict[str, List[Dict[str, str]]] = {key: [] for key in _BINDING_KEYS.values()}
        unresolved: List[Dict[str, str]] = []
        param_sets: List[ParameterSet] = []
        seen_ids = set()

        for binding_type, ref, origin in self._binding_refs(user_id, dsl):
            record, reason = self._resolve_ref(user_id, binding_type, ref)
            if record is None:
                unresolved.append({"bindingType": binding_type, "ref": ref, "reason": reason, "origin": origin})
                continue
            if (binding_type, record.id) in seen_ids:
                continue
            seen_ids.add((binding_type, record.id))
            code = getattr(record, "set_code", None) or getattr(record, "code", None)
            bindings[_BINDING_KEYS[binding_type]].append({"id": record.id, "code": code})
            if binding_type == BINDING_PARAMETER_SET:
                param_sets.append(record)

        scope_context = {
            key: snapshot.get(key) for key in _CONTEXT_SCOPES.values() if snapshot.get(key)
        }
        merged: Dict[str, ResolvedParam] = {}
        for param_set in param_sets:
            for resolved in self.parameter_center.resolve_set(param_set, scope_context, now=now):
                merged[resolved.param_code] = resolved
        for code, value in (snapshot.get("sessionOverrides") or {}).items():
            merged[code] = ResolvedParam(code, copy.deepcopy(value), "SESSION", None)

        caller_params = snapshot.get("params") if isinstance(snapshot.get("params"), dict) else {}
        params = {code: r.value for code, r in merged.items()}
        # explicit caller params beat set values but not session overrides
        for code, value in caller_params.items():
            if code not in merged or merged[code].source_scope != "SESSION":
                params[code] = value
        for code, value in params.items():
            snapshot.setdefault(code, value)
        snapshot["params"] = params
        snapshot["_bindings"] = bindings
        snapshot["_resolvedParams"] = [r.to_dict() for r in merged.values()]
        snapshot["unresolvedBindings"] = unresolved
        if unresolved:
            self.logger.warning(
                "param_snapshot_unresolved_bindings",
                user_id=user_id,
                unresolved=[u["ref"] for u in unresolved],
            )
        return snapshot


__all__ = [
    "PARAM_SCOPE_PRIORITY",
    "ParameterCenter",
    "ParamSnapshotBuilder",
    "ResolvedParam",
    "BINDING_AGENT_PROFILE",
    "BINDING_PARAMETER_SET",
    "BINDING_DECISION_RULE_PACK",
    "BINDING_DATA_CONNECTOR",
]
