from __future__ import annotations

from typing import Any, Dict, List, Optional

from flowloom.logging import get_logger
from flowloom.service.dsl import parse_dsl, prepare_dsl, validate_dsl
from flowloom.service.errors import BadRequestError, NotFoundError, ValidationError
from flowloom.service.executors import SUBFLOW_NODE_TYPE
from flowloom.storage.errors import ConstraintViolation
from flowloom.storage.memory import MemoryStore
from flowloom.storage.models import WorkflowDefinition, WorkflowVersion


def self_reference_issues(nodes: List[Dict[str, Any]], definition_id: str) -> List[Dict[str, Any]]:
    """WF107: a subflow-call node may not target its own workflow."""

    return [
        {
            "code": "WF107",
            "severity": "ERROR",
            "message": f"subflow node {node['id']} may not reference the workflow that contains it",
            "nodeId": node["id"],
        }
        for node in nodes
        if node.get("type") == SUBFLOW_NODE_TYPE
        and (node.get("config") or {}).get("workflowDefinitionId") == definition_id
    ]


class DefinitionService:
    """Workflow definitions and their immutable versions."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store
        self.logger = get_logger(__name__)

    def create_definition(
        self,
        user_id: str,
        workflow_code: str,
        name: str,
        *,
        mode: str = "LINEAR",
        template_source: str = "PRIVATE",
        meta: Optional[Dict[str, Any]] = None,
    ) -> WorkflowDefinition:
        if template_source not in {"PUBLIC", "PRIVATE"}:
            raise BadRequestError(f"unknown template source: {template_source}")
        try:
            return self.store.create_workflow_definition(
                workflow_code,
                name,
                user_id,
                mode=mode.upper(),
                template_source=template_source,
                meta=meta,
            )
        except ConstraintViolation as exc:
            raise BadRequestError(exc.message, detail=exc.detail) from exc

    def get_definition(self, user_id: str, definition_id: str) -> WorkflowDefinition:
        """Return the definition when it is owned by ``user_id`` or public."""

        definition = self.store.get_workflow_definition(definition_id)
        if not definition or not (
            definition.owner_user_id == user_id or definition.template_source == "PUBLIC"
        ):
            raise NotFoundError(
                "workflow definition not found or not accessible",
                detail={"workflow_definition_id": definition_id},
            )
        return definition

    def _owned_definition(self, user_id: str, definition_id: str) -> WorkflowDefinition:
        definition = self.store.get_workflow_definition(definition_id)
        if not definition or definition.owner_user_id != user_id:
            raise NotFoundError(
                "workflow definition not found or not editable",
                detail={"workflow_definition_id": definition_id},
            )
        return definition

    def validate(self, dsl: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Publish-time report of every structural issue, warnings included."""

        try:
            model = parse_dsl(dsl)
        except ValidationError as exc:
            return list(exc.detail.get("issues", []))
        return [issue.to_dict() for issue in validate_dsl(model)]

    def create_version(
        self,
        user_id: str,
        definition_id: str,
        version_code: str,
        dsl: Dict[str, Any],
        *,
        changelog: Optional[str] = None,
        publish: bool = False,
    ) -> WorkflowVersion:
        self._owned_definition(user_id, definition_id)
        prepared = prepare_dsl(dsl)
        try:
            version = self.store.create_workflow_version(
                definition_id,
                version_code,
                prepared.canonical,
                user_id,
                dsl_fingerprint=prepared.fingerprint,
                changelog=changelog,
            )
        except ConstraintViolation as exc:
            raise BadRequestError(exc.message, detail=exc.detail) from exc
        self.logger.info(
            "workflow_version_created",
            workflow_definition_id=definition_id,
            version_code=version_code,
            fingerprint=prepared.fingerprint,
        )
        if publish:
            return self.publish_version(user_id, version.id)
        return version

    def publish_version(self, user_id: str, version_id: str) -> WorkflowVersion:
        version = self.store.get_workflow_version(version_id)
        if not version:
            raise NotFoundError("workflow version not found", detail={"workflow_version_id": version_id})
        self._owned_definition(user_id, version.workflow_definition_id)
        # versions are validated on creation; re-check so stale snapshots never publish
        prepared = prepare_dsl(version.dsl_snapshot)
        issues = self_reference_issues(prepared.nodes, version.workflow_definition_id)
        if issues:
            raise ValidationError(
                "workflow version cannot be published",
                detail={"issues": issues, "failure_code": "DSL_INVALID"},
            )
        published = self.store.publish_workflow_version(version_id)
        self.logger.info(
            "workflow_version_published",
            workflow_definition_id=version.workflow_definition_id,
            version_code=version.version_code,
        )
        return published

    def resolve_version(
        self, definition: WorkflowDefinition, version_id: Optional[str] = None
    ) -> WorkflowVersion:
        """The requested version of ``definition``, or its published version."""

        if version_id:
            version = self.store.get_workflow_version(version_id)
            if not version or version.workflow_definition_id != definition.id:
                raise BadRequestError(
                    "workflow version does not belong to the definition",
                    detail={"workflow_version_id": version_id},
                )
            return version
        version = self.store.get_published_version(definition.id)
        if not version:
            raise BadRequestError(
                "no executable version, publish at least one version first",
                detail={"workflow_definition_id": definition.id},
            )
        return version

    def list_versions(self, user_id: str, definition_id: str) -> List[WorkflowVersion]:
        self.get_definition(user_id, definition_id)
        return self.store.list_workflow_versions(definition_id)


__all__ = ["DefinitionService", "self_reference_issues"]
