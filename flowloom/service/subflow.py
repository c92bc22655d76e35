from __future__ import annotations

from typing import Any, Dict, Optional

from flowloom.logging import get_logger
from flowloom.service.errors import NodeExecutorError, SubflowGuardError
from flowloom.service.executors import (
    SUBFLOW_NODE_TYPE,
    NodeExecutionContext,
    NodeExecutionResult,
    NodeExecutor,
)
from flowloom.service.workflow import TriggerRequest, WorkflowExecutionService

DEFAULT_SUBFLOW_MAX_DEPTH = 4


class SubflowCallExecutor(NodeExecutor):
    """Runs another published workflow as one node of the current execution.

    The registry is built before the execution service exists, so the service
    is attached afterwards with :meth:`bind`.
    """

    name = "SubflowCallExecutor"

    def __init__(
        self,
        service: Optional["WorkflowExecutionService"] = None,
        *,
        max_depth: int = DEFAULT_SUBFLOW_MAX_DEPTH,
    ) -> None:
        self.service = service
        self.max_depth = max_depth
        self.logger = get_logger(__name__)

    def bind(self, service: "WorkflowExecutionService") -> "SubflowCallExecutor":
        self.service = service
        return self

    def supports(self, node: Dict[str, Any]) -> bool:
        return node.get("type") == SUBFLOW_NODE_TYPE

    def check_guards(self, context: NodeExecutionContext, target_definition_id: str) -> None:
        if context.subflow_depth >= self.max_depth:
            raise SubflowGuardError(
                f"subflow depth {context.subflow_depth + 1} exceeds the maximum of {self.max_depth}",
                failure_code="SUBFLOW_DEPTH_EXCEEDED",
                detail={"nodeId": context.node.get("id"), "depth": context.subflow_depth},
            )
        if target_definition_id == context.workflow_definition_id:
            raise SubflowGuardError(
                "a subflow may not call the workflow that contains it",
                failure_code="SUBFLOW_SELF_CALL",
                detail={"nodeId": context.node.get("id"), "workflowDefinitionId": target_definition_id},
            )
        if target_definition_id in context.call_path:
            raise SubflowGuardError(
                "subflow call would re-enter a workflow that is already running",
                failure_code="SUBFLOW_CYCLE",
                detail={
                    "nodeId": context.node.get("id"),
                    "callPath": [*context.call_path, target_definition_id],
                },
            )

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        if self.service is None:
            raise RuntimeError("SubflowCallExecutor is not bound to an execution service")
        config = context.config
        target_definition_id = config.get("workflowDefinitionId")
        if not target_definition_id:
            raise SubflowGuardError(
                "subflow-call requires config.workflowDefinitionId",
                failure_code="SUBFLOW_CONFIG_INVALID",
                detail={"nodeId": context.node.get("id")},
            )
        self.check_guards(context, target_definition_id)

        call_path = tuple(context.call_path)
        if context.workflow_definition_id:
            call_path = (*call_path, context.workflow_definition_id)
        self.logger.info(
            "subflow_call_started",
            node=context.node.get("id"),
            target=target_definition_id,
            depth=context.subflow_depth + 1,
        )
        child = await self.service.trigger(
            context.trigger_user_id,
            TriggerRequest(
                workflow_definition_id=target_definition_id,
                workflow_version_id=config.get("workflowVersionId"),
                trigger_type="ON_DEMAND",
                param_snapshot={"subflowInput": dict(context.input)},
            ),
            source_execution_id=context.execution_id,
            call_path=call_path,
            subflow_depth=context.subflow_depth + 1,
        )

        if child.status != "SUCCESS":
            # a canceled child returns normally but must not count as success
            raise NodeExecutorError(
                f"subflow execution {child.id} ended {child.status}",
                detail={"subflowExecutionId": child.id, "subflowStatus": child.status},
            )
        child_output = {k: v for k, v in (child.output_snapshot or {}).items() if k != "replayBundle"}
        prefix = config.get("outputKeyPrefix")
        output: Dict[str, Any] = {prefix: child_output} if prefix else dict(child_output)
        output["subflowExecutionId"] = child.id
        output["subflowStatus"] = child.status
        return NodeExecutionResult(output=output)


__all__ = ["SubflowCallExecutor", "SUBFLOW_NODE_TYPE", "DEFAULT_SUBFLOW_MAX_DEPTH"]
