from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from flowloom.logging import get_logger
from flowloom.service.evidence import EvidenceCollector
from flowloom.service.variables import build_lineage_graph
from flowloom.storage.models import NodeExecution, WorkflowExecution

REPLAY_VERSION = "1.0.0"
DECISION_NODE_TYPES = frozenset({"agent-call", "single-agent", "decision-merge", "risk-gate"})


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ReplayAssembler:
    """Rebuilds a self-contained replay bundle from persisted node rows and the DSL."""

    def __init__(self, evidence_collector: Optional[EvidenceCollector] = None) -> None:
        self.evidence_collector = evidence_collector or EvidenceCollector()
        self.logger = get_logger(__name__)

    def build_node_snapshots(
        self, node_executions: List[NodeExecution], dsl_nodes: List[Mapping[str, Any]]
    ) -> List[Dict[str, Any]]:
        names = {n["id"]: n.get("name") or n["id"] for n in dsl_nodes}
        snapshots = []
        for row in node_executions:
            output = row.output_snapshot or {}
            meta = output.get("_meta") if isinstance(output.get("_meta"), dict) else {}
            snapshots.append(
                {
                    "nodeId": row.node_id,
                    "nodeName": names.get(row.node_id, row.node_id),
                    "nodeType": row.node_type,
                    "status": row.status,
                    "startedAt": _iso(row.started_at),
                    "completedAt": _iso(row.completed_at),
                    "durationMs": row.duration_ms,
                    "attempts": meta.get("attempts", 0 if row.status == "SKIPPED" else 1),
                    "inputSnapshot": row.input_snapshot or {},
                    "outputSnapshot": output,
                    "errorMessage": row.error_message,
                    "failureCategory": row.failure_category,
                    "failureCode": row.failure_code,
                    "skipReason": output.get("skipReason") if output.get("skipped") else None,
                    "skipType": output.get("skipType") if output.get("skipped") else None,
                }
            )
        return snapshots

    @staticmethod
    def annotate_edges(
        edges: List[Mapping[str, Any]], node_executions: List[NodeExecution]
    ) -> List[Dict[str, Any]]:
        """Which consumed input field came from which upstream output field, per edge."""

        rows = {row.node_id: row for row in node_executions}
        annotations = []
        for edge in edges:
            source, target = rows.get(edge["from"]), rows.get(edge["to"])
            if source is None or target is None or target.status == "SKIPPED":
                continue
            upstream = {k: v for k, v in (source.output_snapshot or {}).items() if k != "_meta"}
            consumed = target.input_snapshot or {}
            fields = []
            branches = consumed.get("branches")
            if isinstance(branches, dict) and edge["from"] in branches:
                branch = branches[edge["from"]] or {}
                for name in branch:
                    if name in upstream:
                        fields.append({"inputField": f"branches.{edge['from']}.{name}", "upstreamField": name})
            else:
                for name, value in consumed.items():
                    if name in upstream and upstream[name] == value:
                        fields.append({"inputField": name, "upstreamField": name})
            annotations.append(
                {
                    "from": edge["from"],
                    "to": edge["to"],
                    "edgeType": edge.get("edgeType"),
                    "fields": fields,
                }
            )
        return annotations

    @staticmethod
    def build_stats(
        snapshots: List[Dict[str, Any]], total_duration_ms: int, soft_failure_count: Optional[int]
    ) -> Dict[str, Any]:
        executed = [s for s in snapshots if s["status"] != "SKIPPED"]
        failed = [s for s in snapshots if s["status"] == "FAILED"]
        max_duration, max_node_id, total_node_duration = 0, None, 0
        for snap in executed:
            total_node_duration += snap["durationMs"]
            if snap["durationMs"] > max_duration:
                max_duration, max_node_id = snap["durationMs"], snap["nodeId"]
        return {
            "totalNodes": len(snapshots),
            "executedNodes": len(executed),
            "successNodes": sum(1 for s in snapshots if s["status"] == "SUCCESS"),
            "failedNodes": len(failed),
            "skippedNodes": sum(1 for s in snapshots if s["status"] == "SKIPPED"),
            "totalDurationMs": total_duration_ms,
            "avgNodeDurationMs": round(total_node_duration / len(executed)) if executed else 0,
            "maxNodeDurationMs": max_duration,
            "maxNodeId": max_node_id,
            "softFailureCount": soft_failure_count if soft_failure_count is not None else len(failed),
        }

    @staticmethod
    def extract_decision_output(
        snapshots: List[Dict[str, Any]], evidence_bundle: Mapping[str, Any]
    ) -> Optional[Dict[str, Any]]:
        decision = next(
            (
                s for s in reversed(snapshots)
                if s["nodeType"] in DECISION_NODE_TYPES and s["status"] == "SUCCESS"
            ),
            None,
        )
        if decision is None:
            return None
        output = decision["outputSnapshot"]
        source = output.get("parsed") if isinstance(output.get("parsed"), dict) else output
        blockers = output.get("blockers")
        return {
            "nodeId": decision["nodeId"],
            "action": source.get("action"),
            "confidence": source.get("confidence"),
            "riskLevel": source.get("riskLevel") or output.get("riskLevel"),
            "targetWindow": source.get("targetWindow"),
            "reasoningSummary": source.get("reasoningSummary") or source.get("thesis"),
            "blockers": blockers,
            "publishable": bool(evidence_bundle.get("meetsMinStrongEvidence")) and not blockers,
        }

    def assemble(
        self,
        execution: WorkflowExecution,
        dsl: Mapping[str, Any],
        node_executions: List[NodeExecution],
        *,
        soft_failure_count: Optional[int] = None,
    ) -> Dict[str, Any]:
        nodes = list(dsl.get("nodes") or [])
        edges = list(dsl.get("edges") or [])
        completed_at = execution.completed_at or datetime.utcnow()
        total_duration_ms = max(0, int((completed_at - execution.started_at).total_seconds() * 1000))
        snapshots = self.build_node_snapshots(node_executions, nodes)
        outputs_by_node = {
            row.node_id: row.output_snapshot or {}
            for row in node_executions
            if row.status != "SKIPPED"
        }
        evidence_bundle = self.evidence_collector.collect(nodes, outputs_by_node)
        return {
            "version": REPLAY_VERSION,
            "execution": {
                "id": execution.id,
                "workflowDefinitionId": execution.workflow_definition_id,
                "workflowVersionId": execution.workflow_version_id,
                "triggerType": execution.trigger_type,
                "triggerUserId": execution.trigger_user_id,
                "status": execution.status,
                "failureCategory": execution.failure_category,
                "failureCode": execution.failure_code,
                "startedAt": _iso(execution.started_at),
                "completedAt": _iso(completed_at),
                "totalDurationMs": total_duration_ms,
                "paramSnapshot": execution.param_snapshot,
            },
            "dslSnapshot": {
                "nodes": [{"id": n["id"], "name": n.get("name"), "type": n["type"]} for n in nodes],
                "edges": [
                    {"source": e["from"], "target": e["to"], "edgeType": e.get("edgeType")} for e in edges
                ],
                "nodeCount": len(nodes),
                "edgeCount": len(edges),
            },
            "timeline": snapshots,
            "evidenceBundle": evidence_bundle,
            "dataLineage": {
                "graph": build_lineage_graph(nodes, edges, outputs_by_node),
                "edges": self.annotate_edges(edges, node_executions),
            },
            "decisionOutput": self.extract_decision_output(snapshots, evidence_bundle),
            "stats": self.build_stats(snapshots, total_duration_ms, soft_failure_count),
            "assembledAt": datetime.utcnow().isoformat(),
        }


__all__ = ["ReplayAssembler", "REPLAY_VERSION"]
