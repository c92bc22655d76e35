from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from flowloom.logging import get_logger

# Whitelisted data sources; anything else fetched counts as external
STRONG_EVIDENCE_SOURCES = frozenset(
    {"MarketIntel", "ResearchReport", "MarketEvent", "MarketInsight", "KnowledgeItem"}
)
DEFAULT_MIN_STRONG_EVIDENCE = 2

DATA_NODE_TYPES = frozenset(
    {"data-fetch", "market-data-fetch", "knowledge-fetch", "report-fetch", "external-api-fetch"}
)
RULE_NODE_TYPES = frozenset({"rule-eval", "rule-pack-eval", "alert-check", "risk-gate"})
AGENT_NODE_TYPES = frozenset({"agent-call", "single-agent"})
COMPUTE_NODE_TYPES = frozenset({"formula-calc", "feature-calc", "quantile-calc"})


@dataclass
class EvidenceItem:
    id: str
    source_node_id: str
    source_node_type: str
    source_node_name: str
    type: str
    title: str
    summary: str
    raw_data: Dict[str, Any] = field(default_factory=dict)
    confidence: Optional[float] = None
    is_external: bool = False
    data_source: Optional[str] = None
    collected_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sourceNodeId": self.source_node_id,
            "sourceNodeType": self.source_node_type,
            "sourceNodeName": self.source_node_name,
            "type": self.type,
            "title": self.title,
            "summary": self.summary,
            "rawData": self.raw_data,
            "confidence": self.confidence,
            "isExternal": self.is_external,
            "dataSource": self.data_source,
            "collectedAt": self.collected_at,
        }


def _short(value: Any, limit: int = 200) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text[:limit]


class EvidenceCollector:
    """Collects evidence items from node outputs by node-type convention."""

    def __init__(self, *, min_strong_evidence: int = DEFAULT_MIN_STRONG_EVIDENCE) -> None:
        self.min_strong_evidence = min_strong_evidence
        self.logger = get_logger(__name__)

    def collect(
        self,
        nodes: Iterable[Mapping[str, Any]],
        outputs_by_node: Mapping[str, Mapping[str, Any]],
    ) -> Dict[str, Any]:
        evidence: List[EvidenceItem] = []
        for node in nodes:
            output = outputs_by_node.get(node.get("id"))
            if not isinstance(output, Mapping) or output.get("skipped"):
                continue
            evidence.extend(self.extract_from_node(node, output))
        return self.build_bundle(evidence)

    def extract_from_node(self, node: Mapping[str, Any], output: Mapping[str, Any]) -> List[EvidenceItem]:
        node_type = node.get("type")
        if node_type in DATA_NODE_TYPES:
            return self._data_evidence(node, output)
        if node_type in RULE_NODE_TYPES:
            return self._rule_evidence(node, output)
        if node_type in AGENT_NODE_TYPES:
            return self._agent_evidence(node, output)
        if node_type in COMPUTE_NODE_TYPES:
            return self._compute_evidence(node, output)
        return []

    @staticmethod
    def _base(node: Mapping[str, Any]) -> Dict[str, str]:
        return {
            "source_node_id": node["id"],
            "source_node_type": node["type"],
            "source_node_name": node.get("name") or node["id"],
        }

    def _data_evidence(self, node, output) -> List[EvidenceItem]:
        records = output.get("records") if isinstance(output.get("records"), list) else None
        record_count = output.get("totalRecords")
        if not isinstance(record_count, int):
            record_count = len(records) if records is not None else 0
        if record_count <= 0:
            return []
        data_source = output.get("connectorCode") or output.get("dataSource") or "unknown"
        connector_type = output.get("connectorType")
        base = self._base(node)
        return [
            EvidenceItem(
                id=f"{node['id']}_data_snapshot",
                type="DATA_SNAPSHOT",
                title=f"{base['source_node_name']} data snapshot",
                summary=f"fetched {record_count} records ({connector_type or 'unknown'}, source {data_source})",
                raw_data={
                    "recordCount": record_count,
                    "connectorType": connector_type,
                    "dataSource": data_source,
                    "sampleRecords": (records or [])[:3],
                    "fetchedAt": output.get("fetchedAt"),
                },
                is_external=data_source not in STRONG_EVIDENCE_SOURCES,
                data_source=data_source,
                **base,
            )
        ]

    def _rule_evidence(self, node, output) -> List[EvidenceItem]:
        items: List[EvidenceItem] = []
        base = self._base(node)
        hits = output.get("hits")
        if isinstance(hits, list):
            for hit in hits:
                hit = hit if isinstance(hit, Mapping) else {"value": hit}
                label = hit.get("ruleName") or hit.get("ruleId") or "unknown"
                items.append(
                    EvidenceItem(
                        id=f"{node['id']}_rule_{hit.get('ruleId') or hit.get('ruleName') or len(items)}",
                        type="RULE_HIT",
                        title=f"rule hit: {label}",
                        summary=hit.get("description")
                        or f"score {hit.get('score', 'N/A')}, conclusion {hit.get('conclusion', 'N/A')}",
                        raw_data=dict(hit),
                        confidence=hit.get("score") if isinstance(hit.get("score"), (int, float)) else None,
                        data_source="RuleEngine",
                        **base,
                    )
                )
        risk_level = output.get("riskLevel")
        degrade_action = output.get("degradeAction")
        if risk_level or degrade_action:
            items.append(
                EvidenceItem(
                    id=f"{node['id']}_risk_gate",
                    type="RULE_HIT",
                    title=f"risk verdict: {risk_level or 'N/A'}",
                    summary=(
                        f"risk level {risk_level}, degrade action {degrade_action or 'NONE'}, "
                        f"total score {output.get('totalScore', 'N/A')}"
                    ),
                    raw_data={
                        "riskLevel": risk_level,
                        "degradeAction": degrade_action,
                        "totalScore": output.get("totalScore"),
                        "blockers": output.get("blockers"),
                    },
                    data_source="RiskGate",
                    **base,
                )
            )
        return items

    def _agent_evidence(self, node, output) -> List[EvidenceItem]:
        base = self._base(node)
        agent_code = output.get("agentCode")
        parsed = output.get("parsed") if isinstance(output.get("parsed"), Mapping) else {}
        confidence = parsed.get("confidence")
        summary = parsed.get("summary") or parsed.get("conclusion") or output.get("rawResponse") or ""
        items = [
            EvidenceItem(
                id=f"{node['id']}_agent_opinion",
                type="AGENT_OPINION",
                title=f"agent {agent_code or base['source_node_name']} opinion",
                summary=_short(summary),
                raw_data={
                    "agentCode": agent_code,
                    "roleType": output.get("roleType"),
                    "modelName": output.get("modelName"),
                    "parsed": dict(parsed),
                },
                confidence=confidence if isinstance(confidence, (int, float)) else None,
                data_source=f"Agent:{agent_code or 'unknown'}",
                **base,
            )
        ]
        cited = parsed.get("evidence")
        if isinstance(cited, list):
            for entry in cited:
                entry = entry if isinstance(entry, Mapping) else {}
                items.append(
                    EvidenceItem(
                        id=f"{node['id']}_agent_ev_{len(items)}",
                        type="AGENT_OPINION",
                        title=entry.get("title") or f"agent cited evidence #{len(items)}",
                        summary=entry.get("summary") or entry.get("content") or _short(dict(entry)),
                        raw_data=dict(entry),
                        is_external=bool(entry.get("externalEvidence", True)),
                        data_source=entry.get("source") or f"Agent:{agent_code}",
                        **base,
                    )
                )
        return items

    def _compute_evidence(self, node, output) -> List[EvidenceItem]:
        base = self._base(node)
        result = output.get("result")
        return [
            EvidenceItem(
                id=f"{node['id']}_computed_metric",
                type="COMPUTED_METRIC",
                title=f"{base['source_node_name']} result",
                summary=f"type {node['type']}, result {_short(result) if result is not None else 'N/A'}",
                raw_data={
                    "result": result,
                    "precision": output.get("precision"),
                    "variables": output.get("variables"),
                    "computedAt": output.get("computedAt"),
                },
                data_source="ComputeEngine",
                **base,
            )
        ]

    def build_bundle(self, evidence: List[EvidenceItem]) -> Dict[str, Any]:
        strong = sum(1 for item in evidence if not item.is_external)
        count_by_type: Dict[str, int] = {}
        for item in evidence:
            count_by_type[item.type] = count_by_type.get(item.type, 0) + 1
        return {
            "evidence": [item.to_dict() for item in evidence],
            "strongEvidenceCount": strong,
            "externalEvidenceCount": len(evidence) - strong,
            "meetsMinStrongEvidence": strong >= self.min_strong_evidence,
            "countByType": count_by_type,
            "evidenceSummary": "; ".join(f"{item.type}: {item.title}" for item in evidence[:10]),
        }


__all__ = ["EvidenceCollector", "EvidenceItem", "STRONG_EVIDENCE_SOURCES"]
