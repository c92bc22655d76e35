from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from flowloom.logging import get_logger
from flowloom.service.errors import BadRequestError
from flowloom.storage.errors import ConstraintViolation
from flowloom.storage.memory import MemoryStore
from flowloom.storage.models import DebateRoundTrace


class DebateTraceInput(BaseModel):
    """One participant statement in one debate round."""

    model_config = ConfigDict(extra="forbid")

    workflow_execution_id: str
    round_number: int = Field(ge=0)
    participant_code: str = Field(min_length=1)
    participant_role: Optional[str] = None
    statement_text: str = ""
    confidence: Optional[float] = None
    previous_confidence: Optional[float] = None
    is_judgement: bool = False
    key_points: List[str] = Field(default_factory=list)
    evidence_refs: Dict[str, Any] = Field(default_factory=dict)
    consensus_score: Optional[float] = None


def _average(values: List[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


class DebateTraceService:
    """Append-only debate round traces for DEBATE-mode executions."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store
        self.logger = get_logger(__name__)

    def create_batch(self, traces: Iterable[Union[DebateTraceInput, Mapping[str, Any]]]) -> Dict[str, int]:
        rows: List[Dict[str, Any]] = []
        try:
            for trace in traces:
                model = trace if isinstance(trace, DebateTraceInput) else DebateTraceInput.model_validate(dict(trace))
                rows.append(model.model_dump())
        except PydanticValidationError as exc:
            raise BadRequestError("invalid debate trace", detail={"errors": exc.errors()}) from exc
        if not rows:
            return {"count": 0}
        try:
            count = self.store.append_debate_traces(rows)
        except ConstraintViolation as exc:
            raise BadRequestError(exc.message, detail=exc.detail) from exc
        self.logger.info("debate_traces_written", count=count, execution_id=rows[0]["workflow_execution_id"])
        return {"count": count}

    def find_by_execution(
        self,
        workflow_execution_id: str,
        *,
        round_number: Optional[int] = None,
        participant_code: Optional[str] = None,
        is_judgement: Optional[bool] = None,
    ) -> List[DebateRoundTrace]:
        return self.store.list_debate_traces(
            workflow_execution_id,
            round_number=round_number,
            participant_code=participant_code,
            is_judgement=is_judgement,
        )

    def debate_timeline(self, workflow_execution_id: str) -> Dict[str, Any]:
        by_round: Dict[int, List[DebateRoundTrace]] = {}
        for trace in self.store.list_debate_traces(workflow_execution_id):
            by_round.setdefault(trace.round_number, []).append(trace)
        rounds = []
        for round_number in sorted(by_round):
            entries = by_round[round_number]
            avg_confidence = _average([e.confidence for e in entries if e.confidence is not None])
            avg_previous = _average(
                [e.previous_confidence for e in entries if e.previous_confidence is not None]
            )
            rounds.append(
                {
                    "roundNumber": round_number,
                    "entries": entries,
                    "roundSummary": {
                        "participantCount": len({e.participant_code for e in entries}),
                        "hasJudgement": any(e.is_judgement for e in entries),
                        "avgConfidence": avg_confidence,
                        "confidenceDelta": (
                            avg_confidence - avg_previous
                            if avg_confidence is not None and avg_previous is not None
                            else None
                        ),
                    },
                }
            )
        return {
            "executionId": workflow_execution_id,
            "totalRounds": len(rounds),
            "rounds": rounds,
        }


__all__ = ["DebateTraceService", "DebateTraceInput"]
