from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional

from flowloom.service.errors import ServiceError, WorkflowFailure

FAILURE_CATEGORIES = ("TIMEOUT", "CANCELED", "EXECUTOR", "INTERNAL", "VALIDATION")


@dataclass(frozen=True)
class FailureClassification:
    message: str
    failure_category: str
    failure_code: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "message": self.message,
            "failureCategory": self.failure_category,
            "failureCode": self.failure_code,
        }


def _message_for(error: BaseException, fallback: str) -> str:
    if isinstance(error, ServiceError):
        return error.message or fallback
    text = str(error)
    return text if text else fallback


def classify_failure(error: Optional[BaseException]) -> FailureClassification:
    """Map any raised error onto a (category, code) pair. Total and deterministic."""

    if error is None:
        return FailureClassification("unknown error", "INTERNAL", "EXECUTION_INTERNAL_ERROR")
    if isinstance(error, WorkflowFailure):
        return FailureClassification(
            _message_for(error, "workflow failure"),
            error.failure_category,
            error.failure_code,
        )
    if isinstance(error, asyncio.TimeoutError):
        return FailureClassification(_message_for(error, "node timed out"), "TIMEOUT", "NODE_TIMEOUT")
    if isinstance(error, asyncio.CancelledError):
        return FailureClassification(
            _message_for(error, "execution canceled"), "CANCELED", "EXECUTION_CANCELED"
        )
    # anything else came from node business logic, service errors included
    return FailureClassification(
        _message_for(error, type(error).__name__), "EXECUTOR", "NODE_EXECUTOR_ERROR"
    )


__all__ = ["FailureClassification", "classify_failure", "FAILURE_CATEGORIES"]
