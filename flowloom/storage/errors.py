from __future__ import annotations

from typing import Any, Dict, Optional

# Unique indexes the store enforces; callers branch on these names
IDEMPOTENCY_BY_VERSION = "uq_execution_version_user_key"
IDEMPOTENCY_BY_EXPERIMENT = "uq_execution_experiment_user_key"
NODE_EXECUTION_ONCE = "uq_node_execution_execution_node"


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or reference constraint is violated.

    ``constraint`` names the violated index so a caller can tell an
    idempotency race (re-read the winner) from a genuine data defect.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.constraint = constraint

    @property
    def is_idempotency_collision(self) -> bool:
        return self.constraint in {IDEMPOTENCY_BY_VERSION, IDEMPOTENCY_BY_EXPERIMENT}


__all__ = [
    "ConstraintViolation",
    "IDEMPOTENCY_BY_VERSION",
    "IDEMPOTENCY_BY_EXPERIMENT",
    "NODE_EXECUTION_ONCE",
]
