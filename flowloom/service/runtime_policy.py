from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

# Per-node policy bounds
DEFAULT_TIMEOUT_MS = 30000
MIN_TIMEOUT_MS = 1000
MAX_TIMEOUT_MS = 120000
DEFAULT_RETRY_COUNT = 0
MAX_RETRY_COUNT = 5
DEFAULT_RETRY_BACKOFF_MS = 1000
MAX_RETRY_BACKOFF_MS = 60000

ON_ERROR_FAIL_FAST = "FAIL_FAST"
ON_ERROR_CONTINUE = "CONTINUE"
ON_ERROR_ROUTE_TO_ERROR = "ROUTE_TO_ERROR"
ON_ERROR_POLICIES = (ON_ERROR_FAIL_FAST, ON_ERROR_CONTINUE, ON_ERROR_ROUTE_TO_ERROR)
DEFAULT_ON_ERROR = ON_ERROR_CONTINUE


@dataclass(frozen=True)
class RuntimePolicy:
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    retry_count: int = DEFAULT_RETRY_COUNT
    retry_backoff_ms: int = DEFAULT_RETRY_BACKOFF_MS
    on_error: str = DEFAULT_ON_ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timeoutMs": self.timeout_ms,
            "retryCount": self.retry_count,
            "retryBackoffMs": self.retry_backoff_ms,
            "onError": self.on_error,
        }


def _coerce_int(value: Any) -> Optional[int]:
    # bool is an int subclass but never a valid numeric policy value
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = float(text)
        except ValueError:
            return None
        if math.isnan(parsed) or math.isinf(parsed):
            return None
        return int(parsed)
    return None


def _coerce_on_error(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalized = value.strip().upper()
    return normalized if normalized in ON_ERROR_POLICIES else None


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _first_valid(
    sources: List[Mapping[str, Any]],
    key: str,
    coerce: Callable[[Any], Any],
) -> Any:
    for source in sources:
        if key not in source:
            continue
        coerced = coerce(source[key])
        if coerced is not None:
            return coerced
    return None


def _clamp(value: Optional[int], bounds: Tuple[int, int], default: int) -> int:
    if value is None:
        return default
    low, high = bounds
    return max(low, min(high, value))


def policy_sources(node: Mapping[str, Any], run_policy: Optional[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    """Ordered candidate sources; the first one carrying a valid value wins."""

    return [
        _as_mapping(node.get("runtimePolicy")),
        _as_mapping(node.get("config")),
        _as_mapping(_as_mapping(run_policy).get("nodeDefaults")),
    ]


def resolve_runtime_policy(
    node: Mapping[str, Any], run_policy: Optional[Mapping[str, Any]] = None
) -> RuntimePolicy:
    """Resolve the effective timeout/retry/on-error policy for ``node``.

    Pure and total: malformed inputs fall through to the next source and
    finally to the defaults, so this never raises.
    """

    sources = policy_sources(_as_mapping(node), run_policy)
    return RuntimePolicy(
        timeout_ms=_clamp(
            _first_valid(sources, "timeoutMs", _coerce_int),
            (MIN_TIMEOUT_MS, MAX_TIMEOUT_MS),
            DEFAULT_TIMEOUT_MS,
        ),
        retry_count=_clamp(
            _first_valid(sources, "retryCount", _coerce_int),
            (0, MAX_RETRY_COUNT),
            DEFAULT_RETRY_COUNT,
        ),
        retry_backoff_ms=_clamp(
            _first_valid(sources, "retryBackoffMs", _coerce_int),
            (0, MAX_RETRY_BACKOFF_MS),
            DEFAULT_RETRY_BACKOFF_MS,
        ),
        on_error=_first_valid(sources, "onError", _coerce_on_error) or DEFAULT_ON_ERROR,
    )


__all__ = [
    "RuntimePolicy",
    "resolve_runtime_policy",
    "policy_sources",
    "ON_ERROR_FAIL_FAST",
    "ON_ERROR_CONTINUE",
    "ON_ERROR_ROUTE_TO_ERROR",
]
