from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from flowloom.logging import get_logger

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Durable store implementations available to the runtime."""

    MEMORY = "memory"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the execution engine."""

    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "FLOWLOOM_STORE")
    state_path: str | None = env_field(
        None,
        "FLOWLOOM_STATE_PATH",
        description="JSON file the memory store snapshots into; unset keeps state in process only",
    )
    dag_max_concurrency: int = env_field(
        5,
        "DAG_MAX_CONCURRENCY",
        description="Upper bound on DAG nodes running at the same time within one execution",
    )
    subflow_max_depth: int = env_field(
        4,
        "SUBFLOW_MAX_DEPTH",
        description="Maximum nesting of subflow-call nodes",
    )
    experiment_min_sample_size: int = env_field(
        10,
        "EXPERIMENT_MIN_SAMPLE_SIZE",
        description="Samples a variant needs before auto-stop may abort the experiment",
    )
    min_strong_evidence: int = env_field(
        2,
        "MIN_STRONG_EVIDENCE",
        description="Strong evidence items required before a decision is publishable",
    )
    timeline_default_limit: int = env_field(200, "TIMELINE_DEFAULT_LIMIT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("store_backend")
    @classmethod
    def _validate_store_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("dag_max_concurrency", "subflow_max_depth")
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value < 1:
            logger.warning("settings_value_clamped", value=value, clamped_to=1)
            return 1
        return value

    @field_validator("state_path")
    @classmethod
    def _blank_state_path(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
