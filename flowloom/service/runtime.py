from __future__ import annotations

import threading
from typing import Iterable, Optional

from flowloom.config import StoreBackend, get_settings, reset_settings_cache
from flowloom.logging import get_logger
from flowloom.service.debate import DebateTraceService
from flowloom.service.definitions import DefinitionService
from flowloom.service.evidence import EvidenceCollector
from flowloom.service.executors import NodeExecutor, default_registry
from flowloom.service.experiment import ExperimentService
from flowloom.service.params import ParameterCenter, ParamSnapshotBuilder
from flowloom.service.replay import ReplayAssembler
from flowloom.service.scheduler import DagScheduler
from flowloom.service.subflow import SubflowCallExecutor
from flowloom.service.workflow import WorkflowExecutionService
from flowloom.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the execution engine."""

    def __init__(self, executors: Iterable[NodeExecutor] = ()):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            store_backend=self.settings.store_backend.value,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.store_backend != StoreBackend.MEMORY:
                raise ValueError(f"unsupported store backend: {self.settings.store_backend}")
            self.store = MemoryStore(state_path=self.settings.state_path)
            logger.info(
                "runtime_store_initialized",
                store_type=self.settings.store_backend.value,
                persisted=self.settings.state_path is not None,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=self.settings.store_backend.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.subflow_executor = SubflowCallExecutor(max_depth=self.settings.subflow_max_depth)
        self.registry = default_registry((*tuple(executors), self.subflow_executor))
        self.dag_scheduler = DagScheduler(
            self.registry, max_concurrency=self.settings.dag_max_concurrency
        )
        self.parameter_center = ParameterCenter(self.store)
        self.snapshot_builder = ParamSnapshotBuilder(self.store, self.parameter_center)
        self.experiments = ExperimentService(
            self.store, min_sample_size=self.settings.experiment_min_sample_size
        )
        self.evidence = EvidenceCollector(min_strong_evidence=self.settings.min_strong_evidence)
        self.replay = ReplayAssembler(self.evidence)
        self.debate_traces = DebateTraceService(self.store)
        self.definitions = DefinitionService(self.store)
        self.workflow = WorkflowExecutionService(
            self.store,
            self.definitions,
            self.registry,
            dag_scheduler=self.dag_scheduler,
            snapshot_builder=self.snapshot_builder,
            experiments=self.experiments,
            replay_assembler=self.replay,
            debate_traces=self.debate_traces,
            timeline_default_limit=self.settings.timeline_default_limit,
        )
        self.subflow_executor.bind(self.workflow)

        logger.info(
            "runtime_init_completed",
            executors=[executor.name for executor in self.registry.executors],
            dag_max_concurrency=self.dag_scheduler.max_concurrency,
            subflow_max_depth=self.subflow_executor.max_depth,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(executors: Optional[Iterable[NodeExecutor]] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(executors or ())
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
