from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from flowloom.logging import get_logger
from flowloom.service.errors import BadRequestError, NotFoundError
from flowloom.storage.errors import ConstraintViolation
from flowloom.storage.memory import MemoryStore
from flowloom.storage.models import ExperimentRun, WorkflowExperiment

DEFAULT_MIN_SAMPLE_SIZE = 10
# Evaluation thresholds for recommending a variant
EVALUATION_MIN_TOTAL_RUNS = 20
SUCCESS_RATE_DELTA_THRESHOLD = 0.1
DURATION_DELTA_THRESHOLD_MS = 1000
RECENT_RUNS_LIMIT = 50


@dataclass(frozen=True)
class ExperimentRoutingContext:
    experiment_id: str
    variant: str
    version_id: str


def _empty_variant_metrics() -> Dict[str, Any]:
    return {
        "totalExecutions": 0,
        "successCount": 0,
        "failureCount": 0,
        "successRate": 0.0,
        "badCaseRate": 0.0,
        "avgDurationMs": 0,
        "p95DurationMs": 0,
    }


def read_metrics_snapshot(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    raw = raw if isinstance(raw, dict) else {}
    return {
        "variantA": dict(raw.get("variantA") or _empty_variant_metrics()),
        "variantB": dict(raw.get("variantB") or _empty_variant_metrics()),
        "lastUpdatedAt": raw.get("lastUpdatedAt") or datetime.utcnow().isoformat(),
    }


class ExperimentService:
    """A/B traffic routing between two versions plus outcome metrics."""

    def __init__(
        self,
        store: MemoryStore,
        *,
        random_source: Callable[[], float] = random.random,
        min_sample_size: int = DEFAULT_MIN_SAMPLE_SIZE,
    ) -> None:
        self.store = store
        self.random_source = random_source
        self.min_sample_size = min_sample_size
        self.logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_experiment(
        self,
        user_id: str,
        *,
        experiment_code: str,
        name: str,
        workflow_definition_id: str,
        variant_a_version_id: str,
        variant_b_version_id: str,
        traffic_split_percent: int = 50,
        max_executions: Optional[int] = None,
        auto_stop_enabled: bool = True,
        bad_case_threshold: float = 0.2,
    ) -> WorkflowExperiment:
        for label, version_id in (("A", variant_a_version_id), ("B", variant_b_version_id)):
            version = self.store.get_workflow_version(version_id)
            if not version:
                raise NotFoundError(f"variant {label} version not found", detail={"version_id": version_id})
            if version.workflow_definition_id != workflow_definition_id:
                raise BadRequestError("variant versions must belong to the same workflow definition")
        if not 0 <= traffic_split_percent <= 100:
            raise BadRequestError("traffic_split_percent must be within [0, 100]")
        try:
            return self.store.create_experiment(
                experiment_code=experiment_code,
                name=name,
                workflow_definition_id=workflow_definition_id,
                variant_a_version_id=variant_a_version_id,
                variant_b_version_id=variant_b_version_id,
                created_by_user_id=user_id,
                traffic_split_percent=traffic_split_percent,
                max_executions=max_executions,
                auto_stop_enabled=auto_stop_enabled,
                bad_case_threshold=bad_case_threshold,
            )
        except ConstraintViolation as exc:
            raise BadRequestError(exc.message, detail=exc.detail) from exc

    def get_experiment(self, user_id: str, experiment_id: str) -> WorkflowExperiment:
        experiment = self.store.get_experiment(experiment_id)
        if not experiment or experiment.created_by_user_id != user_id:
            raise NotFoundError("experiment not found", detail={"experiment_id": experiment_id})
        return experiment

    def start(self, user_id: str, experiment_id: str) -> WorkflowExperiment:
        experiment = self.get_experiment(user_id, experiment_id)
        if experiment.status not in {"DRAFT", "PAUSED"}:
            raise BadRequestError(f"experiment in status {experiment.status} cannot start")
        return self.store.update_experiment(
            experiment_id,
            status="RUNNING",
            started_at=experiment.started_at or datetime.utcnow(),
        )

    def pause(self, user_id: str, experiment_id: str) -> WorkflowExperiment:
        experiment = self.get_experiment(user_id, experiment_id)
        if experiment.status != "RUNNING":
            raise BadRequestError("only a running experiment can be paused")
        return self.store.update_experiment(experiment_id, status="PAUSED")

    def abort(self, user_id: str, experiment_id: str) -> WorkflowExperiment:
        experiment = self.get_experiment(user_id, experiment_id)
        if experiment.status == "COMPLETED":
            raise BadRequestError("a completed experiment cannot be aborted")
        return self.store.update_experiment(experiment_id, status="ABORTED", ended_at=datetime.utcnow())

    def conclude(
        self,
        user_id: str,
        experiment_id: str,
        *,
        winner_variant: str,
        conclusion_summary: Optional[str] = None,
    ) -> WorkflowExperiment:
        experiment = self.get_experiment(user_id, experiment_id)
        if experiment.status not in {"RUNNING", "PAUSED"}:
            raise BadRequestError(f"experiment in status {experiment.status} cannot be concluded")
        if winner_variant not in {"A", "B"}:
            raise BadRequestError("winner_variant must be A or B")
        snapshot = read_metrics_snapshot(experiment.metrics_snapshot)
        snapshot["concludedAt"] = datetime.utcnow().isoformat()
        snapshot["totalExecutionsA"] = experiment.current_executions_a
        snapshot["totalExecutionsB"] = experiment.current_executions_b
        return self.store.update_experiment(
            experiment_id,
            status="COMPLETED",
            ended_at=datetime.utcnow(),
            winner_variant=winner_variant,
            conclusion_summary=conclusion_summary,
            metrics_snapshot=snapshot,
        )

    # ------------------------------------------------------------------
    # Routing and recording
    # ------------------------------------------------------------------

    def route_traffic(self, experiment_id: str) -> ExperimentRoutingContext:
        experiment = self.store.get_experiment(experiment_id)
        if not experiment or experiment.status != "RUNNING":
            raise BadRequestError("experiment missing or not running", detail={"experiment_id": experiment_id})
        if experiment.max_executions:
            total = experiment.current_executions_a + experiment.current_executions_b
            if total >= experiment.max_executions:
                raise BadRequestError(
                    "experiment reached its execution cap",
                    detail={"experiment_id": experiment_id, "max_executions": experiment.max_executions},
                )
        variant = "A" if self.random_source() * 100 < experiment.traffic_split_percent else "B"
        version_id = experiment.variant_a_version_id if variant == "A" else experiment.variant_b_version_id
        self.store.increment_experiment_counter(experiment_id, variant)
        self.logger.info(
            "experiment_traffic_routed",
            experiment=experiment.experiment_code,
            variant=variant,
            version_id=version_id,
        )
        return ExperimentRoutingContext(experiment_id=experiment_id, variant=variant, version_id=version_id)

    def record_metrics(
        self,
        experiment_id: str,
        *,
        variant: str,
        success: bool,
        duration_ms: int,
        node_count: int = 0,
        failure_category: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        experiment = self.store.get_experiment(experiment_id)
        if not experiment or experiment.status != "RUNNING":
            raise BadRequestError("experiment missing or not running", detail={"experiment_id": experiment_id})
        if variant not in {"A", "B"}:
            raise BadRequestError("variant must be A or B")

        if execution_id:
            self.store.append_experiment_run(
                experiment_id=experiment_id,
                workflow_execution_id=execution_id,
                variant=variant,
                success=success,
                duration_ms=duration_ms,
                node_count=node_count,
                failure_category=failure_category,
            )

        snapshot = read_metrics_snapshot(experiment.metrics_snapshot)
        metrics = snapshot["variantA" if variant == "A" else "variantB"]
        metrics["totalExecutions"] += 1
        if success:
            metrics["successCount"] += 1
        else:
            metrics["failureCount"] += 1
        total = metrics["totalExecutions"]
        metrics["successRate"] = metrics["successCount"] / total
        metrics["badCaseRate"] = metrics["failureCount"] / total
        previous_total = metrics["avgDurationMs"] * (total - 1)
        metrics["avgDurationMs"] = round((previous_total + duration_ms) / total)
        # p95 approximated by the max; an exact p95 needs the full distribution
        metrics["p95DurationMs"] = max(metrics["p95DurationMs"], duration_ms)
        snapshot["lastUpdatedAt"] = datetime.utcnow().isoformat()
        experiment = self.store.update_experiment(experiment_id, metrics_snapshot=snapshot)

        stopped, reason = self._check_auto_stop(experiment, snapshot)
        return {"recorded": True, "autoStopped": stopped, "reason": reason}

    def _check_auto_stop(self, experiment: WorkflowExperiment, snapshot: Dict[str, Any]):
        if not experiment.auto_stop_enabled:
            return False, None
        for key, label in (("variantA", "A"), ("variantB", "B")):
            metrics = snapshot[key]
            if (
                metrics["totalExecutions"] >= self.min_sample_size
                and metrics["badCaseRate"] > experiment.bad_case_threshold
            ):
                reason = (
                    f"variant {label} badCaseRate={metrics['badCaseRate']:.1%} exceeds "
                    f"threshold {experiment.bad_case_threshold:.0%} over {metrics['totalExecutions']} samples"
                )
                self.logger.warning(
                    "experiment_auto_stopped",
                    experiment=experiment.experiment_code,
                    variant=label,
                    bad_case_rate=metrics["badCaseRate"],
                )
                self.store.update_experiment(
                    experiment.id,
                    status="ABORTED",
                    ended_at=datetime.utcnow(),
                    conclusion_summary=f"[auto-stop] {reason}",
                )
                return True, reason
        return False, None

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def list_runs(
        self,
        experiment_id: str,
        *,
        variant: Optional[str] = None,
        success: Optional[bool] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        runs = self.store.list_experiment_runs(experiment_id, variant=variant, success=success)
        page, page_size = max(page, 1), max(page_size, 1)
        start = (page - 1) * page_size
        return {
            "data": runs[start : start + page_size],
            "total": len(runs),
            "page": page,
            "pageSize": page_size,
            "totalPages": -(-len(runs) // page_size),
        }

    def evaluation(self, user_id: str, experiment_id: str) -> Dict[str, Any]:
        experiment = self.get_experiment(user_id, experiment_id)
        metrics = read_metrics_snapshot(experiment.metrics_snapshot)
        recent_runs: List[ExperimentRun] = self.store.list_experiment_runs(experiment_id)[:RECENT_RUNS_LIMIT]
        a, b = metrics["variantA"], metrics["variantB"]
        comparison = None
        if a["totalExecutions"] > 0 and b["totalExecutions"] > 0:
            success_delta = a["successRate"] - b["successRate"]
            duration_delta = a["avgDurationMs"] - b["avgDurationMs"]
            recommendation = "not enough samples, keep the experiment running"
            if a["totalExecutions"] + b["totalExecutions"] >= EVALUATION_MIN_TOTAL_RUNS:
                if abs(success_delta) > SUCCESS_RATE_DELTA_THRESHOLD:
                    recommendation = (
                        "variant A succeeds significantly more often, choose A"
                        if success_delta > 0
                        else "variant B succeeds significantly more often, choose B"
                    )
                elif abs(duration_delta) > DURATION_DELTA_THRESHOLD_MS:
                    recommendation = (
                        "variant A is faster on average, choose A"
                        if duration_delta < 0
                        else "variant B is faster on average, choose B"
                    )
                else:
                    recommendation = "variants perform alike, collect more samples"
            comparison = {
                "successRateDelta": success_delta,
                "avgDurationDelta": duration_delta,
                "recommendation": recommendation,
            }
        return {
            "experiment": experiment,
            "metrics": metrics,
            "recentRuns": recent_runs,
            "variantComparison": comparison,
        }


__all__ = ["ExperimentService", "ExperimentRoutingContext", "read_metrics_snapshot"]
