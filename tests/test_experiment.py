"""Tests for A/B experiment lifecycle, traffic routing and outcome metrics."""

from __future__ import annotations

import pytest

from flowloom.service.errors import BadRequestError, NotFoundError
from flowloom.service.experiment import ExperimentService
from flowloom.storage.memory import MemoryStore

USER = "user-1"


class Dice:
    """Deterministic random source returning queued values."""

    def __init__(self, *values):
        self.values = list(values)

    def __call__(self):
        return self.values.pop(0)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def versions(store):
    definition = store.create_workflow_definition("wf", "Workflow", USER)
    v1 = store.create_workflow_version(definition.id, "v1", {"nodes": []}, USER)
    v2 = store.create_workflow_version(definition.id, "v2", {"nodes": []}, USER)
    return definition, v1, v2


def _create(service, versions, **overrides):
    definition, v1, v2 = versions
    values = {
        "experiment_code": "exp",
        "name": "Experiment",
        "workflow_definition_id": definition.id,
        "variant_a_version_id": v1.id,
        "variant_b_version_id": v2.id,
    }
    values.update(overrides)
    return service.create_experiment(USER, **values)


def _running(service, versions, **overrides):
    experiment = _create(service, versions, **overrides)
    return service.start(USER, experiment.id)


class TestLifecycle:
    def test_create_validates_versions_and_split(self, store, versions):
        service = ExperimentService(store)
        other = store.create_workflow_definition("other", "Other", USER)
        foreign = store.create_workflow_version(other.id, "v1", {"nodes": []}, USER)
        with pytest.raises(BadRequestError):
            _create(service, versions, variant_b_version_id=foreign.id)
        with pytest.raises(NotFoundError):
            _create(service, versions, variant_a_version_id="missing")
        with pytest.raises(BadRequestError):
            _create(service, versions, traffic_split_percent=150)

    def test_start_pause_conclude(self, store, versions):
        service = ExperimentService(store)
        experiment = _running(service, versions)
        assert experiment.status == "RUNNING"
        assert service.pause(USER, experiment.id).status == "PAUSED"
        assert service.start(USER, experiment.id).started_at == experiment.started_at

        with pytest.raises(BadRequestError):
            service.conclude(USER, experiment.id, winner_variant="C")
        concluded = service.conclude(USER, experiment.id, winner_variant="B", conclusion_summary="B is faster")
        assert concluded.status == "COMPLETED"
        assert concluded.winner_variant == "B"
        assert "concludedAt" in concluded.metrics_snapshot
        with pytest.raises(BadRequestError):
            service.conclude(USER, experiment.id, winner_variant="A")
        with pytest.raises(BadRequestError):
            service.abort(USER, experiment.id)

    def test_experiments_are_owner_scoped(self, store, versions):
        service = ExperimentService(store)
        experiment = _create(service, versions)
        with pytest.raises(NotFoundError):
            service.get_experiment("someone-else", experiment.id)


class TestRouting:
    def test_split_decides_the_variant(self, store, versions):
        service = ExperimentService(store, random_source=Dice(0.3, 0.7))
        experiment = _running(service, versions, traffic_split_percent=50)
        _, v1, v2 = versions

        first = service.route_traffic(experiment.id)
        second = service.route_traffic(experiment.id)

        assert (first.variant, first.version_id) == ("A", v1.id)
        assert (second.variant, second.version_id) == ("B", v2.id)
        refreshed = store.get_experiment(experiment.id)
        assert (refreshed.current_executions_a, refreshed.current_executions_b) == (1, 1)

    def test_draft_experiments_do_not_route(self, store, versions):
        service = ExperimentService(store)
        experiment = _create(service, versions)
        with pytest.raises(BadRequestError):
            service.route_traffic(experiment.id)

    def test_execution_cap(self, store, versions):
        service = ExperimentService(store, random_source=lambda: 0.0)
        experiment = _running(service, versions, max_executions=2)
        service.route_traffic(experiment.id)
        service.route_traffic(experiment.id)
        with pytest.raises(BadRequestError) as info:
            service.route_traffic(experiment.id)
        assert info.value.detail["max_executions"] == 2


class TestMetrics:
    def test_running_aggregates(self, store, versions):
        service = ExperimentService(store)
        experiment = _running(service, versions)
        service.record_metrics(experiment.id, variant="A", success=True, duration_ms=100, execution_id="e1")
        service.record_metrics(experiment.id, variant="A", success=False, duration_ms=300, execution_id="e2")

        metrics = store.get_experiment(experiment.id).metrics_snapshot["variantA"]
        assert metrics["totalExecutions"] == 2
        assert metrics["successRate"] == 0.5
        assert metrics["avgDurationMs"] == 200
        assert metrics["p95DurationMs"] == 300
        assert service.list_runs(experiment.id, success=False)["total"] == 1

    def test_unknown_variant_and_stopped_experiment_rejected(self, store, versions):
        service = ExperimentService(store)
        experiment = _running(service, versions)
        with pytest.raises(BadRequestError):
            service.record_metrics(experiment.id, variant="C", success=True, duration_ms=1)
        service.pause(USER, experiment.id)
        with pytest.raises(BadRequestError):
            service.record_metrics(experiment.id, variant="A", success=True, duration_ms=1)

    def test_auto_stop_after_minimum_samples(self, store, versions):
        service = ExperimentService(store, min_sample_size=10)
        experiment = _running(service, versions, bad_case_threshold=0.2)
        for _ in range(9):
            result = service.record_metrics(experiment.id, variant="B", success=False, duration_ms=10)
            assert result["autoStopped"] is False

        result = service.record_metrics(experiment.id, variant="B", success=False, duration_ms=10)

        assert result["autoStopped"] is True
        stopped = store.get_experiment(experiment.id)
        assert stopped.status == "ABORTED"
        assert stopped.conclusion_summary.startswith("[auto-stop]")

    def test_auto_stop_can_be_disabled(self, store, versions):
        service = ExperimentService(store, min_sample_size=1)
        experiment = _running(service, versions, auto_stop_enabled=False)
        result = service.record_metrics(experiment.id, variant="A", success=False, duration_ms=10)
        assert result["autoStopped"] is False
        assert store.get_experiment(experiment.id).status == "RUNNING"


def test_evaluation_recommends_the_more_reliable_variant(store, versions):
    service = ExperimentService(store)
    experiment = _running(service, versions, auto_stop_enabled=False)
    for i in range(10):
        service.record_metrics(experiment.id, variant="A", success=True, duration_ms=100, execution_id=f"a{i}")
        service.record_metrics(
            experiment.id, variant="B", success=i % 2 == 0, duration_ms=100, execution_id=f"b{i}"
        )

    report = service.evaluation(USER, experiment.id)

    comparison = report["variantComparison"]
    assert comparison["successRateDelta"] == pytest.approx(0.5)
    assert "choose A" in comparison["recommendation"]
    assert len(report["recentRuns"]) == 20


def test_evaluation_without_both_variants_has_no_comparison(store, versions):
    service = ExperimentService(store)
    experiment = _running(service, versions)
    service.record_metrics(experiment.id, variant="A", success=True, duration_ms=5)
    assert service.evaluation(USER, experiment.id)["variantComparison"] is None
