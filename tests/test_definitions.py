"""Tests for workflow definitions, versioning and publish checks."""

from __future__ import annotations

import pytest

from flowloom.service.definitions import DefinitionService, self_reference_issues
from flowloom.service.errors import BadRequestError, NotFoundError
from flowloom.storage.memory import MemoryStore

USER = "user-1"
DSL = {"nodes": [{"id": "start", "type": "trigger"}, {"id": "a", "type": "task"}], "edges": [{"from": "start", "to": "a"}]}


@pytest.fixture
def service():
    return DefinitionService(MemoryStore())


def test_create_and_access(service):
    private = service.create_definition(USER, "private", "Private", mode="dag")
    public = service.create_definition("owner", "public", "Public", template_source="PUBLIC")
    assert private.mode == "DAG"
    assert service.get_definition(USER, public.id).id == public.id
    with pytest.raises(NotFoundError):
        service.get_definition("stranger", private.id)
    with pytest.raises(BadRequestError):
        service.create_definition(USER, "private", "Duplicate")
    with pytest.raises(BadRequestError):
        service.create_definition(USER, "odd", "Odd", template_source="SHARED")


def test_only_owners_add_versions(service):
    public = service.create_definition("owner", "public", "Public", template_source="PUBLIC")
    with pytest.raises(NotFoundError):
        service.create_version(USER, public.id, "v1", DSL)


def test_version_stores_canonical_snapshot(service):
    definition = service.create_definition(USER, "wf", "Workflow")
    version = service.create_version(USER, definition.id, "v1", {**DSL, "mode": "linear"}, changelog="first")
    assert version.status == "DRAFT"
    assert version.dsl_snapshot["mode"] == "LINEAR"
    assert version.dsl_snapshot["edges"][0]["edgeType"] == "data-edge"
    assert len(version.dsl_fingerprint) == 64
    with pytest.raises(BadRequestError):
        service.create_version(USER, definition.id, "v1", DSL)


def test_resolve_version(service):
    definition = service.create_definition(USER, "wf", "Workflow")
    other = service.create_definition(USER, "other", "Other")
    draft = service.create_version(USER, definition.id, "v1", DSL)
    foreign = service.create_version(USER, other.id, "v1", DSL)
    with pytest.raises(BadRequestError):
        service.resolve_version(definition)
    assert service.resolve_version(definition, draft.id).id == draft.id
    with pytest.raises(BadRequestError):
        service.resolve_version(definition, foreign.id)
    published = service.publish_version(USER, draft.id)
    assert published.status == "PUBLISHED"
    assert service.resolve_version(definition).id == draft.id
    assert [v.version_code for v in service.list_versions(USER, definition.id)] == ["v1"]


def test_publish_unknown_version(service):
    with pytest.raises(NotFoundError):
        service.publish_version(USER, "missing")


def test_validate_reports_warnings_and_errors(service):
    issues = service.validate({"nodes": [{"id": "a", "type": "t"}, {"id": "b", "type": "t"}]})
    assert [(i["code"], i["severity"]) for i in issues] == [("WF004", "WARN"), ("WF004", "WARN")]
    assert service.validate({"nodes": []})[0]["code"] == "WF001"


def test_self_reference_issues():
    nodes = [
        {"id": "loop", "type": "subflow-call", "config": {"workflowDefinitionId": "wf-1"}},
        {"id": "ok", "type": "subflow-call", "config": {"workflowDefinitionId": "wf-2"}},
    ]
    assert [i["nodeId"] for i in self_reference_issues(nodes, "wf-1")] == ["loop"]
