"""Tests for mapping raised errors onto (failure_category, failure_code)."""

from __future__ import annotations

import asyncio

from flowloom.service.errors import (
    BadRequestError,
    ExecutionCanceledError,
    ExecutionTimeoutError,
    NodeInputUnresolvedError,
    NodeTimeoutError,
    SubflowGuardError,
    ValidationError,
)
from flowloom.service.failure import classify_failure


def test_none_is_internal():
    result = classify_failure(None)
    assert (result.failure_category, result.failure_code) == ("INTERNAL", "EXECUTION_INTERNAL_ERROR")


def test_workflow_failures_keep_their_classification():
    assert classify_failure(NodeTimeoutError("slow")).failure_code == "NODE_TIMEOUT"
    assert classify_failure(ExecutionTimeoutError("late")).failure_code == "EXECUTION_TIMEOUT"
    canceled = classify_failure(ExecutionCanceledError("stop"))
    assert (canceled.failure_category, canceled.failure_code, canceled.message) == (
        "CANCELED",
        "EXECUTION_CANCELED",
        "stop",
    )


def test_explicit_failure_code_overrides_class_default():
    result = classify_failure(SubflowGuardError("too deep", failure_code="SUBFLOW_DEPTH_EXCEEDED"))
    assert result.failure_category == "VALIDATION"
    assert result.failure_code == "SUBFLOW_DEPTH_EXCEEDED"


def test_asyncio_timeout_and_cancel():
    assert classify_failure(asyncio.TimeoutError()).failure_category == "TIMEOUT"
    assert classify_failure(asyncio.CancelledError()).failure_category == "CANCELED"


def test_unresolved_inputs_are_validation_failures():
    result = classify_failure(NodeInputUnresolvedError("node a has unresolved input bindings"))
    assert (result.failure_category, result.failure_code) == ("VALIDATION", "NODE_INPUT_UNRESOLVED")


def test_service_errors_raised_by_business_logic_are_executor_failures():
    for error in (ValidationError("bad field"), BadRequestError("upstream payload rejected", detail={"x": 1})):
        result = classify_failure(error)
        assert (result.failure_category, result.failure_code) == ("EXECUTOR", "NODE_EXECUTOR_ERROR")
        assert result.message == error.message


def test_anything_else_is_an_executor_error():
    result = classify_failure(KeyError("price"))
    assert (result.failure_category, result.failure_code) == ("EXECUTOR", "NODE_EXECUTOR_ERROR")
    assert "price" in result.message


def test_empty_message_falls_back_to_type_name():
    assert classify_failure(RuntimeError()).message == "RuntimeError"


def test_to_dict():
    assert classify_failure(NodeTimeoutError("slow")).to_dict() == {
        "message": "slow",
        "failureCategory": "TIMEOUT",
        "failureCode": "NODE_TIMEOUT",
    }
