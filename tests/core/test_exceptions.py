"""
Unit Tests for Custom Exceptions

Tests cover:
- Exception hierarchy
- retry_allowed flag behavior
- HTTP status mapping
- Exception attributes
"""

import pytest

from credflow.core.exceptions import (
    CredflowException,
    ValidationError,
    AuthError,
    NotFoundError,
    StepNotPendingError,
    RateLimitError,
    WorkflowError,
    GraphValidationError,
    GraphExecutionError,
    NodeEffectError,
    EngineError,
    QueueProcessingError,
    StaleClaimError,
)


# ============================================================================
# BASE EXCEPTION TESTS
# ============================================================================

@pytest.mark.unit
def test_credflow_exception_base():
    exc = CredflowException("Test error")

    assert str(exc) == "Test error"
    assert exc.message == "Test error"
    assert exc.retry_allowed == True  # Default
    assert exc.status_code == 500


@pytest.mark.unit
def test_credflow_exception_no_retry():
    exc = CredflowException("No retry", retry_allowed=False)

    assert exc.retry_allowed == False


# ============================================================================
# TRIGGER / API ERRORS
# ============================================================================

@pytest.mark.unit
@pytest.mark.parametrize("exc,status,retry", [
    (ValidationError("bad", field="cpf"), 400, False),
    (AuthError("Missing API key"), 401, False),
    (NotFoundError("Webhook not found"), 404, False),
    (StepNotPendingError(7, "completed"), 409, False),
    (RateLimitError("Rate limit exceeded", limit=1), 429, True),
])
def test_api_error_status_codes(exc, status, retry):
    assert isinstance(exc, CredflowException)
    assert exc.status_code == status
    assert exc.retry_allowed == retry


@pytest.mark.unit
def test_auth_error_message_prefix():
    assert AuthError("Invalid API key").message == "Unauthorized: Invalid API key"


@pytest.mark.unit
def test_step_not_pending_attributes():
    exc = StepNotPendingError(42, "completed")

    assert exc.step_execution_id == 42
    assert exc.status == "completed"
    assert "not pending (status: completed)" in exc.message


# ============================================================================
# WORKFLOW / ENGINE ERRORS
# ============================================================================

@pytest.mark.unit
def test_graph_validation_error():
    """GraphValidationError does not allow retry"""
    exc = GraphValidationError("Invalid graph structure")

    assert isinstance(exc, WorkflowError)
    assert exc.retry_allowed == False


@pytest.mark.unit
def test_graph_execution_error():
    """GraphExecutionError allows retry"""
    exc = GraphExecutionError("No edge found")

    assert isinstance(exc, WorkflowError)
    assert exc.retry_allowed == True


@pytest.mark.unit
def test_workflow_error_retry_flag():
    assert WorkflowError("Workflow 3 is inactive", retry_allowed=False).retry_allowed == False


@pytest.mark.unit
def test_node_effect_error_attributes():
    exc = NodeEffectError("HTTP POST failed", node_id="registry_check", node_type="http")

    assert exc.node_id == "registry_check"
    assert exc.node_type == "http"
    assert exc.retry_allowed == False


@pytest.mark.unit
def test_engine_error():
    exc = EngineError("db down", execution_id=12)

    assert exc.execution_id == 12
    assert exc.retry_allowed == True


# ============================================================================
# QUEUE ERRORS
# ============================================================================

@pytest.mark.unit
def test_stale_claim_error():
    exc = StaleClaimError(queue_item_id=5, stale_after_seconds=900)

    assert isinstance(exc, QueueProcessingError)
    assert exc.queue_item_id == 5
    assert exc.message == "Claim went stale after 900s; worker presumed dead"


@pytest.mark.unit
def test_exceptions_can_be_caught_as_base():
    try:
        raise QueueProcessingError("timed out", queue_item_id=3)
    except CredflowException as e:
        assert e.queue_item_id == 3
