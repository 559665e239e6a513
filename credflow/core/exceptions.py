"""
Custom Exceptions for CREDFLOW

This module defines custom exception types for error handling, HTTP mapping
and queue retry decisions.

Exception Hierarchy:
- CredflowException (base)
  - ValidationError (400, don't retry)
  - AuthError (401, don't retry)
  - NotFoundError (404, don't retry)
  - StepNotPendingError (409, don't retry)
  - RateLimitError (429, retry later)
  - WorkflowError
    - GraphValidationError (don't retry)
    - GraphExecutionError (retry)
  - NodeEffectError (recorded on the run, run fails)
  - EngineError (hard engine failure, retry / fallback)
  - QueueProcessingError (recorded on the queue item)
    - StaleClaimError
"""


class CredflowException(Exception):
    """Base exception for all CREDFLOW errors"""

    status_code = 500

    def __init__(self, message: str, retry_allowed: bool = True):
        super().__init__(message)
        self.message = message
        self.retry_allowed = retry_allowed


# ============================================================================
# TRIGGER / API ERRORS
# ============================================================================

class ValidationError(CredflowException):
    """
    Bad payload or request (missing required field, malformed JSON).
    Surfaced to the caller, no run is created.
    """

    status_code = 400

    def __init__(self, message: str, field: str = None):
        super().__init__(message, retry_allowed=False)
        self.field = field


class AuthError(CredflowException):
    """Missing or invalid credentials on an inbound trigger."""

    status_code = 401

    def __init__(self, message: str):
        super().__init__(f"Unauthorized: {message}", retry_allowed=False)


class NotFoundError(CredflowException):
    """Referenced record does not exist (or is inactive)."""

    status_code = 404

    def __init__(self, message: str):
        super().__init__(message, retry_allowed=False)


class StepNotPendingError(CredflowException):
    """
    Resume called on a step that is not waiting for an external event.
    Duplicate callbacks land here; state is left untouched.
    """

    status_code = 409

    def __init__(self, step_execution_id: int, status: str):
        super().__init__(
            f"Step execution {step_execution_id} is not pending (status: {status})",
            retry_allowed=False
        )
        self.step_execution_id = step_execution_id
        self.status = status


class RateLimitError(CredflowException):
    """Trigger exceeded its per-minute budget."""

    status_code = 429

    def __init__(self, message: str, limit: int = None):
        super().__init__(message, retry_allowed=True)
        self.limit = limit


# ============================================================================
# WORKFLOW ERRORS
# ============================================================================

class WorkflowError(CredflowException):
    """Base class for workflow-related errors"""
    pass


class GraphValidationError(WorkflowError):
    """
    Workflow structure is invalid (e.g., no start node, unreachable nodes).
    Should NOT be retried - fix the workflow definition.
    """

    status_code = 422

    def __init__(self, message: str):
        super().__init__(message, retry_allowed=False)


class GraphExecutionError(WorkflowError):
    """
    Graph walk failed (e.g., no edge for a condition result, step guard hit).
    """

    def __init__(self, message: str):
        super().__init__(message, retry_allowed=True)


# ============================================================================
# ENGINE ERRORS
# ============================================================================

class NodeEffectError(CredflowException):
    """
    A node effect (email, http, webhook-call, database-op) failed.
    Recorded on the StepExecution and the Execution; the run terminates.
    """

    def __init__(self, message: str, node_id: str = None, node_type: str = None):
        super().__init__(message, retry_allowed=False)
        self.node_id = node_id
        self.node_type = node_type


class EngineError(CredflowException):
    """
    Hard failure of an engine invocation (database down, bug).
    The queue worker may fall back to the other engine variant.
    """

    def __init__(self, message: str, execution_id: int = None):
        super().__init__(message, retry_allowed=True)
        self.execution_id = execution_id


# ============================================================================
# QUEUE ERRORS
# ============================================================================

class QueueProcessingError(CredflowException):
    """Uncaught error while dispatching a queue item."""

    def __init__(self, message: str, queue_item_id: int = None, retry_allowed: bool = True):
        super().__init__(message, retry_allowed=retry_allowed)
        self.queue_item_id = queue_item_id


class StaleClaimError(QueueProcessingError):
    """A worker held a claim past the staleness window (crashed mid-item)."""

    def __init__(self, queue_item_id: int = None, stale_after_seconds: int = None):
        super().__init__(
            f"Claim went stale after {stale_after_seconds}s; worker presumed dead",
            queue_item_id=queue_item_id
        )
        self.stale_after_seconds = stale_after_seconds
