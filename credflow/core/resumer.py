"""
Resumer

External entry point for suspended runs. Form submissions, approval
decisions and signature callbacks call resume() with the pending step id;
the step is claimed atomically (pending -> running) so duplicate callbacks
are rejected without touching state.

Also hosts the out-of-band operations on live runs:
- cancel(): operator abort of a running execution
- expire_suspended(): fail steps that waited longer than the suspension timeout
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..models import Execution, StepExecution, Workflow
from ..models.execution import ExecutionStatus
from ..models.step_execution import StepStatus
from .context import ContextManager
from .engine import GraphEngine, CheckpointingGraphEngine, RunOutcome, RunResult
from .logging_config import set_execution_id
from .notifications import NotificationSink, LoggingNotificationSink, NotificationEvent
from .exceptions import (
    ValidationError,
    NotFoundError,
    StepNotPendingError,
    GraphExecutionError,
)

logger = logging.getLogger(__name__)


class Decision:
    APPROVED = "approved"
    REJECTED = "rejected"

    ALL = (APPROVED, REJECTED)


class Resumer:
    """
    Re-enters the engine after an external event.

    Args:
        db_session: SQLAlchemy session
        engines: Engine per variant ("v1" / "v2"); defaults are built on the session
        notifier: Notification sink for rejections and cancellations
    """

    def __init__(
        self,
        db_session: Session,
        engines: Optional[Dict[str, GraphEngine]] = None,
        notifier: Optional[NotificationSink] = None
    ):
        self.db_session = db_session
        self.notifier = notifier or LoggingNotificationSink()
        if engines is None:
            engines = {
                "v1": GraphEngine(db_session, notifier=self.notifier),
                "v2": CheckpointingGraphEngine(db_session, notifier=self.notifier),
            }
        self.engines = engines

    def _claim_step(self, step_execution_id: int) -> StepExecution:
        """
        Atomically move a step from pending to running.

        Raises:
            NotFoundError: If the step doesn't exist
            StepNotPendingError: If the step is in any other status
        """
        result = self.db_session.execute(
            update(StepExecution)
            .where(StepExecution.id == step_execution_id, StepExecution.status == StepStatus.PENDING)
            .values(status=StepStatus.RUNNING)
            .execution_options(synchronize_session=False)
        )
        self.db_session.commit()

        if result.rowcount != 1:
            step = self.db_session.get(StepExecution, step_execution_id)
            if step is None:
                raise NotFoundError(f"Step execution {step_execution_id} not found")
            raise StepNotPendingError(step_execution_id, step.status)

        step = self.db_session.get(StepExecution, step_execution_id)
        self.db_session.refresh(step)
        return step

    async def resume(
        self,
        step_execution_id: int,
        decision: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> RunResult:
        """
        Complete a pending step and continue its run.

        Args:
            step_execution_id: The pending StepExecution
            decision: "approved" or "rejected"
            payload: Form data / callback data merged into the step output

        Returns:
            RunResult of the continued run (FAILED on rejection)

        Raises:
            ValidationError: Unknown decision or non-object payload
            NotFoundError: Step doesn't exist
            StepNotPendingError: Step already resumed (or never suspended)
        """
        if decision not in Decision.ALL:
            raise ValidationError(f"decision must be one of {list(Decision.ALL)}, got '{decision}'", field="decision")
        if payload is not None and not isinstance(payload, dict):
            raise ValidationError("payload must be an object", field="payload")

        step = self._claim_step(step_execution_id)
        execution = self.db_session.get(Execution, step.execution_id)
        set_execution_id(execution.id)

        output = dict(step.output_data or {})
        output.update(payload or {})
        output["decision"] = decision
        output[step.node_id] = decision

        step.output_data = ContextManager(output).snapshot()
        step.status = StepStatus.COMPLETED
        step.completed_at = datetime.utcnow()
        self.db_session.commit()

        logger.info(
            f"Step {step.id} ({step.node_id}) resumed with decision '{decision}'",
            extra={"step_execution_id": step.id, "decision": decision}
        )

        context = dict(step.input_data or {})
        context.update(step.output_data)

        if execution.status != ExecutionStatus.RUNNING:
            # Cancelled or expired while waiting: record the decision, go no further
            logger.warning(f"Execution {execution.id} is {execution.status}; not continuing after resume")
            return RunResult(
                execution_id=execution.id,
                outcome=RunOutcome.FAILED if execution.status == ExecutionStatus.FAILED else RunOutcome.COMPLETED,
                context=context,
                error=execution.error_message,
            )

        if decision == Decision.REJECTED:
            return self._finish(
                execution, ExecutionStatus.FAILED, context,
                error=f"Rejected at node {step.node_id}", node_id=step.node_id
            )

        workflow = self.db_session.get(Workflow, execution.workflow_id)
        engine = self.engines.get(execution.engine_version) or self.engines["v1"]
        graph = engine.load_graph(workflow, execution.workflow_version)

        try:
            next_node = graph.next_node(graph.node(step.node_id), context, engine.predicate)
        except GraphExecutionError as e:
            return self._finish(execution, ExecutionStatus.FAILED, context, error=e.message, node_id=step.node_id)

        if next_node is None:
            return self._finish(execution, ExecutionStatus.COMPLETED, context, node_id=step.node_id)

        return await engine.run(execution, graph, next_node, context)

    def _finish(
        self,
        execution: Execution,
        status: str,
        context: Dict[str, Any],
        error: Optional[str] = None,
        node_id: Optional[str] = None
    ) -> RunResult:
        execution.status = status
        execution.error_message = error
        execution.context = ContextManager(context).snapshot()
        execution.completed_at = datetime.utcnow()
        self.db_session.commit()

        event = NotificationEvent.FAILED if status == ExecutionStatus.FAILED else NotificationEvent.COMPLETED
        self._notify(event, execution, error=error, node_id=node_id)

        return RunResult(
            execution_id=execution.id,
            outcome=RunOutcome.FAILED if status == ExecutionStatus.FAILED else RunOutcome.COMPLETED,
            context=context,
            error=error,
        )

    def cancel(self, execution_id: int, reason: Optional[str] = None) -> Execution:
        """
        Abort a running execution.

        Pending steps are failed so late callbacks are rejected. An engine
        invocation currently walking this execution stops before its next node.

        Raises:
            NotFoundError: If the execution doesn't exist
            ValidationError: If the execution already finished
        """
        execution = self.db_session.get(Execution, execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        if execution.status != ExecutionStatus.RUNNING:
            raise ValidationError(f"Execution {execution_id} is already {execution.status}")

        message = f"Cancelled: {reason or 'by operator'}"
        now = datetime.utcnow()
        self.db_session.execute(
            update(StepExecution)
            .where(StepExecution.execution_id == execution_id, StepExecution.status == StepStatus.PENDING)
            .values(status=StepStatus.FAILED, error_message=message, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        execution.status = ExecutionStatus.FAILED
        execution.error_message = message
        execution.completed_at = now
        self.db_session.commit()

        logger.info(f"Execution {execution_id} cancelled", extra={"reason": reason})
        self._notify(NotificationEvent.FAILED, execution, error=message)
        return execution

    def expire_suspended(self, timeout_seconds: int, now: Optional[datetime] = None) -> List[int]:
        """
        Fail pending steps that have waited longer than `timeout_seconds`,
        together with their executions.

        Each step is claimed with the same pending-status guard as resume(),
        so a callback racing the expiry wins or loses cleanly.

        Returns:
            IDs of the expired step executions
        """
        now = now or datetime.utcnow()
        cutoff = now - timedelta(seconds=timeout_seconds)
        candidates = [
            row.id for row in self.db_session.query(StepExecution.id)
            .filter(StepExecution.status == StepStatus.PENDING, StepExecution.started_at < cutoff)
            .order_by(StepExecution.id)
        ]

        expired = []
        for step_id in candidates:
            message = f"Suspension timed out after {timeout_seconds}s"
            result = self.db_session.execute(
                update(StepExecution)
                .where(StepExecution.id == step_id, StepExecution.status == StepStatus.PENDING)
                .values(status=StepStatus.FAILED, error_message=message, completed_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db_session.rollback()
                continue

            step = self.db_session.get(StepExecution, step_id)
            execution = self.db_session.get(Execution, step.execution_id)
            if execution.status == ExecutionStatus.RUNNING:
                execution.status = ExecutionStatus.FAILED
                execution.error_message = f"{message} at node {step.node_id}"
                execution.completed_at = now
            self.db_session.commit()
            expired.append(step_id)

            self._notify(NotificationEvent.FAILED, execution, error=execution.error_message, node_id=step.node_id)

        if expired:
            logger.info(f"Expired {len(expired)} suspended steps", extra={"step_ids": expired})
        return expired

    def _notify(self, event: str, execution: Execution, **details: Any) -> None:
        try:
            self.notifier.notify(event, execution, **details)
        except Exception as e:
            logger.warning(f"Notification {event} for execution {execution.id} failed: {e}")
            self.db_session.rollback()
