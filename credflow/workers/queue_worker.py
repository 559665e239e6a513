"""
Queue Worker

One tick = claim a bounded batch of queue items and dispatch each one:

1. Dev-callback items (simulated external completions, opt-in only) go to the Resumer
2. Regular items: load the workflow, pick the engine variant, start the run
3. A hard engine failure falls back once to the other variant
4. The item is marked completed once the run has been started; any exception
   marks it failed (retry / dead letter) and the batch continues

Ticks are driven from outside (Celery beat, POST /queue/process); the worker
never loops on its own.
"""

import asyncio
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..config import WorkerSettings
from ..core.engine import GraphEngine, CheckpointingGraphEngine, RunResult
from ..core.logging_config import set_execution_id
from ..core.notifications import NotificationSink
from ..core.queue import WorkflowQueue
from ..core.resumer import Resumer
from ..core.exceptions import (
    CredflowException,
    EngineError,
    GraphValidationError,
    QueueProcessingError,
    WorkflowError,
)
from ..models import QueueItem, Workflow, Execution, StepExecution
from ..models.execution import ExecutionStatus
from ..models.queue_item import QueueStatus
from ..models.step_execution import StepStatus

logger = logging.getLogger(__name__)

DEV_CALLBACK_KEY = "__dev_callback"


@dataclass
class ItemResult:
    queue_item_id: int
    status: str  # completed | retrying | failed
    execution_id: Optional[int] = None
    outcome: Optional[str] = None
    engine_version: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ProcessingReport:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    results: List[ItemResult] = field(default_factory=list)

    def add(self, result: ItemResult) -> None:
        self.processed += 1
        if result.status == QueueStatus.COMPLETED:
            self.succeeded += 1
        else:
            self.failed += 1
        self.results.append(result)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class QueueWorker:
    """
    Dispatches claimed queue items to the engine.

    Args:
        session: SQLAlchemy session
        settings: Worker settings (batch size, engine flag, dev callbacks, timeouts)
        engines: Engine per variant; defaults are built on the session
        resumer: Resumer used for dev-callback items
        queue: Queue (defaults to one configured from settings)
        notifier: Notification sink for the default engines
    """

    def __init__(
        self,
        session: Session,
        settings: Optional[WorkerSettings] = None,
        engines: Optional[Dict[str, GraphEngine]] = None,
        resumer: Optional[Resumer] = None,
        queue: Optional[WorkflowQueue] = None,
        notifier: Optional[NotificationSink] = None
    ):
        self.session = session
        self.settings = settings or WorkerSettings.from_env()
        self.queue = queue or WorkflowQueue(
            session,
            stale_after_seconds=self.settings.stale_after_seconds,
            retry_backoff_seconds=self.settings.retry_backoff_seconds,
        )
        self.engines = engines or {
            "v1": GraphEngine(session, notifier=notifier),
            "v2": CheckpointingGraphEngine(session, notifier=notifier),
        }
        self.resumer = resumer or Resumer(session, engines=self.engines, notifier=notifier)

    async def tick(self, now: Optional[datetime] = None) -> ProcessingReport:
        """Claim up to settings.batch_size items and process them in order."""
        report = ProcessingReport()
        items = self.queue.claim_batch(self.settings.batch_size, now)

        for item in items:
            item_id = item.id
            if not self.queue.heartbeat(item_id):
                logger.warning(f"Queue item {item_id} was reclaimed before processing; skipped", extra={"queue_item_id": item_id})
                continue
            report.add(await self._process_item(item))
            set_execution_id(None)

        if report.processed:
            logger.info(
                f"Queue tick processed {report.processed} items ({report.succeeded} ok, {report.failed} failed)"
            )
        return report

    async def _process_item(self, item: QueueItem) -> ItemResult:
        item_id = item.id
        try:
            result = await self._dispatch(item)
        except Exception as e:
            self.session.rollback()
            if isinstance(e, CredflowException):
                message, retryable = e.message, e.retry_allowed
            else:
                message, retryable = f"{type(e).__name__}: {e}", True
            logger.error(f"Queue item {item_id} failed: {message}", extra={"queue_item_id": item_id})

            try:
                status = self.queue.mark_failed(item_id, message, retryable=retryable)
            except Exception as mark_error:
                logger.exception(f"Could not record failure for queue item {item_id}: {mark_error}")
                self.session.rollback()
                status = QueueStatus.PROCESSING

            return ItemResult(
                queue_item_id=item_id,
                status=QueueStatus.FAILED if status == QueueStatus.FAILED else "retrying",
                error=message,
            )

        try:
            self.queue.mark_completed(item_id)
        except Exception as e:
            # Left in processing; the stale reclaim will pick it up again
            logger.exception(f"Could not mark queue item {item_id} completed: {e}")
            self.session.rollback()
        return result

    async def _dispatch(self, item: QueueItem) -> ItemResult:
        input_data = dict(item.input_data or {})

        if DEV_CALLBACK_KEY in input_data:
            return await self._dev_callback(item, input_data[DEV_CALLBACK_KEY])

        workflow = self.session.get(Workflow, item.workflow_id)
        if workflow is None:
            raise WorkflowError(f"Workflow {item.workflow_id} not found", retry_allowed=False)
        if not workflow.is_active:
            raise WorkflowError(f"Workflow {item.workflow_id} is inactive", retry_allowed=False)

        primary = "v2" if self.settings.engine_v2_enabled and workflow.use_engine_v2 else "v1"
        variants = [primary]
        if primary == "v2" or self.settings.engine_v2_enabled:
            variants.append("v1" if primary == "v2" else "v2")

        for attempt, variant in enumerate(variants):
            try:
                run = await self._run_engine(variant, workflow, item, input_data)
            except (GraphValidationError, QueueProcessingError):
                raise
            except Exception as e:
                if attempt + 1 < len(variants):
                    self.session.rollback()
                    logger.warning(
                        f"Engine {variant} failed for queue item {item.id} ({e}); falling back to {variants[attempt + 1]}",
                        extra={"queue_item_id": item.id}
                    )
                    continue
                raise

            return ItemResult(
                queue_item_id=item.id,
                status=QueueStatus.COMPLETED,
                execution_id=run.execution_id,
                outcome=run.outcome,
                engine_version=variant,
                error=run.error,
            )

        raise EngineError(f"No engine variant available for queue item {item.id}")

    async def _run_engine(
        self,
        variant: str,
        workflow: Workflow,
        item: QueueItem,
        input_data: Dict[str, Any]
    ) -> RunResult:
        engine = self.engines[variant]
        invocation = engine.execute_workflow(
            workflow,
            initial_context=input_data,
            started_by=self._started_by(input_data),
            queue_item_id=item.id,
            version=item.workflow_version,
        )
        return await self._with_timeout(invocation, item)

    async def _with_timeout(self, invocation, item: QueueItem):
        timeout = self.settings.item_timeout_seconds
        try:
            return await asyncio.wait_for(invocation, timeout=timeout)
        except asyncio.TimeoutError:
            message = f"Queue item {item.id} timed out after {timeout}s"
            self.session.rollback()
            self._abandon_executions(item.id, message)
            raise QueueProcessingError(message, queue_item_id=item.id)

    def _abandon_executions(self, queue_item_id: int, message: str) -> None:
        """Fail runs, and their in-flight steps, left running by an invocation that was cut off."""
        now = datetime.utcnow()
        running = [
            execution_id for (execution_id,) in self.session.query(Execution.id).filter(
                Execution.queue_item_id == queue_item_id, Execution.status == ExecutionStatus.RUNNING
            )
        ]
        if not running:
            return
        self.session.execute(
            update(StepExecution)
            .where(StepExecution.execution_id.in_(running), StepExecution.status == StepStatus.RUNNING)
            .values(status=StepStatus.FAILED, error_message=message, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(
            update(Execution)
            .where(Execution.id.in_(running), Execution.status == ExecutionStatus.RUNNING)
            .values(status=ExecutionStatus.FAILED, error_message=message, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

    async def _dev_callback(self, item: QueueItem, callback: Dict[str, Any]) -> ItemResult:
        """
        Simulated external completion (e.g. a signature provider calling back).

        Only honoured with settings.dev_callbacks_enabled; never in production.
        """
        if not self.settings.dev_callbacks_enabled:
            raise QueueProcessingError(
                "Dev callback items are disabled (set DEV_CALLBACKS_ENABLED to allow them)",
                queue_item_id=item.id,
                retry_allowed=False
            )
        if not isinstance(callback, dict) or not callback.get("step_execution_id"):
            raise QueueProcessingError("Dev callback requires step_execution_id", queue_item_id=item.id, retry_allowed=False)

        async def simulate():
            await asyncio.sleep(float(callback.get("delay_seconds", 10)))
            return await self.resumer.resume(
                int(callback["step_execution_id"]),
                callback.get("decision", "approved"),
                callback.get("payload") or {},
            )

        logger.info(f"Dev callback for step {callback['step_execution_id']}", extra={"queue_item_id": item.id})
        run = await self._with_timeout(simulate(), item)
        return ItemResult(
            queue_item_id=item.id,
            status=QueueStatus.COMPLETED,
            execution_id=run.execution_id,
            outcome=run.outcome,
            error=run.error,
        )

    @staticmethod
    def _started_by(input_data: Dict[str, Any]) -> str:
        source = input_data.get("__trigger_source")
        if source == "webhook":
            return f"webhook:{input_data.get('__webhook_id')}"
        if source == "schedule":
            return f"schedule:{input_data.get('__schedule_id')}"
        return source or "queue"
