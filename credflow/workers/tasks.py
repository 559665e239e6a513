"""
Celery Tasks for CREDFLOW

Periodic ticks (see beat_schedule in celery_app):
- process_queue_task: claim and dispatch a batch of queue items
- schedule_tick_task: fire due schedules
- expire_suspended_task: fail steps suspended past SUSPEND_TIMEOUT_SECONDS

Each task opens its own DB session, runs the component (async ones via
asyncio.run) and returns a JSON-serializable report. Failures inside a tick
are captured into queue / execution rows; only infrastructure errors make a
task fail.
"""

import asyncio
import logging
from typing import Any, Dict

from .celery_app import celery_app
from .queue_worker import QueueWorker
from ..config import WorkerSettings
from ..database import get_db
from ..core.notifications import CompositeNotificationSink, LoggingNotificationSink, InAppNotificationSink
from ..core.queue import WorkflowQueue
from ..core.resumer import Resumer
from ..triggers.schedule import ScheduleTrigger

logger = logging.getLogger(__name__)

# A queue tick runs a whole batch back to back
QUEUE_TICK_SOFT_LIMIT = WorkerSettings.from_env().tick_time_limit_seconds


def _notifier(db):
    return CompositeNotificationSink([LoggingNotificationSink(), InAppNotificationSink(db)])


@celery_app.task(
    bind=True,
    name="process_queue_task",
    soft_time_limit=QUEUE_TICK_SOFT_LIMIT,
    time_limit=QUEUE_TICK_SOFT_LIMIT + 30,
)
def process_queue_task(self) -> Dict[str, Any]:
    """Run one QueueWorker tick."""
    task_id = self.request.id
    settings = WorkerSettings.from_env()

    with get_db() as db:
        worker = QueueWorker(db, settings, notifier=_notifier(db))
        report = asyncio.run(worker.tick())

    logger.info(
        f"Task {task_id}: processed {report.processed} queue items",
        extra={"succeeded": report.succeeded, "failed": report.failed}
    )
    return report.to_dict()


@celery_app.task(bind=True, name="schedule_tick_task")
def schedule_tick_task(self) -> Dict[str, Any]:
    """Fire every due schedule."""
    settings = WorkerSettings.from_env()

    with get_db() as db:
        queue = WorkflowQueue(db, settings.stale_after_seconds, settings.retry_backoff_seconds)
        results = ScheduleTrigger(db, queue).tick()

    logger.info(f"Task {self.request.id}: {len(results)} schedules processed")
    return {"processed": len(results), "results": [r.to_dict() for r in results]}


@celery_app.task(bind=True, name="expire_suspended_task")
def expire_suspended_task(self) -> Dict[str, Any]:
    """Fail suspended steps older than SUSPEND_TIMEOUT_SECONDS (no-op when unset)."""
    settings = WorkerSettings.from_env()
    if not settings.suspend_timeout_seconds:
        return {"expired": [], "enabled": False}

    with get_db() as db:
        expired = Resumer(db, notifier=_notifier(db)).expire_suspended(settings.suspend_timeout_seconds)

    return {"expired": expired, "enabled": True}
