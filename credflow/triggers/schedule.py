"""
Schedule Trigger

Invoked once per minute from outside (Celery beat, HTTP cron). Each tick:
1. Selects active schedules with next_run_at NULL or due
2. Skips schedules whose workflow is missing or inactive
3. Computes the next fire time from the cron expression in the schedule's timezone
4. Claims the firing with a compare-and-set on next_run_at, so overlapping
   ticks fire a schedule once
5. Enqueues the schedule's input plus provenance, sets last_run_at

A broken schedule (bad cron, bad timezone) is reported and doesn't stop the tick.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from ..core.context import strip_provenance
from ..core.cron import next_run_after
from ..core.queue import WorkflowQueue
from ..core.exceptions import CredflowException
from ..models import Schedule, Workflow

logger = logging.getLogger(__name__)


@dataclass
class FireResult:
    scheduleId: int
    workflowId: int
    status: str  # queued | skipped | error
    queueId: Optional[int] = None
    nextRunAt: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ScheduleTrigger:
    def __init__(self, session: Session, queue: Optional[WorkflowQueue] = None):
        self.session = session
        self.queue = queue or WorkflowQueue(session)

    def due_schedules(self, now: datetime) -> List[Schedule]:
        return (
            self.session.query(Schedule)
            .filter(
                Schedule.is_active.is_(True),
                or_(Schedule.next_run_at.is_(None), Schedule.next_run_at <= now)
            )
            .order_by(Schedule.id)
            .all()
        )

    def tick(self, now: Optional[datetime] = None) -> List[FireResult]:
        now = now or datetime.utcnow()
        results = []

        for schedule in self.due_schedules(now):
            try:
                result = self._fire(schedule, now)
            except Exception as e:
                self.session.rollback()
                message = e.message if isinstance(e, CredflowException) else str(e)
                logger.error(f"Schedule {schedule.id} failed: {message}", extra={"schedule_id": schedule.id})
                result = FireResult(scheduleId=schedule.id, workflowId=schedule.workflow_id, status="error", error=message)
            if result is not None:
                results.append(result)

        logger.info(f"Schedule tick: {len(results)} due schedules", extra={"fired": sum(r.status == "queued" for r in results)})
        return results

    def _fire(self, schedule: Schedule, now: datetime) -> Optional[FireResult]:
        workflow = self.session.get(Workflow, schedule.workflow_id)
        if workflow is None or not workflow.is_active:
            logger.info(f"Schedule {schedule.id} skipped: workflow {schedule.workflow_id} inactive")
            return FireResult(scheduleId=schedule.id, workflowId=schedule.workflow_id, status="skipped")

        next_run_at = next_run_after(schedule.cron_expression, schedule.timezone, now)

        # Claim this firing: only the tick that still sees the old next_run_at proceeds
        previous = schedule.next_run_at
        claim = (
            update(Schedule)
            .where(Schedule.id == schedule.id)
            .values(next_run_at=next_run_at, last_run_at=now)
            .execution_options(synchronize_session=False)
        )
        claim = claim.where(Schedule.next_run_at.is_(None) if previous is None else Schedule.next_run_at == previous)
        if self.session.execute(claim).rowcount != 1:
            self.session.rollback()
            logger.info(f"Schedule {schedule.id} already fired by a concurrent tick")
            return None

        input_data = {
            **strip_provenance(schedule.input_data),
            "__trigger_source": "schedule",
            "__schedule_id": schedule.id,
            "__cron_expression": schedule.cron_expression,
            "__triggered_at": now.isoformat(),
        }
        # enqueue() commits the schedule claim together with the queue item
        queue_id = self.queue.enqueue(workflow.id, workflow.version, input_data, now=now)
        self.session.refresh(schedule)

        logger.info(
            f"Schedule {schedule.id} fired workflow {workflow.id}",
            extra={"queue_item_id": queue_id, "next_run_at": next_run_at.isoformat()}
        )
        return FireResult(
            scheduleId=schedule.id,
            workflowId=workflow.id,
            status="queued",
            queueId=queue_id,
            nextRunAt=next_run_at.isoformat(),
        )
