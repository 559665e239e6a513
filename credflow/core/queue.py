"""
Workflow Queue

Durable queue of workflow invocations stored in the queue_items table.

Lifecycle:
    pending --claim--> processing --mark_completed--> completed
                           |
                           +--mark_failed--> pending (retry) | failed (dead letter)
                           |
                           +--stale reclaim--> pending | failed

Claims are compare-and-set updates (UPDATE ... WHERE status = 'pending'), so
two workers can never own the same item even without row locks. On
PostgreSQL the candidate select additionally uses FOR UPDATE SKIP LOCKED to
keep concurrent workers off each other's rows.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, or_, update
from sqlalchemy.orm import Session

from ..models import QueueItem
from ..models.queue_item import QueueStatus
from .exceptions import NotFoundError, ValidationError, StaleClaimError

logger = logging.getLogger(__name__)


class WorkflowQueue:
    """
    Queue operations over queue_items.

    Args:
        session: SQLAlchemy session
        stale_after_seconds: Claims older than this are considered abandoned
        retry_backoff_seconds: Base for exponential retry delay (0 = immediately claimable)
    """

    def __init__(self, session: Session, stale_after_seconds: int = 900, retry_backoff_seconds: int = 0):
        self.session = session
        self.stale_after_seconds = stale_after_seconds
        self.retry_backoff_seconds = retry_backoff_seconds

    def enqueue(
        self,
        workflow_id: int,
        version: Optional[int],
        input_data: Optional[Dict[str, Any]],
        max_attempts: int = 3,
        now: Optional[datetime] = None
    ) -> int:
        """Insert a pending item and return its id."""
        if max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1", field="max_attempts")

        item = QueueItem(
            workflow_id=workflow_id,
            workflow_version=version,
            input_data=input_data or {},
            status=QueueStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
            created_at=now or datetime.utcnow(),
        )
        self.session.add(item)
        self.session.commit()

        logger.info(f"Queue item {item.id} enqueued for workflow {workflow_id}", extra={"queue_item_id": item.id})
        return item.id

    def reclaim_stale(self, now: Optional[datetime] = None) -> int:
        """
        Return items stuck in processing past the staleness window to pending.

        The crashed attempt counts against the budget: items whose budget is
        spent are dead-lettered instead.

        Returns:
            Number of reclaimed items
        """
        now = now or datetime.utcnow()
        cutoff = now - timedelta(seconds=self.stale_after_seconds)
        exhausted = QueueItem.attempts + 1 >= QueueItem.max_attempts

        result = self.session.execute(
            update(QueueItem)
            .where(QueueItem.status == QueueStatus.PROCESSING, QueueItem.processing_started_at < cutoff)
            .values(
                attempts=QueueItem.attempts + 1,
                status=case((exhausted, QueueStatus.FAILED), else_=QueueStatus.PENDING),
                processed_at=case((exhausted, now), else_=QueueItem.processed_at),
                error_message=StaleClaimError(stale_after_seconds=self.stale_after_seconds).message,
                processing_started_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

        if result.rowcount:
            logger.warning(f"Reclaimed {result.rowcount} stale queue items", extra={"stale_after_seconds": self.stale_after_seconds})
        return result.rowcount

    def _try_claim(self, item_id: int, now: datetime) -> bool:
        """CAS pending -> processing. True only if this caller won the row."""
        result = self.session.execute(
            update(QueueItem)
            .where(QueueItem.id == item_id, QueueItem.status == QueueStatus.PENDING)
            .values(status=QueueStatus.PROCESSING, processing_started_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def claim_batch(self, limit: int, now: Optional[datetime] = None) -> List[QueueItem]:
        """
        Claim up to `limit` claimable items, oldest first.

        Returns only the items whose claim succeeded for this caller.
        """
        now = now or datetime.utcnow()
        self.reclaim_stale(now)

        candidates = [
            row.id for row in self.session.query(QueueItem.id)
            .filter(
                QueueItem.status == QueueStatus.PENDING,
                or_(QueueItem.available_at.is_(None), QueueItem.available_at <= now)
            )
            .order_by(QueueItem.created_at, QueueItem.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        ]

        claimed_ids = [item_id for item_id in candidates if self._try_claim(item_id, now)]
        self.session.commit()

        if not claimed_ids:
            return []

        items = (
            self.session.query(QueueItem)
            .filter(QueueItem.id.in_(claimed_ids))
            .order_by(QueueItem.created_at, QueueItem.id)
            .all()
        )
        logger.info(f"Claimed {len(items)} queue items", extra={"queue_item_ids": claimed_ids})
        return items

    def heartbeat(self, item_id: int, now: Optional[datetime] = None) -> bool:
        """
        Restart the staleness window of a claimed item.

        Called right before the item is processed, so items later in a batch
        are not reclaimed while earlier ones run. Returns False when the claim
        was already lost.
        """
        result = self.session.execute(
            update(QueueItem)
            .where(QueueItem.id == item_id, QueueItem.status == QueueStatus.PROCESSING)
            .values(processing_started_at=now or datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1

    def mark_completed(self, item_id: int, now: Optional[datetime] = None) -> bool:
        """
        processing -> completed.

        Returns False when this worker no longer owns the claim (it went stale
        and was reclaimed in the meantime).
        """
        result = self.session.execute(
            update(QueueItem)
            .where(QueueItem.id == item_id, QueueItem.status == QueueStatus.PROCESSING)
            .values(status=QueueStatus.COMPLETED, processed_at=now or datetime.utcnow(), error_message=None)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

        if result.rowcount != 1:
            logger.warning(f"Queue item {item_id} was not processing when completed; claim lost")
            return False
        return True

    def mark_failed(
        self,
        item_id: int,
        error: str,
        retryable: bool = True,
        now: Optional[datetime] = None
    ) -> str:
        """
        Record a failed attempt.

        attempts += 1; the item becomes failed (dead letter) when the budget is
        spent or the error is not retryable, pending otherwise.

        Returns:
            The item's resulting status
        """
        now = now or datetime.utcnow()
        item = self.session.get(QueueItem, item_id)
        if item is None:
            raise NotFoundError(f"Queue item {item_id} not found")
        self.session.refresh(item)

        if item.status != QueueStatus.PROCESSING:
            logger.warning(f"Queue item {item_id} is {item.status}; failure not recorded")
            return item.status

        attempts = item.attempts + 1
        dead = not retryable or attempts >= item.max_attempts
        values: Dict[str, Any] = {
            "attempts": attempts,
            "error_message": error,
            "processing_started_at": None,
        }
        if dead:
            values.update(status=QueueStatus.FAILED, processed_at=now)
        else:
            values["status"] = QueueStatus.PENDING
            if self.retry_backoff_seconds:
                values["available_at"] = now + timedelta(seconds=self.retry_backoff_seconds * 2 ** (attempts - 1))

        result = self.session.execute(
            update(QueueItem)
            .where(
                QueueItem.id == item_id,
                QueueItem.status == QueueStatus.PROCESSING,
                QueueItem.attempts == item.attempts
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

        if result.rowcount != 1:
            self.session.refresh(item)
            logger.warning(f"Queue item {item_id} changed while recording failure (now {item.status})")
            return item.status

        logger.warning(
            f"Queue item {item_id} failed (attempt {attempts}/{item.max_attempts}): {error}",
            extra={"queue_item_id": item_id, "dead_letter": dead}
        )
        return values["status"]

    def requeue(self, item_id: int) -> QueueItem:
        """
        Operator reprocessing of a dead-lettered item: reset attempts, back to pending.

        Raises:
            NotFoundError: Item doesn't exist
            ValidationError: Item is not failed
        """
        item = self.session.get(QueueItem, item_id)
        if item is None:
            raise NotFoundError(f"Queue item {item_id} not found")

        result = self.session.execute(
            update(QueueItem)
            .where(QueueItem.id == item_id, QueueItem.status == QueueStatus.FAILED)
            .values(
                status=QueueStatus.PENDING,
                attempts=0,
                error_message=None,
                available_at=None,
                processing_started_at=None,
                processed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        self.session.refresh(item)

        if result.rowcount != 1:
            raise ValidationError(f"Queue item {item_id} is {item.status}; only failed items can be requeued")

        logger.info(f"Queue item {item_id} requeued by operator")
        return item

    def count_recent(self, workflow_id: int, since: datetime) -> int:
        """Items created for `workflow_id` at or after `since` (rate limiting)."""
        return (
            self.session.query(func.count(QueueItem.id))
            .filter(QueueItem.workflow_id == workflow_id, QueueItem.created_at >= since)
            .scalar()
        )

    def stats(self) -> Dict[str, int]:
        """Item count per status."""
        counts = {status: 0 for status in (QueueStatus.PENDING, QueueStatus.PROCESSING, QueueStatus.COMPLETED, QueueStatus.FAILED)}
        for status, count in self.session.query(QueueItem.status, func.count(QueueItem.id)).group_by(QueueItem.status):
            counts[status] = count
        return counts
