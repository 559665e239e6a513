"""
Queue Item Model
Durable queue of pending workflow invocations
"""

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, ForeignKey, Index
from datetime import datetime
from . import Base


class QueueStatus:
    """Queue item statuses"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"  # dead letter


class QueueItem(Base):
    """
    Queue Item Model

    Inserted by a trigger, claimed (pending -> processing) by exactly one worker,
    then completed, or failed with retry until max_attempts is spent.
    """
    __tablename__ = "queue_items"
    __table_args__ = (
        Index("ix_queue_items_status_created_at", "status", "created_at"),
        Index("ix_queue_items_workflow_created_at", "workflow_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workflow_id = Column(Integer, ForeignKey("workflows.id"), nullable=False)
    workflow_version = Column(Integer, nullable=True)

    # Trigger payload plus provenance keys (__trigger_source, __triggered_at, ...)
    input_data = Column(JSON, nullable=True)

    status = Column(String(50), nullable=False, default=QueueStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    error_message = Column(Text, nullable=True)

    # Not claimable before this instant (retry backoff); NULL = immediately
    available_at = Column(DateTime, nullable=True)

    processing_started_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<QueueItem(id={self.id}, workflow_id={self.workflow_id}, status='{self.status}', attempts={self.attempts})>"
