"""
Execution Model
Database model for workflow run records
"""

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from . import Base


class ExecutionStatus:
    """Execution statuses"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Execution(Base):
    """
    Execution Model

    One row per triggered run of a workflow. Terminal once completed or failed;
    a run waiting at a form/approval node stays running.
    """
    __tablename__ = "executions"

    id = Column(Integer, primary_key=True, index=True)
    workflow_id = Column(Integer, ForeignKey("workflows.id"), nullable=False, index=True)
    workflow_version = Column(Integer, nullable=True)

    status = Column(String(50), nullable=False, default=ExecutionStatus.RUNNING, index=True)

    # "v1" (GraphEngine) or "v2" (CheckpointingGraphEngine)
    engine_version = Column(String(10), nullable=False, default="v1")

    # Trigger provenance, e.g. "webhook:partner-portal" or "schedule:4"
    started_by = Column(String(255), nullable=True)

    current_node_id = Column(String(255), nullable=True)

    # Accumulated context (saved at suspension / completion, after every node on v2)
    context = Column(JSON, nullable=True)

    error_message = Column(Text, nullable=True)

    queue_item_id = Column(Integer, ForeignKey("queue_items.id"), nullable=True, index=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    steps = relationship(
        "StepExecution",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="StepExecution.id"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)

    def __repr__(self):
        return f"<Execution(id={self.id}, workflow_id={self.workflow_id}, status='{self.status}')>"
