"""
Step Execution Model
Database model for the audit trail of node visits
"""

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from . import Base


class StepStatus:
    """Step execution statuses"""
    RUNNING = "running"
    PENDING = "pending"  # suspended, waiting for an external event
    COMPLETED = "completed"
    FAILED = "failed"


class StepExecution(Base):
    """
    Step Execution Model

    One row per node visited within an execution. Created before the node's
    effect runs, closed when the node exits or suspends.
    """
    __tablename__ = "step_executions"

    id = Column(Integer, primary_key=True, index=True)
    execution_id = Column(Integer, ForeignKey("executions.id"), nullable=False, index=True)

    node_id = Column(String(255), nullable=False, index=True)
    node_type = Column(String(50), nullable=False)

    status = Column(String(50), nullable=False, default=StepStatus.RUNNING, index=True)

    # Context at node entry (JSON)
    input_data = Column(JSON, nullable=True)

    # Node output (JSON); for resumed steps includes the decision and payload
    output_data = Column(JSON, nullable=True)

    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    execution = relationship("Execution", back_populates="steps")

    def __repr__(self):
        return f"<StepExecution(id={self.id}, execution_id={self.execution_id}, node_id='{self.node_id}', status='{self.status}')>"
