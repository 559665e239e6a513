"""
Schedule Model
Cron-based triggers for workflows
"""

from sqlalchemy import Column, Integer, String, JSON, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from . import Base


class Schedule(Base):
    """
    Schedule Model

    Fired by the schedule trigger when next_run_at is NULL or due.
    Times are stored as naive UTC; cron_expression is evaluated in `timezone`.
    """
    __tablename__ = "schedules"

    id = Column(Integer, primary_key=True, index=True)
    workflow_id = Column(Integer, ForeignKey("workflows.id"), nullable=False, index=True)

    cron_expression = Column(String(100), nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    last_run_at = Column(DateTime, nullable=True)
    next_run_at = Column(DateTime, nullable=True, index=True)

    # Static input handed to every run
    input_data = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    workflow = relationship("Workflow")

    def __repr__(self):
        return f"<Schedule(id={self.id}, workflow_id={self.workflow_id}, cron='{self.cron_expression}')>"
