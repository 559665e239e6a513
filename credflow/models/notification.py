"""
Notification Model
In-app notifications produced after execution state transitions
"""

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, ForeignKey
from datetime import datetime
from . import Base


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    event = Column(String(50), nullable=False, index=True)
    execution_id = Column(Integer, ForeignKey("executions.id"), nullable=True, index=True)
    workflow_id = Column(Integer, nullable=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Notification(id={self.id}, event='{self.event}', execution_id={self.execution_id})>"
