"""
Models module - SQLAlchemy database models
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Import models after Base is defined to avoid circular imports
from .workflow import Workflow, WorkflowVersion
from .execution import Execution
from .step_execution import StepExecution
from .queue_item import QueueItem
from .schedule import Schedule
from .webhook import WebhookConfig, WebhookEvent
from .notification import Notification

__all__ = [
    "Base",
    "Workflow",
    "WorkflowVersion",
    "Execution",
    "StepExecution",
    "QueueItem",
    "Schedule",
    "WebhookConfig",
    "WebhookEvent",
    "Notification",
]
