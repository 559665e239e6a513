"""
Notification sinks invoked after execution state transitions.

Events:
    execution.suspended  run waits at a form / approval node
    execution.completed  run reached an end node (or ran out of edges)
    execution.failed     node effect failure, rejection, cancellation, timeout

Sinks never break a run: the engine logs and swallows sink errors.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable

from sqlalchemy.orm import Session

from ..models import Execution, Notification

logger = logging.getLogger(__name__)


class NotificationEvent:
    SUSPENDED = "execution.suspended"
    COMPLETED = "execution.completed"
    FAILED = "execution.failed"


_TITLES = {
    NotificationEvent.SUSPENDED: "Workflow waiting for input",
    NotificationEvent.COMPLETED: "Workflow completed",
    NotificationEvent.FAILED: "Workflow failed",
}


class NotificationSink(ABC):
    @abstractmethod
    def notify(self, event: str, execution: Execution, **details: Any) -> None:
        pass


class LoggingNotificationSink(NotificationSink):
    """Default sink: one structured log line per event."""

    def notify(self, event: str, execution: Execution, **details: Any) -> None:
        logger.info(
            f"{event}: execution {execution.id}",
            extra={
                "event": event,
                "execution_id": execution.id,
                "workflow_id": execution.workflow_id,
                **{f"detail_{k}": v for k, v in details.items()},
            }
        )


class InAppNotificationSink(NotificationSink):
    """Persists a notifications row for the in-app notification center."""

    def __init__(self, db_session: Session):
        self.db_session = db_session

    def notify(self, event: str, execution: Execution, **details: Any) -> None:
        message = details.get("error") or details.get("node_id")
        notification = Notification(
            event=event,
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            title=_TITLES.get(event, event),
            message=str(message) if message is not None else None,
            details={k: v for k, v in details.items() if isinstance(v, (str, int, float, bool, type(None)))},
        )
        self.db_session.add(notification)
        try:
            self.db_session.commit()
        except Exception:
            self.db_session.rollback()
            raise


class CompositeNotificationSink(NotificationSink):
    """Fans an event out to several sinks; one failing sink doesn't stop the others."""

    def __init__(self, sinks: Iterable[NotificationSink]):
        self.sinks = list(sinks)

    def notify(self, event: str, execution: Execution, **details: Any) -> None:
        for sink in self.sinks:
            try:
                sink.notify(event, execution, **details)
            except Exception as e:
                logger.warning(f"Notification sink {type(sink).__name__} failed: {e}")
