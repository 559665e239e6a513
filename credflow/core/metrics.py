"""
Metrics Collection for CREDFLOW

Provides system health metrics including:
- Execution statistics and error rate
- Queue depth by status (dead letters included)
- Runs waiting at form / approval nodes
- Database connectivity
"""

import logging
import time
from typing import Dict, Any
from datetime import datetime, timedelta
from sqlalchemy.orm import Session
from sqlalchemy import func, and_, text

from ..models.execution import Execution, ExecutionStatus
from ..models.step_execution import StepExecution, StepStatus
from .queue import WorkflowQueue

logger = logging.getLogger(__name__)


class MetricsCollector:
    """
    Collects and aggregates metrics for the CREDFLOW system.

    Every getter degrades to zeros plus an "error" key instead of raising,
    so /metrics keeps answering while the database struggles.
    """

    def __init__(self, db_session: Session):
        self.db_session = db_session

    def get_execution_stats(self, hours: int = 24) -> Dict[str, Any]:
        """
        Execution counts by status over the last `hours`.

        Returns:
            Dict with total, running, completed, failed, success_rate
        """
        result = {
            "total": 0,
            "running": 0,
            "completed": 0,
            "failed": 0,
            "success_rate": 0.0
        }
        try:
            since = datetime.utcnow() - timedelta(hours=hours)

            stats = self.db_session.query(
                Execution.status,
                func.count(Execution.id).label("count")
            ).filter(
                Execution.created_at >= since
            ).group_by(Execution.status).all()

            for status, count in stats:
                result["total"] += count
                if status in result:
                    result[status] = count

            finished = result["completed"] + result["failed"]
            if finished > 0:
                result["success_rate"] = round((result["completed"] / finished) * 100, 2)

            return result

        except Exception as e:
            logger.error(f"Failed to get execution stats: {e}")
            self.db_session.rollback()
            return {**result, "error": str(e)}

    def get_error_rate(self, hours: int = 1) -> Dict[str, Any]:
        try:
            since = datetime.utcnow() - timedelta(hours=hours)

            total = self.db_session.query(func.count(Execution.id)).filter(
                Execution.created_at >= since
            ).scalar() or 0

            failed = self.db_session.query(func.count(Execution.id)).filter(
                and_(
                    Execution.created_at >= since,
                    Execution.status == ExecutionStatus.FAILED
                )
            ).scalar() or 0

            return {
                "period_hours": hours,
                "total_executions": total,
                "failed_executions": failed,
                "error_rate": round((failed / total * 100), 2) if total > 0 else 0.0
            }

        except Exception as e:
            logger.error(f"Failed to get error rate: {e}")
            self.db_session.rollback()
            return {
                "period_hours": hours,
                "total_executions": 0,
                "failed_executions": 0,
                "error_rate": 0.0,
                "error": str(e)
            }

    def get_queue_stats(self) -> Dict[str, Any]:
        """Queue item count per status."""
        try:
            return WorkflowQueue(self.db_session).stats()
        except Exception as e:
            logger.error(f"Failed to get queue stats: {e}")
            self.db_session.rollback()
            return {"error": str(e)}

    def get_pending_suspensions(self) -> Dict[str, Any]:
        """Steps waiting for an external event, and the oldest one's age."""
        try:
            count, oldest = self.db_session.query(
                func.count(StepExecution.id),
                func.min(StepExecution.started_at)
            ).filter(StepExecution.status == StepStatus.PENDING).one()

            return {
                "pending_steps": count or 0,
                "oldest_pending_seconds": (
                    round((datetime.utcnow() - oldest).total_seconds()) if oldest else None
                )
            }

        except Exception as e:
            logger.error(f"Failed to get pending suspensions: {e}")
            self.db_session.rollback()
            return {"pending_steps": 0, "oldest_pending_seconds": None, "error": str(e)}

    def get_database_health(self) -> Dict[str, Any]:
        try:
            start = time.time()
            self.db_session.execute(text("SELECT 1")).fetchone()
            response_time = round((time.time() - start) * 1000, 2)

            return {
                "connected": True,
                "response_time_ms": response_time
            }

        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            self.db_session.rollback()
            return {
                "connected": False,
                "response_time_ms": None,
                "error": str(e)
            }

    def get_all_metrics(self) -> Dict[str, Any]:
        return {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "executions": self.get_execution_stats(hours=24),
            "error_rate": self.get_error_rate(hours=1),
            "queue": self.get_queue_stats(),
            "suspensions": self.get_pending_suspensions(),
            "database": self.get_database_health()
        }


def check_system_health(db_session: Session) -> Dict[str, Any]:
    """
    Convenience function to check overall system health.

    Returns:
        Dict with healthy flag, per-component status and detected issues
    """
    collector = MetricsCollector(db_session)
    metrics = collector.get_all_metrics()

    issues = []
    components = {}

    db_health = metrics["database"]
    components["database"] = db_health["connected"]
    if not db_health["connected"]:
        issues.append("Database connection failed")

    error_rate = metrics["error_rate"]["error_rate"]
    components["error_rate"] = error_rate < 50.0
    if error_rate >= 50.0:
        issues.append(f"High error rate: {error_rate}%")

    dead_letters = metrics["queue"].get("failed", 0)
    if dead_letters:
        issues.append(f"{dead_letters} dead-lettered queue items")

    return {
        "healthy": all(components.values()),
        "components": components,
        "issues": issues if issues else None,
        "metrics": metrics
    }
