"""
Celery Application Configuration for CREDFLOW

Celery drives the periodic ticks the engine never runs itself:
- process-workflow-queue: QueueWorker.tick() every minute
- schedule-trigger: ScheduleTrigger.tick() every minute
- expire-suspended-steps: Resumer.expire_suspended() every 5 minutes

Architecture:
- Message Broker: Redis
- Result Backend: Redis
- Beat: one instance (ticks are safe to overlap, but there is no need to)
"""

import os
import logging
from celery import Celery
from celery.schedules import crontab
from kombu import Queue, Exchange
from ..core.logging_config import setup_logging

# Initialize structured logging for Celery workers
setup_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "true").lower() == "true",  # Default to JSON in workers
    log_file=os.getenv("LOG_FILE", None)
)

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL")
if not REDIS_URL:
    REDIS_URL = "redis://localhost:6379/0"
    logger.warning("REDIS_URL not set, using redis://localhost:6379/0")

celery_app = Celery("credflow")

celery_app.conf.update(
    # ============================================================================
    # BROKER & BACKEND
    # ============================================================================
    broker_url=REDIS_URL,
    result_backend=REDIS_URL,

    broker_connection_retry_on_startup=True,
    broker_connection_retry=True,
    broker_connection_max_retries=10,

    # ============================================================================
    # SERIALIZATION
    # ============================================================================
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    # ============================================================================
    # TIMEZONE
    # ============================================================================
    timezone="UTC",
    enable_utc=True,

    # ============================================================================
    # TASK EXECUTION
    # ============================================================================
    task_track_started=True,

    # Acknowledge tasks AFTER execution
    task_acks_late=True,
    worker_prefetch_multiplier=1,

    # Defaults for the short ticks; process_queue_task sets its own limits from
    # the batch size and per-item timeout
    task_time_limit=600,
    task_soft_time_limit=570,

    # ============================================================================
    # RESULTS
    # ============================================================================
    result_expires=86400,  # 24 hours

    # ============================================================================
    # TASK ROUTING
    # ============================================================================
    task_default_queue="workflows",
    task_default_exchange="workflows",
    task_default_routing_key="workflow.tick",

    task_queues=(
        Queue(
            "workflows",
            Exchange("workflows"),
            routing_key="workflow.tick",
        ),
        # Maintenance (suspension expiry)
        Queue(
            "workflows_low",
            Exchange("workflows"),
            routing_key="workflow.low",
        ),
    ),

    task_routes={
        "expire_suspended_task": {
            "queue": "workflows_low",
            "routing_key": "workflow.low",
        },
    },

    # ============================================================================
    # WORKER CONFIGURATION
    # ============================================================================
    worker_pool="prefork",
    worker_concurrency=2,
    worker_max_tasks_per_child=1000,

    worker_send_task_events=True,
    task_send_sent_event=True,

    worker_log_format="[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
    worker_task_log_format="[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s",
)

# ============================================================================
# BEAT SCHEDULE (Periodic Tasks)
# ============================================================================

celery_app.conf.beat_schedule = {
    "process-workflow-queue": {
        "task": "process_queue_task",
        "schedule": crontab(),  # every minute
    },
    "schedule-trigger": {
        "task": "schedule_tick_task",
        "schedule": crontab(),
    },
    "expire-suspended-steps": {
        "task": "expire_suspended_task",
        "schedule": crontab(minute="*/5"),
    },
}

logger.info("Celery app configured successfully")
logger.info(f"Broker: {REDIS_URL.split('@')[1] if '@' in REDIS_URL else 'configured'}")

# ============================================================================
# IMPORT TASKS (so they get registered when worker starts)
# ============================================================================
# This import MUST come AFTER celery_app is configured
from . import tasks  # noqa: F401, E402
