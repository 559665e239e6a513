"""
FastAPI main application
HTTP entry points for CREDFLOW: triggers, resume callbacks, operator actions
"""

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import Optional
import os
import logging
import uuid

from ..config import WorkerSettings
from ..database import get_db_session
from ..models import Execution, StepExecution
from ..core.exceptions import CredflowException
from ..core.logging_config import setup_logging, set_request_id, clear_request_id
from ..core.metrics import MetricsCollector, check_system_health
from ..core.notifications import (
    NotificationSink,
    CompositeNotificationSink,
    LoggingNotificationSink,
    InAppNotificationSink,
)
from ..core.queue import WorkflowQueue
from ..core.resumer import Resumer
from ..triggers.schedule import ScheduleTrigger
from ..triggers.webhook import WebhookTrigger, WebhookRequest
from ..workers.queue_worker import QueueWorker
from .schemas import (
    ResumeRequest, CancelRequest, RunResultResponse,
    ExecutionResponse, ExecutionListResponse,
    StepExecutionListResponse, QueueItemResponse,
)

# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

# JSON logs in production (JSON_LOGS=true), readable logs in development
setup_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "false").lower() == "true",
    log_file=os.getenv("LOG_FILE", None)
)

logger = logging.getLogger(__name__)

# ============================================================================
# FASTAPI APP CONFIGURATION
# ============================================================================

app = FastAPI(
    title="CREDFLOW API",
    description="""
# CREDFLOW workflow orchestration

Runs onboarding / credentialing pipelines defined as directed graphs.

## Flow

1. **POST /webhook-trigger/{workflow_id}/{webhook_id}** or a due schedule queues a run
2. **POST /queue/process** (or the Celery beat tick) dispatches queued runs
3. Runs pause at form / approval nodes; **POST /resume** continues them
4. **GET /executions/{id}/steps** shows every node visit
    """,
    version="0.1.0",
    openapi_tags=[
        {"name": "health", "description": "Health checks and system metrics"},
        {"name": "triggers", "description": "Webhook and schedule triggers"},
        {"name": "queue", "description": "Queue processing and dead-letter reprocessing"},
        {"name": "executions", "description": "Runs, their steps, resume and cancel"},
    ]
)


# Dependency: Get database session
def get_db():
    """Dependency for database session"""
    db = get_db_session()
    try:
        yield db
    finally:
        db.close()


def get_worker_settings() -> WorkerSettings:
    return WorkerSettings.from_env()


def get_notifier(db: Session = Depends(get_db)) -> NotificationSink:
    return CompositeNotificationSink([LoggingNotificationSink(), InAppNotificationSink(db)])


# ============================================================================
# MIDDLEWARE - Request ID Tracking
# ============================================================================

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """
    - Generates (or propagates) X-Request-ID
    - Sets it in the logging context
    - Echoes it on the response
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    set_request_id(request_id)

    logger.info(
        f"{request.method} {request.url.path}",
        extra={
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
        }
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(f"Response {response.status_code}", extra={"status_code": response.status_code})
        return response

    except Exception as e:
        logger.exception("Unhandled exception in request", extra={"error": str(e)})
        raise

    finally:
        clear_request_id()


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(CredflowException)
async def credflow_exception_handler(request, exc: CredflowException):
    """Domain errors carry their own HTTP status"""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message}
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail}
    )


# ============================================================================
# ROOT & HEALTH
# ============================================================================

@app.get("/", tags=["health"], summary="API root")
def root():
    return {
        "name": "CREDFLOW API",
        "version": "0.1.0",
        "status": "healthy",
        "docs": "/docs"
    }


@app.get("/health", tags=["health"], summary="Health check (lightweight)")
def health_check():
    """Lightweight health check - just confirms API is alive"""
    return {
        "status": "healthy",
        "service": "CREDFLOW API",
        "version": "0.1.0"
    }


@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
def detailed_health_check(db: Session = Depends(get_db)):
    health = check_system_health(db)
    if not health["healthy"]:
        logger.warning("System health check: UNHEALTHY", extra={"issues": health["issues"]})
    return health


@app.get(
    "/metrics",
    tags=["health"],
    summary="System metrics",
    description="Execution counts, error rate, queue depth by status, pending suspensions, database health."
)
def get_metrics(db: Session = Depends(get_db)):
    return MetricsCollector(db).get_all_metrics()


# ============================================================================
# TRIGGERS
# ============================================================================

@app.post(
    "/webhook-trigger/{workflow_id}/{webhook_id}",
    status_code=202,
    tags=["triggers"],
    summary="Inbound webhook",
    description="""
    Authenticates the request per the webhook's auth_type (Authorization: Bearer,
    X-Api-Key or X-Webhook-Secret), validates the JSON body, enforces the
    per-minute rate limit and queues a run.

    Returns 202 `{success, queueId, workflowId, status: "queued"}`, or
    401 / 400 / 404 / 429 `{success: false, error}`.
    """
)
async def webhook_trigger(workflow_id: int, webhook_id: str, request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    forwarded = request.headers.get("x-forwarded-for", "")
    source_ip = forwarded.split(",")[0].strip() or (request.client.host if request.client else None)

    # The raw body is needed for signatures; the blocking DB work runs off the event loop
    trigger = WebhookTrigger(db, WorkflowQueue(db))
    return await run_in_threadpool(
        trigger.handle,
        workflow_id,
        webhook_id,
        WebhookRequest(headers=dict(request.headers), body=body, source_ip=source_ip),
    )


@app.post(
    "/schedule-trigger",
    tags=["triggers"],
    summary="Fire due schedules",
    description="Called once per minute by an external scheduler. No body required."
)
def schedule_trigger(db: Session = Depends(get_db), settings: WorkerSettings = Depends(get_worker_settings)):
    queue = WorkflowQueue(db, settings.stale_after_seconds, settings.retry_backoff_seconds)
    results = ScheduleTrigger(db, queue).tick()
    return {"processed": len(results), "results": [r.to_dict() for r in results]}


# ============================================================================
# QUEUE
# ============================================================================

@app.post("/queue/process", tags=["queue"], summary="Process one batch of queued runs")
async def process_queue(
    db: Session = Depends(get_db),
    settings: WorkerSettings = Depends(get_worker_settings),
    notifier: NotificationSink = Depends(get_notifier)
):
    report = await QueueWorker(db, settings, notifier=notifier).tick()
    return report.to_dict()


@app.post(
    "/queue/{queue_item_id}/requeue",
    response_model=QueueItemResponse,
    tags=["queue"],
    summary="Reprocess a dead-lettered item"
)
def requeue_item(queue_item_id: int, db: Session = Depends(get_db)):
    return WorkflowQueue(db).requeue(queue_item_id)


# ============================================================================
# EXECUTIONS
# ============================================================================

@app.post(
    "/resume",
    response_model=RunResultResponse,
    tags=["executions"],
    summary="Resume a suspended step",
    description="""
    Completes a pending form / approval step with a decision and continues the run.

    - `approved`: the run continues at the next node
    - `rejected`: the run fails
    - 409 when the step is not pending (duplicate callback)
    """
)
async def resume_step(
    body: ResumeRequest,
    db: Session = Depends(get_db),
    notifier: NotificationSink = Depends(get_notifier)
):
    result = await Resumer(db, notifier=notifier).resume(body.stepExecutionId, body.decision, body.payload)
    return {"success": True, **result.to_dict()}


@app.get("/executions", response_model=ExecutionListResponse, tags=["executions"], summary="List executions")
def list_executions(
    workflow_id: Optional[int] = None,
    status: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db)
):
    query = db.query(Execution)

    if workflow_id:
        query = query.filter(Execution.workflow_id == workflow_id)
    if status:
        query = query.filter(Execution.status == status)

    total = query.count()
    executions = query.order_by(Execution.created_at.desc()).offset(skip).limit(limit).all()

    return {"executions": executions, "total": total}


@app.get("/executions/{execution_id}", response_model=ExecutionResponse, tags=["executions"], summary="Get execution")
def get_execution(execution_id: int, db: Session = Depends(get_db)):
    execution = db.query(Execution).filter(Execution.id == execution_id).first()

    if not execution:
        raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")

    return execution


@app.get(
    "/executions/{execution_id}/steps",
    response_model=StepExecutionListResponse,
    tags=["executions"],
    summary="Get execution steps"
)
def get_execution_steps(execution_id: int, db: Session = Depends(get_db)):
    if not db.query(Execution.id).filter(Execution.id == execution_id).first():
        raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")

    steps = (
        db.query(StepExecution)
        .filter(StepExecution.execution_id == execution_id)
        .order_by(StepExecution.id)
        .all()
    )
    return {"execution_id": execution_id, "steps": steps, "total": len(steps)}


@app.post(
    "/executions/{execution_id}/cancel",
    response_model=ExecutionResponse,
    tags=["executions"],
    summary="Cancel a running execution"
)
def cancel_execution(
    execution_id: int,
    body: Optional[CancelRequest] = None,
    db: Session = Depends(get_db),
    notifier: NotificationSink = Depends(get_notifier)
):
    return Resumer(db, notifier=notifier).cancel(execution_id, body.reason if body else None)
