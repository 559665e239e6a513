"""
Integration Tests for complete workflow runs

These tests drive the real components end to end (only outbound effects are faked):
- Partner webhook -> queue -> worker -> form suspension -> resume -> completion
- Registry check failing mid-run
- Nightly schedule -> queue -> worker
- Runaway retries ending in the dead letter state
"""

import json
import pytest
from datetime import datetime

from credflow.config import EffectSettings
from credflow.core.engine import GraphEngine, CheckpointingGraphEngine, RunOutcome
from credflow.core.executors import build_executor_registry
from credflow.core.exceptions import NodeEffectError
from credflow.core.queue import WorkflowQueue
from credflow.models import Execution, QueueItem, Schedule, StepExecution, WebhookConfig
from credflow.models.execution import ExecutionStatus
from credflow.models.queue_item import QueueStatus
from credflow.models.step_execution import StepStatus
from credflow.triggers import ScheduleTrigger, WebhookTrigger, WebhookRequest
from credflow.triggers.webhook import hash_secret
from credflow.workers.queue_worker import QueueWorker


def _steps(db_session, execution_id):
    return (
        db_session.query(StepExecution)
        .filter(StepExecution.execution_id == execution_id)
        .order_by(StepExecution.id)
        .all()
    )


# ============================================================================
# WEBHOOK -> SUSPEND -> RESUME
# ============================================================================

@pytest.mark.integration
@pytest.mark.asyncio
async def test_partner_onboarding_through_webhook(db_session, engines, resumer, worker_settings, make_workflow, linear_form_workflow, notifier):
    """
    Flow: POST webhook -> queue item -> worker tick -> run pauses at documents form
          -> resume(approved, {crm}) -> run completes
    """
    workflow = make_workflow(linear_form_workflow, name="Partner onboarding")
    db_session.add(WebhookConfig(
        workflow_id=workflow.id,
        webhook_id="partner-portal",
        auth_type="bearer",
        credentials={"token_hash": hash_secret("portal-token")},
        payload_schema={"required": ["cpf"]},
        rate_limit_per_minute=10,
    ))
    db_session.commit()

    queue = WorkflowQueue(db_session)
    accepted = WebhookTrigger(db_session, queue).handle(
        workflow.id,
        "partner-portal",
        WebhookRequest(
            headers={"Authorization": "Bearer portal-token", "Content-Type": "application/json"},
            body=json.dumps({"cpf": "123.456.789-00", "name": "Ana"}).encode(),
            source_ip="198.51.100.4",
        ),
    )
    assert accepted["status"] == "queued"

    report = await QueueWorker(db_session, worker_settings, engines=engines, resumer=resumer).tick()
    dispatched = report.results[0]
    assert dispatched.outcome == RunOutcome.SUSPENDED
    assert db_session.get(QueueItem, accepted["queueId"]).status == QueueStatus.COMPLETED

    execution = db_session.get(Execution, dispatched.execution_id)
    assert execution.status == ExecutionStatus.RUNNING
    assert execution.started_by == "webhook:partner-portal"
    pending = _steps(db_session, execution.id)[-1]
    assert (pending.node_id, pending.status) == ("documents", StepStatus.PENDING)

    resumed = await resumer.resume(pending.id, "approved", {"crm": "456-RS"})

    assert resumed.outcome == RunOutcome.COMPLETED
    db_session.refresh(execution)
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.completed_at is not None
    assert execution.context["crm"] == "456-RS"
    assert execution.context["cpf"] == "123.456.789-00"
    assert execution.context["__source_ip"] == "198.51.100.4"

    steps = _steps(db_session, execution.id)
    assert [(s.node_id, s.status) for s in steps] == [
        ("start", StepStatus.COMPLETED),
        ("documents", StepStatus.COMPLETED),
        ("end", StepStatus.COMPLETED),
    ]
    assert notifier.names() == ["execution.suspended", "execution.completed"]


# ============================================================================
# EFFECT FAILURE
# ============================================================================

@pytest.mark.integration
@pytest.mark.asyncio
async def test_registry_check_failure_fails_run(db_session, make_workflow, http_workflow, make_effect, worker_settings, notifier):
    """
    Flow: start -> registry_check (http, fails) -x-> end
    """
    registry = build_executor_registry(
        effects={"http": make_effect(error=NodeEffectError("http node registry_check failed with status 503"))},
        settings=EffectSettings()
    )
    engines = {
        "v1": GraphEngine(db_session, executors=registry, notifier=notifier),
        "v2": CheckpointingGraphEngine(db_session, executors=registry, notifier=notifier),
    }
    workflow = make_workflow(http_workflow, name="Registry check")
    item_id = WorkflowQueue(db_session).enqueue(workflow.id, workflow.version, {"crm": "12345"})

    report = await QueueWorker(db_session, worker_settings, engines=engines).tick()

    result = report.results[0]
    assert result.outcome == RunOutcome.FAILED
    assert db_session.get(QueueItem, item_id).status == QueueStatus.COMPLETED

    execution = db_session.get(Execution, result.execution_id)
    assert execution.status == ExecutionStatus.FAILED
    assert "status 503" in execution.error_message

    steps = _steps(db_session, execution.id)
    assert [s.node_id for s in steps] == ["start", "registry_check"]
    assert steps[-1].status == StepStatus.FAILED
    assert "status 503" in steps[-1].error_message


# ============================================================================
# SCHEDULE -> WORKER
# ============================================================================

@pytest.mark.integration
@pytest.mark.asyncio
async def test_nightly_schedule_runs_workflow(db_session, engines, resumer, worker_settings, make_workflow, fake_effects):
    workflow = make_workflow({
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "report", "type": "email", "config": {"to": "{recipient}", "subject": "Nightly report"}},
            {"id": "end", "type": "end"}
        ],
        "edges": [{"source": "start", "target": "report"}, {"source": "report", "target": "end"}]
    }, name="Nightly report")
    schedule = Schedule(
        workflow_id=workflow.id,
        cron_expression="0 2 * * *",
        timezone="America/Sao_Paulo",
        input_data={"recipient": "ops@example.com"},
    )
    db_session.add(schedule)
    db_session.commit()

    fired = ScheduleTrigger(db_session).tick(now=datetime(2024, 6, 3, 5, 0))
    assert [r.status for r in fired] == ["queued"]
    assert fired[0].nextRunAt == "2024-06-04T05:00:00"

    report = await QueueWorker(db_session, worker_settings, engines=engines, resumer=resumer).tick()

    result = report.results[0]
    assert result.outcome == RunOutcome.COMPLETED
    execution = db_session.get(Execution, result.execution_id)
    assert execution.started_by == f"schedule:{schedule.id}"
    assert fake_effects["email"].calls[0]["context"]["recipient"] == "ops@example.com"


# ============================================================================
# DEAD LETTER
# ============================================================================

@pytest.mark.integration
@pytest.mark.asyncio
async def test_item_for_missing_workflow_ends_in_dead_letter(db_session, worker_settings, engines, resumer):
    queue = WorkflowQueue(db_session)
    item_id = queue.enqueue(4242, None, {}, max_attempts=3)

    worker = QueueWorker(db_session, worker_settings, engines=engines, resumer=resumer)
    first = await worker.tick()
    second = await worker.tick()

    assert first.failed == 1
    assert second.processed == 0

    item = db_session.get(QueueItem, item_id)
    assert item.status == QueueStatus.FAILED
    assert item.attempts == 1
    assert db_session.query(Execution).count() == 0
