"""
Tests for the Celery periodic tasks (run eagerly, no broker)
"""

from contextlib import contextmanager

import pytest

from credflow.config import WorkerSettings
from credflow.workers import tasks
from credflow.workers.celery_app import celery_app
from credflow.models import Schedule, QueueItem


@pytest.fixture
def task_db(db_session, monkeypatch):
    @contextmanager
    def fake_get_db():
        yield db_session

    monkeypatch.setattr(tasks, "get_db", fake_get_db)
    return db_session


@pytest.mark.unit
def test_beat_schedule_registers_ticks():
    tasks_by_entry = {name: entry["task"] for name, entry in celery_app.conf.beat_schedule.items()}

    assert tasks_by_entry == {
        "process-workflow-queue": "process_queue_task",
        "schedule-trigger": "schedule_tick_task",
        "expire-suspended-steps": "expire_suspended_task",
    }
    assert "process_queue_task" in celery_app.tasks


@pytest.mark.unit
def test_process_queue_task_empty_queue(task_db):
    result = tasks.process_queue_task.apply().get()

    assert result == {"processed": 0, "succeeded": 0, "failed": 0, "results": []}


@pytest.mark.unit
def test_schedule_tick_task_fires_due_schedule(task_db, make_workflow, linear_form_workflow):
    workflow = make_workflow(linear_form_workflow)
    task_db.add(Schedule(workflow_id=workflow.id, cron_expression="*/5 * * * *", timezone="UTC"))
    task_db.commit()

    result = tasks.schedule_tick_task.apply().get()

    assert result["processed"] == 1
    assert result["results"][0]["status"] == "queued"
    assert task_db.query(QueueItem).count() == 1


@pytest.mark.unit
def test_expire_suspended_task_disabled_without_timeout(task_db, monkeypatch):
    monkeypatch.delenv("SUSPEND_TIMEOUT_SECONDS", raising=False)

    assert tasks.expire_suspended_task.apply().get() == {"expired": [], "enabled": False}


@pytest.mark.unit
def test_queue_tick_limits_cover_a_full_batch():
    settings = WorkerSettings.from_env()

    assert tasks.process_queue_task.soft_time_limit == settings.tick_time_limit_seconds
    assert tasks.process_queue_task.time_limit > tasks.process_queue_task.soft_time_limit
    assert settings.tick_time_limit_seconds > settings.batch_size * settings.item_timeout_seconds


@pytest.mark.unit
def test_item_timeout_must_fit_staleness_window():
    with pytest.raises(ValueError, match="must be below stale_after_seconds"):
        WorkerSettings(stale_after_seconds=900, item_timeout_seconds=900)

    assert WorkerSettings(batch_size=5, stale_after_seconds=900, item_timeout_seconds=540).tick_time_limit_seconds == 2760
