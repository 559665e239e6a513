"""
Pytest fixtures for CREDFLOW tests

This module provides shared fixtures for all tests:
- Database session fixtures (in-memory SQLite)
- Fake node effects that record their calls
- Engines / resumer wired to the fakes
- Sample workflow definitions
"""

import pytest
from typing import Any, Dict, List, Optional
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from credflow.config import EffectSettings, WorkerSettings
from credflow.models import Base
from credflow.models.workflow import Workflow
from credflow.core.effects import NodeEffect
from credflow.core.engine import GraphEngine, CheckpointingGraphEngine
from credflow.core.executors import build_executor_registry
from credflow.core.notifications import NotificationSink
from credflow.core.resumer import Resumer


# ============================================================================
# DATABASE FIXTURES
# ============================================================================

@pytest.fixture(scope="function")
def db_engine():
    """
    In-memory SQLite engine shared by every session of one test.
    StaticPool keeps a single connection so threads (TestClient) see the same data.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine):
    """
    Create an in-memory SQLite database for testing.
    Each test gets a fresh database that's torn down after the test.
    """
    SessionLocal = sessionmaker(bind=db_engine)
    session = SessionLocal()

    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def file_session_factory(tmp_path):
    """
    Session factory over a file-backed SQLite database.
    Used where two independent sessions must race on the same rows.
    """
    engine = create_engine(f"sqlite:///{tmp_path / 'credflow_test.db'}", echo=False)
    Base.metadata.create_all(engine)
    try:
        yield sessionmaker(bind=engine)
    finally:
        engine.dispose()


@pytest.fixture
def make_workflow(db_session):
    """
    Factory: persist a Workflow with the given graph.

    Usage:
        workflow = make_workflow(linear_form_workflow, use_engine_v2=True)
    """
    def _make(graph: Dict[str, Any], name: str = "Test Workflow", **fields) -> Workflow:
        workflow = Workflow(name=name, graph_definition=graph, **fields)
        db_session.add(workflow)
        db_session.commit()
        db_session.refresh(workflow)
        return workflow

    return _make


# ============================================================================
# EFFECT / ENGINE FIXTURES
# ============================================================================

class RecordingEffect(NodeEffect):
    """
    Fake NodeEffect: records every call, returns {node.id: output} or raises `error`.
    """

    def __init__(self, output: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        self.output = output if output is not None else {"ok": True}
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def run(self, node, context):
        self.calls.append({"node_id": node.id, "context": dict(context)})
        if self.error is not None:
            raise self.error
        return {node.id: self.output}


class RecordingNotifier(NotificationSink):
    def __init__(self):
        self.events = []

    def notify(self, event, execution, **details):
        self.events.append((event, execution.id, details))

    def names(self):
        return [event for event, _, _ in self.events]


@pytest.fixture
def make_effect():
    """Factory for RecordingEffect: make_effect(output=..., error=...)"""
    return RecordingEffect


@pytest.fixture
def fake_effects():
    return {
        "email": RecordingEffect(),
        "http": RecordingEffect(output={"status": 200, "body": {"accepted": True}}),
        "webhook-call": RecordingEffect(output={"called": True, "status": 200}),
    }


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def executors(fake_effects):
    return build_executor_registry(effects=fake_effects, settings=EffectSettings())


@pytest.fixture
def engines(db_session, executors, notifier):
    return {
        "v1": GraphEngine(db_session, executors=executors, notifier=notifier),
        "v2": CheckpointingGraphEngine(db_session, executors=executors, notifier=notifier),
    }


@pytest.fixture
def engine(engines):
    return engines["v1"]


@pytest.fixture
def resumer(db_session, engines, notifier):
    return Resumer(db_session, engines=engines, notifier=notifier)


@pytest.fixture
def worker_settings():
    return WorkerSettings(
        batch_size=5,
        stale_after_seconds=900,
        retry_backoff_seconds=0,
        item_timeout_seconds=30,
        engine_v2_enabled=False,
        dev_callbacks_enabled=False,
        suspend_timeout_seconds=None,
    )


# ============================================================================
# WORKFLOW DEFINITION FIXTURES
# ============================================================================

@pytest.fixture
def linear_form_workflow():
    """
    start -> form -> end
    """
    return {
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "documents", "type": "form", "label": "Upload documents", "config": {"fields": ["crm", "cpf"]}},
            {"id": "end", "type": "end"}
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "documents"},
            {"id": "e2", "source": "documents", "target": "end"}
        ]
    }


@pytest.fixture
def http_workflow():
    """
    start -> http -> end
    """
    return {
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "registry_check", "type": "http", "config": {"url": "https://registry.example.com/check"}},
            {"id": "end", "type": "end"}
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "registry_check"},
            {"id": "e2", "source": "registry_check", "target": "end"}
        ]
    }


@pytest.fixture
def onboarding_workflow():
    """
    start -> documents(form) -> review(approval) -> welcome(email) -> end
    """
    return {
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "documents", "type": "form", "config": {"fields": ["crm"]}},
            {"id": "review", "type": "approval", "config": {"assignees": ["analyst"]}},
            {"id": "welcome", "type": "email", "config": {"to": "{email}", "subject": "Welcome"}},
            {"id": "end", "type": "end"}
        ],
        "edges": [
            {"source": "start", "target": "documents"},
            {"source": "documents", "target": "review"},
            {"source": "review", "target": "welcome"},
            {"source": "welcome", "target": "end"}
        ]
    }


@pytest.fixture
def condition_workflow():
    """
    start -> age_check(condition) -> [true: adult_email | false: guardian_form] -> end
    """
    return {
        "nodes": [
            {"id": "start", "type": "start"},
            {
                "id": "age_check",
                "type": "condition",
                "config": {"expression": {"field": "applicant.age", "operator": ">=", "value": "18"}}
            },
            {"id": "adult_email", "type": "email", "config": {"to": "{email}"}},
            {"id": "guardian_form", "type": "form", "config": {"fields": ["guardian_name"]}},
            {"id": "end", "type": "end"}
        ],
        "edges": [
            {"source": "start", "target": "age_check"},
            {"source": "age_check", "target": "adult_email", "condition": "true"},
            {"source": "age_check", "target": "guardian_form", "condition": "false"},
            {"source": "adult_email", "target": "end"},
            {"source": "guardian_form", "target": "end"}
        ]
    }


# ============================================================================
# UTILITY FIXTURES
# ============================================================================

@pytest.fixture
def capture_logs(caplog):
    """
    Fixture to capture logs for testing
    """
    import logging
    caplog.set_level(logging.DEBUG)
    return caplog
