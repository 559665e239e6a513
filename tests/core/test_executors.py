"""
Tests for the executor registry and node executors

Tests cover:
- Continuation signals per node kind
- Suspend output (awaiting / fields / assignees)
- Effect failures normalised into NodeEffectError
- Condition evaluation output
- Registry lookup and default wiring
"""

import pytest

from credflow.config import EffectSettings
from credflow.core.effects import NodeEffect, HttpEffect, DatabaseOperationEffect
from credflow.core.executors import (
    Signal,
    StartExecutor,
    EndExecutor,
    SuspendExecutor,
    EffectExecutor,
    ConditionExecutor,
    ExecutorRegistry,
    build_executor_registry,
)
from credflow.core.exceptions import GraphExecutionError, NodeEffectError
from credflow.core.nodes import create_node_from_dict


def _node(node_type, config=None, node_id="n1", label=None):
    return create_node_from_dict({"id": node_id, "type": node_type, "label": label, "config": config or {}})


# ============================================================================
# SIGNALS
# ============================================================================

@pytest.mark.asyncio
async def test_start_advances_and_end_terminates():
    start = await StartExecutor().execute(_node("start"), {"a": 1})
    end = await EndExecutor().execute(_node("end"), {"a": 1})

    assert (start.output, start.signal) == ({}, Signal.ADVANCE)
    assert (end.output, end.signal) == ({}, Signal.TERMINATE)


@pytest.mark.asyncio
async def test_form_suspends_with_fields():
    result = await SuspendExecutor().execute(_node("form", {"fields": ["crm"]}, label="Documents"), {})

    assert result.signal == Signal.SUSPEND
    assert result.output == {"awaiting": "form", "fields": ["crm"], "label": "Documents"}


@pytest.mark.asyncio
async def test_approval_suspends_with_assignees():
    result = await SuspendExecutor().execute(_node("approval", {"assignees": ["analyst"]}), {})

    assert result.signal == Signal.SUSPEND
    assert result.output == {"awaiting": "approval", "assignees": ["analyst"]}


# ============================================================================
# EFFECTS
# ============================================================================

@pytest.mark.asyncio
async def test_effect_executor_returns_effect_output(make_effect):
    effect = make_effect(output={"sent": True})
    node = _node("email", {"to": "a@example.com"}, node_id="welcome")

    result = await EffectExecutor(effect).execute(node, {"email": "a@example.com"})

    assert result.signal == Signal.ADVANCE
    assert result.output == {"welcome": {"sent": True}}
    assert effect.calls[0]["node_id"] == "welcome"


@pytest.mark.asyncio
async def test_effect_executor_wraps_unexpected_errors(make_effect):
    effect = make_effect(error=ConnectionError("connection refused"))
    node = _node("http", {"url": "https://x.example.com"}, node_id="call")

    with pytest.raises(NodeEffectError, match="http node call failed: connection refused") as exc_info:
        await EffectExecutor(effect).execute(node, {})

    assert exc_info.value.node_id == "call"
    assert exc_info.value.node_type == "http"


@pytest.mark.asyncio
async def test_effect_executor_fills_node_on_effect_error(make_effect):
    effect = make_effect(error=NodeEffectError("SMTP down"))

    with pytest.raises(NodeEffectError) as exc_info:
        await EffectExecutor(effect).execute(_node("email", {"to": "x"}, node_id="mail"), {})

    assert exc_info.value.node_id == "mail"
    assert exc_info.value.message == "SMTP down"


@pytest.mark.asyncio
async def test_effect_executor_rejects_non_dict_output():
    class ListEffect(NodeEffect):
        async def run(self, node, context):
            return ["not", "a", "dict"]

    with pytest.raises(NodeEffectError, match="returned list, expected dict"):
        await EffectExecutor(ListEffect()).execute(_node("email", {"to": "x"}), {})


# ============================================================================
# CONDITIONS
# ============================================================================

@pytest.mark.asyncio
async def test_condition_executor_writes_result():
    node = _node("condition", {"expression": {"field": "amount", "operator": ">", "value": 1000}}, node_id="big_amount")

    result = await ConditionExecutor().execute(node, {"amount": 1500})

    assert result.signal == Signal.ADVANCE
    assert result.output == {"big_amount": True, "condition_result": True}


@pytest.mark.asyncio
async def test_condition_executor_bad_expression():
    node = _node("condition", {"expression": "amount > 1000"}, node_id="check")

    with pytest.raises(NodeEffectError, match="Condition check could not be evaluated"):
        await ConditionExecutor().execute(node, {})


# ============================================================================
# REGISTRY
# ============================================================================

@pytest.mark.unit
def test_registry_unknown_kind():
    registry = ExecutorRegistry({"start": StartExecutor()})

    with pytest.raises(GraphExecutionError, match="No executor registered for node type 'form'"):
        registry.get("form")


@pytest.mark.unit
def test_build_registry_defaults():
    registry = build_executor_registry(settings=EffectSettings())

    assert registry.kinds() == ["approval", "condition", "email", "end", "form", "http", "start", "webhook-call"]
    assert isinstance(registry.get("http").effect, HttpEffect)


@pytest.mark.unit
def test_build_registry_with_session_and_overrides(db_session, make_effect):
    fake_http = make_effect()
    registry = build_executor_registry(effects={"http": fake_http}, session=db_session, settings=EffectSettings())

    assert registry.get("http").effect is fake_http
    assert isinstance(registry.get("database-op").effect, DatabaseOperationEffect)
