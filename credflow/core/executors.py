"""
Executor System for CREDFLOW Workflow Engine

One NodeExecutor per node kind, registered in an ExecutorRegistry:
- StartExecutor: passes the context through
- EndExecutor: terminates the run
- SuspendExecutor: form / approval, pauses the run until resumed
- EffectExecutor: email / http / webhook-call / database-op via a NodeEffect
- ConditionExecutor: evaluates the node's expression with a ConditionPredicate

Executors return a StepResult: the output to merge into the context and a
continuation signal telling the engine what to do next.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..config import EffectSettings
from .effects import (
    NodeEffect,
    EmailEffect,
    HttpEffect,
    WebhookCallEffect,
    DatabaseOperationEffect,
)
from .exceptions import GraphExecutionError, NodeEffectError
from .nodes import NodeType, EFFECT_KINDS
from .predicates import ConditionPredicate, RulePredicate

logger = logging.getLogger(__name__)


class Signal:
    """Continuation signals"""
    ADVANCE = "advance"
    SUSPEND = "suspend"
    TERMINATE = "terminate"


@dataclass
class StepResult:
    output: Dict[str, Any] = field(default_factory=dict)
    signal: str = Signal.ADVANCE


class NodeExecutor(ABC):
    """
    Abstract interface for all node executors.

    execute() must not persist anything: the engine owns Execution and
    StepExecution rows.
    """

    @abstractmethod
    async def execute(self, node: NodeType, context: Dict[str, Any]) -> StepResult:
        """
        Execute one node.

        Args:
            node: The node to execute
            context: Accumulated workflow context (read-only copy)

        Returns:
            StepResult with output and signal

        Raises:
            NodeEffectError: If the node's effect fails
        """


class StartExecutor(NodeExecutor):
    async def execute(self, node: NodeType, context: Dict[str, Any]) -> StepResult:
        return StepResult(output={}, signal=Signal.ADVANCE)


class EndExecutor(NodeExecutor):
    async def execute(self, node: NodeType, context: Dict[str, Any]) -> StepResult:
        return StepResult(output={}, signal=Signal.TERMINATE)


class SuspendExecutor(NodeExecutor):
    """
    Form and approval nodes.

    The output records what the run is waiting for; it is stored on the
    pending StepExecution and shown to whoever completes the step.
    """

    async def execute(self, node: NodeType, context: Dict[str, Any]) -> StepResult:
        output: Dict[str, Any] = {"awaiting": node.type}
        if node.type == "form":
            output["fields"] = node.config.get("fields", [])
        else:
            output["assignees"] = node.config.get("assignees", [])
        if node.label:
            output["label"] = node.label
        return StepResult(output=output, signal=Signal.SUSPEND)


class EffectExecutor(NodeExecutor):
    """Delegates to a NodeEffect and normalises failures into NodeEffectError."""

    def __init__(self, effect: NodeEffect):
        self.effect = effect

    async def execute(self, node: NodeType, context: Dict[str, Any]) -> StepResult:
        try:
            output = await self.effect.run(node, context)
        except NodeEffectError as e:
            if e.node_id is None:
                e.node_id, e.node_type = node.id, node.type
            raise
        except Exception as e:
            raise NodeEffectError(
                f"{node.type} node {node.id} failed: {e}",
                node_id=node.id,
                node_type=node.type
            ) from e

        if output is not None and not isinstance(output, dict):
            raise NodeEffectError(
                f"{node.type} node {node.id} returned {type(output).__name__}, expected dict",
                node_id=node.id,
                node_type=node.type
            )
        return StepResult(output=output or {}, signal=Signal.ADVANCE)


class ConditionExecutor(NodeExecutor):
    """Writes the boolean result under the node id (read by edge guards)."""

    def __init__(self, predicate: Optional[ConditionPredicate] = None):
        self.predicate = predicate or RulePredicate()

    async def execute(self, node: NodeType, context: Dict[str, Any]) -> StepResult:
        try:
            result = bool(self.predicate.evaluate(node.config.get("expression"), context))
        except Exception as e:
            raise NodeEffectError(
                f"Condition {node.id} could not be evaluated: {e}",
                node_id=node.id,
                node_type=node.type
            ) from e

        logger.info(f"Condition {node.id} evaluated to {result}", extra={"node_id": node.id})
        return StepResult(output={node.id: result, "condition_result": result}, signal=Signal.ADVANCE)


class ExecutorRegistry:
    """Lookup table: node kind -> NodeExecutor."""

    def __init__(self, executors: Optional[Dict[str, NodeExecutor]] = None):
        self._executors: Dict[str, NodeExecutor] = dict(executors or {})

    def register(self, kind: str, executor: NodeExecutor) -> None:
        self._executors[kind] = executor

    def get(self, kind: str) -> NodeExecutor:
        executor = self._executors.get(kind)
        if executor is None:
            raise GraphExecutionError(
                f"No executor registered for node type '{kind}'. "
                f"Registered: {sorted(self._executors)}"
            )
        return executor

    def kinds(self):
        return sorted(self._executors)


def build_executor_registry(
    effects: Optional[Dict[str, NodeEffect]] = None,
    predicate: Optional[ConditionPredicate] = None,
    session: Optional[Session] = None,
    settings: Optional[EffectSettings] = None
) -> ExecutorRegistry:
    """
    Factory function: registry with every node kind wired up.

    Args:
        effects: Overrides per effect kind (tests pass fakes here)
        predicate: Predicate for condition nodes (defaults to RulePredicate)
        session: SQLAlchemy session for the database-op effect
        settings: Effect settings (defaults to EffectSettings.from_env())

    Example:
        >>> registry = build_executor_registry(effects={"http": FakeHttpEffect()})
        >>> isinstance(registry.get("approval"), SuspendExecutor)
        True
    """
    settings = settings or EffectSettings.from_env()
    effects = dict(effects or {})

    defaults: Dict[str, NodeEffect] = {
        "email": EmailEffect(settings),
        "http": HttpEffect(settings),
        "webhook-call": WebhookCallEffect(settings),
    }
    if session is not None:
        defaults["database-op"] = DatabaseOperationEffect(session, settings)
    for kind, effect in defaults.items():
        effects.setdefault(kind, effect)

    suspend = SuspendExecutor()
    registry = ExecutorRegistry({
        "start": StartExecutor(),
        "end": EndExecutor(),
        "form": suspend,
        "approval": suspend,
        "condition": ConditionExecutor(predicate),
    })
    for kind in EFFECT_KINDS:
        if kind in effects:
            registry.register(kind, EffectExecutor(effects[kind]))

    return registry
