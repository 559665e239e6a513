"""
Graph Engine for CREDFLOW Workflow System

The GraphEngine is responsible for:
1. Loading workflow definitions (JSON → WorkflowGraph, rejecting invalid graphs)
2. Creating the Execution record for a triggered run
3. Walking the graph node by node through the executor registry
4. Persisting one StepExecution per node visit
5. Stopping at suspend (form / approval), terminate (end) or failure

Two variants exist:
- GraphEngine (v1): persists the context when the run suspends or ends
- CheckpointingGraphEngine (v2): also checkpoints the context after every node

Example:
    engine = GraphEngine(db_session)

    result = await engine.execute_workflow(
        workflow,
        initial_context={"cpf": "123.456.789-00"},
        started_by="webhook:partner-portal"
    )
    result.outcome  # "completed" | "failed" | "suspended"
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..models import Workflow, Execution, StepExecution
from ..models.execution import ExecutionStatus
from ..models.step_execution import StepStatus
from .context import ContextManager
from .executors import ExecutorRegistry, Signal, build_executor_registry
from .graph import WorkflowGraph
from .logging_config import set_execution_id
from .nodes import NodeType
from .notifications import NotificationSink, LoggingNotificationSink, NotificationEvent
from .predicates import ConditionPredicate, RulePredicate
from .exceptions import (
    EngineError,
    GraphExecutionError,
    NodeEffectError,
)

logger = logging.getLogger(__name__)


class RunOutcome:
    """Outcome of one engine invocation"""
    COMPLETED = "completed"
    FAILED = "failed"
    SUSPENDED = "suspended"


@dataclass
class RunResult:
    execution_id: int
    outcome: str
    context: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    suspended_step_id: Optional[int] = None
    nodes_executed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class GraphEngine:
    """
    Core execution engine for workflow graphs.

    Owns Execution and StepExecution rows for the duration of a run: every
    node visit creates a StepExecution (committed before the node's effect
    runs) and closes it before the engine moves on or returns.
    """

    engine_version = "v1"

    def __init__(
        self,
        db_session: Session,
        executors: Optional[ExecutorRegistry] = None,
        notifier: Optional[NotificationSink] = None,
        predicate: Optional[ConditionPredicate] = None,
        max_steps: int = 500
    ):
        """
        Initialize GraphEngine.

        Args:
            db_session: SQLAlchemy session for persisting executions
            executors: Node executor registry (defaults to the built-in effects)
            notifier: Notification sink (defaults to logging)
            predicate: Predicate for condition nodes and rule guards
            max_steps: Node visits allowed per invocation (guards against cycles)
        """
        self.db_session = db_session
        self.predicate = predicate or RulePredicate()
        self.executors = executors or build_executor_registry(session=db_session, predicate=self.predicate)
        self.notifier = notifier or LoggingNotificationSink()
        self.max_steps = max_steps

    def load_graph(self, workflow: Workflow, version: Optional[int] = None) -> WorkflowGraph:
        """
        Parse and validate the graph for a workflow version.

        Raises:
            GraphValidationError: If the definition violates graph invariants
        """
        return WorkflowGraph.from_definition(workflow.graph_for_version(version))

    async def execute_workflow(
        self,
        workflow: Workflow,
        initial_context: Optional[Dict[str, Any]] = None,
        started_by: Optional[str] = None,
        queue_item_id: Optional[int] = None,
        version: Optional[int] = None
    ) -> RunResult:
        """
        Start a new run of `workflow` from its start node.

        The graph is validated before anything is written: an invalid graph
        raises GraphValidationError and no Execution is created.

        Raises:
            GraphValidationError: If the workflow graph is invalid
            EngineError: If the engine fails for a non business-logic reason
        """
        graph = self.load_graph(workflow, version)
        context = ContextManager(initial_context)

        execution = Execution(
            workflow_id=workflow.id,
            workflow_version=version or workflow.version,
            status=ExecutionStatus.RUNNING,
            engine_version=self.engine_version,
            started_by=started_by,
            queue_item_id=queue_item_id,
            context=context.snapshot(),
            started_at=datetime.utcnow(),
        )
        self.db_session.add(execution)
        self.db_session.commit()

        set_execution_id(execution.id)
        logger.info(
            f"Execution {execution.id} started for workflow {workflow.id} (engine {self.engine_version})",
            extra={"workflow_id": workflow.id, "started_by": started_by, "queue_item_id": queue_item_id}
        )

        return await self.run(execution, graph, graph.start_node, context.get_all())

    async def run(
        self,
        execution: Execution,
        graph: WorkflowGraph,
        current_node: Optional[NodeType],
        context: Dict[str, Any]
    ) -> RunResult:
        """
        Walk the graph from `current_node` until the run suspends, terminates or fails.

        Business-logic failures (node effect errors, missing branch) are
        recorded on the Execution and returned as a FAILED outcome. Anything
        else is recorded best-effort and raised as EngineError.
        """
        set_execution_id(execution.id)
        ctx = ContextManager(context)
        nodes_executed = 0
        node = current_node

        try:
            while node is not None:
                if nodes_executed >= self.max_steps:
                    return self._fail_execution(
                        execution, ctx,
                        f"Step limit of {self.max_steps} nodes exceeded (cycle in workflow?)",
                        nodes_executed
                    )

                # Cancellation (or expiry) happens out-of-band: re-check before every node
                self.db_session.refresh(execution)
                if execution.status != ExecutionStatus.RUNNING:
                    logger.warning(f"Execution {execution.id} is {execution.status}; stopping before node {node.id}")
                    return RunResult(
                        execution_id=execution.id,
                        outcome=RunOutcome.FAILED if execution.status == ExecutionStatus.FAILED else RunOutcome.COMPLETED,
                        context=ctx.get_all(),
                        error=execution.error_message,
                        nodes_executed=nodes_executed,
                    )

                step = self._open_step(execution, node, ctx)
                nodes_executed += 1

                try:
                    executor = self.executors.get(node.type)
                    result = await executor.execute(node, ctx.get_all())
                except (NodeEffectError, GraphExecutionError) as e:
                    # A failed effect may leave the transaction unusable
                    self.db_session.rollback()
                    logger.error(f"Node {node.id} failed: {e.message}", extra={"node_id": node.id, "node_type": node.type})
                    self._close_step(step, StepStatus.FAILED, error=e.message)
                    return self._fail_execution(execution, ctx, e.message, nodes_executed, node_id=node.id)

                if result.signal == Signal.SUSPEND:
                    self._close_step(step, StepStatus.PENDING, output=result.output, commit=False)
                    execution.context = ctx.snapshot()
                    self.db_session.commit()
                    logger.info(f"Execution {execution.id} suspended at node {node.id}", extra={"step_execution_id": step.id})
                    self._notify(NotificationEvent.SUSPENDED, execution, node_id=node.id, step_execution_id=step.id)
                    return RunResult(
                        execution_id=execution.id,
                        outcome=RunOutcome.SUSPENDED,
                        context=ctx.get_all(),
                        suspended_step_id=step.id,
                        nodes_executed=nodes_executed,
                    )

                ctx.update(result.output)
                self._close_step(step, StepStatus.COMPLETED, output=result.output)
                self._checkpoint(execution, ctx)

                if result.signal == Signal.TERMINATE:
                    break

                try:
                    next_node = graph.next_node(node, ctx.get_all(), self.predicate)
                except GraphExecutionError as e:
                    return self._fail_execution(execution, ctx, e.message, nodes_executed, node_id=node.id)

                if next_node is None and node.type != "end":
                    logger.warning(f"Node {node.id} ({node.type}) has no outgoing edge; completing execution {execution.id}")
                node = next_node

            return self._complete_execution(execution, ctx, nodes_executed)

        except Exception as e:
            logger.exception(f"Engine failure in execution {execution.id}: {e}")
            self.db_session.rollback()
            self._record_hard_failure(execution, e)
            raise EngineError(f"Engine failure in execution {execution.id}: {e}", execution_id=execution.id) from e

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _open_step(self, execution: Execution, node: NodeType, ctx: ContextManager) -> StepExecution:
        step = StepExecution(
            execution_id=execution.id,
            node_id=node.id,
            node_type=node.type,
            status=StepStatus.RUNNING,
            input_data=ctx.snapshot(),
            started_at=datetime.utcnow(),
        )
        execution.current_node_id = node.id
        self.db_session.add(step)
        self.db_session.commit()
        return step

    def _close_step(
        self,
        step: StepExecution,
        status: str,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        commit: bool = True
    ) -> None:
        step.status = status
        if output is not None:
            step.output_data = ContextManager(output).snapshot()
        if error is not None:
            step.error_message = error
        if status != StepStatus.PENDING:
            step.completed_at = datetime.utcnow()
        if commit:
            self.db_session.commit()

    def _checkpoint(self, execution: Execution, ctx: ContextManager) -> None:
        """Hook called after every completed node. v1 keeps the context in memory."""

    def _complete_execution(self, execution: Execution, ctx: ContextManager, nodes_executed: int) -> RunResult:
        execution.status = ExecutionStatus.COMPLETED
        execution.context = ctx.snapshot()
        execution.completed_at = datetime.utcnow()
        self.db_session.commit()

        logger.info(f"Execution {execution.id} completed ({nodes_executed} nodes)")
        self._notify(NotificationEvent.COMPLETED, execution, nodes_executed=nodes_executed)
        return RunResult(
            execution_id=execution.id,
            outcome=RunOutcome.COMPLETED,
            context=ctx.get_all(),
            nodes_executed=nodes_executed,
        )

    def _fail_execution(
        self,
        execution: Execution,
        ctx: ContextManager,
        error: str,
        nodes_executed: int,
        node_id: Optional[str] = None
    ) -> RunResult:
        execution.status = ExecutionStatus.FAILED
        execution.error_message = error
        execution.context = ctx.snapshot()
        execution.completed_at = datetime.utcnow()
        self.db_session.commit()

        logger.error(f"Execution {execution.id} failed: {error}", extra={"node_id": node_id})
        self._notify(NotificationEvent.FAILED, execution, error=error, node_id=node_id)
        return RunResult(
            execution_id=execution.id,
            outcome=RunOutcome.FAILED,
            context=ctx.get_all(),
            error=error,
            nodes_executed=nodes_executed,
        )

    def _record_hard_failure(self, execution: Execution, error: Exception) -> None:
        try:
            record = self.db_session.get(Execution, execution.id)
            if record is not None and record.status == ExecutionStatus.RUNNING:
                message = f"Engine error: {error}"
                now = datetime.utcnow()
                record.status = ExecutionStatus.FAILED
                record.error_message = message
                record.completed_at = now
                # The step whose effect was in flight must not stay running forever
                self.db_session.execute(
                    update(StepExecution)
                    .where(StepExecution.execution_id == execution.id, StepExecution.status == StepStatus.RUNNING)
                    .values(status=StepStatus.FAILED, error_message=message, completed_at=now)
                    .execution_options(synchronize_session=False)
                )
                self.db_session.commit()
        except Exception as record_error:
            logger.error(f"Could not record engine failure on execution {execution.id}: {record_error}")
            self.db_session.rollback()

    def _notify(self, event: str, execution: Execution, **details: Any) -> None:
        try:
            self.notifier.notify(event, execution, **details)
        except Exception as e:
            logger.warning(f"Notification {event} for execution {execution.id} failed: {e}")
            self.db_session.rollback()


class CheckpointingGraphEngine(GraphEngine):
    """
    Engine v2: checkpoints the accumulated context onto the Execution after
    every node, so an operator (or a retry) can see exactly how far a run got.
    """

    engine_version = "v2"

    def _checkpoint(self, execution: Execution, ctx: ContextManager) -> None:
        execution.context = ctx.snapshot()
        self.db_session.commit()
        logger.debug(f"Checkpoint saved for execution {execution.id} at node {execution.current_node_id}")


ENGINE_VARIANTS = {
    GraphEngine.engine_version: GraphEngine,
    CheckpointingGraphEngine.engine_version: CheckpointingGraphEngine,
}
