"""
Workflow Graph

Parses a workflow definition (JSON) into node objects and edges, validates
its structure, and answers "which node comes next".

Example:
    graph = WorkflowGraph.from_definition({
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "review", "type": "approval"},
            {"id": "end", "type": "end"}
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "review"},
            {"id": "e2", "source": "review", "target": "end"}
        ]
    })
    graph.start_node.id            # "start"
    graph.next_node(graph.node("review"), context={})  # EndNode "end"
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .nodes import create_node_from_dict, NodeType, StartNode
from .predicates import ConditionPredicate, RulePredicate
from .exceptions import GraphValidationError, GraphExecutionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Edge:
    """
    Directed edge between two nodes.

    condition is an optional guard: "true" / "false" (matched against the
    source condition node's result) or a rule expression evaluated against
    the context.

    priority orders the guards of a condition node: higher first, ties in
    definition order.
    """
    id: str
    source: str
    target: str
    condition: Any = None
    priority: int = 0

    @property
    def is_guarded(self) -> bool:
        return self.condition is not None and self.condition != ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int) -> "Edge":
        source = data.get("source", data.get("from"))
        target = data.get("target", data.get("to"))
        if not source or not target:
            raise GraphValidationError(f"Edge missing 'source' or 'target': {data}")
        condition = data.get("condition")
        if condition is None and isinstance(data.get("data"), dict):
            condition = data["data"].get("condition")
        priority = data.get("priority")
        if priority is None and isinstance(data.get("data"), dict):
            priority = data["data"].get("priority")
        if priority is None:
            priority = 0
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise GraphValidationError(f"Edge priority must be an integer: {data}")
        return cls(
            id=str(data.get("id") or f"e{index}"),
            source=source,
            target=target,
            condition=condition,
            priority=priority,
        )


class WorkflowGraph:
    """
    Validated, immutable view of a workflow definition.

    Invariants (checked at construction):
    1. Exactly one StartNode
    2. Unique node IDs
    3. Every edge references existing nodes
    4. Every node is reachable from the StartNode
    5. At most one outgoing edge per node, except condition nodes
    """

    def __init__(self, nodes: Dict[str, NodeType], edges: List[Edge]):
        self._nodes = nodes
        self._edges = edges
        self._outgoing: Dict[str, List[Edge]] = {node_id: [] for node_id in nodes}
        for edge in edges:
            if edge.source in self._outgoing:
                self._outgoing[edge.source].append(edge)
        self._validate()

    @classmethod
    def from_definition(cls, definition: Dict[str, Any]) -> "WorkflowGraph":
        """
        Parse a workflow definition into a graph.

        Raises:
            GraphValidationError: If parsing or validation fails
        """
        if not isinstance(definition, dict):
            raise GraphValidationError("Workflow definition must be an object")
        if "nodes" not in definition:
            raise GraphValidationError("Workflow definition missing 'nodes' field")

        nodes: Dict[str, NodeType] = {}
        for node_data in definition["nodes"] or []:
            try:
                node = create_node_from_dict(node_data)
            except Exception as e:
                raise GraphValidationError(f"Failed to parse node {node_data.get('id')}: {e}")
            if node.id in nodes:
                raise GraphValidationError(f"Duplicate node id: {node.id}")
            nodes[node.id] = node

        edges = [Edge.from_dict(edge, i) for i, edge in enumerate(definition.get("edges") or [], start=1)]

        graph = cls(nodes, edges)
        logger.info(f"Parsed workflow: {len(nodes)} nodes, {len(edges)} edges")
        return graph

    def _validate(self) -> None:
        start_nodes = [n for n in self._nodes.values() if isinstance(n, StartNode)]
        if len(start_nodes) != 1:
            raise GraphValidationError(
                f"Workflow must have exactly one StartNode (found {len(start_nodes)})"
            )
        self._start = start_nodes[0]

        for edge in self._edges:
            if edge.source not in self._nodes:
                raise GraphValidationError(f"Edge {edge.id} references non-existent node: {edge.source}")
            if edge.target not in self._nodes:
                raise GraphValidationError(f"Edge {edge.id} references non-existent node: {edge.target}")

        for node_id, outgoing in self._outgoing.items():
            node = self._nodes[node_id]
            if len(outgoing) > 1 and node.type != "condition":
                raise GraphValidationError(
                    f"Node {node_id} ({node.type}) has {len(outgoing)} outgoing edges; "
                    f"only condition nodes may branch"
                )

        reachable = {self._start.id}
        pending = deque([self._start.id])
        while pending:
            for edge in self._outgoing[pending.popleft()]:
                if edge.target not in reachable:
                    reachable.add(edge.target)
                    pending.append(edge.target)
        unreachable = sorted(set(self._nodes) - reachable)
        if unreachable:
            raise GraphValidationError(f"Nodes not reachable from start: {unreachable}")

    @property
    def start_node(self) -> StartNode:
        return self._start

    @property
    def nodes(self) -> Dict[str, NodeType]:
        return dict(self._nodes)

    @property
    def edges(self) -> List[Edge]:
        return list(self._edges)

    def node(self, node_id: str) -> NodeType:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise GraphExecutionError(f"Node not found in workflow: {node_id}")

    def outgoing(self, node_id: str) -> List[Edge]:
        return list(self._outgoing.get(node_id, []))

    def next_node(
        self,
        node: NodeType,
        context: Dict[str, Any],
        predicate: Optional[ConditionPredicate] = None
    ) -> Optional[NodeType]:
        """
        Select the successor of `node`.

        Non-condition nodes follow their single edge (or None when there is none).
        Condition nodes take the first edge whose guard passes, by descending
        priority then definition order; otherwise the unique unguarded edge;
        otherwise fail.

        Raises:
            GraphExecutionError: If a condition node has no passing guard and
                no single default edge
        """
        outgoing = self._outgoing.get(node.id, [])

        if not outgoing:
            return None

        if node.type != "condition":
            return self._nodes[outgoing[0].target]

        predicate = predicate or RulePredicate()
        for edge in sorted(outgoing, key=lambda e: -e.priority):
            if edge.is_guarded and self._guard_passes(edge, node, context, predicate):
                return self._nodes[edge.target]

        unguarded = [edge for edge in outgoing if not edge.is_guarded]
        if len(unguarded) == 1:
            return self._nodes[unguarded[0].target]

        raise GraphExecutionError(
            f"No edge found for condition node {node.id} "
            f"(result={context.get(node.id)!r}, guards={[e.condition for e in outgoing]})"
        )

    def _guard_passes(
        self,
        edge: Edge,
        node: NodeType,
        context: Dict[str, Any],
        predicate: ConditionPredicate
    ) -> bool:
        guard = edge.condition
        if isinstance(guard, bool):
            guard = "true" if guard else "false"

        if isinstance(guard, str):
            result = context.get(node.id)
            if result is None:
                raise GraphExecutionError(
                    f"Condition node {node.id} did not set '{node.id}' in context"
                )
            if isinstance(result, bool):
                result = "true" if result else "false"
            return str(result).lower() == guard.lower()

        return predicate.evaluate(guard, context)

    def __repr__(self) -> str:
        return f"<WorkflowGraph(nodes={len(self._nodes)}, edges={len(self._edges)})>"
