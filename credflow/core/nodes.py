"""
Node System for CREDFLOW Workflow Engine

This module defines the node kinds that compose workflows:
- StartNode: Entry point of the workflow
- EndNode: Exit point of the workflow
- FormNode / ApprovalNode: Suspend kinds, wait for an external event
- EmailNode / HttpNode / WebhookCallNode / DatabaseOpNode: Effect kinds
- ConditionNode: Evaluates a predicate and branches

All nodes are immutable (frozen) Pydantic models with validation.
Kind-specific settings live under `config`.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Literal, Optional, Union, Dict, Any


SUSPEND_KINDS = frozenset({"form", "approval"})
EFFECT_KINDS = frozenset({"email", "http", "webhook-call", "database-op"})


class BaseNode(BaseModel):
    """
    Base class for all workflow nodes.

    All nodes have:
    - id: Unique identifier
    - type: Node kind
    - label: Optional human-readable label
    - config: Kind-specific settings
    """

    # Extra keys (editor positions, styling) are ignored
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., min_length=1, description="Unique node identifier")
    type: str
    label: Optional[str] = Field(None, description="Human-readable label")
    config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def validate_id_not_empty(cls, v: str) -> str:
        """Ensure ID is not empty or whitespace"""
        if not v.strip():
            raise ValueError("Node ID cannot be empty")
        return v

    @property
    def is_suspend_kind(self) -> bool:
        return self.type in SUSPEND_KINDS

    def validate_node(self) -> None:
        """
        Additional validation logic specific to each node kind.
        Called after Pydantic validation.
        """


class StartNode(BaseNode):
    """Entry point. Every workflow has exactly one."""

    type: Literal["start"] = "start"


class EndNode(BaseNode):
    """Exit point. Optional; workflows may have several."""

    type: Literal["end"] = "end"


class FormNode(BaseNode):
    """
    Waits for a form submission.

    config:
        fields: list of field names the submitter must provide (optional)
    """

    type: Literal["form"] = "form"

    def validate_node(self) -> None:
        fields = self.config.get("fields")
        if fields is not None and not isinstance(fields, list):
            raise ValueError("FormNode config.fields must be a list")


class ApprovalNode(BaseNode):
    """
    Waits for a human approve/reject decision.

    config:
        assignees: list of users or roles allowed to decide (optional)
    """

    type: Literal["approval"] = "approval"

    def validate_node(self) -> None:
        assignees = self.config.get("assignees")
        if assignees is not None and not isinstance(assignees, list):
            raise ValueError("ApprovalNode config.assignees must be a list")


class EmailNode(BaseNode):
    """
    Sends an email.

    config:
        to: recipient address, may reference context fields as {field}
        subject: subject template
        body: body template
    """

    type: Literal["email"] = "email"

    def validate_node(self) -> None:
        if not self.config.get("to"):
            raise ValueError("EmailNode requires config.to")


class HttpNode(BaseNode):
    """
    Calls an external HTTP endpoint.

    config:
        url: target URL (required)
        method: GET, POST, PUT, PATCH or DELETE (default POST)
        headers: optional dict
        body: optional JSON body (defaults to the context for non-GET)
        output_key: context key for the response (defaults to the node id)
    """

    type: Literal["http"] = "http"

    def validate_node(self) -> None:
        if not self.config.get("url"):
            raise ValueError("HttpNode requires config.url")
        method = str(self.config.get("method", "POST")).upper()
        if method not in ("GET", "POST", "PUT", "PATCH", "DELETE"):
            raise ValueError(f"HttpNode has unsupported method: {method}")


class WebhookCallNode(BaseNode):
    """Posts the accumulated context to config.url."""

    type: Literal["webhook-call"] = "webhook-call"

    def validate_node(self) -> None:
        if not self.config.get("url"):
            raise ValueError("WebhookCallNode requires config.url")


class DatabaseOpNode(BaseNode):
    """
    Writes a row to an allow-listed table.

    config:
        operation: "insert" or "update"
        table: table name
        values: column -> value (templated from context)
        where: column -> value, required for update
    """

    type: Literal["database-op"] = "database-op"

    def validate_node(self) -> None:
        operation = self.config.get("operation")
        if operation not in ("insert", "update"):
            raise ValueError(f"DatabaseOpNode has unsupported operation: {operation}")
        if not self.config.get("table"):
            raise ValueError("DatabaseOpNode requires config.table")
        if operation == "update" and not self.config.get("where"):
            raise ValueError("DatabaseOpNode update requires config.where")


class ConditionNode(BaseNode):
    """
    Evaluates config.expression against the context.

    The boolean result is written to context[node.id], and the engine uses it
    to pick the outgoing edge guarded by "true" or "false".
    """

    type: Literal["condition"] = "condition"

    def validate_node(self) -> None:
        if "expression" not in self.config:
            raise ValueError("ConditionNode requires config.expression")


# Type alias for any node kind
NodeType = Union[
    StartNode, EndNode, FormNode, ApprovalNode, EmailNode,
    HttpNode, WebhookCallNode, DatabaseOpNode, ConditionNode,
]

NODE_CLASSES = {
    "start": StartNode,
    "end": EndNode,
    "form": FormNode,
    "approval": ApprovalNode,
    "email": EmailNode,
    "http": HttpNode,
    "webhook-call": WebhookCallNode,
    "database-op": DatabaseOpNode,
    "condition": ConditionNode,
}


def create_node_from_dict(node_data: Dict[str, Any]) -> NodeType:
    """
    Factory function: Creates the appropriate node kind from a dictionary.

    Accepts both the flat form {"id", "type", "label", "config"} and the
    editor form {"id", "type", "data": {"label", ...settings}}.

    Raises:
        ValueError: If node kind is unknown or validation fails

    Example:
        >>> node = create_node_from_dict({
        ...     "id": "review",
        ...     "type": "approval",
        ...     "config": {"assignees": ["analyst"]}
        ... })
        >>> isinstance(node, ApprovalNode)
        True
    """
    node_type = node_data.get("type")

    node_class = NODE_CLASSES.get(node_type)
    if not node_class:
        raise ValueError(
            f"Unknown node type: '{node_type}'. "
            f"Valid types: {list(NODE_CLASSES.keys())}"
        )

    fields = dict(node_data)
    data = fields.pop("data", None)
    if isinstance(data, dict) and "config" not in fields:
        fields.setdefault("label", data.get("label"))
        fields["config"] = data.get("config") or {k: v for k, v in data.items() if k != "label"}

    try:
        node = node_class(**fields)
    except Exception as e:
        raise ValueError(f"Failed to create {node_type} node: {e}")

    node.validate_node()

    return node
