"""
Context Manager

Manages shared state between workflow nodes.
Each node's output is merged into the context for subsequent nodes, and
snapshots are stored on StepExecution rows for traceability.
"""

import copy
from datetime import datetime, date
from typing import Any, Dict, Optional

# Trigger provenance keys (__trigger_source, __webhook_id, ...) and internal markers
PROVENANCE_PREFIX = "__"


def strip_provenance(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Copy of data without provenance / internal keys."""
    return {k: v for k, v in (data or {}).items() if not str(k).startswith(PROVENANCE_PREFIX)}


def make_json_serializable(obj):
    """
    Recursively convert non-JSON-serializable objects to serializable format.

    Handles:
    - datetime/date → ISO 8601 string
    - bytes → UTF-8 text (replacement characters on bad bytes)
    - tuples and sets → lists
    - other objects → str(obj)
    """
    if isinstance(obj, dict):
        return {str(k): make_json_serializable(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple, set)):
        return [make_json_serializable(item) for item in obj]
    elif isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif isinstance(obj, bytes):
        return obj.decode("utf-8", errors="replace")
    elif obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    else:
        return str(obj)


class ContextManager:
    """
    Centralized context manager for workflow execution.

    Example:
        >>> context = ContextManager({"cpf": "123"})
        >>> context.update({"review": "approved"})
        >>> context.get_all()
        {"cpf": "123", "review": "approved"}
    """

    def __init__(self, initial_context: Optional[Dict[str, Any]] = None):
        self._context: Dict[str, Any] = dict(initial_context) if initial_context else {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._context.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._context[key] = value

    def update(self, data: Optional[Dict[str, Any]]) -> None:
        """
        Merge node output into the context. Later keys overwrite earlier ones.

        Raises:
            TypeError: If data is not a dict
        """
        if not data:
            return
        if not isinstance(data, dict):
            raise TypeError(f"Context update must be a dict, got {type(data).__name__}")
        self._context.update(data)

    def has(self, key: str) -> bool:
        return key in self._context

    def get_all(self) -> Dict[str, Any]:
        """Shallow copy of the context. Use snapshot() for persistence."""
        return self._context.copy()

    def snapshot(self) -> Dict[str, Any]:
        """
        Deep, JSON-safe copy of the current context.

        Used when saving context to StepExecution.input_data and Execution.context;
        future modifications don't affect saved snapshots.
        """
        return make_json_serializable(copy.deepcopy(self._context))

    def public_view(self) -> Dict[str, Any]:
        """Context without provenance / internal keys."""
        return strip_provenance(self._context)

    def size(self) -> int:
        return len(self._context)

    def __repr__(self) -> str:
        return f"ContextManager(keys={list(self._context.keys())})"
