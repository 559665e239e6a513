"""
Tests for ContextManager

Validates context management functionality including:
- Basic get/set operations
- Context merging with update()
- Deep, JSON-safe snapshots for StepExecution / Execution rows
- Provenance keys hidden from the public view
"""

import pytest
from datetime import datetime

from credflow.core.context import ContextManager, make_json_serializable, strip_provenance


class TestContextManagerBasics:
    """Test basic ContextManager operations"""

    def test_init_empty(self):
        context = ContextManager()
        assert context.get_all() == {}
        assert context.size() == 0

    def test_init_copies_initial_data(self):
        initial = {"cpf": "123"}
        context = ContextManager(initial)
        context.set("crm", "456")
        assert initial == {"cpf": "123"}

    def test_get_with_default(self):
        context = ContextManager()
        assert context.get("missing_key") is None
        assert context.get("missing_key", 0) == 0

    def test_has(self):
        context = ContextManager()
        assert not context.has("review")
        context.set("review", "approved")
        assert context.has("review")


class TestContextUpdate:
    def test_update_merges_and_overwrites(self):
        context = ContextManager({"status": "new", "cpf": "123"})
        context.update({"status": "approved", "crm": "456"})
        assert context.get_all() == {"status": "approved", "cpf": "123", "crm": "456"}

    def test_update_with_empty(self):
        context = ContextManager({"a": 1})
        context.update({})
        context.update(None)
        assert context.get_all() == {"a": 1}

    def test_update_rejects_non_dict(self):
        context = ContextManager()
        with pytest.raises(TypeError, match="must be a dict, got list"):
            context.update([("a", 1)])


class TestSnapshots:
    def test_snapshot_is_deep_copy(self):
        context = ContextManager({"applicant": {"documents": ["crm"]}})
        snapshot = context.snapshot()
        context.get("applicant")["documents"].append("cpf")
        assert snapshot["applicant"]["documents"] == ["crm"]

    def test_snapshot_is_json_safe(self):
        context = ContextManager({"when": datetime(2024, 5, 1, 9, 30), "tags": {"a"}, "raw": b"ok"})
        assert context.snapshot() == {"when": "2024-05-01T09:30:00", "tags": ["a"], "raw": "ok"}

    def test_make_json_serializable_fallback_to_str(self):
        class Custom:
            def __str__(self):
                return "custom"

        assert make_json_serializable({"x": Custom(), 1: (1, 2)}) == {"x": "custom", "1": [1, 2]}

    def test_public_view_hides_provenance(self):
        context = ContextManager({"cpf": "123", "__trigger_source": "webhook", "__webhook_id": "portal"})
        assert context.public_view() == {"cpf": "123"}

    def test_strip_provenance_copies_and_tolerates_none(self):
        data = {"cpf": "123", "__dev_callback": {"step_execution_id": 1}, 7: "seven"}

        assert strip_provenance(data) == {"cpf": "123", 7: "seven"}
        assert "__dev_callback" in data
        assert strip_provenance(None) == {}
