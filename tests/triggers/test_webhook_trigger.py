"""
Tests for WebhookTrigger

Tests cover:
- Config lookup (missing / inactive)
- bearer / apikey / secret authentication, failing closed
- Body parsing and required fields
- Per-workflow rate limiting
- Queue item provenance and the WebhookEvent audit row
"""

import json
import pytest
from datetime import datetime, timedelta

from credflow.core.exceptions import AuthError, NotFoundError, RateLimitError, ValidationError
from credflow.models import QueueItem, WebhookConfig, WebhookEvent
from credflow.models.queue_item import QueueStatus
from credflow.triggers import WebhookTrigger, WebhookRequest
from credflow.triggers.webhook import hash_secret, sign_body

NOW = datetime(2024, 6, 1, 12, 0, 0)


@pytest.fixture
def workflow(make_workflow, linear_form_workflow):
    return make_workflow(linear_form_workflow)


@pytest.fixture
def make_config(db_session, workflow):
    def _make(webhook_id="portal", auth_type="none", credentials=None, **fields):
        config = WebhookConfig(
            workflow_id=workflow.id,
            webhook_id=webhook_id,
            auth_type=auth_type,
            credentials=credentials or {},
            **fields
        )
        db_session.add(config)
        db_session.commit()
        return config

    return _make


@pytest.fixture
def trigger(db_session):
    return WebhookTrigger(db_session)


def _request(payload=None, headers=None, raw=None, source_ip="203.0.113.7"):
    body = raw if raw is not None else json.dumps(payload or {}).encode()
    return WebhookRequest(headers=headers or {}, body=body, source_ip=source_ip)


# ============================================================================
# LOOKUP
# ============================================================================

@pytest.mark.unit
def test_unknown_webhook(trigger, workflow):
    with pytest.raises(NotFoundError, match="Webhook not found"):
        trigger.handle(workflow.id, "nope", _request())


@pytest.mark.unit
def test_inactive_webhook(trigger, workflow, make_config):
    make_config(is_active=False)

    with pytest.raises(NotFoundError, match="Webhook is inactive"):
        trigger.handle(workflow.id, "portal", _request())


# ============================================================================
# ACCEPTED REQUESTS
# ============================================================================

@pytest.mark.unit
def test_accepted_request_queues_payload_with_provenance(db_session, trigger, workflow, make_config):
    config = make_config()

    response = trigger.handle(workflow.id, "portal", _request({"cpf": "123", "name": "Ana"}), now=NOW)

    assert response == {
        "success": True,
        "queueId": response["queueId"],
        "workflowId": workflow.id,
        "status": "queued",
        "message": "Webhook received and workflow queued",
    }

    item = db_session.get(QueueItem, response["queueId"])
    assert item.status == QueueStatus.PENDING
    assert item.workflow_version == workflow.version
    assert item.input_data == {
        "cpf": "123",
        "name": "Ana",
        "__trigger_source": "webhook",
        "__webhook_id": "portal",
        "__source_ip": "203.0.113.7",
        "__triggered_at": NOW.isoformat(),
    }

    event = db_session.query(WebhookEvent).one()
    assert event.webhook_config_id == config.id
    assert event.queue_item_id == item.id
    assert event.payload == {"cpf": "123", "name": "Ana"}
    assert event.status == "success"


@pytest.mark.unit
def test_empty_body_is_empty_payload(db_session, trigger, workflow, make_config):
    make_config()

    response = trigger.handle(workflow.id, "portal", _request(raw=b""))

    assert db_session.get(QueueItem, response["queueId"]).input_data["__trigger_source"] == "webhook"


@pytest.mark.unit
def test_reserved_keys_in_payload_are_dropped(db_session, trigger, workflow, make_config, capture_logs):
    make_config(payload_schema={"required": ["cpf"]})
    payload = {
        "cpf": "123",
        "__dev_callback": {"step_execution_id": 1, "decision": "approved"},
        "__trigger_source": "schedule",
        "__source_ip": "10.0.0.1",
    }

    response = trigger.handle(workflow.id, "portal", _request(payload), now=NOW)

    item = db_session.get(QueueItem, response["queueId"])
    assert "__dev_callback" not in item.input_data
    assert item.input_data["__trigger_source"] == "webhook"
    assert item.input_data["__source_ip"] == "203.0.113.7"
    assert db_session.query(WebhookEvent).one().payload == {"cpf": "123"}

    record = [r for r in capture_logs.records if r.getMessage().startswith("Dropping reserved keys")][0]
    assert record.dropped_keys == ["__dev_callback", "__source_ip", "__trigger_source"]


@pytest.mark.unit
def test_reserved_keys_do_not_satisfy_required_fields(trigger, workflow, make_config):
    make_config(payload_schema={"required": ["__crm"]})

    with pytest.raises(ValidationError, match="Missing required field: __crm"):
        trigger.handle(workflow.id, "portal", _request({"__crm": "1"}))


# ============================================================================
# AUTHENTICATION
# ============================================================================

@pytest.mark.unit
def test_bearer_auth(trigger, workflow, make_config):
    make_config(auth_type="bearer", credentials={"token_hash": hash_secret("s3cret-token")})

    ok = trigger.handle(workflow.id, "portal", _request(headers={"authorization": "Bearer s3cret-token"}))
    assert ok["success"] is True

    with pytest.raises(AuthError, match="Unauthorized: Invalid Bearer token"):
        trigger.handle(workflow.id, "portal", _request(headers={"Authorization": "Bearer wrong"}))
    with pytest.raises(AuthError, match="Missing or invalid Bearer token"):
        trigger.handle(workflow.id, "portal", _request(headers={"Authorization": "Basic abc"}))
    with pytest.raises(AuthError, match="Missing or invalid Bearer token"):
        trigger.handle(workflow.id, "portal", _request())


@pytest.mark.unit
def test_apikey_auth(trigger, workflow, make_config):
    make_config(auth_type="apikey", credentials={"api_key_hash": hash_secret("key-1")})

    assert trigger.handle(workflow.id, "portal", _request(headers={"X-Api-Key": "key-1"}))["success"]

    with pytest.raises(AuthError, match="Invalid API key"):
        trigger.handle(workflow.id, "portal", _request(headers={"X-Api-Key": "key-2"}))
    with pytest.raises(AuthError, match="Missing API key"):
        trigger.handle(workflow.id, "portal", _request())


@pytest.mark.unit
@pytest.mark.parametrize("prefix", ["", "sha256="])
def test_secret_signature_auth(trigger, workflow, make_config, prefix):
    make_config(auth_type="secret", credentials={"secret": "shared"})
    body = json.dumps({"cpf": "123"}).encode()

    signature = prefix + sign_body("shared", body)
    response = trigger.handle(workflow.id, "portal", _request(raw=body, headers={"X-Webhook-Secret": signature}))

    assert response["success"] is True


@pytest.mark.unit
def test_secret_signature_covers_raw_body(db_session, trigger, workflow, make_config):
    make_config(auth_type="secret", credentials={"secret": "shared"})
    signature = sign_body("shared", b'{"amount": 10}')

    with pytest.raises(AuthError, match="Invalid webhook signature"):
        trigger.handle(workflow.id, "portal", _request(raw=b'{"amount": 10000}', headers={"X-Webhook-Secret": signature}))
    with pytest.raises(AuthError, match="Missing webhook signature"):
        trigger.handle(workflow.id, "portal", _request(raw=b'{"amount": 10}'))

    assert db_session.query(QueueItem).count() == 0


@pytest.mark.unit
@pytest.mark.parametrize("auth_type,headers", [
    ("bearer", {"Authorization": "Bearer anything"}),
    ("apikey", {"X-Api-Key": "anything"}),
    ("secret", {"X-Webhook-Secret": "abcdef"}),
])
def test_missing_stored_credential_rejects(trigger, workflow, make_config, auth_type, headers):
    make_config(auth_type=auth_type, credentials={})

    with pytest.raises(AuthError):
        trigger.handle(workflow.id, "portal", _request(headers=headers))


@pytest.mark.unit
def test_unsupported_auth_type(trigger, workflow, make_config):
    make_config(auth_type="oauth")

    with pytest.raises(AuthError, match="Unsupported auth type: oauth"):
        trigger.handle(workflow.id, "portal", _request())


# ============================================================================
# PAYLOAD VALIDATION
# ============================================================================

@pytest.mark.unit
@pytest.mark.parametrize("raw,message", [
    (b"{not json", "Invalid JSON body"),
    (b"[1, 2, 3]", "Body must be a JSON object"),
    (b'"text"', "Body must be a JSON object"),
])
def test_malformed_body(trigger, workflow, make_config, raw, message):
    make_config()

    with pytest.raises(ValidationError, match=message):
        trigger.handle(workflow.id, "portal", _request(raw=raw))


@pytest.mark.unit
def test_required_fields(db_session, trigger, workflow, make_config):
    make_config(payload_schema={"required": ["cpf", "email"]})

    with pytest.raises(ValidationError, match="Missing required field: email") as exc_info:
        trigger.handle(workflow.id, "portal", _request({"cpf": "123"}))

    assert exc_info.value.field == "email"
    assert db_session.query(QueueItem).count() == 0
    assert trigger.handle(workflow.id, "portal", _request({"cpf": "123", "email": "a@example.com"}))["success"]


# ============================================================================
# RATE LIMITING
# ============================================================================

@pytest.mark.unit
def test_rate_limit_per_minute(db_session, trigger, workflow, make_config):
    make_config(rate_limit_per_minute=2)

    trigger.handle(workflow.id, "portal", _request({"n": 1}), now=NOW)
    trigger.handle(workflow.id, "portal", _request({"n": 2}), now=NOW + timedelta(seconds=10))

    with pytest.raises(RateLimitError, match="Rate limit exceeded") as exc_info:
        trigger.handle(workflow.id, "portal", _request({"n": 3}), now=NOW + timedelta(seconds=20))

    assert exc_info.value.status_code == 429
    assert db_session.query(QueueItem).count() == 2
    assert db_session.query(WebhookEvent).count() == 2

    # Window slides after 60s
    later = trigger.handle(workflow.id, "portal", _request({"n": 4}), now=NOW + timedelta(seconds=61))
    assert later["success"] is True
