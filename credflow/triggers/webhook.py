"""
Webhook Trigger

Receives POSTs from external systems and queues a workflow run.

Pipeline (first failure wins):
1. Config lookup by (workflow_id, webhook_id)        -> 404 when missing / inactive
2. Authentication per auth_type                      -> 401
3. Body must be a JSON object; "__" keys are dropped  -> 400
4. Required fields from payload_schema               -> 400
5. Rate limit: queue items for the workflow, last 60s -> 429
6. Enqueue payload + provenance, write WebhookEvent   -> 202

Authentication:
- none:   always passes
- bearer: "Authorization: Bearer <token>", sha256(token) == credentials.token_hash
- apikey: "X-Api-Key: <key>", sha256(key) == credentials.api_key_hash
- secret: "X-Webhook-Secret: [sha256=]<hex>", HMAC-SHA256(raw body, credentials.secret)

Comparisons are constant-time; a config without the stored credential rejects everything.

The rate limit counts then inserts without a lock, so concurrent requests can
overshoot the per-minute limit by the number of in-flight requests.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from ..core.context import PROVENANCE_PREFIX, strip_provenance
from ..core.queue import WorkflowQueue
from ..core.exceptions import AuthError, NotFoundError, RateLimitError, ValidationError
from ..models import Workflow, WebhookConfig, WebhookEvent

logger = logging.getLogger(__name__)

RATE_LIMIT_WINDOW = timedelta(seconds=60)


def hash_secret(value: str) -> str:
    """SHA-256 hex digest, the format stored in token_hash / api_key_hash."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def sign_body(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@dataclass
class WebhookRequest:
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    source_ip: Optional[str] = None

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class WebhookTrigger:
    def __init__(self, session: Session, queue: Optional[WorkflowQueue] = None):
        self.session = session
        self.queue = queue or WorkflowQueue(session)

    def handle(
        self,
        workflow_id: int,
        webhook_id: str,
        request: WebhookRequest,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Authenticate, validate and queue one webhook request.

        Returns:
            {"success": True, "queueId", "workflowId", "status": "queued", "message"}

        Raises:
            NotFoundError, AuthError, ValidationError, RateLimitError
        """
        now = now or datetime.utcnow()

        config = (
            self.session.query(WebhookConfig)
            .filter(WebhookConfig.workflow_id == workflow_id, WebhookConfig.webhook_id == webhook_id)
            .first()
        )
        if config is None:
            raise NotFoundError("Webhook not found")
        if not config.is_active:
            raise NotFoundError("Webhook is inactive")

        self._authenticate(config, request)
        payload = self._parse_body(request.body)
        reserved = sorted(str(key) for key in payload if str(key).startswith(PROVENANCE_PREFIX))
        if reserved:
            # Provenance and internal markers are only ever set server side
            logger.warning(
                f"Dropping reserved keys from webhook {webhook_id} payload",
                extra={"workflow_id": workflow_id, "dropped_keys": reserved}
            )
            payload = strip_provenance(payload)
        self._validate_payload(payload, config.payload_schema)

        if config.rate_limit_per_minute:
            recent = self.queue.count_recent(workflow_id, now - RATE_LIMIT_WINDOW)
            if recent >= config.rate_limit_per_minute:
                logger.warning(
                    f"Rate limit exceeded for workflow {workflow_id}",
                    extra={"webhook_id": webhook_id, "limit": config.rate_limit_per_minute, "recent": recent}
                )
                raise RateLimitError("Rate limit exceeded", limit=config.rate_limit_per_minute)

        workflow = self.session.get(Workflow, workflow_id)
        input_data = {
            **payload,
            "__trigger_source": "webhook",
            "__webhook_id": webhook_id,
            "__source_ip": request.source_ip,
            "__triggered_at": now.isoformat(),
        }
        queue_id = self.queue.enqueue(
            workflow_id,
            workflow.version if workflow is not None else None,
            input_data,
            now=now,
        )

        self.session.add(WebhookEvent(
            webhook_config_id=config.id,
            workflow_id=workflow_id,
            queue_item_id=queue_id,
            payload=payload,
            source_ip=request.source_ip,
            status="success",
            created_at=now,
        ))
        self.session.commit()

        logger.info(
            f"Workflow {workflow_id} queued from webhook {webhook_id}",
            extra={"queue_item_id": queue_id, "source_ip": request.source_ip}
        )
        return {
            "success": True,
            "queueId": queue_id,
            "workflowId": workflow_id,
            "status": "queued",
            "message": "Webhook received and workflow queued",
        }

    def _authenticate(self, config: WebhookConfig, request: WebhookRequest) -> None:
        credentials = config.credentials or {}
        auth_type = config.auth_type or "none"

        if auth_type == "none":
            return

        if auth_type == "bearer":
            header = request.header("Authorization") or ""
            if not header.startswith("Bearer ") or not header[7:].strip():
                raise AuthError("Missing or invalid Bearer token")
            self._compare(credentials.get("token_hash"), hash_secret(header[7:].strip()), "Invalid Bearer token")
            return

        if auth_type == "apikey":
            api_key = request.header("X-Api-Key")
            if not api_key:
                raise AuthError("Missing API key")
            self._compare(credentials.get("api_key_hash"), hash_secret(api_key), "Invalid API key")
            return

        if auth_type == "secret":
            signature = (request.header("X-Webhook-Secret") or "").strip()
            if not signature:
                raise AuthError("Missing webhook signature")
            if signature.startswith("sha256="):
                signature = signature[len("sha256="):]
            secret = credentials.get("secret")
            expected = sign_body(secret, request.body) if secret else None
            self._compare(expected, signature.lower(), "Invalid webhook signature")
            return

        raise AuthError(f"Unsupported auth type: {auth_type}")

    @staticmethod
    def _compare(expected: Optional[str], supplied: str, message: str) -> None:
        if not expected:
            # Misconfigured webhook: fail closed
            raise AuthError(message)
        if not hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8")):
            raise AuthError(message)

    @staticmethod
    def _parse_body(body: bytes) -> Dict[str, Any]:
        if not body:
            return {}
        try:
            payload = json.loads(body)
        except (ValueError, UnicodeDecodeError):
            raise ValidationError("Invalid JSON body")
        if not isinstance(payload, dict):
            raise ValidationError("Body must be a JSON object")
        return payload

    @staticmethod
    def _validate_payload(payload: Dict[str, Any], schema: Optional[Dict[str, Any]]) -> None:
        if not schema:
            return
        for required in schema.get("required") or []:
            if required not in payload:
                raise ValidationError(f"Missing required field: {required}", field=required)
