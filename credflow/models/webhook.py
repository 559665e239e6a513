"""
Webhook Models
Inbound webhook configuration and audit trail
"""

from sqlalchemy import Column, Integer, String, JSON, DateTime, Boolean, ForeignKey, UniqueConstraint
from datetime import datetime
from . import Base


class WebhookConfig(Base):
    """
    Webhook Config Model

    Authored outside the engine; read-only here.

    credentials by auth_type:
        none    -> {}
        bearer  -> {"token_hash": "<sha256 hex of the token>"}
        apikey  -> {"api_key_hash": "<sha256 hex of the key>"}
        secret  -> {"secret": "<shared HMAC secret>"}

    payload_schema: {"required": ["field", ...]}
    """
    __tablename__ = "webhook_configs"
    __table_args__ = (
        UniqueConstraint("workflow_id", "webhook_id", name="uq_webhook_configs_workflow_webhook"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workflow_id = Column(Integer, ForeignKey("workflows.id"), nullable=False, index=True)
    webhook_id = Column(String(255), nullable=False)

    auth_type = Column(String(20), nullable=False, default="none")
    credentials = Column(JSON, nullable=True)
    payload_schema = Column(JSON, nullable=True)
    rate_limit_per_minute = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<WebhookConfig(workflow_id={self.workflow_id}, webhook_id='{self.webhook_id}', auth='{self.auth_type}')>"


class WebhookEvent(Base):
    """Audit row for every webhook request that was accepted and queued."""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    webhook_config_id = Column(Integer, ForeignKey("webhook_configs.id"), nullable=False, index=True)
    workflow_id = Column(Integer, ForeignKey("workflows.id"), nullable=False)
    queue_item_id = Column(Integer, ForeignKey("queue_items.id"), nullable=True)
    payload = Column(JSON, nullable=True)
    source_ip = Column(String(64), nullable=True)
    status = Column(String(20), nullable=False, default="success")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<WebhookEvent(id={self.id}, queue_item_id={self.queue_item_id})>"
