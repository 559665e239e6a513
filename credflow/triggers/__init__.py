"""
Triggers - producers of queue items (webhooks, cron schedules)
"""

from .webhook import WebhookTrigger, WebhookRequest
from .schedule import ScheduleTrigger, FireResult

__all__ = ["WebhookTrigger", "WebhookRequest", "ScheduleTrigger", "FireResult"]
