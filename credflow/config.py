"""
Runtime configuration for CREDFLOW.

Values come from environment variables (a local .env file is loaded with
python-dotenv). Components never read the environment themselves: they take
one of these settings objects, so tests can build them explicitly.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, "true" if default else "false").lower() in ("1", "true", "yes")


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


@dataclass
class WorkerSettings:
    """
    Queue worker configuration.

    Attributes:
        batch_size: Max items claimed per tick
        stale_after_seconds: Claims older than this are reclaimed (worker crash)
        retry_backoff_seconds: Base delay for exponential backoff (0 = retry on next tick)
        item_timeout_seconds: Max duration of one engine invocation (None = no limit)
        engine_v2_enabled: Master switch for the checkpointing engine variant
        dev_callbacks_enabled: Honour simulated external completions (never in production)
        suspend_timeout_seconds: Pending steps older than this are failed (None = wait forever)
    """

    batch_size: int = 5
    stale_after_seconds: int = 900
    retry_backoff_seconds: int = 0
    item_timeout_seconds: Optional[int] = 540
    engine_v2_enabled: bool = False
    dev_callbacks_enabled: bool = False
    suspend_timeout_seconds: Optional[int] = None

    def __post_init__(self):
        # Each item restarts the staleness window, so one item must fit inside it
        if self.item_timeout_seconds is not None and self.item_timeout_seconds >= self.stale_after_seconds:
            raise ValueError(
                f"item_timeout_seconds ({self.item_timeout_seconds}) must be below "
                f"stale_after_seconds ({self.stale_after_seconds})"
            )

    @property
    def tick_time_limit_seconds(self) -> int:
        """Upper bound of one queue tick: every item of a full batch hitting its timeout."""
        per_item = self.item_timeout_seconds or self.stale_after_seconds
        return int(self.batch_size * per_item) + 60

    @classmethod
    def from_env(cls) -> "WorkerSettings":
        return cls(
            batch_size=_env_int("QUEUE_BATCH_SIZE", 5),
            stale_after_seconds=_env_int("QUEUE_STALE_AFTER_SECONDS", 900),
            retry_backoff_seconds=_env_int("QUEUE_RETRY_BACKOFF_SECONDS", 0),
            item_timeout_seconds=_env_int("QUEUE_ITEM_TIMEOUT_SECONDS", 540),
            engine_v2_enabled=_env_bool("ENGINE_V2_ENABLED"),
            dev_callbacks_enabled=_env_bool("DEV_CALLBACKS_ENABLED"),
            suspend_timeout_seconds=_env_int("SUSPEND_TIMEOUT_SECONDS", None),
        )


@dataclass
class EffectSettings:
    """Settings for the built-in node effects (email, http, database-op)."""

    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_sender: str = "no-reply@credflow.local"
    http_timeout_seconds: float = 30.0
    allowed_tables: List[str] = field(default_factory=list)
    block_private_hosts: bool = True

    @classmethod
    def from_env(cls) -> "EffectSettings":
        tables = os.getenv("DATABASE_OP_ALLOWED_TABLES", "")
        return cls(
            smtp_host=os.getenv("SMTP_HOST"),
            smtp_port=_env_int("SMTP_PORT", 587),
            smtp_user=os.getenv("SMTP_USER"),
            smtp_password=os.getenv("SMTP_PASSWORD"),
            smtp_sender=os.getenv("SMTP_SENDER", "no-reply@credflow.local"),
            http_timeout_seconds=float(os.getenv("HTTP_EFFECT_TIMEOUT_SECONDS", "30")),
            allowed_tables=[t.strip() for t in tables.split(",") if t.strip()],
            block_private_hosts=_env_bool("HTTP_EFFECT_BLOCK_PRIVATE_HOSTS", True),
        )
