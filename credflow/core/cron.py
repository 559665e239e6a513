"""
Cron evaluation for schedules.

Expressions are standard 5-field cron (croniter), evaluated in the
schedule's IANA timezone so "0 8 * * 1-5" means 08:00 local time across
DST changes. Instants are stored as naive UTC, like every other timestamp
in the database.
"""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from .exceptions import ValidationError


def _zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {tz_name}", field="timezone")


def validate_cron(expression: str) -> None:
    """Raises ValidationError for expressions croniter can't parse."""
    if not expression or not croniter.is_valid(expression):
        raise ValidationError(f"Invalid cron expression: {expression!r}", field="cron_expression")


def next_run_after(expression: str, tz_name: str, after: datetime) -> datetime:
    """
    Next fire time strictly after `after`.

    Args:
        expression: 5-field cron expression
        tz_name: IANA timezone the expression is written in (e.g. "America/Sao_Paulo")
        after: Naive UTC reference instant

    Returns:
        Naive UTC datetime

    Raises:
        ValidationError: Invalid expression or timezone

    Example:
        >>> next_run_after("0 8 * * *", "America/Sao_Paulo", datetime(2024, 1, 1, 12, 0))
        datetime.datetime(2024, 1, 2, 11, 0)
    """
    validate_cron(expression)
    zone = _zone(tz_name)

    local_after = after.replace(tzinfo=timezone.utc).astimezone(zone)
    local_next = croniter(expression, local_after).get_next(datetime)
    return local_next.astimezone(timezone.utc).replace(tzinfo=None)
