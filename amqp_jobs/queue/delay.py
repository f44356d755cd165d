"""
Delay helpers for delayed dispatch.
"""

import uuid
from datetime import datetime, timedelta, timezone

from amqp_jobs.constants import DELAYED_QUEUE_INFIX

Delay = int | float | timedelta | datetime


def delay_to_seconds(delay: Delay) -> float:
    """
    Normalize a delay to seconds.

    Args:
        delay: Seconds, a timedelta, or the datetime the job becomes due.
            Naive datetimes are taken as UTC. Times in the past mean "now".

    Returns:
        Non-negative number of seconds.

    Raises:
        ValueError: If a numeric or timedelta delay is negative.
    """
    if isinstance(delay, datetime):
        due = delay if delay.tzinfo else delay.replace(tzinfo=timezone.utc)
        return max(0.0, (due - datetime.now(timezone.utc)).total_seconds())
    seconds = delay.total_seconds() if isinstance(delay, timedelta) else float(delay)
    if seconds < 0:
        raise ValueError(f"Delay must not be negative, got {seconds}s")
    return seconds


def delay_to_milliseconds(delay: Delay) -> int:
    """Delay rounded to whole milliseconds, the unit of AMQP expirations."""
    return int(round(delay_to_seconds(delay) * 1000))


def delayed_queue_name(target: str) -> str:
    """Unique name for a transient queue holding one delayed job for ``target``."""
    return f"{target}{DELAYED_QUEUE_INFIX}{uuid.uuid4().hex}"
