"""Datetime helpers."""

from __future__ import annotations

import os
import random
from datetime import datetime, timedelta

import pendulum

DEFAULT_TZ = "America/Bogota"


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every table column stores."""
    return pendulum.now("UTC").naive()


def minutes_ago(minutes: float, *, now: datetime | None = None) -> datetime:
    return (now or utcnow()) - timedelta(minutes=max(0.0, minutes))


def next_due_at(interval_days: int, jitter_hours: float, *, now: datetime | None = None) -> datetime:
    """Schedule the next refresh, spreading brands over a jitter window."""
    base = pendulum.instance(now or utcnow(), tz="UTC")
    jitter = random.uniform(0, jitter_hours) if jitter_hours > 0 else 0.0
    return base.add(days=interval_days, hours=jitter).naive()


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.isoformat()
