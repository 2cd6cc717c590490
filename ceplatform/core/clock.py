"""
ceplatform/core/clock.py
Naive-UTC time helpers.

Timestamps are stored as naive UTC DateTime columns, so every "now" in the
engine goes through utcnow() and services accept an injectable clock.
"""
from datetime import date, datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_date(value: datetime) -> date:
    return value.date() if isinstance(value, datetime) else value
