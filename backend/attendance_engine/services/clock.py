"""Time source for the session engine.

All engine timestamps are naive UTC. The app keeps its clock in
``app.extensions['attendance_clock']`` so tests can swap in a manual one.
"""
from datetime import datetime, timezone

from flask import current_app


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return utcnow()


def get_clock():
    return current_app.extensions['attendance_clock']
