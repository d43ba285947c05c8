"""Small helpers shared by test modules (fixtures live in conftest.py)."""

import datetime


def in_hours(hours: float) -> datetime.datetime:
    """A whole-second UTC timestamp `hours` from now (negative = in the past)."""
    now = datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)
    return now + datetime.timedelta(hours=hours)
