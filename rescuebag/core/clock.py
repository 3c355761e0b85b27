"""
RescueBag — Injectable clock

Expiry checks and timestamps take a Clock so tests can simulate elapsed time.
"""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)
