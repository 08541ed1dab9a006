"""
Time source for all billing window math.

Services never call datetime.now() themselves; they receive a clock so tests
can pin any instant. All datetimes are naive UTC, which is what the database
stores.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone


class SystemClock:
    """Wall-clock time in naive UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class FrozenClock:
    """Clock pinned to an instant; move it with advance() or set()."""

    current: datetime = field(default_factory=lambda: SystemClock().now())

    def now(self) -> datetime:
        return self.current

    def set(self, when: datetime) -> None:
        self.current = when

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


system_clock = SystemClock()
