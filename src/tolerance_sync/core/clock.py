"""Wall clock and calendar-day helpers.

Every "today" decision in the engine (daily dedup of consumption logs, the
daily reset sweep, current cycle and week) goes through a :class:`Clock` so
the calendar day is computed in one configured timezone.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, tzinfo


class Clock:
    """Timezone-aware clock; ``now()`` is always returned in UTC."""

    def __init__(self, tz: tzinfo = UTC) -> None:
        self.tz = tz

    def now(self) -> datetime:
        return datetime.now(UTC)

    def day_of(self, ts: datetime) -> date:
        """Calendar day of *ts* in the clock's timezone."""
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=UTC)
        return ts.astimezone(self.tz).date()

    def today(self) -> date:
        return self.day_of(self.now())

    def is_today(self, ts: datetime) -> bool:
        return self.day_of(ts) == self.today()

    def same_day(self, a: datetime, b: datetime) -> bool:
        return self.day_of(a) == self.day_of(b)

    def start_of_day(self, day: date | None = None) -> datetime:
        """Midnight of *day* (default today) in the clock's timezone, as UTC."""
        day = day or self.today()
        return datetime.combine(day, time.min, tzinfo=self.tz).astimezone(UTC)

    def seconds_until(self, ts: datetime) -> float:
        return (ts - self.now()).total_seconds()
