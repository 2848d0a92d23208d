"""
Weekly send calendar.

Windows are wall-clock HH:MM ranges per weekday (0=Sunday … 6=Saturday),
interpreted in one configured timezone. Only SEND windows take part in
the arithmetic; QUIET rows are informational, anything not covered by a
SEND window is quiet.

With no active SEND window at all the calendar fails open: every instant
counts as sendable and next_send_instant() is undefined (None).
"""
from __future__ import annotations

import time as _time
import structlog
from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional, Protocol, Union
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from models.errors import CalendarUnavailable, QueueStoreUnavailable
from models.schemas import TimeWindow, WindowKind

logger = structlog.get_logger()

# day 0 (the instant itself) plus a full week of roll-forward
_LOOKAHEAD_DAYS = 8


# ──────────────────────────────────────────────────────────────
#  Clocks
# ──────────────────────────────────────────────────────────────

class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Settable clock for tests and replays."""

    def __init__(self, at: datetime):
        self._now = at

    def now(self) -> datetime:
        return self._now

    def set(self, at: datetime) -> None:
        self._now = at

    def advance(self, **delta) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now


# ──────────────────────────────────────────────────────────────
#  Local time helpers
# ──────────────────────────────────────────────────────────────

def day_of_week(local: datetime) -> int:
    """0=Sunday … 6=Saturday."""
    return local.isoweekday() % 7


def _wall(instant: datetime, tz: ZoneInfo) -> datetime:
    return instant.astimezone(tz).replace(tzinfo=None)


def resolve_local(day: date, wall: time, tz: ZoneInfo) -> datetime:
    """
    Map a local wall-clock time to a UTC instant.

    Repeated times (clocks fall back) resolve to the earlier occurrence.
    Skipped times (clocks spring forward) resolve to the transition
    instant, the first moment the local clock reads at least `wall`.
    """
    naive = datetime.combine(day, wall)
    utc = naive.replace(tzinfo=tz, fold=0).astimezone(timezone.utc)
    if _wall(utc, tz) == naive:
        return utc

    # In a gap fold=0 and fold=1 land on either side of the transition
    other = naive.replace(tzinfo=tz, fold=1).astimezone(timezone.utc)
    lo = int(min(utc, other).timestamp())
    hi = int(max(utc, other).timestamp())
    while hi - lo > 1:
        mid = (lo + hi) // 2
        if _wall(datetime.fromtimestamp(mid, timezone.utc), tz) >= naive:
            hi = mid
        else:
            lo = mid
    return datetime.fromtimestamp(hi, timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Calendar
# ──────────────────────────────────────────────────────────────

class WeeklyCalendar:
    """Immutable snapshot of the active windows. All inputs and outputs are aware datetimes."""

    def __init__(self, windows: Iterable[TimeWindow], tz: Union[str, ZoneInfo] = "UTC"):
        self.tz = ZoneInfo(tz) if isinstance(tz, str) else tz
        self.windows = [w for w in windows if w.active]
        self._send_by_day: dict[int, list[TimeWindow]] = defaultdict(list)
        for w in self.windows:
            if w.kind == WindowKind.SEND:
                self._send_by_day[w.day_of_week].append(w)
        for day_windows in self._send_by_day.values():
            day_windows.sort(key=lambda w: w.start_time)

    @property
    def has_send_windows(self) -> bool:
        return bool(self._send_by_day)

    def is_send_window(self, t: datetime) -> bool:
        if not self.has_send_windows:
            return True
        local = t.astimezone(self.tz)
        tod = local.time()
        return any(w.contains(tod) for w in self._send_by_day.get(day_of_week(local), ()))

    def next_send_instant(self, t: datetime) -> Optional[datetime]:
        """Smallest instant ≥ t inside a SEND window; None when there are none."""
        if not self.has_send_windows:
            return None
        if self.is_send_window(t):
            return t
        return self._first_start_after(t)

    def next_window_start(self, t: datetime) -> Optional[datetime]:
        """Start of the earliest SEND window strictly after t, even when t is inside one."""
        if not self.has_send_windows:
            return None
        return self._first_start_after(t)

    def _first_start_after(self, t: datetime) -> Optional[datetime]:
        today = t.astimezone(self.tz).date()
        for offset in range(_LOOKAHEAD_DAYS):
            day = today + timedelta(days=offset)
            for w in self._send_by_day.get(day.isoweekday() % 7, ()):
                candidate = resolve_local(day, w.start_time, self.tz)
                if candidate > t:
                    return candidate
        return None


# ──────────────────────────────────────────────────────────────
#  Provider: cached view over the time_windows table
# ──────────────────────────────────────────────────────────────

class CalendarProvider:
    """
    Loads active windows from the store at most once per cache_ttl_seconds.
    An unreadable table yields a fail-open calendar, which is not cached.
    """

    def __init__(self, store, tz: Union[str, ZoneInfo] = "UTC", cache_ttl_seconds: float = 5.0):
        self.store = store
        self.tz = ZoneInfo(tz) if isinstance(tz, str) else tz
        self.cache_ttl_seconds = cache_ttl_seconds
        self._cached: Optional[WeeklyCalendar] = None
        self._loaded_at = 0.0

    async def get_calendar(self) -> WeeklyCalendar:
        if self._cached is not None and _time.monotonic() - self._loaded_at < self.cache_ttl_seconds:
            return self._cached
        try:
            rows = await self._load_rows()
        except CalendarUnavailable as e:
            logger.warning("calendar_fail_open", reason="unavailable", error=str(e))
            return WeeklyCalendar([], self.tz)

        calendar = WeeklyCalendar(self._validate(rows), self.tz)
        if not calendar.has_send_windows:
            logger.warning("calendar_has_no_send_windows", timezone=str(self.tz))
        logger.debug("calendar_loaded", windows=len(calendar.windows), timezone=str(self.tz))
        self._cached = calendar
        self._loaded_at = _time.monotonic()
        return calendar

    def invalidate(self) -> None:
        self._cached = None

    async def _load_rows(self) -> list[dict]:
        try:
            return await self.store.list_time_windows(active_only=True)
        except QueueStoreUnavailable as e:
            raise CalendarUnavailable(str(e)) from e

    @staticmethod
    def _validate(rows: list[dict]) -> list[TimeWindow]:
        windows = []
        for row in rows:
            try:
                windows.append(TimeWindow(**row))
            except ValidationError as e:
                logger.error("time_window_invalid", window_id=row.get("id"),
                             errors=e.error_count(), detail=str(e).splitlines()[0])
        return windows
