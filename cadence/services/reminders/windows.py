"""
Window evaluator.

Pure predicates over absolute instants. Every duration is a fixed number of
seconds (a "day" is 86400s) so DST transitions never move a boundary; the only
calendar-aware check is ``is_due_today`` which needs the recipient's zone to
know where "today" ends.
"""

from datetime import datetime, timedelta, tzinfo
from typing import Optional

from .models import ensure_utc

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)

UNCONFIRMED_WINDOW_START = 20 * HOUR
UNCONFIRMED_WINDOW_END = 28 * HOUR
RECENT_SESSION_END = 2 * HOUR
LONG_GAP = 14 * DAY
INACTIVE_CONVERSATION = 7 * DAY

# Pre-event reminder windows, lower bound exclusive, upper bound inclusive
DAY_BEFORE_WINDOW = (23 * HOUR, 24 * HOUR)
TWO_HOURS_BEFORE_WINDOW = (90 * timedelta(minutes=1), 2 * HOUR)


def is_within_24h_window(event_at: datetime, now: datetime) -> bool:
    """True iff event_at is in [now+20h, now+28h]."""
    event_at, now = ensure_utc(event_at), ensure_utc(now)
    return now + UNCONFIRMED_WINDOW_START <= event_at <= now + UNCONFIRMED_WINDOW_END


def is_recent_session_end(end_at: datetime, now: datetime) -> bool:
    """True iff end_at is in [now-2h, now]."""
    end_at, now = ensure_utc(end_at), ensure_utc(now)
    return now - RECENT_SESSION_END <= end_at <= now


def is_long_gap(last_session_at: datetime, now: datetime) -> bool:
    """True iff more than 14 days have passed. Exactly 14 days is not a gap."""
    return ensure_utc(now) - ensure_utc(last_session_at) > LONG_GAP


def is_inactive_conversation(last_message_at: datetime, now: datetime) -> bool:
    """True iff more than 7 days have passed since the last message."""
    return ensure_utc(now) - ensure_utc(last_message_at) > INACTIVE_CONVERSATION


def _in_lead_window(event_at: datetime, now: datetime, window) -> bool:
    lower, upper = window
    event_at, now = ensure_utc(event_at), ensure_utc(now)
    return now + lower < event_at <= now + upper


def is_day_before(event_at: datetime, now: datetime) -> bool:
    """24h reminder: start in (now+23h, now+24h]."""
    return _in_lead_window(event_at, now, DAY_BEFORE_WINDOW)


def is_two_hours_before(event_at: datetime, now: datetime) -> bool:
    """2h reminder: start in (now+90m, now+2h]."""
    return _in_lead_window(event_at, now, TWO_HOURS_BEFORE_WINDOW)


def is_due_today(due_at: datetime, now: datetime, tz: Optional[tzinfo] = None) -> bool:
    """Due later today: not yet past, and on now's calendar day in ``tz``."""
    due_at, now = ensure_utc(due_at), ensure_utc(now)
    if due_at < now:
        return False
    if tz is None:
        return due_at.date() == now.date()
    return due_at.astimezone(tz).date() == now.astimezone(tz).date()


def is_overdue(due_at: datetime, now: datetime, lookback: Optional[timedelta] = DAY) -> bool:
    """Past due, and (when a lookback is given) not older than it."""
    due_at, now = ensure_utc(due_at), ensure_utc(now)
    if due_at >= now:
        return False
    return lookback is None or now - due_at <= lookback


def whole_days_between(earlier: datetime, later: datetime) -> int:
    """Fixed-length days between two instants, rounded to nearest."""
    delta = ensure_utc(later) - ensure_utc(earlier)
    return round(delta / DAY)


def whole_hours_between(earlier: datetime, later: datetime) -> int:
    delta = ensure_utc(later) - ensure_utc(earlier)
    return round(delta / HOUR)
