"""
Reminder / nudge content generator.

Fixed templates only. Rendering is a pure function of (kind, params): no
network, no model calls, no clock reads, so every message is reproducible and
auditable. Optional placeholders drop their whole clause when absent instead of
rendering an empty string.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import NudgeKind, ReminderError, RenderedMessage, ensure_utc

DEFAULT_TIMEZONE = "America/Toronto"

POST_SESSION_FOLLOWUP = (
    "Feel free to add any notes about topics covered, homework assigned, "
    "or areas to focus on next time."
)
LONG_GAP_FOLLOWUP = "Consider scheduling a follow-up session to maintain momentum."
UNCONFIRMED_FOLLOWUP = (
    "This session hasn't been confirmed yet. You may want to follow up "
    "with participants to confirm attendance."
)


class TemplateError(ReminderError):
    """Raised when a required placeholder is missing"""
    pass


def resolve_zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return ZoneInfo(DEFAULT_TIMEZONE)


def format_time(when: datetime, tz_name: Optional[str] = None) -> str:
    """e.g. ``3:05 PM`` in the recipient's zone."""
    local = ensure_utc(when).astimezone(resolve_zone(tz_name))
    hour = local.hour % 12 or 12
    meridiem = "AM" if local.hour < 12 else "PM"
    return f"{hour}:{local.minute:02d} {meridiem}"


def format_date(when: datetime, tz_name: Optional[str] = None) -> str:
    """e.g. ``Sat, Oct 18``."""
    local = ensure_utc(when).astimezone(resolve_zone(tz_name))
    return f"{local.strftime('%a, %b')} {local.day}"


def format_datetime(when: datetime, tz_name: Optional[str] = None) -> str:
    return f"{format_date(when, tz_name)}, {format_time(when, tz_name)}"


def _require(params: Mapping[str, Any], name: str) -> Any:
    value = params.get(name)
    if value is None or value == "":
        raise TemplateError(f"Missing template parameter: {name}")
    return value


def _post_session_note(params: Mapping[str, Any]) -> RenderedMessage:
    title = _require(params, "session_title")
    body = f'📝 How did the "{title}" session go?\n\n{POST_SESSION_FOLLOWUP}'
    return RenderedMessage(title="Session notes", body=body)


def _long_gap_alert(params: Mapping[str, Any]) -> RenderedMessage:
    days = int(_require(params, "days_since"))
    lines = f"📅 It's been {days} days since your last session"
    student = params.get("student_name")
    if student:
        lines += f" with {student}"
    lines += "."
    quiet_days = params.get("inactive_days")
    if quiet_days:
        lines += f" The conversation has been quiet for {int(quiet_days)} days."
    return RenderedMessage(title="Time for a follow-up?", body=f"{lines}\n\n{LONG_GAP_FOLLOWUP}")


def _unconfirmed_24h(params: Mapping[str, Any]) -> RenderedMessage:
    title = _require(params, "session_title")
    event_at = _require(params, "event_at")
    hours = int(_require(params, "hours_until"))
    when = format_datetime(event_at, params.get("timezone"))
    body = (
        f'📌 Reminder: "{title}" is scheduled for {when} (in ~{hours} hours).\n\n'
        f"{UNCONFIRMED_FOLLOWUP}"
    )
    return RenderedMessage(title=f"Unconfirmed: {title}", body=body)


def _day_before(params: Mapping[str, Any]) -> RenderedMessage:
    title = _require(params, "session_title")
    when = format_time(_require(params, "event_at"), params.get("timezone"))
    return RenderedMessage(
        title=f"Reminder: {title}",
        body=f'You have "{title}" tomorrow at {when}',
    )


def _two_hours_before(params: Mapping[str, Any]) -> RenderedMessage:
    title = _require(params, "session_title")
    when = format_time(_require(params, "event_at"), params.get("timezone"))
    return RenderedMessage(
        title=f"Reminder: {title} in 2 hours",
        body=f"Your session starts at {when}",
    )


def _task_due_today(params: Mapping[str, Any]) -> RenderedMessage:
    title = _require(params, "task_title")
    when = format_time(_require(params, "due_at"), params.get("timezone"))
    return RenderedMessage(
        title=f"Due Today: {title}",
        body=f"Don't forget - this is due today at {when}",
    )


def _task_overdue(params: Mapping[str, Any]) -> RenderedMessage:
    title = _require(params, "task_title")
    when = format_date(_require(params, "due_at"), params.get("timezone"))
    return RenderedMessage(title=f"Overdue: {title}", body=f"This task was due {when}")


TEMPLATES: Dict[NudgeKind, Callable[[Mapping[str, Any]], RenderedMessage]] = {
    NudgeKind.POST_SESSION_NOTE: _post_session_note,
    NudgeKind.LONG_GAP_ALERT: _long_gap_alert,
    NudgeKind.UNCONFIRMED_24H: _unconfirmed_24h,
    NudgeKind.DAY_BEFORE: _day_before,
    NudgeKind.TWO_HOURS_BEFORE: _two_hours_before,
    NudgeKind.TASK_DUE_TODAY: _task_due_today,
    NudgeKind.TASK_OVERDUE: _task_overdue,
}


def render(kind: NudgeKind, params: Mapping[str, Any]) -> RenderedMessage:
    """Render the fixed template for ``kind``."""
    try:
        template = TEMPLATES[NudgeKind(kind)]
    except (KeyError, ValueError):
        raise TemplateError(f"No template for kind {kind!r}")
    return template(params)
