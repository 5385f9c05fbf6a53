"""
Detector.

One pass scans every entity source for candidates whose window is open, then
for each candidate: preference gate -> render -> claim -> enqueue. The claim
is the only guard against duplicates, so a pass can be re-run at any time and
passes may overlap.

Rendering happens before the claim. It is pure, and a template failure after
a successful claim would otherwise lose the notification for good. A claimed
key with no outbox entry (the enqueue failed) is enqueued again on a later
pass; outbox creation is create-if-absent on the key, so this cannot
duplicate.
"""

import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from cadence.common.logging import setup_logging
from .idempotency import IdempotencyStore
from .models import (
    DetectionReport,
    EntityStoreError,
    EntityType,
    EventStatus,
    NudgeKind,
    OutboxEntry,
    ReminderCandidate,
    ReminderError,
    RenderedMessage,
    UserProfile,
    utcnow,
)
from .preferences import PreferenceGate
from .sources import (
    EVENTS,
    TASKS,
    USERS,
    EntityStore,
    latest_sessions,
    parse_event,
    parse_task,
    parse_user,
)
from .templates import DEFAULT_TIMEZONE, render, resolve_zone
from . import windows

logger = setup_logging("detector")

Enqueue = Callable[[ReminderCandidate, RenderedMessage], Awaitable[OutboxEntry]]
FindEntry = Callable[[str], Awaitable[Optional[OutboxEntry]]]


class Detector:
    """Runs detection passes against an entity store."""

    def __init__(
        self,
        store: EntityStore,
        idempotency: IdempotencyStore,
        gate: PreferenceGate,
        enqueue: Enqueue,
        clock: Callable[[], datetime] = utcnow,
        default_timezone: str = DEFAULT_TIMEZONE,
        overdue_lookback: timedelta = windows.DAY,
        find_entry: Optional[FindEntry] = None,
    ):
        self.store = store
        self.idempotency = idempotency
        self.gate = gate
        self.enqueue = enqueue
        self.clock = clock
        self.default_timezone = default_timezone
        self.overdue_lookback = overdue_lookback
        self.find_entry = find_entry
        self._users: Dict[str, Optional[UserProfile]] = {}

    async def run_pass(self) -> DetectionReport:
        """Scan, gate, claim and enqueue. Never raises for per-candidate problems."""
        now = self.clock()
        started = time.monotonic()
        report = DetectionReport(started_at=now)
        self._users = {}

        candidates, scan_errors = await self.find_candidates(now)
        report.candidates = len(candidates)
        report.errors += scan_errors

        for candidate in candidates:
            await self._process(candidate, report)

        logger.info(
            f"Detection pass: {report.candidates} candidates, {report.claimed} claimed, "
            f"{report.already_claimed} already claimed, {report.suppressed} suppressed, "
            f"{report.errors} errors",
            extra={"duration_ms": round((time.monotonic() - started) * 1000, 1)},
        )
        return report

    async def find_candidates(self, now: datetime) -> Tuple[List[ReminderCandidate], int]:
        """All candidates with an open window at ``now``, plus the number of scan errors."""
        candidates: List[ReminderCandidate] = []
        errors = 0
        scanners = (
            ("post-session", self._scan_recent_sessions),
            ("upcoming events", self._scan_upcoming_events),
            ("tasks", self._scan_tasks),
            ("long gaps", self._scan_long_gaps),
        )
        for name, scanner in scanners:
            try:
                found, bad = await scanner(now)
            except EntityStoreError as e:
                logger.error(f"Skipping {name} scan this pass: {e}")
                errors += 1
                continue
            candidates.extend(found)
            errors += bad
        return candidates, errors

    async def _process(self, candidate: ReminderCandidate, report: DetectionReport) -> None:
        extra: Dict[str, Any] = {"kind": candidate.kind.value}
        key = f"{candidate.entity_type.value}:{candidate.entity_id}"

        try:
            key = candidate.composite_key
            extra["composite_key"] = key
            if not await self.gate.should_send(candidate.target_user_id, candidate.kind):
                logger.debug(f"Suppressed by preferences: {key}", extra=extra)
                report.suppressed += 1
                return
            message = render(candidate.kind, candidate.context)
        except (ReminderError, ValueError) as e:
            logger.warning(f"Skipping candidate {key}: {e}", extra=extra)
            report.errors += 1
            return

        try:
            won = await self.idempotency.claim(key)
        except Exception as e:
            logger.error(f"Claim failed for {key}, will retry next pass: {e}", extra=extra)
            report.errors += 1
            return
        if won:
            report.claimed += 1
        else:
            report.already_claimed += 1
            if not await self._orphaned(key, extra):
                logger.debug(f"Already claimed: {key}", extra=extra)
                return
            logger.warning(f"Claimed {key} has no outbox entry, enqueueing again", extra=extra)

        try:
            entry = await self.enqueue(candidate, message)
        except Exception as e:
            # The claim stays; the next pass finds it without an entry and retries.
            logger.error(f"Enqueue failed for {key}: {e}", extra=extra, exc_info=True)
            report.errors += 1
            return
        if won:
            report.enqueued.append(entry.id)
        else:
            report.recovered += 1

    async def _orphaned(self, key: str, extra: Dict[str, Any]) -> bool:
        """True when ``key`` is claimed but no outbox entry exists for it."""
        if self.find_entry is None:
            return False
        try:
            return await self.find_entry(key) is None
        except ReminderError as e:
            logger.warning(f"Outbox lookup failed for {key}: {e}", extra=extra)
            return False

    # --- Scanners ---

    async def _user(self, user_id: Optional[str]) -> Optional[UserProfile]:
        if not user_id:
            return None
        if user_id not in self._users:
            try:
                doc = await self.store.get(USERS, user_id)
                self._users[user_id] = parse_user(doc) if doc else None
            except EntityStoreError as e:
                logger.warning(f"User lookup failed for {user_id}: {e}")
                self._users[user_id] = None
        return self._users[user_id]

    async def _timezone(self, user_id: str) -> str:
        user = await self._user(user_id)
        if user and user.timezone:
            return user.timezone
        return self.default_timezone

    async def _scan_recent_sessions(self, now: datetime):
        found, bad = [], 0
        docs = await self.store.range(EVENTS, "end", now - windows.RECENT_SESSION_END, now)
        for doc in docs:
            try:
                event = parse_event(doc)
            except EntityStoreError as e:
                logger.warning(f"Skipping malformed event: {e}")
                bad += 1
                continue
            if event.status != EventStatus.CONFIRMED or not event.conversation_id:
                continue
            if not windows.is_recent_session_end(event.end_at, now):
                continue
            found.append(ReminderCandidate(
                entity_type=EntityType.EVENT,
                entity_id=event.event_id,
                target_user_id=event.created_by,
                kind=NudgeKind.POST_SESSION_NOTE,
                at=event.end_at,
                context={
                    "session_title": event.title,
                    "conversation_id": event.conversation_id,
                },
            ))
        return found, bad

    async def _scan_upcoming_events(self, now: datetime):
        found, bad = [], 0
        low = now + windows.TWO_HOURS_BEFORE_WINDOW[0]
        high = now + windows.UNCONFIRMED_WINDOW_END
        for doc in await self.store.range(EVENTS, "start", low, high):
            try:
                event = parse_event(doc)
            except EntityStoreError as e:
                logger.warning(f"Skipping malformed event: {e}")
                bad += 1
                continue

            if event.status == EventStatus.CONFIRMED:
                if windows.is_day_before(event.start_at, now):
                    kind = NudgeKind.DAY_BEFORE
                elif windows.is_two_hours_before(event.start_at, now):
                    kind = NudgeKind.TWO_HOURS_BEFORE
                else:
                    kind = None
                if kind is not None:
                    for user_id in event.participants or (event.created_by,):
                        found.append(await self._event_candidate(event, user_id, kind, now))

            if (
                event.status == EventStatus.PENDING
                and windows.is_within_24h_window(event.start_at, now)
                and not event.all_responded
            ):
                found.append(await self._event_candidate(
                    event, event.created_by, NudgeKind.UNCONFIRMED_24H, now
                ))
        return found, bad

    async def _event_candidate(self, event, user_id: str, kind: NudgeKind, now: datetime) -> ReminderCandidate:
        return ReminderCandidate(
            entity_type=EntityType.EVENT,
            entity_id=event.event_id,
            target_user_id=user_id,
            kind=kind,
            at=event.start_at,
            context={
                "session_title": event.title,
                "event_at": event.start_at,
                "timezone": await self._timezone(user_id),
                "hours_until": windows.whole_hours_between(now, event.start_at),
                "conversation_id": event.conversation_id,
            },
        )

    async def _scan_tasks(self, now: datetime):
        found, bad = [], 0
        # The end of "today" in any zone is less than a day away.
        docs = await self.store.range(TASKS, "due", now - self.overdue_lookback, now + windows.DAY)
        for doc in docs:
            try:
                task = parse_task(doc)
            except EntityStoreError as e:
                logger.warning(f"Skipping malformed task: {e}")
                bad += 1
                continue
            if task.completed:
                continue

            tz_name = await self._timezone(task.assignee)
            if windows.is_overdue(task.due_at, now, self.overdue_lookback):
                kind = NudgeKind.TASK_OVERDUE
            elif windows.is_due_today(task.due_at, now, resolve_zone(tz_name)):
                kind = NudgeKind.TASK_DUE_TODAY
            else:
                continue
            found.append(ReminderCandidate(
                entity_type=EntityType.TASK,
                entity_id=task.task_id,
                target_user_id=task.assignee,
                kind=kind,
                at=task.due_at,
                context={
                    "task_title": task.title,
                    "due_at": task.due_at,
                    "timezone": tz_name,
                    "conversation_id": task.conversation_id,
                },
            ))
        return found, bad

    async def _scan_long_gaps(self, now: datetime):
        found = []
        for history in await latest_sessions(self.store, now):
            if not windows.is_long_gap(history.last_session_at, now):
                continue
            context: Dict[str, Any] = {
                "days_since": windows.whole_days_between(history.last_session_at, now),
                "conversation_id": history.conversation_id,
            }
            contact = await self._user(history.contact_id)
            if contact and contact.display_name:
                context["student_name"] = contact.display_name
            if history.last_message_at and windows.is_inactive_conversation(history.last_message_at, now):
                context["inactive_days"] = windows.whole_days_between(history.last_message_at, now)
            found.append(ReminderCandidate(
                entity_type=EntityType.CONVERSATION,
                entity_id=history.conversation_id,
                target_user_id=history.owner_id,
                kind=NudgeKind.LONG_GAP_ALERT,
                at=history.last_session_at,
                context=context,
            ))
        return found, 0
