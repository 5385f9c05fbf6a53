"""
Upstream entity stores.

Events, tasks, users and conversations are owned by other services; this
engine only reads them. They are kept as JSON documents in an abstract
document store with per-collection time indexes so the detector can ask for
"events starting between A and B" without scanning everything.

Documents are returned raw. Parsing happens per document in the detector so a
single malformed record is skipped instead of failing the whole query.
"""

import asyncio
import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import redis.asyncio as redis

from cadence.common.logging import setup_logging
from .models import (
    EntityStoreError,
    Event,
    EventStatus,
    SessionHistory,
    Task,
    UserProfile,
    ensure_utc,
    parse_instant,
)

logger = setup_logging("sources")

EVENTS = "events"
TASKS = "tasks"
USERS = "users"
CONVERSATIONS = "conversations"

# collection -> {index name: document field}
INDEXES: Dict[str, Dict[str, str]] = {
    EVENTS: {"start": "start_at", "end": "end_at"},
    TASKS: {"due": "due_at"},
    USERS: {},
    CONVERSATIONS: {},
}


def _score(value: Any) -> float:
    instant = parse_instant(value)
    if instant is None:
        raise EntityStoreError("missing timestamp")
    return instant.timestamp()


def _doc_id(doc: Dict[str, Any]) -> str:
    doc_id = doc.get("id")
    if not doc_id:
        raise EntityStoreError(f"Document without id: {doc!r}")
    return str(doc_id)


class EntityStore:
    """Read/write access to collaborator documents."""

    async def upsert(self, collection: str, doc: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def range(
        self,
        collection: str,
        index: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Documents whose indexed instant lies in [start, end] (open ends allowed)."""
        raise NotImplementedError

    async def all(self, collection: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    @staticmethod
    def _check_collection(collection: str) -> None:
        if collection not in INDEXES:
            raise EntityStoreError(f"Unknown collection {collection!r}")


class RedisEntityStore(EntityStore):
    """
    Documents as JSON strings, indexes as sorted sets scored by epoch seconds.

    Keys:
        {prefix}:doc:{collection}:{id}
        {prefix}:idx:{collection}:{index}
        {prefix}:ids:{collection}
    """

    def __init__(self, redis_client: redis.Redis, prefix: str = "cadence"):
        self.redis_client = redis_client
        self.prefix = prefix

    def _doc_key(self, collection: str, doc_id: str) -> str:
        return f"{self.prefix}:doc:{collection}:{doc_id}"

    def _index_key(self, collection: str, index: str) -> str:
        return f"{self.prefix}:idx:{collection}:{index}"

    def _ids_key(self, collection: str) -> str:
        return f"{self.prefix}:ids:{collection}"

    async def upsert(self, collection: str, doc: Dict[str, Any]) -> None:
        self._check_collection(collection)
        doc_id = _doc_id(doc)
        scores = {name: _score(doc.get(field)) for name, field in INDEXES[collection].items()}
        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.set(self._doc_key(collection, doc_id), json.dumps(doc, default=str))
                pipe.sadd(self._ids_key(collection), doc_id)
                for name, score in scores.items():
                    pipe.zadd(self._index_key(collection, name), {doc_id: score})
                await pipe.execute()
        except redis.RedisError as e:
            raise EntityStoreError(f"Failed to upsert {collection}/{doc_id}: {e}") from e

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        self._check_collection(collection)
        try:
            raw = await self.redis_client.get(self._doc_key(collection, doc_id))
        except redis.RedisError as e:
            raise EntityStoreError(f"Failed to read {collection}/{doc_id}: {e}") from e
        return self._decode(collection, doc_id, raw)

    async def range(self, collection, index, start=None, end=None):
        self._check_collection(collection)
        if index not in INDEXES[collection]:
            raise EntityStoreError(f"Unknown index {collection}.{index}")
        low = start.timestamp() if start is not None else "-inf"
        high = end.timestamp() if end is not None else "+inf"
        try:
            ids = await self.redis_client.zrangebyscore(self._index_key(collection, index), low, high)
            return await self._load_many(collection, ids)
        except redis.RedisError as e:
            raise EntityStoreError(f"Failed to query {collection}.{index}: {e}") from e

    async def all(self, collection):
        self._check_collection(collection)
        try:
            ids = await self.redis_client.smembers(self._ids_key(collection))
            return await self._load_many(collection, sorted(ids))
        except redis.RedisError as e:
            raise EntityStoreError(f"Failed to list {collection}: {e}") from e

    async def _load_many(self, collection: str, ids: Iterable[Any]) -> List[Dict[str, Any]]:
        ids = [i.decode() if isinstance(i, bytes) else str(i) for i in ids]
        if not ids:
            return []
        raws = await self.redis_client.mget([self._doc_key(collection, i) for i in ids])
        docs = []
        for doc_id, raw in zip(ids, raws):
            doc = self._decode(collection, doc_id, raw)
            if doc is not None:
                docs.append(doc)
        return docs

    def _decode(self, collection: str, doc_id: str, raw: Any) -> Optional[Dict[str, Any]]:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"Unreadable document {collection}/{doc_id}, ignoring")
            return None


class MemoryEntityStore(EntityStore):
    """In-process document store for tests and local development."""

    def __init__(self):
        self._docs: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in INDEXES}
        self._lock = asyncio.Lock()
        self.fail_with: Optional[Exception] = None

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def upsert(self, collection, doc):
        self._check_collection(collection)
        doc_id = _doc_id(doc)
        for field in INDEXES[collection].values():
            _score(doc.get(field))
        async with self._lock:
            self._docs[collection][doc_id] = dict(doc)

    async def get(self, collection, doc_id):
        self._check_collection(collection)
        self._maybe_fail()
        doc = self._docs[collection].get(doc_id)
        return dict(doc) if doc is not None else None

    async def range(self, collection, index, start=None, end=None):
        self._check_collection(collection)
        self._maybe_fail()
        field = INDEXES[collection].get(index)
        if field is None:
            raise EntityStoreError(f"Unknown index {collection}.{index}")
        results = []
        for doc in self._docs[collection].values():
            instant = parse_instant(doc.get(field))
            if start is not None and instant < ensure_utc(start):
                continue
            if end is not None and instant > ensure_utc(end):
                continue
            results.append(dict(doc))
        return results

    async def all(self, collection):
        self._check_collection(collection)
        self._maybe_fail()
        return [dict(d) for d in self._docs[collection].values()]


# --- Document parsing ---

def _required(doc: Dict[str, Any], name: str) -> Any:
    value = doc.get(name)
    if value is None or value == "":
        raise EntityStoreError(f"Document {doc.get('id')!r} missing {name!r}")
    return value


def _instant(doc: Dict[str, Any], name: str) -> datetime:
    try:
        return parse_instant(_required(doc, name))
    except ValueError as e:
        raise EntityStoreError(f"Document {doc.get('id')!r} has bad {name!r}: {e}") from e


def parse_event(doc: Dict[str, Any]) -> Event:
    """Build an Event view from a stored document."""
    try:
        status = EventStatus(doc.get("status", EventStatus.CONFIRMED.value))
    except ValueError as e:
        raise EntityStoreError(f"Event {doc.get('id')!r} has bad status") from e
    rsvps = doc.get("rsvps") or {}
    if not isinstance(rsvps, dict):
        raise EntityStoreError(f"Event {doc.get('id')!r} has bad rsvps")
    responded = frozenset(
        uid for uid, rsvp in rsvps.items()
        if isinstance(rsvp, dict) and rsvp.get("response")
    )
    return Event(
        event_id=str(_required(doc, "id")),
        title=doc.get("title") or "Untitled session",
        start_at=_instant(doc, "start_at"),
        end_at=_instant(doc, "end_at"),
        created_by=str(_required(doc, "created_by")),
        status=status,
        participants=tuple(
            str(p) for p in doc.get("participants") or () if p is not None and str(p).strip()
        ),
        responded=responded,
        conversation_id=doc.get("conversation_id"),
    )


def parse_task(doc: Dict[str, Any]) -> Task:
    return Task(
        task_id=str(_required(doc, "id")),
        title=doc.get("title") or "Untitled task",
        due_at=_instant(doc, "due_at"),
        assignee=str(_required(doc, "assignee")),
        completed=bool(doc.get("completed", False)),
        conversation_id=doc.get("conversation_id"),
    )


def parse_user(doc: Dict[str, Any]) -> UserProfile:
    prefs = doc.get("nudge_preferences")
    return UserProfile(
        user_id=str(_required(doc, "id")),
        display_name=doc.get("display_name"),
        timezone=doc.get("timezone"),
        nudge_preferences=prefs if isinstance(prefs, dict) else None,
    )


async def latest_sessions(store: EntityStore, now: datetime) -> List[SessionHistory]:
    """
    Last ended session per (owner, conversation).

    Malformed events are skipped with a warning. A failed conversation lookup
    falls back to the event participants with no last message time; a failed
    event scan propagates.
    """
    latest: Dict[tuple, Event] = {}
    for doc in await store.range(EVENTS, "end", end=now):
        try:
            event = parse_event(doc)
        except EntityStoreError as e:
            logger.warning(f"Skipping malformed event in session history: {e}")
            continue
        if not event.conversation_id or event.status != EventStatus.CONFIRMED:
            continue
        pair = (event.created_by, event.conversation_id)
        current = latest.get(pair)
        if current is None or event.end_at > current.end_at:
            latest[pair] = event

    histories = []
    for (owner_id, conversation_id), event in latest.items():
        try:
            conversation = await store.get(CONVERSATIONS, conversation_id) or {}
        except EntityStoreError as e:
            logger.warning(f"Conversation lookup failed for {conversation_id}: {e}")
            conversation = {}
        participants = conversation.get("participants") or event.participants
        contact_id = next((p for p in participants if p != owner_id), None)
        try:
            last_message_at = parse_instant(conversation.get("last_message_at"))
        except ValueError:
            last_message_at = None
        histories.append(SessionHistory(
            conversation_id=conversation_id,
            owner_id=owner_id,
            last_session_at=event.end_at,
            contact_id=contact_id,
            last_message_at=last_message_at,
        ))
    return histories
