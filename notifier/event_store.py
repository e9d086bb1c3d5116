"""
Event audit store.

Durable history of notification events for the deduplication gate. The
gate writes every state change here and reads the latest event for a
dedup key when its in-memory index has none (for example after a restart).
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from database.database import create_db_engine, create_session_factory, session_scope
from database.repository import NotificationEventRepository
from notifier.models import (
    EventState,
    EventType,
    NotificationContent,
    NotificationEvent,
    NotificationPriority,
)

logger = logging.getLogger(__name__)


def _to_datetime(timestamp: Optional[float]) -> Optional[datetime]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def _to_timestamp(value: Optional[datetime]) -> Optional[float]:
    if value is None:
        return None
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def event_to_record_values(event: NotificationEvent) -> Dict[str, Any]:
    return {
        'id': event.id,
        'dedup_key': event.dedup_key,
        'event_type': event.event_type.value,
        'entity_id': event.entity_id,
        'recipient_id': event.recipient_id,
        'state': event.state.value,
        'priority': event.priority.value,
        'source': event.source,
        'title': event.content.title,
        'body': event.content.body,
        'data': dict(event.content.data),
        'event_metadata': dict(event.metadata),
        'error_message': event.error,
        'delivery_attempts': event.delivery_attempts,
        'created_at': _to_datetime(event.created_at),
        'resolved_at': _to_datetime(event.resolved_at),
    }


def event_from_record(record) -> NotificationEvent:
    """Rebuild a NotificationEvent from a ``NotificationEventRecord`` row."""
    return NotificationEvent(
        id=record.id,
        event_type=EventType.coerce(record.event_type),
        entity_id=record.entity_id,
        recipient_id=record.recipient_id,
        content=NotificationContent(
            title=record.title or "",
            body=record.body or "",
            data=record.data or {},
        ),
        source=record.source,
        priority=NotificationPriority(record.priority),
        metadata=record.event_metadata or {},
        dedup_key=record.dedup_key,
        created_at=_to_timestamp(record.created_at),
        state=EventState(record.state),
        resolved_at=_to_timestamp(record.resolved_at),
        error=record.error_message,
        delivery_attempts=record.delivery_attempts or 0,
    )


class EventStore(ABC):

    @abstractmethod
    async def save(self, event: NotificationEvent) -> None:
        """Insert or overwrite the event."""
        pass

    @abstractmethod
    async def find_latest(self, dedup_key: str) -> Optional[NotificationEvent]:
        pass

    @abstractmethod
    async def purge_before(self, timestamp: float) -> int:
        """Delete events created before ``timestamp``; return how many."""
        pass

    async def close(self) -> None:
        return None


class InMemoryEventStore(EventStore):
    """Process-local store, for tests and development without a database."""

    def __init__(self):
        self._events: Dict[str, NotificationEvent] = {}

    async def save(self, event: NotificationEvent) -> None:
        self._events[event.id] = event

    async def find_latest(self, dedup_key: str) -> Optional[NotificationEvent]:
        matches = [event for event in self._events.values() if event.dedup_key == dedup_key]
        if not matches:
            return None
        return max(matches, key=lambda event: event.created_at)

    async def purge_before(self, timestamp: float) -> int:
        stale = [event_id for event_id, event in self._events.items() if event.created_at < timestamp]
        for event_id in stale:
            del self._events[event_id]
        return len(stale)

    def all_events(self) -> List[NotificationEvent]:
        return list(self._events.values())


class SqlEventStore(EventStore):
    """
    SQLAlchemy-backed store.

    Sessions are synchronous, so every call runs in a worker thread inside
    its own ``session_scope`` transaction.
    """

    def __init__(self, engine):
        self.engine = engine
        self._session_factory = create_session_factory(engine)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlEventStore":
        return cls(create_db_engine(database_url))

    async def save(self, event: NotificationEvent) -> None:
        await asyncio.to_thread(self._save_sync, event_to_record_values(event))

    def _save_sync(self, values: Dict[str, Any]) -> None:
        with session_scope(self._session_factory) as session:
            NotificationEventRepository(session).upsert(values)

    async def find_latest(self, dedup_key: str) -> Optional[NotificationEvent]:
        return await asyncio.to_thread(self._find_latest_sync, dedup_key)

    def _find_latest_sync(self, dedup_key: str) -> Optional[NotificationEvent]:
        with session_scope(self._session_factory) as session:
            record = NotificationEventRepository(session).find_latest_by_dedup_key(dedup_key)
            return event_from_record(record) if record is not None else None

    async def purge_before(self, timestamp: float) -> int:
        return await asyncio.to_thread(self._purge_before_sync, _to_datetime(timestamp))

    def _purge_before_sync(self, cutoff: datetime) -> int:
        with session_scope(self._session_factory) as session:
            return NotificationEventRepository(session).purge_before(cutoff)

    async def count_by_state(self) -> Dict[str, int]:
        return await asyncio.to_thread(self._count_by_state_sync)

    def _count_by_state_sync(self) -> Dict[str, int]:
        with session_scope(self._session_factory) as session:
            return NotificationEventRepository(session).count_by_state()

    async def close(self) -> None:
        self.engine.dispose()
