#!/usr/bin/env python3
"""
Unit tests for the SQL-backed notification event store.

Runs against an in-memory SQLite database, so no server is needed.

These tests require a database - marked with @pytest.mark.db
"""

import asyncio
from dataclasses import replace

import pytest

from database.database import create_db_engine, create_session_factory, session_scope
from database.models import NotificationEventRecord
from database.repository import NotificationEventRepository
from notifier.event_store import SqlEventStore
from notifier.models import (
    EventState,
    EventType,
    NotificationContent,
    NotificationEvent,
    NotificationPriority,
    generate_dedup_key,
)
from tests import SQLITE_MEMORY_URL

NOW = 1_700_000_000.0


def make_event(event_id="notif_1", entity_id="J1", created_at=NOW, state=EventState.PENDING):
    return NotificationEvent(
        id=event_id,
        event_type=EventType.JOB_ASSIGNED,
        entity_id=entity_id,
        recipient_id="staff-1",
        content=NotificationContent(
            title="New Job Assignment",
            body="Pool Cleaning - pool maintenance at Villa Mango",
            data={'job_id': entity_id, 'deep_link': f"app://jobs/{entity_id}"},
        ),
        source="job_events",
        priority=NotificationPriority.HIGH,
        metadata={'job_type': 'pool_maintenance'},
        dedup_key=generate_dedup_key("job.assigned", entity_id, "staff-1"),
        created_at=created_at,
        state=state,
    )


@pytest.fixture(scope="function")
def store():
    """Fresh in-memory event store for each test."""
    event_store = SqlEventStore.from_url(SQLITE_MEMORY_URL)
    yield event_store
    asyncio.run(event_store.close())


@pytest.mark.db
class TestSqlEventStore:
    """Test suite for SqlEventStore."""

    def test_save_and_find_latest(self, store):
        event = make_event()
        asyncio.run(store.save(event))

        found = asyncio.run(store.find_latest(event.dedup_key))

        assert found is not None
        assert found.id == "notif_1"
        assert found.event_type == EventType.JOB_ASSIGNED
        assert found.priority == NotificationPriority.HIGH
        assert found.content.data['deep_link'] == "app://jobs/J1"
        assert found.metadata == {'job_type': 'pool_maintenance'}
        assert found.created_at == pytest.approx(NOW)
        assert found.state == EventState.PENDING
        assert found.resolved_at is None

    def test_save_overwrites_state(self, store):
        event = make_event()
        asyncio.run(store.save(event))

        resolved = replace(event, state=EventState.FAILED, error="All channels failed",
                           resolved_at=NOW + 3, delivery_attempts=1)
        asyncio.run(store.save(resolved))

        found = asyncio.run(store.find_latest(event.dedup_key))
        assert found.state == EventState.FAILED
        assert found.error == "All channels failed"
        assert found.resolved_at == pytest.approx(NOW + 3)
        assert found.delivery_attempts == 1

    def test_find_latest_returns_newest(self, store):
        asyncio.run(store.save(make_event("notif_old", created_at=NOW)))
        asyncio.run(store.save(make_event("notif_new", created_at=NOW + 200)))

        found = asyncio.run(store.find_latest(make_event().dedup_key))

        assert found.id == "notif_new"

    def test_find_latest_unknown_key(self, store):
        assert asyncio.run(store.find_latest("0" * 32)) is None

    def test_purge_before(self, store):
        asyncio.run(store.save(make_event("notif_old", entity_id="J1", created_at=NOW)))
        asyncio.run(store.save(make_event("notif_new", entity_id="J2", created_at=NOW + 100)))

        purged = asyncio.run(store.purge_before(NOW + 50))

        assert purged == 1
        assert asyncio.run(store.find_latest(make_event(entity_id="J1").dedup_key)) is None
        assert asyncio.run(store.find_latest(make_event(entity_id="J2").dedup_key)) is not None

    def test_count_by_state(self, store):
        asyncio.run(store.save(make_event("notif_1", entity_id="J1", state=EventState.SENT)))
        asyncio.run(store.save(make_event("notif_2", entity_id="J2", state=EventState.SENT)))
        asyncio.run(store.save(make_event("notif_3", entity_id="J3", state=EventState.FAILED)))

        assert asyncio.run(store.count_by_state()) == {'sent': 2, 'failed': 1}


@pytest.mark.db
class TestSessionScope:
    """Test suite for the transactional session scope."""

    def test_rolls_back_on_error(self):
        engine = create_db_engine(SQLITE_MEMORY_URL)
        factory = create_session_factory(engine)

        with pytest.raises(RuntimeError):
            with session_scope(factory) as session:
                session.add(NotificationEventRecord(
                    id="notif_1", dedup_key="k", event_type="job.assigned", entity_id="J1",
                    recipient_id="staff-1", state="pending", priority="normal", source="job_events",
                ))
                session.flush()
                raise RuntimeError("boom")

        with session_scope(factory) as session:
            assert NotificationEventRepository(session).get_by_id("notif_1") is None

        engine.dispose()
