#!/usr/bin/env python3
"""
Notification Deduplication Gate

Prevents the same notification (event type + entity + recipient) from being
sent twice within the dedup window, while letting failed and abandoned
attempts be retried.

Decision rules for the latest event with the same dedup key:

- none, older than the window, or failed -> allow (new pending event)
- sent inside the window -> duplicate
- pending inside the window and younger than the stale grace -> duplicate
- pending older than the stale grace -> abandoned, superseded by a new event

Usage:
    from notifier.deduplication import DeduplicationGate

    gate = DeduplicationGate(config.deduplication, store=event_store)

    decision = await gate.should_allow(request)
    if decision.allowed:
        ...  # dispatch
        await gate.mark_sent(decision.event.id)
"""

import asyncio
import dataclasses
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from notifier.background import BackgroundTasks, run_periodically
from notifier.config import DeduplicationConfig
from notifier.event_store import EventStore
from notifier.models import (
    EventState,
    NotificationEvent,
    NotificationRequest,
)

logger = logging.getLogger(__name__)


def generate_event_id() -> str:
    return f"notif_{uuid.uuid4().hex}"


@dataclass
class DedupDecision:
    allowed: bool
    event: NotificationEvent  # the new pending event, or the one that blocked
    reason: Optional[str] = None


class DeduplicationGate:
    """
    Owns the dedup index (dedup key -> latest event id) and the events.

    The optional event store is an audit log and a fallback for lookups;
    the in-memory index decides.
    """

    def __init__(
        self,
        config: Optional[DeduplicationConfig] = None,
        store: Optional[EventStore] = None,
        clock: Callable[[], float] = time.time
    ):
        self.config = config or DeduplicationConfig()
        self.store = store
        self._clock = clock

        self._events: Dict[str, NotificationEvent] = {}
        self._index: Dict[str, str] = {}

        self._processed = 0
        self._duplicates_blocked = 0

        self._background = BackgroundTasks("deduplication")
        # Writes reach the store in the order the changes happened
        self._write_lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    def start(self) -> None:
        """Start the periodic history sweep on the running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(
                run_periodically(self.config.cleanup_interval_seconds, self.cleanup_expired, "deduplication")
            )

    async def shutdown(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self._background.drain()

    async def flush(self) -> None:
        """Wait until every scheduled store write has finished."""
        await self._background.drain()

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    async def should_allow(self, request: NotificationRequest) -> DedupDecision:
        """
        Decide whether a request is a duplicate.

        When allowed, a new pending event is created and returned; the caller
        must resolve it with ``mark_sent`` or ``mark_failed``.
        """
        dedup_key = request.dedup_key

        existing = self._latest(dedup_key)
        if existing is None and self.store is not None and self.config.persist_events:
            stored = await self._find_in_store(dedup_key)
            # The index may have been filled while the store was queried
            existing = self._latest(dedup_key)
            if existing is None and stored is not None:
                self._events[stored.id] = stored
                self._index[dedup_key] = stored.id
                existing = stored

        return self._decide(request, dedup_key, existing, self._clock())

    def _decide(
        self,
        request: NotificationRequest,
        dedup_key: str,
        existing: Optional[NotificationEvent],
        now: float
    ) -> DedupDecision:
        self._processed += 1

        if existing is not None:
            age = existing.age(now)
            window = self.config.window_for(request.event_type)

            if age < window:
                if existing.state == EventState.SENT:
                    return self._duplicate(existing, f"Already sent as {existing.id}")

                if existing.state == EventState.PENDING:
                    if age < self.config.stale_pending_grace_seconds:
                        return self._duplicate(existing, f"Already pending as {existing.id}")
                    logger.warning(
                        f"Pending event {existing.id} abandoned after {age:.0f}s, "
                        f"superseding for {request.recipient_id}"
                    )

        event = NotificationEvent(
            id=generate_event_id(),
            event_type=request.event_type,
            entity_id=request.entity_id,
            recipient_id=request.recipient_id,
            content=request.content,
            source=request.source,
            priority=request.priority,
            metadata=dict(request.metadata),
            dedup_key=dedup_key,
            created_at=now,
        )
        self._events[event.id] = event
        self._index[dedup_key] = event.id
        self._persist(event)

        logger.debug(f"Admitted {event.id} ({request.event_type.value}:{request.entity_id} -> {request.recipient_id})")
        return DedupDecision(allowed=True, event=event)

    def _duplicate(self, existing: NotificationEvent, reason: str) -> DedupDecision:
        self._duplicates_blocked += 1
        logger.info(f"Duplicate blocked for {existing.recipient_id}: {reason}")
        return DedupDecision(allowed=False, event=existing, reason=reason)

    def _latest(self, dedup_key: str) -> Optional[NotificationEvent]:
        event_id = self._index.get(dedup_key)
        return self._events.get(event_id) if event_id else None

    async def _find_in_store(self, dedup_key: str) -> Optional[NotificationEvent]:
        try:
            return await self.store.find_latest(dedup_key)
        except Exception as e:
            logger.warning(f"Event store lookup failed for {dedup_key}, deciding from memory: {e}")
            return None

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def mark_sent(self, event_id: str) -> bool:
        return self._resolve(event_id, EventState.SENT, None)

    async def mark_failed(self, event_id: str, error: str) -> bool:
        return self._resolve(event_id, EventState.FAILED, error)

    def _resolve(self, event_id: str, state: EventState, error: Optional[str]) -> bool:
        event = self._events.get(event_id)
        if event is None:
            logger.warning(f"Cannot mark unknown event {event_id} as {state.value}")
            return False

        event.state = state
        event.error = error
        event.resolved_at = self._clock()
        event.delivery_attempts += 1
        self._persist(event)

        if state == EventState.FAILED:
            logger.info(f"Event {event_id} failed: {error}")
        return True

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self, event: NotificationEvent) -> None:
        if self.store is None or not self.config.persist_events:
            return
        # Snapshot now; the live event keeps changing
        snapshot = dataclasses.replace(event, metadata=dict(event.metadata))
        self._background.spawn(self._write(snapshot), f"save:{event.id}")

    async def _write(self, event: NotificationEvent) -> None:
        async with self._write_lock:
            try:
                await self.store.save(event)
            except Exception as e:
                logger.warning(f"Could not save event {event.id} ({event.state.value}): {e}")

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    def get_event(self, event_id: str) -> Optional[NotificationEvent]:
        return self._events.get(event_id)

    def get_stats(self) -> Dict[str, Any]:
        by_state = {state: 0 for state in EventState}
        for event in self._events.values():
            by_state[event.state] += 1
        return {
            'tracked': len(self._events),
            'pending': by_state[EventState.PENDING],
            'sent': by_state[EventState.SENT],
            'failed': by_state[EventState.FAILED],
            'duplicates_blocked': self._duplicates_blocked,
            'processed': self._processed,
        }

    async def cleanup_expired(self) -> int:
        """Forget events older than the history horizon, in memory and in the store."""
        now = self._clock()
        horizon = self.config.max_history_seconds

        stale = [event for event in self._events.values() if event.age(now) >= horizon]
        for event in stale:
            del self._events[event.id]
            if self._index.get(event.dedup_key) == event.id:
                del self._index[event.dedup_key]

        if stale:
            logger.info(f"Evicted {len(stale)} notification events older than {horizon}s")

        if self.store is not None and self.config.persist_events:
            try:
                await self.store.purge_before(now - horizon)
            except Exception as e:
                logger.warning(f"Event store purge failed: {e}")

        return len(stale)
