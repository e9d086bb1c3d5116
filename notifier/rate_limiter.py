#!/usr/bin/env python3
"""
Notification Rate Limiter

Enforces quotas on notification traffic with fixed-window counters:

- Global: notifications in flight (live counter) and per second
- Per recipient: per minute, per hour and per day
- Per event type: per minute and a short burst window

Checks run most restrictive first and stop at the first violation. Nothing
is incremented on rejection; on success every consulted counter is
incremented in the same step. Per-recipient buckets are saved to the
counter store in the background so quotas survive restarts.

Usage:
    from notifier.rate_limiter import RateLimiter

    limiter = RateLimiter(config.rate_limits, store=counter_store)
    limiter.start()

    decision = await limiter.check("staff-1", EventType.JOB_ASSIGNED, NotificationPriority.NORMAL)
    if decision.allowed:
        try:
            ...  # send
        finally:
            limiter.notification_complete()

    await limiter.shutdown()
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Optional, Union

from notifier.background import BackgroundTasks, run_periodically
from notifier.config import RateLimitConfig
from notifier.counter_store import CounterStore
from notifier.models import EventType, NotificationPriority

logger = logging.getLogger(__name__)

SECOND = 1
MINUTE = 60
HOUR = 60 * 60
DAY = 24 * 60 * 60


@dataclass
class RateLimitBucket:
    """A counter and the fixed window it counts in."""
    count: int
    window_start: float
    window_end: float

    @classmethod
    def open(cls, now: float, size: float) -> "RateLimitBucket":
        return cls(count=0, window_start=now, window_end=now + size)

    def roll(self, now: float, size: float) -> None:
        """Reset the bucket once its window has ended."""
        if now >= self.window_end:
            self.count = 0
            self.window_start = now
            self.window_end = now + size

    def expired(self, now: float) -> bool:
        return now >= self.window_end

    def retry_after(self, now: float) -> int:
        return max(1, math.ceil(self.window_end - now))

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], now: float, size: float) -> "RateLimitBucket":
        if not data:
            return cls.open(now, size)
        return cls(
            count=max(0, int(data.get('count', 0))),
            window_start=float(data.get('window_start', now)),
            window_end=float(data.get('window_end', now + size)),
        )


@dataclass
class RecipientBuckets:
    minute: RateLimitBucket
    hour: RateLimitBucket
    day: RateLimitBucket

    @classmethod
    def fresh(cls, now: float) -> "RecipientBuckets":
        return cls(
            minute=RateLimitBucket.open(now, MINUTE),
            hour=RateLimitBucket.open(now, HOUR),
            day=RateLimitBucket.open(now, DAY),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any], now: float) -> "RecipientBuckets":
        return cls(
            minute=RateLimitBucket.from_dict(data.get('minute'), now, MINUTE),
            hour=RateLimitBucket.from_dict(data.get('hour'), now, HOUR),
            day=RateLimitBucket.from_dict(data.get('day'), now, DAY),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {'minute': asdict(self.minute), 'hour': asdict(self.hour), 'day': asdict(self.day)}


@dataclass
class EventTypeBuckets:
    minute: RateLimitBucket
    burst: RateLimitBucket


@dataclass
class RateLimitDecision:
    allowed: bool
    current_count: int
    limit: int
    reset_at: float
    reason: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    scope: Optional[str] = None
    checked_at: Optional[float] = None  # set on allowed decisions, used by refund

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RateLimiter:
    """
    Owns every rate-limit bucket. No other component reads or writes them.

    ``check`` suspends only while loading a recipient's saved buckets the
    first time that recipient is seen; the check itself and the increments
    never await, so two concurrent checks on one event loop cannot both take
    the last unit of quota.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        store: Optional[CounterStore] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            config: Quotas (defaults to RateLimitConfig())
            store: Durable counter store for per-recipient buckets (optional)
            clock: Returns the current time in epoch seconds
        """
        self.config = config or RateLimitConfig()
        self.store = store
        self._clock = clock

        now = self._clock()
        self._concurrent = 0
        self._per_second = RateLimitBucket.open(now, SECOND)
        self._recipients: Dict[str, RecipientBuckets] = {}
        self._event_types: Dict[EventType, EventTypeBuckets] = {}

        self._background = BackgroundTasks("rate_limiter")
        self._dirty: set = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._sweeper: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(
                run_periodically(self.config.cleanup_interval_seconds, self._sweep, "rate_limiter")
            )

    async def shutdown(self) -> None:
        """Stop the sweep and wait for pending counter saves."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self._background.drain()

    async def flush(self) -> None:
        """Wait until every scheduled counter save has finished."""
        await self._background.drain()

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def check(
        self,
        recipient_id: str,
        event_type: Union[EventType, str],
        priority: Union[NotificationPriority, str] = NotificationPriority.NORMAL
    ) -> RateLimitDecision:
        """
        Check every quota for a notification and take one unit if all pass.

        Args:
            recipient_id: Recipient the notification is for
            event_type: Event type of the notification
            priority: Urgent priority doubles the per-recipient minute cap

        Returns:
            RateLimitDecision; rejected decisions carry reason and retry_after_seconds
        """
        event_type = EventType.coerce(event_type)
        priority = NotificationPriority(priority)

        buckets = self._recipients.get(recipient_id)
        if buckets is None:
            loaded = await self._load_recipient(recipient_id)
            # Another check may have populated the entry while we were loading
            buckets = self._recipients.setdefault(recipient_id, loaded)

        decision = self._check_and_increment(recipient_id, buckets, event_type, priority, self._clock())

        if not decision.allowed:
            logger.info(
                f"Rate limited {event_type.value} for {recipient_id}: {decision.reason} "
                f"(retry after {decision.retry_after_seconds}s)"
            )
        return decision

    def _check_and_increment(
        self,
        recipient_id: str,
        buckets: RecipientBuckets,
        event_type: EventType,
        priority: NotificationPriority,
        now: float
    ) -> RateLimitDecision:
        global_limits = self.config.global_limits
        user_limits = self.config.per_user

        # 1. Notifications currently in flight
        if self._concurrent >= global_limits.max_concurrent:
            return RateLimitDecision(
                allowed=False,
                reason="Global concurrent limit exceeded",
                retry_after_seconds=1,
                current_count=self._concurrent,
                limit=global_limits.max_concurrent,
                reset_at=now + 1,
                scope="global-concurrent",
            )

        # 2. Global per second
        self._per_second.roll(now, SECOND)
        if self._per_second.count >= global_limits.max_per_second:
            return self._reject(
                "Global per-second limit exceeded", "global-per-second",
                self._per_second, global_limits.max_per_second, now
            )

        # 3. Per recipient, minute -> hour -> day
        minute_limit = user_limits.max_per_minute
        if priority == NotificationPriority.URGENT:
            minute_limit *= user_limits.urgent_multiplier

        for label, bucket, size, limit in (
            ("minute", buckets.minute, MINUTE, minute_limit),
            ("hour", buckets.hour, HOUR, user_limits.max_per_hour),
            ("day", buckets.day, DAY, user_limits.max_per_day),
        ):
            bucket.roll(now, size)
            if bucket.count >= limit:
                return self._reject(
                    f"User per-{label} limit exceeded", f"user-per-{label}", bucket, limit, now
                )

        # 4. Per event type, minute and burst windows independently
        type_limits = self.config.limits_for(event_type)
        burst_window = self.config.burst_window_seconds
        type_buckets = self._event_types.get(event_type)
        if type_buckets is None:
            type_buckets = EventTypeBuckets(
                minute=RateLimitBucket.open(now, MINUTE),
                burst=RateLimitBucket.open(now, burst_window),
            )
            self._event_types[event_type] = type_buckets

        type_buckets.minute.roll(now, MINUTE)
        if type_buckets.minute.count >= type_limits.max_per_minute:
            return self._reject(
                f"Event type '{event_type.value}' per-minute limit exceeded", "eventType-per-minute",
                type_buckets.minute, type_limits.max_per_minute, now
            )

        type_buckets.burst.roll(now, burst_window)
        if type_buckets.burst.count >= type_limits.burst_limit:
            return self._reject(
                f"Event type '{event_type.value}' burst limit exceeded", "eventType-burst-per-10s",
                type_buckets.burst, type_limits.burst_limit, now
            )

        # All passed: take one unit from every consulted scope
        self._concurrent += 1
        self._per_second.count += 1
        buckets.minute.count += 1
        buckets.hour.count += 1
        buckets.day.count += 1
        type_buckets.minute.count += 1
        type_buckets.burst.count += 1

        self._schedule_persist(recipient_id)

        return RateLimitDecision(
            allowed=True,
            current_count=buckets.minute.count,
            limit=minute_limit,
            reset_at=buckets.minute.window_end,
            checked_at=now,
        )

    @staticmethod
    def _reject(reason: str, scope: str, bucket: RateLimitBucket, limit: int, now: float) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=False,
            reason=reason,
            retry_after_seconds=bucket.retry_after(now),
            current_count=bucket.count,
            limit=limit,
            reset_at=bucket.window_end,
            scope=scope,
        )

    def notification_complete(self) -> None:
        """Release the in-flight slot taken by an allowed check."""
        if self._concurrent > 0:
            self._concurrent -= 1

    def refund(self, recipient_id: str, event_type: Union[EventType, str], decision: RateLimitDecision) -> None:
        """
        Give back the units an allowed check took, for a notification that
        was never sent (blocked as a duplicate).

        A bucket whose window has rolled since the check no longer holds
        that unit and is left alone. The in-flight slot is released by
        ``notification_complete`` as usual.
        """
        if not decision.allowed or decision.checked_at is None:
            return
        checked_at = decision.checked_at

        def give_back(bucket: Optional[RateLimitBucket]) -> None:
            if bucket is not None and bucket.window_start <= checked_at and bucket.count > 0:
                bucket.count -= 1

        give_back(self._per_second)

        buckets = self._recipients.get(recipient_id)
        if buckets is not None:
            give_back(buckets.minute)
            give_back(buckets.hour)
            give_back(buckets.day)
            self._schedule_persist(recipient_id)

        type_buckets = self._event_types.get(EventType.coerce(event_type))
        if type_buckets is not None:
            give_back(type_buckets.minute)
            give_back(type_buckets.burst)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _load_recipient(self, recipient_id: str) -> RecipientBuckets:
        now = self._clock()
        if self.store is not None and self.config.persist_user_limits:
            try:
                state = await self.store.load(recipient_id)
                if state:
                    return RecipientBuckets.from_dict(state, now)
            except Exception as e:
                logger.warning(f"Could not load rate limits for {recipient_id}, starting fresh: {e}")
        return RecipientBuckets.fresh(now)

    def _schedule_persist(self, recipient_id: str) -> None:
        if self.store is None or not self.config.persist_user_limits:
            return
        self._dirty.add(recipient_id)
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = self._background.spawn(self._flush_dirty(), "save_user_limits")

    async def _flush_dirty(self) -> None:
        # Saves the latest state of each dirty recipient, so bursts coalesce
        while self._dirty:
            recipient_id = self._dirty.pop()
            buckets = self._recipients.get(recipient_id)
            if buckets is None:
                continue
            try:
                await self.store.save(recipient_id, buckets.to_dict())
            except Exception as e:
                logger.warning(f"Could not save rate limits for {recipient_id}: {e}")

    # ------------------------------------------------------------------
    # Status and maintenance
    # ------------------------------------------------------------------

    async def get_status(self, recipient_id: str) -> Dict[str, Dict[str, Any]]:
        """Current per-recipient usage for the minute, hour and day windows."""
        buckets = self._recipients.get(recipient_id)
        if buckets is None:
            loaded = await self._load_recipient(recipient_id)
            buckets = self._recipients.setdefault(recipient_id, loaded)

        now = self._clock()
        user_limits = self.config.per_user
        status = {}
        for label, bucket, size, limit in (
            ("minute", buckets.minute, MINUTE, user_limits.max_per_minute),
            ("hour", buckets.hour, HOUR, user_limits.max_per_hour),
            ("day", buckets.day, DAY, user_limits.max_per_day),
        ):
            bucket.roll(now, size)
            status[label] = {'current': bucket.count, 'limit': limit, 'reset_at': bucket.window_end}
        return status

    async def reset_recipient(self, recipient_id: str) -> None:
        """Admin reset: zero a recipient's buckets in memory and in the store."""
        buckets = RecipientBuckets.fresh(self._clock())
        self._recipients[recipient_id] = buckets
        self._dirty.discard(recipient_id)
        if self.store is not None and self.config.persist_user_limits:
            try:
                await self.store.save(recipient_id, buckets.to_dict())
            except Exception as e:
                logger.warning(f"Could not persist rate limit reset for {recipient_id}: {e}")
        logger.info(f"Reset rate limits for {recipient_id}")

    def get_global_stats(self) -> Dict[str, Any]:
        global_limits = self.config.global_limits
        return {
            'concurrent': self._concurrent,
            'max_concurrent': global_limits.max_concurrent,
            'per_second': {'current': self._per_second.count, 'limit': global_limits.max_per_second},
            'active_recipients': len(self._recipients),
            'active_event_types': len(self._event_types),
        }

    def cleanup_expired(self) -> Dict[str, int]:
        """
        Evict buckets that can no longer affect a decision.

        A recipient is evicted once its minute, hour and day windows have
        all ended; an event type once both its windows have ended. A live
        window still holds quota and must survive the sweep.
        """
        now = self._clock()

        stale_recipients = [
            recipient_id for recipient_id, buckets in self._recipients.items()
            if buckets.minute.expired(now) and buckets.hour.expired(now) and buckets.day.expired(now)
        ]
        for recipient_id in stale_recipients:
            del self._recipients[recipient_id]

        stale_types = [
            event_type for event_type, buckets in self._event_types.items()
            if buckets.minute.expired(now) and buckets.burst.expired(now)
        ]
        for event_type in stale_types:
            del self._event_types[event_type]

        if stale_recipients or stale_types:
            logger.debug(
                f"Evicted rate limits for {len(stale_recipients)} recipients "
                f"and {len(stale_types)} event types"
            )
        return {'recipients': len(stale_recipients), 'event_types': len(stale_types)}

    async def _sweep(self) -> None:
        self.cleanup_expired()
