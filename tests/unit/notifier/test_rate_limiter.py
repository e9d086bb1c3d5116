#!/usr/bin/env python3
"""
Tests for the notification rate limiter.

Usage:
    uv run python -m pytest tests/unit/notifier/test_rate_limiter.py -v
"""

import asyncio
import unittest

from notifier.config import EventTypeLimits, GlobalLimits, RateLimitConfig, UserLimits
from notifier.counter_store import InMemoryCounterStore
from notifier.models import EventType, NotificationPriority
from notifier.rate_limiter import RateLimitBucket, RateLimiter
from tests.mocks.notifier_mocks import FailingCounterStore, FakeClock, SlowCounterStore


def roomy_event_types(**overrides):
    """Event-type limits high enough not to interfere with per-user checks."""
    limits = {event_type: EventTypeLimits(max_per_minute=1000, burst_limit=1000) for event_type in EventType}
    limits.update(overrides)
    return limits


class TestRateLimitBucket(unittest.TestCase):

    def test_roll_resets_exactly_at_window_end(self):
        bucket = RateLimitBucket(count=4, window_start=0.0, window_end=60.0)

        bucket.roll(59.999, 60)
        self.assertEqual(bucket.count, 4)

        bucket.roll(60.0, 60)
        self.assertEqual(bucket.count, 0)
        self.assertEqual(bucket.window_start, 60.0)
        self.assertEqual(bucket.window_end, 120.0)

    def test_retry_after_rounds_up(self):
        bucket = RateLimitBucket(count=1, window_start=0.0, window_end=60.0)
        self.assertEqual(bucket.retry_after(4.2), 56)
        self.assertEqual(bucket.retry_after(59.99), 1)


class TestUserLimits(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.config = RateLimitConfig(
            per_user=UserLimits(max_per_minute=10, max_per_hour=100, max_per_day=500),
            per_event_type=roomy_event_types(),
        )
        self.limiter = RateLimiter(self.config, clock=self.clock)

    async def test_eleventh_in_a_minute_is_rejected_with_retry_after(self):
        for i in range(10):
            decision = await self.limiter.check("R1", EventType.JOB_ASSIGNED)
            self.assertTrue(decision.allowed, f"call {i + 1} should be allowed")
            self.limiter.notification_complete()
            self.clock.advance(0.5)

        decision = await self.limiter.check("R1", EventType.JOB_ASSIGNED)

        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, "User per-minute limit exceeded")
        self.assertEqual(decision.retry_after_seconds, 55)
        self.assertEqual(decision.scope, "user-per-minute")
        self.assertEqual(decision.limit, 10)

    async def test_rejection_increments_nothing(self):
        for _ in range(10):
            await self.limiter.check("R1", EventType.JOB_ASSIGNED)
            self.limiter.notification_complete()

        for _ in range(3):
            decision = await self.limiter.check("R1", EventType.JOB_ASSIGNED)
            self.assertFalse(decision.allowed)

        status = await self.limiter.get_status("R1")
        self.assertEqual(status['minute']['current'], 10)
        self.assertEqual(status['hour']['current'], 10)
        self.assertEqual(self.limiter.get_global_stats()['concurrent'], 0)

    async def test_window_resets_after_a_minute(self):
        for _ in range(10):
            await self.limiter.check("R1", EventType.JOB_ASSIGNED)
            self.limiter.notification_complete()
        self.assertFalse((await self.limiter.check("R1", EventType.JOB_ASSIGNED)).allowed)

        self.clock.advance(60)

        decision = await self.limiter.check("R1", EventType.JOB_ASSIGNED)
        self.assertTrue(decision.allowed)
        self.assertEqual(decision.current_count, 1)

    async def test_recipients_have_separate_quotas(self):
        for _ in range(10):
            await self.limiter.check("R1", EventType.JOB_ASSIGNED)
            self.limiter.notification_complete()

        self.assertFalse((await self.limiter.check("R1", EventType.JOB_ASSIGNED)).allowed)
        self.assertTrue((await self.limiter.check("R2", EventType.JOB_ASSIGNED)).allowed)

    async def test_hour_limit_applies_after_minute_windows(self):
        config = RateLimitConfig(
            per_user=UserLimits(max_per_minute=2, max_per_hour=3, max_per_day=10),
            per_event_type=roomy_event_types(),
        )
        limiter = RateLimiter(config, clock=self.clock)

        for _ in range(2):
            self.assertTrue((await limiter.check("R1", EventType.JOB_REMINDER)).allowed)
        self.clock.advance(60)
        self.assertTrue((await limiter.check("R1", EventType.JOB_REMINDER)).allowed)

        decision = await limiter.check("R1", EventType.JOB_REMINDER)
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, "User per-hour limit exceeded")
        self.assertEqual(decision.retry_after_seconds, 3600 - 60)

    async def test_unknown_event_type_raises(self):
        with self.assertRaises(ValueError):
            await self.limiter.check("R1", "job.teleported")


class TestUrgentOverride(unittest.IsolatedAsyncioTestCase):

    async def test_urgent_gets_double_minute_cap_and_no_more(self):
        clock = FakeClock()
        config = RateLimitConfig(
            per_user=UserLimits(max_per_minute=5, urgent_multiplier=2),
            per_event_type=roomy_event_types(),
        )
        limiter = RateLimiter(config, clock=clock)

        for i in range(10):
            decision = await limiter.check("R1", EventType.EMERGENCY, NotificationPriority.URGENT)
            self.assertTrue(decision.allowed, f"urgent call {i + 1} should be allowed")
            limiter.notification_complete()

        decision = await limiter.check("R1", EventType.EMERGENCY, NotificationPriority.URGENT)
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, "User per-minute limit exceeded")
        self.assertEqual(decision.limit, 10)

    async def test_normal_priority_keeps_base_cap(self):
        config = RateLimitConfig(
            per_user=UserLimits(max_per_minute=5),
            per_event_type=roomy_event_types(),
        )
        limiter = RateLimiter(config, clock=FakeClock())

        for _ in range(5):
            self.assertTrue((await limiter.check("R1", EventType.JOB_ASSIGNED, "normal")).allowed)
        self.assertFalse((await limiter.check("R1", EventType.JOB_ASSIGNED, "high")).allowed)

    async def test_urgent_does_not_bypass_hour_limit(self):
        config = RateLimitConfig(
            per_user=UserLimits(max_per_minute=5, max_per_hour=6),
            per_event_type=roomy_event_types(),
        )
        limiter = RateLimiter(config, clock=FakeClock())

        for _ in range(6):
            self.assertTrue((await limiter.check("R1", EventType.EMERGENCY, "urgent")).allowed)

        decision = await limiter.check("R1", EventType.EMERGENCY, "urgent")
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, "User per-hour limit exceeded")


class TestEventTypeLimits(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.config = RateLimitConfig(
            per_user=UserLimits(max_per_minute=100, max_per_hour=1000, max_per_day=1000),
        )
        self.limiter = RateLimiter(self.config, clock=self.clock)

    async def test_burst_rejects_before_minute_limit(self):
        # job.completed: 15 per minute, burst of 3 per 10s
        for i in range(3):
            self.assertTrue((await self.limiter.check(f"staff-{i}", EventType.JOB_COMPLETED)).allowed)

        decision = await self.limiter.check("staff-9", EventType.JOB_COMPLETED)
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, "Event type 'job.completed' burst limit exceeded")
        self.assertEqual(decision.retry_after_seconds, 10)

    async def test_minute_limit_holds_across_burst_windows(self):
        allowed = 0
        for window in range(6):
            for i in range(3):
                decision = await self.limiter.check(f"staff-{window}-{i}", EventType.JOB_COMPLETED)
                if decision.allowed:
                    allowed += 1
                    self.limiter.notification_complete()
            self.clock.advance(10)
            if allowed == 15:
                break

        self.assertEqual(allowed, 15)
        decision = await self.limiter.check("late-staff", EventType.JOB_COMPLETED)
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, "Event type 'job.completed' per-minute limit exceeded")

    async def test_event_types_are_limited_independently(self):
        for i in range(3):
            await self.limiter.check(f"staff-{i}", EventType.JOB_COMPLETED)

        self.assertFalse((await self.limiter.check("staff-x", EventType.JOB_COMPLETED)).allowed)
        self.assertTrue((await self.limiter.check("staff-x", EventType.JOB_ASSIGNED)).allowed)

    async def test_missing_event_type_uses_default_entry(self):
        config = RateLimitConfig(
            per_user=UserLimits(max_per_minute=100, max_per_hour=1000, max_per_day=1000),
            per_event_type={},
            default_event_type=EventTypeLimits(max_per_minute=30, burst_limit=2),
        )
        limiter = RateLimiter(config, clock=self.clock)

        self.assertTrue((await limiter.check("a", EventType.EMERGENCY)).allowed)
        self.assertTrue((await limiter.check("b", EventType.EMERGENCY)).allowed)
        decision = await limiter.check("c", EventType.EMERGENCY)
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, "Event type 'emergency' burst limit exceeded")


class TestGlobalLimits(unittest.IsolatedAsyncioTestCase):

    async def test_concurrent_limit_releases_on_complete(self):
        config = RateLimitConfig(
            global_limits=GlobalLimits(max_concurrent=2, max_per_second=50),
            per_event_type=roomy_event_types(),
        )
        limiter = RateLimiter(config, clock=FakeClock())

        self.assertTrue((await limiter.check("a", EventType.JOB_ASSIGNED)).allowed)
        self.assertTrue((await limiter.check("b", EventType.JOB_ASSIGNED)).allowed)

        decision = await limiter.check("c", EventType.JOB_ASSIGNED)
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, "Global concurrent limit exceeded")
        self.assertEqual(decision.retry_after_seconds, 1)

        limiter.notification_complete()
        self.assertTrue((await limiter.check("c", EventType.JOB_ASSIGNED)).allowed)

    async def test_per_second_limit(self):
        clock = FakeClock()
        config = RateLimitConfig(
            global_limits=GlobalLimits(max_concurrent=100, max_per_second=3),
            per_event_type=roomy_event_types(),
        )
        limiter = RateLimiter(config, clock=clock)

        for i in range(3):
            self.assertTrue((await limiter.check(f"staff-{i}", EventType.JOB_ASSIGNED)).allowed)

        decision = await limiter.check("staff-9", EventType.JOB_ASSIGNED)
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, "Global per-second limit exceeded")

        clock.advance(1)
        self.assertTrue((await limiter.check("staff-9", EventType.JOB_ASSIGNED)).allowed)

    async def test_notification_complete_never_goes_negative(self):
        limiter = RateLimiter(clock=FakeClock())
        limiter.notification_complete()
        limiter.notification_complete()
        self.assertEqual(limiter.get_global_stats()['concurrent'], 0)


class TestAtomicity(unittest.IsolatedAsyncioTestCase):

    async def test_concurrent_checks_never_exceed_the_limit(self):
        config = RateLimitConfig(
            per_user=UserLimits(max_per_minute=3),
            per_event_type=roomy_event_types(),
        )
        limiter = RateLimiter(config, store=SlowCounterStore(), clock=FakeClock())

        decisions = await asyncio.gather(*(
            limiter.check("R1", EventType.JOB_ASSIGNED) for _ in range(10)
        ))

        self.assertEqual(sum(1 for d in decisions if d.allowed), 3)
        status = await limiter.get_status("R1")
        self.assertEqual(status['minute']['current'], 3)
        await limiter.shutdown()


class TestRefund(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.config = RateLimitConfig(
            per_user=UserLimits(max_per_minute=2),
            per_event_type=roomy_event_types(),
        )
        self.limiter = RateLimiter(self.config, clock=self.clock)

    async def test_refund_returns_the_unit(self):
        decision = await self.limiter.check("R1", EventType.JOB_ASSIGNED)
        self.limiter.refund("R1", EventType.JOB_ASSIGNED, decision)

        status = await self.limiter.get_status("R1")
        self.assertEqual(status['minute']['current'], 0)
        self.assertEqual(status['day']['current'], 0)

    async def test_refund_after_window_roll_leaves_new_window_alone(self):
        decision = await self.limiter.check("R1", EventType.JOB_ASSIGNED)
        self.clock.advance(61)
        await self.limiter.check("R1", EventType.JOB_ASSIGNED)

        self.limiter.refund("R1", EventType.JOB_ASSIGNED, decision)

        status = await self.limiter.get_status("R1")
        self.assertEqual(status['minute']['current'], 1)
        # The hour window did not roll, so that unit comes back
        self.assertEqual(status['hour']['current'], 1)

    async def test_refund_ignores_rejections(self):
        await self.limiter.check("R1", EventType.JOB_ASSIGNED)
        await self.limiter.check("R1", EventType.JOB_ASSIGNED)
        rejected = await self.limiter.check("R1", EventType.JOB_ASSIGNED)

        self.limiter.refund("R1", EventType.JOB_ASSIGNED, rejected)

        status = await self.limiter.get_status("R1")
        self.assertEqual(status['minute']['current'], 2)


class TestPersistence(unittest.IsolatedAsyncioTestCase):

    async def test_buckets_survive_a_restart(self):
        clock = FakeClock()
        store = InMemoryCounterStore()
        config = RateLimitConfig(per_user=UserLimits(max_per_minute=3), per_event_type=roomy_event_types())

        first = RateLimiter(config, store=store, clock=clock)
        for _ in range(3):
            await first.check("R1", EventType.JOB_ASSIGNED)
        await first.flush()
        self.assertIn("R1", store.keys())

        second = RateLimiter(config, store=store, clock=clock)
        decision = await second.check("R1", EventType.JOB_ASSIGNED)

        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, "User per-minute limit exceeded")

    async def test_store_failures_do_not_change_decisions(self):
        store = FailingCounterStore()
        limiter = RateLimiter(store=store, clock=FakeClock())

        decision = await limiter.check("R1", EventType.JOB_ASSIGNED)
        await limiter.flush()

        self.assertTrue(decision.allowed)
        self.assertEqual(store.load_calls, 1)
        self.assertEqual(store.save_calls, 1)

    async def test_persistence_can_be_disabled(self):
        store = InMemoryCounterStore()
        limiter = RateLimiter(RateLimitConfig(persist_user_limits=False), store=store, clock=FakeClock())

        await limiter.check("R1", EventType.JOB_ASSIGNED)
        await limiter.flush()

        self.assertEqual(store.keys(), [])

    async def test_reset_recipient_zeroes_memory_and_store(self):
        clock = FakeClock()
        store = InMemoryCounterStore()
        config = RateLimitConfig(per_user=UserLimits(max_per_minute=1), per_event_type=roomy_event_types())
        limiter = RateLimiter(config, store=store, clock=clock)

        await limiter.check("R1", EventType.JOB_ASSIGNED)
        self.assertFalse((await limiter.check("R1", EventType.JOB_ASSIGNED)).allowed)

        await limiter.reset_recipient("R1")

        self.assertTrue((await limiter.check("R1", EventType.JOB_ASSIGNED)).allowed)
        saved = await store.load("R1")
        self.assertIsNotNone(saved)


class TestMaintenance(unittest.IsolatedAsyncioTestCase):

    async def test_cleanup_evicts_idle_recipients_and_event_types(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        await limiter.check("R1", EventType.JOB_ASSIGNED)

        self.assertEqual(limiter.cleanup_expired(), {'recipients': 0, 'event_types': 0})

        clock.advance(24 * 60 * 60)
        self.assertEqual(limiter.cleanup_expired(), {'recipients': 1, 'event_types': 1})
        self.assertEqual(limiter.get_global_stats()['active_recipients'], 0)

    async def test_cleanup_keeps_full_minute_window_across_day_boundary(self):
        clock = FakeClock()
        config = RateLimitConfig(per_user=UserLimits(max_per_minute=10), per_event_type=roomy_event_types())
        limiter = RateLimiter(config, clock=clock)

        # Opens the day window
        await limiter.check("R1", EventType.JOB_ASSIGNED)
        limiter.notification_complete()

        # Fill a fresh minute window that ends after the day window does
        clock.advance(24 * 60 * 60 - 2)
        for _ in range(10):
            self.assertTrue((await limiter.check("R1", EventType.JOB_ASSIGNED)).allowed)
            limiter.notification_complete()
            clock.advance(0.1)

        clock.advance(6)
        self.assertEqual(limiter.cleanup_expired()['recipients'], 0)

        decision = await limiter.check("R1", EventType.JOB_ASSIGNED)
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, "User per-minute limit exceeded")

    async def test_cleanup_keeps_recipient_while_hour_or_minute_window_is_live(self):
        clock = FakeClock()
        config = RateLimitConfig(per_event_type=roomy_event_types())
        limiter = RateLimiter(config, clock=clock)

        await limiter.check("R1", EventType.JOB_ASSIGNED)
        limiter.notification_complete()

        # Rolls the minute and hour windows 30 seconds before the day ends
        clock.advance(24 * 60 * 60 - 30)
        await limiter.check("R1", EventType.JOB_ASSIGNED)
        limiter.notification_complete()

        # Day over, minute and hour still live
        clock.advance(40)
        self.assertEqual(limiter.cleanup_expired()['recipients'], 0)
        buckets = limiter._recipients["R1"]
        self.assertEqual(buckets.minute.count, 1)
        self.assertEqual(buckets.hour.count, 1)

        # Minute over, hour still live
        clock.advance(60)
        self.assertEqual(limiter.cleanup_expired()['recipients'], 0)
        self.assertEqual(limiter.get_global_stats()['active_recipients'], 1)
        self.assertEqual(limiter._recipients["R1"].hour.count, 1)

        clock.advance(60 * 60)
        self.assertEqual(limiter.cleanup_expired()['recipients'], 1)

    async def test_start_and_shutdown(self):
        limiter = RateLimiter(RateLimitConfig(cleanup_interval_seconds=1), store=InMemoryCounterStore())
        limiter.start()
        await limiter.check("R1", EventType.JOB_ASSIGNED)
        await limiter.shutdown()

        self.assertIsNone(limiter._sweeper)


if __name__ == '__main__':
    unittest.main()
