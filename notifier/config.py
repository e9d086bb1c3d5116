#!/usr/bin/env python3
"""
Pipeline Component Configuration

Static limits and timeouts for the rate limiter, deduplication gate and
channel transports. Loaded once at startup as part of ``AppConfig``.
"""

from typing import Dict, Optional

from pydantic import BaseModel, Field

from notifier.models import EventType


class GlobalLimits(BaseModel):
    max_concurrent: int = Field(default=100, ge=1)
    max_per_second: int = Field(default=50, ge=1)


class UserLimits(BaseModel):
    """Per-recipient quotas, each enforced on a fixed window."""
    max_per_minute: int = Field(default=10, ge=1)
    max_per_hour: int = Field(default=100, ge=1)
    max_per_day: int = Field(default=500, ge=1)
    # Urgent traffic gets this multiple of max_per_minute, nothing more
    urgent_multiplier: int = Field(default=2, ge=1)


class EventTypeLimits(BaseModel):
    max_per_minute: int = Field(ge=1)
    burst_limit: int = Field(ge=1)


def _default_event_type_limits() -> Dict[EventType, EventTypeLimits]:
    return {
        EventType.JOB_ASSIGNED: EventTypeLimits(max_per_minute=20, burst_limit=5),
        EventType.JOB_STATUS_UPDATED: EventTypeLimits(max_per_minute=30, burst_limit=10),
        EventType.JOB_COMPLETED: EventTypeLimits(max_per_minute=15, burst_limit=3),
        EventType.JOB_REMINDER: EventTypeLimits(max_per_minute=20, burst_limit=5),
        EventType.JOB_ESCALATED: EventTypeLimits(max_per_minute=10, burst_limit=3),
        EventType.BOOKING_UPDATED: EventTypeLimits(max_per_minute=25, burst_limit=8),
        EventType.EMERGENCY: EventTypeLimits(max_per_minute=5, burst_limit=2),
    }


class RateLimitConfig(BaseModel):
    """
    Quotas for the rate limiter.

    Event types missing from ``per_event_type`` use ``default_event_type``.
    """
    global_limits: GlobalLimits = Field(default_factory=GlobalLimits)
    per_user: UserLimits = Field(default_factory=UserLimits)
    per_event_type: Dict[EventType, EventTypeLimits] = Field(default_factory=_default_event_type_limits)
    default_event_type: EventTypeLimits = Field(
        default_factory=lambda: EventTypeLimits(max_per_minute=30, burst_limit=10)
    )
    burst_window_seconds: int = Field(default=10, ge=1)
    cleanup_interval_seconds: int = Field(default=60, ge=1)
    persist_user_limits: bool = True

    def limits_for(self, event_type: EventType) -> EventTypeLimits:
        return self.per_event_type.get(event_type, self.default_event_type)


class DeduplicationConfig(BaseModel):
    window_seconds: int = Field(default=300, ge=1)
    event_type_windows: Dict[EventType, int] = Field(default_factory=dict)
    # A pending event older than this is treated as abandoned by a crashed sender
    stale_pending_grace_seconds: int = Field(default=120, ge=1)
    max_history_seconds: int = Field(default=24 * 60 * 60, ge=1)
    cleanup_interval_seconds: int = Field(default=300, ge=1)
    persist_events: bool = True

    def window_for(self, event_type: EventType) -> int:
        return self.event_type_windows.get(event_type, self.window_seconds)


class PushChannelConfig(BaseModel):
    enabled: bool = True
    timeout_seconds: float = Field(default=10.0, gt=0)
    gateway_url: str = "https://exp.host/--/api/v2/push/send"
    access_token: Optional[str] = None
    max_retries: int = Field(default=3, ge=1)
    request_timeout_seconds: float = Field(default=5.0, gt=0)


class RealtimeChannelConfig(BaseModel):
    enabled: bool = True
    timeout_seconds: float = Field(default=5.0, gt=0)
    channel_prefix: str = "realtime:notifications:"


class ChannelsConfig(BaseModel):
    push: PushChannelConfig = Field(default_factory=PushChannelConfig)
    realtime: RealtimeChannelConfig = Field(default_factory=RealtimeChannelConfig)

