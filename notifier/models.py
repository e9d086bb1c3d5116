#!/usr/bin/env python3
"""
Notification Models

Shared types for the delivery pipeline: event types and their preference
categories, priorities, channels, recipients, notification events and the
per-call result aggregate.
"""

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Job-lifecycle events that can raise a notification."""
    JOB_ASSIGNED = "job.assigned"
    JOB_STATUS_UPDATED = "job.status_updated"
    JOB_COMPLETED = "job.completed"
    JOB_REMINDER = "job.reminder"
    JOB_ESCALATED = "job.escalated"
    BOOKING_UPDATED = "booking.updated"
    EMERGENCY = "emergency"

    @property
    def category(self) -> str:
        """Preference category a recipient can switch off."""
        return _EVENT_CATEGORIES[self]

    @classmethod
    def coerce(cls, value: Any) -> "EventType":
        """Return the member for ``value``; raise ValueError for unknown types."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f"Unknown event type: {value}. "
                f"Available: {', '.join(member.value for member in cls)}"
            ) from None


_EVENT_CATEGORIES = {
    EventType.JOB_ASSIGNED: "job_assignments",
    EventType.JOB_STATUS_UPDATED: "job_updates",
    EventType.JOB_COMPLETED: "job_updates",
    EventType.JOB_REMINDER: "job_reminders",
    EventType.JOB_ESCALATED: "escalations",
    EventType.EMERGENCY: "escalations",
    EventType.BOOKING_UPDATED: "booking_updates",
}


class NotificationPriority(str, Enum):
    """Priority levels for notifications."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class ChannelKind(str, Enum):
    """Delivery mechanisms a recipient can hold tokens for."""
    PUSH = "push"
    REALTIME = "realtime"


class RecipientRole(str, Enum):
    STAFF = "staff"
    ADMIN = "admin"
    MANAGER = "manager"


class EventState(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class RecipientPreferences(BaseModel):
    """Per-recipient switches. A missing entry means enabled."""
    channel_enabled: Dict[ChannelKind, bool] = Field(default_factory=dict)
    event_category_enabled: Dict[str, bool] = Field(default_factory=dict)


class Recipient(BaseModel):
    """A staff/admin profile as read from the recipient directory."""
    id: str = Field(min_length=1)
    name: str = ""
    role: RecipientRole = RecipientRole.STAFF
    channel_tokens: Dict[ChannelKind, List[str]] = Field(default_factory=dict)
    preferences: RecipientPreferences = Field(default_factory=RecipientPreferences)

    def accepts_category(self, category: str) -> bool:
        return self.preferences.event_category_enabled.get(category, True)

    def channel_enabled(self, channel: ChannelKind) -> bool:
        return self.preferences.channel_enabled.get(channel, True)

    def tokens_for(self, channel: ChannelKind) -> List[str]:
        """Non-blank tokens for a channel, de-duplicated in order."""
        tokens: List[str] = []
        for token in self.channel_tokens.get(channel, []):
            token = (token or "").strip()
            if token and token not in tokens:
                tokens.append(token)
        return tokens


class NotificationContent(BaseModel):
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)


class JobEvent(BaseModel):
    """
    One logical event from the event source.

    Recipients are given explicitly (``recipient_ids``), by role
    (``roles``), or both; the union is notified.
    """
    event_type: EventType
    entity_id: str = Field(min_length=1)
    recipient_ids: List[str] = Field(default_factory=list)
    roles: List[RecipientRole] = Field(default_factory=list)
    fields: Dict[str, Any] = Field(default_factory=dict)
    priority: NotificationPriority = NotificationPriority.NORMAL
    source: str = "job_events"
    channels: List[ChannelKind] = Field(
        default_factory=lambda: [ChannelKind.PUSH, ChannelKind.REALTIME]
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)


def generate_dedup_key(event_type: str, entity_id: str, recipient_id: str) -> str:
    """
    Hash of a notification identity.

    Two requests with the same (event type, entity, recipient) share a key.
    """
    key = f"{event_type}:{entity_id}:{recipient_id}"
    return hashlib.sha256(key.encode('utf-8')).hexdigest()[:32]


@dataclass
class NotificationRequest:
    """What the orchestrator asks the deduplication gate to admit."""
    event_type: EventType
    entity_id: str
    recipient_id: str
    content: NotificationContent
    source: str = "job_events"
    priority: NotificationPriority = NotificationPriority.NORMAL
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def dedup_key(self) -> str:
        return generate_dedup_key(self.event_type.value, self.entity_id, self.recipient_id)


@dataclass
class NotificationEvent:
    """Lifecycle record of one admitted notification."""
    id: str
    event_type: EventType
    entity_id: str
    recipient_id: str
    content: NotificationContent
    source: str
    priority: NotificationPriority
    metadata: Dict[str, Any]
    dedup_key: str
    created_at: float
    state: EventState = EventState.PENDING
    resolved_at: Optional[float] = None
    error: Optional[str] = None
    delivery_attempts: int = 0

    def age(self, now: float) -> float:
        return now - self.created_at


@dataclass
class ChannelTally:
    success: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {'success': self.success, 'failed': self.failed}


@dataclass
class NotificationResult:
    """Aggregate outcome of one orchestrator call. Logged, never stored."""
    success: bool = False
    event_id: Optional[str] = None
    recipient_count: int = 0
    channel_results: Dict[ChannelKind, ChannelTally] = field(
        default_factory=lambda: {kind: ChannelTally() for kind in ChannelKind}
    )
    duplicates_blocked: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'event_id': self.event_id,
            'recipient_count': self.recipient_count,
            'channel_results': {
                kind.value: tally.to_dict() for kind, tally in self.channel_results.items()
            },
            'duplicates_blocked': self.duplicates_blocked,
            'errors': list(self.errors),
        }
