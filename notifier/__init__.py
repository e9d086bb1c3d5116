"""
Notifier Module

Delivery pipeline for staff job notifications: rate limiting,
deduplication, content generation and multi-channel dispatch.

Usage:
    from core.app_context import AppContext
    from core.config_loader import load_config

    context = AppContext.build(load_config())
    context.start()
    result = await context.orchestrator.send_job_assignment(
        job_id='job-42', staff_id='staff-1', fields={'title': 'Pool Cleaning'}
    )
    await context.shutdown()
"""

from notifier.models import (
    EventType,
    NotificationPriority,
    ChannelKind,
    RecipientRole,
    EventState,
    Recipient,
    RecipientPreferences,
    NotificationContent,
    JobEvent,
    NotificationRequest,
    NotificationEvent,
    NotificationResult,
    generate_dedup_key,
)

from notifier.rate_limiter import RateLimiter, RateLimitDecision

from notifier.deduplication import DeduplicationGate, DedupDecision

from notifier.content import build_content

from notifier.channels import (
    ChannelTransport,
    PushGatewayTransport,
    RealtimeBroadcastTransport,
    LoggingTransport,
    ChannelTransportFactory,
    ChannelDispatcher,
    ChannelOutcome,
    DeliveryResult,
)

from notifier.directory import (
    RecipientDirectory,
    InMemoryRecipientDirectory,
    CachedRecipientDirectory,
    recipient_from_document,
)

from notifier.orchestrator import NotificationOrchestrator

__all__ = [
    # Models
    'EventType',
    'NotificationPriority',
    'ChannelKind',
    'RecipientRole',
    'EventState',
    'Recipient',
    'RecipientPreferences',
    'NotificationContent',
    'JobEvent',
    'NotificationRequest',
    'NotificationEvent',
    'NotificationResult',
    'generate_dedup_key',
    # Pipeline
    'RateLimiter',
    'RateLimitDecision',
    'DeduplicationGate',
    'DedupDecision',
    'build_content',
    # Channels
    'ChannelTransport',
    'PushGatewayTransport',
    'RealtimeBroadcastTransport',
    'LoggingTransport',
    'ChannelTransportFactory',
    'ChannelDispatcher',
    'ChannelOutcome',
    'DeliveryResult',
    # Directory
    'RecipientDirectory',
    'InMemoryRecipientDirectory',
    'CachedRecipientDirectory',
    'recipient_from_document',
    # Orchestration
    'NotificationOrchestrator',
]
