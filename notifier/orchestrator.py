#!/usr/bin/env python3
"""
Notification Orchestrator

Runs one job event through the pipeline for every recipient:

1. Resolve the recipient (directory, cached per call)
2. Rate limit (cheapest rejection first)
3. Deduplicate
4. Dispatch the content over the requested channels
5. Mark the event sent or failed
6. Release the rate limiter's in-flight slot

Recipients are handled one after another and independently: a failure for
one never rolls back or stops another. Quota rejections, duplicates and
channel failures are reported in the NotificationResult; ``send`` never
raises for them, nor for unexpected errors.

Usage:
    from notifier.orchestrator import NotificationOrchestrator

    orchestrator = NotificationOrchestrator(rate_limiter, dedup_gate, dispatcher, directory)
    result = await orchestrator.send_job_assignment(
        job_id="job-42",
        staff_id="staff-1",
        fields={"title": "Pool Cleaning", "job_type": "pool_maintenance", "property_name": "Villa Mango"}
    )
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union

from notifier.channels import ChannelDispatcher
from notifier.content import build_content
from notifier.deduplication import DeduplicationGate
from notifier.directory import ADMIN_ROLES, RecipientDirectory
from notifier.models import (
    ChannelKind,
    EventType,
    JobEvent,
    NotificationContent,
    NotificationPriority,
    NotificationRequest,
    NotificationResult,
    Recipient,
)
from notifier.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class _CallProgress:
    """Counters for one ``send`` call that do not belong in the result."""
    delivered: int = 0
    failures: int = 0
    first_created: Optional[str] = None
    first_duplicate: Optional[str] = None


class NotificationOrchestrator:
    """
    Coordinates the rate limiter, deduplication gate, dispatcher and
    directory. Holds no state of its own between calls.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        dedup_gate: DeduplicationGate,
        dispatcher: ChannelDispatcher,
        directory: RecipientDirectory
    ):
        self.rate_limiter = rate_limiter
        self.dedup_gate = dedup_gate
        self.dispatcher = dispatcher
        self.directory = directory

    async def send(self, event: JobEvent) -> NotificationResult:
        """
        Notify every recipient of a job event.

        Returns:
            NotificationResult; ``success`` is True when at least one
            recipient got the notification or nothing failed (duplicates and
            opted-out recipients are not failures)
        """
        result = NotificationResult()
        progress = _CallProgress()

        try:
            content = build_content(event.event_type, event.entity_id, event.fields)
            content.data['priority'] = event.priority.value

            recipients = await self._resolve_recipients(event)
            if not recipients:
                result.errors.append(f"No recipients for {event.event_type.value} {event.entity_id}")
                progress.failures += 1

            for recipient_id, recipient in recipients.items():
                await self._notify_recipient(event, recipient_id, recipient, content, result, progress)
        except Exception as e:
            logger.error(f"Unexpected error sending {event.event_type.value} {event.entity_id}: {e}", exc_info=True)
            result.errors.append(f"Unexpected error: {e}")
            progress.failures += 1

        result.event_id = progress.first_created or progress.first_duplicate
        result.success = progress.delivered > 0 or progress.failures == 0

        logger.info(
            f"{event.event_type.value} {event.entity_id}: {progress.delivered} delivered, "
            f"{result.duplicates_blocked} duplicates blocked, {len(result.errors)} errors"
        )
        return result

    async def _resolve_recipients(self, event: JobEvent) -> Dict[str, Optional[Recipient]]:
        """
        Union of explicit ids and role members, in order, without repeats.

        Role lookups return full profiles, which are reused for this call;
        explicit ids are looked up lazily.
        """
        recipients: Dict[str, Optional[Recipient]] = {}
        for recipient_id in event.recipient_ids:
            recipient_id = recipient_id.strip()
            if recipient_id:
                recipients.setdefault(recipient_id, None)

        if event.roles:
            for recipient in await self.directory.get_recipients_by_role(event.roles):
                recipients[recipient.id] = recipient

        return recipients

    async def _notify_recipient(
        self,
        event: JobEvent,
        recipient_id: str,
        recipient: Optional[Recipient],
        content: NotificationContent,
        result: NotificationResult,
        progress: _CallProgress
    ) -> None:
        # 1. Resolve
        if recipient is None:
            try:
                recipient = await self.directory.get_recipient(recipient_id)
            except Exception as e:
                logger.error(f"Recipient lookup failed for {recipient_id}: {e}", exc_info=True)
                result.errors.append(f"Recipient lookup failed for {recipient_id}: {e}")
                progress.failures += 1
                return

        if recipient is None:
            result.errors.append(f"Recipient not found: {recipient_id}")
            progress.failures += 1
            return

        if not recipient.accepts_category(event.event_type.category):
            logger.debug(f"{recipient_id} has disabled {event.event_type.category}, skipping")
            return

        # 2. Rate limit
        decision = await self.rate_limiter.check(recipient.id, event.event_type, event.priority)
        if not decision.allowed:
            result.errors.append(f"Rate limited for {recipient.id}: {decision.reason}")
            progress.failures += 1
            return

        event_id = None
        try:
            # 3. Deduplicate
            dedup = await self.dedup_gate.should_allow(self._build_request(event, recipient.id, content))
            if not dedup.allowed:
                # A duplicate is never sent, so it does not spend quota
                self.rate_limiter.refund(recipient.id, event.event_type, decision)
                result.duplicates_blocked += 1
                if progress.first_duplicate is None:
                    progress.first_duplicate = dedup.event.id
                return

            event_id = dedup.event.id
            if progress.first_created is None:
                progress.first_created = event_id
            result.recipient_count += 1

            # 4. Dispatch
            outcomes = await self.dispatcher.dispatch(recipient, event.channels, content)

            attempted = [outcome for outcome in outcomes.values() if not outcome.skipped]
            for outcome in attempted:
                tally = result.channel_results[outcome.channel]
                if outcome.success:
                    tally.success += 1
                else:
                    tally.failed += 1
                    result.errors.append(f"{outcome.channel.value} failed for {recipient.id}: {outcome.error}")

            # 5. Record the outcome
            if any(outcome.success for outcome in attempted):
                await self.dedup_gate.mark_sent(event_id)
                progress.delivered += 1
            elif attempted:
                reasons = "; ".join(f"{outcome.channel.value}: {outcome.error}" for outcome in attempted)
                await self.dedup_gate.mark_failed(event_id, f"All channels failed: {reasons}")
                progress.failures += 1
            else:
                await self.dedup_gate.mark_failed(event_id, "No deliverable channels")
                result.errors.append(f"No deliverable channels for {recipient.id}")
                progress.failures += 1

        except Exception as e:
            logger.error(f"Error notifying {recipient.id}: {e}", exc_info=True)
            result.errors.append(f"Error notifying {recipient.id}: {e}")
            progress.failures += 1
            if event_id is not None:
                await self.dedup_gate.mark_failed(event_id, f"Dispatch error: {e}")
        finally:
            # 6. Every allowed check releases its in-flight slot
            self.rate_limiter.notification_complete()

    @staticmethod
    def _build_request(event: JobEvent, recipient_id: str, content: NotificationContent) -> NotificationRequest:
        metadata = dict(event.metadata)
        if content.data.get('status_change'):
            metadata['status_change'] = content.data['status_change']
        if event.fields.get('job_type'):
            metadata['job_type'] = event.fields['job_type']

        return NotificationRequest(
            event_type=event.event_type,
            entity_id=event.entity_id,
            recipient_id=recipient_id,
            content=content,
            source=event.source,
            priority=event.priority,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Entry points for event sources
    # ------------------------------------------------------------------

    async def send_job_event(
        self,
        event_type: Union[EventType, str],
        entity_id: str,
        recipient_ids: Iterable[str],
        fields: Optional[Dict[str, Any]] = None,
        priority: Union[NotificationPriority, str] = NotificationPriority.NORMAL,
        channels: Optional[List[ChannelKind]] = None,
        source: str = "job_events",
        metadata: Optional[Dict[str, Any]] = None
    ) -> NotificationResult:
        """Build a JobEvent from its parts and send it."""
        event = JobEvent(
            event_type=EventType.coerce(event_type),
            entity_id=entity_id,
            recipient_ids=list(recipient_ids),
            fields=fields or {},
            priority=NotificationPriority(priority),
            source=source,
            metadata=metadata or {},
            **({'channels': channels} if channels is not None else {})
        )
        return await self.send(event)

    async def send_job_assignment(
        self,
        job_id: str,
        staff_id: str,
        fields: Optional[Dict[str, Any]] = None,
        priority: Union[NotificationPriority, str] = NotificationPriority.NORMAL
    ) -> NotificationResult:
        """Tell the assigned staff member about a new job."""
        fields = dict(fields or {})
        fields.setdefault('staff_id', staff_id)
        return await self.send_job_event(
            EventType.JOB_ASSIGNED, job_id, [staff_id], fields=fields, priority=priority
        )

    async def send_status_update(
        self,
        job_id: str,
        status: str,
        fields: Optional[Dict[str, Any]] = None,
        previous_status: Optional[str] = None,
        priority: Union[NotificationPriority, str] = NotificationPriority.NORMAL
    ) -> NotificationResult:
        """Tell every admin and manager that a job changed status."""
        fields = dict(fields or {})
        fields['status'] = status
        if previous_status:
            fields['previous_status'] = previous_status

        event = JobEvent(
            event_type=EventType.JOB_STATUS_UPDATED,
            entity_id=job_id,
            roles=list(ADMIN_ROLES),
            fields=fields,
            priority=NotificationPriority(priority),
        )
        return await self.send(event)

    def get_stats(self) -> Dict[str, Any]:
        """Deduplication counters alongside the rate limiter's global usage."""
        return {
            'deduplication': self.dedup_gate.get_stats(),
            'rate_limits': self.rate_limiter.get_global_stats(),
        }
