#!/usr/bin/env python3
"""
Notification Channels

Transports deliver one notification to one device token; the dispatcher
fans a notification out over a recipient's channels and tokens.

- ChannelTransport: interface every transport implements
- PushGatewayTransport: Expo-style HTTP push gateway (requests + tenacity)
- RealtimeBroadcastTransport: Redis pub/sub, one channel per token
- LoggingTransport: dry-run, logs and succeeds
- ChannelTransportFactory: registry of transport classes per channel kind
- ChannelDispatcher: skip rules, per-channel timeout, concurrent delivery

Usage:
    from notifier.channels import ChannelDispatcher, ChannelTransportFactory

    push = ChannelTransportFactory.create(ChannelKind.PUSH, config=config.channels.push)
    dispatcher = ChannelDispatcher({ChannelKind.PUSH: push}, config.channels)
    outcomes = await dispatcher.dispatch(recipient, [ChannelKind.PUSH], content)
"""

import asyncio
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import requests
from redis.exceptions import RedisError
from tenacity import (
    RetryCallState,
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
)

from notifier.config import ChannelsConfig, PushChannelConfig, RealtimeChannelConfig
from notifier.exceptions import GatewayRateLimitError, TransportError
from notifier.models import ChannelKind, NotificationContent, NotificationPriority, Recipient

logger = logging.getLogger(__name__)

# Longest we honour a gateway's Retry-After inside one delivery
MAX_GATEWAY_BACKOFF_SECONDS = 5


def _is_dry_run_mode() -> bool:
    """Check if transports should run in dry-run (log-only) mode."""
    return os.environ.get('NOTIFICATION_DRY_RUN', '').lower() in ('true', '1', 'yes')


def mask_token(token: str) -> str:
    """
    Mask a device token for safe logging.

    Shows only the last four characters, e.g. "***a1b2".
    """
    if not token or len(token) <= 8:
        return "***"
    return f"***{token[-4:]}"


def _is_retryable_error(exc: BaseException) -> bool:
    """
    Determine if a push gateway failure is worth another attempt.

    Retries timeouts, connection errors, 5xx and gateway throttling (429).
    Other 4xx responses are final.
    """
    if isinstance(exc, TransportError):
        return True

    if isinstance(exc, requests.Timeout):
        return True

    if isinstance(exc, requests.HTTPError):
        response = getattr(exc, 'response', None)
        if response is not None:
            return response.status_code >= 500
        return True

    if isinstance(exc, requests.RequestException):
        response = getattr(exc, 'response', None)
        if response is not None and 400 <= response.status_code < 500:
            return False
        return True

    return False


@dataclass
class DeliveryResult:
    """Outcome of one transport call for one token."""
    success: bool
    error: Optional[str] = None


@dataclass
class ChannelOutcome:
    """Outcome of one channel for one recipient."""
    channel: ChannelKind
    success: bool = False
    error: Optional[str] = None
    skipped: bool = False
    attempts: int = 0


class ChannelTransport(ABC):
    """
    Abstract base class for channel transports.

    ``send`` reports expected failures as a failed DeliveryResult; the
    dispatcher also treats anything it raises as a failure of that token.
    """

    @property
    @abstractmethod
    def channel_kind(self) -> ChannelKind:
        pass

    @abstractmethod
    async def send(self, token: str, title: str, body: str, data: Dict[str, Any]) -> DeliveryResult:
        """
        Deliver one notification to one device token.

        Args:
            token: Device or connection token for this channel
            title: Notification title
            body: Notification body
            data: Payload for the receiving app (deep link, job id, priority)

        Returns:
            DeliveryResult
        """
        pass

    async def close(self) -> None:
        return None


class PushGatewayTransport(ChannelTransport):
    """
    Mobile push through an Expo-style HTTP gateway.

    The gateway answers every message with a ticket; a ticket with status
    'error' (e.g. DeviceNotRegistered) is a failed delivery, not an
    exception. Calls run in a worker thread because requests is blocking.
    """

    def __init__(
        self,
        config: Optional[PushChannelConfig] = None,
        session: Optional[requests.Session] = None,
        retry_wait_seconds: float = 1.0
    ):
        self.config = config or PushChannelConfig()
        self.session = session or requests.Session()
        self.retry_wait_seconds = retry_wait_seconds

        self._post_with_retry = retry(
            stop=stop_after_attempt(self.config.max_retries),
            wait=self._wait_before_retry,
            retry=retry_if_exception(_is_retryable_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )(self._post)

    @property
    def channel_kind(self) -> ChannelKind:
        return ChannelKind.PUSH

    def _wait_before_retry(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception()
        if isinstance(exc, GatewayRateLimitError) and exc.retry_after:
            return min(float(exc.retry_after), MAX_GATEWAY_BACKOFF_SECONDS)
        return self.retry_wait_seconds

    def _build_message(self, token: str, title: str, body: str, data: Dict[str, Any]) -> Dict[str, Any]:
        priority = data.get('priority', NotificationPriority.NORMAL.value)
        urgent = priority == NotificationPriority.URGENT.value
        return {
            'to': token,
            'title': title,
            'body': body,
            'data': data,
            'priority': 'high' if priority in ('high', 'urgent') else 'default',
            'sound': 'urgent.wav' if urgent else 'default',
            'channelId': 'urgent' if urgent else 'default',
        }

    def _post(self, message: Dict[str, Any]) -> Dict[str, Any]:
        headers = {
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        }
        if self.config.access_token:
            headers['Authorization'] = f"Bearer {self.config.access_token}"

        response = self.session.post(
            self.config.gateway_url,
            json=message,
            headers=headers,
            timeout=self.config.request_timeout_seconds
        )

        if response.status_code == 429:
            retry_after = response.headers.get('Retry-After')
            raise GatewayRateLimitError(
                "Push gateway throttled the request",
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None
            )

        response.raise_for_status()
        return response.json()

    @staticmethod
    def _parse_ticket(response_body: Dict[str, Any]) -> DeliveryResult:
        errors = response_body.get('errors')
        if errors:
            first = errors[0] if isinstance(errors, list) else errors
            message = first.get('message') if isinstance(first, dict) else str(first)
            return DeliveryResult(success=False, error=f"Gateway error: {message}")

        ticket = response_body.get('data')
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else None
        if not isinstance(ticket, dict):
            return DeliveryResult(success=False, error="Gateway returned no ticket")

        if ticket.get('status') == 'ok':
            return DeliveryResult(success=True)

        details = ticket.get('details') or {}
        reason = details.get('error') or ticket.get('message') or 'unknown error'
        return DeliveryResult(success=False, error=f"Push rejected: {reason}")

    async def send(self, token: str, title: str, body: str, data: Dict[str, Any]) -> DeliveryResult:
        message = self._build_message(token, title, body, data)
        try:
            response_body = await asyncio.to_thread(self._post_with_retry, message)
        except (requests.RequestException, TransportError, ValueError) as e:
            logger.warning(f"Push to {mask_token(token)} failed: {e}")
            return DeliveryResult(success=False, error=str(e))

        result = self._parse_ticket(response_body)
        if result.success:
            logger.debug(f"Push delivered to {mask_token(token)}")
        else:
            logger.warning(f"Push to {mask_token(token)} failed: {result.error}")
        return result

    async def close(self) -> None:
        self.session.close()


class RealtimeBroadcastTransport(ChannelTransport):
    """
    In-app realtime notifications over Redis pub/sub.

    Each token names a subscriber channel: ``{channel_prefix}{token}``.
    Publishing with no subscriber is still a successful publish.
    """

    def __init__(self, redis_client, config: Optional[RealtimeChannelConfig] = None):
        """
        Args:
            redis_client: ``redis.asyncio.Redis`` instance
            config: Realtime channel settings
        """
        self._redis = redis_client
        self.config = config or RealtimeChannelConfig()

    @property
    def channel_kind(self) -> ChannelKind:
        return ChannelKind.REALTIME

    async def send(self, token: str, title: str, body: str, data: Dict[str, Any]) -> DeliveryResult:
        payload = json.dumps({
            'title': title,
            'body': body,
            'data': data,
            'sent_at': time.time(),
        }, default=str)

        try:
            receivers = await self._redis.publish(f"{self.config.channel_prefix}{token}", payload)
        except RedisError as e:
            logger.warning(f"Realtime publish to {mask_token(token)} failed: {e}")
            return DeliveryResult(success=False, error=f"Publish failed: {e}")

        logger.debug(f"Realtime published to {mask_token(token)} ({receivers} subscribers)")
        return DeliveryResult(success=True)


class LoggingTransport(ChannelTransport):
    """Dry-run transport: logs what would be sent and reports success."""

    def __init__(self, channel_kind: ChannelKind):
        self._channel_kind = ChannelKind(channel_kind)

    @property
    def channel_kind(self) -> ChannelKind:
        return self._channel_kind

    async def send(self, token: str, title: str, body: str, data: Dict[str, Any]) -> DeliveryResult:
        logger.info(f"[DRY RUN] {self._channel_kind.value} -> {mask_token(token)}: {title} | {body}")
        return DeliveryResult(success=True)


class ChannelTransportFactory:
    """
    Factory for creating channel transports.

    New transports are added with ``register_transport`` without touching
    the dispatcher.
    """

    _transports: Dict[ChannelKind, type] = {
        ChannelKind.PUSH: PushGatewayTransport,
        ChannelKind.REALTIME: RealtimeBroadcastTransport,
    }

    @classmethod
    def create(cls, channel_kind, dry_run: Optional[bool] = None, **kwargs) -> ChannelTransport:
        """
        Create a transport for a channel kind.

        Args:
            channel_kind: ChannelKind or its string value
            dry_run: Return a LoggingTransport (defaults to NOTIFICATION_DRY_RUN)
            **kwargs: Constructor arguments for the registered transport

        Raises:
            ValueError: If no transport is registered for the kind
        """
        try:
            kind = ChannelKind(channel_kind)
        except ValueError:
            raise ValueError(f"Unknown channel type: {channel_kind}. "
                             f"Available: {', '.join(k.value for k in cls._transports)}") from None

        transport_class = cls._transports.get(kind)
        if transport_class is None:
            raise ValueError(f"No transport registered for channel: {kind.value}. "
                             f"Available: {', '.join(k.value for k in cls._transports)}")

        if dry_run is None:
            dry_run = _is_dry_run_mode()
        if dry_run:
            return LoggingTransport(kind)

        return transport_class(**kwargs)

    @classmethod
    def register_transport(cls, channel_kind, transport_class: type) -> None:
        if not issubclass(transport_class, ChannelTransport):
            raise ValueError("Transport class must extend ChannelTransport")

        cls._transports[ChannelKind(channel_kind)] = transport_class
        logger.info(f"Registered transport for channel: {channel_kind}")

    @classmethod
    def list_transports(cls) -> List[str]:
        return [kind.value for kind in cls._transports]


class ChannelDispatcher:
    """
    Delivers content to a recipient over the requested channels.

    A channel is skipped when it is disabled in configuration, has no
    transport, is switched off by the recipient, or the recipient holds no
    usable token for it. Attempted channels run concurrently, each under
    its own timeout; one channel failing never stops the others. Inside a
    channel every token is tried and the channel succeeds if any token does.
    """

    def __init__(
        self,
        transports: Dict[ChannelKind, ChannelTransport],
        config: Optional[ChannelsConfig] = None
    ):
        self.transports = dict(transports)
        self.config = config or ChannelsConfig()

    def _channel_config(self, channel: ChannelKind):
        return self.config.push if channel == ChannelKind.PUSH else self.config.realtime

    def _skip_reason(self, recipient: Recipient, channel: ChannelKind) -> Optional[str]:
        if not self._channel_config(channel).enabled:
            return "channel disabled"
        if channel not in self.transports:
            return "no transport configured"
        if not recipient.channel_enabled(channel):
            return "disabled by recipient preference"
        if not recipient.tokens_for(channel):
            return "no valid token"
        return None

    async def dispatch(
        self,
        recipient: Recipient,
        channels: Iterable[ChannelKind],
        content: NotificationContent
    ) -> Dict[ChannelKind, ChannelOutcome]:
        """
        Deliver to every requested channel. Never raises for delivery failures.

        Returns:
            Outcome per requested channel; skipped channels are marked ``skipped``
        """
        outcomes: Dict[ChannelKind, ChannelOutcome] = {}
        pending = {}

        for channel in dict.fromkeys(ChannelKind(c) for c in channels):
            reason = self._skip_reason(recipient, channel)
            if reason:
                logger.debug(f"Skipping {channel.value} for {recipient.id}: {reason}")
                outcomes[channel] = ChannelOutcome(channel=channel, skipped=True, error=reason)
                continue
            pending[channel] = self._deliver(channel, recipient.tokens_for(channel), content)

        if pending:
            results = await asyncio.gather(*pending.values())
            outcomes.update(zip(pending.keys(), results))

        return outcomes

    async def _deliver(self, channel: ChannelKind, tokens: List[str], content: NotificationContent) -> ChannelOutcome:
        timeout = self._channel_config(channel).timeout_seconds
        try:
            return await asyncio.wait_for(self._send_to_tokens(channel, tokens, content), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{channel.value} delivery timed out after {timeout}s")
            return ChannelOutcome(
                channel=channel, success=False, error=f"Timed out after {timeout}s", attempts=len(tokens)
            )
        except Exception as e:
            logger.error(f"{channel.value} delivery failed unexpectedly: {e}", exc_info=True)
            return ChannelOutcome(channel=channel, success=False, error=str(e), attempts=len(tokens))

    async def _send_to_tokens(self, channel: ChannelKind, tokens: List[str], content: NotificationContent) -> ChannelOutcome:
        transport = self.transports[channel]
        results = await asyncio.gather(
            *(self._send_one(transport, token, content) for token in tokens)
        )

        if any(result.success for result in results):
            return ChannelOutcome(channel=channel, success=True, attempts=len(tokens))

        errors = [
            f"{mask_token(token)}: {result.error or 'failed'}"
            for token, result in zip(tokens, results)
        ]
        return ChannelOutcome(channel=channel, success=False, error="; ".join(errors), attempts=len(tokens))

    @staticmethod
    async def _send_one(transport: ChannelTransport, token: str, content: NotificationContent) -> DeliveryResult:
        try:
            return await transport.send(token, content.title, content.body, dict(content.data))
        except Exception as e:
            logger.warning(f"{transport.channel_kind.value} transport raised for {mask_token(token)}: {e}")
            return DeliveryResult(success=False, error=str(e))

    async def close(self) -> None:
        for transport in self.transports.values():
            await transport.close()
