import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from redis import asyncio as redis_asyncio

from core.config_loader import AppConfig
from notifier.channels import ChannelDispatcher, ChannelTransport, ChannelTransportFactory
from notifier.counter_store import CounterStore, RedisCounterStore, _sanitize_url
from notifier.deduplication import DeduplicationGate
from notifier.directory import CachedRecipientDirectory, InMemoryRecipientDirectory, RecipientDirectory
from notifier.event_store import EventStore, SqlEventStore
from notifier.models import ChannelKind
from notifier.orchestrator import NotificationOrchestrator
from notifier.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Application context container that holds all wired dependencies.

    Every stateful component is constructed here, once, and torn down in
    ``shutdown``. Nothing in the pipeline is a module-level singleton.
    """
    config: AppConfig
    redis: Any  # redis.asyncio.Redis, shared by counter store, realtime transport and queue
    rate_limiter: RateLimiter
    dedup_gate: DeduplicationGate
    dispatcher: ChannelDispatcher
    directory: RecipientDirectory
    orchestrator: NotificationOrchestrator
    counter_store: Optional[CounterStore] = None
    event_store: Optional[EventStore] = None

    @classmethod
    def build(
        cls,
        config: AppConfig,
        redis_client: Any = None,
        directory: Optional[RecipientDirectory] = None
    ) -> "AppContext":
        """Build an AppContext from config.

        Args:
            config: Loaded application configuration
            redis_client: Existing ``redis.asyncio.Redis`` (built from config when omitted)
            directory: Recipient directory (built from ``directory.recipients_file`` when omitted)

        Returns:
            Fully wired AppContext; call ``start()`` on a running loop
        """
        redis_client = redis_client if redis_client is not None else cls._build_redis(config)

        counter_store = None
        if config.rate_limits.persist_user_limits:
            counter_store = RedisCounterStore(redis_client)

        event_store = None
        if config.database.url and config.deduplication.persist_events:
            event_store = SqlEventStore.from_url(config.database.url)

        rate_limiter = RateLimiter(config.rate_limits, store=counter_store)
        dedup_gate = DeduplicationGate(config.deduplication, store=event_store)
        dispatcher = ChannelDispatcher(cls._build_transports(config, redis_client), config.channels)

        if directory is None:
            directory = cls._build_directory(config)

        orchestrator = NotificationOrchestrator(rate_limiter, dedup_gate, dispatcher, directory)

        return cls(
            config=config,
            redis=redis_client,
            rate_limiter=rate_limiter,
            dedup_gate=dedup_gate,
            dispatcher=dispatcher,
            directory=directory,
            orchestrator=orchestrator,
            counter_store=counter_store,
            event_store=event_store,
        )

    @staticmethod
    def _build_redis(config: AppConfig):
        logger.info(f"Using Redis at {_sanitize_url(config.redis_url)}")
        return redis_asyncio.Redis.from_url(
            config.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            # BLPOP holds the socket for up to block_timeout_seconds
            socket_timeout=config.queue.block_timeout_seconds + 5
        )

    @staticmethod
    def _build_transports(config: AppConfig, redis_client: Any) -> Dict[ChannelKind, ChannelTransport]:
        """Build a transport for every enabled channel."""
        transports: Dict[ChannelKind, ChannelTransport] = {}
        if config.dry_run:
            logger.info("Dry-run mode: notifications are logged, not sent")

        if config.channels.push.enabled:
            transports[ChannelKind.PUSH] = ChannelTransportFactory.create(
                ChannelKind.PUSH, dry_run=config.dry_run, config=config.channels.push
            )

        if config.channels.realtime.enabled:
            transports[ChannelKind.REALTIME] = ChannelTransportFactory.create(
                ChannelKind.REALTIME, dry_run=config.dry_run,
                redis_client=redis_client, config=config.channels.realtime
            )

        return transports

    @staticmethod
    def _build_directory(config: AppConfig) -> RecipientDirectory:
        directory_config = config.directory
        if directory_config.recipients_file:
            inner = InMemoryRecipientDirectory.from_file(directory_config.recipients_file)
        else:
            logger.warning("No recipients_file configured; recipient directory is empty")
            inner = InMemoryRecipientDirectory()
        return CachedRecipientDirectory(inner, ttl_seconds=directory_config.cache_ttl_seconds)

    def start(self) -> None:
        """Start the periodic sweeps. Must be called on a running event loop."""
        self.rate_limiter.start()
        self.dedup_gate.start()

    async def shutdown(self) -> None:
        """Stop sweeps, flush background writes and release connections."""
        await self.rate_limiter.shutdown()
        await self.dedup_gate.shutdown()
        await self.dispatcher.close()
        if self.event_store is not None:
            await self.event_store.close()
        if self.counter_store is not None:
            await self.counter_store.close()
        await self.redis.aclose()
        logger.info("Notification pipeline shut down")
