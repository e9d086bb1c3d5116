#!/usr/bin/env python3
"""
Queue Worker for the Notification Pipeline

Pops JSON job events from a Redis list and sends each through the
orchestrator. Event sources enqueue with ``enqueue_job_event``.

The worker is a single asyncio process so the rate limiter's in-memory
counters and the deduplication index live for the whole run.

Usage:
    uv run python -m notifier.worker
    uv run python -m notifier.worker --burst
    uv run python -m notifier.worker --config config.yaml --verbose
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional, Union

from pydantic import ValidationError

from core.app_context import AppContext
from core.config_loader import AppConfig, load_config
from notifier.models import JobEvent, NotificationResult
from notifier.orchestrator import NotificationOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_QUEUE = "notifications:job_events"


async def enqueue_job_event(redis_client, event: JobEvent, queue: str = DEFAULT_QUEUE) -> int:
    """Push a job event onto the worker queue. Returns the queue length."""
    return await redis_client.rpush(queue, event.model_dump_json())


def parse_job_event(raw: Union[str, bytes]) -> JobEvent:
    if isinstance(raw, bytes):
        raw = raw.decode('utf-8')
    return JobEvent.model_validate_json(raw)


class NotificationWorker:

    def __init__(
        self,
        orchestrator: NotificationOrchestrator,
        redis_client,
        queue: str = DEFAULT_QUEUE,
        block_timeout_seconds: int = 5
    ):
        self.orchestrator = orchestrator
        self._redis = redis_client
        self.queue = queue
        self.block_timeout_seconds = block_timeout_seconds

    async def process_message(self, raw: Union[str, bytes]) -> Optional[NotificationResult]:
        """Send one queued event. Malformed messages are logged and dropped."""
        try:
            event = parse_job_event(raw)
        except (ValidationError, ValueError) as e:
            logger.error(f"Skipping malformed job event: {e}")
            return None

        result = await self.orchestrator.send(event)
        log = logger.info if result.success else logger.warning
        log(f"Processed {event.event_type.value} {event.entity_id}: {result.to_dict()}")
        return result

    async def _next_message(self, burst: bool) -> Optional[str]:
        if burst:
            return await self._redis.lpop(self.queue)

        item = await self._redis.blpop([self.queue], timeout=self.block_timeout_seconds)
        if item is None:
            return None
        _, raw = item
        return raw

    async def run(self, burst: bool = False, stop_event: Optional[asyncio.Event] = None) -> int:
        """
        Process messages until stopped, or until the queue is empty in burst mode.

        Returns:
            Number of messages taken off the queue
        """
        processed = 0
        while stop_event is None or not stop_event.is_set():
            raw = await self._next_message(burst)
            if raw is None:
                if burst:
                    break
                continue

            await self.process_message(raw)
            processed += 1

        return processed


async def run_worker(config: AppConfig, queue: Optional[str] = None, burst: bool = False) -> int:
    context = AppContext.build(config)
    queue = queue or config.queue.name

    try:
        await context.redis.ping()
        logger.info("Connected to Redis")

        context.start()

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Not supported on this platform; Ctrl+C still interrupts
                pass

        worker = NotificationWorker(
            context.orchestrator,
            context.redis,
            queue=queue,
            block_timeout_seconds=config.queue.block_timeout_seconds
        )

        logger.info(f"Worker listening on '{queue}' (burst={burst})")
        processed = await worker.run(burst=burst, stop_event=stop_event)
        logger.info(f"Worker stopped after {processed} messages")
        return processed
    finally:
        await context.shutdown()


def main():
    parser = argparse.ArgumentParser(description='Staff notification worker')
    parser.add_argument('--config', default='config.yaml', help='Path to config file')
    parser.add_argument('--queue', default=None, help='Redis list to consume (overrides config)')
    parser.add_argument('--burst', action='store_true', help='Process all and exit')
    parser.add_argument('--verbose', action='store_true')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = load_config(args.config)

    try:
        asyncio.run(run_worker(config, queue=args.queue, burst=args.burst))
    except KeyboardInterrupt:
        logger.info("Worker stopped")
    except Exception as e:
        logger.error(f"Error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
