"""Generator service - creates events and applies registry confirmations.

This service:
1. Generates an event every `generation.interval` (when enabled) and on demand via HTTP
2. Stores events in PostgreSQL (or memory in dev mode) and publishes events.created
3. Subscribes to events.processed and marks the originating events processed

Consumer Group: event-generator-confirmation-group
"""

from __future__ import annotations

import logging
import os
import threading

import uvicorn

from src.api.main import create_app
from src.contracts import streams
from src.core.message_bus import EventPublisher, RedisStreamBus
from src.core.scheduler import PeriodicTimer
from src.core.settings import Settings, load_settings
from src.generator.confirmation import ConfirmationHandler
from src.generator.event_generator import EventGenerator
from src.generator.event_store import InMemoryEventStore, PostgresEventStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_store(settings: Settings):
    """Create the appropriate store based on configuration."""
    if settings.postgres_dsn:
        logger.info("Using PostgreSQL event store")
        store = PostgresEventStore(settings.postgres_dsn)
        store.ensure_schema()
        return store
    logger.info("Using in-memory event store (dev mode)")
    return InMemoryEventStore()


def main() -> None:
    """Run the generator service."""
    s = load_settings()

    logger.info("Starting generator service...")
    logger.info(f"Redis URL: {s.redis_url}")

    bus = RedisStreamBus(
        s.redis_url,
        block_ms=s.block_ms,
        read_count=s.read_count,
        max_attempts=s.max_attempts,
        retry_backoff_seconds=s.retry_backoff_seconds,
    )
    store = create_store(s)
    publisher = EventPublisher(bus)
    generator = EventGenerator(
        store,
        publisher,
        service_name=s.service_name,
        generation_enabled=s.generation_enabled,
    )
    confirmations = ConfirmationHandler(store)

    stop = threading.Event()
    bus.subscribe(streams.EVENTS_PROCESSED, streams.CONFIRMATION_GROUP, confirmations.handle)
    bus.start_workers(consumer=os.getenv("HOSTNAME", "event-generator-1"), stop_event=stop)

    timer = PeriodicTimer(s.generation_interval_seconds, generator.tick, name="event-generation")
    timer.start()
    logger.info(
        f"Generation {'enabled' if s.generation_enabled else 'disabled'}, "
        f"interval={s.generation_interval_seconds}s"
    )

    try:
        uvicorn.run(create_app(generator, store), host=s.api_host, port=s.api_port)
    finally:
        logger.info("Shutting down generator service...")
        timer.stop()
        stop.set()
        publisher.close()


if __name__ == "__main__":
    main()
