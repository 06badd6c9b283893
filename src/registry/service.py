"""Registry service - registers created events and sends confirmations.

This service:
1. Subscribes to events.created
2. Registers each original event id once in PostgreSQL (or memory in dev mode)
3. Publishes events.processed for every new registration

Consumer Group: event-registry-group
"""

from __future__ import annotations

import logging
import os

from src.contracts import streams
from src.core.message_bus import RedisStreamBus
from src.core.settings import Settings, load_settings
from src.registry.consumer import RegistryConsumer
from src.registry.registry_store import InMemoryRegistryStore, PostgresRegistryStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_store(settings: Settings):
    """Create the appropriate store based on configuration."""
    if settings.postgres_dsn:
        logger.info("Using PostgreSQL registry store")
        store = PostgresRegistryStore(settings.postgres_dsn)
        store.ensure_schema()
        return store
    logger.info("Using in-memory registry store (dev mode)")
    return InMemoryRegistryStore()


def main() -> None:
    """Run the registry service."""
    s = load_settings()

    logger.info("Starting registry service...")
    logger.info(f"Redis URL: {s.redis_url}")

    bus = RedisStreamBus(
        s.redis_url,
        block_ms=s.block_ms,
        read_count=s.read_count,
        max_attempts=s.max_attempts,
        retry_backoff_seconds=s.retry_backoff_seconds,
    )
    consumer = RegistryConsumer(create_store(s), bus, registry_service_name=s.registry_service_name)

    logger.info(f"Subscribing to stream: {streams.EVENTS_CREATED}")
    try:
        bus.run_worker(
            stream=streams.EVENTS_CREATED,
            group=streams.REGISTRY_GROUP,
            consumer=os.getenv("HOSTNAME", "event-registry-1"),
            handler=consumer.handle,
        )
    except KeyboardInterrupt:
        logger.info("Shutting down registry service...")


if __name__ == "__main__":
    main()
