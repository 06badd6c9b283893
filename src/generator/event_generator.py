"""Event generation - creates events, stores them, then publishes them.

Input: scheduled ticks and manual requests
Output: events.created messages

Storage commit and bus publish are two separate writes. A failed publish is
logged and leaves the stored event unprocessed; it is never rolled back.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from src.contracts.streams import EVENTS_CREATED
from src.core.message_bus import EventPublisher
from src.core.models import EventMessage, iso, utc_now

from .event_store import Event, EventStore


logger = logging.getLogger(__name__)

SYSTEM_EVENT = "SYSTEM_EVENT"
MANUAL_EVENT = "MANUAL_EVENT"


class EventGenerator:
    """Creates one event per scheduled tick or manual call."""

    def __init__(
        self,
        store: EventStore,
        publisher: EventPublisher,
        *,
        service_name: str,
        generation_enabled: bool = True,
        clock: Callable = utc_now,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self.service_name = service_name
        self.generation_enabled = generation_enabled
        self._clock = clock

    def tick(self) -> Optional[Event]:
        """Scheduled generation. Never raises; a failed cycle only aborts itself."""
        if not self.generation_enabled:
            logger.debug("Event generation is disabled")
            return None

        try:
            logger.info("Starting event generation...")
            event = self._create(
                event_type=SYSTEM_EVENT,
                payload=f"Auto-generated event at {iso(self._clock())}",
            )
            logger.info(f"Event generation completed. Event ID: {event.id}")
            return event
        except Exception:
            logger.exception("Error generating event")
            return None

    def generate(self, event_type: Optional[str] = None, payload: Optional[str] = None) -> Event:
        """Manual generation with optional overrides.

        Not gated by `generation_enabled`. A missing or blank event type
        becomes MANUAL_EVENT. Persistence errors propagate.
        """
        try:
            event = self._create(
                event_type=event_type if event_type and event_type.strip() else MANUAL_EVENT,
                payload=payload if payload is not None else f"Manually generated at {iso(self._clock())}",
            )
        except Exception:
            logger.exception("Error in manual event generation")
            raise
        logger.info(f"Manual event generated: {event.id}")
        return event

    def _create(self, *, event_type: str, payload: str) -> Event:
        saved = self._store.save(
            Event(
                event_type=event_type,
                service_name=self.service_name,
                payload=payload,
                created_at=self._clock(),
                is_processed=False,
            )
        )
        logger.info(
            f"Event created in database. ID: {saved.id}, Type: {saved.event_type}, Service: {saved.service_name}"
        )

        message = EventMessage(
            event_id=saved.id,
            event_type=saved.event_type,
            service_name=saved.service_name,
            payload=saved.payload,
            created_at=saved.created_at,
        )
        self._publisher.publish_async(EVENTS_CREATED, message.to_wire(), key=saved.id)
        return saved
