"""Registry consumer - registers created events exactly once and confirms them.

Input: events.created messages
Output: events.processed messages (only from the delivery that inserted the row)

State machine per delivery:
    received -> duplicate (ack, nothing published)
    received -> registered -> confirmed
"""

from __future__ import annotations

import logging
from typing import Callable

from src.contracts.streams import EVENTS_PROCESSED
from src.core.ids import new_registration_id
from src.core.message_bus import MessageBus
from src.core.models import EventMessage, EventResponse, Outcome, utc_now

from .registry_store import RegisteredEvent, RegistryStore


logger = logging.getLogger(__name__)


class RegistryConsumer:
    def __init__(
        self,
        store: RegistryStore,
        bus: MessageBus,
        *,
        registry_service_name: str = "event-registry",
        clock: Callable = utc_now,
    ) -> None:
        self._store = store
        self._bus = bus
        self.registry_service_name = registry_service_name
        self._clock = clock

    def handle(self, wire: dict) -> Outcome:
        try:
            message = EventMessage.from_wire(wire)
        except ValueError as e:
            logger.warning("skip_invalid_event_message", extra={"error": str(e)})
            return Outcome.MALFORMED

        event_id = message.event_id
        logger.info(
            f"Received event: id={event_id}, type={message.event_type}, service={message.service_name}"
        )

        try:
            if self._store.get_by_original_id(event_id) is not None:
                logger.warning(f"Event already registered: {event_id}")
                return Outcome.DUPLICATE

            now = self._clock()
            stored, created = self._store.insert_if_absent(
                RegisteredEvent(
                    id=new_registration_id(),
                    original_event_id=event_id,
                    event_type=message.event_type,
                    service_name=message.service_name,
                    payload=message.payload,
                    created_at=message.created_at,
                    registered_at=now,
                    # Registration is the only processing step.
                    processed_at=now,
                )
            )
        except Exception as e:
            logger.error("registration_storage_failed", extra={"event_id": event_id, "error": str(e)})
            return Outcome.STORAGE_FAILED

        if not created:
            logger.warning(f"Event already registered by a concurrent delivery: {event_id}")
            return Outcome.DUPLICATE

        logger.info(f"Event saved with registered id: {stored.id}")
        return self._confirm(stored)

    def _confirm(self, registered: RegisteredEvent) -> Outcome:
        response = EventResponse(
            original_event_id=registered.original_event_id,
            registered_event_id=registered.id,
            processed_at=registered.processed_at,
            registry_service_name=self.registry_service_name,
        )
        try:
            result = self._bus.publish(EVENTS_PROCESSED, response.to_wire())
        except Exception as e:
            # Registered but unconfirmed: a redelivery is a duplicate and will not confirm.
            logger.error(
                "confirmation_publish_failed",
                extra={"event_id": registered.original_event_id, "error": str(e)},
            )
            return Outcome.PUBLISH_FAILED

        logger.info(
            f"Confirmation sent for event: {registered.original_event_id} "
            f"(channel={result.channel}, message_id={result.message_id})"
        )
        return Outcome.REGISTERED
