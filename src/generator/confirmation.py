"""Confirmation handling - applies registry confirmations to generated events.

Input: events.processed messages
Effect: Event.is_processed False -> True, at most once per event
"""

from __future__ import annotations

import logging

from src.core.models import EventResponse, Outcome

from .event_store import EventStore


logger = logging.getLogger(__name__)


class ConfirmationHandler:
    def __init__(self, store: EventStore) -> None:
        self._store = store

    def handle(self, wire: dict) -> Outcome:
        try:
            response = EventResponse.from_wire(wire)
        except ValueError as e:
            logger.warning("skip_invalid_confirmation", extra={"error": str(e)})
            return Outcome.MALFORMED

        event_id = response.original_event_id
        logger.info(
            f"Received confirmation: original={event_id}, "
            f"registered={response.registered_event_id}, status={response.status.value}"
        )

        try:
            event = self._store.get(event_id)
            if event is None:
                logger.error(f"Event not found for confirmation: {event_id}")
                return Outcome.UNKNOWN_EVENT

            if event.is_processed:
                logger.warning(f"Event already marked as processed: {event_id}")
                return Outcome.ALREADY_PROCESSED

            if not self._store.mark_processed(event_id, response.processed_at):
                # Another delivery of the same confirmation got there first.
                logger.warning(f"Event already marked as processed: {event_id}")
                return Outcome.ALREADY_PROCESSED
        except Exception as e:
            logger.error("confirmation_storage_failed", extra={"event_id": event_id, "error": str(e)})
            return Outcome.STORAGE_FAILED

        logger.info(f"Event marked as processed: {event_id}, processed_at={response.processed_at.isoformat()}")
        return Outcome.MARKED_PROCESSED

    def processed_count(self) -> int:
        return self._store.count_by_processed(True)

    def unprocessed_count(self) -> int:
        return self._store.count_by_processed(False)
