from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from src.contracts.validation import (
    normalize_uuid,
    parse_iso8601,
    validate_event_message_dict,
    validate_event_response_dict,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def iso(dt: datetime) -> str:
    return ensure_tz(dt).isoformat()


class ResponseStatus(str, Enum):
    PROCESSED = "PROCESSED"


@dataclass(frozen=True)
class EventMessage:
    """Wire message published on `events.created`."""

    event_id: str
    event_type: str
    service_name: str
    payload: str
    created_at: datetime

    def to_wire(self) -> Dict[str, Any]:
        return {
            "eventId": self.event_id,
            "eventType": self.event_type,
            "serviceName": self.service_name,
            "payload": self.payload,
            "createdAt": iso(self.created_at),
        }

    @classmethod
    def from_wire(cls, d: Dict[str, Any]) -> "EventMessage":
        validate_event_message_dict(d)
        return cls(
            event_id=normalize_uuid(d["eventId"]),
            event_type=d["eventType"],
            service_name=d["serviceName"],
            payload=d["payload"],
            created_at=parse_iso8601(d["createdAt"]),
        )


@dataclass(frozen=True)
class EventResponse:
    """Wire message published on `events.processed`."""

    original_event_id: str
    registered_event_id: str
    processed_at: datetime
    registry_service_name: str
    status: ResponseStatus = ResponseStatus.PROCESSED

    def to_wire(self) -> Dict[str, Any]:
        return {
            "originalEventId": self.original_event_id,
            "registeredEventId": self.registered_event_id,
            "status": self.status.value,
            "processedAt": iso(self.processed_at),
            "registryServiceName": self.registry_service_name,
        }

    @classmethod
    def from_wire(cls, d: Dict[str, Any]) -> "EventResponse":
        validate_event_response_dict(d)
        return cls(
            original_event_id=normalize_uuid(d["originalEventId"]),
            registered_event_id=normalize_uuid(d["registeredEventId"]),
            processed_at=parse_iso8601(d["processedAt"]),
            registry_service_name=d["registryServiceName"],
            status=ResponseStatus(d["status"]),
        )


class Outcome(str, Enum):
    """What a message handler did with one delivery.

    Handlers return an Outcome instead of raising, so no exception crosses the
    message-handling boundary. The bus worker uses it to decide between ack,
    requeue and dead-lettering.
    """

    # registry consumer
    REGISTERED = "REGISTERED"
    DUPLICATE = "DUPLICATE"
    PUBLISH_FAILED = "PUBLISH_FAILED"
    # confirmation handler
    MARKED_PROCESSED = "MARKED_PROCESSED"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    UNKNOWN_EVENT = "UNKNOWN_EVENT"
    # shared
    MALFORMED = "MALFORMED"
    STORAGE_FAILED = "STORAGE_FAILED"

    @property
    def retryable(self) -> bool:
        return self is Outcome.STORAGE_FAILED

    @property
    def dead_letter(self) -> bool:
        return self in (Outcome.MALFORMED, Outcome.PUBLISH_FAILED)
