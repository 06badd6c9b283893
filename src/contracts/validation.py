from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

from . import streams


EVENT_MESSAGE_KEYS = {
    "eventId",
    "eventType",
    "serviceName",
    "payload",
    "createdAt",
}

EVENT_RESPONSE_KEYS = {
    "originalEventId",
    "registeredEventId",
    "status",
    "processedAt",
    "registryServiceName",
}

RESPONSE_STATUSES = {"PROCESSED"}


def _require_exact_keys(obj: dict[str, Any], *, required: set[str], optional: set[str] | None = None) -> None:
    optional = optional or set()
    keys = set(obj.keys())
    missing = required - keys
    extra = keys - required - optional
    if missing:
        raise ValueError(f"missing keys: {sorted(missing)}")
    if extra:
        raise ValueError(f"extra keys not allowed: {sorted(extra)}")


def _require_str(d: dict[str, Any], k: str) -> str:
    v = d.get(k)
    if not isinstance(v, str) or not v.strip():
        raise ValueError(f"{k} must be non-empty string")
    return v


def _require_text(d: dict[str, Any], k: str) -> str:
    # payload is opaque: empty is allowed, null is not.
    v = d.get(k)
    if not isinstance(v, str):
        raise ValueError(f"{k} must be string")
    return v


def normalize_uuid(s: str) -> str:
    return str(uuid.UUID(s))


def _require_uuid(d: dict[str, Any], k: str) -> str:
    v = _require_str(d, k)
    try:
        return normalize_uuid(v)
    except ValueError as e:
        raise ValueError(f"{k} must be a UUID string: {v}") from e


def parse_iso8601(s: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are read as UTC."""
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"invalid ISO8601 timestamp: {s}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def validate_event_message_dict(msg: dict[str, Any]) -> None:
    """Strict validation of an `events.created` message (no extra fields)."""

    if not isinstance(msg, dict):
        raise ValueError("message must be object")
    _require_exact_keys(msg, required=EVENT_MESSAGE_KEYS)
    _require_uuid(msg, "eventId")
    _require_str(msg, "eventType")
    _require_str(msg, "serviceName")
    _require_text(msg, "payload")
    parse_iso8601(_require_str(msg, "createdAt"))


def validate_event_response_dict(msg: dict[str, Any]) -> None:
    """Strict validation of an `events.processed` message (no extra fields)."""

    if not isinstance(msg, dict):
        raise ValueError("message must be object")
    _require_exact_keys(msg, required=EVENT_RESPONSE_KEYS)
    _require_uuid(msg, "originalEventId")
    _require_uuid(msg, "registeredEventId")
    status = _require_str(msg, "status")
    if status not in RESPONSE_STATUSES:
        raise ValueError(f"status must be one of {sorted(RESPONSE_STATUSES)}")
    parse_iso8601(_require_str(msg, "processedAt"))
    _require_str(msg, "registryServiceName")


def validate_wire_dict(channel: str, msg: dict[str, Any]) -> None:
    if channel == streams.EVENTS_CREATED:
        validate_event_message_dict(msg)
        return
    if channel == streams.EVENTS_PROCESSED:
        validate_event_response_dict(msg)
        return
    raise ValueError(f"unknown channel: {channel}")


def validate_many(channel: str, messages: Iterable[dict[str, Any]]) -> None:
    for msg in messages:
        validate_wire_dict(channel, msg)
