from __future__ import annotations

# Channel names (frozen).

EVENTS_CREATED = "events.created"
EVENTS_PROCESSED = "events.processed"

# Consumer groups. Each logical consumer has its own group so both message
# classes are processed independently.

REGISTRY_GROUP = "event-registry-group"
CONFIRMATION_GROUP = "event-generator-confirmation-group"


def dlq_stream(base_stream: str) -> str:
    return f"dlq.{base_stream}"
