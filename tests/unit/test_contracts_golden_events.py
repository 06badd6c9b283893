from __future__ import annotations

import json
from pathlib import Path

import pytest

from src.contracts import streams
from src.contracts.validation import validate_event_message_dict, validate_wire_dict
from src.core.idempotency import InMemoryIdempotencyStore
from src.core.models import EventMessage, EventResponse, ResponseStatus


GOLDEN_DIR = Path(__file__).resolve().parents[2] / "contracts" / "golden_events"


def _golden(channel: str) -> list[Path]:
    return sorted((GOLDEN_DIR / channel).glob("*.json"))


@pytest.mark.parametrize(
    "channel,path",
    [(c, p) for c in (streams.EVENTS_CREATED, streams.EVENTS_PROCESSED) for p in _golden(c)],
    ids=lambda v: v.name if isinstance(v, Path) else v,
)
def test_golden_messages_contract_validation(channel: str, path: Path) -> None:
    msg = json.loads(path.read_text(encoding="utf-8"))
    if "invalid" in path.name:
        with pytest.raises(ValueError):
            validate_wire_dict(channel, msg)
    else:
        validate_wire_dict(channel, msg)


def test_duplicate_messages_parse_to_the_same_event_id() -> None:
    created = GOLDEN_DIR / streams.EVENTS_CREATED
    a = json.loads((created / "06_duplicate_valid_a.json").read_text(encoding="utf-8"))
    b = json.loads((created / "07_duplicate_valid_b.json").read_text(encoding="utf-8"))

    ma = EventMessage.from_wire(a)
    mb = EventMessage.from_wire(b)
    assert ma.event_id == mb.event_id
    assert ma.created_at == mb.created_at

    store = InMemoryIdempotencyStore()
    assert store.seen(ma.event_id) is False
    store.mark(ma.event_id, ttl_seconds=60)
    assert store.seen(mb.event_id) is True


def test_naive_timestamp_is_read_as_utc() -> None:
    msg = json.loads((GOLDEN_DIR / streams.EVENTS_CREATED / "02_valid_naive_timestamp.json").read_text(encoding="utf-8"))
    parsed = EventMessage.from_wire(msg)
    assert parsed.created_at.utcoffset().total_seconds() == 0
    assert parsed.to_wire()["createdAt"].endswith("+00:00")


def test_event_response_wire_shape() -> None:
    msg = json.loads((GOLDEN_DIR / streams.EVENTS_PROCESSED / "01_valid.json").read_text(encoding="utf-8"))
    resp = EventResponse.from_wire(msg)
    assert resp.status is ResponseStatus.PROCESSED
    assert set(resp.to_wire()) == set(msg)
    assert resp.to_wire()["status"] == "PROCESSED"


def test_null_payload_is_rejected() -> None:
    msg = json.loads((GOLDEN_DIR / streams.EVENTS_CREATED / "01_valid.json").read_text(encoding="utf-8"))
    msg["payload"] = None
    with pytest.raises(ValueError):
        validate_event_message_dict(msg)


def test_unknown_channel_is_rejected() -> None:
    with pytest.raises(ValueError, match="unknown channel"):
        validate_wire_dict("events.deleted", {})
