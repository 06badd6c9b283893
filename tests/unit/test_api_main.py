from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from src.api.main import create_app
from src.contracts import streams
from src.core.message_bus import EventPublisher, InMemoryMessageBus
from src.generator.event_generator import EventGenerator
from src.generator.event_store import InMemoryEventStore


@pytest.fixture
def make_client():
    publishers: list[EventPublisher] = []

    def _make(enabled: bool = True):
        bus = InMemoryMessageBus()
        store = InMemoryEventStore()
        publisher = EventPublisher(bus)
        publishers.append(publisher)
        gen = EventGenerator(store, publisher, service_name="event-generator", generation_enabled=enabled)
        return TestClient(create_app(gen, store)), store, bus, publisher

    yield _make
    for publisher in publishers:
        publisher.close()


def test_health(make_client) -> None:
    client, _, _, _ = make_client()
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "service": "event-generator"}


def test_manual_generate_endpoint(make_client) -> None:
    client, store, bus, publisher = make_client()
    resp = client.post("/api/events/generate", params={"eventType": "TEST", "payload": "hello"})
    publisher.flush()

    assert resp.status_code == 200
    body = resp.json()
    assert body["eventType"] == "TEST"
    assert body["payload"] == "hello"
    assert body["isProcessed"] is False
    assert store.get(body["id"]) is not None
    assert bus.published(streams.EVENTS_CREATED)[0]["eventId"] == body["id"]


def test_manual_generate_with_blank_type(make_client) -> None:
    client, _, bus, publisher = make_client()
    resp = client.post("/api/events/generate", params={"eventType": "", "payload": "hello"})
    publisher.flush()

    assert resp.status_code == 200
    assert resp.json()["eventType"] == "MANUAL_EVENT"
    assert bus.published(streams.EVENTS_CREATED)[0]["eventType"] == "MANUAL_EVENT"


def test_stats_endpoint(make_client) -> None:
    client, store, _, publisher = make_client(enabled=False)
    for _ in range(4):
        client.post("/api/events/generate")
    publisher.flush()
    first = store.list_all()[0]
    store.mark_processed(first.id, first.created_at)

    body = client.get("/api/events/stats").json()
    assert body["totalEvents"] == 4
    assert body["processedEvents"] == 1
    assert body["unprocessedEvents"] == 3
    assert body["processedPercentage"] == 25.0
    assert body["unprocessedPercentage"] == 75.0
    assert body["generationStatus"] == "PAUSED"


def test_stats_endpoint_with_no_events(make_client) -> None:
    client, _, _, _ = make_client()
    body = client.get("/api/events/stats").json()
    assert body["totalEvents"] == 0
    assert body["processedPercentage"] == 0.0
    assert body["unprocessedPercentage"] == 0.0
    assert body["generationStatus"] == "ACTIVE"
