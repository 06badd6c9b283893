from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.contracts import streams
from src.core.message_bus import EventPublisher, InMemoryMessageBus, PublishError
from src.generator.event_generator import MANUAL_EVENT, SYSTEM_EVENT, EventGenerator
from src.generator.event_store import InMemoryEventStore


NOW = datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc)


class _FailingBus(InMemoryMessageBus):
    def publish(self, channel, message):
        raise PublishError("broker unavailable")


class _FailingStore(InMemoryEventStore):
    def save(self, event):
        raise RuntimeError("database is down")


@pytest.fixture
def make_generator():
    publishers: list[EventPublisher] = []

    def _make(*, bus=None, store=None, enabled: bool = True):
        bus = bus or InMemoryMessageBus()
        store = store or InMemoryEventStore()
        publisher = EventPublisher(bus)
        publishers.append(publisher)
        gen = EventGenerator(
            store,
            publisher,
            service_name="event-generator",
            generation_enabled=enabled,
            clock=lambda: NOW,
        )
        return gen, bus, store, publisher

    yield _make
    for publisher in publishers:
        publisher.close()


def test_manual_defaults(make_generator) -> None:
    gen, bus, store, publisher = make_generator()
    event = gen.generate()
    publisher.flush()

    assert event.event_type == MANUAL_EVENT
    assert event.payload.startswith("Manually generated at ")
    assert NOW.isoformat() in event.payload
    assert event.service_name == "event-generator"
    assert event.is_processed is False
    assert store.get(event.id) is not None


def test_manual_overrides_are_used_verbatim(make_generator) -> None:
    gen, bus, store, publisher = make_generator()
    event = gen.generate(event_type="X", payload="Y")
    publisher.flush()

    assert (event.event_type, event.payload) == ("X", "Y")
    published = bus.published(streams.EVENTS_CREATED)
    assert published == [
        {
            "eventId": event.id,
            "eventType": "X",
            "serviceName": "event-generator",
            "payload": "Y",
            "createdAt": NOW.isoformat(),
        }
    ]


def test_manual_empty_payload_is_kept(make_generator) -> None:
    gen, _, _, publisher = make_generator()
    assert gen.generate(payload="").payload == ""
    publisher.flush()


@pytest.mark.parametrize("event_type", ["", "   "])
def test_manual_blank_event_type_becomes_manual_event(make_generator, event_type: str) -> None:
    gen, bus, store, publisher = make_generator()
    event = gen.generate(event_type=event_type, payload="x")
    publisher.flush()

    assert event.event_type == MANUAL_EVENT
    assert store.get(event.id).event_type == MANUAL_EVENT
    assert bus.published(streams.EVENTS_CREATED)[0]["eventType"] == MANUAL_EVENT


def test_tick_builds_system_event(make_generator) -> None:
    gen, bus, store, publisher = make_generator()
    event = gen.tick()
    publisher.flush()

    assert event is not None
    assert event.event_type == SYSTEM_EVENT
    assert event.payload.startswith("Auto-generated event at ")
    assert len(bus.published(streams.EVENTS_CREATED)) == 1


def test_disabled_generation_ticks_are_noops(make_generator) -> None:
    gen, bus, store, publisher = make_generator(enabled=False)
    for _ in range(5):
        assert gen.tick() is None
    publisher.flush()

    assert store.count() == 0
    assert bus.published(streams.EVENTS_CREATED) == []


def test_disabled_generation_does_not_gate_manual_calls(make_generator) -> None:
    gen, bus, store, publisher = make_generator(enabled=False)
    gen.generate(event_type="X", payload="Y")
    publisher.flush()
    assert store.count() == 1
    assert len(bus.published(streams.EVENTS_CREATED)) == 1


def test_publish_failure_keeps_stored_event(make_generator) -> None:
    gen, _, store, publisher = make_generator(bus=_FailingBus())
    event = gen.generate()
    publisher.flush()

    got = store.get(event.id)
    assert got is not None
    assert got.is_processed is False


def test_publish_failure_is_reported_on_the_future() -> None:
    publisher = EventPublisher(_FailingBus())
    fut = publisher.publish_async(streams.EVENTS_CREATED, {"eventId": "x"})
    with pytest.raises(PublishError):
        fut.result(timeout=5)
    publisher.close()


def test_tick_swallows_storage_failure(make_generator) -> None:
    gen, bus, _, publisher = make_generator(store=_FailingStore())
    assert gen.tick() is None
    publisher.flush()
    assert bus.published(streams.EVENTS_CREATED) == []


def test_manual_generation_propagates_storage_failure(make_generator) -> None:
    gen, _, _, _ = make_generator(store=_FailingStore())
    with pytest.raises(RuntimeError, match="database is down"):
        gen.generate()


def test_concurrent_manual_calls_produce_distinct_events(make_generator) -> None:
    from concurrent.futures import ThreadPoolExecutor

    gen, bus, store, publisher = make_generator()
    with ThreadPoolExecutor(max_workers=8) as pool:
        events = list(pool.map(lambda i: gen.generate(payload=str(i)), range(20)))
    publisher.flush()

    assert len({e.id for e in events}) == 20
    assert store.count() == 20
    assert len(bus.published(streams.EVENTS_CREATED)) == 20
