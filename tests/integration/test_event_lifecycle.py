"""End-to-end lifecycle over the in-memory bus.

generator -> events.created -> registry consumer -> events.processed -> confirmation handler
"""

from __future__ import annotations

import pytest

from src.contracts import streams
from src.core.message_bus import EventPublisher, InMemoryMessageBus
from src.generator.confirmation import ConfirmationHandler
from src.generator.event_generator import EventGenerator
from src.generator.event_store import InMemoryEventStore
from src.registry.consumer import RegistryConsumer
from src.registry.registry_store import InMemoryRegistryStore


class _Relay:
    def __init__(self, *, enabled: bool = True) -> None:
        self.bus = InMemoryMessageBus()
        self.events = InMemoryEventStore()
        self.registry = InMemoryRegistryStore()
        self.publisher = EventPublisher(self.bus)
        self.generator = EventGenerator(
            self.events,
            self.publisher,
            service_name="event-generator",
            generation_enabled=enabled,
        )
        self.consumer = RegistryConsumer(self.registry, self.bus, registry_service_name="event-registry")
        self.confirmations = ConfirmationHandler(self.events)
        self.bus.subscribe(streams.EVENTS_CREATED, streams.REGISTRY_GROUP, self.consumer.handle)
        self.bus.subscribe(streams.EVENTS_PROCESSED, streams.CONFIRMATION_GROUP, self.confirmations.handle)

    def settle(self) -> None:
        self.publisher.flush()
        self.bus.deliver_pending()

    def close(self) -> None:
        self.publisher.close()


@pytest.fixture
def make_relay():
    relays: list[_Relay] = []

    def _make(*, enabled: bool = True) -> _Relay:
        relay = _Relay(enabled=enabled)
        relays.append(relay)
        return relay

    yield _make
    for relay in relays:
        relay.close()


def test_end_to_end_scenario(make_relay) -> None:
    relay = make_relay()

    event = relay.generator.generate(event_type="TEST", payload="hello")
    stored = relay.events.get(event.id)
    assert (stored.event_type, stored.payload, stored.is_processed) == ("TEST", "hello", False)

    relay.settle()

    registered = relay.registry.get_by_original_id(event.id)
    assert registered is not None
    assert registered.original_event_id == event.id
    assert registered.payload == "hello"

    responses = relay.bus.published(streams.EVENTS_PROCESSED)
    assert len(responses) == 1
    assert responses[0]["status"] == "PROCESSED"
    assert responses[0]["registeredEventId"] == registered.id

    done = relay.events.get(event.id)
    assert done.is_processed is True
    assert done.processed_at is not None
    assert done.processed_at == registered.processed_at


def test_redelivery_after_restart_changes_nothing(make_relay) -> None:
    relay = make_relay()
    for _ in range(3):
        relay.generator.tick()
    relay.settle()
    before = {e.id: e for e in relay.events.list_all()}

    # Both consumers restart from the beginning of their channels.
    relay.bus.rewind(streams.EVENTS_CREATED, streams.REGISTRY_GROUP)
    relay.bus.rewind(streams.EVENTS_PROCESSED, streams.CONFIRMATION_GROUP)
    relay.bus.deliver_pending()

    assert relay.registry.count() == 3
    assert len(relay.bus.published(streams.EVENTS_PROCESSED)) == 3
    assert {e.id: e for e in relay.events.list_all()} == before
    assert relay.events.count_by_processed(True) == 3


def test_disabled_generation_produces_nothing(make_relay) -> None:
    relay = make_relay(enabled=False)
    for _ in range(5):
        relay.generator.tick()
    relay.settle()

    assert relay.events.count() == 0
    assert relay.bus.published(streams.EVENTS_CREATED) == []
    assert relay.registry.count() == 0


def test_malformed_created_message_is_dead_lettered(make_relay) -> None:
    relay = make_relay()
    relay.bus.publish(streams.EVENTS_CREATED, {"eventId": "garbage"})
    relay.bus.publish_raw(streams.EVENTS_CREATED, "not json")
    relay.settle()

    assert relay.registry.count() == 0
    dead = relay.bus.dead_letters(streams.dlq_stream(streams.EVENTS_CREATED))
    assert len(dead) == 2


@pytest.mark.parametrize("event_type", ["", "  "])
def test_blank_manual_event_type_completes_the_lifecycle(make_relay, event_type: str) -> None:
    relay = make_relay()
    event = relay.generator.generate(event_type=event_type, payload="x")
    relay.settle()

    registered = relay.registry.get_by_original_id(event.id)
    assert registered is not None
    assert registered.event_type == "MANUAL_EVENT"
    assert relay.events.get(event.id).is_processed is True
    assert relay.bus.dead_letters(streams.dlq_stream(streams.EVENTS_CREATED)) == []
