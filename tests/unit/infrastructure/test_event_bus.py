"""
Unit tests for infrastructure/event_bus.py
"""
import logging

from infrastructure.event_bus import EventBus, EventType, GraphEvent, get_event_bus, publish_event


def _event(event_type=EventType.SNAPSHOT_PUBLISHED, **payload):
    return GraphEvent(type=event_type, payload=payload, timestamp=0.0, source="test")


def test_sync_handler_receives_event():
    bus = EventBus()
    received = []
    bus.subscribe(EventType.SNAPSHOT_PUBLISHED, received.append)

    bus.publish(_event(version=1))

    assert len(received) == 1
    assert received[0].payload == {"version": 1}


def test_handlers_only_see_their_type():
    bus = EventBus()
    received = []
    bus.subscribe(EventType.INGESTION_REJECTED, received.append)

    bus.publish(_event(EventType.SNAPSHOT_PUBLISHED))

    assert received == []


def test_subscribe_is_idempotent():
    bus = EventBus()
    received = []
    bus.subscribe(EventType.MERGE_CONFLICT, received.append)
    bus.subscribe(EventType.MERGE_CONFLICT, received.append)

    bus.publish(_event(EventType.MERGE_CONFLICT))

    assert len(received) == 1


def test_handlers_run_in_subscription_order():
    bus = EventBus()
    calls = []
    bus.subscribe(EventType.SNAPSHOT_PUBLISHED, lambda event: calls.append("first"))
    bus.subscribe(EventType.SNAPSHOT_PUBLISHED, lambda event: calls.append("second"))

    bus.publish(_event())

    assert calls == ["first", "second"]


def test_failing_handler_does_not_break_publisher(caplog):
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("boom")

    bus.subscribe(EventType.SNAPSHOT_PUBLISHED, broken)
    bus.subscribe(EventType.SNAPSHOT_PUBLISHED, received.append)

    with caplog.at_level(logging.ERROR, logger="infrastructure.event_bus"):
        bus.publish(_event())

    assert len(received) == 1
    assert "boom" in caplog.text


def test_clear_one_type_or_all():
    bus = EventBus()
    received = []
    bus.subscribe(EventType.INGESTION_STARTED, received.append)
    bus.subscribe(EventType.SNAPSHOT_PUBLISHED, received.append)

    bus.clear_subscribers(EventType.INGESTION_STARTED)
    bus.publish(_event(EventType.INGESTION_STARTED))
    bus.publish(_event(EventType.SNAPSHOT_PUBLISHED))
    assert [e.type for e in received] == [EventType.SNAPSHOT_PUBLISHED]

    bus.clear_subscribers()
    bus.publish(_event(EventType.SNAPSHOT_PUBLISHED))
    assert len(received) == 1


def test_publish_event_uses_global_bus_by_default():
    received = []
    get_event_bus().subscribe(EventType.INGESTION_STARTED, received.append)

    publish_event(EventType.INGESTION_STARTED, {"source": "a.md"}, source="ingestion")

    assert received[0].source == "ingestion"
    assert received[0].payload["source"] == "a.md"
    assert received[0].timestamp > 0
