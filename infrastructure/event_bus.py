"""
Lightweight event bus for ingestion and snapshot notifications.

Publisher-subscriber, so the pipeline never knows who is listening
(a CLI progress printer, a cache invalidator, a webhook).

- Handlers run synchronously on the publishing thread, in subscription order
- A failing handler is logged and never breaks the publisher
- Events are msgspec structs
- One process-wide bus via get_event_bus()

Usage:
    from infrastructure.event_bus import get_event_bus, EventType, GraphEvent

    def on_published(event: GraphEvent):
        print(f"snapshot v{event.payload['version']} is live")

    get_event_bus().subscribe(EventType.SNAPSHOT_PUBLISHED, on_published)
"""
from typing import Callable, List, Dict, Any, Optional
from enum import Enum
import msgspec
import threading
import time
from collections import defaultdict
import logging


logger = logging.getLogger(__name__)

Handler = Callable[["GraphEvent"], None]


class EventType(str, Enum):
    """Events published by the ingestion pipeline and the snapshot store."""
    INGESTION_STARTED = "ingestion_started"
    INGESTION_REJECTED = "ingestion_rejected"
    SNAPSHOT_PUBLISHED = "snapshot_published"
    MERGE_CONFLICT = "merge_conflict"


class GraphEvent(msgspec.Struct, kw_only=True):
    """
    One notification.

    Attributes:
        type: What happened
        payload: Event-specific data (source document, version, ids)
        timestamp: Unix time of publication
        source: Component that published it ("ingestion", "snapshot_store")
    """
    type: EventType
    payload: Dict[str, Any]
    timestamp: float
    source: str


class EventBus:
    """
    Pub/sub hub keyed by EventType.

    Subscribing and publishing are safe from any thread. Handlers subscribed
    while an event is being delivered first see the next event.
    """

    def __init__(self):
        self._subscribers: Dict[EventType, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: EventType, handler: Handler):
        """Register a handler (idempotent)."""
        with self._lock:
            handlers = self._subscribers[event_type]
            if handler in handlers:
                return
            handlers.append(handler)
        logger.debug(f"Subscribed handler to {event_type.value}")

    def publish(self, event: GraphEvent):
        """Deliver an event to every subscriber. Handler exceptions are logged, never raised."""
        with self._lock:
            handlers = list(self._subscribers.get(event.type, ()))
        logger.debug(
            f"Publishing {event.type.value} from {event.source} to {len(handlers)} handler(s)"
        )

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"Error in handler for {event.type.value}: {e}",
                    exc_info=True
                )

    def clear_subscribers(self, event_type: Optional[EventType] = None):
        """Drop subscribers for one type, or all of them."""
        with self._lock:
            if event_type is None:
                self._subscribers.clear()
            else:
                self._subscribers.pop(event_type, None)
        logger.debug(f"Cleared subscribers for {event_type.value if event_type else 'all events'}")


# =============================================================================
# SINGLETON INSTANCE
# =============================================================================

_event_bus: Optional[EventBus] = None
_event_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the process-wide event bus, creating it on first use."""
    global _event_bus
    with _event_bus_lock:
        if _event_bus is None:
            _event_bus = EventBus()
            logger.info("Initialized global event bus")
    return _event_bus


def publish_event(event_type: EventType, payload: Dict[str, Any], source: str,
                  bus: Optional[EventBus] = None):
    """Build a GraphEvent stamped with the current time and publish it."""
    (bus or get_event_bus()).publish(GraphEvent(
        type=event_type,
        payload=payload,
        timestamp=time.time(),
        source=source,
    ))
