"""
CHRONICLE Notification Infrastructure

Every successful mutating ledger call emits exactly one notification carrying
the full set of fields it changed. Notifications are the off-chain indexing
feed: a consumer that replays them can rebuild every read view of the ledger
without querying it (see ``chronicle.indexer``).

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                        NOTIFICATION PIPELINE                             │
    │                                                                          │
    │  Execution host        Event Bus           Event Store                   │
    │  ├─ buffers per call   ├─ typed pub/sub    ├─ append-only per stream     │
    │  ├─ drops on rollback  ├─ filters          ├─ global position            │
    │  └─ flushes on commit  └─ priorities       └─ projections / replay       │
    │                                                                          │
    │  Stream events         Chain events         Delivery events              │
    │  ├─ StreamCreated      ├─ CheckpointPublished ├─ EntitlementConsumed     │
    │  └─ PublisherTransferred ├─ PointerUpdated  ├─ AllowlistUpdated          │
    │                        └─ TagAssigned       └─ KeyEnvelopeDelivered      │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Usage
─────

    bus = EventBus()

    @bus.subscribe(KeyEnvelopeDelivered, filter_func=lambda e: e.consumer == me)
    def on_delivery(event):
        fetch_and_unwrap(event.checkpoint_id)
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional, Set, Type

from chronicle.core import digest_of

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════════════════
# EVENT BASE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class Event:
    """
    Base class for all ledger notifications.

    ``stream_id``, ``sequence`` and ``timestamp`` are stamped by the execution
    host at commit time; subclasses only carry the changed fields.
    """

    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    stream_id: str = ""
    sequence: int = 0
    timestamp: int = 0

    @property
    def event_type(self) -> str:
        """Get the event type name."""
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        """Serialize event to dictionary."""
        data = asdict(self)
        data["event_type"] = self.event_type
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        """Deserialize event from dictionary, dispatching on ``event_type``."""
        data = dict(data)
        event_type = data.pop("event_type", cls.__name__)
        target = EVENT_TYPES.get(event_type, cls)
        return target(**data)

    def to_json(self) -> str:
        """Serialize event to JSON for display/transport (not for digest computation)."""
        return json.dumps(self.to_dict(), default=str, sort_keys=True)

    def digest(self) -> str:
        """Deterministic digest of event content."""
        return digest_of(self.to_dict())


# ════════════════════════════════════════════════════════════════════════════
# DOMAIN EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class StreamCreated(Event):
    """Emitted when a stream is created."""
    publisher: str = ""
    name: str = ""
    entitlement: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PublisherTransferred(Event):
    """Emitted when write authority over a stream moves to a new account."""
    previous_publisher: str = ""
    new_publisher: str = ""


@dataclass
class CheckpointPublished(Event):
    """Emitted when a checkpoint is appended. Carries the full record."""
    checkpoint_id: str = ""
    index: int = 0
    predecessor_id: str = ""
    state_commitment: str = ""
    ciphertext_hash: str = ""
    ciphertext_pointer: str = ""
    manifest_hash: str = ""
    published_at: int = 0
    publication_sequence: int = 0
    publisher: str = ""


@dataclass
class CiphertextPointerUpdated(Event):
    """Emitted when a checkpoint's storage pointer migrates."""
    checkpoint_id: str = ""
    old_pointer: str = ""
    new_pointer: str = ""


@dataclass
class TagAssigned(Event):
    """Emitted when a tag is (re)assigned. Displaced pairings are included."""
    tag: str = ""
    checkpoint_id: str = ""
    previous_checkpoint_id: str = ""
    previous_tag: str = ""


@dataclass
class EntitlementConsumed(Event):
    """Emitted on a successful counted-mode consumption."""
    account: str = ""
    scope: str = ""
    cost: str = "0"


@dataclass
class AllowlistUpdated(Event):
    """Emitted when an account is added to or removed from the roster."""
    account: str = ""
    allowed: bool = False


@dataclass
class AllowlistModeChanged(Event):
    """Emitted when the allowlist is opened or closed."""
    open: bool = False


@dataclass
class KeyEnvelopeDelivered(Event):
    """Emitted on delivery, addressed to the consumer. Payloads are hex."""
    consumer: str = ""
    checkpoint_id: str = ""
    wrapped_key: str = ""
    nonce: str = ""
    sender_public_key: str = ""


EVENT_TYPES: Dict[str, Type[Event]] = {
    cls.__name__: cls
    for cls in (
        StreamCreated, PublisherTransferred, CheckpointPublished,
        CiphertextPointerUpdated, TagAssigned, EntitlementConsumed,
        AllowlistUpdated, AllowlistModeChanged, KeyEnvelopeDelivered,
    )
}


# ════════════════════════════════════════════════════════════════════════════
# EVENT HANDLER
# ════════════════════════════════════════════════════════════════════════════


EventHandler = Callable[[Event], None]


@dataclass
class EventHandlerRegistration:
    """Registration for an event handler."""
    handler: EventHandler
    event_types: Set[Type[Event]]
    priority: int = 0
    filter_func: Optional[Callable[[Event], bool]] = None


class EventHandlerError(Exception):
    """Error during event handling."""
    def __init__(self, event: Event, handler: EventHandler, cause: Exception):
        self.event = event
        self.handler = handler
        self.cause = cause
        name = getattr(handler, "__name__", repr(handler))
        super().__init__(f"Handler {name} failed for {event.event_type}: {cause}")


# ════════════════════════════════════════════════════════════════════════════
# EVENT BUS
# ════════════════════════════════════════════════════════════════════════════


class EventBus:
    """
    In-memory event bus for pub/sub communication.

    Handlers run synchronously in priority order after the emitting call has
    committed. A failing handler never affects ledger state; it is counted
    and reported through ``on_error``.

    Example:
        bus = EventBus()

        @bus.subscribe(CheckpointPublished)
        def index(event):
            print(event.checkpoint_id)
    """

    def __init__(self, on_error: Optional[Callable[[EventHandlerError], None]] = None):
        self._handlers: List[EventHandlerRegistration] = []
        self._lock = threading.RLock()
        self._on_error = on_error
        self._published_count = 0
        self._handled_count = 0
        self._error_count = 0

    def subscribe(
        self,
        *event_types: Type[Event],
        priority: int = 0,
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> Callable[[EventHandler], EventHandler]:
        """
        Decorator to subscribe a handler to event types.

        Args:
            event_types: Event types to subscribe to (all events when omitted)
            priority: Handler priority (higher = earlier)
            filter_func: Optional filter function
        """
        def decorator(handler: EventHandler) -> EventHandler:
            registration = EventHandlerRegistration(
                handler=handler,
                event_types=set(event_types) if event_types else {Event},
                priority=priority,
                filter_func=filter_func,
            )
            with self._lock:
                self._handlers.append(registration)
                self._handlers.sort(key=lambda r: -r.priority)
            return handler
        return decorator

    def unsubscribe(self, handler: EventHandler) -> bool:
        """Unsubscribe a handler."""
        with self._lock:
            original_len = len(self._handlers)
            self._handlers = [r for r in self._handlers if r.handler != handler]
            return len(self._handlers) < original_len

    def publish(self, event: Event) -> None:
        """Publish an event to all matching subscribers."""
        with self._lock:
            self._published_count += 1
            handlers_to_call = []

            for registration in self._handlers:
                if not any(isinstance(event, t) for t in registration.event_types):
                    continue
                if registration.filter_func and not registration.filter_func(event):
                    continue
                handlers_to_call.append(registration)

        for registration in handlers_to_call:
            self._call_handler(registration.handler, event)

    def _call_handler(self, handler: EventHandler, event: Event) -> None:
        """Call a handler with error handling."""
        try:
            handler(event)
            with self._lock:
                self._handled_count += 1
        except Exception as e:
            with self._lock:
                self._error_count += 1
            error = EventHandlerError(event, handler, e)
            logger.warning("%s", error)
            if self._on_error:
                self._on_error(error)

    @property
    def metrics(self) -> Dict[str, int]:
        """Get event bus metrics."""
        with self._lock:
            return {
                "published_count": self._published_count,
                "handled_count": self._handled_count,
                "error_count": self._error_count,
                "handler_count": len(self._handlers),
            }


# ════════════════════════════════════════════════════════════════════════════
# EVENT STORE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class EventRecord:
    """A persisted notification."""
    position: int
    event: Event
    stream_id: str
    version: int

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "position": self.position,
            "event": self.event.to_dict(),
            "stream_id": self.stream_id,
            "version": self.version,
        }


class EventStore:
    """
    Append-only notification log, organized into streams.

    Example:
        store = EventStore()
        bus.subscribe()(store.record)
        store.read_stream(stream_id)
    """

    def __init__(self):
        self._events: List[EventRecord] = []
        self._streams: Dict[str, List[EventRecord]] = {}
        self._lock = threading.RLock()

    def record(self, event: Event) -> EventRecord:
        """Append a single event to its own stream (bus-handler friendly)."""
        return self.append(event.stream_id, [event])[0]

    def append(self, stream_id: str, events: List[Event]) -> List[EventRecord]:
        """Append events to a stream, returning their records."""
        with self._lock:
            stream = self._streams.setdefault(stream_id, [])
            records = []
            for event in events:
                record = EventRecord(
                    position=len(self._events) + 1,
                    event=event,
                    stream_id=stream_id,
                    version=len(stream) + 1,
                )
                self._events.append(record)
                stream.append(record)
                records.append(record)
            return records

    def read_stream(
        self,
        stream_id: str,
        from_version: int = 0,
        to_version: Optional[int] = None,
    ) -> List[Event]:
        """Read events from a stream."""
        with self._lock:
            stream = self._streams.get(stream_id, [])
            to_version = len(stream) if to_version is None else to_version
            return [r.event for r in stream[from_version:to_version]]

    def read_all(self, from_position: int = 0, max_count: int = 1000) -> List[EventRecord]:
        """Read events from all streams in global order."""
        with self._lock:
            return self._events[from_position:from_position + max_count]

    def get_stream_version(self, stream_id: str) -> int:
        """Get current version of a stream."""
        with self._lock:
            return len(self._streams.get(stream_id, []))

    def get_stream_ids(self) -> List[str]:
        """Get all stream IDs."""
        with self._lock:
            return list(self._streams.keys())

    @property
    def total_events(self) -> int:
        """Total number of events."""
        with self._lock:
            return len(self._events)


# ════════════════════════════════════════════════════════════════════════════
# PROJECTIONS
# ════════════════════════════════════════════════════════════════════════════


class Projection(ABC):
    """
    Read model built from notifications.

    Subclasses implement ``handle_event``; ``rebuild`` replays an EventStore
    from the beginning.
    """

    def __init__(self):
        self._position = 0

    @property
    def position(self) -> int:
        """Number of events applied."""
        return self._position

    @abstractmethod
    def handle_event(self, event: Event) -> None:
        """Apply one event to the read model."""

    def __call__(self, event: Event) -> None:
        self.handle_event(event)
        self._position += 1

    def rebuild(self, store: EventStore, batch_size: int = 1000) -> None:
        """Reset and replay every record in ``store``."""
        self.reset()
        self._position = 0
        offset = 0
        while True:
            batch = store.read_all(from_position=offset, max_count=batch_size)
            if not batch:
                break
            for record in batch:
                self(record.event)
            offset += len(batch)

    def reset(self) -> None:
        """Clear the read model. Override when the projection holds state."""
