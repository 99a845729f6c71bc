"""
CHRONICLE Execution Host

The host is the environment every ledger call executes in. It provides what a
blockchain runtime would: total ordering of calls, a commit timestamp, a
monotonic sequence marker, and all-or-nothing state transitions.

    caller ──► host.transaction() ──► component writes (journaled)
                    │                         │
                    │ success                 │ exception
                    ▼                         ▼
             commit height/time        undo journal replayed in reverse
             flush notifications       notifications discarded

Calls are serialized on one re-entrant lock, so there is no interleaving
within a call. A component invoked from inside another call (stream →
tag registry, stream → entitlement engine) joins the enclosing transaction.
"""

from __future__ import annotations

import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List, MutableMapping, Optional

from chronicle.config import get_config
from chronicle.events import Event, EventBus
from chronicle.hardening import LedgerError
from chronicle.observability import LedgerLayer, get_logger

logger = get_logger("host", LedgerLayer.HOST)

_MISSING = object()


def system_clock() -> int:
    """Wall-clock Unix seconds.

    For deterministic runs (CI, reproducible fixtures) set ``SOURCE_DATE_EPOCH``.
    """
    sde = os.environ.get("SOURCE_DATE_EPOCH")
    if sde is not None and str(sde).strip() != "":
        return int(str(sde).strip(), 10)
    return int(time.time())


class ManualClock:
    """Deterministic clock for tests and replays."""

    def __init__(self, start: int = 1_700_000_000):
        self._now = start

    def __call__(self) -> int:
        return self._now

    def advance(self, seconds: int = 1) -> int:
        self._now += seconds
        return self._now

    def set(self, value: int) -> None:
        self._now = value


class Transaction:
    """
    One indivisible unit of work.

    Every write performed through the journal helpers is undone if the call
    fails; notifications are buffered until commit.
    """

    def __init__(self, sequence: int, timestamp: int, operation: str = ""):
        self.sequence = sequence
        self.timestamp = timestamp
        self.operation = operation
        self._undo: List[Callable[[], None]] = []
        self._events: List[Event] = []

    # -- journal helpers -------------------------------------------------

    def on_rollback(self, undo: Callable[[], None]) -> None:
        """Register a compensation to run if the call fails."""
        self._undo.append(undo)

    def set_item(self, mapping: MutableMapping, key: Any, value: Any) -> None:
        previous = mapping.get(key, _MISSING)
        mapping[key] = value

        def undo() -> None:
            if previous is _MISSING:
                mapping.pop(key, None)
            else:
                mapping[key] = previous

        self._undo.append(undo)

    def pop_item(self, mapping: MutableMapping, key: Any) -> Any:
        previous = mapping.pop(key, _MISSING)
        if previous is not _MISSING:
            self._undo.append(lambda: mapping.__setitem__(key, previous))
            return previous
        return None

    def append(self, items: list, value: Any) -> None:
        items.append(value)
        self._undo.append(items.pop)

    def add(self, members: set, value: Any) -> None:
        if value in members:
            return
        members.add(value)
        self._undo.append(lambda: members.discard(value))

    def discard(self, members: set, value: Any) -> None:
        if value not in members:
            return
        members.discard(value)
        self._undo.append(lambda: members.add(value))

    def set_attr(self, obj: Any, name: str, value: Any) -> None:
        previous = getattr(obj, name)
        setattr(obj, name, value)
        self._undo.append(lambda: setattr(obj, name, previous))

    # -- notifications ---------------------------------------------------

    def emit(self, event: Event) -> Event:
        """Stamp and buffer a notification for release at commit."""
        event.sequence = self.sequence
        event.timestamp = self.timestamp
        self._events.append(event)
        return event

    @property
    def events(self) -> List[Event]:
        return list(self._events)

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()
        self._events.clear()


class ExecutionHost:
    """
    Serializing execution environment shared by every stream.

    Example:
        host = ExecutionHost(clock=ManualClock())
        with host.transaction("publish") as txn:
            txn.set_item(mapping, key, value)
            txn.emit(SomethingHappened(...))
    """

    def __init__(
        self,
        clock: Optional[Callable[[], int]] = None,
        genesis_height: Optional[int] = None,
        bus: Optional[EventBus] = None,
    ):
        self._clock = clock or system_clock
        self._height = get_config().host.genesis_height.get() if genesis_height is None else genesis_height
        self._last_timestamp = 0
        self._lock = threading.RLock()
        self._active: Optional[Transaction] = None
        self.bus = bus or EventBus()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def height(self) -> int:
        """Sequence marker of the last committed call."""
        return self._height

    @property
    def last_timestamp(self) -> int:
        return self._last_timestamp

    def resume(self, height: int, last_timestamp: int) -> None:
        """Continue from persisted host state (see ``chronicle.store``)."""
        with self._lock:
            self._height = height
            self._last_timestamp = last_timestamp

    @contextmanager
    def transaction(self, operation: str = "") -> Iterator[Transaction]:
        committed: List[Event] = []
        with self._lock:
            if self._active is not None:
                yield self._active
                return

            # Commit timestamps never run backwards, even if the clock does.
            timestamp = max(self._last_timestamp, int(self._clock()))
            txn = Transaction(self._height + 1, timestamp, operation)
            self._active = txn
            try:
                yield txn
            except BaseException as exc:
                txn.rollback()
                if isinstance(exc, LedgerError):
                    logger.warning(
                        f"Call {operation or 'unnamed'} rejected",
                        operation=operation,
                        error_code=exc.kind,
                        reason=str(exc),
                    )
                raise
            finally:
                self._active = None

            self._height = txn.sequence
            self._last_timestamp = txn.timestamp
            committed = txn.events
            logger.debug(
                f"Call {operation or 'unnamed'} committed",
                operation=operation,
                sequence=txn.sequence,
                notifications=len(committed),
            )

        for event in committed:
            self.bus.publish(event)
