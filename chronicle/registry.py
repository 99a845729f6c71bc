"""
CHRONICLE Stream Registry

Multi-tenant dispatch. Creates streams, owns them in a table keyed by stream
id, and routes every operation to the right one.

    ┌───────────────────────────────────────────────────────────────┐
    │ StreamRegistry                                                │
    │   host ─── one ExecutionHost shared by every stream           │
    │   events ─ EventStore fed from the host's bus                 │
    │   streams: {stream_id: Stream}                                │
    │                 ├─ CheckpointChain                            │
    │                 ├─ TagRegistry                                │
    │                 ├─ EntitlementEngine                          │
    │                 └─ KeyEnvelopeStore                           │
    └───────────────────────────────────────────────────────────────┘

Unknown stream ids raise ``StreamNotFound``; publisher-gated calls raise
``NotAuthorized`` for anyone but the stream's current publisher.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from chronicle.accounts import normalize_account, require_non_null
from chronicle.capabilities import BalanceCapability, BurnCapability
from chronicle.checkpoint import Checkpoint
from chronicle.config import get_config
from chronicle.entitlement import EntitlementConfig
from chronicle.envelope import KeyEnvelope
from chronicle.events import EventStore
from chronicle.hardening import AtomicCounter, Collision, StreamNotFound
from chronicle.host import ExecutionHost
from chronicle.observability import LedgerLayer, get_logger
from chronicle.stream import Stream, derive_stream_id
from chronicle.tags import TagChange

logger = get_logger("registry", LedgerLayer.REGISTRY)


class StreamRegistry:
    """
    Arena of streams sharing one execution host and token adapter.

    Example:
        registry = StreamRegistry(host=host, burn=tokens, balance=tokens)
        sid = registry.create_stream(alice, "research-notes",
                                     EntitlementConfig.counted_universal(5))
        registry.publish(sid, alice, state_commitment=..., ...)
    """

    def __init__(
        self,
        host: Optional[ExecutionHost] = None,
        *,
        burn: Optional[BurnCapability] = None,
        balance: Optional[BalanceCapability] = None,
        events: Optional[EventStore] = None,
    ):
        self.host = host or ExecutionHost()
        self.burn = burn
        self.balance = balance
        self.events = events if events is not None else EventStore()
        self.host.bus.subscribe(priority=100)(self.events.record)
        self._streams: Dict[str, Stream] = {}
        self._counter = AtomicCounter()

    # ------------------------------------------------------------------
    # Stream lifecycle
    # ------------------------------------------------------------------

    def create_stream(self, caller: str, name: str, entitlement: EntitlementConfig) -> str:
        """Create a stream published by ``caller``. Returns its id."""
        with self.host.transaction("create_stream") as txn:
            publisher = require_non_null(caller, "caller")
            counter = self._counter.get()
            stream_id = derive_stream_id(publisher, get_config().registry.stream_domain.get(), counter)
            if stream_id in self._streams:
                raise Collision(f"Stream identifier {stream_id} already exists")

            stream = Stream(
                self.host, stream_id, publisher, entitlement,
                name=name, burn=self.burn, balance=self.balance,
                created_at=txn.timestamp, created_block=txn.sequence,
            )
            txn.set_item(self._streams, stream_id, stream)
            self._counter.increment()
            txn.on_rollback(lambda: self._counter.reset(counter))
            stream.emit_created(txn)

        logger.info(
            "Stream created",
            operation="create_stream",
            stream_id=stream_id,
            publisher=publisher,
            mode=entitlement.mode.value,
        )
        return stream_id

    def get_stream(self, stream_id: str) -> Stream:
        stream = self._streams.get(stream_id)
        if stream is None:
            raise StreamNotFound(f"Stream not found: {stream_id}")
        return stream

    def streams(self) -> List[Stream]:
        """Streams in creation order."""
        return list(self._streams.values())

    def streams_of(self, publisher: str) -> List[Stream]:
        publisher = normalize_account(publisher, "publisher")
        return [s for s in self._streams.values() if s.publisher == publisher]

    def __contains__(self, stream_id: object) -> bool:
        return stream_id in self._streams

    def __len__(self) -> int:
        return len(self._streams)

    @property
    def counter(self) -> int:
        return self._counter.get()

    def transfer_publisher(self, stream_id: str, caller: str, new_publisher: str) -> str:
        return self.get_stream(stream_id).transfer_publisher(caller, new_publisher)

    # ------------------------------------------------------------------
    # Routed operations
    # ------------------------------------------------------------------

    def publish(
        self,
        stream_id: str,
        caller: str,
        *,
        state_commitment: str,
        ciphertext_hash: str,
        ciphertext_pointer: str,
        manifest_hash: str,
        tag: str = "",
    ) -> Checkpoint:
        return self.get_stream(stream_id).publish(
            caller,
            state_commitment=state_commitment,
            ciphertext_hash=ciphertext_hash,
            ciphertext_pointer=ciphertext_pointer,
            manifest_hash=manifest_hash,
            tag=tag,
        )

    def update_ciphertext_pointer(self, stream_id: str, caller: str, checkpoint_id: str, new_pointer: str) -> Checkpoint:
        return self.get_stream(stream_id).update_ciphertext_pointer(caller, checkpoint_id, new_pointer)

    def assign_tag(self, stream_id: str, caller: str, checkpoint_id: str, tag: str) -> TagChange:
        return self.get_stream(stream_id).assign_tag(caller, checkpoint_id, tag)

    def resolve_tag(self, stream_id: str, tag: str) -> Optional[str]:
        return self.get_stream(stream_id).resolve_tag(tag)

    def tag_of(self, stream_id: str, checkpoint_id: str) -> str:
        return self.get_stream(stream_id).tag_of(checkpoint_id)

    def head(self, stream_id: str) -> str:
        return self.get_stream(stream_id).head

    def count(self, stream_id: str) -> int:
        return self.get_stream(stream_id).count

    def get(self, stream_id: str, checkpoint_id: str) -> Optional[Checkpoint]:
        return self.get_stream(stream_id).get(checkpoint_id)

    def get_by_index(self, stream_id: str, index: int) -> Checkpoint:
        return self.get_stream(stream_id).get_by_index(index)

    def may_consume(self, stream_id: str, account: str, checkpoint_id: str = "") -> bool:
        return self.get_stream(stream_id).may_consume(account, checkpoint_id)

    def can_consume(self, stream_id: str, account: str, checkpoint_id: str = "") -> bool:
        return self.get_stream(stream_id).can_consume(account, checkpoint_id)

    def consume(self, stream_id: str, caller: str, checkpoint_id: str = "") -> bool:
        return self.get_stream(stream_id).consume(caller, checkpoint_id)

    def allow(self, stream_id: str, caller: str, account: str) -> bool:
        return self.get_stream(stream_id).allow(caller, account)

    def disallow(self, stream_id: str, caller: str, account: str) -> bool:
        return self.get_stream(stream_id).disallow(caller, account)

    def allow_many(self, stream_id: str, caller: str, accounts: Iterable[str]) -> List[str]:
        return self.get_stream(stream_id).allow_many(caller, accounts)

    def set_open(self, stream_id: str, caller: str, open: bool) -> bool:
        return self.get_stream(stream_id).set_open(caller, open)

    def deliver(
        self,
        stream_id: str,
        caller: str,
        consumer: str,
        checkpoint_id: str,
        wrapped_key: bytes,
        nonce: bytes,
        sender_public_key: bytes,
    ) -> KeyEnvelope:
        return self.get_stream(stream_id).deliver(
            caller, consumer, checkpoint_id, wrapped_key, nonce, sender_public_key
        )

    def get_envelope(self, stream_id: str, consumer: str, checkpoint_id: str) -> Optional[KeyEnvelope]:
        return self.get_stream(stream_id).get_envelope(consumer, checkpoint_id)

    def envelope_exists(self, stream_id: str, consumer: str, checkpoint_id: str) -> bool:
        return self.get_stream(stream_id).envelope_exists(consumer, checkpoint_id)

    def envelopes_for(self, stream_id: str, consumer: str) -> List[KeyEnvelope]:
        return self.get_stream(stream_id).envelopes_for(consumer)

    def verify(self) -> Dict[str, List[str]]:
        """Per-stream integrity errors; streams without errors are omitted."""
        report: Dict[str, List[str]] = {}
        for stream_id, stream in self._streams.items():
            errors = stream.verify()
            if errors:
                report[stream_id] = errors
        return report

    # ------------------------------------------------------------------
    # Persistence hooks (see ``chronicle.store``)
    # ------------------------------------------------------------------

    def adopt(self, stream: Stream) -> None:
        """Install a restored stream."""
        if stream.stream_id in self._streams:
            raise Collision(f"Stream identifier {stream.stream_id} already exists")
        self._streams[stream.stream_id] = stream

    def resume_counter(self, value: int) -> None:
        self._counter.reset(value)
