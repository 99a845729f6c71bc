"""
CHRONICLE Stream

One checkpoint chain with its publisher, tag registry, entitlement engine and
envelope store. A bare ``Stream`` is the single-stream deployment; the
multi-tenant ``StreamRegistry`` owns many of them keyed by stream id.

    caller ──► Stream.publish ──► CheckpointChain.append ──► TagRegistry (optional)
           ──► Stream.consume ──► EntitlementEngine.consume ──► burn capability
           ──► Stream.deliver ──► EntitlementEngine.may_consume ──► KeyEnvelopeStore

Every public mutating method is one host transaction: publisher check,
validation, writes and notifications commit together or not at all.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from chronicle.accounts import normalize_account, require_non_null
from chronicle.capabilities import BalanceCapability, BurnCapability
from chronicle.checkpoint import Checkpoint, CheckpointChain
from chronicle.config import get_config
from chronicle.core import digest_of
from chronicle.entitlement import STREAM_SCOPE, EntitlementConfig, EntitlementEngine, EntitlementMode
from chronicle.envelope import KeyEnvelope, KeyEnvelopeStore
from chronicle.events import (
    AllowlistModeChanged,
    AllowlistUpdated,
    CheckpointPublished,
    CiphertextPointerUpdated,
    EntitlementConsumed,
    KeyEnvelopeDelivered,
    PublisherTransferred,
    StreamCreated,
    TagAssigned,
)
from chronicle.hardening import AlreadyDelivered, InvalidArgument, NotAuthorized, NotEntitled, Validators
from chronicle.host import ExecutionHost, Transaction
from chronicle.observability import LedgerLayer, get_logger
from chronicle.tags import TagChange, TagRegistry

logger = get_logger("stream", LedgerLayer.CHAIN)


def derive_stream_id(creator: str, domain: str, counter: int) -> str:
    """Stream identifier from creator, domain-separation value and counter."""
    return digest_of({"creator": creator, "domain": domain, "counter": int(counter)})


class Stream:
    """
    A single stream.

    Example:
        stream = Stream.standalone(publisher, EntitlementConfig.counted_per_checkpoint(1),
                                   host=host, burn=tokens)
        cp = stream.publish(publisher, state_commitment=..., ciphertext_hash=...,
                            ciphertext_pointer="ar://...", manifest_hash=..., tag="v1")
    """

    def __init__(
        self,
        host: ExecutionHost,
        stream_id: str,
        publisher: str,
        entitlement: EntitlementConfig,
        *,
        name: str = "",
        burn: Optional[BurnCapability] = None,
        balance: Optional[BalanceCapability] = None,
        created_at: int = 0,
        created_block: int = 0,
    ):
        config = get_config()
        self.host = host
        self.stream_id = Validators.validate_digest(stream_id, "stream_id").raise_if_invalid()
        self.publisher = require_non_null(publisher, "publisher")
        self.name = name
        self.created_at = created_at
        self.created_block = created_block

        self.chain = CheckpointChain(self.stream_id, max_pointer_length=config.chain.max_pointer_length.get())
        self.tags = TagRegistry(max_tag_length=config.tags.max_tag_length.get())
        self.envelopes = KeyEnvelopeStore(
            max_wrapped_key_bytes=config.envelope.max_wrapped_key_bytes.get(),
            max_public_key_bytes=config.envelope.max_public_key_bytes.get(),
        )
        self.entitlement = EntitlementEngine(
            entitlement,
            publisher=lambda: self.publisher,
            scope_exists=lambda scope: scope in self.chain,
            burn=burn,
            balance=balance,
        )

    @classmethod
    def standalone(
        cls,
        publisher: str,
        entitlement: EntitlementConfig,
        *,
        host: Optional[ExecutionHost] = None,
        name: str = "",
        burn: Optional[BurnCapability] = None,
        balance: Optional[BalanceCapability] = None,
    ) -> "Stream":
        """Create the one implicit stream of a single-stream deployment."""
        host = host or ExecutionHost()
        publisher = require_non_null(publisher, "publisher")
        stream_id = derive_stream_id(publisher, get_config().registry.stream_domain.get(), 0)
        with host.transaction("create_stream") as txn:
            stream = cls(
                host, stream_id, publisher, entitlement,
                name=name, burn=burn, balance=balance,
                created_at=txn.timestamp, created_block=txn.sequence,
            )
            stream.emit_created(txn)
        return stream

    def emit_created(self, txn: Transaction) -> None:
        txn.emit(StreamCreated(
            stream_id=self.stream_id,
            publisher=self.publisher,
            name=self.name,
            entitlement=self.entitlement.config.to_dict(),
        ))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def head(self) -> str:
        return self.chain.head

    @property
    def count(self) -> int:
        return self.chain.count

    @property
    def mode(self) -> EntitlementMode:
        return self.entitlement.mode

    def get(self, checkpoint_id: str) -> Optional[Checkpoint]:
        return self.chain.get(checkpoint_id)

    def get_by_index(self, index: int) -> Checkpoint:
        return self.chain.get_by_index(index)

    def history(self, from_id: Optional[str] = None) -> List[Checkpoint]:
        return list(self.chain.history(from_id))

    def resolve_tag(self, tag: str) -> Optional[str]:
        return self.tags.resolve(tag)

    def tag_of(self, checkpoint_id: str) -> str:
        return self.tags.tag_of(checkpoint_id)

    def scope_for(self, checkpoint_id: str) -> str:
        """Entitlement scope that governs ``checkpoint_id``."""
        if self.mode == EntitlementMode.COUNTED_UNIVERSAL:
            return STREAM_SCOPE
        return checkpoint_id

    def may_consume(self, account: str, checkpoint_id: str = "") -> bool:
        return self.entitlement.may_consume(account, self.scope_for(checkpoint_id))

    def can_consume(self, account: str, checkpoint_id: str = "") -> bool:
        return self.entitlement.can_consume(account, self.scope_for(checkpoint_id))

    def get_envelope(self, consumer: str, checkpoint_id: str) -> Optional[KeyEnvelope]:
        return self.envelopes.get(normalize_account(consumer, "consumer"), checkpoint_id)

    def envelope_exists(self, consumer: str, checkpoint_id: str) -> bool:
        return self.envelopes.exists(normalize_account(consumer, "consumer"), checkpoint_id)

    def envelopes_for(self, consumer: str) -> List[KeyEnvelope]:
        return self.envelopes.for_consumer(normalize_account(consumer, "consumer"))

    def info(self) -> Dict[str, Any]:
        """Summary of the stream's configuration and position."""
        return {
            "stream_id": self.stream_id,
            "name": self.name,
            "publisher": self.publisher,
            "entitlement": self.entitlement.config.to_dict(),
            "allowlist_open": self.entitlement.open if self.mode == EntitlementMode.ALLOWLIST else None,
            "head": self.head,
            "count": self.count,
            "tags": len(self.tags),
            "envelopes": len(self.envelopes),
            "created_at": self.created_at,
            "created_block": self.created_block,
        }

    def verify(self) -> List[str]:
        """Chain integrity plus cross-collection consistency."""
        errors = self.chain.verify()
        errors.extend(self.tags.verify())
        for tag, checkpoint_id in self.tags.items():
            if checkpoint_id not in self.chain:
                errors.append(f"tag {tag!r} points at unknown checkpoint {checkpoint_id}")
        for envelope in self.envelopes:
            if envelope.checkpoint_id not in self.chain:
                errors.append(f"envelope for {envelope.consumer} on unknown checkpoint {envelope.checkpoint_id}")
        if self.mode == EntitlementMode.COUNTED_PER_CHECKPOINT:
            for account, scope in self.entitlement.consumers():
                if scope not in self.chain:
                    errors.append(f"consumption by {account} on unknown checkpoint {scope}")
        return errors

    # ------------------------------------------------------------------
    # Publisher-gated writes
    # ------------------------------------------------------------------

    def _require_publisher(self, caller: str) -> str:
        caller = normalize_account(caller, "caller")
        if caller != self.publisher:
            raise NotAuthorized(f"{caller} is not the publisher of stream {self.stream_id}")
        return caller

    def _emit_tag(self, txn: Transaction, change: TagChange) -> None:
        txn.emit(TagAssigned(
            stream_id=self.stream_id,
            tag=change.tag,
            checkpoint_id=change.checkpoint_id,
            previous_checkpoint_id=change.previous_checkpoint_id,
            previous_tag=change.previous_tag,
        ))

    def publish(
        self,
        caller: str,
        *,
        state_commitment: str,
        ciphertext_hash: str,
        ciphertext_pointer: str,
        manifest_hash: str,
        tag: str = "",
    ) -> Checkpoint:
        """Append a checkpoint at the current head, optionally tagging it."""
        with self.host.transaction("publish") as txn:
            publisher = self._require_publisher(caller)
            if tag:
                self.tags.validate_tag(tag)

            checkpoint = self.chain.append(
                txn,
                state_commitment=state_commitment,
                ciphertext_hash=ciphertext_hash,
                ciphertext_pointer=ciphertext_pointer,
                manifest_hash=manifest_hash,
            )
            txn.emit(CheckpointPublished(
                stream_id=self.stream_id,
                checkpoint_id=checkpoint.checkpoint_id,
                index=checkpoint.index,
                predecessor_id=checkpoint.predecessor_id,
                state_commitment=checkpoint.state_commitment,
                ciphertext_hash=checkpoint.ciphertext_hash,
                ciphertext_pointer=checkpoint.ciphertext_pointer,
                manifest_hash=checkpoint.manifest_hash,
                published_at=checkpoint.published_at,
                publication_sequence=checkpoint.sequence,
                publisher=publisher,
            ))
            if tag:
                self._emit_tag(txn, self.tags.assign(txn, checkpoint.checkpoint_id, tag))

        logger.info(
            "Checkpoint published",
            operation="publish",
            stream_id=self.stream_id,
            checkpoint_id=checkpoint.checkpoint_id,
            index=checkpoint.index,
        )
        return checkpoint

    def update_ciphertext_pointer(self, caller: str, checkpoint_id: str, new_pointer: str) -> Checkpoint:
        """Migrate a checkpoint's storage pointer. Returns the updated record."""
        with self.host.transaction("update_ciphertext_pointer") as txn:
            self._require_publisher(caller)
            previous = self.chain.set_pointer(txn, checkpoint_id, new_pointer)
            txn.emit(CiphertextPointerUpdated(
                stream_id=self.stream_id,
                checkpoint_id=checkpoint_id,
                old_pointer=previous.ciphertext_pointer,
                new_pointer=new_pointer,
            ))
        return self.chain.require(checkpoint_id)

    def assign_tag(self, caller: str, checkpoint_id: str, tag: str) -> TagChange:
        with self.host.transaction("assign_tag") as txn:
            self._require_publisher(caller)
            self.chain.require(checkpoint_id)
            change = self.tags.assign(txn, checkpoint_id, tag)
            self._emit_tag(txn, change)
        return change

    def transfer_publisher(self, caller: str, new_publisher: str) -> str:
        with self.host.transaction("transfer_publisher") as txn:
            previous = self._require_publisher(caller)
            new_publisher = require_non_null(new_publisher, "new_publisher")
            txn.set_attr(self, "publisher", new_publisher)
            txn.emit(PublisherTransferred(
                stream_id=self.stream_id,
                previous_publisher=previous,
                new_publisher=new_publisher,
            ))

        logger.info(
            "Publisher transferred",
            operation="transfer_publisher",
            stream_id=self.stream_id,
            previous_publisher=previous,
            new_publisher=new_publisher,
        )
        return new_publisher

    def allow(self, caller: str, account: str) -> bool:
        with self.host.transaction("allow") as txn:
            self._require_publisher(caller)
            changed = self.entitlement.allow(txn, account)
            if changed:
                txn.emit(AllowlistUpdated(stream_id=self.stream_id, account=normalize_account(account), allowed=True))
        return changed

    def disallow(self, caller: str, account: str) -> bool:
        with self.host.transaction("disallow") as txn:
            self._require_publisher(caller)
            changed = self.entitlement.disallow(txn, account)
            if changed:
                txn.emit(AllowlistUpdated(stream_id=self.stream_id, account=normalize_account(account), allowed=False))
        return changed

    def allow_many(self, caller: str, accounts: Iterable[str]) -> List[str]:
        with self.host.transaction("allow_many") as txn:
            self._require_publisher(caller)
            added = self.entitlement.allow_many(txn, accounts)
            for account in added:
                txn.emit(AllowlistUpdated(stream_id=self.stream_id, account=account, allowed=True))
        return added

    def set_open(self, caller: str, open: bool) -> bool:
        with self.host.transaction("set_open") as txn:
            self._require_publisher(caller)
            changed = self.entitlement.set_open(txn, open)
            if changed:
                txn.emit(AllowlistModeChanged(stream_id=self.stream_id, open=bool(open)))
        return changed

    def deliver(
        self,
        caller: str,
        consumer: str,
        checkpoint_id: str,
        wrapped_key: bytes,
        nonce: bytes,
        sender_public_key: bytes,
    ) -> KeyEnvelope:
        """Store a wrapped key for an entitled consumer. Write-once."""
        with self.host.transaction("deliver") as txn:
            self._require_publisher(caller)
            consumer = require_non_null(consumer, "consumer")
            self.chain.require(checkpoint_id)
            wrapped_key, nonce, sender_public_key = self.envelopes.validate_payload(
                wrapped_key, nonce, sender_public_key
            )
            if self.envelopes.exists(consumer, checkpoint_id):
                raise AlreadyDelivered(f"Envelope for {consumer} on {checkpoint_id} already delivered")
            if not self.entitlement.may_consume(consumer, self.scope_for(checkpoint_id)):
                raise NotEntitled(f"{consumer} is not entitled to {checkpoint_id}")

            envelope = self.envelopes.put(txn, consumer, checkpoint_id, wrapped_key, nonce, sender_public_key)
            txn.emit(KeyEnvelopeDelivered(
                stream_id=self.stream_id,
                consumer=consumer,
                checkpoint_id=checkpoint_id,
                wrapped_key=wrapped_key.hex(),
                nonce=nonce.hex(),
                sender_public_key=sender_public_key.hex(),
            ))
        return envelope

    # ------------------------------------------------------------------
    # Consumer calls
    # ------------------------------------------------------------------

    def consume(self, caller: str, checkpoint_id: str = "") -> bool:
        """Consume the caller's own entitlement for ``checkpoint_id``.

        Returns True when a consumption was recorded (counted modes) and
        False for the stateless modes. Threshold and allowlist streams
        raise NotEntitled for an account that does not qualify; a
        qualifying account gets False and nothing is recorded.
        """
        if self.mode == EntitlementMode.COUNTED_PER_CHECKPOINT and not checkpoint_id:
            raise InvalidArgument("checkpoint_id", "Required in per-checkpoint mode", checkpoint_id)

        with self.host.transaction("consume") as txn:
            recorded = self.entitlement.consume(txn, caller, self.scope_for(checkpoint_id))
            if recorded is not None:
                account, scope = recorded
                txn.emit(EntitlementConsumed(
                    stream_id=self.stream_id,
                    account=account,
                    scope=scope,
                    cost=str(self.entitlement.config.cost),
                ))
        return recorded is not None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load_state(self, data: Dict[str, Any]) -> None:
        """Install committed collections from a snapshot (see ``chronicle.store``)."""
        self.chain.load([Checkpoint.from_dict(c) for c in data.get("checkpoints", [])])
        self.tags.load([(t, c) for t, c in data.get("tags", {}).items()])
        self.entitlement.load(data.get("entitlement_state", {}))
        self.envelopes.load([KeyEnvelope.from_dict(e) for e in data.get("envelopes", [])])

    def export_state(self) -> Dict[str, Any]:
        return {
            "stream_id": self.stream_id,
            "name": self.name,
            "publisher": self.publisher,
            "created_at": self.created_at,
            "created_block": self.created_block,
            "entitlement": self.entitlement.config.to_dict(),
            "entitlement_state": self.entitlement.export(),
            "checkpoints": [c.to_dict() for c in self.chain],
            "tags": dict(self.tags.items()),
            "envelopes": [e.to_dict() for e in self.envelopes],
        }
