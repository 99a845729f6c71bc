"""
CHRONICLE Checkpoint Chain

Append-only, hash-linked sequence of immutable checkpoint records.

    checkpoint_id = sha256(JCS({
        stream_id, predecessor_id,
        state_commitment, ciphertext_hash, manifest_hash,
        published_at, sequence,
    }))

The identifier is bound to its predecessor and to the commit timestamp and
sequence marker, not just to content. Replaying identical content at another
position or time yields a different identifier, and a future identifier
cannot be computed before the head it links to exists.

Only ``ciphertext_pointer`` may change after publication (storage-tier
migration). It is not an identifier input, so migrating it never changes the
identifier.

Authorization is not checked here; ``chronicle.stream`` gates every write on
the publisher before calling into the chain.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, Iterator, List, Optional

from chronicle.core import GENESIS_ID, digest_of
from chronicle.hardening import IdentifierCollision, InvalidArgument, NotFound, OutOfRange, Validators
from chronicle.host import Transaction

CHECKPOINT_ID_DOMAIN = "chronicle.checkpoint.v1"


def derive_checkpoint_id(
    *,
    stream_id: str,
    predecessor_id: str,
    state_commitment: str,
    ciphertext_hash: str,
    manifest_hash: str,
    published_at: int,
    sequence: int,
) -> str:
    """Deterministic checkpoint identifier.

    Changing any single input changes the result.
    """
    return digest_of({
        "domain": CHECKPOINT_ID_DOMAIN,
        "stream_id": stream_id,
        "predecessor_id": predecessor_id,
        "state_commitment": state_commitment,
        "ciphertext_hash": ciphertext_hash,
        "manifest_hash": manifest_hash,
        "published_at": int(published_at),
        "sequence": int(sequence),
    })


@dataclass(frozen=True)
class Checkpoint:
    """
    One immutable append.

    ``predecessor_id`` is ``GENESIS_ID`` for the first checkpoint of a stream.
    """
    checkpoint_id: str
    stream_id: str
    index: int
    predecessor_id: str
    state_commitment: str
    ciphertext_hash: str
    ciphertext_pointer: str
    manifest_hash: str
    published_at: int
    sequence: int

    @property
    def is_first(self) -> bool:
        return self.predecessor_id == GENESIS_ID

    def expected_id(self) -> str:
        """Recompute the identifier from the stored fields."""
        return derive_checkpoint_id(
            stream_id=self.stream_id,
            predecessor_id=self.predecessor_id,
            state_commitment=self.state_commitment,
            ciphertext_hash=self.ciphertext_hash,
            manifest_hash=self.manifest_hash,
            published_at=self.published_at,
            sequence=self.sequence,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "stream_id": self.stream_id,
            "index": self.index,
            "predecessor_id": self.predecessor_id,
            "state_commitment": self.state_commitment,
            "ciphertext_hash": self.ciphertext_hash,
            "ciphertext_pointer": self.ciphertext_pointer,
            "manifest_hash": self.manifest_hash,
            "published_at": self.published_at,
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        return cls(
            checkpoint_id=str(data["checkpoint_id"]),
            stream_id=str(data["stream_id"]),
            index=int(data["index"]),
            predecessor_id=str(data["predecessor_id"]),
            state_commitment=str(data["state_commitment"]),
            ciphertext_hash=str(data["ciphertext_hash"]),
            ciphertext_pointer=str(data["ciphertext_pointer"]),
            manifest_hash=str(data["manifest_hash"]),
            published_at=int(data["published_at"]),
            sequence=int(data["sequence"]),
        )


class CheckpointChain:
    """
    Per-stream checkpoint storage: head, count, sequence index and id lookup.

    Example:
        chain = CheckpointChain(stream_id)
        with host.transaction() as txn:
            cp = chain.append(txn, state_commitment=..., ciphertext_hash=...,
                              ciphertext_pointer="ipfs://...", manifest_hash=...)
        assert chain.head == cp.checkpoint_id
    """

    def __init__(self, stream_id: str, max_pointer_length: int = 2048):
        self.stream_id = stream_id
        self.max_pointer_length = max_pointer_length
        self._by_id: Dict[str, Checkpoint] = {}
        self._order: List[str] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def head(self) -> str:
        """Identifier of the latest checkpoint, or ``GENESIS_ID`` when empty."""
        return self._order[-1] if self._order else GENESIS_ID

    @property
    def count(self) -> int:
        return len(self._order)

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, checkpoint_id: object) -> bool:
        return checkpoint_id in self._by_id

    def __iter__(self) -> Iterator[Checkpoint]:
        """Checkpoints in publish order."""
        for checkpoint_id in list(self._order):
            yield self._by_id[checkpoint_id]

    def get(self, checkpoint_id: str) -> Optional[Checkpoint]:
        """Record for ``checkpoint_id``, or None. Never synthesizes data."""
        return self._by_id.get(checkpoint_id)

    def require(self, checkpoint_id: str) -> Checkpoint:
        checkpoint = self._by_id.get(checkpoint_id)
        if checkpoint is None:
            raise NotFound(f"Checkpoint not found: {checkpoint_id}")
        return checkpoint

    def get_by_index(self, index: int) -> Checkpoint:
        if isinstance(index, bool) or not isinstance(index, int):
            raise InvalidArgument("index", f"Expected int, got {type(index).__name__}", index)
        if index < 0 or index >= len(self._order):
            raise OutOfRange(f"Index {index} out of range (count={len(self._order)})")
        return self._by_id[self._order[index]]

    def history(self, from_id: Optional[str] = None) -> Iterator[Checkpoint]:
        """Walk predecessor links from ``from_id`` (default: head) back to genesis."""
        current = self.head if from_id is None else from_id
        if current != GENESIS_ID and current not in self._by_id:
            raise NotFound(f"Checkpoint not found: {current}")

        remaining = len(self._by_id)
        while current != GENESIS_ID:
            if remaining < 0:
                raise RuntimeError(f"Predecessor cycle detected in stream {self.stream_id}")
            checkpoint = self._by_id[current]
            yield checkpoint
            current = checkpoint.predecessor_id
            remaining -= 1

    def verify(self) -> List[str]:
        """Check chain integrity.

        Every identifier must recompute from its fields, link to the entry
        before it, sit at its own index, and appear once. Following
        predecessor links from head must reach ``GENESIS_ID`` in exactly
        ``count`` steps. Returns a list of error strings (empty if valid).
        """
        errors: List[str] = []
        seen = set()
        previous_id = GENESIS_ID
        previous_sequence = -1

        for i, checkpoint_id in enumerate(self._order):
            checkpoint = self._by_id.get(checkpoint_id)
            if checkpoint is None:
                errors.append(f"checkpoint[{i}]: {checkpoint_id} missing from id index")
                continue
            if checkpoint_id in seen:
                errors.append(f"checkpoint[{i}]: duplicate identifier {checkpoint_id}")
            seen.add(checkpoint_id)

            if checkpoint.checkpoint_id != checkpoint_id:
                errors.append(f"checkpoint[{i}]: stored under {checkpoint_id} but carries {checkpoint.checkpoint_id}")
            if checkpoint.index != i:
                errors.append(f"checkpoint[{i}]: index field is {checkpoint.index}")
            if checkpoint.stream_id != self.stream_id:
                errors.append(f"checkpoint[{i}]: belongs to stream {checkpoint.stream_id}")
            if checkpoint.predecessor_id != previous_id:
                errors.append(
                    f"checkpoint[{i}]: chain break - predecessor_id={checkpoint.predecessor_id!r} "
                    f"does not match checkpoint[{i - 1}]={previous_id!r}"
                )
            if checkpoint.sequence <= previous_sequence:
                errors.append(f"checkpoint[{i}]: sequence {checkpoint.sequence} not after {previous_sequence}")

            expected = checkpoint.expected_id()
            if expected != checkpoint_id:
                errors.append(f"checkpoint[{i}]: identifier mismatch - expected {expected!r}")

            previous_id = checkpoint_id
            previous_sequence = checkpoint.sequence

        if len(self._by_id) != len(self._order):
            errors.append(f"id index holds {len(self._by_id)} records but order holds {len(self._order)}")

        if not errors:
            steps = sum(1 for _ in self.history())
            if steps != len(self._order):
                errors.append(f"walk from head took {steps} steps, expected {len(self._order)}")

        return errors

    # ------------------------------------------------------------------
    # Writes (caller holds the host transaction)
    # ------------------------------------------------------------------

    def _validate_pointer(self, pointer: Any) -> str:
        if not isinstance(pointer, str):
            raise InvalidArgument("ciphertext_pointer", f"Expected string, got {type(pointer).__name__}", pointer)
        if len(pointer) > self.max_pointer_length:
            raise InvalidArgument(
                "ciphertext_pointer", f"Too long (max {self.max_pointer_length} chars)", pointer
            )
        return pointer

    def append(
        self,
        txn: Transaction,
        *,
        state_commitment: str,
        ciphertext_hash: str,
        ciphertext_pointer: str,
        manifest_hash: str,
    ) -> Checkpoint:
        """Derive, link and store a new checkpoint at the commit time of ``txn``."""
        state_commitment = Validators.validate_digest(state_commitment, "state_commitment").raise_if_invalid()
        ciphertext_hash = Validators.validate_digest(ciphertext_hash, "ciphertext_hash").raise_if_invalid()
        manifest_hash = Validators.validate_digest(manifest_hash, "manifest_hash").raise_if_invalid()
        ciphertext_pointer = self._validate_pointer(ciphertext_pointer)

        predecessor_id = self.head
        checkpoint_id = derive_checkpoint_id(
            stream_id=self.stream_id,
            predecessor_id=predecessor_id,
            state_commitment=state_commitment,
            ciphertext_hash=ciphertext_hash,
            manifest_hash=manifest_hash,
            published_at=txn.timestamp,
            sequence=txn.sequence,
        )
        if checkpoint_id in self._by_id or checkpoint_id == GENESIS_ID:
            raise IdentifierCollision(
                f"Derived identifier {checkpoint_id} already exists in stream {self.stream_id}; "
                f"retry at a later sequence"
            )

        checkpoint = Checkpoint(
            checkpoint_id=checkpoint_id,
            stream_id=self.stream_id,
            index=len(self._order),
            predecessor_id=predecessor_id,
            state_commitment=state_commitment,
            ciphertext_hash=ciphertext_hash,
            ciphertext_pointer=ciphertext_pointer,
            manifest_hash=manifest_hash,
            published_at=txn.timestamp,
            sequence=txn.sequence,
        )
        txn.set_item(self._by_id, checkpoint_id, checkpoint)
        txn.append(self._order, checkpoint_id)
        return checkpoint

    def set_pointer(self, txn: Transaction, checkpoint_id: str, new_pointer: str) -> Checkpoint:
        """Replace only the storage pointer. Returns the previous record."""
        current = self.require(checkpoint_id)
        new_pointer = self._validate_pointer(new_pointer)
        if not new_pointer.strip():
            raise InvalidArgument("ciphertext_pointer", "Cannot be empty", new_pointer)

        txn.set_item(self._by_id, checkpoint_id, replace(current, ciphertext_pointer=new_pointer))
        return current

    def load(self, checkpoints: List[Checkpoint]) -> None:
        """Install already-committed records, in publish order (restore path)."""
        if self._order:
            raise RuntimeError("load() requires an empty chain")
        for checkpoint in checkpoints:
            self._by_id[checkpoint.checkpoint_id] = checkpoint
            self._order.append(checkpoint.checkpoint_id)
