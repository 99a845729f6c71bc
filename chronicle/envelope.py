"""
CHRONICLE Key Envelope Store

Write-once, entitlement-gated slot per (consumer, checkpoint) holding an
externally wrapped content key. The payload is stored verbatim and never
interpreted; the size bound caps storage cost only.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from chronicle.hardening import AlreadyDelivered, InvalidArgument, Validators
from chronicle.host import Transaction


@dataclass(frozen=True)
class KeyEnvelope:
    """Wrapped key, its nonce, and the publisher's ephemeral public key."""
    consumer: str
    checkpoint_id: str
    wrapped_key: bytes
    nonce: bytes
    sender_public_key: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consumer": self.consumer,
            "checkpoint_id": self.checkpoint_id,
            "wrapped_key": self.wrapped_key.hex(),
            "nonce": self.nonce.hex(),
            "sender_public_key": self.sender_public_key.hex(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyEnvelope":
        return cls(
            consumer=data["consumer"],
            checkpoint_id=data["checkpoint_id"],
            wrapped_key=bytes.fromhex(data["wrapped_key"]),
            nonce=bytes.fromhex(data["nonce"]),
            sender_public_key=bytes.fromhex(data["sender_public_key"]),
        )


class KeyEnvelopeStore:
    """Envelope map keyed by (consumer, checkpoint_id)."""

    def __init__(self, max_wrapped_key_bytes: int = 1024, max_public_key_bytes: int = 256):
        self.max_wrapped_key_bytes = max_wrapped_key_bytes
        self.max_public_key_bytes = max_public_key_bytes
        self._envelopes: Dict[Tuple[str, str], KeyEnvelope] = {}

    def validate_payload(self, wrapped_key: Any, nonce: Any, sender_public_key: Any) -> Tuple[bytes, bytes, bytes]:
        wrapped_key = Validators.validate_bytes(
            wrapped_key, "wrapped_key", min_length=1, max_length=self.max_wrapped_key_bytes
        ).raise_if_invalid()
        sender_public_key = Validators.validate_bytes(
            sender_public_key, "sender_public_key", min_length=1, max_length=self.max_public_key_bytes
        ).raise_if_invalid()
        if isinstance(nonce, bytearray):
            nonce = bytes(nonce)
        if not isinstance(nonce, bytes):
            raise InvalidArgument("nonce", f"Expected bytes, got {type(nonce).__name__}", nonce)
        return wrapped_key, nonce, sender_public_key

    def put(
        self,
        txn: Transaction,
        consumer: str,
        checkpoint_id: str,
        wrapped_key: bytes,
        nonce: bytes,
        sender_public_key: bytes,
    ) -> KeyEnvelope:
        """Store a new envelope. Payload must already be validated."""
        key = (consumer, checkpoint_id)
        if key in self._envelopes:
            raise AlreadyDelivered(f"Envelope for {consumer} on {checkpoint_id} already delivered")
        envelope = KeyEnvelope(consumer, checkpoint_id, wrapped_key, nonce, sender_public_key)
        txn.set_item(self._envelopes, key, envelope)
        return envelope

    def get(self, consumer: str, checkpoint_id: str) -> Optional[KeyEnvelope]:
        return self._envelopes.get((consumer, checkpoint_id))

    def exists(self, consumer: str, checkpoint_id: str) -> bool:
        return (consumer, checkpoint_id) in self._envelopes

    def for_consumer(self, consumer: str) -> List[KeyEnvelope]:
        return [e for (c, _), e in sorted(self._envelopes.items()) if c == consumer]

    def __len__(self) -> int:
        return len(self._envelopes)

    def __iter__(self):
        for key in sorted(self._envelopes):
            yield self._envelopes[key]

    def load(self, envelopes: List[KeyEnvelope]) -> None:
        for envelope in envelopes:
            self._envelopes[(envelope.consumer, envelope.checkpoint_id)] = envelope
