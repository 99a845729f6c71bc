"""
Off-chain index rebuilt purely from notifications.

``ChainIndex`` never queries the ledger. Subscribing it to the host bus (or
replaying an ``EventStore`` into it) yields the same per-stream views the
ledger serves: head, ordered checkpoints, current pointers, tag maps,
publisher, consumption records, roster and delivered envelopes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from chronicle.core import GENESIS_ID
from chronicle.events import (
    AllowlistModeChanged,
    AllowlistUpdated,
    CheckpointPublished,
    CiphertextPointerUpdated,
    EntitlementConsumed,
    Event,
    KeyEnvelopeDelivered,
    Projection,
    PublisherTransferred,
    StreamCreated,
    TagAssigned,
)


@dataclass
class StreamView:
    """Indexed view of one stream."""
    stream_id: str
    publisher: str = ""
    name: str = ""
    entitlement: Dict[str, Any] = field(default_factory=dict)
    head: str = GENESIS_ID
    order: List[str] = field(default_factory=list)
    checkpoints: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    tags: Dict[str, str] = field(default_factory=dict)
    tag_of: Dict[str, str] = field(default_factory=dict)
    consumed: Set[Tuple[str, str]] = field(default_factory=set)
    roster: Set[str] = field(default_factory=set)
    open: bool = False
    deliveries: Dict[Tuple[str, str], Dict[str, str]] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.order)

    def pointer_of(self, checkpoint_id: str) -> Optional[str]:
        record = self.checkpoints.get(checkpoint_id)
        return record["ciphertext_pointer"] if record else None


class ChainIndex(Projection):
    """Projection of every stream's read views."""

    def __init__(self):
        super().__init__()
        self.streams: Dict[str, StreamView] = {}

    def view(self, stream_id: str) -> StreamView:
        return self.streams.setdefault(stream_id, StreamView(stream_id))

    def reset(self) -> None:
        self.streams = {}

    def handle_event(self, event: Event) -> None:
        view = self.view(event.stream_id)

        if isinstance(event, StreamCreated):
            view.publisher = event.publisher
            view.name = event.name
            view.entitlement = dict(event.entitlement)
            view.open = bool(event.entitlement.get("open", False))

        elif isinstance(event, PublisherTransferred):
            view.publisher = event.new_publisher

        elif isinstance(event, CheckpointPublished):
            view.checkpoints[event.checkpoint_id] = {
                "checkpoint_id": event.checkpoint_id,
                "stream_id": event.stream_id,
                "index": event.index,
                "predecessor_id": event.predecessor_id,
                "state_commitment": event.state_commitment,
                "ciphertext_hash": event.ciphertext_hash,
                "ciphertext_pointer": event.ciphertext_pointer,
                "manifest_hash": event.manifest_hash,
                "published_at": event.published_at,
                "sequence": event.publication_sequence,
            }
            view.order.append(event.checkpoint_id)
            view.head = event.checkpoint_id

        elif isinstance(event, CiphertextPointerUpdated):
            record = view.checkpoints.get(event.checkpoint_id)
            if record is not None:
                record["ciphertext_pointer"] = event.new_pointer

        elif isinstance(event, TagAssigned):
            if event.previous_checkpoint_id:
                view.tag_of.pop(event.previous_checkpoint_id, None)
            if event.previous_tag:
                view.tags.pop(event.previous_tag, None)
            view.tags[event.tag] = event.checkpoint_id
            view.tag_of[event.checkpoint_id] = event.tag

        elif isinstance(event, EntitlementConsumed):
            view.consumed.add((event.account, event.scope))

        elif isinstance(event, AllowlistUpdated):
            if event.allowed:
                view.roster.add(event.account)
            else:
                view.roster.discard(event.account)

        elif isinstance(event, AllowlistModeChanged):
            view.open = event.open

        elif isinstance(event, KeyEnvelopeDelivered):
            view.deliveries[(event.consumer, event.checkpoint_id)] = {
                "wrapped_key": event.wrapped_key,
                "nonce": event.nonce,
                "sender_public_key": event.sender_public_key,
            }
