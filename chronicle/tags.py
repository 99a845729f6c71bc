"""
CHRONICLE Tag Registry

Bidirectional label <-> checkpoint mapping, scoped to one stream. A tag
resolves to at most one checkpoint and a checkpoint carries at most one tag.

Both maps are only ever written by ``_pair``; there is no public way to
update one direction without the other.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from chronicle.hardening import InvalidArgument
from chronicle.host import Transaction


@dataclass(frozen=True)
class TagChange:
    """Outcome of one assignment, including the pairings it displaced."""
    tag: str
    checkpoint_id: str
    previous_checkpoint_id: str = ""
    previous_tag: str = ""


class TagRegistry:
    """Per-stream tag maps."""

    def __init__(self, max_tag_length: int = 128):
        self.max_tag_length = max_tag_length
        self._forward: Dict[str, str] = {}
        self._reverse: Dict[str, str] = {}

    def validate_tag(self, tag: object) -> str:
        if not isinstance(tag, str):
            raise InvalidArgument("tag", f"Expected string, got {type(tag).__name__}", tag)
        if not tag:
            raise InvalidArgument("tag", "Cannot be empty", tag)
        if len(tag) > self.max_tag_length:
            raise InvalidArgument("tag", f"Too long (max {self.max_tag_length} chars)", tag)
        return tag

    def assign(self, txn: Transaction, checkpoint_id: str, tag: str) -> TagChange:
        """Pair ``tag`` with ``checkpoint_id``.

        The caller has already checked that the checkpoint exists.
        """
        tag = self.validate_tag(tag)
        return self._pair(txn, tag, checkpoint_id)

    def _pair(self, txn: Transaction, tag: str, checkpoint_id: str) -> TagChange:
        previous_checkpoint_id = self._forward.get(tag, "")
        previous_tag = self._reverse.get(checkpoint_id, "")

        if previous_checkpoint_id and previous_checkpoint_id != checkpoint_id:
            txn.pop_item(self._reverse, previous_checkpoint_id)
        if previous_tag and previous_tag != tag:
            txn.pop_item(self._forward, previous_tag)

        txn.set_item(self._forward, tag, checkpoint_id)
        txn.set_item(self._reverse, checkpoint_id, tag)

        return TagChange(
            tag=tag,
            checkpoint_id=checkpoint_id,
            previous_checkpoint_id=previous_checkpoint_id if previous_checkpoint_id != checkpoint_id else "",
            previous_tag=previous_tag if previous_tag != tag else "",
        )

    def resolve(self, tag: str) -> Optional[str]:
        return self._forward.get(tag)

    def tag_of(self, checkpoint_id: str) -> str:
        """Tag of ``checkpoint_id``, or the empty string when untagged."""
        return self._reverse.get(checkpoint_id, "")

    def items(self) -> List[Tuple[str, str]]:
        """(tag, checkpoint_id) pairs, sorted by tag."""
        return sorted(self._forward.items())

    def __len__(self) -> int:
        return len(self._forward)

    def verify(self) -> List[str]:
        """Check that both maps describe the same pairing."""
        errors: List[str] = []
        if len(self._forward) != len(self._reverse):
            errors.append(
                f"tag maps disagree in size: {len(self._forward)} forward, {len(self._reverse)} reverse"
            )
        for tag, checkpoint_id in self._forward.items():
            if self._reverse.get(checkpoint_id) != tag:
                errors.append(f"tag {tag!r} -> {checkpoint_id} has no matching reverse entry")
        for checkpoint_id, tag in self._reverse.items():
            if self._forward.get(tag) != checkpoint_id:
                errors.append(f"checkpoint {checkpoint_id} -> {tag!r} has no matching forward entry")
        return errors

    def load(self, pairs: List[Tuple[str, str]]) -> None:
        """Install committed pairings (restore path)."""
        for tag, checkpoint_id in pairs:
            self._forward[tag] = checkpoint_id
            self._reverse[checkpoint_id] = tag
