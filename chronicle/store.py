"""
CHRONICLE State Persistence

Snapshot and restore of a whole registry as one JSON document.

    snapshot(registry) ──► {"format", "host", "registry", "balances", "streams"}
                                      │
    restore(doc) ◄── schema check ◄───┘
        └─ rebuilds every stream, then recomputes every checkpoint
           identifier and linkage; any mismatch rejects the document.

Notifications are not persisted. A restored registry starts with an empty
event store and continues from the saved host height and timestamp.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from chronicle.capabilities import InMemoryTokenLedger
from chronicle.config import get_config
from chronicle.core import load_json
from chronicle.entitlement import EntitlementConfig
from chronicle.hardening import LedgerError
from chronicle.host import ExecutionHost
from chronicle.observability import LedgerLayer, get_logger, timed_operation
from chronicle.registry import StreamRegistry
from chronicle.schema import validate_against_schema
from chronicle.stream import Stream

logger = get_logger("store", LedgerLayer.STORE)

STATE_FORMAT = "chronicle.state.v1"


class StateError(Exception):
    """A state document failed schema or integrity checks."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = list(errors or [])
        detail = "; ".join(self.errors[:5])
        super().__init__(f"{message}: {detail}" if detail else message)


def snapshot(registry: StreamRegistry) -> Dict[str, Any]:
    """Serialize a registry (and its token ledger, when in-memory)."""
    with registry.host.lock:
        doc: Dict[str, Any] = {
            "format": STATE_FORMAT,
            "host": {
                "height": registry.host.height,
                "last_timestamp": registry.host.last_timestamp,
            },
            "registry": {"counter": registry.counter},
            "streams": [stream.export_state() for stream in registry.streams()],
        }
        if isinstance(registry.burn, InMemoryTokenLedger):
            doc["balances"] = registry.burn.export()
    return doc


def _check_host_state(doc: Dict[str, Any]) -> List[str]:
    """Host and registry counters must be at or past everything they produced."""
    errors: List[str] = []
    blocks = [0]
    timestamps = [0]
    for data in doc["streams"]:
        blocks.append(data["created_block"])
        timestamps.append(data["created_at"])
        for c in data.get("checkpoints", []):
            blocks.append(c["sequence"])
            timestamps.append(c["published_at"])

    height = doc["host"]["height"]
    if height < max(blocks):
        errors.append(f"host: height {height} behind recorded sequence {max(blocks)}")
    last_timestamp = doc["host"]["last_timestamp"]
    if last_timestamp < max(timestamps):
        errors.append(f"host: last_timestamp {last_timestamp} behind recorded time {max(timestamps)}")
    counter = doc["registry"]["counter"]
    if counter < len(doc["streams"]):
        errors.append(f"registry: counter {counter} below stream count {len(doc['streams'])}")
    return errors


@timed_operation(logger, "restore")
def restore(
    doc: Dict[str, Any],
    *,
    clock: Optional[Callable[[], int]] = None,
    tokens: Optional[InMemoryTokenLedger] = None,
) -> StreamRegistry:
    """Rebuild a registry from a snapshot document.

    Raises:
        StateError: schema violation or integrity failure
    """
    errors = validate_against_schema(doc)
    if errors:
        raise StateError("State document failed schema validation", errors)

    if tokens is None:
        tokens = InMemoryTokenLedger(doc.get("balances", {}))

    host = ExecutionHost(clock=clock)
    host.resume(doc["host"]["height"], doc["host"]["last_timestamp"])
    registry = StreamRegistry(host, burn=tokens, balance=tokens)

    integrity: List[str] = []
    for data in doc["streams"]:
        try:
            stream = Stream(
                host,
                data["stream_id"],
                data["publisher"],
                EntitlementConfig.from_dict(data["entitlement"]),
                name=data["name"],
                burn=tokens,
                balance=tokens,
                created_at=data["created_at"],
                created_block=data["created_block"],
            )
            stream.load_state(data)
        except (LedgerError, ValueError) as e:
            integrity.append(f"stream {data['stream_id']}: {e}")
            continue
        integrity.extend(f"stream {stream.stream_id}: {e}" for e in stream.verify())
        if stream.stream_id in registry:
            integrity.append(f"stream {stream.stream_id}: duplicate stream")
            continue
        registry.adopt(stream)

    integrity.extend(_check_host_state(doc))

    if integrity:
        raise StateError("State document failed integrity checks", integrity)

    registry.resume_counter(doc["registry"]["counter"])
    logger.debug(
        "State restored",
        operation="restore",
        streams=len(registry),
        height=host.height,
    )
    return registry


@timed_operation(logger, "save_state")
def save_state(registry: StreamRegistry, path: Union[str, Path, None] = None) -> Path:
    """Write a snapshot atomically (temp file in the same directory, then rename)."""
    path = Path(path or get_config().store.state_path.get())
    path.parent.mkdir(parents=True, exist_ok=True)
    doc = snapshot(registry)

    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(doc, f, indent=2, sort_keys=True)
            f.write("\n")
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise

    logger.debug("State saved", operation="save_state", path=str(path))
    return path


def load_state(
    path: Union[str, Path, None] = None,
    *,
    clock: Optional[Callable[[], int]] = None,
) -> StreamRegistry:
    path = Path(path or get_config().store.state_path.get())
    if not path.exists():
        raise StateError(f"State file not found: {path}")
    try:
        doc = load_json(path)
    except json.JSONDecodeError as e:
        raise StateError(f"State file is not valid JSON: {path}", [str(e)]) from e
    return restore(doc, clock=clock)
