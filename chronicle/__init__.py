"""
CHRONICLE: Checkpoint Ledger and Entitlement Engine

A single authorized writer (the publisher) appends tamper-evident,
content-addressed checkpoints to a permanent, ordered chain, labels them with
mutable tags, and gates delivery of off-band decryption material to readers
through a pluggable entitlement model. The ledger holds only hashes, opaque
storage pointers and entitlement state.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                     CHECKPOINT LEDGER                                    │
    │                                                                          │
    │  DISPATCH                                                                │
    │    registry.py     Stream arena keyed by stream id                       │
    │    stream.py       One stream: publisher gate, one call = one txn        │
    │                                                                          │
    │  COMPONENTS                                                              │
    │    checkpoint.py   Hash-linked chain, identifier derivation              │
    │    tags.py         Bidirectional tag <-> checkpoint maps                 │
    │    entitlement.py  Counted / threshold / allowlist strategies            │
    │    envelope.py     Write-once, gated key envelopes                       │
    │                                                                          │
    │  RUNTIME                                                                 │
    │    host.py         Serialized calls, commit time, journaled rollback     │
    │    events.py       Notifications, bus, event store, projections          │
    │    indexer.py      Read views rebuilt from notifications                 │
    │    store.py        Schema-validated snapshots                            │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Core Concepts
─────────────

    Checkpoint: One immutable append. Its identifier hashes the stream id, the
    predecessor, the three content hashes, the commit timestamp and the
    commit sequence, so the same content at another position or time gets
    another identifier. Only the storage pointer may change afterward.

    Entitlement: The right to receive key material. Counted modes burn a cost
    exactly once per (account, scope); threshold mode compares a balance;
    allowlist mode checks a publisher-managed roster.

    Key Envelope: An externally wrapped content key stored verbatim, at most
    once per (consumer, checkpoint), and only for an entitled consumer.

Design Principles
─────────────────

    All or nothing: every call commits fully or leaves no trace.

    Fail fast: every rejection raises a LedgerError subclass with a stable
    ``kind``; nothing is retried internally.

    Notifications are complete: each carries every field it changed, so an
    off-chain index never needs to query the ledger.
"""

__version__ = "0.3.0"

# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import CHRONICLE modules on first access."""

    if name in ("StreamRegistry",):
        from chronicle import registry
        return getattr(registry, name)

    if name in ("Stream", "derive_stream_id"):
        from chronicle import stream
        return getattr(stream, name)

    if name in ("Checkpoint", "CheckpointChain", "derive_checkpoint_id"):
        from chronicle import checkpoint
        return getattr(checkpoint, name)

    if name in ("TagRegistry", "TagChange"):
        from chronicle import tags
        return getattr(tags, name)

    if name in ("EntitlementConfig", "EntitlementEngine", "EntitlementMode"):
        from chronicle import entitlement
        return getattr(entitlement, name)

    if name in ("KeyEnvelope", "KeyEnvelopeStore"):
        from chronicle import envelope
        return getattr(envelope, name)

    if name in ("ExecutionHost", "ManualClock", "Transaction"):
        from chronicle import host
        return getattr(host, name)

    if name in ("InMemoryTokenLedger", "InsufficientBalance", "BurnCapability", "BalanceCapability"):
        from chronicle import capabilities
        return getattr(capabilities, name)

    if name in ("Account", "normalize_account"):
        from chronicle import accounts
        return getattr(accounts, name)

    if name in ("ChainIndex",):
        from chronicle import indexer
        return getattr(indexer, name)

    if name in ("snapshot", "restore", "save_state", "load_state", "StateError"):
        from chronicle import store
        return getattr(store, name)

    if name in ("LedgerError", "NotAuthorized", "NotFound", "StreamNotFound", "ScopeNotFound",
                "InvalidArgument", "AlreadyConsumed", "AlreadyDelivered", "NotEntitled",
                "IdentifierCollision", "Collision", "OutOfRange"):
        from chronicle import hardening
        return getattr(hardening, name)

    raise AttributeError(f"module 'chronicle' has no attribute '{name}'")


__all__ = [
    # Dispatch
    "StreamRegistry",
    "Stream",
    # Components
    "Checkpoint",
    "CheckpointChain",
    "TagRegistry",
    "EntitlementConfig",
    "EntitlementEngine",
    "EntitlementMode",
    "KeyEnvelope",
    "KeyEnvelopeStore",
    # Runtime
    "ExecutionHost",
    "ManualClock",
    "InMemoryTokenLedger",
    "Account",
    "ChainIndex",
    "snapshot",
    "restore",
    # Errors
    "LedgerError",
    "NotAuthorized",
    "NotFound",
    "StreamNotFound",
    "ScopeNotFound",
    "InvalidArgument",
    "AlreadyConsumed",
    "AlreadyDelivered",
    "NotEntitled",
    "IdentifierCollision",
    "Collision",
    "OutOfRange",
]
