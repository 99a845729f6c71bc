"""Account identities.

An account is a ``0x``-prefixed 20-byte address. Addresses derived here come
from Ed25519 public keys: ``0x`` + the last 20 bytes of SHA-256(public key).
The ledger itself only compares normalized address strings.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from chronicle.core import ZERO_ACCOUNT
from chronicle.hardening import InvalidArgument, Validators


def address_from_public_key(pub: bytes) -> str:
    if len(pub) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(pub)}")
    return "0x" + hashlib.sha256(pub).hexdigest()[-40:]


def normalize_account(value: Any, field_name: str = "account") -> str:
    """Validate and lowercase an account address."""
    return Validators.validate_account(value, field_name).raise_if_invalid()


def require_non_null(account: str, field_name: str = "account") -> str:
    account = normalize_account(account, field_name)
    if account == ZERO_ACCOUNT:
        raise InvalidArgument(field_name, "Cannot be the null account", account)
    return account


@dataclass(frozen=True)
class Account:
    """An Ed25519-backed account."""
    address: str
    public_key: bytes

    @classmethod
    def generate(cls) -> "Account":
        return cls.from_private_key(Ed25519PrivateKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "Account":
        """Deterministic account from a 32-byte seed."""
        return cls.from_private_key(Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def from_private_key(cls, sk: Ed25519PrivateKey) -> "Account":
        pub = sk.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return cls(address=address_from_public_key(pub), public_key=pub)

    def __str__(self) -> str:
        return self.address
