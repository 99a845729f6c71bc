"""
CHRONICLE Validation and Hardening Module

Error taxonomy, input validation and thread-safety primitives shared by every
ledger component. It addresses:

1. A single exception hierarchy for every failure kind the ledger can raise
2. Input validation with sanitization (digests, accounts, bounded payloads)
3. Thread-safety primitives

Security Model:
    - All inputs are untrusted until validated
    - Every failure is fail-fast and terminal for the call
    - No state mutation happens before validation completes
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional


# =============================================================================
# LEDGER ERROR TYPES
# =============================================================================

class LedgerError(Exception):
    """Base exception for every rejected ledger call."""

    kind = "LedgerError"

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": str(self)}


class NotAuthorized(LedgerError):
    """Caller lacks publisher (or consumer) authority for the call."""

    kind = "NotAuthorized"


class NotFound(LedgerError):
    """Referenced checkpoint does not exist."""

    kind = "NotFound"


class StreamNotFound(NotFound):
    """Referenced stream does not exist."""

    kind = "StreamNotFound"


class ScopeNotFound(NotFound):
    """Entitlement scope (checkpoint) does not exist."""

    kind = "ScopeNotFound"


class InvalidArgument(LedgerError):
    """Empty, zero, malformed or oversized input."""

    kind = "InvalidArgument"

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class AlreadyConsumed(LedgerError):
    """The (account, scope) pair has already been consumed."""

    kind = "AlreadyConsumed"


class AlreadyDelivered(LedgerError):
    """An envelope already exists for the (consumer, checkpoint) pair."""

    kind = "AlreadyDelivered"


class NotEntitled(LedgerError):
    """Entitlement check failed."""

    kind = "NotEntitled"


class IdentifierCollision(LedgerError):
    """A derived checkpoint identifier already exists in the stream."""

    kind = "IdentifierCollision"


class Collision(LedgerError):
    """A derived stream identifier already exists in the registry."""

    kind = "Collision"


class OutOfRange(LedgerError):
    """Index accessor beyond the current count."""

    kind = "OutOfRange"


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[InvalidArgument] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> Any:
        """Raise the first InvalidArgument, or return the sanitized value."""
        if not self.is_valid:
            raise self.errors[0]
        return self.sanitized_value

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[InvalidArgument]) -> 'ValidationResult':
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    # Patterns
    HEX64_PATTERN = re.compile(r'^[a-f0-9]{64}$')
    ACCOUNT_PATTERN = re.compile(r'^0x[a-f0-9]{40}$')

    # Limits
    MAX_STRING_LENGTH = 4096

    @classmethod
    def validate_string(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 1,
        max_length: Optional[int] = None,
        pattern: Optional[re.Pattern] = None,
    ) -> ValidationResult:
        """Validate a string value."""
        max_length = max_length or cls.MAX_STRING_LENGTH
        errors = []

        if not isinstance(value, str):
            errors.append(InvalidArgument(field_name, f"Expected string, got {type(value).__name__}", value))
            return ValidationResult.failure(errors)

        # Sanitize: strip whitespace and null bytes
        sanitized = value.strip().replace('\x00', '')

        if len(sanitized) < min_length:
            errors.append(InvalidArgument(field_name, f"Too short (min {min_length} chars)", value))

        if len(sanitized) > max_length:
            errors.append(InvalidArgument(field_name, f"Too long (max {max_length} chars)", value))

        if pattern and not pattern.match(sanitized):
            errors.append(InvalidArgument(field_name, "Does not match required pattern", value))

        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(sanitized)

    @classmethod
    def validate_digest(cls, value: Any, field_name: str = "digest") -> ValidationResult:
        """Validate a SHA256 digest (64 hex chars), normalized to lowercase."""
        result = cls.validate_string(value, field_name, min_length=64, max_length=64)
        if not result.is_valid:
            return result

        lower = result.sanitized_value.lower()
        if not cls.HEX64_PATTERN.match(lower):
            return ValidationResult.failure([
                InvalidArgument(field_name, "Must be 64 hex characters", value)
            ])

        return ValidationResult.success(lower)

    @classmethod
    def validate_account(cls, value: Any, field_name: str = "account") -> ValidationResult:
        """Validate an account address (0x + 40 hex), normalized to lowercase."""
        result = cls.validate_string(value, field_name, min_length=42, max_length=42)
        if not result.is_valid:
            return result

        lower = result.sanitized_value.lower()
        if not cls.ACCOUNT_PATTERN.match(lower):
            return ValidationResult.failure([
                InvalidArgument(field_name, "Must be an account address (0x + 40 hex)", value)
            ])

        return ValidationResult.success(lower)

    @classmethod
    def validate_amount(cls, value: Any, field_name: str = "amount") -> ValidationResult:
        """Validate a non-negative, finite token amount."""
        try:
            if isinstance(value, Decimal):
                amount = value
            elif isinstance(value, bool):
                raise InvalidOperation
            elif isinstance(value, (str, int)):
                amount = Decimal(value)
            else:
                return ValidationResult.failure([
                    InvalidArgument(field_name, f"Cannot convert {type(value).__name__} to Decimal", value)
                ])
        except InvalidOperation:
            return ValidationResult.failure([InvalidArgument(field_name, "Invalid decimal value", value)])

        if not amount.is_finite():
            return ValidationResult.failure([InvalidArgument(field_name, "Must be a finite number", value)])
        if amount < 0:
            return ValidationResult.failure([InvalidArgument(field_name, "Cannot be negative", value)])

        return ValidationResult.success(amount)

    @classmethod
    def validate_bytes(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 0,
        max_length: int = 65536,
    ) -> ValidationResult:
        """Validate a bytes payload against length bounds."""
        if isinstance(value, bytearray):
            value = bytes(value)

        if not isinstance(value, bytes):
            return ValidationResult.failure([
                InvalidArgument(field_name, f"Expected bytes, got {type(value).__name__}", value)
            ])

        errors = []
        if len(value) < min_length:
            if len(value) == 0:
                errors.append(InvalidArgument(field_name, "Cannot be empty", value))
            else:
                errors.append(InvalidArgument(field_name, f"Too short (min {min_length} bytes)", value))

        if len(value) > max_length:
            errors.append(InvalidArgument(field_name, f"Too long (max {max_length} bytes)", value))

        if errors:
            return ValidationResult.failure(errors)

        return ValidationResult.success(value)


# =============================================================================
# THREAD SAFETY
# =============================================================================

class AtomicCounter:
    """Thread-safe counter."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    def increment(self, delta: int = 1) -> int:
        """Atomically increment and return new value."""
        with self._lock:
            self._value += delta
            return self._value

    def get(self) -> int:
        """Get current value."""
        with self._lock:
            return self._value

    def reset(self, value: int = 0) -> None:
        """Atomically reset the counter to the given value."""
        with self._lock:
            self._value = value
