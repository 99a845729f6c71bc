"""
CHRONICLE Entitlement Strategy

Who may receive key material for a checkpoint. The strategy is chosen once at
stream creation and never changes afterward.

    ┌──────────────────────────┬───────────────────────┬─────────────────────┐
    │ Mode                     │ may_consume           │ consume             │
    ├──────────────────────────┼───────────────────────┼─────────────────────┤
    │ COUNTED_PER_CHECKPOINT   │ consumed(acct, cp)    │ burn cost, record   │
    │ COUNTED_UNIVERSAL        │ consumed(acct)        │ burn cost, record   │
    │ THRESHOLD                │ balance >= minimum    │ check only          │
    │ ALLOWLIST                │ publisher/roster/open │ check only          │
    └──────────────────────────┴───────────────────────┴─────────────────────┘

Counted modes are exactly-once per (account, scope): the check, the burn and
the record happen inside one host transaction, and a recorded pair is never
cleared. Zero cost is valid and still exactly-once.

``EntitlementConfig`` is the variant plus its parameters; ``EntitlementEngine``
dispatches on the mode. There is no subclass per strategy.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from chronicle.accounts import normalize_account, require_non_null
from chronicle.capabilities import BalanceCapability, BurnCapability
from chronicle.hardening import (
    AlreadyConsumed,
    InvalidArgument,
    NotEntitled,
    ScopeNotFound,
    Validators,
)
from chronicle.host import Transaction
from chronicle.observability import LedgerLayer, get_logger

logger = get_logger("engine", LedgerLayer.ENTITLEMENT)

# Record key used by COUNTED_UNIVERSAL; the checkpoint argument is ignored.
STREAM_SCOPE = "*"


class EntitlementMode(Enum):
    """Entitlement strategy variants."""
    COUNTED_PER_CHECKPOINT = "counted_per_checkpoint"
    COUNTED_UNIVERSAL = "counted_universal"
    THRESHOLD = "threshold"
    ALLOWLIST = "allowlist"

    @property
    def is_counted(self) -> bool:
        return self in (EntitlementMode.COUNTED_PER_CHECKPOINT, EntitlementMode.COUNTED_UNIVERSAL)


@dataclass(frozen=True)
class EntitlementConfig:
    """
    Strategy variant plus its parameters.

    ``cost`` applies to counted modes, ``minimum`` to THRESHOLD and ``open``
    to ALLOWLIST (initial value; the publisher may toggle it later).
    """
    mode: EntitlementMode
    cost: Decimal = Decimal("0")
    minimum: Decimal = Decimal("0")
    open: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.mode, EntitlementMode):
            raise InvalidArgument("mode", f"Unknown entitlement mode: {self.mode!r}", self.mode)
        object.__setattr__(self, "cost", Validators.validate_amount(self.cost, "cost").raise_if_invalid())
        object.__setattr__(self, "minimum", Validators.validate_amount(self.minimum, "minimum").raise_if_invalid())

    @classmethod
    def counted_per_checkpoint(cls, cost: Any = 0) -> "EntitlementConfig":
        return cls(EntitlementMode.COUNTED_PER_CHECKPOINT, cost=cost)

    @classmethod
    def counted_universal(cls, cost: Any = 0) -> "EntitlementConfig":
        return cls(EntitlementMode.COUNTED_UNIVERSAL, cost=cost)

    @classmethod
    def threshold(cls, minimum: Any) -> "EntitlementConfig":
        return cls(EntitlementMode.THRESHOLD, minimum=minimum)

    @classmethod
    def allowlist(cls, open: bool = False) -> "EntitlementConfig":
        return cls(EntitlementMode.ALLOWLIST, open=bool(open))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"mode": self.mode.value}
        if self.mode.is_counted:
            data["cost"] = format(self.cost, "f")
        elif self.mode == EntitlementMode.THRESHOLD:
            data["minimum"] = format(self.minimum, "f")
        else:
            data["open"] = self.open
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntitlementConfig":
        try:
            mode = EntitlementMode(data["mode"])
        except (KeyError, ValueError):
            raise InvalidArgument("mode", f"Unknown entitlement mode: {data.get('mode')!r}", data.get("mode")) from None
        return cls(
            mode,
            cost=data.get("cost", "0"),
            minimum=data.get("minimum", "0"),
            open=bool(data.get("open", False)),
        )


class EntitlementEngine:
    """
    Per-stream entitlement state and checks.

    Args:
        config: The stream's strategy
        publisher: Returns the stream's current publisher
        scope_exists: Whether a checkpoint id exists in the stream
        burn: Burn capability (required for counted modes with a non-zero cost)
        balance: Balance capability (required for THRESHOLD)
    """

    def __init__(
        self,
        config: EntitlementConfig,
        *,
        publisher: Callable[[], str],
        scope_exists: Callable[[str], bool],
        burn: Optional[BurnCapability] = None,
        balance: Optional[BalanceCapability] = None,
    ):
        if config.mode.is_counted and config.cost > 0 and burn is None:
            raise ValueError(f"{config.mode.value} with cost {config.cost} requires a burn capability")
        if config.mode == EntitlementMode.THRESHOLD and balance is None:
            raise ValueError("threshold mode requires a balance capability")

        self.config = config
        self._publisher = publisher
        self._scope_exists = scope_exists
        self._burn = burn
        self._balance = balance
        self._consumed: Set[Tuple[str, str]] = set()
        self._roster: Set[str] = set()
        self.open = config.open

    @property
    def mode(self) -> EntitlementMode:
        return self.config.mode

    def _record_key(self, account: str, scope: str) -> Tuple[str, str]:
        if self.mode == EntitlementMode.COUNTED_UNIVERSAL:
            return (account, STREAM_SCOPE)
        return (account, scope)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def may_consume(self, account: str, scope: str) -> bool:
        """Whether ``account`` is currently entitled to material for ``scope``."""
        account = normalize_account(account)
        mode = self.mode
        if mode.is_counted:
            return self._record_key(account, scope) in self._consumed
        if mode == EntitlementMode.THRESHOLD:
            return Decimal(str(self._balance.balance_of(account))) >= self.config.minimum
        return self.open or account == self._publisher() or account in self._roster

    def can_consume(self, account: str, scope: str) -> bool:
        """Whether a ``consume`` call would pass the ledger's own checks now.

        The burn outcome is not predicted; an account that cannot cover the
        cost still fails at burn time.
        """
        account = normalize_account(account)
        if self.mode.is_counted:
            if self.mode == EntitlementMode.COUNTED_PER_CHECKPOINT and not self._scope_exists(scope):
                return False
            return self._record_key(account, scope) not in self._consumed
        return self.may_consume(account, scope)

    def consumers(self) -> List[Tuple[str, str]]:
        """Recorded (account, scope) pairs, sorted."""
        return sorted(self._consumed)

    def roster(self) -> List[str]:
        return sorted(self._roster)

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    def consume(self, txn: Transaction, account: str, scope: str) -> Optional[Tuple[str, str]]:
        """Consume entitlement for ``scope``.

        Returns the recorded (account, scope) pair in counted modes and None
        in the stateless modes.
        """
        account = require_non_null(account)
        mode = self.mode

        if mode == EntitlementMode.THRESHOLD:
            if not self.may_consume(account, scope):
                raise NotEntitled(f"{account} holds less than {self.config.minimum}")
            return None
        if mode == EntitlementMode.ALLOWLIST:
            if not self.may_consume(account, scope):
                raise NotEntitled(f"{account} is not on the allowlist")
            return None

        if mode == EntitlementMode.COUNTED_PER_CHECKPOINT and not self._scope_exists(scope):
            raise ScopeNotFound(f"Checkpoint not found: {scope}")

        key = self._record_key(account, scope)
        if key in self._consumed:
            raise AlreadyConsumed(f"{account} already consumed {key[1]}")

        if self.config.cost > 0:
            self._burn.burn(account, self.config.cost)
        txn.add(self._consumed, key)

        logger.debug(
            "Entitlement consumed",
            operation="consume",
            account=account,
            scope=key[1],
            cost=str(self.config.cost),
        )
        return key

    # ------------------------------------------------------------------
    # Allowlist management (caller is already authorized as publisher)
    # ------------------------------------------------------------------

    def _require_allowlist(self) -> None:
        if self.mode != EntitlementMode.ALLOWLIST:
            raise InvalidArgument("mode", f"Stream uses {self.mode.value}, not allowlist", self.mode.value)

    def allow(self, txn: Transaction, account: str) -> bool:
        """Add ``account`` to the roster. Returns False if already present."""
        self._require_allowlist()
        account = require_non_null(account)
        if account in self._roster:
            return False
        txn.add(self._roster, account)
        return True

    def disallow(self, txn: Transaction, account: str) -> bool:
        """Remove ``account`` from the roster. Returns False if absent."""
        self._require_allowlist()
        account = normalize_account(account)
        if account not in self._roster:
            return False
        txn.discard(self._roster, account)
        return True

    def allow_many(self, txn: Transaction, accounts: Iterable[str]) -> List[str]:
        """Batch add. Returns the accounts that were newly added."""
        self._require_allowlist()
        normalized = [require_non_null(a) for a in accounts]
        added = []
        for account in normalized:
            if account not in self._roster:
                txn.add(self._roster, account)
                added.append(account)
        return added

    def set_open(self, txn: Transaction, open: bool) -> bool:
        """Open or close the allowlist. Returns False if unchanged."""
        self._require_allowlist()
        if self.open == bool(open):
            return False
        txn.set_attr(self, "open", bool(open))
        return True

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export(self) -> Dict[str, Any]:
        return {
            "consumed": [list(pair) for pair in self.consumers()],
            "roster": self.roster(),
            "open": self.open,
        }

    def load(self, data: Dict[str, Any]) -> None:
        self._consumed = {(str(a), str(s)) for a, s in data.get("consumed", [])}
        self._roster = set(data.get("roster", []))
        self.open = bool(data.get("open", self.config.open))
