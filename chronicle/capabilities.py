"""
External capabilities consumed by the entitlement engine.

The ledger never implements balance accounting. Counted entitlement modes call
a burn capability; threshold mode reads a balance capability. Deployments
plug in their own token adapter; ``InMemoryTokenLedger`` is the reference
implementation used by tests and the CLI.
"""

from __future__ import annotations

import threading
from decimal import Decimal
from typing import Dict, Mapping, Optional, Protocol, Union

Amount = Union[Decimal, int, str]


class InsufficientBalance(Exception):
    """Raised by a burn capability when the account cannot cover the amount."""

    def __init__(self, account: str, available: Decimal, required: Decimal):
        self.account = account
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient balance for {account}: have {available}, need {required}"
        )


class BurnCapability(Protocol):
    """Destroys ``amount`` of the account's balance or raises."""

    def burn(self, account: str, amount: Decimal) -> None:
        ...


class BalanceCapability(Protocol):
    """Reads an account's current balance."""

    def balance_of(self, account: str) -> Decimal:
        ...


class InMemoryTokenLedger:
    """
    Reference token adapter implementing both capabilities.

    Balances are seeded up front. There is no mint or transfer.
    """

    def __init__(self, balances: Optional[Mapping[str, Amount]] = None):
        self._balances: Dict[str, Decimal] = {}
        self._burned = Decimal("0")
        self._lock = threading.Lock()
        for account, amount in (balances or {}).items():
            self._balances[account.lower()] = Decimal(str(amount))

    def balance_of(self, account: str) -> Decimal:
        with self._lock:
            return self._balances.get(account.lower(), Decimal("0"))

    def burn(self, account: str, amount: Decimal) -> None:
        amount = Decimal(str(amount))
        if amount < 0:
            raise ValueError(f"Burn amount cannot be negative: {amount}")
        key = account.lower()
        with self._lock:
            available = self._balances.get(key, Decimal("0"))
            if available < amount:
                raise InsufficientBalance(key, available, amount)
            self._balances[key] = available - amount
            self._burned += amount

    @property
    def total_burned(self) -> Decimal:
        with self._lock:
            return self._burned

    def export(self) -> Dict[str, str]:
        """Balances as strings, for persistence."""
        with self._lock:
            return {k: format(v, "f") for k, v in sorted(self._balances.items())}
