"""
Account aggregate

Business methods validate, then raise. The apply_* handlers below are
the only code that writes account state; they are found by naming
convention and run unchanged when an account is replayed from storage.
"""

from decimal import Decimal
from typing import Any

from durable_aggregates.aggregates.root import AggregateRoot
from durable_aggregates.kernel.errors import InvariantViolation
from durable_aggregates.kernel.time import TimeProvider
from durable_aggregates.ledger.events import (
    AccountClosed,
    AccountOpened,
    AccountRenamed,
    FundsDeposited,
    FundsWithdrawn,
)


class AccountClosedError(InvariantViolation):
    """Raised when operating on a closed account"""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account {account_id} is closed")


class InsufficientFunds(InvariantViolation):
    """Raised when a withdrawal would exceed balance plus overdraft"""

    def __init__(self, account_id: str, amount: Decimal, available: Decimal) -> None:
        self.account_id = account_id
        self.amount = amount
        self.available = available
        super().__init__(
            f"Account {account_id} cannot withdraw {amount}: only {available} available"
        )


class Account(AggregateRoot):
    aggregate_type = "account"

    def __init__(self, aggregate_id: str) -> None:
        super().__init__(aggregate_id)
        self.owner: str | None = None
        self.currency: str | None = None
        self.balance = Decimal("0")
        self.overdraft_limit = Decimal("0")
        self.closed = False
        self.close_reason: str | None = None

    # ------------------------------------------------------------------
    # Factory & business methods
    # ------------------------------------------------------------------

    @classmethod
    def open(
        cls,
        account_id: str,
        owner: str,
        currency: str,
        overdraft_limit: Decimal | int | str = 0,
        clock: TimeProvider | None = None,
    ) -> "Account":
        """
        Create a new account

        Raises:
            InvariantViolation: blank owner, non-ISO currency code, or
                negative overdraft limit
        """
        overdraft = Decimal(overdraft_limit)
        if not owner.strip():
            raise InvariantViolation("Account owner must not be blank")
        if len(currency) != 3 or not currency.isalpha():
            raise InvariantViolation(f"Currency must be a 3-letter code, got {currency!r}")
        if overdraft < 0:
            raise InvariantViolation("Overdraft limit cannot be negative")

        account = cls(account_id)
        if clock is not None:
            account.clock = clock
        account.raise_event(
            AccountOpened(owner=owner.strip(), currency=currency.upper(), overdraft_limit=overdraft)
        )
        return account

    def deposit(self, amount: Decimal | int | str) -> None:
        amount = self._positive(amount)
        self._ensure_open()
        self.raise_event(FundsDeposited(amount=amount))

    def withdraw(self, amount: Decimal | int | str) -> None:
        amount = self._positive(amount)
        self._ensure_open()
        available = self.available
        if amount > available:
            raise InsufficientFunds(self.id, amount, available)
        self.raise_event(FundsWithdrawn(amount=amount))

    def rename(self, owner: str) -> None:
        """Change the owner name; renaming to the current name raises nothing"""
        self._ensure_open()
        owner = owner.strip()
        if not owner:
            raise InvariantViolation("Account owner must not be blank")
        if owner == self.owner:
            return
        self.raise_event(AccountRenamed(owner=owner))

    def close(self, reason: str) -> None:
        self._ensure_open()
        if self.balance != 0:
            raise InvariantViolation(
                f"Account {self.id} must have a zero balance to close (balance {self.balance})"
            )
        self.raise_event(AccountClosed(reason=reason))

    @property
    def available(self) -> Decimal:
        return self.balance + self.overdraft_limit

    def _ensure_open(self) -> None:
        if self.closed:
            raise AccountClosedError(self.id)

    @staticmethod
    def _positive(amount: Decimal | int | str) -> Decimal:
        value = Decimal(amount)
        if value <= 0:
            raise InvariantViolation(f"Amount must be positive, got {value}")
        return value

    # ------------------------------------------------------------------
    # State mutation (the only writers)
    # ------------------------------------------------------------------

    def apply_opened(self, event: AccountOpened) -> None:
        self.owner = event.owner
        self.currency = event.currency
        self.overdraft_limit = event.overdraft_limit

    def apply_deposited(self, event: FundsDeposited) -> None:
        self.balance += event.amount

    def apply_withdrawn(self, event: FundsWithdrawn) -> None:
        self.balance -= event.amount

    def apply_renamed(self, event: AccountRenamed) -> None:
        self.owner = event.owner

    def apply_closed(self, event: AccountClosed) -> None:
        self.closed = True
        self.close_reason = event.reason

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def _snapshot_state(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "currency": self.currency,
            "balance": str(self.balance),
            "overdraft_limit": str(self.overdraft_limit),
            "closed": self.closed,
            "close_reason": self.close_reason,
        }

    def _restore_state(self, state: dict[str, Any]) -> None:
        self.owner = state["owner"]
        self.currency = state["currency"]
        self.balance = Decimal(state["balance"])
        self.overdraft_limit = Decimal(state["overdraft_limit"])
        self.closed = state["closed"]
        self.close_reason = state.get("close_reason")

    def state(self) -> dict[str, Any]:
        """Plain view of the account, e.g. for printing or comparisons"""
        return {"id": self.id, "version": self.version, **self._snapshot_state()}
