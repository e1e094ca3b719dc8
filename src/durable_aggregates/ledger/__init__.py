"""
Ledger - reference bounded context built on the aggregate core

Accounts that can be opened, credited, debited, renamed and closed,
with conflict rules that let concurrent deposits through.
"""

from durable_aggregates.ledger.aggregate import Account, AccountClosedError, InsufficientFunds
from durable_aggregates.ledger.conflicts import build_ledger_conflict_detector
from durable_aggregates.ledger.events import (
    AccountClosed,
    AccountOpened,
    AccountRenamed,
    FundsDeposited,
    FundsWithdrawn,
    build_ledger_registry,
)
from durable_aggregates.ledger.handlers import AccountAlreadyExists, LedgerCommandHandlers

__all__ = [
    "Account",
    "AccountAlreadyExists",
    "AccountClosed",
    "AccountClosedError",
    "AccountOpened",
    "AccountRenamed",
    "FundsDeposited",
    "FundsWithdrawn",
    "InsufficientFunds",
    "LedgerCommandHandlers",
    "build_ledger_conflict_detector",
    "build_ledger_registry",
]
