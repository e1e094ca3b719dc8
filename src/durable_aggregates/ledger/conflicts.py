"""
Ledger conflict rules

Deposits commute with each other and with renames, so two tellers
crediting the same account at once is not a conflict. Anything that
can drive the balance below its limit, or that races a closure, is.
"""

from durable_aggregates.aggregates.conflicts import (
    ConflictDetector,
    always_conflicts,
    never_conflicts,
)
from durable_aggregates.ledger.events import (
    LEDGER_EVENTS,
    AccountClosed,
    AccountRenamed,
    FundsDeposited,
    FundsWithdrawn,
)


def build_ledger_conflict_detector() -> ConflictDetector:
    detector = ConflictDetector()

    # Credits commute with everything except a closure
    detector.register(FundsDeposited, FundsDeposited, never_conflicts)
    detector.register_symmetric(FundsDeposited, AccountRenamed, never_conflicts)
    detector.register_symmetric(FundsDeposited, FundsWithdrawn, never_conflicts)

    # Two debits were each checked against a balance the other one spent
    detector.register(FundsWithdrawn, FundsWithdrawn, always_conflicts)

    # Nothing may land after a closure, and a closure must see the final balance
    for event_cls in LEDGER_EVENTS:
        detector.register(event_cls, AccountClosed, always_conflicts)
        detector.register(AccountClosed, event_cls, always_conflicts)

    return detector.freeze()
