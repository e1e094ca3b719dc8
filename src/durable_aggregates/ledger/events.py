"""
Ledger Events - facts about accounts

Events are named in past tense because they record what already
happened, never what someone wants to happen.
"""

from decimal import Decimal

from pydantic import Field

from durable_aggregates.kernel.events import Event, EventTypeRegistry


class AccountOpened(Event):
    """A new account exists; always version 1 of its stream"""

    owner: str
    currency: str
    overdraft_limit: Decimal = Decimal("0")


class FundsDeposited(Event):
    amount: Decimal = Field(..., gt=0)


class FundsWithdrawn(Event):
    amount: Decimal = Field(..., gt=0)


class AccountRenamed(Event):
    owner: str


class AccountClosed(Event):
    """Terminal event - nothing may follow it"""

    reason: str


LEDGER_EVENTS: tuple[type[Event], ...] = (
    AccountOpened,
    FundsDeposited,
    FundsWithdrawn,
    AccountRenamed,
    AccountClosed,
)


def build_ledger_registry(registry: EventTypeRegistry | None = None) -> EventTypeRegistry:
    """Registry with every ledger event (added to `registry` when given)"""
    registry = registry or EventTypeRegistry()
    for event_cls in LEDGER_EVENTS:
        registry.register(event_cls)
    return registry
