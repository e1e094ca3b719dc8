"""
Ledger Commands - intentions against accounts

Commands can fail (invariant violations), events never do. Field
constraints here catch malformed input before an account is even loaded.
"""

from decimal import Decimal

from pydantic import Field

from durable_aggregates.kernel.commands import Command


class OpenAccount(Command):
    owner: str = Field(..., min_length=1, max_length=200)
    currency: str = Field(..., min_length=3, max_length=3)
    overdraft_limit: Decimal = Field(default=Decimal("0"), ge=0)


class DepositFunds(Command):
    amount: Decimal = Field(..., gt=0)


class WithdrawFunds(Command):
    amount: Decimal = Field(..., gt=0)


class RenameAccount(Command):
    owner: str = Field(..., min_length=1, max_length=200)


class CloseAccount(Command):
    reason: str = Field(..., min_length=1)
