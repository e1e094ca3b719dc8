"""
Ledger Command Handlers - load, decide, save

Handlers stay almost boring: all interesting logic lives in the Account
aggregate (invariants) and the repository (persistence, conflicts).
Every handler loads a fresh aggregate, so the command bus can safely
re-run it after a concurrency conflict.
"""

from durable_aggregates.aggregates.repository import Repository
from durable_aggregates.kernel.bus import CommandBus
from durable_aggregates.kernel.errors import AggregateNotFound, InvariantViolation
from durable_aggregates.kernel.events import Event
from durable_aggregates.kernel.logging import get_logger
from durable_aggregates.ledger.aggregate import Account
from durable_aggregates.ledger.commands import (
    CloseAccount,
    DepositFunds,
    OpenAccount,
    RenameAccount,
    WithdrawFunds,
)

logger = get_logger(__name__)


class AccountAlreadyExists(InvariantViolation):
    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account {account_id} already exists")


class LedgerCommandHandlers:
    """Command handlers for the ledger context"""

    def __init__(self, repository: Repository[Account]) -> None:
        self.repository = repository

    async def handle_open_account(self, command: OpenAccount) -> list[Event]:
        """
        Open a new account under command.aggregate_id

        An empty stream means the account does not exist yet; any event
        in the stream means it does.

        Raises:
            AccountAlreadyExists: the stream already has events
        """
        try:
            await self.repository.get_by_id(command.aggregate_id)
        except AggregateNotFound:
            pass
        else:
            raise AccountAlreadyExists(command.aggregate_id)

        account = Account.open(
            command.aggregate_id,
            owner=command.owner,
            currency=command.currency,
            overdraft_limit=command.overdraft_limit,
            clock=self.repository.time_provider,
        )
        return await self.repository.save(account, command.command_id, who=command.who)

    async def handle_deposit_funds(self, command: DepositFunds) -> list[Event]:
        account = await self.repository.get_by_id(command.aggregate_id)
        account.deposit(command.amount)
        return await self.repository.save(account, command.command_id, who=command.who)

    async def handle_withdraw_funds(self, command: WithdrawFunds) -> list[Event]:
        account = await self.repository.get_by_id(command.aggregate_id)
        account.withdraw(command.amount)
        return await self.repository.save(account, command.command_id, who=command.who)

    async def handle_rename_account(self, command: RenameAccount) -> list[Event]:
        account = await self.repository.get_by_id(command.aggregate_id)
        account.rename(command.owner)
        return await self.repository.save(account, command.command_id, who=command.who)

    async def handle_close_account(self, command: CloseAccount) -> list[Event]:
        account = await self.repository.get_by_id(command.aggregate_id)
        account.close(command.reason)
        return await self.repository.save(account, command.command_id, who=command.who)

    def register(self, bus: CommandBus) -> None:
        """Wire every ledger handler into a command bus"""
        bus.register_command_handler(OpenAccount, self.handle_open_account)
        bus.register_command_handler(DepositFunds, self.handle_deposit_funds)
        bus.register_command_handler(WithdrawFunds, self.handle_withdraw_funds)
        bus.register_command_handler(RenameAccount, self.handle_rename_account)
        bus.register_command_handler(CloseAccount, self.handle_close_account)
        logger.debug("Ledger handlers registered", command_types=bus.get_command_types())
