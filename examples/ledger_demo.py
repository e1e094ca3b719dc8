#!/usr/bin/env python3
"""
Ledger Demonstration - Concurrent Tellers on One Account

This example walks through what the repository does when several writers
touch the same aggregate at once.

Key Concepts:
1. An account's state is the replay of its events
2. Concurrent deposits commute, so both land (the later save is rebased)
3. Concurrent withdrawals conflict and the command bus retries them
4. Snapshots shorten replay; point-in-time loads still work
5. Re-sending a command with the same id never duplicates events

Run:
    python examples/ledger_demo.py
"""

import asyncio
import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

from durable_aggregates import EngineSettings, Repository
from durable_aggregates.kernel.bus import CommandBus, InProcessEventPublisher
from durable_aggregates.kernel.errors import ConflictingCommandException
from durable_aggregates.kernel.event_store import SQLiteEventStore
from durable_aggregates.kernel.events import Event
from durable_aggregates.kernel.logging import configure_logging
from durable_aggregates.kernel.serializer import JsonEventSerializer
from durable_aggregates.kernel.snapshot_store import SQLiteSnapshotStore
from durable_aggregates.kernel.time import TestTimeProvider
from durable_aggregates.ledger import (
    Account,
    LedgerCommandHandlers,
    build_ledger_conflict_detector,
    build_ledger_registry,
)
from durable_aggregates.ledger.commands import DepositFunds, OpenAccount, WithdrawFunds


def print_section(title: str) -> None:
    """Print section header"""
    print(f"\n{'='*70}")
    print(f"  {title}")
    print(f"{'='*70}\n")


async def main() -> None:
    """Run ledger demonstration"""
    configure_logging(json_output=False, log_level="WARNING")

    print_section("Ledger Demonstration - Concurrent Tellers")

    db_path = Path(tempfile.mkdtemp()) / "ledger.db"
    time_provider = TestTimeProvider(datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc))
    serializer = JsonEventSerializer(build_ledger_registry())
    settings = EngineSettings(snapshot_interval=5)

    publisher = InProcessEventPublisher()
    feed: list[Event] = []
    publisher.subscribe("*", feed.append)

    repository = Repository(
        Account,
        SQLiteEventStore(db_path, serializer),
        publisher=publisher,
        conflict_detector=build_ledger_conflict_detector(),
        snapshot_store=SQLiteSnapshotStore(db_path, serializer),
        settings=settings,
        time_provider=time_provider,
    )
    bus = CommandBus(settings)
    LedgerCommandHandlers(repository).register(bus)

    print(f"Database: {db_path}")

    # Phase 1: Open and fund
    print_section("Phase 1: Open and Fund an Account")

    await bus.dispatch(
        OpenAccount(aggregate_id="acc-1", owner="Alice", currency="EUR", who="teller_1")
    )
    await bus.dispatch(DepositFunds(aggregate_id="acc-1", amount=Decimal("100")))
    account = await repository.get_by_id("acc-1")
    print(f"✓ Opened {account.id} for {account.owner}, balance {account.balance}")

    # Phase 2: Concurrent deposits
    print_section("Phase 2: Two Tellers Deposit at Once")

    teller_a = await repository.get_by_id("acc-1")
    teller_b = await repository.get_by_id("acc-1")
    teller_a.deposit(Decimal("25"))
    teller_b.deposit(Decimal("10"))
    time_provider.advance_seconds(5)

    await repository.save(teller_a, "deposit-a", who="teller_a")
    await repository.save(teller_b, "deposit-b", who="teller_b")
    print("✓ Both deposits saved (deposits commute)")
    print(f"  Teller B's copy is stale: {teller_b.stale}")

    account = await repository.get_by_id("acc-1")
    print(f"  Balance after reload: {account.balance}")

    # Phase 3: Concurrent withdrawals
    print_section("Phase 3: Two Tellers Withdraw at Once")

    teller_a = await repository.get_by_id("acc-1")
    teller_b = await repository.get_by_id("acc-1")
    teller_a.withdraw(Decimal("80"))
    teller_b.withdraw(Decimal("80"))

    await repository.save(teller_a, "withdraw-a", who="teller_a")
    try:
        await repository.save(teller_b, "withdraw-b", who="teller_b")
    except ConflictingCommandException as e:
        print(f"✓ Second withdrawal rejected: {e}")

    print("\nThrough the command bus the handler reloads and decides again...")
    await bus.dispatch(WithdrawFunds(aggregate_id="acc-1", amount=Decimal("20")))
    account = await repository.get_by_id("acc-1")
    print(f"✓ Balance now {account.balance} at version {account.version}")

    # Phase 4: Idempotent retries
    print_section("Phase 4: The Same Command Delivered Twice")

    deposit = DepositFunds(aggregate_id="acc-1", amount=Decimal("1"))
    await bus.dispatch(deposit)
    await bus.dispatch(deposit)
    account = await repository.get_by_id("acc-1")
    print(f"✓ Command {deposit.command_id} stored once, balance {account.balance}")

    # Phase 5: Time travel
    print_section("Phase 5: Point-in-Time Reconstruction")

    for version in range(1, account.version + 1):
        past = await repository.get_by_id("acc-1", version=version)
        print(f"  v{version}: balance {past.balance}")

    snapshot = await repository.snapshot_store.get("acc-1")
    if snapshot is not None:
        print(f"\nLatest snapshot at version {snapshot.version}, taken {snapshot.taken_at}")

    # Summary
    print_section("Summary: Published Events")

    for event in feed:
        print(f"  v{event.version} {event.event_type:<15} {event.payload}")

    print("\n" + "=" * 70)
    print("Ledger demonstration complete")
    print("=" * 70 + "\n")
    print("To explore events directly:")
    print(f"  durable-aggregates history acc-1 --db {db_path}")


if __name__ == "__main__":
    asyncio.run(main())
