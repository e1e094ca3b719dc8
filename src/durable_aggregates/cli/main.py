"""
Durable Aggregates CLI

Operator tooling for inspecting a SQLite-backed store: stream
listings, raw event history, and point-in-time account reconstruction.

Usage:
    durable-aggregates init --db ledger.db
    durable-aggregates streams --db ledger.db
    durable-aggregates history <aggregate_id> --up-to 5 --db ledger.db
    durable-aggregates account show <account_id> --version 3 --db ledger.db
    durable-aggregates stats --db ledger.db
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from typing_extensions import Annotated

from durable_aggregates.aggregates.repository import Repository
from durable_aggregates.kernel.errors import AggregateNotFound, DurableAggregatesError
from durable_aggregates.kernel.event_store import SQLiteEventStore
from durable_aggregates.kernel.logging import configure_logging
from durable_aggregates.kernel.serializer import JsonEventSerializer
from durable_aggregates.kernel.settings import EngineSettings
from durable_aggregates.kernel.snapshot_store import SQLiteSnapshotStore
from durable_aggregates.ledger import Account, build_ledger_registry

app = typer.Typer(
    name="durable-aggregates",
    help="Inspect event-sourced aggregate streams",
    add_completion=False,
)

account_app = typer.Typer(help="Ledger account commands")
app.add_typer(account_app, name="account")

DEFAULT_DB = Path(".durable-aggregates.db")

DbOption = Annotated[Optional[Path], typer.Option("--db", help="Database path")]


@app.callback()
def main(
    log_level: Annotated[
        Optional[str],
        typer.Option(
            "--log-level",
            help="Logging level (default: DURABLE_AGGREGATES_LOG_LEVEL or INFO)",
        ),
    ] = None,
) -> None:
    """Configure logging before any command runs"""
    try:
        settings = EngineSettings(log_level=log_level) if log_level else EngineSettings()
    except ValidationError as e:
        raise typer.BadParameter(str(e), param_hint="--log-level / environment") from e
    configure_logging(json_output=settings.json_logs, log_level=settings.log_level)


def _serializer() -> JsonEventSerializer:
    return JsonEventSerializer(build_ledger_registry())


def get_event_store(db_path: Optional[Path] = None) -> SQLiteEventStore:
    db = db_path or DEFAULT_DB
    if not db.exists():
        typer.echo(f"Error: Database not found: {db}", err=True)
        typer.echo(f"Run 'durable-aggregates init --db {db}' to initialize", err=True)
        raise typer.Exit(1)
    return SQLiteEventStore(db, _serializer())


@app.command()
def init(
    db: Annotated[Path, typer.Option(help="Database path")] = DEFAULT_DB,
) -> None:
    """Create the event and snapshot tables"""
    if db.exists():
        typer.echo(f"Error: Database already exists: {db}", err=True)
        raise typer.Exit(1)
    serializer = _serializer()
    SQLiteEventStore(db, serializer)
    SQLiteSnapshotStore(db, serializer)
    typer.echo(f"Initialized database: {db}")


@app.command()
def streams(db: DbOption = None) -> None:
    """List streams with their current versions"""
    store = get_event_store(db)
    rows = asyncio.run(store.list_streams())
    if not rows:
        typer.echo("No streams")
        return
    typer.echo(f"Streams ({len(rows)}):")
    for stream_id, aggregate_type, version in rows:
        typer.echo(f"  {stream_id} [{aggregate_type}] v{version}")


@app.command()
def history(
    aggregate_id: Annotated[str, typer.Argument(help="Aggregate/stream id")],
    up_to: Annotated[
        Optional[int],
        typer.Option("--up-to", min=1, help="Only events with version <= N"),
    ] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Emit JSON lines")] = False,
    db: DbOption = None,
) -> None:
    """Print the stored events of one stream"""
    store = get_event_store(db)
    if up_to is None:
        events = asyncio.run(store.read_all(aggregate_id))
    else:
        events = asyncio.run(store.read_up_to(aggregate_id, up_to))

    if not events:
        typer.echo(f"Error: Stream {aggregate_id} has no events", err=True)
        raise typer.Exit(1)

    for event in events:
        if as_json:
            typer.echo(event.model_dump_json())
        else:
            typer.echo(
                f"v{event.version} {event.event_type} "
                f"{event.occurred_at.isoformat()} commit={event.commit_id} "
                f"{json.dumps(event.payload, sort_keys=True)}"
            )


@app.command()
def stats(db: DbOption = None) -> None:
    """Show event and stream counts"""
    store = get_event_store(db)
    typer.echo(f"Events:  {asyncio.run(store.count_events())}")
    typer.echo(f"Streams: {len(asyncio.run(store.list_streams()))}")


@account_app.command("show")
def account_show(
    account_id: Annotated[str, typer.Argument(help="Account id")],
    version: Annotated[
        Optional[int],
        typer.Option("--version", min=1, help="Reconstruct as of this version"),
    ] = None,
    db: DbOption = None,
) -> None:
    """Rebuild an account through the repository and print its state"""
    store = get_event_store(db)
    repository = Repository(
        Account,
        store,
        snapshot_store=SQLiteSnapshotStore(store.db_path, store.serializer),
    )
    try:
        account = asyncio.run(repository.get_by_id(account_id, version))
    except AggregateNotFound:
        typer.echo(f"Error: Account {account_id} not found", err=True)
        raise typer.Exit(1)
    except DurableAggregatesError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)

    typer.echo(json.dumps(account.state(), indent=2))


if __name__ == "__main__":
    app()
