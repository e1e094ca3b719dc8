"""
Snapshot Store - materialized aggregate state at a stream version

Snapshots are a cache in front of replay, never a source of truth:
losing one only costs a longer replay. Stores keep the newest snapshot
per aggregate and refuse to let an older one overwrite it.

Fun fact: Snapshots are the Memento pattern from the Gang of Four book (1994) -
state captured without exposing the object's internals.
"""

import asyncio
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from durable_aggregates.kernel.retry import retry_on_sqlite_lock
from durable_aggregates.kernel.serializer import EventSerializer
from durable_aggregates.kernel.time import utc_now


class Snapshot(BaseModel):
    """
    Aggregate state captured at `version`

    `state` must be JSON-serializable; its shape belongs to the aggregate
    class named by `aggregate_type`.
    """

    model_config = ConfigDict(frozen=True)

    aggregate_id: str
    aggregate_type: str
    version: int = Field(..., ge=1)
    state: dict[str, Any]
    taken_at: datetime = Field(default_factory=utc_now)


class SnapshotStore(Protocol):
    async def get(self, aggregate_id: str) -> Snapshot | None: ...

    async def put(self, snapshot: Snapshot) -> None: ...


class InMemorySnapshotStore:
    """Snapshot store kept in process memory"""

    def __init__(self) -> None:
        self._snapshots: dict[str, Snapshot] = {}

    async def get(self, aggregate_id: str) -> Snapshot | None:
        return self._snapshots.get(aggregate_id)

    async def put(self, snapshot: Snapshot) -> None:
        current = self._snapshots.get(snapshot.aggregate_id)
        if current is None or current.version <= snapshot.version:
            self._snapshots[snapshot.aggregate_id] = snapshot


class SQLiteSnapshotStore:
    """
    SQLite-based snapshot store

    One row per aggregate. The upsert only replaces a row when the
    incoming snapshot is at least as new, so racing writers cannot move
    a snapshot backwards.
    """

    def __init__(self, db_path: str | Path, serializer: EventSerializer) -> None:
        self.db_path = Path(db_path)
        self.serializer = serializer
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    aggregate_id TEXT PRIMARY KEY,
                    aggregate_type TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    state BLOB NOT NULL,
                    taken_at TEXT NOT NULL
                )
            """)
            conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    async def get(self, aggregate_id: str) -> Snapshot | None:
        return await asyncio.to_thread(self._get_sync, aggregate_id)

    async def put(self, snapshot: Snapshot) -> None:
        await asyncio.to_thread(self._put_sync, snapshot)

    @retry_on_sqlite_lock()
    def _get_sync(self, aggregate_id: str) -> Snapshot | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT aggregate_id, aggregate_type, version, state, taken_at "
                "FROM snapshots WHERE aggregate_id = ?",
                (aggregate_id,),
            ).fetchone()
        if not row:
            return None
        return Snapshot(
            aggregate_id=row["aggregate_id"],
            aggregate_type=row["aggregate_type"],
            version=row["version"],
            state=self.serializer.deserialize_state(row["state"]),
            taken_at=datetime.fromisoformat(row["taken_at"]),
        )

    @retry_on_sqlite_lock()
    def _put_sync(self, snapshot: Snapshot) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO snapshots (aggregate_id, aggregate_type, version, state, taken_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(aggregate_id) DO UPDATE SET
                    aggregate_type = excluded.aggregate_type,
                    version = excluded.version,
                    state = excluded.state,
                    taken_at = excluded.taken_at
                WHERE excluded.version >= snapshots.version
                """,
                (
                    snapshot.aggregate_id,
                    snapshot.aggregate_type,
                    snapshot.version,
                    self.serializer.serialize_state(snapshot.state),
                    snapshot.taken_at.isoformat(),
                ),
            )
            conn.commit()

    async def delete(self, aggregate_id: str) -> None:
        """Drop a snapshot (forces full replay on next load)"""
        await asyncio.to_thread(self._delete_sync, aggregate_id)

    @retry_on_sqlite_lock()
    def _delete_sync(self, aggregate_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM snapshots WHERE aggregate_id = ?", (aggregate_id,))
            conn.commit()
