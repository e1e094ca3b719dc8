"""
Event stores - append-only streams with compare-and-append

The event store is the source of truth. Every implementation provides:
- Atomic batch append guarded by an expected stream version
- Idempotency via commit_id (the same commit never appends twice)
- Ordered reads of a whole stream, a prefix, or a tail

All operations are coroutines. A cancelled append either committed the
whole batch or nothing: batches are single transactions.

Fun fact: The append-only log pattern is one of the oldest database techniques,
dating back to the 1960s IMS database. We're applying time-tested wisdom to aggregates!
"""

import asyncio
import sqlite3
from collections import defaultdict
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

from durable_aggregates.kernel.errors import EventStoreError, StreamVersionConflict
from durable_aggregates.kernel.events import Event
from durable_aggregates.kernel.logging import get_logger
from durable_aggregates.kernel.retry import retry_on_sqlite_lock
from durable_aggregates.kernel.serializer import EventSerializer

logger = get_logger(__name__)


class EventStore(Protocol):
    """Collaborator contract used by the repository"""

    async def append(
        self, aggregate_id: str, expected_version: int, events: Sequence[Event]
    ) -> list[Event]: ...

    async def read_all(self, aggregate_id: str) -> list[Event]: ...

    async def read_up_to(self, aggregate_id: str, version: int) -> list[Event]: ...

    async def read_since(self, aggregate_id: str, version: int) -> list[Event]: ...

    async def get_stream_version(self, aggregate_id: str) -> int: ...


def validate_batch(aggregate_id: str, expected_version: int, events: Sequence[Event]) -> None:
    """
    Check that a batch belongs to the stream and continues it without gaps

    Raises:
        EventStoreError: foreign aggregate id, mixed commit ids, or
            versions that do not run expected_version + 1, + 2, ...
    """
    commit_ids = {event.commit_id for event in events}
    if len(commit_ids) > 1:
        raise EventStoreError(
            f"Batch for {aggregate_id} mixes commit ids {sorted(commit_ids)}"
        )
    for offset, event in enumerate(events, start=1):
        if event.aggregate_id != aggregate_id:
            raise EventStoreError(
                f"Event {event.event_id} belongs to {event.aggregate_id}, not {aggregate_id}"
            )
        if event.version != expected_version + offset:
            raise EventStoreError(
                f"Event {event.event_id} has version {event.version}, "
                f"expected {expected_version + offset}"
            )


class InMemoryEventStore:
    """
    Event store kept in process memory

    Suitable for tests and single-process tools. Appends are serialized
    by an asyncio lock, which makes compare-and-append atomic for every
    task on the loop.
    """

    def __init__(self) -> None:
        self._streams: defaultdict[str, list[Event]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(
        self, aggregate_id: str, expected_version: int, events: Sequence[Event]
    ) -> list[Event]:
        if not events:
            return []
        validate_batch(aggregate_id, expected_version, events)

        async with self._lock:
            stream = self._streams[aggregate_id]
            commit_id = events[0].commit_id
            if commit_id:
                existing = [e for e in stream if e.commit_id == commit_id]
                if existing:
                    logger.debug(
                        "Commit already appended, returning stored events",
                        aggregate_id=aggregate_id,
                        commit_id=commit_id,
                    )
                    return existing

            current_version = len(stream)
            if current_version != expected_version:
                raise StreamVersionConflict(aggregate_id, expected_version, current_version)

            stream.extend(events)
            return list(events)

    async def read_all(self, aggregate_id: str) -> list[Event]:
        return list(self._streams.get(aggregate_id, []))

    async def read_up_to(self, aggregate_id: str, version: int) -> list[Event]:
        return [e for e in self._streams.get(aggregate_id, []) if e.version <= version]

    async def read_since(self, aggregate_id: str, version: int) -> list[Event]:
        return [e for e in self._streams.get(aggregate_id, []) if e.version > version]

    async def get_stream_version(self, aggregate_id: str) -> int:
        return len(self._streams.get(aggregate_id, []))

    async def list_streams(self) -> list[tuple[str, str, int]]:
        return sorted(
            (stream_id, events[-1].aggregate_type, len(events))
            for stream_id, events in self._streams.items()
            if events
        )

    async def count_events(self) -> int:
        return sum(len(events) for events in self._streams.values())


class SQLiteEventStore:
    """
    SQLite-based event store with append-only semantics

    WAL mode gives crash safety and concurrent readers. Writes take the
    database write lock up front (BEGIN IMMEDIATE) so the version check
    and the insert see the same stream head; UNIQUE(stream_id, version)
    backs that up against writers in other processes.

    Blocking sqlite3 calls run in a worker thread via asyncio.to_thread.
    """

    def __init__(self, db_path: str | Path, serializer: EventSerializer) -> None:
        self.db_path = Path(db_path)
        self.serializer = serializer
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    event_id TEXT PRIMARY KEY,
                    stream_id TEXT NOT NULL,
                    aggregate_type TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    commit_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    occurred_at TEXT NOT NULL,
                    document BLOB NOT NULL,

                    UNIQUE(stream_id, version)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_commit "
                "ON events(stream_id, commit_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type)"
            )

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Autocommit connection; transactions are opened explicitly"""
        conn = sqlite3.connect(str(self.db_path), isolation_level=None, timeout=5.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def append(
        self, aggregate_id: str, expected_version: int, events: Sequence[Event]
    ) -> list[Event]:
        """
        Append events to a stream with optimistic locking

        Returns:
            The appended events, or the previously stored ones when the
            commit id was already recorded for this stream

        Raises:
            StreamVersionConflict: stream head is not expected_version
            EventStoreError: malformed batch or database failure
        """
        if not events:
            return []
        validate_batch(aggregate_id, expected_version, events)
        rows = [
            (
                event.event_id,
                aggregate_id,
                event.aggregate_type,
                event.version,
                event.commit_id,
                event.event_type,
                event.occurred_at.isoformat(),
                self.serializer.serialize(event),
            )
            for event in events
        ]
        return await asyncio.to_thread(
            self._append_sync, aggregate_id, expected_version, list(events), rows
        )

    @retry_on_sqlite_lock()
    def _append_sync(
        self,
        aggregate_id: str,
        expected_version: int,
        events: list[Event],
        rows: list[tuple],
    ) -> list[Event]:
        commit_id = events[0].commit_id
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                if commit_id:
                    existing = self._select(
                        conn,
                        "WHERE stream_id = ? AND commit_id = ? ORDER BY version ASC",
                        (aggregate_id, commit_id),
                    )
                    if existing:
                        conn.execute("ROLLBACK")
                        return existing

                current_version = self._stream_version(conn, aggregate_id)
                if current_version != expected_version:
                    raise StreamVersionConflict(
                        aggregate_id, expected_version, current_version
                    )

                conn.executemany(
                    """
                    INSERT INTO events (
                        event_id, stream_id, aggregate_type, version,
                        commit_id, event_type, occurred_at, document
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                conn.execute("COMMIT")
                return events

            except StreamVersionConflict:
                conn.execute("ROLLBACK")
                raise

            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                current = self._stream_version(conn, aggregate_id)
                if current != expected_version:
                    raise StreamVersionConflict(aggregate_id, expected_version, current) from e
                raise EventStoreError(f"Failed to append events: {e}") from e

            except sqlite3.OperationalError:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise EventStoreError(f"Unexpected error appending events: {e}") from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read_all(self, aggregate_id: str) -> list[Event]:
        return await asyncio.to_thread(
            self._read_sync,
            "WHERE stream_id = ? ORDER BY version ASC",
            (aggregate_id,),
        )

    async def read_up_to(self, aggregate_id: str, version: int) -> list[Event]:
        return await asyncio.to_thread(
            self._read_sync,
            "WHERE stream_id = ? AND version <= ? ORDER BY version ASC",
            (aggregate_id, version),
        )

    async def read_since(self, aggregate_id: str, version: int) -> list[Event]:
        return await asyncio.to_thread(
            self._read_sync,
            "WHERE stream_id = ? AND version > ? ORDER BY version ASC",
            (aggregate_id, version),
        )

    async def get_stream_version(self, aggregate_id: str) -> int:
        return await asyncio.to_thread(self._stream_version_sync, aggregate_id)

    async def list_streams(self) -> list[tuple[str, str, int]]:
        """(stream_id, aggregate_type, version) for every stream"""
        return await asyncio.to_thread(self._list_streams_sync)

    async def count_events(self) -> int:
        return await asyncio.to_thread(self._count_sync)

    @retry_on_sqlite_lock()
    def _read_sync(self, clause: str, params: tuple) -> list[Event]:
        with self._connect() as conn:
            return self._select(conn, clause, params)

    @retry_on_sqlite_lock()
    def _stream_version_sync(self, aggregate_id: str) -> int:
        with self._connect() as conn:
            return self._stream_version(conn, aggregate_id)

    def _list_streams_sync(self) -> list[tuple[str, str, int]]:
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT stream_id, aggregate_type, MAX(version) AS version "
                "FROM events GROUP BY stream_id, aggregate_type ORDER BY stream_id"
            )
            return [
                (row["stream_id"], row["aggregate_type"], row["version"])
                for row in cursor.fetchall()
            ]

    def _count_sync(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM events").fetchone()[0]

    def _select(self, conn: sqlite3.Connection, clause: str, params: tuple) -> list[Event]:
        cursor = conn.execute(f"SELECT document FROM events {clause}", params)
        return [self.serializer.deserialize(row["document"]) for row in cursor.fetchall()]

    def _stream_version(self, conn: sqlite3.Connection, aggregate_id: str) -> int:
        row = conn.execute(
            "SELECT MAX(version) FROM events WHERE stream_id = ?",
            (aggregate_id,),
        ).fetchone()
        return row[0] if row[0] is not None else 0
