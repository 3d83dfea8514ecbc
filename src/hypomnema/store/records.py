"""SQLite-backed record store: one row per message record, committed on append."""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Literal

import aiosqlite
import structlog

from hypomnema.models.config import StoreConfig
from hypomnema.models.record import (
    HypomnemaError,
    InvalidRecordError,
    MessageRecord,
    RepairResult,
    SessionSummary,
    Speaker,
    SummaryLogEntry,
    ToolRequest,
    ToolResult,
)
from hypomnema.tokens.estimator import TokenEstimator

SnapshotKind = Literal["request", "response"]

# ── Exceptions ─────────────────────────────────────────────────────────────────


class StoreError(HypomnemaError):
    """Base class for store errors."""


class StorageIOError(StoreError):
    """
    Raised when a read or write against the backing database fails.

    The session remains in its last committed state: a failed append never
    leaves a partial record behind.
    """

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Storage operation {operation!r} failed{detail}")
        self.operation = operation
        self.cause = cause


class SessionNotFoundError(StoreError):
    """Raised when a session_id does not exist in the store."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id!r}")
        self.session_id = session_id


class DuplicateIDError(StoreError):
    """Raised when attempting to create a session with an existing ID."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Duplicate ID: {record_id!r}")
        self.record_id = record_id


# ── Session row ────────────────────────────────────────────────────────────────


class SessionInfo:
    """Plain slots class for session rows, built without Pydantic validation."""

    __slots__ = (
        "compacted",
        "created_at",
        "id",
        "model_id",
        "next_sequence",
        "title",
        "updated_at",
    )

    def __init__(
        self,
        id: str,
        created_at: int,
        updated_at: int,
        model_id: str,
        title: str | None,
        next_sequence: int,
        compacted: bool,
    ) -> None:
        self.id = id
        self.created_at = created_at
        self.updated_at = updated_at
        self.model_id = model_id
        self.title = title
        self.next_sequence = next_sequence
        self.compacted = compacted


# ── RecordStore ────────────────────────────────────────────────────────────────


class RecordStore:
    """
    Durable, ordered storage of message records for many sessions.

    Every append runs in its own transaction and is committed before the
    sequence number is returned, so an acknowledged record survives a crash
    of the next operation. The only bulk mutations are ``apply_repair()`` and
    ``replace_prefix()``; each runs in a single transaction and rolls back
    completely on failure.

    Usage::

        store = RecordStore(StoreConfig(db_path="./sessions.db"))
        await store.initialize()
        try:
            await store.create_session("sess_01", model_id="claude-sonnet-4-6")
            seq = await store.append("sess_01", "user", text="hello")
            records = await store.list_records("sess_01")
        finally:
            await store.close()
    """

    def __init__(self, config: StoreConfig, estimator: TokenEstimator | None = None) -> None:
        self._config = config
        self._db_path = Path(config.db_path).expanduser()
        self._estimator = estimator or TokenEstimator()
        self._conn: aiosqlite.Connection | None = None
        self._logger = structlog.get_logger("hypomnema.store")

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def lock_dir(self) -> Path:
        """Directory holding per-session lock files."""
        if self._config.lock_dir is not None:
            return Path(self._config.lock_dir).expanduser()
        return self._db_path.parent / "locks"

    async def initialize(self) -> None:
        """
        Open the database connection and apply the schema.

        Raises:
            StorageIOError: If the directory cannot be created or the database
                cannot be opened. Callers treat this as fatal at startup.
        """
        if self._conn is not None:
            return
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageIOError("initialize", exc) from exc

        try:
            conn = await aiosqlite.connect(
                str(self._db_path), timeout=self._config.connection_timeout
            )
        except aiosqlite.Error as exc:
            raise StorageIOError("initialize", exc) from exc

        try:
            conn.row_factory = aiosqlite.Row
            if self._config.wal_mode:
                await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA foreign_keys=ON")
            await conn.execute(f"PRAGMA synchronous={self._config.synchronous}")
            schema = (Path(__file__).parent / "schema.sql").read_text()
            await conn.executescript(schema)
            await conn.commit()
        except (aiosqlite.Error, OSError) as exc:
            await conn.close()
            raise StorageIOError("initialize", exc) from exc
        except BaseException:
            await conn.close()
            raise

        self._conn = conn
        self._logger.info("store_initialized", db_path=str(self._db_path))

    async def close(self) -> None:
        """Close the database connection. Safe to call twice."""
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        await conn.close()

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreError("Store is not initialized. Call initialize() first.")
        return self._conn

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        """Yield the connection; commit on success, roll back on any failure."""
        conn = self._conn_or_raise()
        try:
            yield conn
            await conn.commit()
        except aiosqlite.Error as exc:
            await self._rollback(conn, operation)
            raise StorageIOError(operation, exc) from exc
        except BaseException:
            await self._rollback(conn, operation)
            raise

    @asynccontextmanager
    async def _reading(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        conn = self._conn_or_raise()
        try:
            yield conn
        except aiosqlite.Error as exc:
            raise StorageIOError(operation, exc) from exc

    async def _rollback(self, conn: aiosqlite.Connection, operation: str) -> None:
        try:
            await conn.rollback()
        except aiosqlite.Error as exc:
            self._logger.error("rollback_failed", operation=operation, error=str(exc))

    # ── Session Methods ────────────────────────────────────────────────────────

    async def create_session(
        self,
        id: str,
        *,
        model_id: str = "",
        title: str | None = None,
    ) -> SessionInfo:
        """
        Insert a new, empty session row.

        Raises:
            DuplicateIDError: If a session with this ID already exists.
            StorageIOError: On any other database failure.
        """
        now = int(time.time() * 1000)
        try:
            async with self._transaction("create_session") as conn:
                await conn.execute(
                    """
                    INSERT INTO sessions
                        (id, created_at, updated_at, model_id, title, next_sequence, compacted)
                    VALUES (?, ?, ?, ?, ?, 0, 0)
                    """,
                    (id, now, now, model_id, title),
                )
        except StorageIOError as exc:
            if isinstance(exc.cause, aiosqlite.IntegrityError):
                raise DuplicateIDError(id) from exc
            raise

        return SessionInfo(
            id=id,
            created_at=now,
            updated_at=now,
            model_id=model_id,
            title=title,
            next_sequence=0,
            compacted=False,
        )

    async def get_session(self, session_id: str) -> SessionInfo:
        """
        Fetch a session by ID.

        Raises:
            SessionNotFoundError: If no session with this ID exists.
        """
        async with self._reading("get_session") as conn:
            async with conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)) as cursor:
                row = await cursor.fetchone()
        if row is None:
            raise SessionNotFoundError(session_id)
        return self._row_to_session(row)

    async def list_all(self, *, limit: int = 100, offset: int = 0) -> list[SessionSummary]:
        """
        List sessions for selection at startup, most recently updated first.

        Returns:
            One ``SessionSummary`` (id, record count, compacted flag) per session.
        """
        async with self._reading("list_all") as conn:
            async with conn.execute(
                """
                SELECT s.id, s.title, s.compacted, s.updated_at,
                       COUNT(r.sequence) AS record_count
                FROM sessions s
                LEFT JOIN records r ON r.session_id = s.id
                GROUP BY s.id
                ORDER BY s.updated_at DESC, s.id DESC
                LIMIT ? OFFSET ?
                """,
                (limit, offset),
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            SessionSummary(
                id=row["id"],
                record_count=row["record_count"],
                compacted=bool(row["compacted"]),
                title=row["title"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    async def delete_session(self, session_id: str) -> None:
        """
        Permanently delete a session with its records, summary log and snapshots.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        async with self._transaction("delete_session") as conn:
            cursor = await conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            deleted = cursor.rowcount
        if deleted == 0:
            raise SessionNotFoundError(session_id)
        self._logger.info("session_deleted", session_id=session_id)

    async def sync_next_sequence(self, session_id: str) -> int:
        """
        Set the session's next sequence to at least ``max(existing) + 1``.

        Called on load, before repair, so a sequence removed by repair is
        never handed out again.

        Returns:
            The next sequence that ``append()`` will assign.
        """
        await self.get_session(session_id)
        async with self._transaction("sync_next_sequence") as conn:
            await conn.execute(
                """
                UPDATE sessions SET next_sequence = MAX(
                    next_sequence,
                    (SELECT COALESCE(MAX(sequence), -1) + 1 FROM records WHERE session_id = ?)
                )
                WHERE id = ?
                """,
                (session_id, session_id),
            )
        return (await self.get_session(session_id)).next_sequence

    # ── Record Methods ─────────────────────────────────────────────────────────

    async def append(
        self,
        session_id: str,
        speaker: Speaker,
        text: str | None = None,
        tool_requests: Sequence[ToolRequest | dict[str, Any]] | None = None,
        tool_results: Sequence[ToolResult | dict[str, Any]] | None = None,
    ) -> int:
        """
        Allocate the next sequence and durably persist a new record.

        The record is committed before this method returns. On failure
        nothing is written and the caller must not assume the record exists.

        Returns:
            The sequence assigned to the new record.

        Raises:
            InvalidRecordError: If the payload combination is not allowed.
            SessionNotFoundError: If the session does not exist.
            StorageIOError: If the write cannot be completed.
        """
        session = await self.get_session(session_id)
        record = MessageRecord(
            sequence=session.next_sequence,
            speaker=speaker,
            text=text,
            tool_requests=list(tool_requests) if tool_requests else None,
            tool_results=list(tool_results) if tool_results else None,
        )
        record.size_bytes = self._estimator.record_size(record)

        async with self._transaction("append") as conn:
            await self._insert_record(conn, session_id, record)
            await conn.execute(
                "UPDATE sessions SET next_sequence = ?, updated_at = ? WHERE id = ?",
                (record.sequence + 1, record.created_at, session_id),
            )

        self._logger.debug(
            "record_appended",
            session_id=session_id,
            unit=record.unit_name,
            size_bytes=record.size_bytes,
        )
        return record.sequence

    async def list_records(self, session_id: str) -> list[MessageRecord]:
        """
        Return every record of a session in ascending sequence order.

        Rows that cannot be decoded into a valid record are logged and skipped.
        """
        async with self._reading("list_records") as conn:
            async with conn.execute(
                "SELECT * FROM records WHERE session_id = ? ORDER BY sequence ASC",
                (session_id,),
            ) as cursor:
                rows = await cursor.fetchall()

        records: list[MessageRecord] = []
        for row in rows:
            record = self._row_to_record(session_id, row)
            if record is not None:
                records.append(record)
        return records

    async def count_records(self, session_id: str) -> int:
        async with self._reading("count_records") as conn:
            async with conn.execute(
                "SELECT COUNT(*) FROM records WHERE session_id = ?", (session_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return row[0] if row else 0

    async def estimate_size(self, session_id: str) -> int:
        """Return the summed stored size of all records in a session (bytes)."""
        async with self._reading("estimate_size") as conn:
            async with conn.execute(
                "SELECT COALESCE(SUM(size_bytes), 0) FROM records WHERE session_id = ?",
                (session_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return row[0] if row else 0

    async def delete_records(self, session_id: str, sequences: Sequence[int]) -> None:
        """Delete the given records in one transaction. The next sequence is not rewound."""
        if not sequences:
            return
        async with self._transaction("delete_records") as conn:
            await conn.executemany(
                "DELETE FROM records WHERE session_id = ? AND sequence = ?",
                [(session_id, sequence) for sequence in sequences],
            )
            await conn.execute(
                "UPDATE sessions SET updated_at = ? WHERE id = ?",
                (int(time.time() * 1000), session_id),
            )

    async def apply_repair(self, session_id: str, result: RepairResult) -> None:
        """
        Persist the outcome of a repair pass in one transaction.

        Removed sequences are deleted; every updated record has its text,
        tool requests and size rewritten.
        """
        if not result.changed:
            return
        async with self._transaction("apply_repair") as conn:
            for sequence in result.removed:
                await conn.execute(
                    "DELETE FROM records WHERE session_id = ? AND sequence = ?",
                    (session_id, sequence),
                )
            for record in result.updated:
                size = self._estimator.record_size(record)
                await conn.execute(
                    """
                    UPDATE records SET text = ?, tool_requests = ?, size_bytes = ?
                    WHERE session_id = ? AND sequence = ?
                    """,
                    (
                        record.text,
                        _dump_list(record.tool_requests),
                        size,
                        session_id,
                        record.sequence,
                    ),
                )

    async def replace_prefix(
        self,
        session_id: str,
        synthetic: list[MessageRecord],
        kept: list[MessageRecord],
        entry: SummaryLogEntry,
    ) -> list[MessageRecord]:
        """
        Commit a compaction atomically.

        Within one transaction: every record of the session is deleted, the
        synthetic records are inserted at sequences ``0..len(synthetic)-1``,
        the kept records are re-inserted after them in their original
        relative order, the summary log entry is appended and the session is
        flagged as compacted. On failure the session is left untouched.

        Returns:
            The new record list, in order.
        """
        renumbered: list[MessageRecord] = []
        for new_sequence, record in enumerate([*synthetic, *kept]):
            copy = record.model_copy(update={"sequence": new_sequence})
            copy.size_bytes = self._estimator.record_size(copy)
            renumbered.append(copy)

        now = int(time.time() * 1000)
        async with self._transaction("replace_prefix") as conn:
            await conn.execute("DELETE FROM records WHERE session_id = ?", (session_id,))
            for record in renumbered:
                await self._insert_record(conn, session_id, record)
            await conn.execute(
                """
                UPDATE sessions SET next_sequence = ?, compacted = 1, updated_at = ?
                WHERE id = ?
                """,
                (len(renumbered), now, session_id),
            )
            await conn.execute(
                """
                INSERT INTO summary_log
                    (session_id, created_at, records_before, records_after,
                     size_before, size_after, summary)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    entry.created_at,
                    entry.records_before,
                    entry.records_after,
                    entry.size_before,
                    entry.size_after,
                    entry.summary,
                ),
            )
        return renumbered

    # ── Summary Log and Snapshots ──────────────────────────────────────────────

    async def get_summary_log(self, session_id: str) -> list[SummaryLogEntry]:
        """Return the session's compaction history, oldest first."""
        async with self._reading("get_summary_log") as conn:
            async with conn.execute(
                "SELECT * FROM summary_log WHERE session_id = ? ORDER BY id ASC",
                (session_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            SummaryLogEntry(
                created_at=row["created_at"],
                records_before=row["records_before"],
                records_after=row["records_after"],
                size_before=row["size_before"],
                size_after=row["size_after"],
                summary=row["summary"],
            )
            for row in rows
        ]

    async def save_snapshot(self, session_id: str, kind: SnapshotKind, body: Any) -> None:
        """Overwrite the diagnostic snapshot of the latest request or response."""
        async with self._transaction("save_snapshot") as conn:
            await conn.execute(
                """
                INSERT OR REPLACE INTO snapshots (session_id, kind, body, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (session_id, kind, json.dumps(body, default=str), int(time.time() * 1000)),
            )

    async def get_snapshot(self, session_id: str, kind: SnapshotKind) -> Any | None:
        async with self._reading("get_snapshot") as conn:
            async with conn.execute(
                "SELECT body FROM snapshots WHERE session_id = ? AND kind = ?",
                (session_id, kind),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    # ── Private Helpers ────────────────────────────────────────────────────────

    async def _insert_record(
        self, conn: aiosqlite.Connection, session_id: str, record: MessageRecord
    ) -> None:
        await conn.execute(
            """
            INSERT INTO records
                (session_id, sequence, speaker, text, tool_requests, tool_results,
                 size_bytes, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                record.sequence,
                record.speaker,
                record.text,
                _dump_list(record.tool_requests),
                _dump_list(record.tool_results),
                record.size_bytes,
                record.created_at,
            ),
        )

    def _row_to_session(self, row: aiosqlite.Row) -> SessionInfo:
        return SessionInfo(
            id=row["id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            model_id=row["model_id"],
            title=row["title"],
            next_sequence=row["next_sequence"],
            compacted=bool(row["compacted"]),
        )

    def _row_to_record(self, session_id: str, row: aiosqlite.Row) -> MessageRecord | None:
        try:
            return MessageRecord(
                sequence=row["sequence"],
                speaker=row["speaker"],
                text=row["text"],
                tool_requests=json.loads(row["tool_requests"]) if row["tool_requests"] else None,
                tool_results=json.loads(row["tool_results"]) if row["tool_results"] else None,
                created_at=row["created_at"],
                size_bytes=row["size_bytes"] or 0,
            )
        except (ValueError, InvalidRecordError) as exc:
            self._logger.warning(
                "record_decode_failed",
                session_id=session_id,
                sequence=row["sequence"],
                error=str(exc),
            )
            return None


def _dump_list(items: list[ToolRequest] | list[ToolResult] | None) -> str | None:
    if not items:
        return None
    return json.dumps([item.model_dump() for item in items], ensure_ascii=False, default=str)
