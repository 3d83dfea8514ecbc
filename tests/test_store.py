"""Tests for RecordStore and SessionLock."""

from __future__ import annotations

import aiosqlite
import pytest

from hypomnema.models.config import StoreConfig
from hypomnema.models.record import (
    InvalidRecordError,
    MessageRecord,
    SummaryLogEntry,
    ToolRequest,
    ToolResult,
)
from hypomnema.repair.engine import RepairEngine
from hypomnema.store.lock import SessionBusyError, SessionLock
from hypomnema.store.records import (
    DuplicateIDError,
    RecordStore,
    SessionNotFoundError,
    StorageIOError,
    StoreError,
)
from tests.conftest import append_conversation


class TestSessions:
    async def test_create_session(self, store):
        """Creating a session returns a SessionInfo with correct fields."""
        info = await store.create_session("sess_001", model_id="claude-sonnet-4-6", title="demo")
        assert info.id == "sess_001"
        assert info.model_id == "claude-sonnet-4-6"
        assert info.title == "demo"
        assert info.next_sequence == 0
        assert info.compacted is False

    async def test_create_session_duplicate_raises(self, store):
        """Duplicate session ID raises DuplicateIDError."""
        await store.create_session("sess_dup")
        with pytest.raises(DuplicateIDError):
            await store.create_session("sess_dup")

    async def test_get_session_not_found(self, store):
        with pytest.raises(SessionNotFoundError):
            await store.get_session("sess_nonexistent")

    async def test_session_not_found_is_not_storage_error(self):
        assert issubclass(SessionNotFoundError, StoreError)
        assert not issubclass(SessionNotFoundError, StorageIOError)

    async def test_list_all_reports_counts_and_flag(self, store):
        """list_all returns (id, record_count, compacted) per session, newest first."""
        await store.create_session("sess_a")
        await store.create_session("sess_b")
        await append_conversation(store, "sess_a", 3)
        await store.append("sess_b", "user", text="latest")

        sessions = await store.list_all()
        assert [s.id for s in sessions] == ["sess_b", "sess_a"]
        by_id = {s.id: s for s in sessions}
        assert by_id["sess_a"].record_count == 3
        assert by_id["sess_b"].record_count == 1
        assert by_id["sess_a"].compacted is False

    async def test_delete_session_removes_everything(self, session_id, store):
        await append_conversation(store, session_id, 4)
        await store.save_snapshot(session_id, "request", {"messages": []})
        await store.delete_session(session_id)

        with pytest.raises(SessionNotFoundError):
            await store.get_session(session_id)
        assert await store.list_records(session_id) == []
        assert await store.get_snapshot(session_id, "request") is None

    async def test_delete_missing_session_raises(self, store):
        with pytest.raises(SessionNotFoundError):
            await store.delete_session("sess_missing")


class TestAppend:
    async def test_append_assigns_increasing_sequences(self, session_id, store):
        seqs = [await store.append(session_id, "user", text=f"m{i}") for i in range(3)]
        assert seqs == [0, 1, 2]

    async def test_list_returns_ascending_order(self, session_id, store):
        """Every acknowledged append is listed, in ascending sequence order."""
        await append_conversation(store, session_id, 6)
        records = await store.list_records(session_id)
        assert [r.sequence for r in records] == list(range(6))
        assert [r.speaker for r in records] == ["user", "assistant"] * 3

    async def test_append_persists_tool_payloads(self, session_id, store):
        await store.append(session_id, "user", text="run ls")
        await store.append(
            session_id,
            "assistant",
            text="Running it.",
            tool_requests=[ToolRequest(request_id="t1", tool_name="bash", tool_input={"command": "ls"})],
        )
        await store.append(
            session_id, "user", tool_results=[ToolResult(request_id="t1", output="a\nb")]
        )

        records = await store.list_records(session_id)
        assert records[1].tool_requests[0].tool_input == {"command": "ls"}
        assert records[1].text == "Running it."
        assert records[2].tool_results[0].output == "a\nb"
        assert records[2].text is None

    async def test_append_accepts_plain_dicts(self, session_id, store):
        await store.append(
            session_id,
            "assistant",
            tool_requests=[{"request_id": "t9", "tool_name": "read_file", "tool_input": {"path": "/x"}}],
        )
        (record,) = await store.list_records(session_id)
        assert record.request_ids == frozenset({"t9"})

    async def test_append_invalid_record_writes_nothing(self, session_id, store):
        with pytest.raises(InvalidRecordError):
            await store.append(
                session_id,
                "user",
                tool_requests=[ToolRequest(request_id="t1", tool_name="bash")],
            )
        assert await store.count_records(session_id) == 0
        # The sequence was not consumed.
        assert await store.append(session_id, "user", text="ok") == 0

    async def test_append_unknown_session_raises(self, store):
        with pytest.raises(SessionNotFoundError):
            await store.append("sess_nonexistent", "user", text="hi")

    async def test_unit_name_sorts_like_sequence(self, session_id, store):
        await append_conversation(store, session_id, 12)
        records = await store.list_records(session_id)
        names = [r.unit_name for r in records]
        assert names[0] == "000000_user"
        assert sorted(names) == names

    async def test_records_survive_reopen(self, config, session_id, store):
        await append_conversation(store, session_id, 3)
        await store.close()

        reopened = RecordStore(config.store)
        await reopened.initialize()
        try:
            records = await reopened.list_records(session_id)
            assert len(records) == 3
            assert await reopened.append(session_id, "assistant", text="after") == 3
        finally:
            await reopened.close()

    async def test_malformed_row_is_skipped(self, session_id, store):
        """A stored row that cannot form a valid record is left out of list_records()."""
        await store.append(session_id, "user", text="good")
        conn = store._conn_or_raise()
        await conn.execute(
            "INSERT INTO records (session_id, sequence, speaker, size_bytes, created_at) "
            "VALUES (?, 1, 'assistant', 0, 0)",
            (session_id,),
        )
        await conn.commit()

        records = await store.list_records(session_id)
        assert [r.text for r in records] == ["good"]


class TestSizeEstimation:
    async def test_estimate_size_sums_record_sizes(self, session_id, store, estimator):
        await store.append(session_id, "user", text="hello")
        await store.append(session_id, "assistant", text="héllo")
        records = await store.list_records(session_id)
        assert await store.estimate_size(session_id) == estimator.total_size(records) == 5 + 6

    async def test_estimate_size_empty_session(self, session_id, store):
        assert await store.estimate_size(session_id) == 0

    async def test_snapshots_are_excluded_from_size(self, session_id, store):
        await store.append(session_id, "user", text="abc")
        await store.save_snapshot(session_id, "request", {"messages": ["x" * 10_000]})
        assert await store.estimate_size(session_id) == 3


class TestSnapshots:
    async def test_snapshot_is_overwritten(self, session_id, store):
        await store.save_snapshot(session_id, "response", {"turn": 1})
        await store.save_snapshot(session_id, "response", {"turn": 2})
        assert await store.get_snapshot(session_id, "response") == {"turn": 2}
        assert await store.get_snapshot(session_id, "request") is None


class TestBulkMutations:
    async def test_apply_repair_persists_deletes_and_merges(self, session_id, store):
        await store.append(session_id, "user", text="a")
        await store.append(session_id, "user", text="b")
        await store.append(
            session_id,
            "assistant",
            tool_requests=[ToolRequest(request_id="t1", tool_name="bash")],
        )
        records = await store.list_records(session_id)
        result = RepairEngine().repair(records)

        await store.apply_repair(session_id, result)

        stored = await store.list_records(session_id)
        assert [(r.sequence, r.text) for r in stored] == [(0, "a\nb")]
        assert await store.estimate_size(session_id) == 3

    async def test_delete_records_keeps_next_sequence(self, session_id, store):
        await append_conversation(store, session_id, 3)

        await store.delete_records(session_id, [2])

        assert [r.sequence for r in await store.list_records(session_id)] == [0, 1]
        assert await store.append(session_id, "user", text="again") == 3

    async def test_replace_prefix_renumbers_and_logs(self, session_id, store):
        await append_conversation(store, session_id, 6)
        records = await store.list_records(session_id)
        synthetic = [
            MessageRecord(sequence=0, speaker="user", text="[compacted]"),
            MessageRecord(sequence=1, speaker="assistant", text="summary"),
        ]
        entry = SummaryLogEntry(
            records_before=6, records_after=4, size_before=100, size_after=50, summary="summary"
        )

        new_records = await store.replace_prefix(session_id, synthetic, records[4:], entry)

        stored = await store.list_records(session_id)
        assert [r.sequence for r in stored] == [0, 1, 2, 3]
        assert [r.text for r in stored] == [r.text for r in new_records]
        assert stored[2].text == records[4].text
        info = await store.get_session(session_id)
        assert info.compacted is True
        assert info.next_sequence == 4
        log = await store.get_summary_log(session_id)
        assert len(log) == 1
        assert log[0].summary == "summary"
        assert await store.append(session_id, "user", text="next") == 4

    async def test_replace_prefix_failure_rolls_back(self, session_id, store, monkeypatch):
        await append_conversation(store, session_id, 6)
        before = await store.list_records(session_id)
        calls = 0
        original = store._insert_record

        async def _failing_insert(conn, sid, record):
            nonlocal calls
            calls += 1
            if calls == 2:
                raise aiosqlite.OperationalError("disk I/O error")
            await original(conn, sid, record)

        monkeypatch.setattr(store, "_insert_record", _failing_insert)
        synthetic = [
            MessageRecord(sequence=0, speaker="user", text="[compacted]"),
            MessageRecord(sequence=1, speaker="assistant", text="summary"),
        ]
        entry = SummaryLogEntry(
            records_before=6, records_after=4, size_before=1, size_after=1, summary="summary"
        )

        with pytest.raises(StorageIOError):
            await store.replace_prefix(session_id, synthetic, before[4:], entry)

        after = await store.list_records(session_id)
        assert [r.model_dump() for r in after] == [r.model_dump() for r in before]
        assert await store.get_summary_log(session_id) == []
        assert (await store.get_session(session_id)).compacted is False

    async def test_sync_next_sequence_moves_past_existing(self, session_id, store):
        await append_conversation(store, session_id, 3)
        conn = store._conn_or_raise()
        await conn.execute("UPDATE sessions SET next_sequence = 0 WHERE id = ?", (session_id,))
        await conn.commit()

        assert await store.sync_next_sequence(session_id) == 3


class TestInitialization:
    async def test_unusable_directory_raises_storage_error(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = RecordStore(StoreConfig(db_path=str(blocker / "sub" / "test.db")))
        with pytest.raises(StorageIOError):
            await store.initialize()

    async def test_uninitialized_store_raises(self, config):
        store = RecordStore(config.store)
        with pytest.raises(StoreError):
            await store.list_records("sess_x")

    async def test_lock_dir_defaults_next_to_database(self, config, tmp_path):
        assert RecordStore(config.store).lock_dir == tmp_path / "locks"


class TestSessionLock:
    def test_second_holder_is_refused(self, tmp_path):
        with SessionLock(tmp_path, "sess_1") as first:
            assert first.held
            with pytest.raises(SessionBusyError):
                SessionLock(tmp_path, "sess_1").acquire()

    def test_lock_is_reusable_after_release(self, tmp_path):
        lock = SessionLock(tmp_path, "sess_1")
        lock.acquire()
        lock.release()
        assert not lock.held
        with SessionLock(tmp_path, "sess_1"):
            pass

    def test_different_sessions_do_not_conflict(self, tmp_path):
        with SessionLock(tmp_path, "sess_1"), SessionLock(tmp_path, "sess_2"):
            pass
