"""Tests for the Compactor and split-point selection."""

from __future__ import annotations

import pytest

from hypomnema.compaction.engine import Compactor, EmptySummaryError, find_split_point
from hypomnema.compaction.summary import COMPACTION_MARKER, build_transcript
from hypomnema.events.bus import HypomnemaEvent
from hypomnema.llm.client import RemoteServiceError
from hypomnema.models.config import CompactionConfig, HypomnemaConfig
from hypomnema.repair.engine import RepairEngine
from tests.conftest import FakeCompletionClient, append_conversation, make_record, text_response


def _compactor(store, client, config, event_bus=None) -> Compactor:
    return Compactor(store, client, config, model="claude-sonnet-4-6", event_bus=event_bus)


def _note(i: int) -> str:
    return f"note {i}: " + "n" * 100


class TestFindSplitPoint:
    def test_fifteen_plain_records_keep_ten(self):
        """With 15 plain user records and keep_tail=10 the split index is 5."""
        records = [make_record(i, "user", f"note {i}") for i in range(15)]
        assert find_split_point(records, keep_tail=10) == 5

    def test_scans_forward_to_first_plain_user(self):
        records = [make_record(i, "user" if i % 2 == 0 else "assistant") for i in range(15)]
        # Index 5 is an assistant record; 6 is the next plain user record.
        assert find_split_point(records, keep_tail=10) == 6

    def test_start_never_below_two(self):
        records = [make_record(i, "user" if i % 2 == 0 else "assistant") for i in range(5)]
        assert find_split_point(records, keep_tail=4) == 2

    def test_fallback_steps_back_over_tool_results(self):
        records = [
            make_record(0, "user", "start"),
            make_record(1, "assistant", "ok"),
            make_record(2, "user", "go"),
            make_record(3, "assistant", requests=["t1"]),
            make_record(4, "user", results=["t1"]),
            make_record(5, "assistant", requests=["t2"]),
            make_record(6, "user", results=["t2"]),
        ]
        split = find_split_point(records, keep_tail=3)
        assert split == 3

    def test_split_never_separates_request_from_results(self):
        records = [make_record(0, "user", "start"), make_record(1, "assistant", "ok")]
        seq = 2
        for n in range(10):
            records.append(make_record(seq, "user", f"task {n}"))
            records.append(make_record(seq + 1, "assistant", requests=[f"t{n}"]))
            records.append(make_record(seq + 2, "user", results=[f"t{n}"]))
            records.append(make_record(seq + 3, "assistant", f"done {n}"))
            seq += 4
        for keep_tail in range(1, 20):
            split = find_split_point(records, keep_tail)
            if split is None:
                continue
            before = records[split - 1]
            assert not (before.tool_requests and records[split].tool_results)

    def test_nothing_after_index_two(self):
        records = [make_record(0, "user"), make_record(1, "assistant")]
        assert find_split_point(records, keep_tail=1) is None


class TestTranscript:
    def test_transcript_tags_speakers_and_skips_tool_only_records(self):
        records = [
            make_record(0, "user", "list files"),
            make_record(1, "assistant", requests=["t1"]),
            make_record(2, "user", results=["t1"]),
            make_record(3, "assistant", "there are two"),
        ]
        assert build_transcript(records) == "user: list files\nassistant: there are two"


class TestCompactor:
    async def test_noop_guard(self, store, session_id, config, event_bus):
        """Compaction on a session with <= keep_tail records changes nothing."""
        await append_conversation(store, session_id, 10)
        before = await store.list_records(session_id)
        client = FakeCompletionClient()

        result = await _compactor(store, client, config, event_bus).compact(session_id)

        assert result.performed is False
        assert "keep_tail" in result.reason
        assert client.calls == []
        assert await store.list_records(session_id) == before
        assert event_bus.collected[-1][0] == HypomnemaEvent.COMPACTION_SKIPPED

    async def test_fifteen_records_retain_last_ten_plus_two(self, store, session_id, config):
        for i in range(15):
            await store.append(session_id, "user", text=_note(i))
        client = FakeCompletionClient(text_response("The user took fifteen notes."))

        result = await _compactor(store, client, config).compact(session_id)

        assert result.performed is True
        assert result.split_index == 5
        assert result.records_before == 15
        assert result.records_after == 12
        records = await store.list_records(session_id)
        assert [r.sequence for r in records] == list(range(12))
        assert records[0].speaker == "user"
        assert records[0].text == COMPACTION_MARKER.format(count=5)
        assert records[1].speaker == "assistant"
        assert records[1].text == "The user took fifteen notes."
        assert [r.text for r in records[2:]] == [_note(i) for i in range(5, 15)]

    async def test_size_strictly_decreases(self, store, session_id, config, event_bus):
        await append_conversation(store, session_id, 20, text_size=2_000)
        size_before = await store.estimate_size(session_id)
        client = FakeCompletionClient(text_response("Short summary."))

        result = await _compactor(store, client, config, event_bus).compact(session_id)

        size_after = await store.estimate_size(session_id)
        assert size_after < size_before
        assert result.size_before == size_before
        assert result.size_after == size_after
        events = [e for e, _ in event_bus.collected]
        assert HypomnemaEvent.COMPACTION_COMPLETED in events

    async def test_summary_larger_than_short_prefix_is_skipped(
        self, store, session_id, config, event_bus
    ):
        """With 11 records the split lands at index 2; the two summary records would outgrow it."""
        await append_conversation(store, session_id, 11)
        before = await store.list_records(session_id)
        size_before = await store.estimate_size(session_id)
        client = FakeCompletionClient(
            text_response("The user and assistant exchanged two short greeting messages.")
        )

        result = await _compactor(store, client, config, event_bus).compact(session_id)

        assert result.performed is False
        assert "would not shrink" in result.reason
        assert result.size_after == result.size_before == size_before
        assert len(client.calls) == 1
        assert await store.list_records(session_id) == before
        assert await store.estimate_size(session_id) == size_before
        assert await store.get_summary_log(session_id) == []
        assert (await store.list_all())[0].compacted is False
        assert event_bus.collected[-1][0] == HypomnemaEvent.COMPACTION_SKIPPED

    async def test_summary_log_and_compacted_flag(self, store, session_id, config):
        await append_conversation(store, session_id, 14, text_size=200)
        client = FakeCompletionClient(text_response("Summary text."))

        await _compactor(store, client, config).compact(session_id)

        log = await store.get_summary_log(session_id)
        assert len(log) == 1
        assert log[0].summary == "Summary text."
        assert log[0].records_before == 14
        assert (await store.list_all())[0].compacted is True

    async def test_summarisation_request_shape(self, store, session_id, config):
        await append_conversation(store, session_id, 14)
        client = FakeCompletionClient(text_response("Summary."))

        await _compactor(store, client, config).compact(session_id)

        (call,) = client.calls
        assert call["tools"] is None
        assert call["max_tokens"] == config.compaction.summary_max_tokens
        (message,) = call["messages"]
        assert message["role"] == "user"
        body = message["content"][0]["text"]
        assert "user: user message 0" in body
        assert "assistant: assistant message 1" in body
        # Records from the split point on are not summarised.
        assert "user message 6" not in body

    async def test_remote_failure_leaves_session_untouched(
        self, store, session_id, config, event_bus
    ):
        await append_conversation(store, session_id, 14)
        before = await store.list_records(session_id)
        client = FakeCompletionClient(RemoteServiceError(529, '{"error": "overloaded"}'))

        with pytest.raises(RemoteServiceError) as exc_info:
            await _compactor(store, client, config, event_bus).compact(session_id)

        assert exc_info.value.status == 529
        assert await store.list_records(session_id) == before
        assert await store.get_summary_log(session_id) == []
        assert event_bus.collected[-1][0] == HypomnemaEvent.COMPACTION_FAILED

    async def test_blank_summary_raises_empty_summary_error(self, store, session_id, config):
        await append_conversation(store, session_id, 14)
        before = await store.list_records(session_id)
        client = FakeCompletionClient(text_response("   \n"))

        with pytest.raises(EmptySummaryError):
            await _compactor(store, client, config).compact(session_id)

        assert issubclass(EmptySummaryError, RemoteServiceError)
        assert await store.list_records(session_id) == before

    async def test_compacted_session_needs_no_repair(self, store, session_id, config):
        await store.append(session_id, "user", text="start")
        for n in range(8):
            await store.append(session_id, "assistant", tool_requests=[
                {"request_id": f"t{n}", "tool_name": "bash", "tool_input": {"command": "true"}}
            ])
            await store.append(session_id, "user", tool_results=[
                {"request_id": f"t{n}", "output": "ok " * 50}
            ])
        client = FakeCompletionClient(text_response("Summary."))

        result = await _compactor(store, client, config).compact(session_id)

        assert result.performed is True
        records = await store.list_records(session_id)
        assert not RepairEngine().repair(records).changed

    async def test_next_append_follows_compacted_records(self, store, session_id, config):
        await append_conversation(store, session_id, 15, text_size=100)
        result = await _compactor(store, FakeCompletionClient(), config).compact(session_id)
        assert result.records_after == 11
        assert await store.append(session_id, "assistant", text="after") == 11

    def test_should_compact_threshold(self, store, tmp_path):
        config = HypomnemaConfig(compaction=CompactionConfig(threshold_tokens=100))
        compactor = _compactor(store, FakeCompletionClient(), config)
        assert config.compaction.threshold_bytes == 400
        assert not compactor.should_compact(400)
        assert compactor.should_compact(401)

        disabled = HypomnemaConfig(compaction=CompactionConfig(threshold_tokens=100, auto=False))
        assert not _compactor(store, FakeCompletionClient(), disabled).should_compact(10_000)

    def test_compaction_model_override(self, store):
        config = HypomnemaConfig(compaction=CompactionConfig(compaction_model="claude-haiku-4-5"))
        assert _compactor(store, FakeCompletionClient(), config).model == "claude-haiku-4-5"
