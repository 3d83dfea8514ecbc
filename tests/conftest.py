"""Shared fixtures for Hypomnema tests."""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from hypomnema.events.bus import EventBus, HypomnemaEvent
from hypomnema.llm.client import CompletionResponse, ContentBlock
from hypomnema.models.config import CompactionConfig, HypomnemaConfig, StoreConfig
from hypomnema.models.record import MessageRecord, ToolRequest, ToolResult
from hypomnema.store.records import RecordStore
from hypomnema.tokens.estimator import TokenEstimator


@pytest.fixture
def config(tmp_path):
    """HypomnemaConfig with a temp database path."""
    return HypomnemaConfig(store=StoreConfig(db_path=str(tmp_path / "test.db")))


@pytest.fixture
def small_config(tmp_path):
    """Config with a low compaction threshold and a short kept tail."""
    return HypomnemaConfig(
        store=StoreConfig(db_path=str(tmp_path / "test.db")),
        compaction=CompactionConfig(threshold_tokens=100, keep_tail=4),
    )


@pytest_asyncio.fixture
async def store(config):
    """Initialized RecordStore backed by a temp SQLite database."""
    s = RecordStore(config.store)
    await s.initialize()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def session_id(store):
    """A pre-created session ID in the store."""
    sid = "sess_TEST01"
    await store.create_session(sid, model_id="claude-sonnet-4-6")
    return sid


@pytest.fixture
def estimator():
    return TokenEstimator()


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[HypomnemaEvent, dict[str, Any]]] = []

    def _collect(event: HypomnemaEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


class FakeCompletionClient:
    """
    Scripted completion client.

    Each ``create()`` call pops the next scripted item: a ``CompletionResponse``
    is returned, an exception is raised. When the script runs out, a plain
    ``"ok"`` end_turn response is returned.
    """

    def __init__(self, *script: CompletionResponse | Exception) -> None:
        self.script = list(script)
        self.calls: list[dict[str, Any]] = []

    def push(self, *items: CompletionResponse | Exception) -> None:
        self.script.extend(items)

    async def create(
        self,
        *,
        model: str,
        max_tokens: int,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        system: str | None = None,
    ) -> CompletionResponse:
        self.calls.append(
            {
                "model": model,
                "max_tokens": max_tokens,
                "messages": messages,
                "tools": tools,
                "system": system,
            }
        )
        if not self.script:
            return text_response("ok")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def fake_client():
    return FakeCompletionClient()


# ── Helpers ────────────────────────────────────────────────────────────────────


def text_response(text: str, stop_reason: str = "end_turn") -> CompletionResponse:
    return CompletionResponse(
        content=[ContentBlock(type="text", text=text)],
        stop_reason=stop_reason,
    )


def tool_response(
    *uses: tuple[str, str, dict[str, Any]],
    text: str | None = None,
    stop_reason: str = "tool_use",
) -> CompletionResponse:
    """Build a response with ``(id, name, input)`` tool_use blocks."""
    blocks = [ContentBlock(type="text", text=text)] if text else []
    blocks += [ContentBlock(type="tool_use", id=i, name=n, input=inp) for i, n, inp in uses]
    return CompletionResponse(content=blocks, stop_reason=stop_reason)


def make_record(
    sequence: int,
    speaker: str = "user",
    text: str | None = None,
    requests: list[str] | None = None,
    results: list[str] | None = None,
) -> MessageRecord:
    """
    Helper to create a test MessageRecord.

    ``requests`` and ``results`` are lists of request ids.
    """
    if text is None and not requests and not results:
        text = f"{speaker} message {sequence}"
    return MessageRecord(
        sequence=sequence,
        speaker=speaker,
        text=text,
        tool_requests=[
            ToolRequest(request_id=r, tool_name="bash", tool_input={"command": "ls"})
            for r in requests or ()
        ]
        or None,
        tool_results=[ToolResult(request_id=r, output=f"output of {r}") for r in results or ()]
        or None,
    )


async def append_conversation(store: RecordStore, session_id: str, turns: int, text_size: int = 0) -> None:
    """Append ``turns`` alternating user/assistant text records."""
    for i in range(turns):
        speaker = "user" if i % 2 == 0 else "assistant"
        body = f"{speaker} message {i}"
        if text_size:
            body = body + " " + "x" * text_size
        await store.append(session_id, speaker, text=body)
