"""Typed payload definitions for each HypomnemaEvent.

Usage example::

    from hypomnema.events.bus import EventBus, HypomnemaEvent
    from hypomnema.events.payloads import CompactionCompletedPayload

    def on_compaction(event: HypomnemaEvent, payload: CompactionCompletedPayload) -> None:
        print(f"{payload['size_before']} -> {payload['size_after']} bytes")

    bus.subscribe(HypomnemaEvent.COMPACTION_COMPLETED, on_compaction)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import TypedDict

# ── Session lifecycle ─────────────────────────────────────────────────────────


class SessionCreatedPayload(TypedDict):
    """Payload for :attr:`HypomnemaEvent.SESSION_CREATED`."""

    session_id: str
    model: str


class SessionLoadedPayload(TypedDict):
    """Payload for :attr:`HypomnemaEvent.SESSION_LOADED`."""

    session_id: str
    model: str
    record_count: int
    """Number of records after repair."""


class SessionClosedPayload(TypedDict):
    """Payload for :attr:`HypomnemaEvent.SESSION_CLOSED`."""

    session_id: str


class SessionDeletedPayload(TypedDict):
    """Payload for :attr:`HypomnemaEvent.SESSION_DELETED`."""

    session_id: str


# ── Record lifecycle ──────────────────────────────────────────────────────────


class RecordAppendedPayload(TypedDict):
    """Payload for :attr:`HypomnemaEvent.RECORD_APPENDED`."""

    session_id: str
    sequence: int
    speaker: str
    """``"user"`` or ``"assistant"``."""


class RepairCompletedPayload(TypedDict):
    """Payload for :attr:`HypomnemaEvent.REPAIR_COMPLETED`."""

    session_id: str
    removed: list[int]
    """Sequences deleted by orphan removal and merging."""
    merged: int
    orphans_removed: int


# ── Compaction lifecycle ──────────────────────────────────────────────────────


class CompactionTriggeredPayload(TypedDict):
    """Payload for :attr:`HypomnemaEvent.COMPACTION_TRIGGERED`."""

    session_id: str
    size_bytes: int
    threshold_bytes: int


class CompactionCompletedPayload(TypedDict):
    """Payload for :attr:`HypomnemaEvent.COMPACTION_COMPLETED`.

    This is the ``model_dump()`` of a
    :class:`hypomnema.models.record.CompactionResult`.
    """

    session_id: str
    performed: bool
    reason: str | None
    split_index: int | None
    records_before: int
    records_after: int
    size_before: int
    size_after: int
    summary: str | None
    elapsed_ms: float


CompactionSkippedPayload = CompactionCompletedPayload


class CompactionFailedPayload(TypedDict):
    """Payload for :attr:`HypomnemaEvent.COMPACTION_FAILED`."""

    session_id: str
    error: str


# ── Tools ─────────────────────────────────────────────────────────────────────


class ToolOutputTruncatedPayload(TypedDict):
    """Payload for :attr:`HypomnemaEvent.TOOL_OUTPUT_TRUNCATED`."""

    session_id: str
    request_id: str
    original_bytes: int
    kept_bytes: int
