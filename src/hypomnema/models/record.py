"""Core message record and result models for Hypomnema."""

from __future__ import annotations

import time
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

Speaker = Literal["user", "assistant"]


# ── Errors ─────────────────────────────────────────────────────────────────────


class HypomnemaError(Exception):
    """Base class for all Hypomnema errors."""


class InvalidRecordError(HypomnemaError):
    """Raised when a record violates the per-record payload rules."""

    def __init__(self, message: str, sequence: int | None = None) -> None:
        super().__init__(message)
        self.sequence = sequence


# ── Payload Models ─────────────────────────────────────────────────────────────


class ToolRequest(BaseModel):
    """A tool call issued by the assistant."""

    request_id: str
    """Unique within the conversation; echoed back by the matching ToolResult."""
    tool_name: str
    tool_input: Any = Field(default_factory=dict)
    """Opaque structured value passed to the tool."""


class ToolResult(BaseModel):
    """The output of a tool call, fed back to the assistant on a user record."""

    request_id: str
    output: str


# ── Message Record ─────────────────────────────────────────────────────────────


class MessageRecord(BaseModel):
    """
    A single persisted turn of the conversation.

    Records are totally ordered by ``sequence`` within a session. A record
    carries text, tool requests, tool results, or text plus tool requests
    (assistant only); never tool requests together with tool results.
    """

    sequence: int = Field(ge=0)
    speaker: Speaker
    text: str | None = None
    tool_requests: list[ToolRequest] | None = None
    tool_results: list[ToolResult] | None = None
    created_at: int = Field(default_factory=lambda: int(time.time() * 1000))
    """Unix millisecond timestamp."""
    size_bytes: int = 0
    """Stored size estimate of the visible fields. Filled in by the store."""

    @field_validator("tool_requests", "tool_results", mode="after")
    @classmethod
    def _empty_list_is_absent(cls, value: list[Any] | None) -> list[Any] | None:
        return value or None

    @model_validator(mode="after")
    def _check_payloads(self) -> MessageRecord:
        check_record(self)
        return self

    @property
    def unit_name(self) -> str:
        """Sortable persisted unit name, e.g. ``000042_user``."""
        return f"{self.sequence:06d}_{self.speaker}"

    @property
    def has_text(self) -> bool:
        return self.text is not None

    @property
    def request_ids(self) -> frozenset[str]:
        return frozenset(r.request_id for r in self.tool_requests or ())

    @property
    def result_ids(self) -> frozenset[str]:
        return frozenset(r.request_id for r in self.tool_results or ())

    @property
    def is_plain_user(self) -> bool:
        """True for a user record carrying only text (no tool results)."""
        return self.speaker == "user" and self.has_text and not self.tool_results


def check_record(record: MessageRecord) -> None:
    """
    Validate the payload combination of a record.

    Raises:
        InvalidRecordError: If the record carries no payload, carries both tool
            requests and tool results, puts a payload on the wrong speaker, or
            repeats a request id.
    """
    seq = record.sequence
    if record.text is None and not record.tool_requests and not record.tool_results:
        raise InvalidRecordError(f"record {seq} carries no payload", seq)
    if record.tool_requests and record.tool_results:
        raise InvalidRecordError(
            f"record {seq} carries both tool requests and tool results", seq
        )
    if record.tool_requests and record.speaker != "assistant":
        raise InvalidRecordError(f"record {seq}: tool requests on a {record.speaker} record", seq)
    if record.tool_results and record.speaker != "user":
        raise InvalidRecordError(f"record {seq}: tool results on a {record.speaker} record", seq)
    if record.tool_results and record.text is not None:
        raise InvalidRecordError(f"record {seq} carries both text and tool results", seq)
    if record.tool_requests and len(record.request_ids) != len(record.tool_requests):
        raise InvalidRecordError(f"record {seq} repeats a tool request id", seq)


# ── Session Listing ────────────────────────────────────────────────────────────


class SessionSummary(BaseModel):
    """One row of the session selection list."""

    id: str
    record_count: int
    compacted: bool
    title: str | None = None
    updated_at: int = 0


class SummaryLogEntry(BaseModel):
    """One append-only entry of a session's compaction history."""

    created_at: int = Field(default_factory=lambda: int(time.time() * 1000))
    records_before: int
    records_after: int
    size_before: int
    size_after: int
    summary: str


# ── Result Types ───────────────────────────────────────────────────────────────


class RepairResult(BaseModel):
    """
    The outcome of a repair pass.

    ``records`` is the repaired sequence. ``removed`` lists the sequences that
    were deleted, ``updated`` holds the final version of every surviving
    record whose content changed (merge targets).
    """

    records: list[MessageRecord] = Field(default_factory=list)
    removed: list[int] = Field(default_factory=list)
    updated: list[MessageRecord] = Field(default_factory=list)
    orphans_removed: int = 0
    merged: int = 0
    unmergeable_pairs: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.removed or self.updated)

    @property
    def removed_count(self) -> int:
        return len(self.removed)


class CompactionResult(BaseModel):
    """
    The result of a compaction run.

    ``performed`` is False for a no-op (``reason`` says why) and for a failed
    summarisation call on the automatic path.
    """

    session_id: str
    performed: bool
    reason: str | None = None
    split_index: int | None = None
    records_before: int = 0
    records_after: int = 0
    size_before: int = 0
    size_after: int = 0
    summary: str | None = None
    elapsed_ms: float = 0.0


class TurnResult(BaseModel):
    """
    The result of a single ``HypomnemaSession.send()`` call.

    ``text`` is the final assistant text of the turn. ``appended`` lists the
    sequences of every record written during the turn, in order.
    """

    text: str
    stop_reason: str | None = None
    appended: list[int] = Field(default_factory=list)
    tool_calls: int = 0
    stripped_tool_requests: int = 0
    compaction: CompactionResult | None = None
    compaction_error: str | None = None
