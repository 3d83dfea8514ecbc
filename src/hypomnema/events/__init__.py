"""Hypomnema event bus."""

from hypomnema.events.bus import EventBus, Handler, HypomnemaEvent
from hypomnema.events.payloads import (
    CompactionCompletedPayload,
    CompactionFailedPayload,
    CompactionSkippedPayload,
    CompactionTriggeredPayload,
    RecordAppendedPayload,
    RepairCompletedPayload,
    SessionClosedPayload,
    SessionCreatedPayload,
    SessionDeletedPayload,
    SessionLoadedPayload,
    ToolOutputTruncatedPayload,
)

__all__ = [
    "CompactionCompletedPayload",
    "CompactionFailedPayload",
    "CompactionSkippedPayload",
    "CompactionTriggeredPayload",
    "EventBus",
    "Handler",
    "HypomnemaEvent",
    "RecordAppendedPayload",
    "RepairCompletedPayload",
    "SessionClosedPayload",
    "SessionCreatedPayload",
    "SessionDeletedPayload",
    "SessionLoadedPayload",
    "ToolOutputTruncatedPayload",
]
