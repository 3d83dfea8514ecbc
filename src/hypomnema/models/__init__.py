"""Hypomnema data models."""

from hypomnema.models.config import (
    ClientConfig,
    CompactionConfig,
    HypomnemaConfig,
    StoreConfig,
)
from hypomnema.models.record import (
    CompactionResult,
    HypomnemaError,
    InvalidRecordError,
    MessageRecord,
    RepairResult,
    SessionSummary,
    Speaker,
    SummaryLogEntry,
    ToolRequest,
    ToolResult,
    TurnResult,
    check_record,
)

__all__ = [
    # Config
    "ClientConfig",
    "CompactionConfig",
    "HypomnemaConfig",
    "StoreConfig",
    # Records
    "MessageRecord",
    "Speaker",
    "ToolRequest",
    "ToolResult",
    "check_record",
    # Errors
    "HypomnemaError",
    "InvalidRecordError",
    # Listing and results
    "SessionSummary",
    "SummaryLogEntry",
    "RepairResult",
    "CompactionResult",
    "TurnResult",
]
