"""Hypomnema compaction components."""

from hypomnema.compaction.engine import Compactor, EmptySummaryError, find_split_point
from hypomnema.compaction.summary import (
    COMPACTION_MARKER,
    SUMMARY_PROMPT,
    build_transcript,
    request_summary,
)

__all__ = [
    "COMPACTION_MARKER",
    "SUMMARY_PROMPT",
    "Compactor",
    "EmptySummaryError",
    "build_transcript",
    "find_split_point",
    "request_summary",
]
