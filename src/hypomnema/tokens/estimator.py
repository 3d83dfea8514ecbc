"""Size estimation for message records."""

from __future__ import annotations

import json
from collections.abc import Iterable

from hypomnema.models.record import MessageRecord


class TokenEstimator:
    """
    Cheap size proxy used to decide when to compact.

    The stored size of a record is the UTF-8 byte count of its visible
    fields: text, tool names and JSON-encoded tool inputs, and tool outputs.
    Token counts are derived with a fixed characters-per-token heuristic;
    they only need to be good enough to trigger compaction, not exact.
    """

    def __init__(self, chars_per_token: int = 4) -> None:
        self._chars_per_token = max(1, chars_per_token)

    def record_size(self, record: MessageRecord) -> int:
        """Return the stored byte size of a record's visible fields."""
        total = 0
        if record.text is not None:
            total += len(record.text.encode("utf-8"))
        for req in record.tool_requests or ():
            total += len(req.tool_name.encode("utf-8"))
            total += len(_dump(req.tool_input).encode("utf-8"))
        for res in record.tool_results or ():
            total += len(res.output.encode("utf-8"))
        return total

    def total_size(self, records: Iterable[MessageRecord]) -> int:
        return sum(self.record_size(r) for r in records)

    def to_tokens(self, size_bytes: int) -> int:
        """Convert a byte count to an estimated token count (0 for empty)."""
        if size_bytes <= 0:
            return 0
        return max(1, size_bytes // self._chars_per_token)


def _dump(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)
