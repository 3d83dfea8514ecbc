"""Projection of stored records into the completion request message array."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog

from hypomnema.models.record import InvalidRecordError, MessageRecord, check_record


@dataclass
class LLMMessage:
    """A single message formatted for the completion API."""

    role: str
    content: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


class PayloadAssembler:
    """
    Builds the ``messages`` array of a completion request from records.

    Each record becomes one message whose ``role`` is the record's speaker
    and whose ``content`` lists, in order, a text part, one ``tool_use``
    part per tool request and one ``tool_result`` part per tool result.
    Records are converted independently and the array is assembled once at
    the end, so the cost is linear in the number of records.

    A record that fails conversion is logged and left out; the rest of the
    payload is still produced.
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._logger = logger or structlog.get_logger("hypomnema.context")

    def build(self, records: Iterable[MessageRecord]) -> list[dict[str, Any]]:
        """
        Convert records, in order, into API messages.

        Args:
            records: Records in ascending sequence order.

        Returns:
            A list of ``{"role": ..., "content": [...]}`` dicts.
        """
        messages: list[LLMMessage] = []
        for record in records:
            try:
                messages.append(self.convert(record))
            except InvalidRecordError as exc:
                self._logger.warning(
                    "payload_record_skipped",
                    sequence=record.sequence,
                    error=str(exc),
                )
        return [m.to_dict() for m in messages]

    def convert(self, record: MessageRecord) -> LLMMessage:
        """
        Convert a single record.

        Raises:
            InvalidRecordError: If the record's payload combination is invalid.
        """
        check_record(record)
        parts: list[dict[str, Any]] = []
        if record.text is not None:
            parts.append({"type": "text", "text": record.text})
        for req in record.tool_requests or ():
            parts.append(
                {
                    "type": "tool_use",
                    "id": req.request_id,
                    "name": req.tool_name,
                    "input": req.tool_input,
                }
            )
        for res in record.tool_results or ():
            parts.append(
                {
                    "type": "tool_result",
                    "tool_use_id": res.request_id,
                    "content": res.output,
                }
            )
        return LLMMessage(role=record.speaker, content=parts)
