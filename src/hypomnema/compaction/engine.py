"""Compaction of a session's older records into a single summary.

The compactor picks a split point near the end of the session, asks the
completion service for a summary of everything before it, and then replaces
that prefix with two synthetic records in one store transaction:

* sequence 0, ``user``: a marker stating that compaction happened;
* sequence 1, ``assistant``: the generated summary.

The kept records follow from sequence 2 in their original order. A failed or
blank summarisation leaves the session exactly as it was, and so does a
summary whose two records would be larger than the prefix they replace.
"""

from __future__ import annotations

import time
from collections.abc import Sequence

import structlog

from hypomnema.compaction.summary import COMPACTION_MARKER, build_transcript, request_summary
from hypomnema.events.bus import EventBus, HypomnemaEvent
from hypomnema.llm.client import CompletionClient, RemoteServiceError
from hypomnema.models.config import HypomnemaConfig
from hypomnema.models.record import CompactionResult, MessageRecord, SummaryLogEntry
from hypomnema.store.records import RecordStore
from hypomnema.tokens.estimator import TokenEstimator


class EmptySummaryError(RemoteServiceError):
    """Raised when the summarisation call succeeds but returns no text."""

    def __init__(self, body: str = "") -> None:
        super().__init__(200, body, "Summarisation returned an empty summary")


def find_split_point(records: Sequence[MessageRecord], keep_tail: int) -> int | None:
    """
    Return the index dividing summarised records from kept ones.

    The scan starts at ``max(len(records) - keep_tail, 2)`` and stops at the
    first plain user record (text, no tool results). Without one, the start
    index is used; if that index holds tool results, the split moves back one
    record so the request stays with its results.

    Returns:
        The split index, or None when there is nothing to keep after index 2.
    """
    total = len(records)
    start = max(total - keep_tail, 2)
    if start >= total:
        return None
    for i in range(start, total):
        if records[i].is_plain_user:
            return i
    if records[start].tool_results:
        return start - 1
    return start


class Compactor:
    """
    Runs manual and automatic compaction for a session.

    Example::

        compactor = Compactor(store, client, config, model="claude-sonnet-4-6")
        if compactor.should_compact(await store.estimate_size(session_id)):
            result = await compactor.compact(session_id)
    """

    def __init__(
        self,
        store: RecordStore,
        client: CompletionClient,
        config: HypomnemaConfig,
        *,
        model: str | None = None,
        event_bus: EventBus | None = None,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self._store = store
        self._client = client
        self._config = config
        self._model = config.compaction.compaction_model or model or config.client.model
        self._event_bus = event_bus or EventBus()
        self._estimator = estimator or TokenEstimator(config.compaction.chars_per_token)
        self._logger = structlog.get_logger("hypomnema.compaction")

    @property
    def model(self) -> str:
        return self._model

    def should_compact(self, size_bytes: int) -> bool:
        """Return True when automatic compaction is enabled and the size exceeds the threshold."""
        cfg = self._config.compaction
        return cfg.auto and size_bytes > cfg.threshold_bytes

    async def compact(self, session_id: str) -> CompactionResult:
        """
        Compact a session.

        Returns:
            CompactionResult. ``performed`` is False, with a ``reason``, when
            the session is too short to compact or when the summary records
            would not be smaller than the prefix they replace.

        Raises:
            RemoteServiceError: If the summarisation call fails.
            EmptySummaryError: If the summary comes back blank.
            StorageIOError: If the commit fails. The session is unchanged.
        """
        started = time.monotonic()
        keep_tail = self._config.compaction.keep_tail
        records = await self._store.list_records(session_id)
        size_before = await self._store.estimate_size(session_id)
        total = len(records)

        if total <= keep_tail:
            return self._skipped(
                session_id,
                f"session has {total} records, keep_tail is {keep_tail}",
                total,
                size_before,
            )
        split = find_split_point(records, keep_tail)
        if split is None:
            return self._skipped(session_id, "no split point after the first two records", total, size_before)

        prefix, kept = records[:split], records[split:]
        self._logger.info(
            "compaction_started",
            session_id=session_id,
            split_index=split,
            records_before=total,
            size_before=size_before,
        )

        try:
            summary = await request_summary(
                self._client,
                build_transcript(prefix),
                model=self._model,
                max_tokens=self._config.compaction.summary_max_tokens,
                prompt=self._config.compaction.compaction_prompt,
            )
            if not summary.strip():
                raise EmptySummaryError(summary)
        except RemoteServiceError as exc:
            self._logger.error("compaction_failed", session_id=session_id, error=str(exc))
            self._event_bus.publish(
                HypomnemaEvent.COMPACTION_FAILED,
                {"session_id": session_id, "error": str(exc)},
            )
            raise

        synthetic = [
            MessageRecord(sequence=0, speaker="user", text=COMPACTION_MARKER.format(count=split)),
            MessageRecord(sequence=1, speaker="assistant", text=summary),
        ]
        size_after = self._estimator.total_size(synthetic) + self._estimator.total_size(kept)
        if size_after >= size_before:
            return self._skipped(
                session_id,
                f"summary would not shrink the session ({size_before} -> {size_after} bytes)",
                total,
                size_before,
            )
        entry = SummaryLogEntry(
            records_before=total,
            records_after=len(synthetic) + len(kept),
            size_before=size_before,
            size_after=size_after,
            summary=summary,
        )
        new_records = await self._store.replace_prefix(session_id, synthetic, kept, entry)

        result = CompactionResult(
            session_id=session_id,
            performed=True,
            split_index=split,
            records_before=total,
            records_after=len(new_records),
            size_before=size_before,
            size_after=size_after,
            summary=summary,
            elapsed_ms=(time.monotonic() - started) * 1000,
        )
        self._logger.info(
            "compaction_completed",
            session_id=session_id,
            records_before=total,
            records_after=result.records_after,
            size_before=size_before,
            size_after=size_after,
        )
        self._event_bus.publish(HypomnemaEvent.COMPACTION_COMPLETED, result.model_dump())
        return result

    def _skipped(
        self, session_id: str, reason: str, total: int, size: int
    ) -> CompactionResult:
        result = CompactionResult(
            session_id=session_id,
            performed=False,
            reason=reason,
            records_before=total,
            records_after=total,
            size_before=size,
            size_after=size,
        )
        self._logger.info("compaction_skipped", session_id=session_id, reason=reason)
        self._event_bus.publish(HypomnemaEvent.COMPACTION_SKIPPED, result.model_dump())
        return result
