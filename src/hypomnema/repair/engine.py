"""Load-time repair of a session's record sequence."""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from hypomnema.models.record import MessageRecord, RepairResult


class RepairEngine:
    """
    Restore the structural invariants of a record sequence after a crash.

    Two passes run in order:

    1. **Orphan removal**: an assistant record whose tool requests are not
       answered, id for id, by the immediately following user record is
       deleted, together with that following user record if there is one.
       A tool-result record that does not answer the record before it is
       deleted as well.
    2. **Merge**: adjacent records of the same speaker that both carry text
       are folded into the earlier one, joined with a newline.

    ``repair()`` is pure; the store applies the returned ``RepairResult``.
    Running it on its own output changes nothing.
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._logger = logger or structlog.get_logger("hypomnema.repair")

    def repair(self, records: Sequence[MessageRecord]) -> RepairResult:
        """
        Repair an ordered sequence of records.

        Args:
            records: The session's records in ascending sequence order.

        Returns:
            RepairResult with the repaired sequence, the deleted sequences and
            the final version of every merge target.
        """
        kept, removed, orphans = self._remove_orphans(records)
        merged_records, merged_removed, updated, merged, unmergeable = self._merge(kept)
        removed.extend(merged_removed)

        result = RepairResult(
            records=merged_records,
            removed=sorted(removed),
            updated=updated,
            orphans_removed=orphans,
            merged=merged,
            unmergeable_pairs=unmergeable,
        )
        if result.changed:
            self._logger.info(
                "repair_completed",
                records_before=len(records),
                records_after=len(result.records),
                removed=result.removed,
                orphans_removed=orphans,
                merged=merged,
            )
        return result

    # ── Pass 1 ──────────────────────────────────────────────────────────────────

    def _remove_orphans(
        self, records: Sequence[MessageRecord]
    ) -> tuple[list[MessageRecord], list[int], int]:
        kept: list[MessageRecord] = []
        removed: list[int] = []
        orphans = 0
        i = 0
        while i < len(records):
            record = records[i]
            following = records[i + 1] if i + 1 < len(records) else None

            if record.speaker == "assistant" and record.tool_requests:
                if (
                    following is not None
                    and following.speaker == "user"
                    and following.tool_results
                    and following.result_ids == record.request_ids
                ):
                    kept.extend((record, following))
                    i += 2
                    continue
                orphans += 1
                removed.append(record.sequence)
                self._logger.warning(
                    "orphan_tool_request_removed",
                    sequence=record.sequence,
                    request_ids=sorted(record.request_ids),
                )
                if following is not None and following.speaker == "user":
                    removed.append(following.sequence)
                    i += 2
                else:
                    i += 1
                continue

            if record.speaker == "user" and record.tool_results:
                orphans += 1
                removed.append(record.sequence)
                self._logger.warning(
                    "stray_tool_result_removed",
                    sequence=record.sequence,
                    request_ids=sorted(record.result_ids),
                )
                i += 1
                continue

            kept.append(record)
            i += 1
        return kept, removed, orphans

    # ── Pass 2 ──────────────────────────────────────────────────────────────────

    def _merge(
        self, records: list[MessageRecord]
    ) -> tuple[list[MessageRecord], list[int], list[MessageRecord], int, int]:
        out: list[MessageRecord] = []
        removed: list[int] = []
        touched: set[int] = set()
        merged = 0
        unmergeable = 0

        for record in records:
            previous = out[-1] if out else None
            if previous is None or previous.speaker != record.speaker:
                out.append(record)
                continue

            if previous.has_text and record.has_text:
                requests = [*(previous.tool_requests or ()), *(record.tool_requests or ())]
                out[-1] = previous.model_copy(
                    update={
                        "text": f"{previous.text}\n{record.text}",
                        "tool_requests": requests or None,
                    }
                )
                removed.append(record.sequence)
                touched.add(previous.sequence)
                merged += 1
                continue

            # Same speaker but one side has no text: left as is.
            unmergeable += 1
            self._logger.warning(
                "consecutive_speaker_unmergeable",
                speaker=record.speaker,
                first=previous.sequence,
                second=record.sequence,
            )
            out.append(record)

        updated = [r for r in out if r.sequence in touched]
        return out, removed, updated, merged, unmergeable
