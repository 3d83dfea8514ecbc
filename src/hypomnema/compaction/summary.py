"""Summarisation request used by the compactor."""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from hypomnema.llm.client import CompletionClient
from hypomnema.models.record import MessageRecord

logger = structlog.get_logger("hypomnema.compaction.summary")

SUMMARY_PROMPT = """\
Summarise the conversation below so that it can be continued without the
original messages. The summary replaces them entirely, so keep every detail
needed to carry on the work.

Cover:

## Tasks
(What the user asked for and what was worked on)

## Decisions & Outcomes
(What was decided, what was tried, what worked and what failed)

## Files & Commands
(Every file path and shell command referenced, with what was done to it)

## Current State
(Open work, the immediate next step, anything left unresolved)
"""

COMPACTION_MARKER = "[Earlier conversation compacted: {count} records replaced by the summary below]"


def build_transcript(records: Iterable[MessageRecord]) -> str:
    """
    Format the text of each record as ``speaker: text``, one entry per record.

    Records without text (tool-only records) contribute nothing.
    """
    lines = [f"{r.speaker}: {r.text}" for r in records if r.text]
    return "\n".join(lines)


async def request_summary(
    client: CompletionClient,
    transcript: str,
    *,
    model: str,
    max_tokens: int,
    prompt: str | None = None,
) -> str:
    """
    Run one summarisation request, independent of the conversation context.

    The request is a single user turn holding the instruction followed by the
    transcript. No tools are offered.

    Returns:
        The summary text, possibly blank.

    Raises:
        RemoteServiceError: If the completion call fails.
    """
    instruction = prompt or SUMMARY_PROMPT
    content = f"{instruction}\n<conversation>\n{transcript}\n</conversation>"
    messages = [{"role": "user", "content": [{"type": "text", "text": content}]}]
    logger.debug("summary_requested", model=model, transcript_chars=len(transcript))
    response = await client.create(model=model, max_tokens=max_tokens, messages=messages)
    return response.text
