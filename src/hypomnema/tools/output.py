"""Tool execution interface and output truncation."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

TRUNCATION_MARKER = "... [truncated]"

ToolExecutor = Callable[[str, Any], "str | Awaitable[str]"]
"""``executor(tool_name, tool_input)`` returns the tool's output, sync or async."""

logger = structlog.get_logger("hypomnema.tools")


def truncate_tool_output(output: str, max_bytes: int) -> tuple[str, bool]:
    """
    Cut ``output`` to at most ``max_bytes`` UTF-8 bytes and append the marker.

    The cut never splits a multi-byte character. Output that already fits is
    returned unchanged.

    Returns:
        ``(text, truncated)``.
    """
    encoded = output.encode("utf-8")
    if len(encoded) <= max_bytes:
        return output, False
    head = encoded[:max_bytes].decode("utf-8", errors="ignore")
    return head + TRUNCATION_MARKER, True


async def run_tool(executor: ToolExecutor, tool_name: str, tool_input: Any) -> str:
    """
    Run one tool call through ``executor``.

    An exception raised by the executor is turned into an ``Error: ...``
    result so that every tool request still gets exactly one tool result.
    """
    try:
        result = executor(tool_name, tool_input)
        if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
            result = await result
    except Exception as exc:
        logger.warning("tool_execution_failed", tool=tool_name, error=str(exc))
        return f"Error: {exc}"
    if result is None:
        return ""
    return result if isinstance(result, str) else str(result)
