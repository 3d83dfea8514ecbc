"""Tool execution helpers."""

from hypomnema.tools.output import TRUNCATION_MARKER, ToolExecutor, run_tool, truncate_tool_output

__all__ = ["TRUNCATION_MARKER", "ToolExecutor", "run_tool", "truncate_tool_output"]
