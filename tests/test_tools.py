"""Tests for tool output truncation and execution."""

from __future__ import annotations

from hypomnema.tools.output import TRUNCATION_MARKER, run_tool, truncate_tool_output


class TestTruncation:
    def test_forty_thousand_bytes_are_cut_to_budget(self):
        output = "a" * 40_000
        text, truncated = truncate_tool_output(output, 30_000)
        assert truncated is True
        assert text == "a" * 30_000 + TRUNCATION_MARKER
        assert len(text.encode("utf-8")) <= 30_000 + len(TRUNCATION_MARKER)

    def test_output_within_budget_is_unchanged(self):
        text, truncated = truncate_tool_output("short", 30_000)
        assert (text, truncated) == ("short", False)

    def test_exact_budget_is_not_truncated(self):
        text, truncated = truncate_tool_output("b" * 100, 100)
        assert not truncated
        assert text == "b" * 100

    def test_multibyte_characters_are_not_split(self):
        output = "é" * 10  # 20 bytes
        text, truncated = truncate_tool_output(output, 5)
        assert truncated
        assert text == "éé" + TRUNCATION_MARKER

    def test_marker_text(self):
        assert TRUNCATION_MARKER == "... [truncated]"


class TestRunTool:
    async def test_sync_executor(self):
        def executor(name, args):
            return f"{name}:{args['path']}"

        assert await run_tool(executor, "read_file", {"path": "/etc/hosts"}) == "read_file:/etc/hosts"

    async def test_async_executor(self):
        async def executor(name, args):
            return "async result"

        assert await run_tool(executor, "bash", {"command": "ls"}) == "async result"

    async def test_executor_exception_becomes_error_result(self):
        def executor(name, args):
            raise FileNotFoundError("no such file")

        assert await run_tool(executor, "read_file", {"path": "/nope"}) == "Error: no such file"

    async def test_none_result_becomes_empty_string(self):
        assert await run_tool(lambda name, args: None, "bash", {}) == ""

    async def test_non_dict_input_is_passed_through_unchanged(self):
        seen = []

        def executor(name, args):
            seen.append(args)
            return "ok"

        await run_tool(executor, "bash", ["ls", "-la"])
        await run_tool(executor, "bash", "ls")
        assert seen == [["ls", "-la"], "ls"]
