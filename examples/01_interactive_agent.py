"""
Example 01: Interactive Agent
=============================

A minimal agentic shell on top of HypomnemaSession:
- Lists stored sessions at startup and resumes one, or starts a new one
- Offers the bash / read_file / write_file tools, asking before each
  command or write
- Survives crashes: reopening a session repairs it before the next turn
- Compacts automatically once the conversation grows past the threshold

Run (set your API key first, or log in so OAuth credentials exist):
    ANTHROPIC_API_KEY=sk-... python examples/01_interactive_agent.py
    python examples/01_interactive_agent.py sess_01J...   # resume
"""

import asyncio
import subprocess
import sys
from pathlib import Path
from typing import Any

# Add project root to path when running directly
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


def _confirm(prompt: str) -> bool:
    try:
        return input(f"{prompt} [y/N] ").strip().lower() == "y"
    except EOFError:
        return False


def execute_tool(name: str, args: dict[str, Any]) -> str:
    """Run one of the DEFAULT_TOOLS. Exceptions become error results in the session."""
    if name == "bash":
        command = args["command"]
        print(f"[tool] bash: {command}", file=sys.stderr)
        if not _confirm("Allow?"):
            return "Denied by user"
        proc = subprocess.run(command, shell=True, capture_output=True, text=True)  # noqa: S602
        return proc.stdout + proc.stderr
    if name == "read_file":
        path = Path(args["path"])
        print(f"[tool] read: {path}", file=sys.stderr)
        return path.read_text()
    if name == "write_file":
        path = Path(args["path"])
        print(f"[tool] write: {path}", file=sys.stderr)
        if not _confirm("Allow write?"):
            return "Denied by user"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(args["content"])
        return "OK"
    return f"Unknown tool: {name}"


async def main() -> None:
    from hypomnema import DEFAULT_TOOLS, HypomnemaEvent, HypomnemaSession

    session_id = sys.argv[1] if len(sys.argv) > 1 else None
    if session_id is None:
        sessions = await HypomnemaSession.list_sessions(limit=10)
        for s in sessions:
            flag = " (compacted)" if s.compacted else ""
            print(f"  {s.id}  {s.record_count} records{flag}")

    async with HypomnemaSession.open(session_id) as session:
        session.subscribe(
            HypomnemaEvent.COMPACTION_COMPLETED,
            lambda e, p: print(
                f"(compacted: {p['records_before']} -> {p['records_after']} records)",
                file=sys.stderr,
            ),
        )
        if session.repair_result.changed:
            print(f"(repaired: removed records {session.repair_result.removed})", file=sys.stderr)
        print(f"hypomnema: session {session.id} (model: {session.model})")
        print("Type your message, or ctrl-c to quit.")

        while True:
            try:
                user_input = input("\nyou> ").strip()
            except EOFError:
                print()
                return
            if not user_input:
                continue
            try:
                result = await session.send(
                    user_input, tools=DEFAULT_TOOLS, tool_executor=execute_tool
                )
            except Exception as exc:
                print(f"Failed: {exc}", file=sys.stderr)
                continue
            print(result.text)
            if result.compaction_error:
                print(f"(compaction failed: {result.compaction_error})", file=sys.stderr)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
