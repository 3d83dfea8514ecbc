"""
Hypomnema: a durable, self-repairing, compacting session store for tool-using agents.

Primary entry point::

    from hypomnema import HypomnemaSession, DEFAULT_TOOLS

    async with HypomnemaSession.open(db_path="./sessions.db") as session:
        result = await session.send("Hello!")
        print(result.text)
"""

from hypomnema.compaction.engine import Compactor, EmptySummaryError
from hypomnema.context.builder import PayloadAssembler
from hypomnema.events.bus import EventBus, HypomnemaEvent
from hypomnema.llm.client import (
    DEFAULT_TOOLS,
    AnthropicClient,
    CompletionClient,
    CompletionResponse,
    ContentBlock,
    CredentialsError,
    RemoteServiceError,
)
from hypomnema.models import (
    ClientConfig,
    CompactionConfig,
    CompactionResult,
    HypomnemaConfig,
    HypomnemaError,
    InvalidRecordError,
    MessageRecord,
    RepairResult,
    SessionSummary,
    StoreConfig,
    SummaryLogEntry,
    ToolRequest,
    ToolResult,
    TurnResult,
)
from hypomnema.repair.engine import RepairEngine
from hypomnema.session import HypomnemaSession, make_id
from hypomnema.store import (
    RecordStore,
    SessionBusyError,
    SessionNotFoundError,
    StorageIOError,
    StoreError,
)
from hypomnema.tokens.estimator import TokenEstimator
from hypomnema.tools.output import TRUNCATION_MARKER, ToolExecutor, truncate_tool_output

__version__ = "0.1.0"

__all__ = [
    # Core
    "HypomnemaSession",
    "make_id",
    # Components
    "Compactor",
    "PayloadAssembler",
    "RecordStore",
    "RepairEngine",
    "TokenEstimator",
    # Config
    "HypomnemaConfig",
    "ClientConfig",
    "CompactionConfig",
    "StoreConfig",
    # Models
    "MessageRecord",
    "ToolRequest",
    "ToolResult",
    "RepairResult",
    "CompactionResult",
    "TurnResult",
    "SessionSummary",
    "SummaryLogEntry",
    # Completion client
    "AnthropicClient",
    "CompletionClient",
    "CompletionResponse",
    "ContentBlock",
    "DEFAULT_TOOLS",
    # Tools
    "TRUNCATION_MARKER",
    "ToolExecutor",
    "truncate_tool_output",
    # Events
    "EventBus",
    "HypomnemaEvent",
    # Errors
    "HypomnemaError",
    "InvalidRecordError",
    "StoreError",
    "StorageIOError",
    "SessionNotFoundError",
    "SessionBusyError",
    "RemoteServiceError",
    "EmptySummaryError",
    "CredentialsError",
]
