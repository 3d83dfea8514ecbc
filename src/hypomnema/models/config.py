"""Configuration models for Hypomnema sessions and components."""

from __future__ import annotations

import os
from typing import Literal

from pydantic import BaseModel, Field


def _default_model() -> str:
    return os.environ.get("CLAUDE_MODEL", "claude-sonnet-4-6")


class StoreConfig(BaseModel):
    """Configuration for the SQLite persistence layer."""

    db_path: str = Field(
        default="~/.hypomnema/sessions.db",
        description="Path to the SQLite database file. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode."""

    synchronous: Literal["FULL", "NORMAL"] = "FULL"
    """SQLite ``synchronous`` pragma. FULL makes every acknowledged append survive power loss."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database connection before raising."""

    lock_dir: str | None = Field(
        default=None,
        description="Directory for per-session lock files. Defaults to <db dir>/locks.",
    )


class CompactionConfig(BaseModel):
    """Configuration for the compactor."""

    auto: bool = True
    """Whether to compact automatically after a turn once the threshold is crossed."""

    threshold_tokens: int = Field(
        default=80_000,
        ge=100,
        description="Conversation size, in estimated tokens, above which compaction runs.",
    )

    chars_per_token: int = Field(
        default=4,
        ge=1,
        le=16,
        description="Heuristic used to convert stored byte counts to tokens.",
    )

    keep_tail: int = Field(
        default=10,
        ge=1,
        le=1_000,
        description="Number of most recent records preserved verbatim.",
    )

    summary_max_tokens: int = Field(
        default=4_096,
        ge=256,
        le=64_000,
        description="max_tokens for the summarisation request.",
    )

    compaction_model: str | None = Field(
        default=None,
        description="Model to use for summarisation. None = use the session model.",
    )

    compaction_prompt: str | None = Field(
        default=None,
        description="Custom summarisation instruction. None = use the built-in prompt.",
    )

    @property
    def threshold_bytes(self) -> int:
        """The compaction threshold expressed in stored bytes."""
        return self.threshold_tokens * self.chars_per_token


class ClientConfig(BaseModel):
    """Configuration for the completion service client."""

    base_url: str | None = None
    """API base URL. None uses the SDK default (or ``$ANTHROPIC_BASE_URL``)."""
    model: str = Field(default_factory=_default_model)
    """Model for conversation turns. Defaults to ``$CLAUDE_MODEL``."""
    max_tokens: int = Field(default=4_096, ge=1)
    timeout: float = Field(
        default=600.0,
        gt=0,
        description="Seconds to wait for a completion response.",
    )
    max_retries: int = Field(
        default=2,
        ge=0,
        description="Retries the SDK makes on connection errors, 429 and 5xx responses.",
    )


class HypomnemaConfig(BaseModel):
    """
    Top-level configuration for a Hypomnema session.

    All sub-configs have sensible defaults and can be overridden individually.

    Example::

        config = HypomnemaConfig(
            compaction=CompactionConfig(keep_tail=6, threshold_tokens=20_000),
            store=StoreConfig(db_path="./sessions.db"),
        )
    """

    store: StoreConfig = Field(default_factory=StoreConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)

    max_tool_output_bytes: int = Field(
        default=30_000,
        ge=100,
        description="Tool results longer than this are truncated before being stored.",
    )

    max_tool_rounds: int = Field(
        default=50,
        ge=1,
        description="Maximum request/tool-result round trips within a single turn.",
    )

    @classmethod
    def default(cls) -> HypomnemaConfig:
        """Return a config instance with all defaults."""
        return cls()
