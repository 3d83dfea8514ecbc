"""Completion service interface and the Anthropic Messages API client."""

from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any, Literal, Protocol

import anthropic
import httpx
import structlog
from anthropic.types import Message
from pydantic import BaseModel, ConfigDict, Field

from hypomnema.models.config import ClientConfig
from hypomnema.models.record import HypomnemaError

CREDENTIALS_PATH = Path("~/.claude/.credentials.json")
OAUTH_BETA = "oauth-2025-04-20"

DEFAULT_TOOLS: list[dict[str, Any]] = [
    {
        "name": "bash",
        "description": "Run a bash command and return stdout/stderr",
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The command to run"},
            },
            "required": ["command"],
        },
    },
    {
        "name": "read_file",
        "description": "Read a file and return its contents",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to the file"},
            },
            "required": ["path"],
        },
    },
    {
        "name": "write_file",
        "description": "Write content to a file",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to the file"},
                "content": {"type": "string", "description": "Content to write"},
            },
            "required": ["path", "content"],
        },
    },
]

# ── Errors ─────────────────────────────────────────────────────────────────────


class RemoteServiceError(HypomnemaError):
    """
    Raised when the completion service returns a non-success response.

    ``status`` is the HTTP status code, or None when no response was received
    (connection failure, timeout). ``body`` is the raw response body or the
    transport error text.
    """

    def __init__(self, status: int | None, body: str, message: str | None = None) -> None:
        if message is None:
            label = f"HTTP {status}" if status is not None else "transport error"
            message = f"Completion service error ({label}): {body[:500]}"
        super().__init__(message)
        self.status = status
        self.body = body


class CredentialsError(HypomnemaError):
    """Raised when no usable API key or OAuth token can be found."""


# ── Response Models ────────────────────────────────────────────────────────────


class ContentBlock(BaseModel):
    """One block of a completion response. Unknown block fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    type: str
    text: str | None = None
    id: str | None = None
    name: str | None = None
    input: Any = None


class CompletionResponse(BaseModel):
    """The parts of a Messages API response the session consumes."""

    model_config = ConfigDict(extra="ignore")

    content: list[ContentBlock] = Field(default_factory=list)
    stop_reason: str | None = None
    model: str | None = None
    usage: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Message) -> CompletionResponse:
        """Adapt an SDK ``Message``, keeping only text and tool_use blocks."""
        content: list[ContentBlock] = []
        for block in message.content:
            if block.type == "text":
                content.append(ContentBlock(type="text", text=block.text))
            elif block.type == "tool_use":
                content.append(
                    ContentBlock(type="tool_use", id=block.id, name=block.name, input=block.input)
                )
        usage = getattr(message, "usage", None)
        return cls(
            content=content,
            stop_reason=message.stop_reason,
            model=message.model,
            usage=usage.model_dump() if usage is not None else {},
        )

    @property
    def text(self) -> str:
        """All text blocks joined with newlines."""
        return "\n".join(b.text for b in self.content if b.type == "text" and b.text)

    @property
    def tool_uses(self) -> list[ContentBlock]:
        return [b for b in self.content if b.type == "tool_use"]


class CompletionClient(Protocol):
    """
    Anything that can run one completion request.

    Implementations raise ``RemoteServiceError`` for every non-success outcome.
    """

    async def create(
        self,
        *,
        model: str,
        max_tokens: int,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        system: str | None = None,
    ) -> CompletionResponse: ...


# ── Anthropic Client ───────────────────────────────────────────────────────────


class AnthropicClient:
    """
    Async client for the Anthropic Messages API, built on ``anthropic.AsyncAnthropic``.

    Authenticates with either an API key or an OAuth access token; the OAuth
    token is sent as a bearer token together with the OAuth beta header.

    Example::

        async with AnthropicClient.from_env() as client:
            response = await client.create(
                model="claude-sonnet-4-6",
                max_tokens=1024,
                messages=[{"role": "user", "content": [{"type": "text", "text": "hi"}]}],
            )
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        api_key: str | None = None,
        oauth_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key and not oauth_token:
            raise CredentialsError("AnthropicClient needs an api_key or an oauth_token")
        self._config = config or ClientConfig()
        self._auth_kind: Literal["api_key", "oauth"] = "api_key" if api_key else "oauth"
        if api_key:
            self._sdk = anthropic.AsyncAnthropic(
                api_key=api_key,
                base_url=self._config.base_url,
                timeout=self._config.timeout,
                max_retries=self._config.max_retries,
                http_client=http_client,
            )
        else:
            self._sdk = anthropic.AsyncAnthropic(
                auth_token=oauth_token,
                base_url=self._config.base_url,
                timeout=self._config.timeout,
                max_retries=self._config.max_retries,
                default_headers={"anthropic-beta": OAUTH_BETA},
                http_client=http_client,
            )
        self._logger = structlog.get_logger("hypomnema.llm")

    @property
    def auth_kind(self) -> Literal["api_key", "oauth"]:
        return self._auth_kind

    @classmethod
    def from_env(
        cls,
        config: ClientConfig | None = None,
        *,
        credentials_path: Path | str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> AnthropicClient:
        """
        Build a client from the environment.

        ``ANTHROPIC_API_KEY`` wins. Otherwise the OAuth access token stored in
        ``~/.claude/.credentials.json`` is used, unless it has expired.

        Raises:
            CredentialsError: If neither source yields a usable credential.
        """
        api_key = os.environ.get("ANTHROPIC_API_KEY")
        if api_key:
            return cls(config, api_key=api_key, http_client=http_client)

        path = Path(credentials_path or CREDENTIALS_PATH).expanduser()
        token = load_oauth_token(path)
        return cls(config, oauth_token=token, http_client=http_client)

    async def create(
        self,
        *,
        model: str,
        max_tokens: int,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        system: str | None = None,
    ) -> CompletionResponse:
        """
        Send one request to the Messages API.

        Raises:
            RemoteServiceError: On a connection failure, a non-2xx status, or a
                body that is not a message object.
        """
        kwargs: dict[str, Any] = {"model": model, "max_tokens": max_tokens, "messages": messages}
        if tools:
            kwargs["tools"] = tools
        if system:
            kwargs["system"] = system

        try:
            message = await self._sdk.messages.create(**kwargs)
        except anthropic.APIStatusError as exc:
            body = exc.response.text
            self._logger.error(
                "completion_http_error",
                model=model,
                status=exc.status_code,
                body=body[:500],
            )
            raise RemoteServiceError(exc.status_code, body) from exc
        except anthropic.APIConnectionError as exc:
            self._logger.error("completion_transport_error", model=model, error=str(exc))
            raise RemoteServiceError(None, str(exc)) from exc

        if not isinstance(message, Message):
            raise RemoteServiceError(
                200,
                str(message),
                "Malformed completion response: body is not a message object",
            )
        parsed = CompletionResponse.from_message(message)
        self._logger.debug(
            "completion_received",
            model=model,
            stop_reason=parsed.stop_reason,
            blocks=len(parsed.content),
        )
        return parsed

    async def aclose(self) -> None:
        await self._sdk.close()

    async def __aenter__(self) -> AnthropicClient:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()


def load_oauth_token(path: Path, *, now_ms: int | None = None) -> str:
    """
    Read the OAuth access token from a credentials file.

    Raises:
        CredentialsError: If the file is missing or unreadable, holds no
            access token, or the token has expired.
    """
    if not path.is_file():
        raise CredentialsError(
            "ANTHROPIC_API_KEY is not set and no OAuth credentials were found at "
            f"{path}"
        )
    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError) as exc:
        raise CredentialsError(f"Cannot read credentials file {path}: {exc}") from exc

    oauth = data.get("claudeAiOauth") or {}
    token = oauth.get("accessToken")
    if not token:
        raise CredentialsError(f"No access token found in {path}")

    expires_at = int(oauth.get("expiresAt") or 0)
    now = now_ms if now_ms is not None else int(time.time() * 1000)
    if now > expires_at:
        raise CredentialsError("OAuth token has expired. Log in again to refresh it.")
    return str(token)
