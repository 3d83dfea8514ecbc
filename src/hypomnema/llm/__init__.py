"""Completion service client."""

from hypomnema.llm.client import (
    DEFAULT_TOOLS,
    AnthropicClient,
    CompletionClient,
    CompletionResponse,
    ContentBlock,
    CredentialsError,
    RemoteServiceError,
    load_oauth_token,
)

__all__ = [
    "DEFAULT_TOOLS",
    "AnthropicClient",
    "CompletionClient",
    "CompletionResponse",
    "ContentBlock",
    "CredentialsError",
    "RemoteServiceError",
    "load_oauth_token",
]
