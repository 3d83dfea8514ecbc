"""Request payload assembly."""

from hypomnema.context.builder import LLMMessage, PayloadAssembler

__all__ = ["LLMMessage", "PayloadAssembler"]
