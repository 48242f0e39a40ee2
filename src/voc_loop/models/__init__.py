"""Model client abstractions."""

from voc_loop.models.openai_client import LLMJsonClient, LLMUsage, OpenAIJsonClient

__all__ = [
    "LLMJsonClient",
    "LLMUsage",
    "OpenAIJsonClient",
]
