"""LLM infrastructure."""

from .client import GeminiRestClient, inline_part, text_part

__all__ = ["GeminiRestClient", "inline_part", "text_part"]
