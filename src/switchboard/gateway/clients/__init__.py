"""HTTP clients for upstream APIs."""

from .llm_client import LLMClient, LLMClientConfig

__all__ = ["LLMClient", "LLMClientConfig"]
