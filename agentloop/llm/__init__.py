"""Provider clients."""

from agentloop.llm.base_client import BaseLLMClient, CompletionChunk, LLMResponse, Usage
from agentloop.llm.mock_client import MockLLMClient

__all__ = ["BaseLLMClient", "CompletionChunk", "LLMResponse", "Usage", "MockLLMClient"]
