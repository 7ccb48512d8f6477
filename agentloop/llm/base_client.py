"""
Base LLM client interface.
All providers stream through this interface; the turn engine never sees
vendor wire formats.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from agentloop.core.streaming_parser import ToolCall


@dataclass
class Usage:
    """Token usage reported by the provider."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    def add(self, other: "Usage") -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens
        self.cache_creation_tokens += other.cache_creation_tokens
        self.cache_read_tokens += other.cache_read_tokens


@dataclass
class CompletionChunk:
    """
    One event of a provider stream.

    ``content`` may be bytes for transports that hand over raw UTF-8; the
    parser reassembles split characters either way.
    """
    content: Union[str, bytes] = ""
    finished: bool = False
    tool_calls: Optional[List[ToolCall]] = None
    usage: Optional[Usage] = None
    stop_reason: Optional[str] = None


@dataclass
class LLMResponse:
    """Response from a non-streaming request."""
    content: str
    model: str
    tokens_used: int
    finish_reason: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class BaseLLMClient(ABC):
    """Abstract base class for LLM clients."""

    def __init__(self, api_key: Optional[str], model: str, temperature: float = 0.7):
        """
        Initialize the LLM client.

        Args:
            api_key: API key for the provider
            model: Model identifier
            temperature: Sampling temperature
        """
        self.api_key = api_key
        self.model = model
        self.temperature = temperature

    @abstractmethod
    def stream_chat(
        self,
        messages: List[Dict[str, Any]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None
    ) -> AsyncIterator[CompletionChunk]:
        """
        Stream a chat completion.

        Implementations are async generators. Transport failures surface as
        TransportError (or builtin ConnectionError/TimeoutError) from the
        iteration, either before the first chunk or mid-stream. The last
        chunk has ``finished=True``.

        Args:
            messages: List of message dicts with 'role' and 'content'
            max_tokens: Maximum tokens to generate
            temperature: Override default temperature

        Yields:
            CompletionChunk events in arrival order
        """

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None
    ) -> LLMResponse:
        """
        Generate a chat completion by draining ``stream_chat``.

        Providers with a cheaper non-streaming endpoint override this.
        """
        parts: List[str] = []
        usage = Usage()
        stop_reason = "stop"
        async for chunk in self.stream_chat(messages, max_tokens, temperature):
            if chunk.content:
                parts.append(chunk.content.decode("utf-8", errors="replace") if isinstance(chunk.content, bytes) else chunk.content)
            if chunk.usage:
                usage.add(chunk.usage)
            if chunk.stop_reason:
                stop_reason = chunk.stop_reason

        return LLMResponse(
            content="".join(parts),
            model=self.model,
            tokens_used=usage.total_tokens,
            finish_reason=stop_reason,
            metadata={
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
            },
        )

    async def complete(
        self,
        prompt: str,
        system_message: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None
    ) -> LLMResponse:
        """Single-prompt convenience wrapper around ``chat``."""
        messages = []
        if system_message:
            messages.append({"role": "system", "content": system_message})
        messages.append({"role": "user", "content": prompt})
        return await self.chat(messages, max_tokens, temperature)

    async def is_available(self) -> bool:
        """Check if the provider is reachable."""
        return True

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(model={self.model})"
