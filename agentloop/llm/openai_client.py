"""
OpenAI-compatible streaming client.
Works with any endpoint speaking the chat completions API (set base_url).
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional

from loguru import logger
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    PermissionDeniedError,
    RateLimitError,
)

from agentloop.core.errors import TransportError
from agentloop.core.streaming_parser import ToolCall
from agentloop.core.utils import get_max_output_tokens
from agentloop.llm.base_client import BaseLLMClient, CompletionChunk, LLMResponse, Usage


def translate_openai_error(error: Exception) -> TransportError:
    """Map an openai exception onto TransportError with a retry verdict."""
    if isinstance(error, APITimeoutError):
        return TransportError(f"Request timed out: {error}", retryable=True)
    if isinstance(error, APIConnectionError):
        return TransportError(f"Connection error: {error}", retryable=True)
    if isinstance(error, RateLimitError):
        return TransportError(f"Rate limited: {error}", retryable=True, status_code=429)
    if isinstance(error, InternalServerError):
        return TransportError(f"Server error: {error}", retryable=True, status_code=error.status_code)
    if isinstance(error, (AuthenticationError, PermissionDeniedError)):
        return TransportError(f"Authentication failed: {error}", retryable=False, status_code=error.status_code)
    if isinstance(error, BadRequestError):
        return TransportError(f"Bad request: {error}", retryable=False, status_code=error.status_code)
    if isinstance(error, APIStatusError):
        return TransportError(str(error), retryable=error.status_code >= 500, status_code=error.status_code)
    return TransportError(str(error), retryable=False)


def to_openai_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """
    Tool results travel as user messages: calls are plain text lines in the
    assistant content, so there is no native tool_calls entry to pair with.
    """
    converted = []
    for message in messages:
        role = str(message.get("role", "user")).lower()
        content = message.get("content") or ""
        if role == "tool":
            converted.append({"role": "user", "content": f"Tool result:\n{content}"})
        else:
            converted.append({"role": role, "content": content})
    return converted


class OpenAIClient(BaseLLMClient):
    """Streaming client for OpenAI and compatible endpoints."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        temperature: float = 0.7,
        base_url: Optional[str] = None,
        timeout: float = 120.0,
        max_tokens: Optional[int] = None,
    ):
        """
        Initialize OpenAI client.

        Args:
            api_key: API key
            model: Model name
            temperature: Sampling temperature
            base_url: Alternative endpoint for compatible providers
            timeout: Request timeout in seconds
            max_tokens: Default output cap (from model_limits.yaml if unset)
        """
        super().__init__(api_key, model, temperature)
        self.max_tokens = max_tokens or get_max_output_tokens(model)
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        logger.info(f"OpenAI client initialized: {model}" + (f" at {base_url}" if base_url else ""))

    async def stream_chat(
        self,
        messages: List[Dict[str, Any]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None
    ) -> AsyncIterator[CompletionChunk]:
        tool_call_buffer: Dict[int, Dict[str, Any]] = {}
        usage: Optional[Usage] = None
        stop_reason: Optional[str] = None

        try:
            stream = await self.client.chat.completions.create(
                model=self.model,
                messages=to_openai_messages(messages),
                temperature=self.temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.max_tokens,
                stream=True,
                stream_options={"include_usage": True},
            )

            async for chunk in stream:
                if chunk.usage:
                    usage = self._convert_usage(chunk.usage)
                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                delta = choice.delta
                if delta is not None and delta.tool_calls:
                    for tool_call_delta in delta.tool_calls:
                        self._accumulate_tool_call(tool_call_buffer, tool_call_delta)
                if choice.finish_reason:
                    stop_reason = choice.finish_reason
                if delta is not None and delta.content:
                    yield CompletionChunk(content=delta.content)
        except (APIConnectionError, APIStatusError) as e:
            logger.error(f"OpenAI API error: {e}")
            raise translate_openai_error(e) from e

        yield CompletionChunk(
            finished=True,
            tool_calls=self._finalize_tool_calls(tool_call_buffer) or None,
            usage=usage,
            stop_reason=stop_reason or "stop",
        )

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None
    ) -> LLMResponse:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=to_openai_messages(messages),
                temperature=self.temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.max_tokens,
            )
        except (APIConnectionError, APIStatusError) as e:
            logger.error(f"OpenAI API error: {e}")
            raise translate_openai_error(e) from e

        usage = self._convert_usage(response.usage) if response.usage else Usage()
        logger.debug(f"OpenAI response: {usage.total_tokens} tokens")
        return LLMResponse(
            content=response.choices[0].message.content or "",
            model=self.model,
            tokens_used=usage.total_tokens,
            finish_reason=response.choices[0].finish_reason or "stop",
            metadata={
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
            },
        )

    async def is_available(self) -> bool:
        """Check if the endpoint answers."""
        try:
            await self.client.models.list()
            return True
        except (APIConnectionError, APIStatusError) as e:
            logger.warning(f"OpenAI not available: {e}")
            return False

    @staticmethod
    def _convert_usage(raw: Any) -> Usage:
        cached = 0
        details = getattr(raw, "prompt_tokens_details", None)
        if details is not None:
            cached = getattr(details, "cached_tokens", 0) or 0
        return Usage(
            prompt_tokens=raw.prompt_tokens or 0,
            completion_tokens=raw.completion_tokens or 0,
            total_tokens=raw.total_tokens or 0,
            cache_read_tokens=cached,
        )

    @staticmethod
    def _accumulate_tool_call(buffer: Dict[int, Dict[str, Any]], tool_call_delta: Any) -> None:
        """Accumulate native tool call fragments from streaming deltas."""
        index = tool_call_delta.index
        if index not in buffer:
            buffer[index] = {"id": getattr(tool_call_delta, "id", None), "name": "", "arguments": ""}

        entry = buffer[index]
        if getattr(tool_call_delta, "id", None):
            entry["id"] = tool_call_delta.id
        function = getattr(tool_call_delta, "function", None)
        if function is not None:
            if function.name:
                entry["name"] = function.name
            if function.arguments:
                entry["arguments"] += function.arguments

    @staticmethod
    def _finalize_tool_calls(buffer: Dict[int, Dict[str, Any]]) -> List[ToolCall]:
        calls = []
        for index in sorted(buffer):
            entry = buffer[index]
            if not entry["name"]:
                continue
            try:
                args = json.loads(entry["arguments"]) if entry["arguments"].strip() else {}
            except json.JSONDecodeError as e:
                logger.warning(f"Dropping native tool call {entry['name']} with unparseable arguments: {e}")
                continue
            if not isinstance(args, dict):
                logger.warning(f"Dropping native tool call {entry['name']}: arguments are not an object")
                continue
            calls.append(ToolCall(name=entry["name"], args=args, call_id=entry["id"]))
        return calls
