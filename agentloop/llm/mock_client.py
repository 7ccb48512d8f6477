"""
Mock LLM client used for tests and offline mode.
Plays back scripted streams without network access.
"""

import asyncio
import copy
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from loguru import logger

from agentloop.llm.base_client import BaseLLMClient, CompletionChunk, LLMResponse, Usage

# One script step:
#   str                 -> streamed word by word
#   list of parts       -> each str/bytes/CompletionChunk sent as-is, an Exception raised in place
#   Exception           -> raised before the first chunk
ScriptStep = Union[str, Sequence[Union[str, bytes, CompletionChunk, BaseException]], BaseException]


class MockLLMClient(BaseLLMClient):
    """
    Scripted client.

    Usage:
        client = MockLLMClient([
            'Let me look.\\n{"tool": "todo_read", "args": {}}\\n',
            "All done.",
        ])
    """

    def __init__(
        self,
        script: Optional[List[ScriptStep]] = None,
        model: str = "mock-llm",
        temperature: float = 0.1,
        summaries: Optional[List[Union[str, BaseException]]] = None,
        default_response: str = "Mock response complete.",
        chunk_delay: float = 0.0,
    ):
        super().__init__(api_key="mock", model=model, temperature=temperature)
        self._script: List[ScriptStep] = list(script or [])
        self._summaries: List[Union[str, BaseException]] = list(summaries or [])
        self.default_response = default_response
        self.chunk_delay = chunk_delay

        # Inspection for tests
        self.requests: List[List[Dict[str, Any]]] = []
        self.summary_requests: List[List[Dict[str, Any]]] = []
        self._call_count = 0

    @property
    def call_count(self) -> int:
        return self._call_count

    def queue(self, *steps: ScriptStep) -> None:
        """Append steps to the script."""
        self._script.extend(steps)

    # Public API -----------------------------------------------------------------
    async def stream_chat(
        self,
        messages: List[Dict[str, Any]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None
    ) -> AsyncIterator[CompletionChunk]:
        self._call_count += 1
        self.requests.append(copy.deepcopy(messages))

        step = self._script.pop(0) if self._script else self.default_response
        logger.debug(f"Mock stream #{self._call_count}")

        if isinstance(step, BaseException):
            raise step

        parts = self._words(step) if isinstance(step, str) else list(step)
        finished = False
        completion_tokens = 0
        for part in parts:
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            if isinstance(part, BaseException):
                raise part
            if isinstance(part, CompletionChunk):
                finished = finished or part.finished
                yield part
                if part.finished:
                    return
                continue
            completion_tokens += max(len(part) // 4, 1)
            yield CompletionChunk(content=part)

        if not finished:
            prompt_tokens = sum(len(str(m.get("content", ""))) for m in messages) // 4
            yield CompletionChunk(
                finished=True,
                stop_reason="stop",
                usage=Usage(
                    prompt_tokens=prompt_tokens,
                    completion_tokens=completion_tokens,
                    total_tokens=prompt_tokens + completion_tokens,
                ),
            )

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None
    ) -> LLMResponse:
        """Non-streaming requests (summaries) come from the ``summaries`` queue."""
        self.summary_requests.append(copy.deepcopy(messages))
        item = self._summaries.pop(0) if self._summaries else "Summary of the earlier conversation."
        if isinstance(item, BaseException):
            raise item
        return LLMResponse(
            content=item,
            model=self.model,
            tokens_used=len(item.split()),
            finish_reason="stop",
        )

    @staticmethod
    def _words(content: str) -> List[str]:
        """Split into word-sized chunks, keeping separators."""
        words = content.split(" ")
        return [word + (" " if i < len(words) - 1 else "") for i, word in enumerate(words) if word or i < len(words) - 1]
