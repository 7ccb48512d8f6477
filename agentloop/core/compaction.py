"""
Summarization for context compaction.
"""

from typing import List

from loguru import logger

from agentloop.core.context_window import Message, MessageRole
from agentloop.core.error_handling import retry_with_backoff
from agentloop.core.errors import CompactionFailure
from agentloop.llm.base_client import BaseLLMClient

SUMMARY_SYSTEM_MESSAGE = "You are a helpful assistant that creates concise summaries."

SUMMARY_INSTRUCTIONS = """Summarize the conversation below so work can continue without it.

Keep it short and factual. Use these sections:
1. Goal - what the user is trying to achieve
2. Decisions - choices made and constraints agreed on
3. Actions - tools run and what they changed (files, commands, results)
4. State - where things stand now
5. Context - names, paths, identifiers that will be needed again
6. Pending - open items and next steps

Conversation:
"""

# Per-message cap so one huge tool result cannot blow the summary request
_MAX_MESSAGE_CHARS = 4000


def build_summary_prompt(messages: List[Message]) -> str:
    parts = [SUMMARY_INSTRUCTIONS]
    for message in messages:
        content = message.content
        if len(content) > _MAX_MESSAGE_CHARS:
            content = content[:_MAX_MESSAGE_CHARS] + f"\n... [{len(content) - _MAX_MESSAGE_CHARS} chars omitted]"
        parts.append(f"[{message.role.value}]\n{content}\n")
    return "\n".join(parts)


class LLMSummarizer:
    """
    Summarizer backed by a provider client.

    Callable with the messages to replace; returns the summary text.
    """

    def __init__(self, client: BaseLLMClient, max_tokens: int = 2048, max_retries: int = 2):
        self.client = client
        self.max_tokens = max_tokens
        self.max_retries = max_retries

    async def __call__(self, messages: List[Message]) -> str:
        request = [
            {"role": MessageRole.SYSTEM.value, "content": SUMMARY_SYSTEM_MESSAGE},
            {"role": MessageRole.USER.value, "content": build_summary_prompt(messages)},
        ]
        logger.debug(f"Requesting summary of {len(messages)} messages")
        response = await retry_with_backoff(
            lambda: self.client.chat(request, max_tokens=self.max_tokens, temperature=0.2),
            max_retries=self.max_retries,
        )

        summary = (response.content or "").strip()
        if not summary:
            raise CompactionFailure("provider returned an empty summary")
        return summary
