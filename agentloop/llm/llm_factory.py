"""
LLM Factory - creates provider clients from configuration.
"""

from typing import Optional

from loguru import logger

from agentloop.core.config import Config, get_config
from agentloop.llm.base_client import BaseLLMClient
from agentloop.llm.mock_client import MockLLMClient
from agentloop.llm.openai_client import OpenAIClient


class LLMFactory:
    """Factory for creating LLM clients."""

    @staticmethod
    def create_client(
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        config: Optional[Config] = None,
        temperature: Optional[float] = None
    ) -> BaseLLMClient:
        """
        Create an LLM client.

        Args:
            model: Model identifier (defaults to config.default_model)
            api_key: API key (will use config if not provided)
            config: Configuration object
            temperature: Sampling temperature

        Returns:
            Initialized LLM client

        Raises:
            ValueError: If no API key is available outside mock mode
        """
        config = config or get_config()
        model = model or config.default_model
        temperature = config.temperature if temperature is None else temperature

        if config.mock_mode:
            logger.warning("Mock mode active - using MockLLMClient.")
            return MockLLMClient(model="mock-llm", temperature=temperature)

        api_key = api_key or config.openai_api_key
        if not api_key:
            raise ValueError("No API key configured. Set OPENAI_API_KEY or enable MOCK_MODE.")

        logger.info(f"Creating LLM client for model: {model}")
        return OpenAIClient(
            api_key=api_key,
            model=model,
            temperature=temperature,
            base_url=config.base_url,
            timeout=config.request_timeout,
            max_tokens=config.max_tokens,
        )
