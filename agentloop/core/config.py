"""
Configuration management for agentloop.
Loads settings from environment variables and .env file.
"""

import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv
from loguru import logger

# Current working directory first, then the user config directory
_possible_env_paths = [
    Path.cwd() / ".env",
    Path.home() / ".agentloop" / ".env",
]
for _env_path in _possible_env_paths:
    if _env_path.exists():
        load_dotenv(_env_path)
        break
else:
    load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"true", "1", "yes"}


class Config:
    """Configuration manager for agentloop."""

    def __init__(self, setup_logging: bool = True):
        """Initialize configuration from environment variables."""

        # Provider
        self.openai_api_key: Optional[str] = os.getenv("OPENAI_API_KEY")
        self.base_url: Optional[str] = os.getenv("AGENTLOOP_BASE_URL")
        self.default_model: str = os.getenv("DEFAULT_MODEL", "gpt-4o")
        self.temperature: float = float(os.getenv("TEMPERATURE", "0.7"))
        self.max_tokens: int = int(os.getenv("MAX_TOKENS", "4096"))
        self.request_timeout: float = float(os.getenv("REQUEST_TIMEOUT", "120"))

        # Workspace (session logs, fragments, checklists)
        self.workspace_dir: Path = Path(os.getenv("WORKSPACE_DIR", "./.agentloop"))

        # Turn engine
        self.autonomous: bool = _env_bool("AUTONOMOUS")
        self.compaction_threshold: float = float(os.getenv("COMPACTION_THRESHOLD", "0.8"))
        self.keep_recent_turns: int = int(os.getenv("KEEP_RECENT_TURNS", "2"))
        self.max_empty_responses: int = int(os.getenv("MAX_EMPTY_RESPONSES", "5"))
        self.max_tool_calls_per_turn: int = int(os.getenv("MAX_TOOL_CALLS_PER_TURN", "200"))
        self.max_retries: int = int(os.getenv("MAX_RETRIES", "3"))
        self.aggressive_dehydration: bool = _env_bool("AGGRESSIVE_DEHYDRATION")

        # Logging
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")
        self.console_log_level: str = os.getenv("CONSOLE_LOG_LEVEL", "WARNING")
        log_file = os.getenv("LOG_FILE")
        self.log_file: Optional[Path] = Path(log_file) if log_file else None
        self.console_logging: bool = _env_bool("CONSOLE_LOGGING", "true")

        self.debug_mode: bool = _env_bool("DEBUG_MODE")
        self.mock_mode: bool = _env_bool("MOCK_MODE")

        self._validate()

        if setup_logging:
            self._setup_logging()

    def _validate(self):
        """Validate configuration settings."""
        if not self.openai_api_key and not self.mock_mode:
            logger.warning("No API key found! Set OPENAI_API_KEY in .env file or enable MOCK_MODE")

        if not 0.0 < self.compaction_threshold <= 1.0:
            logger.warning(f"COMPACTION_THRESHOLD {self.compaction_threshold} out of range, using 0.8")
            self.compaction_threshold = 0.8

        if not 3 <= self.max_empty_responses <= 10:
            clamped = min(max(self.max_empty_responses, 3), 10)
            logger.warning(f"MAX_EMPTY_RESPONSES must be in [3, 10], clamping {self.max_empty_responses} to {clamped}")
            self.max_empty_responses = clamped

        if self.keep_recent_turns < 0:
            self.keep_recent_turns = 0

    def _setup_logging(self):
        """Configure logging based on settings."""
        logger.remove()

        if self.console_logging:
            logger.add(
                lambda msg: print(msg, end=""),
                level="DEBUG" if self.debug_mode else self.console_log_level,
                colorize=True,
                format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
            )

        if self.log_file:
            logger.add(
                self.log_file,
                level=self.log_level,
                rotation="10 MB",
                retention="1 week",
                format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function} - {message}"
            )

        if self.debug_mode:
            logger.info("Debug mode enabled")
        if self.mock_mode:
            logger.info("Mock mode enabled (LLM responses will be simulated)")

    def __repr__(self) -> str:
        return (
            f"Config(model={self.default_model}, "
            f"autonomous={self.autonomous}, "
            f"workspace={self.workspace_dir})"
        )


_config: Optional[Config] = None


def get_config() -> Config:
    """Return the process-wide config, creating it on first use."""
    global _config
    if _config is None:
        _config = Config()
    return _config
