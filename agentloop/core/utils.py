"""
Shared utilities for agentloop.
"""

import json
import math
import os
from pathlib import Path
from typing import Dict, Optional, Tuple
import yaml


# Markers that usually indicate code-heavy text (denser tokenization)
_CODE_MARKERS = ("{", "```", "def ", "fn ")

# Chat-template tokens some models leak into their output
_LLM_SPECIAL_TOKENS = ("<|im_end|>", "<|im_start|>", "<|endoftext|>", "</s>", "[/INST]", "<</SYS>>")


def estimate_tokens(text: str) -> int:
    """
    Cheap token estimate used for compaction decisions.

    Code-like text is counted at ~3 characters per token, prose at ~4,
    plus a 10% safety margin.

    Args:
        text: Text to estimate

    Returns:
        Estimated token count
    """
    if not text:
        return 0
    chars_per_token = 3.0 if any(marker in text for marker in _CODE_MARKERS) else 4.0
    return math.ceil(round(len(text) / chars_per_token * 1.1, 6))


def clean_llm_tokens(text: str) -> str:
    """Strip chat-template control tokens from model output."""
    for token in _LLM_SPECIAL_TOKENS:
        if token in text:
            text = text.replace(token, "")
    return text


def format_duration(seconds: float) -> str:
    """
    Format a duration for the timing footer.

    Examples: 0.4 -> "400ms", 3.62 -> "3.6s", 125 -> "2m 5s"
    """
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s"


def truncate(text: str, limit: int = 200) -> str:
    """Shorten text for log lines."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


# Cache for model limits
_MODEL_LIMITS_CACHE: Optional[Dict] = None


def _load_model_limits() -> Dict:
    """Load model limits from YAML config file."""
    global _MODEL_LIMITS_CACHE
    if _MODEL_LIMITS_CACHE is not None:
        return _MODEL_LIMITS_CACHE

    config_path = Path(__file__).parent.parent / "config" / "model_limits.yaml"
    if config_path.exists():
        with open(config_path) as f:
            _MODEL_LIMITS_CACHE = yaml.safe_load(f)
    else:
        _MODEL_LIMITS_CACHE = {"defaults": {"context_window": 128000, "max_output_tokens": 4096}, "models": {}}

    return _MODEL_LIMITS_CACHE


def get_model_limits(model: str) -> Tuple[int, int]:
    """
    Get context window and max output tokens for a model.

    Args:
        model: Model name/identifier

    Returns:
        Tuple of (context_window, max_output_tokens)
    """
    limits = _load_model_limits()
    defaults = limits.get("defaults", {})
    models = limits.get("models", {})
    default_context = defaults.get("context_window", 128000)
    default_output = defaults.get("max_output_tokens", 4096)

    model_lower = model.lower() if model else ""

    if model_lower in models:
        m = models[model_lower]
        return m.get("context_window", default_context), m.get("max_output_tokens", default_output)

    for key, m in models.items():
        if model_lower and (key in model_lower or model_lower in key):
            return m.get("context_window", default_context), m.get("max_output_tokens", default_output)

    return default_context, default_output


def get_max_output_tokens(model: str) -> int:
    """Get max output tokens for a model."""
    _, max_output = get_model_limits(model)
    return max_output


def get_context_window(model: str) -> int:
    """Get context window (in tokens) for a model."""
    context, _ = get_model_limits(model)
    return context


def write_json_atomic(path: Path, data: Dict) -> None:
    """
    Write JSON via a temp file and rename, so readers never see a torn file.

    Raises:
        OSError: If the directory cannot be created or the file written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    os.replace(tmp_path, path)
