"""
Utility functions for the reply engine.

This module provides:
- Environment variable loading with typed defaults
- Logging configuration with Loguru
- Timing utilities for backend round-trips
- Input sanitization for logs and prompts
"""

import os
import re
import sys
import time
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from dotenv import load_dotenv
from loguru import logger


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


DEFAULT_TIER_MODELS = {
    1: "x-ai/grok-4.1-fast",
    2: "anthropic/claude-sonnet-4.5",
    3: "anthropic/claude-opus-4.5",
}


def setup_logging(level: Optional[str] = None, serialize: Optional[bool] = None) -> None:
    """
    Configure Loguru logging for the engine.

    Args:
        level: Minimum level, defaults to LOG_LEVEL from the environment
        serialize: Emit JSON records, defaults to LOG_JSON from the environment
    """
    config = get_config()
    if level is None:
        level = config["LOG_LEVEL"]
    if serialize is None:
        serialize = config["LOG_JSON"]

    logger.remove()
    logger.add(
        sys.stdout,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message} | {extra}",
        level=level,
        serialize=serialize,
    )

    logger.info("Logging configuration complete", level=level, serialize=serialize)


def load_and_validate_env() -> Dict[str, Any]:
    """
    Load and validate engine environment variables.

    Nothing is required here: the OpenRouter key is only checked when the
    default backend client is built.

    Returns:
        Dict[str, Any]: Configuration dictionary with validated values
    """
    load_dotenv()

    optional_vars = {
        "OPENROUTER_API_KEY": None,
        "OPENROUTER_BASE_URL": "https://openrouter.ai/api/v1",
        "OPENROUTER_SITE_URL": "https://github.com/reply-engine",
        "OPENROUTER_APP_TITLE": "Reply Engine",
        "AI_TIER_1_MODEL": DEFAULT_TIER_MODELS[1],
        "AI_TIER_2_MODEL": DEFAULT_TIER_MODELS[2],
        "AI_TIER_3_MODEL": DEFAULT_TIER_MODELS[3],
        "ROUTER_MODEL": None,
        "MATCHER_MODEL": None,
        "REQUEST_TIMEOUT_SECONDS": 15,
        "FAQ_MATCH_THRESHOLD": 0.6,
        "PROMPT_MAX_MESSAGE_CHARS": 1000,
        "LOG_LEVEL": "INFO",
        "LOG_JSON": "false",
    }
    int_vars = ["REQUEST_TIMEOUT_SECONDS", "PROMPT_MAX_MESSAGE_CHARS"]
    float_vars = ["FAQ_MATCH_THRESHOLD"]

    config: Dict[str, Any] = {}

    for var, default in optional_vars.items():
        value = os.getenv(var, default)
        if var in int_vars:
            try:
                config[var] = int(value)
            except (TypeError, ValueError):
                logger.warning(f"Invalid value for {var}: {value}, using default: {default}")
                config[var] = default
        elif var in float_vars:
            try:
                config[var] = float(value)
            except (TypeError, ValueError):
                logger.warning(f"Invalid value for {var}: {value}, using default: {default}")
                config[var] = default
        else:
            config[var] = value

    config["LOG_LEVEL"] = str(config["LOG_LEVEL"]).upper()
    config["LOG_JSON"] = str(config["LOG_JSON"]).lower() == "true"

    # Router and matcher use the cheap tier unless told otherwise
    config["ROUTER_MODEL"] = config["ROUTER_MODEL"] or config["AI_TIER_1_MODEL"]
    config["MATCHER_MODEL"] = config["MATCHER_MODEL"] or config["AI_TIER_1_MODEL"]

    logger.debug("Environment configuration loaded")
    return config


def sanitize_for_logging(text: str, max_length: int = 200) -> str:
    """
    Sanitize user input for safe logging by masking sensitive information.

    Args:
        text: Input text to sanitize
        max_length: Maximum length of sanitized text

    Returns:
        str: Sanitized text safe for logging
    """
    if not text:
        return ""

    sensitive_patterns = [
        r'sk-[a-zA-Z0-9-]+',  # API keys starting with sk-
        r'Bearer\s+[a-zA-Z0-9._-]+',  # Bearer tokens
        r'[\w.+-]+@[\w-]+\.[\w.-]+',  # Email addresses
        r'\+?\d[\d\s.-]{7,}\d',  # Phone numbers
    ]

    sanitized = text
    for pattern in sensitive_patterns:
        sanitized = re.sub(pattern, '[REDACTED]', sanitized, flags=re.IGNORECASE)

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."

    return sanitized


def sanitize_for_prompt(text: str, max_length: int = 1000) -> str:
    """
    Neutralise customer text before embedding it in a prompt.

    Backslashes and double quotes are escaped so the text cannot close the
    quoted block it is placed in, newlines are flattened so it cannot open new
    prompt sections, and the result is truncated to ``max_length``.
    """
    if not text:
        return ""

    sanitized = text.replace("\\", "\\\\").replace('"', '\\"')
    sanitized = re.sub(r"[\r\n]+", " ", sanitized)
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length]
        # Never leave a dangling escape at the cut
        trailing = len(sanitized) - len(sanitized.rstrip("\\"))
        if trailing % 2 == 1:
            sanitized = sanitized[:-1]
    return sanitized


class Timer:
    """Context manager for timing operations."""

    def __init__(self, operation_name: str = "operation"):
        self.operation_name = operation_name
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        logger.debug(f"Starting {self.operation_name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()

        if exc_type is None:
            logger.debug(f"Completed {self.operation_name}", duration_ms=self.duration_ms)
        else:
            logger.error(f"Failed {self.operation_name}", duration_ms=self.duration_ms, error=str(exc_val))

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds."""
        if self.start_time is not None and self.end_time is not None:
            return (self.end_time - self.start_time) * 1000
        return 0.0


def get_utc_datetime() -> datetime:
    """
    Get current datetime object in UTC timezone.

    Returns:
        datetime: Current UTC datetime object with timezone info
    """
    return datetime.now(timezone.utc)


# Global configuration instance
_config: Optional[Dict[str, Any]] = None


def get_config() -> Dict[str, Any]:
    """
    Get the global configuration, loading it if not already loaded.

    Returns:
        Dict[str, Any]: Configuration dictionary
    """
    global _config
    if _config is None:
        _config = load_and_validate_env()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next call re-reads the environment."""
    global _config
    _config = None
