import copy
import json
import os

from .logging_config import get_logger

logger = get_logger(__name__)
config: dict = None

DEFAULT_BLOCK_THRESHOLD = 8

_DEFAULTS = {
    "log_level": "INFO",
    "log_file": None,
    "llm": {
        "provider": "openAI",
        "model": "gpt-4o-mini",
        "base_url": None,
        "temperature": 0.6,
        "max_tokens": 4096,
    },
    "stream": {
        "block_threshold": DEFAULT_BLOCK_THRESHOLD,
        "reasoning_key": "reasoning_content",
        "accumulate": False,
    },
    "tools": {
        "handle_tool_errors": True,
    },
}


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes")


def _merge(base: dict, override: dict) -> dict:
    """Merge override into base one level deep so partial sections keep their defaults."""
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key].update(value)
        else:
            base[key] = value
    return base


def _initialise_config(path: str = "config.json") -> dict:
    """Get application configuration.

    Loads configuration from a JSON file and also optionally from env vars
    """
    config = copy.deepcopy(_DEFAULTS)

    # Missing or unreadable config.json is fine; defaults apply
    try:
        with open(path, "r") as f:
            _merge(config, json.load(f))
    except Exception as e:
        logger.debug("Could not load %s: %s (using defaults)", path, e)

    if os.getenv("STEPSTREAM_PROVIDER"):
        config["llm"]["provider"] = os.getenv("STEPSTREAM_PROVIDER")
    if os.getenv("STEPSTREAM_MODEL"):
        config["llm"]["model"] = os.getenv("STEPSTREAM_MODEL")
    if os.getenv("STEPSTREAM_BASE_URL"):
        config["llm"]["base_url"] = os.getenv("STEPSTREAM_BASE_URL")

    threshold = os.getenv("STEPSTREAM_BLOCK_THRESHOLD")
    if threshold:
        try:
            config["stream"]["block_threshold"] = max(1, int(threshold))
        except ValueError:
            logger.warning("Ignoring invalid STEPSTREAM_BLOCK_THRESHOLD=%r", threshold)

    if os.getenv("STEPSTREAM_REASONING_KEY") in ("reasoning", "reasoning_content"):
        config["stream"]["reasoning_key"] = os.getenv("STEPSTREAM_REASONING_KEY")

    if os.getenv("STEPSTREAM_HANDLE_TOOL_ERRORS") is not None:
        config["tools"]["handle_tool_errors"] = _env_flag(os.getenv("STEPSTREAM_HANDLE_TOOL_ERRORS"))

    if os.getenv("STEPSTREAM_LOG_LEVEL"):
        config["log_level"] = os.getenv("STEPSTREAM_LOG_LEVEL").upper()
    if os.getenv("STEPSTREAM_LOG_FILE") is not None:
        config["log_file"] = os.getenv("STEPSTREAM_LOG_FILE")

    # Derive verbose/debug from log level for LangChain
    config["verbose"] = config["log_level"] == "DEBUG"
    config["debug"] = config["log_level"] == "DEBUG"

    return config


config = _initialise_config()
