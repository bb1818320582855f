"""
Utility functions for llm_toolloop.
"""
import json
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlparse

from rich.logging import RichHandler


def truncate_string(text: str, max_length: int = 100, suffix: str = "...") -> str:
    """
    Truncate a string to a maximum length.

    Args:
        text: The string to truncate
        max_length: Maximum length of the output string
        suffix: Suffix to append when truncating

    Returns:
        Truncated string
    """
    if len(text) <= max_length:
        return text
    return text[:max_length - len(suffix)] + suffix


def format_timestamp(timestamp: Optional[float] = None, fmt: str = "%H:%M:%S") -> str:
    """
    Format a timestamp to a human-readable string.

    Args:
        timestamp: Unix timestamp (uses current time if None)
        fmt: strftime format string

    Returns:
        Formatted timestamp string
    """
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp).strftime(fmt)


def new_id() -> str:
    """Generate a unique identifier for messages, tool calls and RPC requests."""
    return str(uuid.uuid4())


def server_name_from_url(url: str) -> str:
    """Derive a display name for a server from its endpoint host and port."""
    parsed = urlparse(url)
    if not parsed.hostname:
        return url
    try:
        port = parsed.port
    except ValueError:
        port = None
    return f"{parsed.hostname}:{port}" if port else parsed.hostname


def summarize(value: Any, max_length: int = 200) -> str:
    """Render any JSON-like value as a short single-line string."""
    if isinstance(value, str):
        text = value
    else:
        try:
            text = json.dumps(value, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            text = repr(value)
    return truncate_string(text.replace("\n", " "), max_length)


def setup_logging(level: int = logging.INFO, rich_output: bool = True) -> logging.Logger:
    """
    Attach a handler to the package logger.

    Args:
        level: Logging level for the package logger
        rich_output: Use a rich console handler instead of a plain stream handler

    Returns:
        The configured ``llm_toolloop`` logger
    """
    logger = logging.getLogger("llm_toolloop")
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    if rich_output:
        handler: logging.Handler = RichHandler(rich_tracebacks=True, show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    logger.addHandler(handler)
    return logger
