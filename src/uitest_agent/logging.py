"""
Logging configuration using structlog.

Console output is human-readable; an optional log file receives one JSON
object per line. Loop runs bind scenario_id into the context so every event
of a run can be filtered together.
"""

import sys
import logging
from typing import Any, Iterable
from pathlib import Path

import structlog
from structlog.types import Processor

# Key fragments whose values are replaced before rendering
REDACT_PATTERNS = (
    "anthropic_api_key",
    "api_key",
    "apikey",
    "authorization",
    "secret",
    "password",
    "token",
)

# Keys that may carry base64 screenshots or hint images
PAYLOAD_KEYS = ("image", "image_data", "screenshot", "data")
MAX_PAYLOAD_CHARS = 256

# Chatty HTTP stacks underneath the model client
NOISY_LOGGERS = ("httpx", "httpcore", "anthropic")


def redact_secrets(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask secret values and shrink inline image payloads."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lowered = key.lower()
        if any(pattern in lowered for pattern in REDACT_PATTERNS):
            event_dict[key] = "[REDACTED]"
        elif lowered in PAYLOAD_KEYS and len(value) > MAX_PAYLOAD_CHARS:
            event_dict[key] = f"<{len(value)} chars>"
    return event_dict


def _formatter(renderer: Processor, pre_chain: list[Processor]) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=pre_chain)


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    quiet_loggers: Iterable[str] = NOISY_LOGGERS,
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional JSON-lines log file
        quiet_loggers: Third-party loggers held at WARNING unless level is DEBUG
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        redact_secrets,
    ]

    structlog.configure(
        processors=pre_chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(
        _formatter(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()), pre_chain)
    )
    handlers: list[logging.Handler] = [console]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), pre_chain))
        handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers = handlers
    root.setLevel(numeric_level)

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(
            numeric_level if numeric_level <= logging.DEBUG else logging.WARNING
        )


def bind_run_context(**values: Any) -> None:
    """Attach key/values (scenario_id, ...) to every event until cleared."""
    structlog.contextvars.bind_contextvars(**values)


def clear_run_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)
