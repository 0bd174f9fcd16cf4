"""Structured logging for the Family Concierge agent.

structlog on top of stdlib logging. Production runs and discovery
sessions each carry a run id in a ContextVar; every line logged while
one is active gets a ``run_id`` field. Message text (subjects, snippets,
error bodies) is capped so a noisy newsletter cannot flood the log.

Usage:
    from concierge.core.logging import get_logger, set_correlation_id

    logger = get_logger(__name__)

    set_correlation_id(session_id)
    logger.info("evidence_recorded", message_id="abc123", score=0.95)
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog

MAX_FIELD_LENGTH = 300

# Chatty below WARNING and never useful for following a run.
NOISY_LOGGERS = ("apscheduler", "httpx", "msal", "urllib3", "anthropic")

_run_id: ContextVar[str | None] = ContextVar("run_id", default=None)


def set_correlation_id(correlation_id: str | None) -> None:
    """Set (or clear with None) the run id for the current context."""
    _run_id.set(correlation_id)


def get_correlation_id() -> str | None:
    return _run_id.get()


def add_correlation_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Stamp the active run id on the entry."""
    run_id = _run_id.get()
    if run_id is not None:
        event_dict.setdefault("run_id", run_id)
    return event_dict


def truncate_long_values(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Cap string fields at MAX_FIELD_LENGTH characters; ``event`` is left alone."""
    for key, value in event_dict.items():
        if key != "event" and isinstance(value, str) and len(value) > MAX_FIELD_LENGTH:
            event_dict[key] = f"{value[:MAX_FIELD_LENGTH]}... [{len(value)} chars]"
    return event_dict


def _processors(json_output: bool) -> list[structlog.types.Processor]:
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_correlation_id,
        truncate_long_values,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines for ``serve``; console rendering for CLI use
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=_processors(json_output),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Structured logger for a module; pass ``__name__``."""
    return structlog.get_logger(name)
