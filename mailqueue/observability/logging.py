"""
Structured logging for the scheduler, the workers and the CLI.

Call sites use plain ``logging.getLogger(__name__)`` with ``extra={...}``;
structlog renders those records, together with any context bound through
``bind_context`` and the active OpenTelemetry span, as JSON or console lines
on stderr.
"""

import logging
import sys
from typing import Any

import structlog
from opentelemetry import trace

from mailqueue.config import get_settings

# Chatty libraries kept at WARNING regardless of the configured level
QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "httpx", "httpcore")

EventDict = dict[str, Any]


def add_trace_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Attach trace_id and span_id of the recording span, if any."""
    span = trace.get_current_span()
    if span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = trace.format_trace_id(ctx.trace_id)
        event_dict["span_id"] = trace.format_span_id(ctx.span_id)
    return event_dict


def _pre_chain() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
    ]


def _renderer(log_format: str) -> Any:
    if log_format == "console":
        return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    return structlog.processors.JSONRenderer()


def setup_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """
    Route all logging through structlog.

    Replaces the root handler, so calling it again reconfigures rather
    than duplicates output.

    Args:
        log_level: Level name overriding LOG_LEVEL.
        log_format: "json" or "console", overriding LOG_FORMAT.
    """
    settings = get_settings()
    level = logging.getLevelName((log_level or settings.log_level).upper())
    if not isinstance(level, int):
        level = logging.INFO

    pre_chain = _pre_chain()

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # stdout stays free for command output such as job ids
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(log_format or settings.log_format),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_context(**kwargs: Any) -> None:
    """Bind key/value pairs to every record logged from the current task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
