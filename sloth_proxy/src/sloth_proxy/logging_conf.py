"""
Structured logging configuration using structlog.

Every pipeline stage logs events (render_started, extraction_completed,
batch_site_failed, ...) with key/value context. Request handlers bind a
request_id so all events of one request can be correlated.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Third-party loggers that are too chatty below WARNING
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "playwright", "apscheduler", "uvicorn.access")

MAX_FIELD_LENGTH = 500
TRIMMED_FIELDS = ("error", "detail")


def _trim_error_fields(logger: WrappedLogger, method: str, event_dict: EventDict) -> EventDict:
    """
    Shorten error strings before rendering.

    Playwright errors append a multi-line "Call log:" section; only the
    first part is useful in a log line.
    """
    for key in TRIMMED_FIELDS:
        value = event_dict.get(key)
        if not isinstance(value, str):
            continue
        value = value.split("Call log:")[0].strip()
        if len(value) > MAX_FIELD_LENGTH:
            value = value[:MAX_FIELD_LENGTH] + "..."
        event_dict[key] = value
    return event_dict


def _level_number(level: str) -> int:
    number = logging.getLevelName(level.upper())
    return number if isinstance(number, int) else logging.INFO


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    service: Optional[str] = "sloth-proxy",
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Log level name; unknown names fall back to INFO
        json_output: Emit one JSON object per line (production)
        service: Service name bound to every log entry
    """
    level_no = _level_number(level)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level_no)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _trim_error_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        renderer: list[Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    if service:
        structlog.contextvars.bind_contextvars(service=service)


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Logger bound to a module name (usually __name__)."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(logger=name)
    return logger


@contextmanager
def request_context(**kwargs) -> Iterator[None]:
    """Bind kwargs to every log entry emitted inside the block."""
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield
