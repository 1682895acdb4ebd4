"""structlog setup shared by the CLI and library callers.

Log records from ``logging.getLogger(__name__)`` loggers and structlog
loggers go through one stderr handler. Anything bound with
``bind_context`` (``trace_id`` in particular) is merged into every record
emitted from the same task.
"""

import logging
import os
import sys

import structlog

NOISY_LOGGERS = ("httpx", "httpcore", "mcp")


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]


def _renderer(json_output: bool) -> structlog.types.Processor:
    if json_output:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def configure_logging(level: str, json_output: bool | None = None) -> None:
    """Route stdlib and structlog records to stderr.

    ``json_output`` defaults to JSON when ``APP_ENV=prod`` and a console
    renderer otherwise. Transport libraries are held at WARNING or above.
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO
    if json_output is None:
        json_output = os.environ.get("APP_ENV", "dev") == "prod"

    shared = _shared_processors()
    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(json_output),
            ],
        )
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(log_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_event_logger(name: str = "orion.events") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_context(**kwargs: object) -> None:
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


def current_trace_id() -> str | None:
    """Trace id bound by the innermost running agent loop, if any."""
    value = structlog.contextvars.get_contextvars().get("trace_id")
    return value if isinstance(value, str) else None


def bound_context(**kwargs: object):
    """Bind values for the duration of a ``with`` block, then restore the previous ones."""
    return structlog.contextvars.bound_contextvars(**kwargs)


def current_span_id() -> str | None:
    """Span id of the tool call currently executing in this task, if any."""
    value = structlog.contextvars.get_contextvars().get("span_id")
    return value if isinstance(value, str) else None
