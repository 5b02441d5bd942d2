"""Structured logging for AI translate runs.

Every component logs through ``structlog.get_logger()`` with an event name
(``locale_summary``, ``batch_created``, ...). Lines emitted while a run is
active carry the run context bound by ``bind_run_context``.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

RUN_CONTEXT_KEYS = ("run_id", "mode", "repository")

# Libraries logging every HTTP round trip at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "openai")

VERBOSITY_LEVELS = {-1: logging.WARNING, 0: logging.INFO, 1: logging.DEBUG}


def _run_context_first(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    """Move the run context keys right after the event name."""
    context = {k: event_dict.pop(k) for k in RUN_CONTEXT_KEYS if k in event_dict}
    if not context:
        return event_dict
    event = event_dict.pop("event", None)
    return {"event": event, **context, **event_dict}


def _processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _run_context_first,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _handler(handler: logging.Handler, renderer: Processor) -> logging.Handler:
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    return handler


def configure_logging(
    verbosity: int = 0,
    log_file: Optional[Path] = None,
) -> None:
    """Route structlog through stdlib logging.

    Args:
        verbosity: -1=quiet (WARNING), 0=normal (INFO), 1=verbose (DEBUG, incl. metrics)
        log_file: Optional path receiving every line as JSON, whatever the verbosity
    """
    structlog.configure(
        processors=[*_processors(), structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG if log_file else VERBOSITY_LEVELS.get(verbosity, logging.INFO))

    console = _handler(
        logging.StreamHandler(sys.stderr),
        structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
    )
    console.setLevel(VERBOSITY_LEVELS.get(verbosity, logging.INFO))
    root.addHandler(console)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        root.addHandler(
            _handler(
                logging.FileHandler(log_file, encoding="utf-8"),
                structlog.processors.JSONRenderer(),
            )
        )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_run_context(**values: object) -> None:
    """Bind values (run id, repository, mode) to every log line of the current task."""
    structlog.contextvars.bind_contextvars(**values)


def clear_run_context() -> None:
    """Drop values bound by bind_run_context."""
    structlog.contextvars.clear_contextvars()
