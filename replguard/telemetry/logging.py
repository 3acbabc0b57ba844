"""
ReplGuard — Structured Logging

All logging via structlog, rendered on stderr. stdout is reserved for
the run headline so the CLI can be piped into other tools.

Records from third-party libraries (httpx, asyncio) go through the same
processor chain, so a JSON log stream stays one object per line.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import orjson
import structlog

if TYPE_CHECKING:
    from replguard.config import LoggingConfig

_NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")


def _dumps(obj: Any, **kwargs: Any) -> str:
    # Snapshots and issues end up in event fields; fall back to str()
    return orjson.dumps(obj, default=str).decode()


def setup_logging(config: LoggingConfig, run_id: str = "") -> None:
    """
    Configure structured logging for the entire process.

    Safe to call more than once; the root handler is replaced each time.
    """
    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    tail: list[Any]
    if config.format == "json":
        # Tracebacks become a structured field instead of multi-line output
        tail = [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(serializer=_dumps),
        ]
    else:
        tail = [
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *tail],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, config.level.upper(), logging.INFO))

    if run_id:
        structlog.contextvars.bind_contextvars(run_id=run_id)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
