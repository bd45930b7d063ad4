"""
Logging setup for the portfolio scorer.

``configure_logging(config)`` is called once at CLI entry, before any job
work. Library modules only ever do ``logging.getLogger(__name__)``.

Every record carries a ``correlation_id`` attribute. Inside
``correlation_scope(cid)`` it is the job's correlation id, so log lines
from the scoring, alert and cache steps of one nightly run can be joined
with the ``calculation_events`` rows of that run. Outside a scope it is
``"-"``.

Text format::

    2026-10-19T04:00:01Z [INFO] portfolio_scorer.pipeline.orchestrator (3f2a...): [5/10] score-portfolios ...

JSON format (``json_format = true`` under ``[logging]``), one object per line::

    {"ts": "2026-10-19T04:00:01Z", "level": "INFO", "logger": "...", "correlation_id": "3f2a...", "msg": "..."}
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

if TYPE_CHECKING:
    from portfolio_scorer.config import LoggingConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s (%(correlation_id)s): %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

_NOISY_LOGGERS = ("httpx", "httpcore", "redis")

_correlation_id: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default="-"
)

# Attributes every LogRecord carries; anything else came from ``extra=``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "correlation_id"}


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[None]:
    """Stamp ``correlation_id`` on every record logged inside the block."""
    token = _correlation_id.set(correlation_id)
    try:
        yield
    finally:
        _correlation_id.reset(token)


def current_correlation_id() -> str:
    return _correlation_id.get()


class _CorrelationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = _correlation_id.get()
        return True


class _JsonFormatter(logging.Formatter):
    """One JSON object per record, ``extra=`` keys lifted to the top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
                LOG_DATE_FORMAT
            ),
            "level": record.levelname,
            "logger": record.name,
            "correlation_id": getattr(record, "correlation_id", "-"),
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        for key, val in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = val
        return json.dumps(payload, default=str)


def _handler(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(_CorrelationFilter())
    return handler


def configure_logging(config: "LoggingConfig") -> None:
    """Configure the root logger from the ``[logging]`` config section.

    Console output always goes to stdout; ``config.log_file`` adds a file
    handler (parent directories are created). Both share one formatter.
    """
    level = getattr(logging, config.level.upper(), logging.INFO)

    formatter: logging.Formatter
    if config.json_format:
        formatter = _JsonFormatter()
    else:
        formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers = [_handler(logging.StreamHandler(sys.stdout), level, formatter)]
    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            _handler(logging.FileHandler(log_path, encoding="utf-8"), level, formatter)
        )

    logging.basicConfig(level=level, handlers=handlers, force=True)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
