"""
Correlation IDs and logging setup.

Every run gets a correlation id at submission. It travels inside each job
payload, and while a job runs it is bound to a ContextVar so that every log
line emitted underneath (gateway calls, trust scoring, DB writes) carries it
without passing it around explicitly.

USAGE:
    configure_logging("INFO")

    with bind_correlation_id(payload.correlation_id):
        logger.info("Running stage")   # -> "... [corr-123] ... Running stage"
"""

import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] %(message)s"

_configured = False


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


@contextmanager
def bind_correlation_id(correlation_id: Optional[str]) -> Iterator[None]:
    """Bind a correlation id for the duration of the block (task-local)."""
    token = _correlation_id.set(correlation_id)
    try:
        yield
    finally:
        _correlation_id.reset(token)


class CorrelationIdFilter(logging.Filter):
    """Stamps the current correlation id onto every record ("-" when unbound)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id.get() or "-"
        return True


def configure_logging(level: str = "INFO") -> None:
    """
    Configure root logging once. Safe to call repeatedly.

    The filter sits on the handler, so records from third-party loggers
    (sqlalchemy, httpx) also get the correlation id field.
    """
    global _configured
    root = logging.getLogger()
    root.setLevel(level.upper())
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(CorrelationIdFilter())
    root.addHandler(handler)

    # Quiet noisy client libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    _configured = True
