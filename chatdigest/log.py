"""Per-batch correlation ids for log records."""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="-")


def new_correlation_id() -> str:
    cid = uuid.uuid4().hex
    correlation_id.set(cid)
    return cid


class CorrelationIdFilter(logging.Filter):
    """Expose the current correlation id as ``%(correlation_id)s``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get()
        return True
