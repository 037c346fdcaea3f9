"""
Logging helpers.

RecentLogHandler keeps the last few log lines in memory so a host can show
a small diagnostics panel without reading log files.
"""

import logging
from collections import deque
from typing import List, Optional

DEFAULT_RETENTION = 10
LOG_FORMAT = "[%(levelname)s] %(name)s: %(message)s"


class ContextFormatter(logging.Formatter):
    """Plain-text formatter that appends known ``extra`` fields as key=value."""

    # Fields to extract from log record's extra dict
    EXTRA_FIELDS = (
        "generation", "state", "kind", "source_id",
        "width", "height", "format", "path",
    )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = []
        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                context.append(f"{field}={value}")
        if not context:
            return line

        # Keep a traceback (if any) after the context fields
        head, sep, tail = line.partition("\n")
        return f"{head} [{' '.join(context)}]{sep}{tail}"


class RecentLogHandler(logging.Handler):
    """Retains the most recent ``capacity`` formatted records."""

    def __init__(self, capacity: int = DEFAULT_RETENTION, level: int = logging.NOTSET):
        super().__init__(level)
        self._records = deque(maxlen=max(1, capacity))

    def emit(self, record: logging.LogRecord):
        try:
            self._records.append(self.format(record))
        except Exception:
            self.handleError(record)

    def messages(self) -> List[str]:
        return list(self._records)

    def clear(self):
        self._records.clear()


def configure_logging(
        level: int = logging.INFO,
        recent_handler: Optional[RecentLogHandler] = None
) -> logging.Logger:
    """Attach a console handler (and optionally a RecentLogHandler) to the package logger."""
    formatter = ContextFormatter(LOG_FORMAT)
    logger = logging.getLogger("socialmark")
    logger.setLevel(level)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    handlers = [console]
    if recent_handler is not None:
        recent_handler.setFormatter(formatter)
        handlers.append(recent_handler)
    logger.handlers = handlers
    return logger
