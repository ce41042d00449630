"""Structured logging configuration for streamperf.

Log lines are key=value pairs. Components attach endpoint, latency and
event context through ``extra=``.
"""

import logging
import sys

from streamperf.config import StreamPerfConfig, get_config

# Context keys components pass through ``extra=``
CONTEXT_FIELDS = ("endpoint", "latency_ms", "event")

# Chatty third-party loggers
QUIET_LOGGERS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
}


class StructuredFormatter(logging.Formatter):
    """Render a record as ``key=value`` pairs with streaming context."""

    def format(self, record: logging.LogRecord) -> str:
        fields = [
            ("timestamp", self.formatTime(record, self.datefmt)),
            ("level", record.levelname),
            ("logger", record.name),
            ("message", record.getMessage()),
            ("at", f"{record.funcName}:{record.lineno}"),
        ]
        fields.extend(
            (name, getattr(record, name)) for name in CONTEXT_FIELDS if hasattr(record, name)
        )
        if record.exc_info:
            fields.append(("exception", self.formatException(record.exc_info)))
        return " ".join(f"{key}={value}" for key, value in fields)


def setup_logging(config: StreamPerfConfig | None = None) -> None:
    """Route all logging to stdout through the structured formatter.

    Args:
        config: Optional configuration; defaults to the global instance
    """
    config = config or get_config()
    level = getattr(logging, config.log_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter(datefmt="%Y-%m-%dT%H:%M:%S"))

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)
    logging.getLogger("streamperf").setLevel(level)
