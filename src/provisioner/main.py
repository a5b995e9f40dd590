"""Main entry point for the provisioner.

Logs are JSON lines on stderr, keeping stdout free for command output
such as the JSON results of `show` and `apply -o json`. Context is
attached with ``extra={...}`` and ends up as top-level JSON keys.
"""

from __future__ import annotations

import logging
import sys

# LogRecord attributes that are not user-supplied context
_RESERVED_RECORD_KEYS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output."""
    import json
    from datetime import UTC, datetime

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        def format(self, record: logging.LogRecord) -> str:
            log_data = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            for key, value in record.__dict__.items():
                if key not in _RESERVED_RECORD_KEYS:
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Reduce noise from the HTTP stack
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def run() -> None:
    """Entry point for the provisioner CLI."""
    from .cli import cli

    sys.exit(cli())


if __name__ == "__main__":
    run()
