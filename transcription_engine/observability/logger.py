"""Structured JSON logger for log aggregation.

Outputs JSON to stdout with severity, timestamp, and message fields
plus the job-scoped extras the engine attaches via ``extra=``.
"""

import json
import logging
import sys
from datetime import UTC, datetime

EXTRA_FIELDS = (
    "job_id",
    "job_name",
    "stage",
    "attempt",
    "duration_seconds",
    "error",
)


class StructuredJsonFormatter(logging.Formatter):
    """Format log records as single-line JSON objects."""

    SEVERITY_MAP: dict[int, str] = {
        logging.DEBUG: "DEBUG",
        logging.INFO: "INFO",
        logging.WARNING: "WARNING",
        logging.ERROR: "ERROR",
        logging.CRITICAL: "CRITICAL",
    }

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a JSON string.

        Args:
            record: The log record to format.

        Returns:
            JSON string with severity, timestamp, message, logger and extra fields.
        """
        log_entry: dict[str, object] = {
            "timestamp": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "severity": self.SEVERITY_MAP.get(record.levelno, "DEFAULT"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key in EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = str(record.exc_info[1])

        return json.dumps(log_entry, default=str)


def configure_logging(level: int = logging.INFO) -> None:
    """Install the structured formatter on the root logger.

    Safe to call more than once; an existing structured handler is reused.

    Args:
        level: Root log level.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers:
        if isinstance(handler.formatter, StructuredJsonFormatter):
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(handler)
