"""
Structured JSON logging.

One JSON object per log line, so the bridge's logs can be collected and
filtered by field (auth mode, path, status code) by any log pipeline.

Logs always go to stderr. With the stdio transport, stdout is the MCP message
channel and must never receive anything else.
"""

import json
import logging
import sys


class JSONLogFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Structured fields are attached with logger.info("msg", extra={"event_data": {...}}):

        {"timestamp": "2026-02-06 10:30:00,120", "level": "INFO", "logger": "graph-bridge.auth",
         "message": "Authentication initialized", "auth_mode": "client_credentials"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "event_data"):
            log_entry.update(record.event_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def configure_logging(level: str = "info") -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONLogFormatter())
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=[handler],
        force=True,
    )
