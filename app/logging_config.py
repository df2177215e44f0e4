"""
Logging setup: plain or JSON lines, with relay context attached.

While the relay processes a message it sets the platform, connection and
message ids in context variables; every log record emitted meanwhile
carries them, whichever module logged it.
"""

import json
import logging
import sys
from contextvars import ContextVar
from typing import Optional

platform_var: ContextVar[str] = ContextVar("platform", default="")
connection_id_var: ContextVar[str] = ContextVar("connection_id", default="")
message_id_var: ContextVar[str] = ContextVar("message_id", default="")

_CONTEXT_VARS = (
    ("platform", platform_var),
    ("connection_id", connection_id_var),
    ("message_id", message_id_var),
)


class RelayContextFilter(logging.Filter):
    """Copy the relay context variables onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _CONTEXT_VARS:
            setattr(record, name, var.get(""))
        return True


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        for name, _ in _CONTEXT_VARS:
            value = getattr(record, name, "")
            if value:
                log_entry[name] = value

        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(log_entry)


class PlainFormatter(logging.Formatter):
    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = " ".join(
            f"{name}={getattr(record, name)}" for name, _ in _CONTEXT_VARS if getattr(record, name, "")
        )
        return f"{line} [{context}]" if context else line


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Install a single stdout handler on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter() if json_output else PlainFormatter())
    handler.addFilter(RelayContextFilter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())

    # httpx logs request URLs at INFO; Bot API URLs embed the bot token
    logging.getLogger("httpx").setLevel(logging.WARNING)


def clear_relay_context():
    for _, var in _CONTEXT_VARS:
        var.set("")


def set_relay_context(platform: str = "", connection_id: Optional[str] = None, message_id: str = ""):
    """Set context variables for the message being processed."""
    if platform:
        platform_var.set(platform)
    if connection_id:
        connection_id_var.set(connection_id[:8])
    if message_id:
        message_id_var.set(message_id)
