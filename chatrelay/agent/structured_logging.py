"""
Structured Logging — Subsystem loggers with optional JSON output.

Every record logged through a ``SubsystemLogger`` carries its subsystem and
an optional ``data`` payload. When structured output is enabled, each record
becomes one JSON object that also includes whichever correlation ids
(session, channel, turn) are bound in the current context.

Usage:
    from chatrelay.agent.structured_logging import set_log_context, stream_log

    set_log_context(session_id="discord:123", turn_id=turn_id)
    stream_log.info("[PROJECTOR] Turn output truncated", {"max_turn_chars": 500})
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from enum import Enum
from functools import partialmethod
from typing import Any, Dict, Optional

session_id_var: ContextVar[str] = ContextVar("session_id", default="")
channel_var: ContextVar[str] = ContextVar("channel", default="")
turn_id_var: ContextVar[str] = ContextVar("turn_id", default="")

# JSON key -> context variable
_CORRELATION_FIELDS = (
    ("session_id", session_id_var),
    ("channel", channel_var),
    ("turn_id", turn_id_var),
)

ROOT_LOGGER = "chatrelay"


class Subsystem(str, Enum):
    AGENT = "agent"      # sessions and the host loop
    STREAM = "stream"    # projector and block pipeline
    CHANNEL = "channel"  # transport dispatch
    CONFIG = "config"    # settings resolution


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "subsystem": getattr(record, "subsystem", "general"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, var in _CORRELATION_FIELDS:
            value = var.get()
            if value:
                entry[key] = value

        data = getattr(record, "data", None)
        if data:
            entry["data"] = data
        if record.exc_info and record.exc_info[0]:
            exc_type, exc_value = record.exc_info[0], record.exc_info[1]
            entry["exception"] = {"type": exc_type.__name__, "message": str(exc_value)}

        return json.dumps(entry, default=str)


class SubsystemLogger:
    """Tags records with a subsystem; ``data`` rides along as structured payload."""

    def __init__(self, subsystem: Subsystem, logger: logging.Logger):
        self.subsystem = subsystem
        self._logger = logger

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def log(self, level: int, msg: str, data: Optional[Dict[str, Any]] = None, **kwargs) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = {"subsystem": self.subsystem.value, "data": data}
        self._logger.log(level, msg, extra=extra, **kwargs)

    debug = partialmethod(log, logging.DEBUG)
    info = partialmethod(log, logging.INFO)
    warning = partialmethod(log, logging.WARNING)
    error = partialmethod(log, logging.ERROR)


_loggers: Dict[Subsystem, SubsystemLogger] = {}
_configured = False


def get_subsystem_logger(subsystem: Subsystem) -> SubsystemLogger:
    if subsystem not in _loggers:
        logger = logging.getLogger(f"{ROOT_LOGGER}.{subsystem.value}")
        _loggers[subsystem] = SubsystemLogger(subsystem, logger)
    return _loggers[subsystem]


def enable_structured_logging(level: int = logging.INFO, stream=None) -> logging.Handler:
    """Attach a JSON handler to the ``chatrelay`` logger tree and return it."""
    global _configured
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredFormatter())

    root = logging.getLogger(ROOT_LOGGER)
    root.addHandler(handler)
    root.setLevel(level)
    _configured = True
    return handler


def configure_logging(settings) -> None:
    """JSON lines when ``settings.structured_logs``, plain text otherwise. Runs once."""
    if _configured:
        return
    level = logging.getLevelName(str(settings.log_level).upper())
    if not isinstance(level, int):
        level = logging.INFO
    if settings.structured_logs:
        enable_structured_logging(level)
        return
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def set_log_context(session_id: str = "", channel: str = "", turn_id: str = ""):
    """Bind correlation ids for the current task; empty values leave a binding untouched."""
    for value, var in ((session_id, session_id_var), (channel, channel_var), (turn_id, turn_id_var)):
        if value:
            var.set(value)


def generate_turn_id() -> str:
    return uuid.uuid4().hex[:12]


agent_log = get_subsystem_logger(Subsystem.AGENT)
stream_log = get_subsystem_logger(Subsystem.STREAM)
channel_log = get_subsystem_logger(Subsystem.CHANNEL)
