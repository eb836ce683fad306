"""Logging setup for the IPSP gateway daemon.

Records are emitted as one JSON object per line. Components attach the
device they are talking about through ``extra=`` using the names in
:data:`CONTEXT_FIELDS`, so syslog can be searched per BLE address, per
``bt*`` interface or per relay peer.
"""

from __future__ import annotations

import logging
import os
import time
from logging.config import dictConfig
from logging.handlers import SysLogHandler
from pathlib import Path
from typing import Any, Final

import msgspec

from .settings import RuntimeConfig

SYSLOG_SOCKET = Path("/dev/log")
LOG_STREAM_ENV = "IPSPGW_LOG_STREAM"

CONTEXT_FIELDS: Final[tuple[str, ...]] = ("address", "attempt", "interface", "peer")

# bleak logs every D-Bus property change at DEBUG.
_CHATTY_LOGGERS: Final[tuple[str, ...]] = ("bleak",)


class StructuredLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created)) + f".{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name.removeprefix("ipspgw."),
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value if isinstance(value, (str, int, float)) else str(value)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return msgspec.json.encode(payload).decode("utf-8")


def _build_handler() -> logging.Handler:
    """Syslog when the daemon runs under procd, stderr in a shell."""
    if os.environ.get(LOG_STREAM_ENV) or not SYSLOG_SOCKET.exists():
        return logging.StreamHandler()
    handler = SysLogHandler(address=str(SYSLOG_SOCKET), facility=SysLogHandler.LOG_DAEMON)
    handler.ident = "ipspgw "
    return handler


def configure_logging(config: RuntimeConfig) -> None:
    level_name = "DEBUG" if config.debug_logging else "INFO"
    library_level = level_name if config.debug_logging else "WARNING"

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"structured": {"()": StructuredLogFormatter}},
            "handlers": {
                "ipspgw": {
                    "()": _build_handler,
                    "formatter": "structured",
                }
            },
            "loggers": {name: {"level": library_level} for name in _CHATTY_LOGGERS},
            "root": {"level": level_name, "handlers": ["ipspgw"]},
        }
    )

    logging.getLogger("ipspgw").info("Logging configured at level %s", level_name)
