"""Utility helpers shared across IPSP gateway packages."""

from __future__ import annotations

import logging
from typing import Final

_TRUE_STRINGS: Final[frozenset[str]] = frozenset({"1", "yes", "on", "true", "enable", "enabled"})


def parse_bool(value: object) -> bool:
    """Parse a boolean value safely from various types."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if value is None:
        return False
    s = str(value).lower().strip()
    return s in _TRUE_STRINGS


def log_hexdump(logger_instance: logging.Logger, level: int, label: str, data: bytes) -> None:
    """Log binary data in hexadecimal format using syslog-friendly output.

    Format: [LABEL] LEN=10 HEX=00 01 02 ...
    """
    if not logger_instance.isEnabledFor(level):
        return

    hex_str = " ".join(f"{b:02X}" for b in data)
    logger_instance.log(level, "[%s] LEN=%d HEX=%s", label, len(data), hex_str)


__all__: Final[tuple[str, ...]] = (
    "log_hexdump",
    "parse_bool",
)
