"""Status file for the IPSP gateway daemon.

The file holds the latest ``RuntimeState`` snapshot plus a heartbeat, and is
replaced atomically so readers never observe a partial document.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any

import msgspec

from ..const import STATUS_FILE_PATH
from .context import RuntimeState

logger = logging.getLogger("ipspgw.status")
STATUS_FILE = Path(STATUS_FILE_PATH)


async def status_writer(state: RuntimeState, interval: int) -> None:
    while True:
        payload = state.build_metrics_snapshot()
        payload["heartbeat_unix"] = time.time()
        await asyncio.to_thread(_write_status_file, payload)
        await asyncio.sleep(interval)


def cleanup_status_file() -> None:
    try:
        STATUS_FILE.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not remove %s: %s", STATUS_FILE, exc)


def _write_status_file(payload: dict[str, Any]) -> None:
    with NamedTemporaryFile("wb", dir=STATUS_FILE.parent, prefix=".ipspgw-", delete=False) as handle:
        handle.write(msgspec.json.encode(payload))
    Path(handle.name).replace(STATUS_FILE)
