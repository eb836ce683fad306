"""Pytest configuration for IPSP gateway tests."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any

PACKAGE_ROOT = Path(__file__).resolve().parents[1]
if str(PACKAGE_ROOT) not in sys.path:
    sys.path.insert(0, str(PACKAGE_ROOT))

import pytest
from ipspgw.config import common, settings
from ipspgw.config.settings import RuntimeConfig
from ipspgw.services.discovery import DeviceObservation
from ipspgw.state.context import RuntimeState, create_runtime_state

IPSP_UUID = "00001820-0000-1000-8000-00805f9b34fb"


@pytest.fixture(autouse=True)
def reset_logging_handlers():
    """Close and remove all logging handlers after each test to prevent ResourceWarnings."""
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        try:
            handler.close()
        except (OSError, RuntimeError):
            pass
        root.removeHandler(handler)


@pytest.fixture(autouse=True)
def _default_uci_config(monkeypatch: pytest.MonkeyPatch) -> None:
    """Settings are UCI-only, so inject a deterministic UCI payload for tests."""

    def _test_uci_config(*, defaults_on_missing: bool = True) -> dict[str, Any]:
        return common.get_default_config()

    monkeypatch.setattr(settings, "get_uci_config", _test_uci_config)


@pytest.fixture()
def runtime_config() -> RuntimeConfig:
    return RuntimeConfig(
        bluetooth_adapter="hci0",
        dedup_window=30.0,
        candidate_queue_limit=8,
        connect_settle_delay=0.0,
        connect_max_attempts=10,
        connect_retry_delay=0.0,
        bootstrap_enabled=False,
        lowpan_control_path="/tmp/ipspgw-tests-6lowpan_control",
        relay_listen_host="127.0.0.1",
        relay_listen_port=15684,
        relay_remote_host="127.0.0.1",
        relay_remote_port=25684,
        status_interval=1,
        interface_poll_interval=0.01,
    )


@pytest.fixture()
def runtime_state(runtime_config: RuntimeConfig) -> RuntimeState:
    return create_runtime_state(runtime_config)


@pytest.fixture()
def make_observation():
    """Build a DeviceObservation with IPSP advertised by default."""
    return _make_observation


def _make_observation(
    address: str = "AA:BB:CC:DD:EE:01",
    *,
    rssi: int = -60,
    name: str = "",
    ipsp: bool = True,
    timestamp: float = 0.0,
) -> DeviceObservation:
    return DeviceObservation(
        address=address,
        rssi=rssi,
        name=name,
        service_uuids=frozenset({IPSP_UUID}) if ipsp else frozenset(),
        timestamp=timestamp,
    )
