"""Settings loader for the IPSP gateway daemon.

Configuration is loaded from OpenWrt UCI (package `ipspgw`, section
`general`) with defaults derived from :class:`RuntimeConfig` for non-OpenWrt
environments.

Runtime configuration is intentionally **UCI-only**: environment variables are
not used as overrides.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Any, Literal

import msgspec

from ..common import parse_bool
from ..const import (
    DEFAULT_BLUETOOTH_ADAPTER,
    DEFAULT_BOOTSTRAP_ENABLED,
    DEFAULT_CANDIDATE_QUEUE_LIMIT,
    DEFAULT_CONNECT_MAX_ATTEMPTS,
    DEFAULT_CONNECT_RETRY_DELAY,
    DEFAULT_CONNECT_SETTLE_DELAY,
    DEFAULT_CONNECT_WORKERS,
    DEFAULT_DEBUG_LOGGING,
    DEFAULT_DEDUP_MAX_ENTRIES,
    DEFAULT_DEDUP_WINDOW,
    DEFAULT_INTERFACE_ADDRESS,
    DEFAULT_INTERFACE_ADDRESS_MODE,
    DEFAULT_INTERFACE_POLL_INTERVAL,
    DEFAULT_INTERFACE_PREFIX,
    DEFAULT_LOWPAN_CONTROL_PATH,
    DEFAULT_LOWPAN_ENABLE_PATH,
    DEFAULT_METRICS_ENABLED,
    DEFAULT_METRICS_HOST,
    DEFAULT_METRICS_PORT,
    DEFAULT_RELAY_LISTEN_HOST,
    DEFAULT_RELAY_LISTEN_PORT,
    DEFAULT_RELAY_REMOTE_HOST,
    DEFAULT_RELAY_REMOTE_PORT,
    DEFAULT_RELAY_SESSION_TIMEOUT,
    DEFAULT_STATUS_INTERVAL,
)
from .common import get_default_config, get_uci_config

logger = logging.getLogger(__name__)

AddressMode = Literal["per_interface", "shared"]

_BOOL_FIELDS = ("debug_logging", "bootstrap_enabled", "metrics_enabled")


class RuntimeConfig(msgspec.Struct):
    """Strongly typed configuration for the daemon."""

    debug_logging: bool = DEFAULT_DEBUG_LOGGING
    bluetooth_adapter: str = DEFAULT_BLUETOOTH_ADAPTER

    dedup_window: float = DEFAULT_DEDUP_WINDOW
    dedup_max_entries: int = DEFAULT_DEDUP_MAX_ENTRIES
    candidate_queue_limit: int = DEFAULT_CANDIDATE_QUEUE_LIMIT

    connect_settle_delay: float = DEFAULT_CONNECT_SETTLE_DELAY
    connect_max_attempts: int = DEFAULT_CONNECT_MAX_ATTEMPTS
    connect_retry_delay: float = DEFAULT_CONNECT_RETRY_DELAY
    connect_workers: int = DEFAULT_CONNECT_WORKERS

    bootstrap_enabled: bool = DEFAULT_BOOTSTRAP_ENABLED
    lowpan_control_path: str = DEFAULT_LOWPAN_CONTROL_PATH
    lowpan_enable_path: str = DEFAULT_LOWPAN_ENABLE_PATH

    interface_prefix: str = DEFAULT_INTERFACE_PREFIX
    interface_poll_interval: float = DEFAULT_INTERFACE_POLL_INTERVAL
    interface_address: str = DEFAULT_INTERFACE_ADDRESS
    interface_address_mode: AddressMode = DEFAULT_INTERFACE_ADDRESS_MODE  # type: ignore[assignment]

    relay_listen_host: str = DEFAULT_RELAY_LISTEN_HOST
    relay_listen_port: int = DEFAULT_RELAY_LISTEN_PORT
    relay_remote_host: str = DEFAULT_RELAY_REMOTE_HOST
    relay_remote_port: int = DEFAULT_RELAY_REMOTE_PORT
    relay_session_timeout: float = DEFAULT_RELAY_SESSION_TIMEOUT

    status_interval: int = DEFAULT_STATUS_INTERVAL
    metrics_enabled: bool = DEFAULT_METRICS_ENABLED
    metrics_host: str = DEFAULT_METRICS_HOST
    metrics_port: int = DEFAULT_METRICS_PORT

    def __post_init__(self) -> None:
        for field_name in (
            "dedup_max_entries",
            "candidate_queue_limit",
            "connect_max_attempts",
            "connect_workers",
            "status_interval",
        ):
            self._require_positive(field_name, int(getattr(self, field_name)))

        for field_name in ("dedup_window", "interface_poll_interval", "relay_session_timeout"):
            self._require_positive_float(field_name, float(getattr(self, field_name)))

        self.connect_settle_delay = max(0.0, float(self.connect_settle_delay))
        self.connect_retry_delay = max(0.0, float(self.connect_retry_delay))

        for field_name in ("relay_listen_port", "relay_remote_port"):
            self._require_port(field_name, int(getattr(self, field_name)), allow_zero=False)
        self._require_port("metrics_port", int(self.metrics_port), allow_zero=True)

        self.interface_prefix = self.interface_prefix.strip()
        if not self.interface_prefix:
            raise ValueError("interface_prefix must be a non-empty string")
        self.bluetooth_adapter = self.bluetooth_adapter.strip() or DEFAULT_BLUETOOTH_ADAPTER
        self.relay_remote_host = self.relay_remote_host.strip()
        if not self.relay_remote_host:
            raise ValueError("relay_remote_host must be a non-empty string")

        try:
            iface = ipaddress.IPv6Interface(self.interface_address.strip())
        except ValueError as exc:
            raise ValueError(f"interface_address is not a valid IPv6 address/prefix: {exc}") from exc
        self.interface_address = iface.with_prefixlen

        if self.interface_address_mode not in ("per_interface", "shared"):
            raise ValueError("interface_address_mode must be 'per_interface' or 'shared'")

        if self.interface_address_mode == "shared":
            logger.warning(
                "interface_address_mode=shared assigns %s to every bridge interface; "
                "only one device can be reachable at a time.",
                self.interface_address,
            )

    @staticmethod
    def _require_positive(name: str, value: int) -> int:
        if value <= 0:
            raise ValueError(f"{name} must be a positive integer")
        return value

    @staticmethod
    def _require_positive_float(name: str, value: float) -> float:
        if value <= 0.0:
            raise ValueError(f"{name} must be a positive number")
        return value

    @staticmethod
    def _require_port(name: str, value: int, *, allow_zero: bool) -> int:
        lower = 0 if allow_zero else 1
        if not lower <= value <= 65535:
            raise ValueError(f"{name} must be between {lower} and 65535")
        return value


def _load_raw_config() -> dict[str, Any]:
    try:
        uci_values = get_uci_config()
        if uci_values:
            return uci_values
    except (OSError, ValueError) as exc:
        logger.error("UCI configuration unavailable (%s); using defaults.", exc)
    return get_default_config()


def load_runtime_config() -> RuntimeConfig:
    """Load configuration from UCI/defaults."""

    raw = dict(_load_raw_config())

    # UCI exposes 'debug' only; it maps to 'debug_logging'.
    if "debug" in raw:
        raw["debug_logging"] = raw.pop("debug")
    for key in _BOOL_FIELDS:
        if key in raw:
            raw[key] = parse_bool(raw[key])

    try:
        return msgspec.convert(raw, RuntimeConfig, strict=False)
    except msgspec.ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc


def get_config_source() -> str:
    """Return a label describing where the active configuration came from."""
    try:
        return "uci" if get_uci_config(defaults_on_missing=False) else "defaults"
    except (OSError, ValueError, RuntimeError):
        return "defaults"


__all__ = ["RuntimeConfig", "get_config_source", "load_runtime_config"]
