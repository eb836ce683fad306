"""Constants shared across the IPSP gateway daemon."""

from __future__ import annotations

from typing import Final

# BLE Internet Protocol Support service (16-bit UUID 0x1820).
IPSP_SERVICE_UUID: Final[str] = "00001820-0000-1000-8000-00805f9b34fb"
IPSP_NAME_MARKER: Final[str] = "IPSP"

DEFAULT_DEBUG_LOGGING: Final[bool] = False
DEFAULT_BLUETOOTH_ADAPTER: Final[str] = "hci0"

DEFAULT_DEDUP_WINDOW: Final[float] = 30.0
DEFAULT_DEDUP_MAX_ENTRIES: Final[int] = 1024
DEFAULT_CANDIDATE_QUEUE_LIMIT: Final[int] = 32

DEFAULT_CONNECT_SETTLE_DELAY: Final[float] = 1.0
DEFAULT_CONNECT_MAX_ATTEMPTS: Final[int] = 10
DEFAULT_CONNECT_RETRY_DELAY: Final[float] = 1.0
DEFAULT_CONNECT_WORKERS: Final[int] = 1

DEFAULT_BOOTSTRAP_ENABLED: Final[bool] = True
DEFAULT_LOWPAN_CONTROL_PATH: Final[str] = "/sys/kernel/debug/bluetooth/6lowpan_control"
DEFAULT_LOWPAN_ENABLE_PATH: Final[str] = "/sys/kernel/debug/bluetooth/6lowpan_enable"
LOWPAN_KERNEL_MODULE: Final[str] = "bluetooth_6lowpan"

DEFAULT_INTERFACE_PREFIX: Final[str] = "bt"
DEFAULT_INTERFACE_POLL_INTERVAL: Final[float] = 5.0
DEFAULT_INTERFACE_ADDRESS: Final[str] = "2001:db8::2/64"
INTERFACE_ADDRESS_MODE_PER_INTERFACE: Final[str] = "per_interface"
INTERFACE_ADDRESS_MODE_SHARED: Final[str] = "shared"
DEFAULT_INTERFACE_ADDRESS_MODE: Final[str] = INTERFACE_ADDRESS_MODE_PER_INTERFACE

DEFAULT_RELAY_LISTEN_HOST: Final[str] = "::"
DEFAULT_RELAY_LISTEN_PORT: Final[int] = 5684
DEFAULT_RELAY_REMOTE_HOST: Final[str] = "coap.golioth.dev"
DEFAULT_RELAY_REMOTE_PORT: Final[int] = 5684
DEFAULT_RELAY_SESSION_TIMEOUT: Final[float] = 120.0
RELAY_SWEEP_INTERVAL: Final[float] = 10.0

DEFAULT_STATUS_INTERVAL: Final[int] = 5
STATUS_FILE_PATH: Final[str] = "/tmp/ipspgw_status.json"

DEFAULT_METRICS_ENABLED: Final[bool] = False
DEFAULT_METRICS_HOST: Final[str] = "127.0.0.1"
DEFAULT_METRICS_PORT: Final[int] = 9131

SUPERVISOR_DEFAULT_MIN_BACKOFF: Final[float] = 1.0
SUPERVISOR_DEFAULT_MAX_BACKOFF: Final[float] = 30.0
SUPERVISOR_AUXILIARY_MAX_RESTARTS: Final[int] = 5
SUPERVISOR_AUXILIARY_MAX_BACKOFF: Final[float] = 10.0

ADDRESS_ASSIGN_TIMEOUT: Final[float] = 10.0
BOOTSTRAP_COMMAND_TIMEOUT: Final[float] = 15.0
