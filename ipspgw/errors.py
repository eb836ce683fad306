"""Exception hierarchy for the IPSP gateway.

Exceptions listed in :data:`PROCESS_FATAL_EXCEPTIONS` mean a capability the
gateway cannot run without is gone; the supervisor propagates them instead of
restarting the task that raised them.
"""

from __future__ import annotations

from typing import Final


class GatewayError(RuntimeError):
    """Base class for gateway failures."""


class BootstrapError(GatewayError):
    """Raised when the kernel 6LoWPAN support cannot be enabled."""


class BluetoothUnavailableError(GatewayError):
    """Raised when the BLE adapter cannot be enabled or scanning cannot start."""


class InterfaceEnumerationError(GatewayError):
    """Raised when host network interfaces cannot be listed."""


class RelayStartupError(GatewayError):
    """Raised when the UDP relay cannot bind its listening socket."""


PROCESS_FATAL_EXCEPTIONS: Final[tuple[type[BaseException], ...]] = (
    BootstrapError,
    BluetoothUnavailableError,
    InterfaceEnumerationError,
    RelayStartupError,
)


__all__ = [
    "BluetoothUnavailableError",
    "BootstrapError",
    "GatewayError",
    "InterfaceEnumerationError",
    "PROCESS_FATAL_EXCEPTIONS",
    "RelayStartupError",
]
