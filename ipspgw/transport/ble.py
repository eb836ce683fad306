"""BLE scanning via bleak.

The scanner is built from an injected factory so tests (and alternate
adapters) never depend on a module-level radio handle.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from ..const import DEFAULT_BLUETOOTH_ADAPTER
from ..errors import BluetoothUnavailableError
from ..services.discovery import DeviceObservation
from ..state.context import RuntimeState

logger = logging.getLogger("ipspgw.ble")

ObservationCallback = Callable[[DeviceObservation], Any]
ScannerFactory = Callable[..., Any]


def observation_from_advertisement(
    device: BLEDevice,
    advertisement: AdvertisementData,
    timestamp: float,
) -> DeviceObservation:
    return DeviceObservation(
        address=device.address.upper(),
        rssi=advertisement.rssi,
        name=advertisement.local_name or device.name or "",
        service_uuids=frozenset(uuid.lower() for uuid in advertisement.service_uuids),
        timestamp=timestamp,
    )


class BleScanner:
    """Continuously scan one adapter and hand observations to a callback."""

    def __init__(
        self,
        on_observation: ObservationCallback,
        *,
        adapter: str = DEFAULT_BLUETOOTH_ADAPTER,
        scanner_factory: ScannerFactory = BleakScanner,
        clock: Callable[[], float] = time.monotonic,
        state: RuntimeState | None = None,
    ) -> None:
        self._on_observation = on_observation
        self._adapter = adapter
        self._scanner_factory = scanner_factory
        self._clock = clock
        self._state = state

    @property
    def adapter(self) -> str:
        return self._adapter

    def _detection_callback(self, device: BLEDevice, advertisement: AdvertisementData) -> None:
        observation = observation_from_advertisement(device, advertisement, self._clock())
        self._on_observation(observation)

    async def run(self) -> None:
        scanner = self._scanner_factory(
            detection_callback=self._detection_callback,
            adapter=self._adapter,
        )
        try:
            await scanner.start()
        except (BleakError, OSError) as exc:
            raise BluetoothUnavailableError(f"cannot start scanning on {self._adapter}: {exc}") from exc

        logger.info("Scanning for IPSP devices on %s", self._adapter)
        if self._state is not None:
            self._state.scanning = True
        try:
            await asyncio.Event().wait()
        finally:
            if self._state is not None:
                self._state.scanning = False
            try:
                await scanner.stop()
            except (BleakError, OSError) as exc:
                logger.warning("Error while stopping scanner on %s: %s", self._adapter, exc)
            logger.info("Scanning stopped on %s", self._adapter)


__all__ = ["BleScanner", "observation_from_advertisement"]
