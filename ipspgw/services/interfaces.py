"""Interface reconciler: track bridge-created interfaces and address them."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import time
import zlib
from typing import Protocol

import msgspec

from ..config.settings import RuntimeConfig
from ..const import (
    DEFAULT_INTERFACE_ADDRESS,
    DEFAULT_INTERFACE_ADDRESS_MODE,
    DEFAULT_INTERFACE_POLL_INTERVAL,
    DEFAULT_INTERFACE_PREFIX,
    INTERFACE_ADDRESS_MODE_SHARED,
)
from ..state.context import InterfaceStats

logger = logging.getLogger("ipspgw.interfaces")

_SUFFIX_RE = re.compile(r"(\d+)$")


class NetworkBackend(Protocol):
    def list_interfaces(self) -> list[str]: ...

    async def assign_address(self, interface: str, address: str) -> bool: ...


class InterfaceRecord(msgspec.Struct):
    """A tracked bridge interface."""

    name: str
    address_assigned: bool = False
    address: str | None = None


class ReconcileResult(msgspec.Struct, frozen=True):
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


def derive_interface_address(base: str, name: str, mode: str = DEFAULT_INTERFACE_ADDRESS_MODE) -> str:
    """Return the address to assign to interface *name*.

    In ``shared`` mode every interface gets *base* unchanged. Otherwise the
    host part of *base* is offset by the interface's numeric suffix
    (``bt0`` keeps *base*, ``bt1`` gets the next address), wrapping inside the
    network. Host part zero is the subnet-router anycast address and is never
    produced. Names without a numeric suffix are offset by a CRC32 of the name.
    """
    interface = ipaddress.IPv6Interface(base)
    if mode == INTERFACE_ADDRESS_MODE_SHARED:
        return interface.with_prefixlen

    match = _SUFFIX_RE.search(name)
    offset = int(match.group(1)) if match else zlib.crc32(name.encode("utf-8"))
    network = interface.network
    if network.num_addresses < 3:
        return interface.with_prefixlen
    host = int(interface.ip) - int(network.network_address)
    host = (host - 1 + offset) % (network.num_addresses - 1) + 1
    address = ipaddress.IPv6Address(int(network.network_address) + host)
    return f"{address}/{network.prefixlen}"


class InterfaceReconciler:
    """Poll host interfaces and address every new bridge interface once."""

    def __init__(
        self,
        network: NetworkBackend,
        *,
        prefix: str = DEFAULT_INTERFACE_PREFIX,
        address: str = DEFAULT_INTERFACE_ADDRESS,
        mode: str = DEFAULT_INTERFACE_ADDRESS_MODE,
        interval: float = DEFAULT_INTERFACE_POLL_INTERVAL,
        stats: InterfaceStats | None = None,
    ) -> None:
        self._network = network
        self._prefix = prefix
        self._address = address
        self._mode = mode
        self._interval = interval
        self._records: dict[str, InterfaceRecord] = {}
        self.stats = stats or InterfaceStats()

    @classmethod
    def from_config(
        cls,
        config: RuntimeConfig,
        network: NetworkBackend,
        *,
        stats: InterfaceStats | None = None,
    ) -> InterfaceReconciler:
        return cls(
            network,
            prefix=config.interface_prefix,
            address=config.interface_address,
            mode=config.interface_address_mode,
            interval=config.interface_poll_interval,
            stats=stats,
        )

    @property
    def records(self) -> dict[str, InterfaceRecord]:
        return dict(self._records)

    async def run(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self._interval)

    async def poll_once(self) -> ReconcileResult:
        """Run one reconciliation pass.

        Enumeration errors propagate; assignment failures are logged and the
        interface stays tracked without an address.
        """
        present = set(self._network.list_interfaces())

        removed = sorted(name for name in self._records if name not in present)
        for name in removed:
            del self._records[name]
            logger.info("Interface %s disappeared", name, extra={"interface": name})

        added = sorted(name for name in present if name.startswith(self._prefix) and name not in self._records)
        for name in added:
            record = InterfaceRecord(name=name)
            self._records[name] = record
            logger.info("New interface %s", name, extra={"interface": name})
            await self._assign(record)

        self.stats.polls += 1
        self.stats.interfaces_added += len(added)
        self.stats.interfaces_removed += len(removed)
        self.stats.tracked = sorted(self._records)
        self.stats.last_poll_unix = time.time()
        return ReconcileResult(added=tuple(added), removed=tuple(removed))

    async def _assign(self, record: InterfaceRecord) -> None:
        address = derive_interface_address(self._address, record.name, self._mode)
        if await self._network.assign_address(record.name, address):
            record.address_assigned = True
            record.address = address
            self.stats.address_assignments += 1
            logger.info("Assigned %s to %s", address, record.name, extra={"interface": record.name})
        else:
            self.stats.address_assignment_failures += 1
            logger.warning(
                "Could not assign %s to %s; not retrying",
                address,
                record.name,
                extra={"interface": record.name},
            )


__all__ = [
    "InterfaceReconciler",
    "InterfaceRecord",
    "NetworkBackend",
    "ReconcileResult",
    "derive_interface_address",
]
