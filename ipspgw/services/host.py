"""Host-side collaborators: 6LoWPAN control file, interfaces and addresses.

This is the only module that touches kernel debugfs files, ``psutil`` and the
``ip``/``modprobe`` binaries, so the lifecycle services can be tested against
fakes.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sys
from enum import IntEnum

import psutil

from ..config.settings import RuntimeConfig
from ..const import (
    ADDRESS_ASSIGN_TIMEOUT,
    BOOTSTRAP_COMMAND_TIMEOUT,
    DEFAULT_LOWPAN_CONTROL_PATH,
    LOWPAN_KERNEL_MODULE,
)
from ..errors import BootstrapError, InterfaceEnumerationError

logger = logging.getLogger("ipspgw.host")

_BDADDR_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")


class AddressType(IntEnum):
    """Kernel ``bdaddr_type`` values accepted by the 6LoWPAN control file."""

    BREDR = 0
    LE_PUBLIC = 1
    LE_RANDOM = 2


async def run_command(argv: list[str], *, timeout: float) -> tuple[int, bytes, bytes]:
    """Run *argv* without a shell and return ``(returncode, stdout, stderr)``.

    Raises ``OSError`` when the binary cannot be started and
    ``TimeoutError`` when it does not finish in time (the child is killed).
    """
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except (TimeoutError, asyncio.TimeoutError):
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        raise TimeoutError(f"{argv[0]} did not finish within {timeout:.1f}s")
    return process.returncode if process.returncode is not None else -1, stdout, stderr


class LowpanControl:
    """Submit connect requests to the kernel's BLE 6LoWPAN control file."""

    def __init__(self, control_path: str = DEFAULT_LOWPAN_CONTROL_PATH) -> None:
        self._control_path = control_path

    @property
    def control_path(self) -> str:
        return self._control_path

    async def register_connection(
        self,
        address: str,
        address_type: AddressType = AddressType.LE_RANDOM,
    ) -> bool:
        """Ask the kernel to promote *address* to a network interface.

        Fire-and-forget: ``True`` only means the request was accepted.
        """
        if not _BDADDR_RE.match(address):
            logger.warning("Refusing to register malformed address %r", address)
            return False
        command = f"connect {address} {int(address_type)}\n"
        try:
            await asyncio.to_thread(self._write, command)
        except OSError as exc:
            logger.warning("Failed to register %s on 6LoWPAN control: %s", address, exc)
            return False
        logger.debug("Wrote %r to %s", command.strip(), self._control_path)
        return True

    def _write(self, command: str) -> None:
        with open(self._control_path, "w", encoding="ascii") as handle:
            handle.write(command)


class HostNetwork:
    """List host interfaces and assign IPv6 addresses to them."""

    def __init__(self, *, ip_binary: str = "ip", timeout: float = ADDRESS_ASSIGN_TIMEOUT) -> None:
        self._ip_binary = ip_binary
        self._timeout = timeout

    def list_interfaces(self) -> list[str]:
        try:
            stats = psutil.net_if_stats()
        except (OSError, psutil.Error) as exc:
            raise InterfaceEnumerationError(f"failed to list interfaces: {exc}") from exc
        return sorted(stats)

    async def assign_address(self, interface: str, address: str) -> bool:
        argv = [self._ip_binary, "-6", "address", "add", address, "dev", interface]
        try:
            returncode, _, stderr = await run_command(argv, timeout=self._timeout)
        except (OSError, TimeoutError) as exc:
            logger.warning("Failed to run %s for %s: %s", self._ip_binary, interface, exc)
            return False
        if returncode != 0:
            logger.warning(
                "Address assignment %s on %s failed (exit %d): %s",
                address,
                interface,
                returncode,
                stderr.decode("utf-8", errors="replace").strip(),
            )
            return False
        return True


async def bootstrap_sixlowpan(config: RuntimeConfig, *, platform: str | None = None) -> bool:
    """Load the BLE 6LoWPAN kernel module and enable it.

    Returns ``False`` when skipped (non-Linux host or disabled in config).
    Raises :class:`BootstrapError` on any failure.
    """
    platform = platform or sys.platform
    if not platform.startswith("linux"):
        logger.info("Skipping 6LoWPAN bootstrap on non-Linux platform %s", platform)
        return False
    if not config.bootstrap_enabled:
        logger.info("6LoWPAN bootstrap disabled by configuration")
        return False

    argv = ["modprobe", LOWPAN_KERNEL_MODULE]
    try:
        returncode, _, stderr = await run_command(argv, timeout=BOOTSTRAP_COMMAND_TIMEOUT)
    except (OSError, TimeoutError) as exc:
        raise BootstrapError(f"failed to run modprobe: {exc}") from exc
    if returncode != 0:
        raise BootstrapError(
            f"modprobe {LOWPAN_KERNEL_MODULE} exited with {returncode}: "
            f"{stderr.decode('utf-8', errors='replace').strip()}"
        )

    try:
        await asyncio.to_thread(_write_enable_flag, config.lowpan_enable_path)
    except OSError as exc:
        raise BootstrapError(f"failed to enable 6LoWPAN via {config.lowpan_enable_path}: {exc}") from exc

    logger.info("6LoWPAN enabled (module %s)", LOWPAN_KERNEL_MODULE)
    return True


def _write_enable_flag(path: str) -> None:
    with open(path, "w", encoding="ascii") as handle:
        handle.write("1\n")


__all__ = [
    "AddressType",
    "HostNetwork",
    "LowpanControl",
    "bootstrap_sixlowpan",
    "run_command",
]
