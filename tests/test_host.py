"""Tests for host collaborators: 6LoWPAN control, interfaces and bootstrap."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import psutil
import pytest
from ipspgw.config.settings import RuntimeConfig
from ipspgw.errors import BootstrapError, InterfaceEnumerationError
from ipspgw.services import host
from ipspgw.services.host import AddressType, HostNetwork, LowpanControl, bootstrap_sixlowpan


@pytest.mark.asyncio
async def test_register_connection_writes_control_command(tmp_path: Path) -> None:
    control_file = tmp_path / "6lowpan_control"
    control = LowpanControl(str(control_file))

    assert await control.register_connection("C0:11:22:33:44:55") is True
    assert control_file.read_text() == "connect C0:11:22:33:44:55 2\n"


@pytest.mark.asyncio
async def test_register_connection_honours_address_type(tmp_path: Path) -> None:
    control_file = tmp_path / "6lowpan_control"
    control = LowpanControl(str(control_file))

    await control.register_connection("C0:11:22:33:44:55", AddressType.LE_PUBLIC)

    assert control_file.read_text() == "connect C0:11:22:33:44:55 1\n"


@pytest.mark.asyncio
async def test_register_connection_failure_returns_false(tmp_path: Path) -> None:
    control = LowpanControl(str(tmp_path / "missing" / "6lowpan_control"))

    assert await control.register_connection("C0:11:22:33:44:55") is False


@pytest.mark.asyncio
async def test_register_connection_rejects_malformed_address(tmp_path: Path) -> None:
    control_file = tmp_path / "6lowpan_control"
    control = LowpanControl(str(control_file))

    assert await control.register_connection("C0:11:22:33:44:55 1\nconnect") is False
    assert not control_file.exists()


def test_list_interfaces_returns_sorted_names() -> None:
    with patch.object(host.psutil, "net_if_stats", return_value={"eth0": object(), "bt0": object(), "lo": object()}):
        assert HostNetwork().list_interfaces() == ["bt0", "eth0", "lo"]


def test_list_interfaces_failure_is_enumeration_error() -> None:
    with patch.object(host.psutil, "net_if_stats", side_effect=psutil.AccessDenied()):
        with pytest.raises(InterfaceEnumerationError):
            HostNetwork().list_interfaces()


@pytest.mark.asyncio
async def test_assign_address_invokes_ip_tool() -> None:
    with patch.object(host, "run_command", AsyncMock(return_value=(0, b"", b""))) as run:
        assert await HostNetwork().assign_address("bt0", "2001:db8::2/64") is True

    argv = run.await_args.args[0]
    assert argv == ["ip", "-6", "address", "add", "2001:db8::2/64", "dev", "bt0"]


@pytest.mark.asyncio
async def test_assign_address_nonzero_exit_returns_false(caplog: pytest.LogCaptureFixture) -> None:
    with patch.object(host, "run_command", AsyncMock(return_value=(2, b"", b"RTNETLINK answers: File exists"))):
        with caplog.at_level("WARNING", logger="ipspgw.host"):
            assert await HostNetwork().assign_address("bt0", "2001:db8::2/64") is False

    assert "File exists" in caplog.text


@pytest.mark.asyncio
async def test_assign_address_missing_binary_returns_false() -> None:
    network = HostNetwork(ip_binary="/nonexistent/ip")
    assert await network.assign_address("bt0", "2001:db8::2/64") is False


@pytest.mark.asyncio
async def test_run_command_captures_output() -> None:
    returncode, stdout, _ = await host.run_command(["sh", "-c", "echo ready"], timeout=5.0)
    assert returncode == 0
    assert stdout.strip() == b"ready"


@pytest.mark.asyncio
async def test_run_command_timeout_kills_child() -> None:
    with pytest.raises(TimeoutError):
        await host.run_command(["sleep", "5"], timeout=0.05)


@pytest.mark.asyncio
async def test_bootstrap_skipped_off_linux() -> None:
    assert await bootstrap_sixlowpan(RuntimeConfig(), platform="darwin") is False


@pytest.mark.asyncio
async def test_bootstrap_skipped_when_disabled() -> None:
    assert await bootstrap_sixlowpan(RuntimeConfig(bootstrap_enabled=False), platform="linux") is False


@pytest.mark.asyncio
async def test_bootstrap_loads_module_and_enables(tmp_path: Path) -> None:
    enable_file = tmp_path / "6lowpan_enable"
    config = RuntimeConfig(lowpan_enable_path=str(enable_file))

    with patch.object(host, "run_command", AsyncMock(return_value=(0, b"", b""))) as run:
        assert await bootstrap_sixlowpan(config, platform="linux") is True

    run.assert_awaited_once()
    assert run.await_args.args[0] == ["modprobe", "bluetooth_6lowpan"]
    assert enable_file.read_text() == "1\n"


@pytest.mark.asyncio
async def test_bootstrap_modprobe_failure_is_fatal() -> None:
    with patch.object(host, "run_command", AsyncMock(return_value=(1, b"", b"Module not found"))):
        with pytest.raises(BootstrapError, match="Module not found"):
            await bootstrap_sixlowpan(RuntimeConfig(), platform="linux")


@pytest.mark.asyncio
async def test_bootstrap_enable_write_failure_is_fatal(tmp_path: Path) -> None:
    config = RuntimeConfig(lowpan_enable_path=str(tmp_path / "missing" / "6lowpan_enable"))

    with patch.object(host, "run_command", AsyncMock(return_value=(0, b"", b""))):
        with pytest.raises(BootstrapError):
            await bootstrap_sixlowpan(config, platform="linux")
