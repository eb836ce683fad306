from __future__ import annotations

import asyncio
import logging

import pytest

from ipspgw.errors import BluetoothUnavailableError, InterfaceEnumerationError
from ipspgw.services.task_supervisor import SupervisedTaskSpec, TaskRole, supervise_task
from ipspgw.state.context import RuntimeState


def _failing(count: list[int], exc: BaseException, *, succeed_after: int | None = None):
    async def factory() -> None:
        count[0] += 1
        if succeed_after is not None and count[0] > succeed_after:
            await asyncio.sleep(0)
            return
        raise exc

    return factory


def test_core_task_process_fatal_error_is_not_retried(
    caplog: pytest.LogCaptureFixture,
) -> None:
    state = RuntimeState()
    attempts = [0]
    spec = SupervisedTaskSpec("ble-scanner", _failing(attempts, BluetoothUnavailableError("hci0 is down")))

    async def _run() -> None:
        caplog.set_level(logging.CRITICAL, logger="ipspgw.supervisor")
        with pytest.raises(BluetoothUnavailableError, match="hci0 is down"):
            await supervise_task(spec, state=state)

    asyncio.run(_run())
    assert attempts == [1]
    assert "process-fatal" in caplog.text
    assert state.supervisor_stats["ble-scanner"].fatal is True


def test_core_task_restarts_on_task_fatal_error(
    caplog: pytest.LogCaptureFixture,
) -> None:
    state = RuntimeState()
    attempts = [0]
    spec = SupervisedTaskSpec(
        "connection-orchestrator",
        _failing(attempts, RuntimeError("flaky"), succeed_after=2),
        min_backoff=0.01,
        max_backoff=0.01,
    )

    async def _run() -> None:
        caplog.set_level(logging.WARNING, logger="ipspgw.supervisor")
        await supervise_task(spec, state=state)

    asyncio.run(_run())
    assert attempts == [3]
    assert "failed (flaky); restarting" in caplog.text
    assert "returned; not restarting" in caplog.text
    stats = state.supervisor_stats["connection-orchestrator"]
    assert stats.restarts == 2
    assert stats.fatal is False


def test_core_task_restarts_are_not_capped() -> None:
    attempts = [0]
    spec = SupervisedTaskSpec(
        "udp-relay",
        _failing(attempts, OSError("sendto failed"), succeed_after=8),
        max_restarts=1,
        min_backoff=0.001,
        max_backoff=0.001,
    )

    asyncio.run(supervise_task(spec))
    assert attempts == [9]


def test_core_task_restart_stops_at_process_fatal_error() -> None:
    attempts = 0

    async def reconciler() -> None:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise RuntimeError("transient")
        raise InterfaceEnumerationError("netlink unavailable")

    spec = SupervisedTaskSpec("interface-reconciler", reconciler, min_backoff=0.001, max_backoff=0.001)

    with pytest.raises(InterfaceEnumerationError):
        asyncio.run(supervise_task(spec))
    assert attempts == 2


def test_auxiliary_task_is_abandoned_after_max_restarts(
    caplog: pytest.LogCaptureFixture,
) -> None:
    state = RuntimeState()
    attempts = [0]
    spec = SupervisedTaskSpec(
        "status-writer",
        _failing(attempts, OSError("disk full")),
        role=TaskRole.AUXILIARY,
        max_restarts=2,
        min_backoff=0.001,
        max_backoff=0.001,
    )

    async def _run() -> None:
        caplog.set_level(logging.ERROR, logger="ipspgw.supervisor")
        # Returns instead of raising: the gateway keeps running without it.
        await supervise_task(spec, state=state)

    asyncio.run(_run())
    assert attempts == [3]
    assert "abandoned after 2 restarts" in caplog.text
    assert state.supervisor_stats["status-writer"].fatal is True


def test_auxiliary_task_recovers_within_cap() -> None:
    attempts = [0]
    spec = SupervisedTaskSpec(
        "prometheus-exporter",
        _failing(attempts, OSError("address in use"), succeed_after=1),
        role=TaskRole.AUXILIARY,
        min_backoff=0.001,
        max_backoff=0.001,
    )

    asyncio.run(supervise_task(spec))
    assert attempts == [2]


def test_cancellation_is_not_retried() -> None:
    started = 0

    async def forever() -> None:
        nonlocal started
        started += 1
        await asyncio.sleep(3600)

    async def _run() -> None:
        task = asyncio.create_task(supervise_task(SupervisedTaskSpec("ble-scanner", forever, min_backoff=0.01)))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(_run())
    assert started == 1
