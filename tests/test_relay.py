"""Tests for the UDP relay."""

from __future__ import annotations

import asyncio
import socket

import pytest
from ipspgw.errors import RelayStartupError
from ipspgw.state.context import RuntimeState
from ipspgw.transport.relay import UdpRelay


class _EchoServer(asyncio.DatagramProtocol):
    """Fake upstream service answering every datagram with a prefix."""

    def __init__(self) -> None:
        self.transport: asyncio.DatagramTransport | None = None
        self.sources: list[tuple[str, int]] = []

    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr) -> None:
        self.sources.append(addr)
        assert self.transport is not None
        self.transport.sendto(b"ACK:" + data, addr)


class _Client(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.received: asyncio.Queue[bytes] = asyncio.Queue()

    def datagram_received(self, data: bytes, addr) -> None:
        self.received.put_nowait(data)


async def _start_echo() -> tuple[asyncio.DatagramTransport, _EchoServer, int]:
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(_EchoServer, local_addr=("127.0.0.1", 0))
    return transport, protocol, transport.get_extra_info("sockname")[1]


async def _start_relay(remote_port: int, **kwargs) -> tuple[UdpRelay, asyncio.Task[None], int]:
    relay = UdpRelay(
        listen_host="127.0.0.1",
        listen_port=0,
        remote_host="127.0.0.1",
        remote_port=remote_port,
        **kwargs,
    )
    task = asyncio.create_task(relay.run())
    await asyncio.wait_for(relay.started.wait(), timeout=1.0)
    assert relay.local_address is not None
    return relay, task, relay.local_address[1]


async def _stop(task: asyncio.Task[None]) -> None:
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_relay_forwards_both_directions() -> None:
    echo_transport, echo, echo_port = await _start_echo()
    state = RuntimeState()
    relay, task, relay_port = await _start_relay(echo_port, state=state)
    loop = asyncio.get_running_loop()
    client_transport, client = await loop.create_datagram_endpoint(
        _Client, remote_addr=("127.0.0.1", relay_port)
    )
    try:
        assert state.relay_listening is True
        client_transport.sendto(b"\x40\x01\x12\x34")
        reply = await asyncio.wait_for(client.received.get(), timeout=2.0)
        assert reply == b"ACK:\x40\x01\x12\x34"
        assert relay.stats.datagrams_upstream == 1
        assert relay.stats.datagrams_downstream == 1
        assert relay.stats.bytes_upstream == 4
        assert relay.stats.sessions_opened == 1
    finally:
        client_transport.close()
        await _stop(task)
        echo_transport.close()

    assert state.relay_listening is False
    assert relay.session_count == 0


@pytest.mark.asyncio
async def test_relay_uses_one_upstream_socket_per_peer() -> None:
    echo_transport, echo, echo_port = await _start_echo()
    relay, task, relay_port = await _start_relay(echo_port)
    loop = asyncio.get_running_loop()
    first_transport, first = await loop.create_datagram_endpoint(_Client, remote_addr=("127.0.0.1", relay_port))
    second_transport, second = await loop.create_datagram_endpoint(_Client, remote_addr=("127.0.0.1", relay_port))
    try:
        first_transport.sendto(b"one")
        assert await asyncio.wait_for(first.received.get(), timeout=2.0) == b"ACK:one"
        second_transport.sendto(b"two")
        assert await asyncio.wait_for(second.received.get(), timeout=2.0) == b"ACK:two"
        first_transport.sendto(b"three")
        assert await asyncio.wait_for(first.received.get(), timeout=2.0) == b"ACK:three"

        assert relay.session_count == 2
        assert len(set(echo.sources)) == 2
        assert second.received.empty()
    finally:
        first_transport.close()
        second_transport.close()
        await _stop(task)
        echo_transport.close()


@pytest.mark.asyncio
async def test_idle_sessions_expire() -> None:
    echo_transport, _, echo_port = await _start_echo()
    now = [0.0]
    relay, task, relay_port = await _start_relay(echo_port, session_timeout=30.0, clock=lambda: now[0])
    loop = asyncio.get_running_loop()
    client_transport, client = await loop.create_datagram_endpoint(_Client, remote_addr=("127.0.0.1", relay_port))
    try:
        client_transport.sendto(b"ping")
        await asyncio.wait_for(client.received.get(), timeout=2.0)
        assert relay.session_count == 1

        assert relay.expire_idle_sessions(now=29.0) == 0
        assert relay.expire_idle_sessions(now=30.0) == 1
        assert relay.session_count == 0
        assert relay.stats.sessions_expired == 1
        assert relay.stats.active_sessions == 0
    finally:
        client_transport.close()
        await _stop(task)
        echo_transport.close()


@pytest.mark.asyncio
async def test_datagrams_are_traced_at_debug(caplog: pytest.LogCaptureFixture) -> None:
    echo_transport, _, echo_port = await _start_echo()
    relay, task, relay_port = await _start_relay(echo_port)
    loop = asyncio.get_running_loop()
    client_transport, client = await loop.create_datagram_endpoint(_Client, remote_addr=("127.0.0.1", relay_port))
    try:
        with caplog.at_level("DEBUG", logger="ipspgw.relay"):
            client_transport.sendto(b"\xde\xad")
            await asyncio.wait_for(client.received.get(), timeout=2.0)
    finally:
        client_transport.close()
        await _stop(task)
        echo_transport.close()

    assert "LEN=2 HEX=DE AD" in caplog.text


@pytest.mark.asyncio
async def test_bind_failure_is_relay_startup_error() -> None:
    blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    blocker.bind(("127.0.0.1", 0))
    port = blocker.getsockname()[1]
    try:
        relay = UdpRelay(listen_host="127.0.0.1", listen_port=port, remote_host="127.0.0.1", remote_port=9)
        with pytest.raises(RelayStartupError):
            await relay.run()
    finally:
        blocker.close()


@pytest.mark.asyncio
async def test_session_lifecycle_is_logged_at_info(caplog: pytest.LogCaptureFixture) -> None:
    echo_transport, _, echo_port = await _start_echo()
    now = [0.0]
    relay, task, relay_port = await _start_relay(echo_port, session_timeout=30.0, clock=lambda: now[0])
    loop = asyncio.get_running_loop()
    client_transport, client = await loop.create_datagram_endpoint(_Client, remote_addr=("127.0.0.1", relay_port))
    client_port = client_transport.get_extra_info("sockname")[1]
    try:
        with caplog.at_level("INFO", logger="ipspgw.relay"):
            client_transport.sendto(b"ping")
            await asyncio.wait_for(client.received.get(), timeout=2.0)
            relay.expire_idle_sessions(now=60.0)
    finally:
        client_transport.close()
        await _stop(task)
        echo_transport.close()

    peer = f"[127.0.0.1]:{client_port}"
    messages = [record.getMessage() for record in caplog.records if record.levelname == "INFO"]
    assert f"Relay session opened for {peer} -> 127.0.0.1:{echo_port}" in messages
    assert f"Relay session for {peer} expired (1 up, 1 down)" in messages
    assert all(getattr(record, "peer", peer) == peer for record in caplog.records if "session" in record.getMessage())
    assert "HEX=" not in caplog.text


def test_from_config(runtime_config) -> None:
    relay = UdpRelay.from_config(runtime_config)
    assert relay.local_address is None
    assert relay.session_count == 0
