"""UDP relay between 6LoWPAN devices and the upstream CoAP/DTLS service.

Each local peer gets its own upstream socket, so replies find their way back
to the peer that started the exchange. Sessions idle for longer than the
configured timeout are closed by a periodic sweep.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from ..common import log_hexdump
from ..config.settings import RuntimeConfig
from ..const import (
    DEFAULT_RELAY_LISTEN_HOST,
    DEFAULT_RELAY_LISTEN_PORT,
    DEFAULT_RELAY_REMOTE_HOST,
    DEFAULT_RELAY_REMOTE_PORT,
    DEFAULT_RELAY_SESSION_TIMEOUT,
    RELAY_SWEEP_INTERVAL,
)
from ..errors import RelayStartupError
from ..state.context import RelayStats, RuntimeState

logger = logging.getLogger("ipspgw.relay")

PeerAddress = tuple[Any, ...]

def _format_peer(peer: PeerAddress) -> str:
    return f"[{peer[0]}]:{peer[1]}"


# Datagrams buffered per peer while its upstream socket is being opened.
_MAX_PENDING_DATAGRAMS = 16


class _RelaySession:
    __slots__ = ("peer", "transport", "pending", "last_activity", "opener", "closed", "upstream", "downstream")

    def __init__(self, peer: PeerAddress, now: float) -> None:
        self.peer = peer
        self.transport: asyncio.DatagramTransport | None = None
        self.pending: list[bytes] = []
        self.last_activity = now
        self.opener: asyncio.Task[None] | None = None
        self.closed = False
        self.upstream = 0
        self.downstream = 0

    def close(self) -> None:
        self.closed = True
        if self.opener is not None and not self.opener.done():
            self.opener.cancel()
        if self.transport is not None:
            self.transport.close()
            self.transport = None


class _ListenerProtocol(asyncio.DatagramProtocol):
    def __init__(self, relay: UdpRelay) -> None:
        self._relay = relay

    def datagram_received(self, data: bytes, addr: PeerAddress) -> None:
        self._relay.on_local_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.debug("Listener socket error: %s", exc)
        self._relay.stats.send_errors += 1


class _UpstreamProtocol(asyncio.DatagramProtocol):
    def __init__(self, relay: UdpRelay, peer: PeerAddress) -> None:
        self._relay = relay
        self._peer = peer

    def datagram_received(self, data: bytes, addr: PeerAddress) -> None:
        self._relay.on_remote_datagram(data, self._peer)

    def error_received(self, exc: Exception) -> None:
        logger.debug("Upstream socket error for %s: %s", _format_peer(self._peer), exc)
        self._relay.stats.send_errors += 1


class UdpRelay:
    """Forward datagrams from a local UDP port to a fixed remote endpoint."""

    def __init__(
        self,
        *,
        listen_host: str = DEFAULT_RELAY_LISTEN_HOST,
        listen_port: int = DEFAULT_RELAY_LISTEN_PORT,
        remote_host: str = DEFAULT_RELAY_REMOTE_HOST,
        remote_port: int = DEFAULT_RELAY_REMOTE_PORT,
        session_timeout: float = DEFAULT_RELAY_SESSION_TIMEOUT,
        sweep_interval: float = RELAY_SWEEP_INTERVAL,
        stats: RelayStats | None = None,
        state: RuntimeState | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._listen = (listen_host, listen_port)
        self._remote = (remote_host, remote_port)
        self._session_timeout = session_timeout
        self._sweep_interval = min(sweep_interval, session_timeout)
        self._clock = clock
        self._state = state
        self._listener: asyncio.DatagramTransport | None = None
        self._sessions: dict[PeerAddress, _RelaySession] = {}
        self.stats = stats or RelayStats()
        self.started = asyncio.Event()

    @classmethod
    def from_config(
        cls,
        config: RuntimeConfig,
        *,
        stats: RelayStats | None = None,
        state: RuntimeState | None = None,
    ) -> UdpRelay:
        return cls(
            listen_host=config.relay_listen_host,
            listen_port=config.relay_listen_port,
            remote_host=config.relay_remote_host,
            remote_port=config.relay_remote_port,
            session_timeout=config.relay_session_timeout,
            stats=stats,
            state=state,
        )

    @property
    def local_address(self) -> PeerAddress | None:
        if self._listener is None:
            return None
        return self._listener.get_extra_info("sockname")

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            self._listener, _ = await loop.create_datagram_endpoint(
                lambda: _ListenerProtocol(self),
                local_addr=self._listen,
            )
        except OSError as exc:
            raise RelayStartupError(f"cannot listen on [{self._listen[0]}]:{self._listen[1]}: {exc}") from exc

        logger.info(
            "Relaying UDP [%s]:%d -> %s:%d",
            self._listen[0],
            self._listen[1],
            self._remote[0],
            self._remote[1],
        )
        if self._state is not None:
            self._state.relay_listening = True
        self.started.set()
        try:
            while True:
                await asyncio.sleep(self._sweep_interval)
                self.expire_idle_sessions()
        finally:
            self.started.clear()
            if self._state is not None:
                self._state.relay_listening = False
            for session in self._sessions.values():
                session.close()
            self._sessions.clear()
            self.stats.active_sessions = 0
            self._listener.close()
            self._listener = None

    def expire_idle_sessions(self, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        idle = [
            peer for peer, session in self._sessions.items() if now - session.last_activity >= self._session_timeout
        ]
        for peer in idle:
            session = self._sessions.pop(peer)
            session.close()
            logger.info(
                "Relay session for %s expired (%d up, %d down)",
                _format_peer(peer),
                session.upstream,
                session.downstream,
                extra={"peer": _format_peer(peer)},
            )
        self.stats.sessions_expired += len(idle)
        self.stats.active_sessions = len(self._sessions)
        return len(idle)

    def on_local_datagram(self, data: bytes, peer: PeerAddress) -> None:
        log_hexdump(logger, logging.DEBUG, f"UP {_format_peer(peer)}", data)
        now = self._clock()
        session = self._sessions.get(peer)
        if session is None:
            session = _RelaySession(peer, now)
            self._sessions[peer] = session
            session.opener = asyncio.get_running_loop().create_task(
                self._open_session(session), name=f"relay-session-{_format_peer(peer)}"
            )
        session.last_activity = now

        if session.transport is None:
            if len(session.pending) >= _MAX_PENDING_DATAGRAMS:
                session.pending.pop(0)
                self.stats.send_errors += 1
            session.pending.append(data)
            return
        self._send_upstream(session, data)

    def on_remote_datagram(self, data: bytes, peer: PeerAddress) -> None:
        log_hexdump(logger, logging.DEBUG, f"DOWN {_format_peer(peer)}", data)
        session = self._sessions.get(peer)
        if session is not None:
            session.last_activity = self._clock()
            session.downstream += 1
        if self._listener is None:
            return
        self._listener.sendto(data, peer)
        self.stats.record_downstream(len(data))

    async def _open_session(self, session: _RelaySession) -> None:
        loop = asyncio.get_running_loop()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _UpstreamProtocol(self, session.peer),
                remote_addr=self._remote,
            )
        except OSError as exc:
            logger.warning("Cannot open upstream socket for %s: %s", _format_peer(session.peer), exc)
            self.stats.send_errors += len(session.pending)
            session.pending.clear()
            if self._sessions.get(session.peer) is session:
                del self._sessions[session.peer]
            return

        if session.closed:
            transport.close()
            return
        session.transport = transport
        self.stats.sessions_opened += 1
        self.stats.active_sessions = len(self._sessions)
        logger.info(
            "Relay session opened for %s -> %s:%d",
            _format_peer(session.peer),
            self._remote[0],
            self._remote[1],
            extra={"peer": _format_peer(session.peer)},
        )

        pending, session.pending = session.pending, []
        for data in pending:
            self._send_upstream(session, data)

    def _send_upstream(self, session: _RelaySession, data: bytes) -> None:
        assert session.transport is not None
        session.transport.sendto(data)
        session.upstream += 1
        self.stats.record_upstream(len(data))


__all__ = ["UdpRelay"]
