"""Prometheus exporter for the IPSP gateway.

Each component's stats struct becomes one labelled counter family per kind
of event, so a scrape reads e.g.
``ipspgw_connection_events_total{event="connections_gave_up"}``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Iterator
from typing import Any

import msgspec
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, InfoMetricFamily
from prometheus_client.registry import Collector

from .state.context import RuntimeState

logger = logging.getLogger("ipspgw.metrics")

_REQUEST_TIMEOUT = 5.0

_DISCOVERY_EVENTS = (
    "observations_seen",
    "observations_ignored",
    "duplicates_suppressed",
    "candidates_enqueued",
    "candidates_dropped",
    "dedup_evictions",
)
_CONNECTION_EVENTS = (
    "candidates_processed",
    "registration_attempts",
    "registration_failures",
    "connections_succeeded",
    "connections_gave_up",
)
_INTERFACE_EVENTS = (
    "polls",
    "interfaces_added",
    "interfaces_removed",
    "address_assignments",
    "address_assignment_failures",
)
_RELAY_SESSION_EVENTS = ("sessions_opened", "sessions_expired", "send_errors")


def _events(name: str, doc: str, stats: msgspec.Struct, fields: Iterable[str]) -> CounterMetricFamily:
    family = CounterMetricFamily(name, doc, labels=["event"])
    for field in fields:
        family.add_metric([field], getattr(stats, field))
    return family


def _gauge(name: str, doc: str, value: float) -> GaugeMetricFamily:
    return GaugeMetricFamily(name, doc, value=value)


class _RuntimeStateCollector(Collector):
    """Reads the component stats on every scrape."""

    def __init__(self, state: RuntimeState) -> None:
        self._state = state

    def collect(self) -> Iterator[Any]:
        state = self._state
        discovery, connection = state.discovery, state.connection
        interfaces, relay = state.interfaces, state.relay

        yield InfoMetricFamily(
            "ipspgw_gateway",
            "Gateway identity",
            value={
                "adapter": state.bluetooth_adapter,
                "config_source": state.config_source,
            },
        )
        yield _gauge("ipspgw_scanning", "1 while the BLE scanner is running", float(state.scanning))
        yield _gauge("ipspgw_relay_listening", "1 while the UDP relay socket is bound", float(state.relay_listening))

        yield _events("ipspgw_discovery_events", "Discovery filter events", discovery, _DISCOVERY_EVENTS)
        yield _gauge("ipspgw_discovery_devices_tracked", "Addresses held in the dedup map", discovery.devices_tracked)

        yield _events("ipspgw_connection_events", "Connection orchestrator events", connection, _CONNECTION_EVENTS)
        yield _gauge("ipspgw_connection_in_flight", "Candidates being registered", connection.in_flight)

        yield _events("ipspgw_interface_events", "Interface reconciler events", interfaces, _INTERFACE_EVENTS)
        tracked = GaugeMetricFamily("ipspgw_interface_tracked", "Tracked 6LoWPAN interfaces", labels=["interface"])
        for name in interfaces.tracked:
            tracked.add_metric([name], 1.0)
        yield tracked

        datagrams = CounterMetricFamily("ipspgw_relay_datagrams", "Relayed datagrams", labels=["direction"])
        datagrams.add_metric(["upstream"], relay.datagrams_upstream)
        datagrams.add_metric(["downstream"], relay.datagrams_downstream)
        yield datagrams
        octets = CounterMetricFamily("ipspgw_relay_bytes", "Relayed payload bytes", labels=["direction"])
        octets.add_metric(["upstream"], relay.bytes_upstream)
        octets.add_metric(["downstream"], relay.bytes_downstream)
        yield octets
        yield _events("ipspgw_relay_session_events", "Relay session events", relay, _RELAY_SESSION_EVENTS)
        yield _gauge("ipspgw_relay_active_sessions", "Open relay sessions", relay.active_sessions)

        restarts = CounterMetricFamily("ipspgw_supervisor_restarts", "Supervised task failures", labels=["task"])
        stopped = GaugeMetricFamily("ipspgw_supervisor_stopped", "1 once a task is no longer restarted", labels=["task"])
        for task, stats in state.supervisor_stats.items():
            restarts.add_metric([task], stats.restarts)
            stopped.add_metric([task], float(stats.fatal))
        yield restarts
        yield stopped


class PrometheusExporter:
    """Serve ``/metrics`` over a minimal asyncio HTTP listener."""

    def __init__(self, state: RuntimeState, host: str, port: int) -> None:
        self._host = host
        self.port = port
        self._registry = CollectorRegistry()
        self._registry.register(_RuntimeStateCollector(state))

    async def run(self) -> None:
        server = await asyncio.start_server(self._serve, host=self._host, port=self.port)
        self.port = server.sockets[0].getsockname()[1]
        logger.info("Prometheus exporter listening on %s:%d", self._host, self.port)
        async with server:
            await server.serve_forever()

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), _REQUEST_TIMEOUT)
            request = head.split(b"\r\n", 1)[0].split()
            if len(request) >= 2 and request[0] == b"GET" and request[1] in (b"/", b"/metrics"):
                status, content_type, body = "200 OK", CONTENT_TYPE_LATEST, generate_latest(self._registry)
            else:
                status, content_type, body = "404 Not Found", "text/plain; charset=utf-8", b"not found\n"
            writer.write(
                f"HTTP/1.1 {status}\r\nContent-Type: {content_type}\r\n"
                f"Content-Length: {len(body)}\r\nConnection: close\r\n\r\n".encode("ascii") + body
            )
            await writer.drain()
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, TimeoutError, OSError) as exc:
            logger.debug("Dropping metrics client: %s", exc)
        finally:
            writer.close()


__all__ = ["PrometheusExporter"]
