"""Runtime state container for the IPSP gateway daemon.

Each component owns exactly one stats struct and is the only writer of it;
``RuntimeState`` merely aggregates them for the status file and exporter.
"""

from __future__ import annotations

import time
from typing import Any

import msgspec

from ..config.settings import RuntimeConfig


class DiscoveryStats(msgspec.Struct):
    """Discovery filter counters."""

    observations_seen: int = 0
    observations_ignored: int = 0
    duplicates_suppressed: int = 0
    candidates_enqueued: int = 0
    candidates_dropped: int = 0
    dedup_evictions: int = 0
    devices_tracked: int = 0
    last_candidate_address: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


class ConnectionStats(msgspec.Struct):
    """Connection orchestrator counters."""

    candidates_processed: int = 0
    registration_attempts: int = 0
    registration_failures: int = 0
    connections_succeeded: int = 0
    connections_gave_up: int = 0
    in_flight: int = 0
    last_address: str | None = None
    last_outcome: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


class InterfaceStats(msgspec.Struct):
    """Interface reconciler counters."""

    polls: int = 0
    interfaces_added: int = 0
    interfaces_removed: int = 0
    address_assignments: int = 0
    address_assignment_failures: int = 0
    tracked: list[str] = msgspec.field(default_factory=list)
    last_poll_unix: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


class RelayStats(msgspec.Struct):
    """UDP relay counters."""

    datagrams_upstream: int = 0
    datagrams_downstream: int = 0
    bytes_upstream: int = 0
    bytes_downstream: int = 0
    sessions_opened: int = 0
    sessions_expired: int = 0
    active_sessions: int = 0
    send_errors: int = 0

    def record_upstream(self, nbytes: int) -> None:
        self.datagrams_upstream += 1
        self.bytes_upstream += nbytes

    def record_downstream(self, nbytes: int) -> None:
        self.datagrams_downstream += 1
        self.bytes_downstream += nbytes

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


class SupervisorStats(msgspec.Struct):
    """Task supervisor statistics."""

    restarts: int = 0
    last_failure_unix: float = 0.0
    last_exception: str | None = None
    backoff_seconds: float = 0.0
    fatal: bool = False

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


def _supervisor_stats_factory() -> dict[str, SupervisorStats]:
    return {}


class RuntimeState(msgspec.Struct):
    """Aggregated observability state for the daemon layers."""

    config_source: str = "defaults"
    started_unix: float = msgspec.field(default_factory=time.time)
    bluetooth_adapter: str = ""
    scanning: bool = False
    relay_listening: bool = False
    discovery: DiscoveryStats = msgspec.field(default_factory=DiscoveryStats)
    connection: ConnectionStats = msgspec.field(default_factory=ConnectionStats)
    interfaces: InterfaceStats = msgspec.field(default_factory=InterfaceStats)
    relay: RelayStats = msgspec.field(default_factory=RelayStats)
    supervisor_stats: dict[str, SupervisorStats] = msgspec.field(default_factory=_supervisor_stats_factory)

    def record_supervisor_failure(
        self,
        name: str,
        *,
        backoff: float,
        exc: BaseException | None,
        fatal: bool = False,
    ) -> None:
        stats = self.supervisor_stats.get(name)
        if stats is None:
            stats = SupervisorStats()
            self.supervisor_stats[name] = stats
        stats.restarts += 1
        stats.last_failure_unix = time.time()
        stats.last_exception = repr(exc) if exc else None
        stats.backoff_seconds = backoff
        stats.fatal = fatal

    def build_metrics_snapshot(self) -> dict[str, Any]:
        return {
            "config_source": self.config_source,
            "uptime_seconds": max(0.0, time.time() - self.started_unix),
            "bluetooth_adapter": self.bluetooth_adapter,
            "scanning": self.scanning,
            "relay_listening": self.relay_listening,
            "discovery": self.discovery.as_dict(),
            "connection": self.connection.as_dict(),
            "interfaces": self.interfaces.as_dict(),
            "relay": self.relay.as_dict(),
            "supervisors": {name: stats.as_dict() for name, stats in self.supervisor_stats.items()},
        }


def create_runtime_state(config: RuntimeConfig) -> RuntimeState:
    return RuntimeState(bluetooth_adapter=config.bluetooth_adapter)


__all__ = [
    "ConnectionStats",
    "DiscoveryStats",
    "InterfaceStats",
    "RelayStats",
    "RuntimeState",
    "SupervisorStats",
    "create_runtime_state",
]
