#!/usr/bin/env python3
"""Async orchestrator for the IPSP BLE to 6LoWPAN gateway daemon.

The gateway discovers BLE devices advertising the Internet Protocol Support
Profile, asks the kernel to bring up a 6LoWPAN link for each of them, gives
every resulting ``bt*`` interface an IPv6 address and relays the devices'
UDP traffic to the upstream CoAP service.

Startup order:
- Load UCI configuration and configure logging
- Enable kernel 6LoWPAN support (fatal on failure)
- Start every service under supervision in one TaskGroup

Architecture:
    main() -> GatewayDaemon -> TaskGroup
        ├── ble-scanner (BleScanner -> DiscoveryFilter -> CandidateQueue)
        ├── connection-orchestrator (ConnectionOrchestrator)
        ├── interface-reconciler (InterfaceReconciler)
        ├── udp-relay (UdpRelay)
        ├── status-writer (status_writer)
        ├── prometheus-exporter (optional)
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import NoReturn

# uvloop is mandatory on the gateway; fail at import time if it is missing.
import uvloop

from .config.logging import configure_logging
from .config.settings import RuntimeConfig, get_config_source, load_runtime_config
from .const import SUPERVISOR_AUXILIARY_MAX_BACKOFF
from .errors import BootstrapError
from .metrics import PrometheusExporter
from .services.connection import ConnectionOrchestrator
from .services.discovery import CandidateQueue, DiscoveryFilter
from .services.host import HostNetwork, LowpanControl, bootstrap_sixlowpan
from .services.interfaces import InterfaceReconciler
from .services.task_supervisor import SupervisedTaskSpec, TaskRole, supervise_task
from .state.context import create_runtime_state
from .state.status import cleanup_status_file, status_writer
from .transport.ble import BleScanner
from .transport.relay import UdpRelay

logger = logging.getLogger("ipspgw")


class GatewayDaemon:
    """Main orchestrator for the gateway services.

    Attributes:
        config: Runtime configuration loaded from UCI.
        state: Aggregated counters for status file and exporter.
        queue: Candidate queue between discovery and connection.
        discovery: IPSP predicate and dedup gate fed by the scanner.
        scanner: BLE scanner adapter.
        orchestrator: Registration worker(s).
        reconciler: Interface poller.
        relay: UDP relay toward the upstream service.
        exporter: Optional Prometheus exporter.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        *,
        control: LowpanControl | None = None,
        network: HostNetwork | None = None,
        scanner: BleScanner | None = None,
    ) -> None:
        self.config = config
        self.state = create_runtime_state(config)
        self.state.config_source = get_config_source()

        self.queue = CandidateQueue(config.candidate_queue_limit)
        self.discovery = DiscoveryFilter(
            self.queue,
            window=config.dedup_window,
            max_entries=config.dedup_max_entries,
            stats=self.state.discovery,
        )
        self.scanner = scanner or BleScanner(
            self.discovery.on_observation,
            adapter=config.bluetooth_adapter,
            state=self.state,
        )
        self.orchestrator = ConnectionOrchestrator.from_config(
            config,
            self.queue,
            control or LowpanControl(config.lowpan_control_path),
            stats=self.state.connection,
        )
        self.reconciler = InterfaceReconciler.from_config(
            config,
            network or HostNetwork(),
            stats=self.state.interfaces,
        )
        self.relay = UdpRelay.from_config(config, stats=self.state.relay, state=self.state)
        self.exporter: PrometheusExporter | None = None

    async def _run_status_writer(self) -> None:
        await status_writer(self.state, self.config.status_interval)

    def _setup_supervision(self) -> list[SupervisedTaskSpec]:
        """Prepare the list of tasks to be supervised."""
        specs: list[SupervisedTaskSpec] = [
            SupervisedTaskSpec("ble-scanner", self.scanner.run),
            SupervisedTaskSpec("connection-orchestrator", self.orchestrator.run),
            SupervisedTaskSpec("interface-reconciler", self.reconciler.run),
            SupervisedTaskSpec("udp-relay", self.relay.run),
            SupervisedTaskSpec(
                "status-writer",
                self._run_status_writer,
                role=TaskRole.AUXILIARY,
                max_backoff=SUPERVISOR_AUXILIARY_MAX_BACKOFF,
            ),
        ]

        if self.config.metrics_enabled:
            self.exporter = PrometheusExporter(
                self.state,
                self.config.metrics_host,
                self.config.metrics_port,
            )
            specs.append(
                SupervisedTaskSpec(
                    "prometheus-exporter",
                    self.exporter.run,
                    role=TaskRole.AUXILIARY,
                    max_backoff=SUPERVISOR_AUXILIARY_MAX_BACKOFF,
                )
            )

        return specs

    async def _supervise(self, spec: SupervisedTaskSpec) -> None:
        await supervise_task(spec, state=self.state)

    async def run(self) -> None:
        """Main async entry point."""
        await bootstrap_sixlowpan(self.config)

        self.queue.bind(asyncio.get_running_loop())
        supervised_tasks = self._setup_supervision()

        try:
            async with asyncio.TaskGroup() as task_group:
                for spec in supervised_tasks:
                    task_group.create_task(self._supervise(spec), name=spec.name)
        except* asyncio.CancelledError:
            logger.info("Main task cancelled; shutting down.")
        except* Exception as exc_group:
            for group_exc in exc_group.exceptions:
                logger.critical(
                    "Unhandled exception in main task group: %s",
                    group_exc,
                    exc_info=group_exc,
                )
            raise
        finally:
            cleanup_status_file()
            logger.info("IPSP gateway daemon stopped.")


def main() -> NoReturn:  # pragma: no cover (Entry point wrapper)
    try:
        config = load_runtime_config()
    except (ValueError, RuntimeError) as exc:
        logging.basicConfig()
        logger.critical("Invalid configuration: %s", exc)
        sys.exit(1)
    configure_logging(config)

    logger.info(
        "Starting IPSP gateway on %s. Relay: [%s]:%d -> %s:%d",
        config.bluetooth_adapter,
        config.relay_listen_host,
        config.relay_listen_port,
        config.relay_remote_host,
        config.relay_remote_port,
    )

    try:
        daemon = GatewayDaemon(config)
        asyncio.run(daemon.run(), loop_factory=uvloop.new_event_loop)
        sys.exit(0)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        sys.exit(0)
    except BootstrapError as exc:
        logger.critical("Startup aborted: %s", exc)
        sys.exit(1)
    except ExceptionGroup as exc_group:
        for group_exc in exc_group.exceptions:
            logger.critical("Fatal error in task group: %s", group_exc, exc_info=group_exc)
        sys.exit(1)
    except (RuntimeError, OSError) as exc:
        logger.critical("Daemon terminated: %s", exc, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
