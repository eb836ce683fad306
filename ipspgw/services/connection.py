"""Connection orchestration for IPSP candidates.

Candidates are drained from the :class:`CandidateQueue` by a fixed number of
workers (one by default, which keeps registrations strictly FIFO and never
overlapping). Each candidate runs through a small state machine::

    received -> delayed -> registering -> succeeded
                                       \\-> gave_up

A successful registration write only means the kernel accepted the request;
the link itself is confirmed later when the interface reconciler sees the
new ``bt*`` interface.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Protocol

from transitions import Machine

from ..config.settings import RuntimeConfig
from ..const import (
    DEFAULT_CONNECT_MAX_ATTEMPTS,
    DEFAULT_CONNECT_RETRY_DELAY,
    DEFAULT_CONNECT_SETTLE_DELAY,
    DEFAULT_CONNECT_WORKERS,
)
from ..state.context import ConnectionStats
from .discovery import CandidateEvent, CandidateQueue
from .host import AddressType

logger = logging.getLogger("ipspgw.connection")

SleepCallable = Callable[[float], Awaitable[None]]


class RegistrationBackend(Protocol):
    async def register_connection(self, address: str, address_type: AddressType = ...) -> bool: ...


class ConnectionAttempt:
    """Lifecycle of one candidate inside the orchestrator."""

    if TYPE_CHECKING:
        # FSM generated methods and attributes for static analysis
        fsm_state: str
        settle: Callable[[], bool]
        register: Callable[[], bool]
        succeed: Callable[[], bool]
        give_up: Callable[[], bool]

    # FSM States
    STATE_RECEIVED = "received"
    STATE_DELAYED = "delayed"
    STATE_REGISTERING = "registering"
    STATE_SUCCEEDED = "succeeded"
    STATE_GAVE_UP = "gave_up"

    TERMINAL_STATES = frozenset({STATE_SUCCEEDED, STATE_GAVE_UP})

    def __init__(self, event: CandidateEvent) -> None:
        self.event = event
        self.attempts = 0

        self.state_machine = Machine(
            model=self,
            states=[
                self.STATE_RECEIVED,
                self.STATE_DELAYED,
                self.STATE_REGISTERING,
                self.STATE_SUCCEEDED,
                self.STATE_GAVE_UP,
            ],
            initial=self.STATE_RECEIVED,
            ignore_invalid_triggers=True,
            model_attribute="fsm_state",
        )

        self.state_machine.add_transition(trigger="settle", source=self.STATE_RECEIVED, dest=self.STATE_DELAYED)
        self.state_machine.add_transition(trigger="register", source=self.STATE_DELAYED, dest=self.STATE_REGISTERING)
        self.state_machine.add_transition(trigger="succeed", source=self.STATE_REGISTERING, dest=self.STATE_SUCCEEDED)
        self.state_machine.add_transition(
            trigger="give_up",
            source=[self.STATE_RECEIVED, self.STATE_DELAYED, self.STATE_REGISTERING],
            dest=self.STATE_GAVE_UP,
        )

    @property
    def address(self) -> str:
        return self.event.address

    @property
    def finished(self) -> bool:
        return self.fsm_state in self.TERMINAL_STATES


class ConnectionOrchestrator:
    """Drive bounded registration attempts for queued candidates."""

    def __init__(
        self,
        queue: CandidateQueue,
        backend: RegistrationBackend,
        *,
        settle_delay: float = DEFAULT_CONNECT_SETTLE_DELAY,
        max_attempts: int = DEFAULT_CONNECT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_CONNECT_RETRY_DELAY,
        workers: int = DEFAULT_CONNECT_WORKERS,
        address_type: AddressType = AddressType.LE_RANDOM,
        stats: ConnectionStats | None = None,
        sleep: SleepCallable | None = None,
    ) -> None:
        self._queue = queue
        self._backend = backend
        self._settle_delay = max(0.0, settle_delay)
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = max(0.0, retry_delay)
        self._workers = max(1, workers)
        self._address_type = address_type
        self._sleep = sleep or asyncio.sleep
        self.stats = stats or ConnectionStats()

    @classmethod
    def from_config(
        cls,
        config: RuntimeConfig,
        queue: CandidateQueue,
        backend: RegistrationBackend,
        *,
        stats: ConnectionStats | None = None,
    ) -> ConnectionOrchestrator:
        return cls(
            queue,
            backend,
            settle_delay=config.connect_settle_delay,
            max_attempts=config.connect_max_attempts,
            retry_delay=config.connect_retry_delay,
            workers=config.connect_workers,
            stats=stats,
        )

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def run(self) -> None:
        """Consume candidates until cancelled."""
        if self._workers == 1:
            await self._worker(0)
            return
        logger.info("Starting %d connection workers", self._workers)
        async with asyncio.TaskGroup() as group:
            for index in range(self._workers):
                group.create_task(self._worker(index), name=f"connection-worker-{index}")

    async def _worker(self, index: int) -> None:
        while True:
            event = await self._queue.get()
            logger.debug("Worker %d picked candidate #%d (%s)", index, event.sequence, event.address)
            await self.process(event)

    async def process(self, event: CandidateEvent) -> ConnectionAttempt:
        """Run one candidate through settle delay and bounded registration."""
        attempt = ConnectionAttempt(event)
        observation = event.observation
        self.stats.in_flight += 1
        self.stats.last_address = event.address
        try:
            attempt.settle()
            await self._sleep(self._settle_delay)

            attempt.register()
            logger.info(
                "Registering %s (%r) on 6LoWPAN control",
                event.address,
                observation.name,
                extra={"address": event.address},
            )
            for number in range(1, self._max_attempts + 1):
                attempt.attempts = number
                self.stats.registration_attempts += 1
                accepted = await self._backend.register_connection(event.address, self._address_type)
                if not accepted:
                    self.stats.registration_failures += 1
                    logger.warning(
                        "Registration attempt %d/%d for %s failed; giving up",
                        number,
                        self._max_attempts,
                        event.address,
                        extra={"address": event.address, "attempt": number},
                    )
                    attempt.give_up()
                    break
                if number < self._max_attempts:
                    await self._sleep(self._retry_delay)
            else:
                attempt.succeed()
        finally:
            self.stats.in_flight -= 1

        self.stats.candidates_processed += 1
        self.stats.last_outcome = attempt.fsm_state
        if attempt.fsm_state == ConnectionAttempt.STATE_SUCCEEDED:
            self.stats.connections_succeeded += 1
            logger.info(
                "Registration for %s issued %d time(s); waiting for interface",
                event.address,
                attempt.attempts,
                extra={"address": event.address},
            )
        else:
            self.stats.connections_gave_up += 1
        return attempt


__all__ = ["ConnectionAttempt", "ConnectionOrchestrator", "RegistrationBackend"]
