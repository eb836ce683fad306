"""Restart policy for the gateway's long-lived tasks.

Core tasks (scanner, orchestrator, reconciler, relay) carry the gateway. A
process-fatal error from one of them is re-raised so the task group stops
the daemon; any other failure restarts the task with exponential backoff,
without limit.

Auxiliary tasks (status writer, exporter) only report on the gateway. They
are restarted a bounded number of times and then abandoned; losing them
never stops the gateway.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import tenacity

from ..const import (
    SUPERVISOR_AUXILIARY_MAX_RESTARTS,
    SUPERVISOR_DEFAULT_MAX_BACKOFF,
    SUPERVISOR_DEFAULT_MIN_BACKOFF,
)
from ..errors import PROCESS_FATAL_EXCEPTIONS
from ..state.context import RuntimeState


class TaskRole(enum.Enum):
    CORE = "core"
    AUXILIARY = "auxiliary"


@dataclass(slots=True)
class SupervisedTaskSpec:
    name: str
    factory: Callable[[], Awaitable[None]]
    role: TaskRole = TaskRole.CORE
    max_restarts: int = SUPERVISOR_AUXILIARY_MAX_RESTARTS
    min_backoff: float = SUPERVISOR_DEFAULT_MIN_BACKOFF
    max_backoff: float = SUPERVISOR_DEFAULT_MAX_BACKOFF


def _is_task_fatal(exc: BaseException) -> bool:
    """A core task failure that a restart can cure."""
    return isinstance(exc, Exception) and not isinstance(exc, PROCESS_FATAL_EXCEPTIONS)


def _restart_policy(spec: SupervisedTaskSpec) -> tuple[tenacity.retry_base, tenacity.stop.stop_base]:
    if spec.role is TaskRole.CORE:
        return tenacity.retry_if_exception(_is_task_fatal), tenacity.stop_never
    return (
        tenacity.retry_if_exception_type(Exception),
        tenacity.stop_after_attempt(spec.max_restarts + 1),
    )


async def supervise_task(
    spec: SupervisedTaskSpec,
    *,
    state: RuntimeState | None = None,
    logger: logging.Logger | None = None,
) -> None:
    """Run ``spec.factory`` under the restart policy of its role.

    Cancellation is never retried. A core task that returns is not restarted
    either, since every core task is expected to run until cancelled.
    """
    log = logger or logging.getLogger("ipspgw.supervisor")

    def _on_restart(retry_state: tenacity.RetryCallState) -> None:
        assert retry_state.outcome is not None and retry_state.next_action is not None
        exc = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep
        log.error("%s failed (%s); restarting in %.1fs", spec.name, exc, delay)
        if state is not None:
            state.record_supervisor_failure(spec.name, backoff=delay, exc=exc)

    retry, stop = _restart_policy(spec)
    retryer = tenacity.AsyncRetrying(
        wait=tenacity.wait_exponential(multiplier=spec.min_backoff, max=spec.max_backoff),
        retry=retry,
        stop=stop,
        before_sleep=_on_restart,
        reraise=True,
    )

    try:
        async for attempt in retryer:
            with attempt:
                await spec.factory()
    except Exception as exc:
        if state is not None:
            state.record_supervisor_failure(spec.name, backoff=0.0, exc=exc, fatal=True)
        if spec.role is TaskRole.CORE:
            log.critical("%s hit a process-fatal error: %s", spec.name, exc)
            raise
        log.error("%s abandoned after %d restarts: %s", spec.name, spec.max_restarts, exc)
        return

    log.warning("%s returned; not restarting", spec.name)


__all__ = ["SupervisedTaskSpec", "TaskRole", "supervise_task"]
