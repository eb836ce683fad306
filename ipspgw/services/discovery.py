"""IPSP discovery filter: capability predicate, dedup gate and candidate queue.

Scan callbacks may be delivered from any thread. The dedup tracker is guarded
by a plain ``threading.Lock`` held only for the check-and-update, and
candidates cross into the event loop through :class:`CandidateQueue`, which
never blocks the caller.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections import OrderedDict
from collections.abc import Callable

import msgspec

from ..const import (
    DEFAULT_CANDIDATE_QUEUE_LIMIT,
    DEFAULT_DEDUP_MAX_ENTRIES,
    DEFAULT_DEDUP_WINDOW,
    IPSP_NAME_MARKER,
    IPSP_SERVICE_UUID,
)
from ..state.context import DiscoveryStats

logger = logging.getLogger("ipspgw.discovery")


class DeviceObservation(msgspec.Struct, frozen=True):
    """One BLE advertisement as seen by the scanner."""

    address: str
    rssi: int
    name: str = ""
    service_uuids: frozenset[str] = frozenset()
    timestamp: float = 0.0


class CandidateEvent(msgspec.Struct, frozen=True):
    """An IPSP-capable, deduplicated observation awaiting connection."""

    observation: DeviceObservation
    sequence: int

    @property
    def address(self) -> str:
        return self.observation.address


def is_ipsp_capable(observation: DeviceObservation, name_marker: str = IPSP_NAME_MARKER) -> bool:
    return IPSP_SERVICE_UUID in observation.service_uuids or name_marker in observation.name


class DedupTracker:
    """Address -> last-candidate timestamp map with time-ordered eviction.

    Entries are kept in refresh order so expired ones can be swept from the
    front. An expired entry admits the address exactly like a missing one, so
    eviction never changes which observations become candidates. The size cap
    drops the least recently refreshed entry first.

    Not thread-safe on its own; :class:`DiscoveryFilter` serialises access.
    """

    def __init__(
        self,
        window: float = DEFAULT_DEDUP_WINDOW,
        max_entries: int = DEFAULT_DEDUP_MAX_ENTRIES,
    ) -> None:
        self.window = window
        self.max_entries = max(1, max_entries)
        self._entries: OrderedDict[str, float] = OrderedDict()
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, address: object) -> bool:
        return address in self._entries

    def last_seen(self, address: str) -> float | None:
        return self._entries.get(address)

    def admit(self, address: str, now: float) -> bool:
        """Return True and refresh *address* unless it is inside the window."""
        last = self._entries.get(address)
        if last is not None and now - last < self.window:
            return False
        self._entries[address] = now
        self._entries.move_to_end(address)
        self.sweep(now)
        return True

    def sweep(self, now: float) -> int:
        """Evict expired entries and enforce the size cap."""
        removed = 0
        while self._entries:
            address, last = next(iter(self._entries.items()))
            if now - last < self.window and len(self._entries) <= self.max_entries:
                break
            del self._entries[address]
            removed += 1
        self.evictions += removed
        return removed


class CandidateQueue:
    """Bounded FIFO of candidates that drops the oldest entry when full."""

    def __init__(
        self,
        maxsize: int = DEFAULT_CANDIDATE_QUEUE_LIMIT,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        on_drop: Callable[[CandidateEvent], None] | None = None,
    ) -> None:
        self._queue: asyncio.Queue[CandidateEvent] = asyncio.Queue(max(1, maxsize))
        self._loop = loop
        self._on_drop = on_drop

    @property
    def maxsize(self) -> int:
        return self._queue.maxsize

    def qsize(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def set_drop_callback(self, on_drop: Callable[[CandidateEvent], None] | None) -> None:
        self._on_drop = on_drop

    def offer(self, event: CandidateEvent) -> None:
        """Enqueue *event* from any thread without blocking."""
        loop = self._loop
        if loop is None or self._on_loop_thread(loop):
            self._put(event)
            return
        loop.call_soon_threadsafe(self._put, event)

    async def get(self) -> CandidateEvent:
        return await self._queue.get()

    def get_nowait(self) -> CandidateEvent:
        return self._queue.get_nowait()

    def _put(self, event: CandidateEvent) -> None:
        if self._queue.full():
            dropped = self._queue.get_nowait()
            logger.warning(
                "Candidate queue full (%d); dropping oldest candidate %s",
                self._queue.maxsize,
                dropped.address,
            )
            if self._on_drop is not None:
                self._on_drop(dropped)
        self._queue.put_nowait(event)

    @staticmethod
    def _on_loop_thread(loop: asyncio.AbstractEventLoop) -> bool:
        try:
            return asyncio.get_running_loop() is loop
        except RuntimeError:
            return False


class DiscoveryFilter:
    """Turn raw scan observations into at most one candidate per window."""

    def __init__(
        self,
        queue: CandidateQueue,
        *,
        window: float = DEFAULT_DEDUP_WINDOW,
        max_entries: int = DEFAULT_DEDUP_MAX_ENTRIES,
        name_marker: str = IPSP_NAME_MARKER,
        stats: DiscoveryStats | None = None,
    ) -> None:
        self._queue = queue
        self._tracker = DedupTracker(window, max_entries)
        self._name_marker = name_marker
        self._lock = threading.Lock()
        self._sequence = itertools.count(1)
        self.stats = stats or DiscoveryStats()
        queue.set_drop_callback(self._on_dropped)

    @property
    def tracker(self) -> DedupTracker:
        return self._tracker

    def on_observation(self, observation: DeviceObservation) -> CandidateEvent | None:
        """Apply the IPSP predicate and dedup gate; enqueue a candidate if due."""
        if not is_ipsp_capable(observation, self._name_marker):
            with self._lock:
                self.stats.observations_seen += 1
                self.stats.observations_ignored += 1
            return None

        with self._lock:
            self.stats.observations_seen += 1
            if not self._tracker.admit(observation.address, observation.timestamp):
                self.stats.duplicates_suppressed += 1
                logger.debug("Suppressing duplicate advertisement from %s", observation.address)
                return None
            event = CandidateEvent(observation=observation, sequence=next(self._sequence))
            self.stats.candidates_enqueued += 1
            self.stats.dedup_evictions = self._tracker.evictions
            self.stats.devices_tracked = len(self._tracker)
            self.stats.last_candidate_address = observation.address

        logger.info(
            "Found IPSP device %s (rssi=%d, name=%r)",
            observation.address,
            observation.rssi,
            observation.name,
            extra={"address": observation.address},
        )
        self._queue.offer(event)
        return event

    def _on_dropped(self, event: CandidateEvent) -> None:
        with self._lock:
            self.stats.candidates_dropped += 1


__all__ = [
    "CandidateEvent",
    "CandidateQueue",
    "DedupTracker",
    "DeviceObservation",
    "DiscoveryFilter",
    "is_ipsp_capable",
]
