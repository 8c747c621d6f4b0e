"""Protocol state: window length, whitelist and tracked jobs.

Single writer, many readers:
- Every mutation (full resync or a decoded event) runs under one lock.
- Readers call `snapshot()` and get an immutable ProtocolSnapshot; the
  snapshot object is swapped atomically after each write.
- Event subscriptions never mutate state directly. They `submit()` decoded
  events to a queue that the state's own writer task (`run()`) drains.

Whitelist events always trigger a full recomputation of window length,
whitelist size and own position: a membership change shifts every network's
relative position, so deltas are never applied.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from chain.contracts import decode_network_tag
from chain.events import JobAdded, JobRemoved, NetworkAdded, NetworkRemoved, SequencerEvent
from chain.interfaces import SequencerReader
from errors import ChainReadError, ContractViolationError
from protocol.jobs import CancellationToken, TrackedJobs
from utils import utcnow

logger = logging.getLogger(__name__)

NOT_WHITELISTED = -1


@dataclass(frozen=True)
class ProtocolSnapshot:
    window_length: int = 0
    whitelist_size: int = 0
    self_position: int = NOT_WHITELISTED
    tracked_jobs: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if self.self_position < NOT_WHITELISTED:
            raise ContractViolationError(f"Invalid self_position: {self.self_position}", code="INVALID_POSITION")
        if self.self_position != NOT_WHITELISTED and self.self_position >= self.whitelist_size:
            raise ContractViolationError(
                f"self_position {self.self_position} out of range for whitelist of {self.whitelist_size}",
                code="INVALID_POSITION",
            )

    @property
    def is_whitelisted(self) -> bool:
        return self.self_position != NOT_WHITELISTED


@dataclass(frozen=True)
class NetworkView:
    window_length: int
    whitelist_size: int
    self_position: int


class ProtocolState:
    def __init__(self, *, reader: SequencerReader, network_tag: bytes, resync_interval_seconds: float = 600.0):
        self._reader = reader
        self._network_tag = network_tag
        self._resync_interval = resync_interval_seconds
        self._jobs = TrackedJobs()
        self._snapshot = ProtocolSnapshot()
        self._lock = asyncio.Lock()
        self._queue: asyncio.Queue[SequencerEvent] = asyncio.Queue()
        self._resync_due = False
        self._last_synced_at: datetime | None = None

    @property
    def network_name(self) -> str:
        return decode_network_tag(self._network_tag)

    @property
    def last_synced_at(self) -> datetime | None:
        return self._last_synced_at

    @property
    def pending_events(self) -> int:
        return self._queue.qsize()

    def snapshot(self) -> ProtocolSnapshot:
        return self._snapshot

    def job_token(self, address: str) -> CancellationToken | None:
        return self._jobs.token(address)

    async def full_resync(self) -> ProtocolSnapshot:
        """Re-read everything from the sequencer and replace the snapshot."""
        async with self._lock:
            view = await self._read_networks()
            jobs = await self._read_jobs()
            added, removed = self._jobs.replace(jobs)
            self._publish(view)
            self._last_synced_at = utcnow()
            self._resync_due = False

        snap = self._snapshot
        logger.info(
            "protocol_resynced: window=%d networks=%d position=%d jobs=%d (+%d/-%d)",
            snap.window_length,
            snap.whitelist_size,
            snap.self_position,
            len(snap.tracked_jobs),
            len(added),
            len(removed),
            extra={"event": "protocol_resynced", "network": self.network_name},
        )
        return snap

    async def apply(self, event: SequencerEvent) -> ProtocolSnapshot:
        """Apply one decoded sequencer event to the snapshot."""
        async with self._lock:
            if isinstance(event, (NetworkAdded, NetworkRemoved)):
                view = await self._read_networks()
                self._publish(view)
                logger.info(
                    "whitelist_changed: %s %s",
                    type(event).__name__,
                    event.name,
                    extra={"event": "whitelist_changed", "network": event.name},
                )
            elif isinstance(event, JobAdded):
                self._jobs.add(event.job)
                self._publish(None)
                logger.info("job_added", extra={"event": "job_added", "job": event.job})
            elif isinstance(event, JobRemoved):
                self._jobs.remove(event.job)
                self._publish(None)
                logger.info("job_removed", extra={"event": "job_removed", "job": event.job})
            else:
                raise ContractViolationError(f"Unsupported sequencer event: {event!r}", code="UNKNOWN_EVENT")
        return self._snapshot

    async def submit(self, event: SequencerEvent) -> None:
        await self._queue.put(event)

    async def run(self) -> None:
        """Writer loop: drain submitted events and resynchronize periodically."""
        loop = asyncio.get_running_loop()
        next_resync = loop.time() + self._resync_interval
        while True:
            if self._resync_due or loop.time() >= next_resync:
                try:
                    await self.full_resync()
                except ChainReadError as e:
                    logger.warning("protocol_resync_failed: %s", e, extra={"event": "protocol_resync_failed"})
                    self._resync_due = True
                next_resync = loop.time() + self._resync_interval

            timeout = max(0.0, next_resync - loop.time())
            if self._resync_due:
                # Back off before retrying a failed refresh.
                timeout = min(timeout, self._resync_interval / 10)
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                continue

            try:
                await self.apply(event)
            except ChainReadError as e:
                logger.warning(
                    "protocol_event_refresh_failed: %s", e, extra={"event": "protocol_event_refresh_failed"}
                )
                self._resync_due = True
            finally:
                self._queue.task_done()

    async def _read_networks(self) -> NetworkView:
        window_length = await self._reader.total_window_size()
        whitelist_size = await self._reader.num_networks()
        position = NOT_WHITELISTED
        for index in range(whitelist_size):
            if await self._reader.network_at(index) == self._network_tag:
                position = index
                break
        return NetworkView(window_length=window_length, whitelist_size=whitelist_size, self_position=position)

    async def _read_jobs(self) -> list[str]:
        count = await self._reader.num_jobs()
        return list(await asyncio.gather(*(self._reader.job_at(index) for index in range(count))))

    def _publish(self, view: NetworkView | None) -> None:
        current = self._snapshot
        if view is None:
            view = NetworkView(current.window_length, current.whitelist_size, current.self_position)
        self._snapshot = ProtocolSnapshot(
            window_length=view.window_length,
            whitelist_size=view.whitelist_size,
            self_position=view.self_position,
            tracked_jobs=self._jobs.addresses(),
        )
