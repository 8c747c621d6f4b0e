"""Master window scheduler.

One cycle:
1. Halt if the keeper is not whitelisted.
2. Compute the next master window from the current head and the protocol
   snapshot, then sleep until shortly before it opens.
3. Subscribe to blocks. Blocks before the window are ignored; every block
   inside it dispatches all tracked jobs to the JobRunner; the first block at
   or past the end closes the subscription.

Protocol changes that land while a window is open are picked up when the next
cycle computes its schedule.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable

from chain.blocks import BlockWatcher
from chain.interfaces import Block, BlockSource
from chain.subscriptions import SequencerEventWatcher
from errors import ChainReadError, NotWhitelistedError
from executor.job_runner import JobRunner
from executor.state_machine import SchedulerState, Transition, apply_transition
from protocol.state import ProtocolState
from protocol.window import WindowSchedule, wait_seconds
from utils import format_rfc3339, utcnow

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class WindowScheduler:
    def __init__(
        self,
        *,
        protocol: ProtocolState,
        blocks: BlockSource,
        block_watcher: BlockWatcher,
        runner: JobRunner,
        block_duration_seconds: float,
        tolerance_seconds: float,
        retry_delay_seconds: float,
        event_watcher: SequencerEventWatcher | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._protocol = protocol
        self._blocks = blocks
        self._block_watcher = block_watcher
        self._runner = runner
        self._block_duration = block_duration_seconds
        self._tolerance = tolerance_seconds
        self._retry_delay = retry_delay_seconds
        self._event_watcher = event_watcher
        self._sleep = sleep

        self._state = SchedulerState.INITIALIZING
        self._transitions: deque[Transition] = deque(maxlen=32)
        self._schedule: WindowSchedule | None = None
        self._halt_error: NotWhitelistedError | None = None
        self._writer_task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[Any]] = set()
        self._cycles = 0

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def schedule(self) -> WindowSchedule | None:
        return self._schedule

    @property
    def transitions(self) -> list[Transition]:
        return list(self._transitions)

    def status(self) -> dict[str, Any]:
        last = self._transitions[-1] if self._transitions else None
        return {
            "state": self._state.value,
            "cycles": self._cycles,
            "window": {"start": self._schedule.start, "end": self._schedule.end} if self._schedule else None,
            "jobs_in_progress": self._runner.in_progress(),
            "inflight_attempts": len(self._inflight),
            "last_transition_at": format_rfc3339(last.at) if last else None,
            "halt_reason": str(self._halt_error) if self._halt_error else None,
        }

    async def run(self) -> None:
        """Initialize, then run cycles until the keeper is found not whitelisted."""
        await self.initialize()
        while await self.run_cycle():
            pass
        await self.close()
        if self._halt_error is not None:
            raise self._halt_error

    async def initialize(self) -> None:
        while True:
            try:
                # Head first: events mined while the resync reads are replayed by the watcher.
                head = await self._blocks.block_number()
                await self._protocol.full_resync()
                break
            except ChainReadError as e:
                logger.warning("initial_sync_failed: %s", e, extra={"event": "initial_sync_failed"})
                await self._sleep(self._retry_delay)

        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._protocol.run(), name="protocol-state")
            self._writer_task.add_done_callback(_log_writer_exit)
        if self._event_watcher is not None:
            self._event_watcher.start(from_block=head)

    async def run_cycle(self) -> bool:
        """Run one WAITING/IN_WINDOW cycle. Returns False once halted."""
        if self._state is SchedulerState.HALTED:
            return False

        snap = self._protocol.snapshot()
        if not snap.is_whitelisted:
            self._halt()
            return False

        if self._state is not SchedulerState.WAITING:
            self._transition(SchedulerState.WAITING)

        try:
            current = await self._blocks.block_number()
            schedule = WindowSchedule.compute(
                current,
                window_length=snap.window_length,
                whitelist_size=snap.whitelist_size,
                self_position=snap.self_position,
            )
        except (ChainReadError, ValueError) as e:
            logger.warning("schedule_failed: %s", e, extra={"event": "schedule_failed"})
            await self._recover()
            return True

        self._schedule = schedule
        delay = wait_seconds(
            schedule.start, current, block_duration_seconds=self._block_duration, tolerance_seconds=self._tolerance
        )
        if delay > 0:
            logger.info(
                "window_scheduled: sleeping %.1fs",
                delay,
                extra={"event": "window_scheduled", "block": current, "window_start": schedule.start, "window_end": schedule.end},
            )
            await self._sleep(delay)
        else:
            logger.info(
                "window_imminent",
                extra={"event": "window_imminent", "block": current, "window_start": schedule.start, "window_end": schedule.end},
            )

        self._transition(SchedulerState.IN_WINDOW)
        await self._observe(schedule)
        self._cycles += 1
        self._transition(SchedulerState.WAITING, reason="window_closed")
        return True

    async def close(self) -> None:
        """Release every subscription and wait for in-flight work attempts."""
        if self._event_watcher is not None:
            await self._event_watcher.stop()
        await self._block_watcher.close()
        if self._writer_task is not None:
            self._writer_task.cancel()
            # A writer that already failed was logged by its done callback.
            await asyncio.gather(self._writer_task, return_exceptions=True)
            self._writer_task = None
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _observe(self, schedule: WindowSchedule) -> None:
        closed = asyncio.Event()

        async def on_block(block: Block) -> None:
            if schedule.is_before(block.number):
                logger.debug("window_not_started", extra={"event": "window_not_started", "block": block.number})
                return
            if schedule.is_closed_at(block.number):
                subscription.cancel()
                closed.set()
                return
            self._dispatch(block)

        subscription = self._block_watcher.stream(on_block)
        try:
            await closed.wait()
        finally:
            subscription.cancel()
            await subscription.wait_closed()
        logger.info(
            "window_closed",
            extra={"event": "window_closed", "window_start": schedule.start, "window_end": schedule.end},
        )

    def _dispatch(self, block: Block) -> None:
        jobs = sorted(self._protocol.snapshot().tracked_jobs)
        logger.debug("window_block: %d jobs", len(jobs), extra={"event": "window_block", "block": block.number})
        for job in jobs:
            task = asyncio.create_task(self._runner.attempt(job, block), name=f"work-{job}-{block.number}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _recover(self) -> None:
        try:
            await self._protocol.full_resync()
        except ChainReadError as e:
            logger.warning("protocol_resync_failed: %s", e, extra={"event": "protocol_resync_failed"})
        await self._sleep(self._retry_delay)

    def _halt(self) -> None:
        self._halt_error = NotWhitelistedError(self._protocol.network_name)
        self._transition(SchedulerState.HALTED, reason="not_whitelisted")
        logger.error(
            "keeper_not_whitelisted: %s",
            self._halt_error,
            extra={"event": "keeper_not_whitelisted", "network": self._protocol.network_name, "code": "NOT_WHITELISTED"},
        )

    def _transition(self, new_state: SchedulerState, reason: str | None = None) -> None:
        transition = apply_transition(self._state, new_state, now=utcnow(), reason=reason)
        self._transitions.append(transition)
        self._state = new_state
        logger.info(
            "scheduler_transition: %s -> %s",
            transition.previous.value,
            transition.current.value,
            extra={"event": "scheduler_transition", "state": new_state.value},
        )


def _log_writer_exit(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "protocol_writer_failed: %s",
            exc,
            exc_info=exc,
            extra={"event": "protocol_writer_failed", "code": type(exc).__name__},
        )
