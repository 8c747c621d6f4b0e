"""Sequencer event subscription.

Polls `eth_getLogs` for the sequencer's membership events and forwards each
decoded event, in chain order, to a sink (normally `ProtocolState.submit`).
Missed polls are not fatal: the next poll covers the whole range since the
last block seen, and ProtocolState resynchronizes periodically anyway.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from chain.events import SEQUENCER_TOPICS, SequencerEvent, decode_log
from chain.interfaces import BlockSource, LogSource
from errors import ChainReadError, ContractViolationError

logger = logging.getLogger(__name__)

EventSink = Callable[[SequencerEvent], Awaitable[None]]


class SequencerEventWatcher:
    def __init__(
        self,
        *,
        blocks: BlockSource,
        logs: LogSource,
        sequencer_address: str,
        sink: EventSink,
        poll_interval_seconds: float = 12.0,
    ):
        self._blocks = blocks
        self._logs = logs
        self._address = sequencer_address
        self._sink = sink
        self._poll_interval = poll_interval_seconds
        self._last_block: int | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def last_block(self) -> int | None:
        return self._last_block

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, *, from_block: int | None = None) -> None:
        if self.running:
            return
        if from_block is not None:
            self._last_block = from_block
        self._task = asyncio.create_task(self._run(), name="sequencer-events")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def poll_once(self) -> int:
        """Fetch and forward events up to the current head. Returns the number forwarded."""
        head = await self._blocks.block_number()
        if self._last_block is None:
            self._last_block = head
            return 0
        if head <= self._last_block:
            return 0

        raw_logs = await self._logs.get_logs(
            address=self._address,
            from_block=self._last_block + 1,
            to_block=head,
            topics=SEQUENCER_TOPICS,
        )
        raw_logs.sort(key=lambda log: (int(log.get("blockNumber") or 0), int(log.get("logIndex") or 0)))

        forwarded = 0
        for raw in raw_logs:
            try:
                event = decode_log(raw)
            except ContractViolationError as e:
                logger.error("sequencer_event_malformed: %s", e, extra={"event": "sequencer_event_malformed", "code": e.code})
                continue
            if event is None:
                continue
            logger.info(
                "sequencer_event: %s",
                type(event).__name__,
                extra={"event": "sequencer_event", "block": raw.get("blockNumber")},
            )
            await self._sink(event)
            forwarded += 1

        self._last_block = head
        return forwarded

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except ChainReadError as e:
                logger.warning("sequencer_event_poll_failed: %s", e, extra={"event": "sequencer_event_poll_failed"})
            await asyncio.sleep(self._poll_interval)
