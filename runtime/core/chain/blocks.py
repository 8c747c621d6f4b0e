"""New-block subscriptions.

A BlockWatcher polls the head and delivers every new block, in order, to the
handler registered with `stream()`. Each call returns its own
BlockSubscription so a caller can stop exactly the listener it created (the
scheduler opens one per master window and must not leak it).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from chain.interfaces import Block, BlockSource
from errors import ChainReadError

logger = logging.getLogger(__name__)

BlockHandler = Callable[[Block], Awaitable[None]]


class BlockSubscription:
    def __init__(self, name: str):
        self.name = name
        self._cancelled = False
        self._task: asyncio.Task[None] | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        current = asyncio.current_task()
        # A handler may cancel its own subscription; the loop then exits on its next check.
        if self._task is not None and self._task is not current:
            self._task.cancel()

    async def wait_closed(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise


class BlockWatcher:
    def __init__(self, source: BlockSource, *, poll_interval_seconds: float = 1.0, max_catchup: int = 16):
        self._source = source
        self._poll_interval = poll_interval_seconds
        self._max_catchup = max_catchup
        self._subscriptions: set[BlockSubscription] = set()
        self._counter = 0

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscriptions)

    def stream(self, handler: BlockHandler) -> BlockSubscription:
        self._counter += 1
        sub = BlockSubscription(name=f"blocks-{self._counter}")
        sub._task = asyncio.create_task(self._run(sub, handler), name=sub.name)
        self._subscriptions.add(sub)
        sub._task.add_done_callback(lambda _t: self._subscriptions.discard(sub))
        return sub

    async def close(self) -> None:
        subs = list(self._subscriptions)
        for sub in subs:
            sub.cancel()
        for sub in subs:
            await sub.wait_closed()

    async def _run(self, sub: BlockSubscription, handler: BlockHandler) -> None:
        last: int | None = None
        while not sub.cancelled:
            try:
                head = await self._source.block_number()
                if last is None:
                    first = head
                else:
                    first = max(last + 1, head - self._max_catchup + 1)
                    if first > last + 1:
                        logger.warning(
                            "block_gap_skipped",
                            extra={"event": "block_gap_skipped", "block": head, "code": f"skipped={first - last - 1}"},
                        )
                for number in range(first, head + 1):
                    if sub.cancelled:
                        return
                    block = await self._source.get_block(number)
                    await self._deliver(handler, block)
                    last = number
            except ChainReadError as e:
                logger.warning("block_poll_failed: %s", e, extra={"event": "block_poll_failed"})
            if sub.cancelled:
                return
            await asyncio.sleep(self._poll_interval)

    async def _deliver(self, handler: BlockHandler, block: Block) -> None:
        try:
            await handler(block)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("block_handler_failed", extra={"event": "block_handler_failed", "block": block.number})
