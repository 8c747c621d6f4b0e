"""Per-job work attempts.

One attempt per tracked job per in-window block:
- Busy jobs are skipped (no queueing; the block is simply not retried).
- Workability is re-checked on every attempt before anything is sent.
- The in-progress flag is cleared in a `finally` block whatever the outcome,
  otherwise a single failure would starve the job forever.

No exception escapes `attempt()`: job-level failures must never end the
scheduling loop.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable

from broadcast.interfaces import Broadcaster, WorkRequest
from chain.contracts import decode_network_tag
from chain.interfaces import Block, JobReader
from errors import ChainReadError
from protocol.jobs import CancellationToken

logger = logging.getLogger(__name__)

TokenLookup = Callable[[str], CancellationToken | None]


class AttemptOutcome(str, Enum):
    BUSY = "busy"
    READ_FAILED = "read_failed"
    NOT_WORKABLE = "not_workable"
    REMOVED = "removed"
    INCLUDED = "included"
    NOT_INCLUDED = "not_included"
    BROADCAST_FAILED = "broadcast_failed"


class JobRunner:
    def __init__(
        self,
        *,
        jobs: JobReader,
        broadcaster: Broadcaster,
        network_tag: bytes,
        upkeep_job_address: str,
        work_method: str = "work",
        job_token: TokenLookup | None = None,
    ):
        self._jobs = jobs
        self._broadcaster = broadcaster
        self._network_tag = network_tag
        self._upkeep_job_address = upkeep_job_address
        self._work_method = work_method
        self._job_token = job_token
        self._in_progress: set[str] = set()

    def is_in_progress(self, job_address: str) -> bool:
        return job_address in self._in_progress

    def in_progress(self) -> list[str]:
        return sorted(self._in_progress)

    async def attempt(self, job_address: str, block: Block) -> AttemptOutcome:
        if job_address in self._in_progress:
            logger.debug("job_busy", extra={"event": "job_busy", "job": job_address, "block": block.number})
            return AttemptOutcome.BUSY

        # Set before the first await: two attempts scheduled on the same loop cannot both pass the check.
        self._in_progress.add(job_address)
        try:
            return await self._work(job_address, block)
        finally:
            self._in_progress.discard(job_address)

    async def _work(self, job_address: str, block: Block) -> AttemptOutcome:
        try:
            can_work, args = await self._jobs.workable(job_address, self._network_tag)
        except ChainReadError as e:
            logger.warning(
                "job_workable_check_failed: %s", e, extra={"event": "job_workable_check_failed", "job": job_address, "block": block.number}
            )
            return AttemptOutcome.READ_FAILED

        if not can_work:
            return AttemptOutcome.NOT_WORKABLE

        token = self._job_token(job_address) if self._job_token is not None else None
        if self._job_token is not None and (token is None or token.cancelled):
            logger.info("job_no_longer_tracked", extra={"event": "job_no_longer_tracked", "job": job_address, "block": block.number})
            return AttemptOutcome.REMOVED

        request = WorkRequest(
            target=self._upkeep_job_address,
            method=self._work_method,
            arguments=(job_address, args),
            block=block,
        )
        logger.info(
            "job_workable: broadcasting for %s",
            decode_network_tag(self._network_tag),
            extra={"event": "job_workable", "job": job_address, "block": block.number},
        )
        try:
            included = await self._broadcaster.broadcast(request)
        except Exception:
            logger.exception("job_work_failed", extra={"event": "job_work_failed", "job": job_address, "block": block.number})
            return AttemptOutcome.BROADCAST_FAILED

        if included:
            logger.info("job_worked", extra={"event": "job_worked", "job": job_address, "block": block.number})
            return AttemptOutcome.INCLUDED
        logger.warning("job_work_not_included", extra={"event": "job_work_not_included", "job": job_address, "block": block.number})
        return AttemptOutcome.NOT_INCLUDED
