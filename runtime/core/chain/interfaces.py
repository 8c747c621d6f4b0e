"""Transport-agnostic chain interfaces.

The keeper only needs a handful of reads from the chain. These interfaces
define that boundary:
- BlockSource: head height and block headers
- LogSource: raw event logs for an address
- SequencerReader: the sequencer's window/whitelist/job getters
- JobReader: per-job workability predicate

Implementations must raise `ChainReadError` for every transport or call
failure. The web3 implementation lives in `chain/web3_client.py`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Sequence


@dataclass(frozen=True)
class Block:
    number: int
    timestamp: int = 0
    base_fee_per_gas: int | None = None


class BlockSource(ABC):
    @abstractmethod
    async def block_number(self) -> int:
        """Current head height."""

    @abstractmethod
    async def get_block(self, number: int) -> Block:
        """Header of a block by number."""


class LogSource(ABC):
    @abstractmethod
    async def get_logs(
        self, *, address: str, from_block: int, to_block: int, topics: Sequence[bytes]
    ) -> list[dict[str, Any]]:
        """Logs emitted by `address` in [from_block, to_block] whose topic0 is one of `topics`."""


class SequencerReader(ABC):
    @abstractmethod
    async def total_window_size(self) -> int: ...

    @abstractmethod
    async def num_networks(self) -> int: ...

    @abstractmethod
    async def network_at(self, index: int) -> bytes: ...

    @abstractmethod
    async def num_jobs(self) -> int: ...

    @abstractmethod
    async def job_at(self, index: int) -> str: ...


class JobReader(ABC):
    @abstractmethod
    async def workable(self, job_address: str, network_tag: bytes) -> tuple[bool, bytes]:
        """Read-only workability check of a job for the given network."""
