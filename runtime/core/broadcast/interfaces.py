"""Broadcast boundary.

A Broadcaster takes a work instruction and drives it to on-chain inclusion or
gives up. How it gets there (fee bumping, relays, retries) is its own concern;
the keeper only needs to know when it is done and whether it landed.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from chain.interfaces import Block


@dataclass(frozen=True)
class WorkRequest:
    target: str
    method: str
    arguments: tuple[Any, ...]
    block: Block


class Broadcaster(ABC):
    @abstractmethod
    async def broadcast(self, request: WorkRequest) -> bool:
        """Submit the call. Returns True if it was included and succeeded on-chain.

        Implementations raise `BroadcastError` when the call could not be submitted.
        """
