"""Tracked job set with per-job cancellation tokens."""

from __future__ import annotations

from typing import Iterable


class CancellationToken:
    __slots__ = ("_cancelled",)

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class TrackedJobs:
    """Job addresses currently registered in the sequencer.

    Removing a job cancels its token; a job added again later gets a fresh one.
    """

    def __init__(self) -> None:
        self._tokens: dict[str, CancellationToken] = {}

    def __contains__(self, address: object) -> bool:
        return address in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)

    def addresses(self) -> frozenset[str]:
        return frozenset(self._tokens)

    def token(self, address: str) -> CancellationToken | None:
        return self._tokens.get(address)

    def add(self, address: str) -> CancellationToken:
        token = self._tokens.get(address)
        if token is None:
            token = CancellationToken()
            self._tokens[address] = token
        return token

    def remove(self, address: str) -> bool:
        token = self._tokens.pop(address, None)
        if token is None:
            return False
        token.cancel()
        return True

    def replace(self, addresses: Iterable[str]) -> tuple[set[str], set[str]]:
        """Make the tracked set equal to `addresses`; returns (added, removed)."""
        wanted = set(addresses)
        current = set(self._tokens)
        added = wanted - current
        removed = current - wanted
        for address in removed:
            self.remove(address)
        for address in added:
            self.add(address)
        return added, removed
