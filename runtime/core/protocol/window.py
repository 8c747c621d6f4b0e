"""Master window arithmetic.

The sequencer hands out windows round robin: network `i` of `n` is master for
blocks [k*W*n + i*W, k*W*n + i*W + W) for every k, where W is the window
length. Everything here is pure; no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass

from utils import ceil_div


def next_master_window_start(current_block: int, window_length: int, whitelist_size: int, self_position: int) -> int:
    """Smallest block >= current_block at which `self_position` becomes master.

    A window that starts exactly at `current_block` counts as the next one.
    """
    if window_length < 1:
        raise ValueError(f"window_length must be >= 1 (got {window_length})")
    if whitelist_size < 1:
        raise ValueError(f"whitelist_size must be >= 1 (got {whitelist_size})")
    if not 0 <= self_position < whitelist_size:
        raise ValueError(f"self_position must be in [0, {whitelist_size}) (got {self_position})")

    full_cycle = window_length * whitelist_size
    offset = self_position * window_length
    cycles_elapsed = ceil_div(current_block - offset, full_cycle)
    return full_cycle * cycles_elapsed + offset


def wait_seconds(window_start: int, current_block: int, *, block_duration_seconds: float, tolerance_seconds: float) -> float:
    """Time to sleep before observing blocks, started `tolerance_seconds` early."""
    remaining_blocks = window_start - current_block
    return max(0.0, remaining_blocks * block_duration_seconds - tolerance_seconds)


@dataclass(frozen=True)
class WindowSchedule:
    start: int
    end: int

    @classmethod
    def compute(cls, current_block: int, *, window_length: int, whitelist_size: int, self_position: int) -> "WindowSchedule":
        start = next_master_window_start(current_block, window_length, whitelist_size, self_position)
        return cls(start=start, end=start + window_length)

    def contains(self, block_number: int) -> bool:
        return self.start <= block_number < self.end

    def is_before(self, block_number: int) -> bool:
        return block_number < self.start

    def is_closed_at(self, block_number: int) -> bool:
        return block_number >= self.end
