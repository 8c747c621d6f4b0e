"""Window scheduler lifecycle state machine.

Canonical lifecycle:
initializing -> waiting -> in_window -> waiting -> ...

Notes:
- `halted` is terminal and only reachable when the keeper is not whitelisted
  at the start of a cycle (or right after initialization).
- `waiting -> waiting` is allowed: a cycle whose schedule could not be
  computed is retried without leaving the waiting state.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from errors import ConflictError


class SchedulerState(str, Enum):
    INITIALIZING = "initializing"
    WAITING = "waiting"
    IN_WINDOW = "in_window"
    HALTED = "halted"


_TERMINAL_STATES = {SchedulerState.HALTED}

_ALLOWED: dict[SchedulerState, set[SchedulerState]] = {
    SchedulerState.INITIALIZING: {SchedulerState.WAITING, SchedulerState.HALTED},
    SchedulerState.WAITING: {SchedulerState.WAITING, SchedulerState.IN_WINDOW, SchedulerState.HALTED},
    SchedulerState.IN_WINDOW: {SchedulerState.WAITING},
    SchedulerState.HALTED: set(),
}


@dataclass(frozen=True)
class Transition:
    previous: SchedulerState
    current: SchedulerState
    at: datetime
    reason: str | None = None


def is_terminal(state: SchedulerState) -> bool:
    return state in _TERMINAL_STATES


def apply_transition(current: SchedulerState, new_state: SchedulerState, *, now: datetime, reason: str | None = None) -> Transition:
    """Validate a scheduler transition and describe it."""
    if is_terminal(current):
        raise ConflictError(f"Scheduler is terminal; cannot transition from {current.value} to {new_state.value}")

    if new_state not in _ALLOWED[current]:
        raise ConflictError(f"Invalid scheduler state transition: {current.value} -> {new_state.value}")

    return Transition(previous=current, current=new_state, at=now, reason=reason)
