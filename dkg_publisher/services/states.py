from __future__ import annotations

from enum import Enum


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    RETRY_PENDING = "retry_pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})
NON_TERMINAL_STATES = frozenset(set(JobState) - TERMINAL_STATES)
READY_STATES = frozenset({JobState.QUEUED, JobState.RETRY_PENDING})

# Wire names used by the metrics surface.
COUNT_KEYS: dict[JobState, str] = {
    JobState.QUEUED: "queued",
    JobState.ACTIVE: "active",
    JobState.RETRY_PENDING: "retry_pending",
    JobState.COMPLETED: "completed",
    JobState.FAILED: "failed",
    JobState.CANCELLED: "cancelled",
}

ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.QUEUED: frozenset({JobState.ACTIVE, JobState.CANCELLED}),
    # active -> queued is reserved for reconciliation of abandoned claims.
    JobState.ACTIVE: frozenset({JobState.COMPLETED, JobState.FAILED, JobState.RETRY_PENDING, JobState.QUEUED}),
    JobState.RETRY_PENDING: frozenset({JobState.ACTIVE, JobState.CANCELLED}),
    JobState.FAILED: frozenset({JobState.QUEUED}),
    JobState.COMPLETED: frozenset(),
    JobState.CANCELLED: frozenset(),
}


class IllegalTransitionError(Exception):
    """Raised when a state change is not part of the job lifecycle."""

    def __init__(self, from_state: JobState | str, to_state: JobState | str) -> None:
        self.from_state = coerce_state(from_state)
        self.to_state = coerce_state(to_state)
        super().__init__(f"illegal transition: {self.from_state.value} -> {self.to_state.value}")


def coerce_state(value: JobState | str) -> JobState:
    if isinstance(value, JobState):
        return value
    return JobState(value)


def is_terminal(state: JobState | str) -> bool:
    return coerce_state(state) in TERMINAL_STATES


def ensure_transition_allowed(from_state: JobState | str, to_state: JobState | str) -> None:
    source = coerce_state(from_state)
    target = coerce_state(to_state)
    if target not in ALLOWED_TRANSITIONS[source]:
        raise IllegalTransitionError(source, target)
