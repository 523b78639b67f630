"""
State enums and the task instance state machine.

Per task instance:

    none -> scheduled -> queued -> running -> {success | failed | up_for_retry | skipped}

up_for_retry returns to scheduled while attempts remain. A running sensor
in reschedule mode returns to scheduled with a deferred next-check time,
and a queued instance whose submission failed returns to scheduled.
Any non-terminal instance may be cancelled; clearing resets to none.
"""

from enum import Enum


class TaskState(str, Enum):
    """State of a task instance."""
    NONE = "none"
    SCHEDULED = "scheduled"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    UP_FOR_RETRY = "up_for_retry"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TASK_STATES

    @property
    def is_in_flight(self) -> bool:
        """True while the instance is held by an executor backend."""
        return self in (TaskState.QUEUED, TaskState.RUNNING)


class RunState(str, Enum):
    """Aggregate state of a run instance."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIALLY_FAILED = "partially_failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunState.PENDING, RunState.RUNNING)


class SkipReason(str, Enum):
    """Why a task instance was skipped."""
    UPSTREAM_FAILED = "upstream_failed"
    OPERATOR = "operator"
    REMOVED = "removed"


TERMINAL_TASK_STATES = frozenset({
    TaskState.SUCCESS,
    TaskState.FAILED,
    TaskState.SKIPPED,
    TaskState.CANCELLED,
})

# Upstream states that satisfy a downstream dependency
DONE_OK_STATES = frozenset({TaskState.SUCCESS, TaskState.SKIPPED})

TASK_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.NONE: frozenset({
        TaskState.SCHEDULED,
        TaskState.SKIPPED,
        TaskState.CANCELLED,
    }),
    TaskState.SCHEDULED: frozenset({
        TaskState.QUEUED,
        TaskState.SKIPPED,
        TaskState.CANCELLED,
        TaskState.NONE,
    }),
    TaskState.QUEUED: frozenset({
        TaskState.RUNNING,
        TaskState.SCHEDULED,
        TaskState.CANCELLED,
    }),
    TaskState.RUNNING: frozenset({
        TaskState.SUCCESS,
        TaskState.FAILED,
        TaskState.UP_FOR_RETRY,
        TaskState.SKIPPED,
        TaskState.SCHEDULED,
        TaskState.CANCELLED,
    }),
    TaskState.UP_FOR_RETRY: frozenset({
        TaskState.SCHEDULED,
        TaskState.SKIPPED,
        TaskState.CANCELLED,
        TaskState.NONE,
    }),
    TaskState.SUCCESS: frozenset({TaskState.NONE}),
    TaskState.FAILED: frozenset({TaskState.NONE}),
    TaskState.SKIPPED: frozenset({TaskState.NONE}),
    TaskState.CANCELLED: frozenset({TaskState.NONE}),
}


def can_transition(from_state: TaskState, to_state: TaskState) -> bool:
    """Check whether the state machine allows from_state -> to_state."""
    return to_state in TASK_TRANSITIONS[from_state]
