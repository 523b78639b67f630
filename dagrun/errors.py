"""
Error classes for dagrun.

These error types separate failures by who owns them:
- DefinitionError: a graph definition is malformed or cyclic (fatal to that graph only)
- InvalidTransition: a state-machine violation (a core bug, halts the scheduler)
- TaskExecutionFailure: a task failed; recoverable via the task's retry policy
- DispatchFailure: the executor backend refused work too many times (system alert)
- Cancelled: user-initiated cancellation observed by a task

Task code raises TransientError / PermanentError to signal retry behavior.
The dispatcher catches at the executor boundary and turns them into
task state transitions; everything else propagates.
"""

from datetime import timedelta


class DagrunError(Exception):
    """Base exception for dagrun."""
    pass


class DefinitionError(DagrunError):
    """
    Graph definition is invalid.

    Raised at load time for duplicate task keys, unknown upstream keys,
    cycles, or malformed schedule fields. Fatal to that graph only: the
    scheduler logs it and keeps scheduling the other graphs.
    """

    def __init__(self, message: str, graph_id: str | None = None):
        self.graph_id = graph_id
        if graph_id:
            message = f"Graph '{graph_id}': {message}"
        super().__init__(message)


class InvalidTransition(DagrunError):
    """
    Illegal task instance state transition.

    Never silently ignored. Seeing this means the caller asked the store
    for something the state machine forbids.
    """

    def __init__(self, task_key: str, from_state: str, to_state: str, reason: str = ""):
        self.task_key = task_key
        self.from_state = from_state
        self.to_state = to_state
        message = f"Task '{task_key}': illegal transition {from_state} -> {to_state}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class TaskExecutionFailure(DagrunError):
    """
    A task attempt failed.

    Retried according to the task's RetryPolicy until attempts are
    exhausted, then the task instance becomes terminally failed.
    """
    pass


class TransientError(TaskExecutionFailure):
    """
    Transient task failure - safe to retry.

    Examples:
    - Rate limit exceeded
    - Network timeout
    - Service temporarily unavailable
    """
    pass


class PermanentError(TaskExecutionFailure):
    """
    Permanent task failure - do not retry.

    Examples:
    - Invalid parameters
    - Missing input that will not appear
    - Sensor timed out

    The dispatcher fails the task instance immediately, ignoring any
    remaining attempts.
    """
    pass


class BackendUnavailable(DagrunError):
    """Executor backend could not accept a submission."""
    pass


class DispatchFailure(DagrunError):
    """
    Dispatch attempts for a task instance were exhausted.

    This is a system-level failure, not a task failure: the task
    instance is left in `scheduled` and the scheduler loop halts.
    """

    def __init__(self, run_id: str, task_key: str, attempts: int, cause: Exception | None = None):
        self.run_id = run_id
        self.task_key = task_key
        self.attempts = attempts
        self.cause = cause
        message = (
            f"Dispatch of '{task_key}' in run {run_id} failed after {attempts} attempts"
        )
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class Cancelled(DagrunError):
    """Raised inside a task that observed a cancellation request."""
    pass


class RescheduleRequested(DagrunError):
    """
    Raised by a sensor in reschedule mode when its condition is not met yet.

    The worker slot is released and the task instance returns to
    `scheduled` with a deferred next-check time.
    """

    def __init__(self, delay: timedelta):
        self.delay = delay
        super().__init__(f"Reschedule requested in {delay.total_seconds():g}s")


class TaskSkipped(DagrunError):
    """Raised by task code to mark its task instance skipped."""
    pass


class StoreCorruption(DagrunError):
    """Run state store content could not be read back."""
    pass


class RunNotFoundError(DagrunError):
    """Raised when a run instance does not exist."""
    pass


class TaskNotFoundError(DagrunError):
    """Raised when a task instance does not exist in a run."""
    pass
