"""
Executor backend protocol.

The dispatcher hands a TaskRequest to a backend with submit() and later
asks for its outcome with poll(). Backends:
- sequential: runs tasks one at a time on a single worker (tests, debugging)
- local: runs tasks on a thread pool

Backends never touch the run state store; the dispatcher owns every state
transition.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from dagrun.operators.base import TaskContext
from dagrun.schemas import RetryPolicy


@dataclass(frozen=True)
class TaskRequest:
    """
    One task attempt handed to an executor backend.

    Built by the dispatcher from the TaskDefinition and TaskInstance at
    dispatch time.
    """
    run_id: str
    graph_id: str
    task_key: str
    logical_slot: datetime
    operator: str = "noop"
    params: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    mode: str = "poke"
    try_number: int = 1
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    dispatched_at: Optional[datetime] = None
    first_started_at: Optional[datetime] = None
    reschedule_count: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.run_id, self.task_key)

    def context(self, cancel_event) -> TaskContext:
        """Build the TaskContext the operator runs with."""
        return TaskContext(
            graph_id=self.graph_id,
            run_id=self.run_id,
            task_key=self.task_key,
            logical_slot=self.logical_slot,
            try_number=self.try_number,
            params=dict(self.params),
            dispatched_at=self.dispatched_at,
            first_started_at=self.first_started_at,
            reschedule_count=self.reschedule_count,
            cancel_event=cancel_event,
        )


class PollStatus(str, Enum):
    """Outcome of polling a submitted task."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    RESCHEDULE = "reschedule"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        return self not in (PollStatus.QUEUED, PollStatus.RUNNING)

    @property
    def did_run(self) -> bool:
        """True if the operator actually started for this outcome."""
        return self in (PollStatus.SUCCESS, PollStatus.FAILED, PollStatus.RESCHEDULE, PollStatus.SKIPPED)


@dataclass(frozen=True)
class PollResult:
    """
    Result of polling a task handle.

    Attributes:
        status: Where the attempt stands
        result: Return value of a successful attempt
        error: {"type", "message"} of a failed attempt
        retryable: False if the failure must not be retried
        reschedule_delay: Delay requested by a sensor in reschedule mode
    """
    status: PollStatus
    result: Any = None
    error: Optional[dict[str, Any]] = None
    retryable: bool = True
    reschedule_delay: Optional[timedelta] = None


@dataclass
class TaskHandle:
    """A submitted task attempt, as tracked by the dispatcher."""
    handle_id: str
    request: TaskRequest
    cancel_signalled: bool = False


class ExecutorBackend(ABC):
    """
    Abstract base class for executor backends.
    """

    name = "base"

    @abstractmethod
    def submit(self, request: TaskRequest) -> TaskHandle:
        """
        Accept a task attempt for execution.

        Raises:
            BackendUnavailable: If the backend cannot accept work right now
        """
        pass

    @abstractmethod
    def poll(self, handle: TaskHandle, timeout: float = 0.0) -> PollResult:
        """
        Report the status of a submitted attempt, waiting up to `timeout` seconds.
        """
        pass

    def cancel(self, handle: TaskHandle) -> None:
        """Request cooperative cancellation of a submitted attempt."""
        pass

    def shutdown(self, wait: bool = True) -> None:
        """Release backend resources."""
        pass
