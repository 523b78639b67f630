"""
Base operator protocol and common implementations.

Operators carry out the work of one task attempt inside a worker. The
scheduling core never looks inside them; it only sees the outcome:
- return normally: success
- raise TransientError (or any unexpected exception): failed, retried per policy
- raise PermanentError: failed immediately
- raise RescheduleRequested: sensor released its slot
- raise TaskSkipped: skipped
- raise Cancelled: observed a cancellation request
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from dagrun.errors import Cancelled


@dataclass
class TaskContext:
    """
    Everything a running task may know about its attempt.

    Attributes:
        graph_id: Graph the task belongs to
        run_id: ULID of the run
        task_key: Key of the task within the graph
        logical_slot: The slot the run covers
        try_number: 1-indexed attempt number
        params: Operator parameters from the task definition
        dispatched_at: Scheduler time at which the attempt was dispatched
        first_started_at: Scheduler time of the first attempt (sensor timeouts)
        reschedule_count: Times a sensor already released its slot
        cancel_event: Set when cancellation of the attempt is requested
    """
    graph_id: str
    run_id: str
    task_key: str
    logical_slot: datetime
    try_number: int = 1
    params: dict[str, Any] = field(default_factory=dict)
    dispatched_at: Optional[datetime] = None
    first_started_at: Optional[datetime] = None
    reschedule_count: int = 0
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def template_vars(self) -> dict[str, str]:
        slot = self.logical_slot
        return {
            "ds": slot.strftime("%Y-%m-%d"),
            "ds_nodash": slot.strftime("%Y%m%d"),
            "ts": slot.isoformat(),
            "logical_slot": slot.isoformat(),
            "graph_id": self.graph_id,
            "run_id": self.run_id,
            "task_key": self.task_key,
            "try_number": str(self.try_number),
        }

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise Cancelled(f"Task '{self.task_key}' in run {self.run_id} was cancelled")


class Operator(ABC):
    """
    Abstract base class for operators.

    An operator instance is built fresh for every attempt from the task's
    params and sensor mode.
    """

    def __init__(self, task_key: str, params: Optional[dict[str, Any]] = None, mode: str = "poke"):
        self.task_key = task_key
        self.params = dict(params or {})
        self.mode = mode

    @abstractmethod
    def execute(self, context: TaskContext) -> Any:
        """
        Run one attempt of the task.

        Args:
            context: The attempt's TaskContext

        Returns:
            An optional result value (kept in memory only)

        Raises:
            Exception: If the attempt fails
        """
        pass


class NoOpOperator(Operator):
    """
    No-op operator for testing and structural tasks.

    Succeeds immediately without doing anything.
    """

    def execute(self, context: TaskContext) -> Any:
        return None
