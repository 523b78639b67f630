"""
TaskInstance schema - execution record of one task within one run.

A TaskInstance references (never owns) its TaskDefinition by key and its
upstream task instances by key within the same run. The owning RunInstance
is the only container of task instances.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .states import SkipReason, TaskState


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class TaskInstance:
    """
    A task instance.

    Attributes:
        run_id: ULID of the owning run
        task_key: Key of the TaskDefinition within the graph
        upstream_keys: Keys of upstream task instances in the same run
        state: Current state (see dagrun.schemas.states)
        attempts: Completed execution attempts (successes and failures)
        max_attempts: Attempts allowed by the task's retry policy
        started_at: When the current attempt started running
        ended_at: When the last attempt ended
        first_started_at: When the first attempt started (sensor timeouts)
        next_eligible_at: Not eligible before this time (retry backoff, sensor reschedule)
        reschedule_count: How many times a sensor released its slot
        dispatch_attempts: Consecutive failed submissions to the executor backend
        cancel_requested: A cooperative stop was requested while in flight
        external_id: Backend handle identifier while in flight
        skip_reason: Why the instance was skipped
        error: Error details of the last failed attempt
    """
    run_id: str
    task_key: str
    upstream_keys: frozenset[str] = field(default_factory=frozenset)
    state: TaskState = TaskState.NONE
    attempts: int = 0
    max_attempts: int = 1
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    first_started_at: Optional[datetime] = None
    next_eligible_at: Optional[datetime] = None
    reschedule_count: int = 0
    dispatch_attempts: int = 0
    cancel_requested: bool = False
    external_id: Optional[str] = None
    skip_reason: Optional[SkipReason] = None
    error: Optional[dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def attempts_remaining(self) -> int:
        return max(self.max_attempts - self.attempts, 0)

    @property
    def try_number(self) -> int:
        """1-indexed number of the attempt that runs next (or is running)."""
        return self.attempts + 1

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at and self.ended_at:
            return int((self.ended_at - self.started_at).total_seconds() * 1000)
        return None

    def reset(self) -> None:
        """Return to the pristine `none` state (used by clear)."""
        self.state = TaskState.NONE
        self.attempts = 0
        self.started_at = None
        self.ended_at = None
        self.first_started_at = None
        self.next_eligible_at = None
        self.reschedule_count = 0
        self.dispatch_attempts = 0
        self.cancel_requested = False
        self.external_id = None
        self.skip_reason = None
        self.error = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "run_id": self.run_id,
            "task_key": self.task_key,
            "upstream_keys": sorted(self.upstream_keys),
            "state": self.state.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "reschedule_count": self.reschedule_count,
            "dispatch_attempts": self.dispatch_attempts,
            "cancel_requested": self.cancel_requested,
        }
        for name in ("started_at", "ended_at", "first_started_at", "next_eligible_at"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value.isoformat()
        if self.external_id is not None:
            result["external_id"] = self.external_id
        if self.skip_reason is not None:
            result["skip_reason"] = self.skip_reason.value
        if self.error is not None:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskInstance":
        """Deserialize from dictionary."""
        return cls(
            run_id=data["run_id"],
            task_key=data["task_key"],
            upstream_keys=frozenset(data.get("upstream_keys", [])),
            state=TaskState(data.get("state", "none")),
            attempts=data.get("attempts", 0),
            max_attempts=data.get("max_attempts", 1),
            started_at=_dt(data.get("started_at")),
            ended_at=_dt(data.get("ended_at")),
            first_started_at=_dt(data.get("first_started_at")),
            next_eligible_at=_dt(data.get("next_eligible_at")),
            reschedule_count=data.get("reschedule_count", 0),
            dispatch_attempts=data.get("dispatch_attempts", 0),
            cancel_requested=data.get("cancel_requested", False),
            external_id=data.get("external_id"),
            skip_reason=SkipReason(data["skip_reason"]) if data.get("skip_reason") else None,
            error=data.get("error"),
        )
