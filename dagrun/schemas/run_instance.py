"""
RunInstance schema - one materialization of a graph for a logical slot.

A RunInstance is created by the scheduler when a slot is due (or by a
manual trigger/backfill) and exclusively owns its task instances. Its
aggregate state is always recomputed from those task instances.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional

from dagrun.utils import utcnow

from .states import RunState, TaskState
from .task_instance import TaskInstance, _dt

# ULID type alias for documentation
ULID = str

RunType = Literal["scheduled", "manual", "backfill"]


@dataclass
class RunInstance:
    """
    A run of a graph.

    Attributes:
        run_id: ULID uniquely identifying this run
        graph_id: The graph being run
        logical_slot: The period this run covers, independent of wall-clock time
        run_type: 'scheduled', 'manual' or 'backfill'
        state: Aggregate state recomputed from task instances
        task_instances: Mapping of task key to TaskInstance
        created_at: When the run was materialized
        started_at: When the first task instance left `none`
        completed_at: When the run reached a terminal state
        cancel_requested_at: When cancellation was requested
        cancel_completed_at: When every task instance had stopped after cancellation
    """
    run_id: ULID
    graph_id: str
    logical_slot: datetime
    run_type: RunType = "scheduled"
    state: RunState = RunState.PENDING
    task_instances: dict[str, TaskInstance] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancel_requested_at: Optional[datetime] = None
    cancel_completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return not self.state.is_terminal

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_requested_at is not None

    def task_states(self) -> dict[str, TaskState]:
        return {key: ti.state for key, ti in self.task_instances.items()}

    def template_vars(self) -> dict[str, str]:
        """Values derived from the logical slot for external templating."""
        return {
            "ds": self.logical_slot.strftime("%Y-%m-%d"),
            "ds_nodash": self.logical_slot.strftime("%Y%m%d"),
            "ts": self.logical_slot.isoformat(),
            "logical_slot": self.logical_slot.isoformat(),
            "run_id": self.run_id,
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "run_id": self.run_id,
            "graph_id": self.graph_id,
            "logical_slot": self.logical_slot.isoformat(),
            "run_type": self.run_type,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "task_instances": [
                self.task_instances[k].to_dict() for k in sorted(self.task_instances)
            ],
        }
        for name in ("started_at", "completed_at", "cancel_requested_at", "cancel_completed_at"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunInstance":
        """Deserialize from dictionary."""
        task_instances = [TaskInstance.from_dict(t) for t in data.get("task_instances", [])]
        return cls(
            run_id=data["run_id"],
            graph_id=data["graph_id"],
            logical_slot=datetime.fromisoformat(data["logical_slot"]),
            run_type=data.get("run_type", "scheduled"),
            state=RunState(data.get("state", "pending")),
            task_instances={ti.task_key: ti for ti in task_instances},
            created_at=datetime.fromisoformat(data["created_at"]),
            started_at=_dt(data.get("started_at")),
            completed_at=_dt(data.get("completed_at")),
            cancel_requested_at=_dt(data.get("cancel_requested_at")),
            cancel_completed_at=_dt(data.get("cancel_completed_at")),
        )
