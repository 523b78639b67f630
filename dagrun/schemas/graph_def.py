"""
GraphDefinition schema - the declarative DAG of tasks.

A GraphDefinition is static and immutable. It defines what runs and in which
dependency order, and when new runs are due, but holds no execution state.
Structural validation (unknown upstreams, cycles) happens in dagrun.graph.load.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from dagrun.schedule import SchedulePolicy
from dagrun.utils import parse_bool, parse_datetime

from .task_def import RetryPolicy, TaskDefinition


@dataclass(frozen=True)
class GraphDefinition:
    """
    A graph definition.

    Attributes:
        graph_id: Unique identifier for the graph
        tasks: Mapping of task key to TaskDefinition
        schedule: When the scheduler materializes runs
        catchup: Materialize every missed slot since start_date, not only the latest
        start_date: First possible logical slot (required unless manual)
        end_date: Optional last possible logical slot
        description: Free-form description
        extras: Top-level fields not interpreted by the core
    """
    graph_id: str
    tasks: dict[str, TaskDefinition] = field(default_factory=dict, hash=False)
    schedule: SchedulePolicy = field(default_factory=SchedulePolicy.manual)
    catchup: bool = False
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    description: str = ""
    extras: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def task_keys(self) -> list[str]:
        return sorted(self.tasks)

    def get_task(self, key: str) -> TaskDefinition:
        return self.tasks[key]

    def downstream_of(self, key: str) -> list[str]:
        """Direct downstream task keys, sorted."""
        return sorted(k for k, t in self.tasks.items() if key in t.upstream)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary (round-trips through from_dict)."""
        result: dict[str, Any] = {
            "graph_id": self.graph_id,
            "schedule": self.schedule.to_value(),
            "catchup": self.catchup,
            "tasks": [self.tasks[k].to_dict() for k in self.task_keys],
        }
        if self.start_date is not None:
            result["start_date"] = self.start_date.isoformat()
        if self.end_date is not None:
            result["end_date"] = self.end_date.isoformat()
        if self.description:
            result["description"] = self.description
        result.update(self.extras)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GraphDefinition":
        """
        Deserialize from dictionary.

        Duplicate task keys are rejected here because the mapping would
        silently collapse them.

        Raises:
            ValueError: If a field is missing or malformed
        """
        if not isinstance(data, dict):
            raise ValueError(f"Graph definition must be a mapping, got {type(data).__name__}")
        if not data.get("graph_id"):
            raise ValueError("Graph definition is missing 'graph_id'")

        raw_default_retry = data.get("default_retry")
        if raw_default_retry is not None and not isinstance(raw_default_retry, dict):
            raise ValueError(
                f"'default_retry' must be a mapping, got {type(raw_default_retry).__name__}"
            )
        default_retry = RetryPolicy.from_dict(raw_default_retry or {})

        tasks: dict[str, TaskDefinition] = {}
        raw_tasks = data.get("tasks") or []
        if isinstance(raw_tasks, dict):
            # Mapping form: {key: {...task fields...}}
            raw_tasks = [{"key": k, **(v or {})} for k, v in raw_tasks.items()]
        for raw in raw_tasks:
            task = TaskDefinition.from_dict(raw, default_retry=default_retry)
            if task.key in tasks:
                raise ValueError(f"Duplicate task key: '{task.key}'")
            tasks[task.key] = task

        known_keys = {
            "graph_id", "tasks", "schedule", "catchup", "start_date",
            "end_date", "description", "default_retry",
        }
        return cls(
            graph_id=str(data["graph_id"]),
            tasks=tasks,
            schedule=SchedulePolicy.parse(data.get("schedule")),
            catchup=parse_bool(data.get("catchup", False), "catchup"),
            start_date=parse_datetime(data["start_date"]) if data.get("start_date") else None,
            end_date=parse_datetime(data["end_date"]) if data.get("end_date") else None,
            description=data.get("description", ""),
            extras={k: v for k, v in data.items() if k not in known_keys},
        )
