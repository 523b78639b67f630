"""
dagrun.schemas - Schema definitions for the scheduling core.

GraphDefinition -> RunInstance -> TaskInstance

Lifecycle:
1. GraphDefinition: Static, immutable DAG of TaskDefinitions plus a schedule policy
2. RunInstance: One materialization of a graph for a logical slot
3. TaskInstance: Execution record of one task within one run, driven by the
   task state machine in dagrun.schemas.states
"""

from .states import (
    TaskState,
    RunState,
    SkipReason,
    TERMINAL_TASK_STATES,
    DONE_OK_STATES,
    TASK_TRANSITIONS,
    can_transition,
)
from .task_def import (
    RetryPolicy,
    TaskDefinition,
)
from .graph_def import (
    GraphDefinition,
)
from .task_instance import (
    TaskInstance,
)
from .run_instance import (
    RunInstance,
    RunType,
    ULID,
)

__all__ = [
    # States
    "TaskState",
    "RunState",
    "SkipReason",
    "TERMINAL_TASK_STATES",
    "DONE_OK_STATES",
    "TASK_TRANSITIONS",
    "can_transition",
    # Definitions
    "RetryPolicy",
    "TaskDefinition",
    "GraphDefinition",
    # Instances
    "TaskInstance",
    "RunInstance",
    "RunType",
    "ULID",
]
