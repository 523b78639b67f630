"""
Executor backends - where task attempts actually run.
"""

from typing import Optional

from dagrun.executors.base import (
    ExecutorBackend,
    PollResult,
    PollStatus,
    TaskHandle,
    TaskRequest,
)
from dagrun.executors.local import LocalExecutor
from dagrun.executors.runner import run_task
from dagrun.executors.sequential import SequentialExecutor
from dagrun.operators.registry import OperatorRegistry

EXECUTORS = ("sequential", "local")


def create_executor(
    name: str,
    parallelism: int = 4,
    registry: Optional[OperatorRegistry] = None,
) -> ExecutorBackend:
    """
    Build an executor backend by name.

    Raises:
        ValueError: If the name is unknown
    """
    if name == "sequential":
        return SequentialExecutor(registry)
    if name == "local":
        return LocalExecutor(registry, parallelism=parallelism)
    raise ValueError(f"Unknown executor: {name}. Available: {list(EXECUTORS)}")


__all__ = [
    "ExecutorBackend",
    "TaskRequest",
    "TaskHandle",
    "PollResult",
    "PollStatus",
    "SequentialExecutor",
    "LocalExecutor",
    "run_task",
    "create_executor",
    "EXECUTORS",
]
