"""
Dependency evaluator - decide which task instances may run now.

Pure functions of (GraphDefinition, task instance states, now); nothing here
touches the store. The scheduler applies the result through the store, which
enforces the state machine.

A task instance is runnable iff
- it is `none`, or `up_for_retry` with attempts left, or `scheduled`
  (rescheduled sensor / failed submission), and its `next_eligible_at`
  has passed, and
- every upstream instance is `success` or `skipped`, and
- no cancellation is pending for it.

A task instance whose upstream is `failed`, `cancelled` or itself skipped
because of an upstream failure is skipped instead. The skip is propagated
transitively in a single evaluation. Sibling branches are unaffected.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional

from dagrun.graph import topological_order
from dagrun.schemas import (
    DONE_OK_STATES,
    GraphDefinition,
    RunInstance,
    RunState,
    SkipReason,
    TaskInstance,
    TaskState,
)

_ELIGIBLE_STATES = frozenset({TaskState.NONE, TaskState.SCHEDULED, TaskState.UP_FOR_RETRY})


@dataclass(frozen=True)
class Evaluation:
    """
    Result of evaluating one run.

    Attributes:
        runnable: Task keys eligible for scheduled -> queued
        to_skip: Task keys that must become skipped (upstream failure)
    """
    runnable: frozenset[str]
    to_skip: frozenset[str]


def _is_blocking(ti: TaskInstance) -> bool:
    """True if this instance makes its downstream unrunnable."""
    if ti.state in (TaskState.FAILED, TaskState.CANCELLED):
        return True
    return ti.state == TaskState.SKIPPED and ti.skip_reason == SkipReason.UPSTREAM_FAILED


def _is_due(ti: TaskInstance, now: Optional[datetime]) -> bool:
    if ti.next_eligible_at is None or now is None:
        return True
    return ti.next_eligible_at <= now


def is_eligible(ti: TaskInstance, now: Optional[datetime] = None) -> bool:
    """Check the instance's own state, ignoring upstream."""
    if ti.cancel_requested or ti.state not in _ELIGIBLE_STATES:
        return False
    if ti.state == TaskState.UP_FOR_RETRY and ti.attempts_remaining <= 0:
        return False
    return _is_due(ti, now)


def evaluate(
    graph: GraphDefinition,
    task_instances: Mapping[str, TaskInstance],
    now: Optional[datetime] = None,
) -> Evaluation:
    """
    Evaluate a run's task instances against the graph.

    Args:
        graph: The graph definition the run belongs to
        task_instances: Mapping of task key to TaskInstance for one run
        now: Current time for retry backoff and sensor reschedule checks;
             None ignores deferrals

    Returns:
        Evaluation with the runnable and to-be-skipped task keys
    """
    blocked: set[str] = set()
    runnable: set[str] = set()
    to_skip: set[str] = set()

    for key in topological_order(graph):
        ti = task_instances.get(key)
        if ti is None:
            continue
        if _is_blocking(ti):
            blocked.add(key)
            continue
        if ti.is_terminal or ti.state.is_in_flight:
            continue

        upstream = graph.tasks[key].upstream
        if any(u in blocked for u in upstream):
            to_skip.add(key)
            blocked.add(key)
            continue

        upstream_done = all(
            u in task_instances and task_instances[u].state in DONE_OK_STATES
            for u in upstream
        )
        if upstream_done and is_eligible(ti, now):
            runnable.add(key)

    return Evaluation(runnable=frozenset(runnable), to_skip=frozenset(to_skip))


def compute_run_state(run: RunInstance) -> RunState:
    """
    Derive a run's aggregate state from its task instances.

    Recomputed from scratch on every call, never incrementally updated.

    - not all terminal: running once any instance has left `none`, else pending
    - all terminal with a cancelled instance: cancelled
    - failures and successes: partially_failed
    - failures only: failed
    - otherwise: succeeded
    """
    instances = list(run.task_instances.values())
    if not all(ti.is_terminal for ti in instances):
        if any(ti.state != TaskState.NONE for ti in instances):
            return RunState.RUNNING
        return RunState.PENDING

    states = {ti.state for ti in instances}
    if TaskState.CANCELLED in states:
        return RunState.CANCELLED
    if TaskState.FAILED in states:
        if TaskState.SUCCESS in states:
            return RunState.PARTIALLY_FAILED
        return RunState.FAILED
    return RunState.SUCCEEDED
