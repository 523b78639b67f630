"""
RunStore - the durable source of truth for runs and task instances.

The RunStore manages:
- RunInstances keyed by run_id and by (graph_id, logical_slot)
- TaskInstances owned by their RunInstance, keyed by task key
- The task instance state machine (illegal transitions raise InvalidTransition)
- Aggregate run state, recomputed from task instances on every write

All mutations go through `transaction(run_id)`, which holds a per-run lock
while reading a private copy of the run, letting the caller mutate it, and
writing it back. A failed transaction writes nothing.

Storage backends:
- In-memory (for testing)
- File-based (one JSON document per run, single process)
"""

import copy
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from dagrun.errors import (
    InvalidTransition,
    RunNotFoundError,
    StoreCorruption,
    TaskNotFoundError,
)
from dagrun.evaluator import compute_run_state, evaluate
from dagrun.schemas import (
    DONE_OK_STATES,
    GraphDefinition,
    RunInstance,
    RunState,
    RunType,
    SkipReason,
    TaskInstance,
    TaskState,
    can_transition,
)
from dagrun.utils import generate_ulid, parse_datetime, utcnow

logger = logging.getLogger(__name__)

# Fields callers may not overwrite through set_task_state
_PROTECTED_FIELDS = frozenset({"run_id", "task_key", "state", "upstream_keys"})


class RunStore(ABC):
    """
    Abstract base class for run state storage.

    Subclasses provide four storage primitives; the state machine,
    idempotent run creation and aggregate recomputation live here so every
    backend enforces them identically.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._create_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Storage primitives
    # ------------------------------------------------------------------

    @abstractmethod
    def _read(self, run_id: str) -> Optional[RunInstance]:
        """Return a private copy of the run, or None."""
        pass

    @abstractmethod
    def _write(self, run: RunInstance) -> None:
        """Persist the run (including its task instances)."""
        pass

    @abstractmethod
    def _lookup(self, graph_id: str, logical_slot: datetime) -> Optional[str]:
        """Return the run_id materialized for (graph_id, logical_slot), or None."""
        pass

    @abstractmethod
    def _run_ids(self) -> list[str]:
        """Return every stored run_id."""
        pass

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _lock_for(self, run_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(run_id)
            if lock is None:
                lock = self._locks[run_id] = threading.RLock()
            return lock

    @contextmanager
    def transaction(self, run_id: str) -> Iterator[RunInstance]:
        """
        Read-modify-write a run under its lock.

        Yields:
            A private copy of the run; it is written back only if the
            block exits without raising.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        with self._lock_for(run_id):
            run = self._read(run_id)
            if run is None:
                raise RunNotFoundError(f"Run not found: {run_id}")
            yield run
            self._write(run)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def create_run(
        self,
        graph: GraphDefinition,
        logical_slot: datetime,
        run_type: RunType = "scheduled",
        now: Optional[datetime] = None,
    ) -> RunInstance:
        """
        Materialize a run of `graph` for `logical_slot`.

        Idempotent: if a run already exists for (graph_id, logical_slot) it is
        returned unchanged, which is what prevents duplicate scheduling.

        Args:
            graph: The graph to materialize
            logical_slot: The slot the run covers
            run_type: 'scheduled', 'manual' or 'backfill'
            now: Creation time (defaults to the current time)

        Returns:
            The new or existing RunInstance
        """
        slot = parse_datetime(logical_slot)
        now = now or utcnow()
        with self._create_lock:
            existing = self._lookup(graph.graph_id, slot)
            if existing is not None:
                return self.get_run(existing)

            run = RunInstance(
                run_id=generate_ulid(),
                graph_id=graph.graph_id,
                logical_slot=slot,
                run_type=run_type,
                created_at=now,
            )
            for key, task in graph.tasks.items():
                run.task_instances[key] = TaskInstance(
                    run_id=run.run_id,
                    task_key=key,
                    upstream_keys=task.upstream,
                    max_attempts=task.retry.max_attempts,
                )
            self._recompute(run, now)
            self._write(run)

        logger.info(
            f"Created {run_type} run {run.run_id} for {graph.graph_id} at {slot.isoformat()}",
            extra={"graph_id": graph.graph_id, "run_id": run.run_id, "event": "run_created"},
        )
        return run

    def get_run(self, run_id: str) -> RunInstance:
        """
        Retrieve a run by ID.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        run = self._read(run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return run

    def find_run(self, graph_id: str, logical_slot: datetime) -> Optional[RunInstance]:
        """Retrieve the run for (graph_id, logical_slot), or None."""
        run_id = self._lookup(graph_id, parse_datetime(logical_slot))
        if run_id is None:
            return None
        return self._read(run_id)

    def list_runs(
        self,
        graph_id: Optional[str] = None,
        states: Optional[Iterable[RunState]] = None,
    ) -> list[RunInstance]:
        """
        List runs, oldest logical slot first.

        Args:
            graph_id: Only runs of this graph
            states: Only runs in one of these states
        """
        wanted = set(states) if states is not None else None
        runs = []
        for run_id in self._run_ids():
            run = self._read(run_id)
            if run is None:
                continue
            if graph_id is not None and run.graph_id != graph_id:
                continue
            if wanted is not None and run.state not in wanted:
                continue
            runs.append(run)
        return sorted(runs, key=lambda r: (r.logical_slot, r.created_at, r.run_id))

    def list_active_runs(self, graph_id: Optional[str] = None) -> list[RunInstance]:
        return self.list_runs(graph_id, states=(RunState.PENDING, RunState.RUNNING))

    def latest_slot(
        self,
        graph_id: str,
        run_types: Iterable[str] = ("scheduled",),
    ) -> Optional[datetime]:
        """Latest logical slot materialized for a graph by the given run types."""
        types = set(run_types)
        slots = [r.logical_slot for r in self.list_runs(graph_id) if r.run_type in types]
        return max(slots) if slots else None

    def refresh_run_state(self, run_id: str, now: Optional[datetime] = None) -> RunInstance:
        """Recompute a run's aggregate state from its task instances."""
        with self.transaction(run_id) as run:
            self._recompute(run, now or utcnow())
            return run

    def cancel_run(self, run_id: str, now: Optional[datetime] = None) -> RunInstance:
        """
        Cancel a run.

        Terminal task instances are untouched. Instances not yet handed to an
        executor become `cancelled`. Queued and running instances are only
        flagged `cancel_requested`; they become `cancelled` when the executor
        reports back, and the run records cancel_completed_at at that point.
        """
        now = now or utcnow()
        with self.transaction(run_id) as run:
            if run.state.is_terminal:
                return run
            if run.cancel_requested_at is None:
                run.cancel_requested_at = now
            for ti in run.task_instances.values():
                if ti.is_terminal:
                    continue
                if ti.state.is_in_flight:
                    ti.cancel_requested = True
                else:
                    self._apply_transition(run, ti, TaskState.CANCELLED, now)
            self._recompute(run, now)

        logger.info(f"Cancellation requested for run {run_id}",
                    extra={"run_id": run_id, "event": "run_cancel_requested"})
        return run

    def reconcile_run(self, run_id: str, graph: GraphDefinition, now: Optional[datetime] = None) -> RunInstance:
        """
        Align an active run with a reloaded graph definition.

        New tasks get a fresh `none` instance, instances of removed tasks are
        skipped (unless in flight or terminal), and upstream keys of
        not-yet-started instances follow the current definition.
        """
        now = now or utcnow()
        with self.transaction(run_id) as run:
            if run.state.is_terminal:
                return run
            for key, task in graph.tasks.items():
                ti = run.task_instances.get(key)
                if ti is None:
                    run.task_instances[key] = TaskInstance(
                        run_id=run.run_id,
                        task_key=key,
                        upstream_keys=task.upstream,
                        max_attempts=task.retry.max_attempts,
                    )
                elif ti.state == TaskState.NONE:
                    ti.upstream_keys = task.upstream
                    ti.max_attempts = task.retry.max_attempts
            for key, ti in run.task_instances.items():
                if key in graph.tasks or ti.is_terminal or ti.state.is_in_flight:
                    continue
                self._apply_transition(run, ti, TaskState.SKIPPED, now)
                ti.skip_reason = SkipReason.REMOVED
            self._recompute(run, now)
            return run

    # ------------------------------------------------------------------
    # Task instances
    # ------------------------------------------------------------------

    def get_task_instance(self, run_id: str, task_key: str) -> TaskInstance:
        """
        Retrieve a task instance.

        Raises:
            RunNotFoundError: If the run does not exist
            TaskNotFoundError: If the run has no such task
        """
        return self._task(self.get_run(run_id), task_key)

    def list_task_instances(self, run_id: str) -> list[TaskInstance]:
        run = self.get_run(run_id)
        return [run.task_instances[k] for k in sorted(run.task_instances)]

    def set_task_state(
        self,
        run_id: str,
        task_key: str,
        state: TaskState,
        now: Optional[datetime] = None,
        **fields: Any,
    ) -> TaskInstance:
        """
        Transition a task instance, enforcing the state machine.

        Extra keyword arguments update TaskInstance fields in the same
        transaction (e.g. attempts, next_eligible_at, error) and are applied
        before the transition is validated.

        Raises:
            InvalidTransition: If the transition is not allowed, if a task would
                start running before its upstream finished, or if a retry is
                requested with no attempts remaining
        """
        state = TaskState(state)
        now = now or utcnow()
        with self.transaction(run_id) as run:
            ti = self._task(run, task_key)
            for name, value in fields.items():
                if name in _PROTECTED_FIELDS or not hasattr(ti, name):
                    raise TypeError(f"Cannot set TaskInstance field '{name}'")
                setattr(ti, name, value)
            self._apply_transition(run, ti, state, now)
            self._recompute(run, now)
            return ti

    def update_task(self, run_id: str, task_key: str, **fields: Any) -> TaskInstance:
        """Update TaskInstance fields without changing its state."""
        with self.transaction(run_id) as run:
            ti = self._task(run, task_key)
            for name, value in fields.items():
                if name in _PROTECTED_FIELDS or not hasattr(ti, name):
                    raise TypeError(f"Cannot set TaskInstance field '{name}'")
                setattr(ti, name, value)
            return ti

    def skip_tasks(
        self,
        run_id: str,
        task_keys: Iterable[str],
        reason: SkipReason = SkipReason.UPSTREAM_FAILED,
        now: Optional[datetime] = None,
    ) -> list[str]:
        """Skip several task instances in one transaction; returns the keys skipped."""
        now = now or utcnow()
        skipped = []
        with self.transaction(run_id) as run:
            for key in sorted(task_keys):
                ti = self._task(run, key)
                if ti.state == TaskState.SKIPPED:
                    continue
                self._apply_transition(run, ti, TaskState.SKIPPED, now)
                ti.skip_reason = reason
                skipped.append(key)
            self._recompute(run, now)
        return skipped

    def list_runnable(
        self,
        run_id: str,
        graph: GraphDefinition,
        now: Optional[datetime] = None,
    ) -> set[str]:
        """Task keys of the run eligible to be queued now (see dagrun.evaluator)."""
        run = self.get_run(run_id)
        return set(evaluate(graph, run.task_instances, now).runnable)

    def clear_task(self, run_id: str, task_key: str, now: Optional[datetime] = None) -> list[str]:
        """
        Reset a task instance to `none` so it runs again.

        Downstream instances that were skipped because of this task's failure
        are reset too, and a finished or cancelled run is reopened.

        Returns:
            The keys that were reset

        Raises:
            InvalidTransition: If the task (or a downstream one) is in flight
        """
        now = now or utcnow()
        with self.transaction(run_id) as run:
            self._task(run, task_key)
            busy = sorted(
                k for k in self._downstream_keys(run, task_key)
                if run.task_instances[k].state.is_in_flight
            )
            if busy:
                raise InvalidTransition(
                    task_key, run.task_instances[task_key].state.value, TaskState.NONE.value,
                    f"downstream tasks are in flight: {busy}",
                )
            to_reset = [task_key]
            frontier = [task_key]
            while frontier:
                current = frontier.pop()
                for ti in run.task_instances.values():
                    if current in ti.upstream_keys and ti.task_key not in to_reset:
                        if ti.state == TaskState.SKIPPED and ti.skip_reason == SkipReason.UPSTREAM_FAILED:
                            to_reset.append(ti.task_key)
                            frontier.append(ti.task_key)

            for key in to_reset:
                ti = run.task_instances[key]
                if ti.state == TaskState.NONE:
                    continue
                if not can_transition(ti.state, TaskState.NONE):
                    raise InvalidTransition(key, ti.state.value, TaskState.NONE.value, "task is in flight")
                ti.reset()

            run.cancel_requested_at = None
            run.cancel_completed_at = None
            self._recompute(run, now)

        logger.info(f"Cleared {to_reset} in run {run_id}",
                    extra={"run_id": run_id, "task_key": task_key, "event": "task_cleared"})
        return to_reset

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _task(run: RunInstance, task_key: str) -> TaskInstance:
        ti = run.task_instances.get(task_key)
        if ti is None:
            raise TaskNotFoundError(f"Task '{task_key}' not found in run {run.run_id}")
        return ti

    @staticmethod
    def _downstream_keys(run: RunInstance, task_key: str) -> set[str]:
        found: set[str] = set()
        frontier = [task_key]
        while frontier:
            current = frontier.pop()
            for ti in run.task_instances.values():
                if current in ti.upstream_keys and ti.task_key not in found:
                    found.add(ti.task_key)
                    frontier.append(ti.task_key)
        return found

    @staticmethod
    def _apply_transition(run: RunInstance, ti: TaskInstance, to_state: TaskState, now: datetime) -> None:
        from_state = ti.state
        if not can_transition(from_state, to_state):
            raise InvalidTransition(ti.task_key, from_state.value, to_state.value)

        if to_state == TaskState.RUNNING:
            waiting = sorted(
                u for u in ti.upstream_keys
                if u not in run.task_instances or run.task_instances[u].state not in DONE_OK_STATES
            )
            if waiting:
                raise InvalidTransition(
                    ti.task_key, from_state.value, to_state.value,
                    f"upstream not finished: {waiting}",
                )
            ti.started_at = now
            ti.ended_at = None
            if ti.first_started_at is None:
                ti.first_started_at = now

        if to_state in (TaskState.UP_FOR_RETRY, TaskState.SCHEDULED) and from_state != TaskState.QUEUED:
            if ti.attempts >= ti.max_attempts:
                raise InvalidTransition(
                    ti.task_key, from_state.value, to_state.value,
                    f"no attempts remaining ({ti.attempts}/{ti.max_attempts})",
                )

        if from_state == TaskState.RUNNING:
            ti.ended_at = now

        ti.state = to_state
        if run.started_at is None and to_state not in (TaskState.NONE, TaskState.CANCELLED, TaskState.SKIPPED):
            run.started_at = now

    @staticmethod
    def _recompute(run: RunInstance, now: datetime) -> None:
        state = compute_run_state(run)
        if state.is_terminal:
            if run.completed_at is None:
                run.completed_at = now
            if run.cancel_requested_at is not None and run.cancel_completed_at is None:
                run.cancel_completed_at = now
        else:
            run.completed_at = None
        run.state = state


class InMemoryRunStore(RunStore):
    """
    In-memory implementation of RunStore for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self) -> None:
        super().__init__()
        self._runs: dict[str, RunInstance] = {}
        self._index: dict[tuple[str, datetime], str] = {}

    def _read(self, run_id: str) -> Optional[RunInstance]:
        run = self._runs.get(run_id)
        return copy.deepcopy(run) if run is not None else None

    def _write(self, run: RunInstance) -> None:
        self._runs[run.run_id] = copy.deepcopy(run)
        self._index[(run.graph_id, run.logical_slot)] = run.run_id

    def _lookup(self, graph_id: str, logical_slot: datetime) -> Optional[str]:
        return self._index.get((graph_id, logical_slot))

    def _run_ids(self) -> list[str]:
        return list(self._runs)

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        self._runs.clear()
        self._index.clear()


class FileRunStore(RunStore):
    """
    File-based implementation of RunStore.

    Stores each run, with its task instances, as a JSON document:
        store_dir/
            runs/
                {graph_id}/
                    {run_id}.json

    Writes go to a temporary file and are moved into place, so a crash never
    leaves a half-written run. The (graph_id, slot) index is rebuilt from
    disk on startup; one process owns a store directory at a time.
    """

    def __init__(self, store_dir: Path | str):
        super().__init__()
        self._store_dir = Path(store_dir).expanduser()
        self._runs_dir = self._store_dir / "runs"
        self._runs_dir.mkdir(parents=True, exist_ok=True)
        self._paths: dict[str, Path] = {}
        self._index: dict[tuple[str, datetime], str] = {}
        self._build_index()

    @property
    def store_dir(self) -> Path:
        return self._store_dir

    def _build_index(self) -> None:
        for path in sorted(self._runs_dir.glob("*/*.json")):
            run = self._load_path(path)
            self._paths[run.run_id] = path
            self._index[(run.graph_id, run.logical_slot)] = run.run_id

    def _load_path(self, path: Path) -> RunInstance:
        try:
            with open(path) as f:
                return RunInstance.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StoreCorruption(f"Unreadable run file {path}: {e}") from e

    def _read(self, run_id: str) -> Optional[RunInstance]:
        path = self._paths.get(run_id)
        if path is None or not path.exists():
            return None
        return self._load_path(path)

    def _write(self, run: RunInstance) -> None:
        graph_dir = self._runs_dir / run.graph_id
        graph_dir.mkdir(parents=True, exist_ok=True)
        path = graph_dir / f"{run.run_id}.json"

        fd, tmp_name = tempfile.mkstemp(dir=graph_dir, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(run.to_dict(), f, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        self._paths[run.run_id] = path
        self._index[(run.graph_id, run.logical_slot)] = run.run_id

    def _lookup(self, graph_id: str, logical_slot: datetime) -> Optional[str]:
        return self._index.get((graph_id, logical_slot))

    def _run_ids(self) -> list[str]:
        return list(self._paths)
