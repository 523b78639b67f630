"""
SchedulerLoop - the heartbeat that drives every graph forward.

Each tick:
1. Reload and validate graph definitions (a broken graph is logged and
   skipped; the others keep running).
2. Materialize due slots into runs (only the latest missed slot unless the
   graph has catchup enabled). Run creation is idempotent.
3. For every active run: align it with its current definition, skip tasks
   whose upstream failed, and dispatch runnable tasks while executor slots
   are free.
4. Collect outcomes from the executor and apply them.
5. Recompute aggregate run states.

Definition errors and task failures never stop the loop. InvalidTransition,
StoreCorruption and DispatchFailure propagate and halt it.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from dagrun.config import DagrunConfig
from dagrun.dispatch import Dispatcher, TaskOutcome
from dagrun.errors import DispatchFailure, InvalidTransition, StoreCorruption
from dagrun.evaluator import evaluate
from dagrun.executors import create_executor
from dagrun.operators.registry import OperatorRegistry
from dagrun.registry import GraphRegistry, GraphSource
from dagrun.run_store import FileRunStore, RunStore
from dagrun.schedule import due_slots
from dagrun.schemas import GraphDefinition, RunInstance, RunState, SkipReason, TaskState
from dagrun.utils import utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass
class TickReport:
    """What one scheduler tick did."""
    tick: int
    now: datetime
    graphs: list[str] = field(default_factory=list)
    definition_errors: dict[str, str] = field(default_factory=dict)
    runs_created: list[str] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)
    dispatched: list[tuple[str, str]] = field(default_factory=list)
    outcomes: list[TaskOutcome] = field(default_factory=list)
    runs_finished: dict[str, RunState] = field(default_factory=dict)

    @property
    def is_idle(self) -> bool:
        return not (self.runs_created or self.skipped or self.dispatched or self.outcomes)


class SchedulerLoop:
    """
    Single-threaded scheduler loop.

    Usage:
        loop = SchedulerLoop(GraphRegistry(path), FileRunStore(store_dir), dispatcher)
        loop.run()                 # until stop() or a halting error

        report = loop.tick(now)    # or drive it one tick at a time
    """

    def __init__(
        self,
        source: GraphSource,
        store: RunStore,
        dispatcher: Dispatcher,
        tick_interval: float = 5.0,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize the scheduler loop.

        Args:
            source: Where graph definitions are loaded from on every tick
            store: Run state store
            dispatcher: Dispatcher wrapping the executor backend
            tick_interval: Seconds between ticks in run()
            clock: Returns the current time (defaults to utcnow)
        """
        self._source = source
        self._store = store
        self._dispatcher = dispatcher
        self._tick_interval = tick_interval
        self._clock = clock or utcnow
        self._graphs: dict[str, GraphDefinition] = {}
        self._hashes: dict[str, str] = {}
        self._tick_count = 0
        self._recovered = False
        self._stop_event = threading.Event()

    @classmethod
    def from_config(
        cls,
        config: DagrunConfig,
        registry: Optional[OperatorRegistry] = None,
        clock: Optional[Clock] = None,
    ) -> "SchedulerLoop":
        """Build a loop with a GraphRegistry, FileRunStore and the configured executor."""
        store = FileRunStore(config.store_path)
        backend = create_executor(config.executor, parallelism=config.parallelism, registry=registry)
        dispatcher = Dispatcher(
            store,
            backend,
            parallelism=config.parallelism,
            max_dispatch_attempts=config.max_dispatch_attempts,
            poll_timeout=config.poll_timeout,
        )
        return cls(
            GraphRegistry(config.definitions_path),
            store,
            dispatcher,
            tick_interval=config.tick_interval,
            clock=clock,
        )

    @property
    def store(self) -> RunStore:
        return self._store

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def graphs(self) -> dict[str, GraphDefinition]:
        """Graphs that loaded cleanly on the last tick."""
        return dict(self._graphs)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        """
        Run one scheduler tick.

        Raises:
            InvalidTransition, StoreCorruption, DispatchFailure: Halting errors
        """
        now = now or self._clock()
        self._tick_count += 1
        report = TickReport(tick=self._tick_count, now=now)

        self._load_graphs(report)
        if not self._recovered:
            self._recover_orphans(now)
            self._recovered = True

        for graph in self._graphs.values():
            self._materialize(graph, now, report)

        touched: set[str] = set()
        for run in self._store.list_active_runs():
            touched.add(run.run_id)
            graph = self._graphs.get(run.graph_id)
            if graph is None:
                continue
            self._advance(run, graph, now, report)

        report.outcomes = self._dispatcher.collect(now)
        for outcome in report.outcomes:
            touched.add(outcome.run_id)

        for run_id in sorted(touched):
            run = self._store.refresh_run_state(run_id, now)
            if run.state.is_terminal:
                report.runs_finished[run_id] = run.state
                log = logger.info if run.state == RunState.SUCCEEDED else logger.warning
                log(f"Run {run_id} of {run.graph_id} finished: {run.state.value}",
                    extra={"graph_id": run.graph_id, "run_id": run_id, "event": "run_finished"})

        return report

    def _load_graphs(self, report: TickReport) -> None:
        result = self._source.load_all()
        for graph_id, graph in result.graphs.items():
            digest = self._source.compute_hash(graph)
            previous = self._hashes.get(graph_id)
            if previous is not None and previous != digest:
                logger.info(f"Graph {graph_id} definition changed",
                            extra={"graph_id": graph_id, "event": "definition_changed"})
            self._hashes[graph_id] = digest
        self._graphs = result.graphs
        report.graphs = sorted(result.graphs)
        report.definition_errors = {k: str(v) for k, v in result.errors.items()}

    def _recover_orphans(self, now: datetime) -> None:
        """Return queued/running instances left by a previous process to `scheduled`."""
        for run in self._store.list_active_runs():
            for ti in run.task_instances.values():
                if not ti.state.is_in_flight or self._dispatcher.is_tracking(run.run_id, ti.task_key):
                    continue
                if ti.cancel_requested:
                    self._store.set_task_state(run.run_id, ti.task_key, TaskState.CANCELLED, now, external_id=None)
                else:
                    self._store.set_task_state(run.run_id, ti.task_key, TaskState.SCHEDULED, now, external_id=None)
                logger.warning(f"Recovered orphaned task {ti.task_key} in run {run.run_id}",
                               extra={"run_id": run.run_id, "task_key": ti.task_key, "event": "task_orphaned"})

    def _materialize(self, graph: GraphDefinition, now: datetime, report: TickReport) -> None:
        if graph.schedule.is_manual or graph.start_date is None:
            return
        after = self._store.latest_slot(graph.graph_id)
        slots = due_slots(
            graph.schedule,
            graph.start_date,
            now,
            after=after,
            catchup=graph.catchup,
            end=graph.end_date,
        )
        for slot in slots:
            if self._store.find_run(graph.graph_id, slot) is not None:
                continue
            run = self._store.create_run(graph, slot, run_type="scheduled", now=now)
            report.runs_created.append(run.run_id)

    def _advance(self, run: RunInstance, graph: GraphDefinition, now: datetime, report: TickReport) -> None:
        if self._needs_reconcile(run, graph):
            run = self._store.reconcile_run(run.run_id, graph, now)

        evaluation = evaluate(graph, run.task_instances, now)
        if evaluation.to_skip:
            skipped = self._store.skip_tasks(run.run_id, evaluation.to_skip, SkipReason.UPSTREAM_FAILED, now)
            report.skipped.extend((run.run_id, key) for key in skipped)
            if skipped:
                logger.info(f"Skipped {skipped} in run {run.run_id} (upstream failed)",
                            extra={"graph_id": graph.graph_id, "run_id": run.run_id, "event": "tasks_skipped"})

        for key in sorted(evaluation.runnable):
            if self._dispatcher.open_slots <= 0:
                break
            if self._dispatcher.dispatch(run, graph, key, now) is not None:
                report.dispatched.append((run.run_id, key))

    @staticmethod
    def _needs_reconcile(run: RunInstance, graph: GraphDefinition) -> bool:
        if set(run.task_instances) != set(graph.tasks):
            return True
        return any(
            ti.state == TaskState.NONE and ti.upstream_keys != graph.tasks[key].upstream
            for key, ti in run.task_instances.items()
        )

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(self, max_ticks: Optional[int] = None) -> int:
        """
        Tick every tick_interval seconds until stop() or max_ticks.

        Returns:
            Number of ticks run

        Raises:
            InvalidTransition, StoreCorruption, DispatchFailure: Halting errors
        """
        self._stop_event.clear()
        ticks = 0
        logger.info(f"Scheduler started (tick interval {self._tick_interval}s)",
                    extra={"event": "scheduler_started"})
        try:
            while not self._stop_event.is_set():
                started = time.monotonic()
                self.tick()
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                elapsed = time.monotonic() - started
                self._stop_event.wait(max(self._tick_interval - elapsed, 0.0))
        except (InvalidTransition, StoreCorruption, DispatchFailure) as e:
            logger.critical(f"Scheduler halted: {e}", exc_info=True, extra={"event": "scheduler_halted"})
            raise
        finally:
            self._dispatcher.shutdown(wait=True)
        logger.info(f"Scheduler stopped after {ticks} ticks", extra={"event": "scheduler_stopped"})
        return ticks

    def run_until_idle(self, max_ticks: int = 100) -> list[TickReport]:
        """
        Tick until no run is active and nothing is in flight.

        Time only moves as the clock does; runs waiting on a deferred retry
        or sensor keep the loop going until max_ticks.
        """
        reports = []
        for _ in range(max_ticks):
            reports.append(self.tick())
            if not self._dispatcher.in_flight and not self._store.list_active_runs():
                break
        return reports

    def stop(self) -> None:
        """Ask run() to return after the current tick."""
        self._stop_event.set()
