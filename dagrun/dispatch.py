"""
Dispatcher - hand runnable task instances to an executor backend and turn
the backend's reports into task state transitions.

dispatch():
    none/up_for_retry -> scheduled -> queued, then submit. If the backend
    refuses, the instance goes back to `scheduled` and is retried on the
    next tick; after `max_dispatch_attempts` consecutive refusals a
    DispatchFailure halts the scheduler.

collect():
    Polls every in-flight attempt (bounded by poll_timeout per collect) and
    applies the outcome:
    - success / skipped -> success / skipped
    - failed with attempts left and retryable -> up_for_retry (with backoff)
    - failed otherwise -> failed
    - reschedule -> scheduled, next_eligible_at = now + poke interval
    - any outcome of an attempt whose cancellation was requested, other than
      success -> cancelled

Task failures never raise out of the dispatcher.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from dagrun.errors import BackendUnavailable, DispatchFailure
from dagrun.executors.base import ExecutorBackend, PollResult, PollStatus, TaskHandle, TaskRequest
from dagrun.run_store import RunStore
from dagrun.schemas import GraphDefinition, RunInstance, SkipReason, TaskState
from dagrun.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskOutcome:
    """A task attempt that finished (or released its slot) during collect()."""
    run_id: str
    task_key: str
    status: PollStatus
    state: TaskState


class Dispatcher:
    """
    Bridges the run state store and an executor backend.

    Usage:
        dispatcher = Dispatcher(store, SequentialExecutor(), parallelism=4)
        dispatcher.dispatch(run, graph, "extract", now)
        outcomes = dispatcher.collect(now)
    """

    def __init__(
        self,
        store: RunStore,
        backend: ExecutorBackend,
        parallelism: Optional[int] = None,
        max_dispatch_attempts: int = 3,
        poll_timeout: float = 1.0,
    ):
        """
        Initialize the dispatcher.

        Args:
            store: RunStore holding the task instances
            backend: Executor backend that runs the attempts
            parallelism: Maximum attempts in flight at once (None = unbounded)
            max_dispatch_attempts: Consecutive submit refusals tolerated per task
            poll_timeout: Total seconds one collect() may wait on the backend
        """
        if max_dispatch_attempts < 1:
            raise ValueError("max_dispatch_attempts must be >= 1")
        self._store = store
        self._backend = backend
        self._parallelism = parallelism
        self._max_dispatch_attempts = max_dispatch_attempts
        self._poll_timeout = poll_timeout
        self._in_flight: dict[tuple[str, str], TaskHandle] = {}

    @property
    def backend(self) -> ExecutorBackend:
        return self._backend

    @property
    def in_flight(self) -> list[tuple[str, str]]:
        """(run_id, task_key) of every attempt currently held by the backend."""
        return list(self._in_flight)

    @property
    def open_slots(self) -> int:
        if self._parallelism is None:
            return 1 << 30
        return max(self._parallelism - len(self._in_flight), 0)

    def is_tracking(self, run_id: str, task_key: str) -> bool:
        return (run_id, task_key) in self._in_flight

    def dispatch(
        self,
        run: RunInstance,
        graph: GraphDefinition,
        task_key: str,
        now: Optional[datetime] = None,
    ) -> Optional[TaskHandle]:
        """
        Queue a runnable task instance and submit it to the backend.

        Returns:
            The TaskHandle, or None if no slot is free or the backend refused

        Raises:
            DispatchFailure: If the backend refused max_dispatch_attempts times in a row
        """
        now = now or utcnow()
        if self.open_slots <= 0:
            return None

        run_id = run.run_id
        ti = self._store.get_task_instance(run_id, task_key)
        if ti.state in (TaskState.NONE, TaskState.UP_FOR_RETRY):
            self._store.set_task_state(run_id, task_key, TaskState.SCHEDULED, now)
        ti = self._store.set_task_state(run_id, task_key, TaskState.QUEUED, now, next_eligible_at=None)

        task = graph.tasks[task_key]
        request = TaskRequest(
            run_id=run_id,
            graph_id=run.graph_id,
            task_key=task_key,
            logical_slot=run.logical_slot,
            operator=task.operator,
            params=dict(task.params),
            mode=task.mode,
            try_number=ti.try_number,
            retry=task.retry,
            dispatched_at=now,
            first_started_at=ti.first_started_at,
            reschedule_count=ti.reschedule_count,
        )
        log_extra = {"graph_id": run.graph_id, "run_id": run_id, "task_key": task_key}

        try:
            handle = self._backend.submit(request)
        except BackendUnavailable as e:
            attempts = ti.dispatch_attempts + 1
            self._store.set_task_state(run_id, task_key, TaskState.SCHEDULED, now, dispatch_attempts=attempts)
            logger.warning(
                f"Backend refused {task_key} in run {run_id} "
                f"({attempts}/{self._max_dispatch_attempts}): {e}",
                extra={**log_extra, "event": "dispatch_refused"},
            )
            if attempts >= self._max_dispatch_attempts:
                raise DispatchFailure(run_id, task_key, attempts, e) from e
            return None

        self._store.update_task(run_id, task_key, external_id=handle.handle_id, dispatch_attempts=0)
        self._in_flight[request.key] = handle
        logger.info(f"Dispatched {task_key} (try {request.try_number}) in run {run_id}",
                    extra={**log_extra, "event": "task_dispatched"})
        return handle

    def collect(self, now: Optional[datetime] = None) -> list[TaskOutcome]:
        """
        Poll in-flight attempts and apply every final outcome.

        Returns:
            One TaskOutcome per attempt that left the backend
        """
        now = now or utcnow()
        self._signal_cancellations()

        outcomes: list[TaskOutcome] = []
        deadline = time.monotonic() + self._poll_timeout
        for key, handle in list(self._in_flight.items()):
            remaining = max(deadline - time.monotonic(), 0.0)
            result = self._backend.poll(handle, timeout=remaining)
            if not result.status.is_final:
                if result.status == PollStatus.RUNNING:
                    self._mark_running(handle, now)
                continue
            del self._in_flight[key]
            outcomes.append(self._apply(handle, result, now))
        return outcomes

    def shutdown(self, wait: bool = True) -> None:
        self._backend.shutdown(wait=wait)

    def _signal_cancellations(self) -> None:
        for (run_id, task_key), handle in self._in_flight.items():
            if handle.cancel_signalled:
                continue
            if self._store.get_task_instance(run_id, task_key).cancel_requested:
                self._backend.cancel(handle)
                handle.cancel_signalled = True
                logger.info(f"Cancelling {task_key} in run {run_id}",
                            extra={"run_id": run_id, "task_key": task_key, "event": "task_cancel_signalled"})

    def _mark_running(self, handle: TaskHandle, now: datetime) -> None:
        request = handle.request
        ti = self._store.get_task_instance(request.run_id, request.task_key)
        if ti.state == TaskState.QUEUED:
            self._store.set_task_state(request.run_id, request.task_key, TaskState.RUNNING, now)

    def _apply(self, handle: TaskHandle, result: PollResult, now: datetime) -> TaskOutcome:
        request = handle.request
        run_id, task_key = request.key
        log_extra = {"graph_id": request.graph_id, "run_id": run_id, "task_key": task_key}

        ti = self._store.get_task_instance(run_id, task_key)
        if ti.state == TaskState.QUEUED and result.status.did_run:
            ti = self._store.set_task_state(run_id, task_key, TaskState.RUNNING, now)

        status = result.status
        if ti.cancel_requested and status != PollStatus.SUCCESS:
            status = PollStatus.CANCELLED

        set_state = self._store.set_task_state
        if status == PollStatus.SUCCESS:
            ti = set_state(run_id, task_key, TaskState.SUCCESS, now,
                           attempts=ti.attempts + 1, external_id=None, error=None)
        elif status == PollStatus.SKIPPED:
            ti = set_state(run_id, task_key, TaskState.SKIPPED, now,
                           attempts=ti.attempts + 1, external_id=None, skip_reason=SkipReason.OPERATOR)
        elif status == PollStatus.CANCELLED:
            ti = set_state(run_id, task_key, TaskState.CANCELLED, now, external_id=None)
        elif status == PollStatus.RESCHEDULE:
            delay = result.reschedule_delay or timedelta(0)
            ti = set_state(run_id, task_key, TaskState.SCHEDULED, now,
                           external_id=None, next_eligible_at=now + delay,
                           reschedule_count=ti.reschedule_count + 1)
        else:
            attempts = ti.attempts + 1
            if result.retryable and attempts < ti.max_attempts:
                ti = set_state(run_id, task_key, TaskState.UP_FOR_RETRY, now,
                               attempts=attempts, external_id=None, error=result.error,
                               next_eligible_at=now + request.retry.delay_for(attempts))
            else:
                ti = set_state(run_id, task_key, TaskState.FAILED, now,
                               attempts=attempts, external_id=None, error=result.error)

        message = f"Task {task_key} in run {run_id} -> {ti.state.value}"
        if ti.state in (TaskState.FAILED, TaskState.UP_FOR_RETRY):
            logger.warning(f"{message} (attempt {ti.attempts}/{ti.max_attempts})",
                           extra={**log_extra, "event": "task_finished"})
        else:
            logger.info(message, extra={**log_extra, "event": "task_finished"})

        return TaskOutcome(run_id=run_id, task_key=task_key, status=status, state=ti.state)
