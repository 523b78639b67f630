"""
SequentialExecutor - runs task attempts one at a time, in submission order.

Attempts execute on a single worker thread so poll() stays bounded by its
timeout; a slow task or a poke-mode sensor reports `running` and the tick
moves on. Used by tests and `dagrun scheduler --executor sequential`.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Optional

from dagrun.errors import BackendUnavailable
from dagrun.executors.base import ExecutorBackend, PollResult, PollStatus, TaskHandle, TaskRequest
from dagrun.executors.runner import run_task
from dagrun.operators.registry import OperatorRegistry
from dagrun.utils import generate_ulid

logger = logging.getLogger(__name__)


class SequentialExecutor(ExecutorBackend):
    """Executor backend that runs one attempt at a time on a single worker."""

    name = "sequential"

    def __init__(self, registry: Optional[OperatorRegistry] = None):
        self._registry = registry or OperatorRegistry.create_default()
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dagrun-sequential")
        self._futures: dict[str, Future] = {}
        self._events: dict[str, threading.Event] = {}
        self._closed = False

    def submit(self, request: TaskRequest) -> TaskHandle:
        if self._closed:
            raise BackendUnavailable("Sequential executor has been shut down")
        handle = TaskHandle(handle_id=generate_ulid(), request=request)
        event = threading.Event()
        try:
            future = self._pool.submit(run_task, request, self._registry, event)
        except RuntimeError as e:
            raise BackendUnavailable(f"Sequential executor rejected {request.task_key}: {e}") from e
        self._futures[handle.handle_id] = future
        self._events[handle.handle_id] = event
        return handle

    def poll(self, handle: TaskHandle, timeout: float = 0.0) -> PollResult:
        future = self._futures[handle.handle_id]
        try:
            result = future.result(timeout=max(timeout, 0.0))
        except FutureTimeout:
            return PollResult(PollStatus.RUNNING if future.running() else PollStatus.QUEUED)
        self._futures.pop(handle.handle_id, None)
        self._events.pop(handle.handle_id, None)
        return result

    def cancel(self, handle: TaskHandle) -> None:
        event = self._events.get(handle.handle_id)
        if event is not None:
            event.set()

    def shutdown(self, wait: bool = True) -> None:
        self._closed = True
        for event in self._events.values():
            event.set()
        self._pool.shutdown(wait=wait, cancel_futures=True)
        logger.debug("Sequential executor shut down")
