"""
LocalExecutor - runs task attempts on a thread pool.

At most `parallelism` attempts execute at once; further submissions wait
in the pool's queue and report `queued` until a worker picks them up.
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


class LocalExecutor(ExecutorBackend):
    """Executor backend backed by concurrent.futures.ThreadPoolExecutor."""

    name = "local"

    def __init__(self, registry: Optional[OperatorRegistry] = None, parallelism: int = 4):
        if parallelism < 1:
            raise ValueError("parallelism must be >= 1")
        self._registry = registry or OperatorRegistry.create_default()
        self._parallelism = parallelism
        self._pool = ThreadPoolExecutor(max_workers=parallelism, thread_name_prefix="dagrun-worker")
        self._futures: dict[str, Future] = {}
        self._events: dict[str, threading.Event] = {}
        self._closed = False

    @property
    def parallelism(self) -> int:
        return self._parallelism

    def submit(self, request: TaskRequest) -> TaskHandle:
        if self._closed:
            raise BackendUnavailable("Local executor has been shut down")
        handle = TaskHandle(handle_id=generate_ulid(), request=request)
        event = threading.Event()
        try:
            future = self._pool.submit(run_task, request, self._registry, event)
        except RuntimeError as e:
            raise BackendUnavailable(f"Local executor rejected {request.task_key}: {e}") from e
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
        logger.debug("Local executor shut down")
