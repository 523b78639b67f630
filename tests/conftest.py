"""Shared fixtures for dagrun tests."""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from dagrun import graph as graph_model
from dagrun.dispatch import Dispatcher
from dagrun.errors import BackendUnavailable
from dagrun.executors import ExecutorBackend, PollResult, PollStatus, SequentialExecutor, TaskHandle
from dagrun.registry import StaticGraphSource
from dagrun.run_store import InMemoryRunStore
from dagrun.scheduler import SchedulerLoop

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock for scheduler tests."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class ManualBackend(ExecutorBackend):
    """
    Executor backend whose attempts finish only when a test says so.

    poll() reports `running` until finish() stores a result for the task.
    """

    name = "manual"

    def __init__(self):
        self.submitted: dict[str, TaskHandle] = {}
        self.results: dict[str, PollResult] = {}
        self.cancelled: set[str] = set()
        self.refuse = 0

    def submit(self, request):
        if self.refuse > 0:
            self.refuse -= 1
            raise BackendUnavailable("backend busy")
        handle = TaskHandle(handle_id=f"h-{request.task_key}-{len(self.submitted)}", request=request)
        self.submitted[request.task_key] = handle
        return handle

    def poll(self, handle, timeout=0.0):
        return self.results.pop(handle.request.task_key, PollResult(PollStatus.RUNNING))

    def cancel(self, handle):
        self.cancelled.add(handle.request.task_key)

    def finish(self, task_key: str, status: PollStatus = PollStatus.SUCCESS, **kwargs) -> None:
        self.results[task_key] = PollResult(status, **kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryRunStore:
    return InMemoryRunStore()


@pytest.fixture
def manual_backend() -> ManualBackend:
    return ManualBackend()


@pytest.fixture
def make_graph():
    """Factory for validated graphs: make_graph("g", {"a": [], "b": ["a"]}, schedule=3600)."""

    def _make(
        graph_id: str = "g",
        upstream: Optional[dict[str, list[str]]] = None,
        tasks: Optional[list[dict[str, Any]]] = None,
        **fields: Any,
    ):
        if tasks is None:
            tasks = [{"key": key, "upstream": ups} for key, ups in (upstream or {"a": []}).items()]
        definition = {"graph_id": graph_id, "tasks": tasks, **fields}
        if definition.get("schedule") not in (None, "manual") and "start_date" not in definition:
            definition["start_date"] = T0.isoformat()
        return graph_model.load(definition)

    return _make


@pytest.fixture
def make_loop(store, clock):
    """Factory for a SchedulerLoop over a StaticGraphSource and the in-memory store."""

    def _make(graphs=(), backend=None, parallelism=4, max_dispatch_attempts=3):
        source = StaticGraphSource(graphs)
        dispatcher = Dispatcher(
            store,
            backend or SequentialExecutor(),
            parallelism=parallelism,
            max_dispatch_attempts=max_dispatch_attempts,
            poll_timeout=5.0,
        )
        return SchedulerLoop(source, store, dispatcher, tick_interval=0.0, clock=clock)

    return _make
