"""Tests for the run state store.

Tests cover:
- Idempotent run creation
- The task state machine (illegal transitions raise)
- Aggregate run state recomputation
- Cancel, clear and reconcile
- File-based persistence
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from dagrun.errors import InvalidTransition, RunNotFoundError, StoreCorruption, TaskNotFoundError
from dagrun.run_store import FileRunStore, InMemoryRunStore
from dagrun.schemas import RunState, SkipReason, TaskState

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def start(store, run_id, key, now=T0):
    """Drive a task instance from none to running."""
    for state in (TaskState.SCHEDULED, TaskState.QUEUED, TaskState.RUNNING):
        store.set_task_state(run_id, key, state, now)


def finish(store, run_id, key, state=TaskState.SUCCESS, now=T0):
    start(store, run_id, key, now)
    ti = store.get_task_instance(run_id, key)
    return store.set_task_state(run_id, key, state, now, attempts=ti.attempts + 1)


@pytest.fixture
def chain(make_graph):
    return make_graph(upstream={"a": [], "b": ["a"], "c": []})


class TestCreateRun:
    """Tests for RunStore.create_run()."""

    def test_materializes_task_instances(self, store, make_graph):
        graph = make_graph(tasks=[{"key": "a", "retries": 2}, {"key": "b", "upstream": ["a"]}])
        run = store.create_run(graph, T0, now=T0)

        assert run.state == RunState.PENDING
        assert run.created_at == T0
        assert set(run.task_instances) == {"a", "b"}
        assert run.task_instances["a"].max_attempts == 3
        assert run.task_instances["b"].upstream_keys == frozenset({"a"})
        assert all(ti.state == TaskState.NONE for ti in run.task_instances.values())

    def test_idempotent_per_slot(self, store, chain):
        first = store.create_run(chain, T0)
        second = store.create_run(chain, T0, run_type="manual")

        assert second.run_id == first.run_id
        assert second.run_type == "scheduled"
        assert len(store.list_runs()) == 1

    def test_naive_slot_is_utc(self, store, chain):
        run = store.create_run(chain, datetime(2024, 1, 1))
        assert run.logical_slot == T0
        assert store.find_run("g", T0).run_id == run.run_id

    def test_distinct_slots(self, store, chain):
        store.create_run(chain, T0)
        store.create_run(chain, T0 + timedelta(hours=1))
        assert len(store.list_runs("g")) == 2

    def test_returned_run_is_a_copy(self, store, chain):
        run = store.create_run(chain, T0)
        run.task_instances["a"].state = TaskState.FAILED
        assert store.get_task_instance(run.run_id, "a").state == TaskState.NONE


class TestQueries:
    """Tests for run and task lookups."""

    def test_unknown_run(self, store):
        with pytest.raises(RunNotFoundError):
            store.get_run("nope")

    def test_unknown_task(self, store, chain):
        run = store.create_run(chain, T0)
        with pytest.raises(TaskNotFoundError):
            store.get_task_instance(run.run_id, "ghost")

    def test_list_runs_ordered_and_filtered(self, store, chain, make_graph):
        other = make_graph("other")
        late = store.create_run(chain, T0 + timedelta(days=1))
        early = store.create_run(chain, T0)
        store.create_run(other, T0)

        assert [r.run_id for r in store.list_runs("g")] == [early.run_id, late.run_id]
        assert len(store.list_runs(states=[RunState.PENDING])) == 3
        assert store.list_runs(states=[RunState.SUCCEEDED]) == []

    def test_latest_slot_counts_scheduled_runs_only(self, store, chain):
        store.create_run(chain, T0)
        store.create_run(chain, T0 + timedelta(hours=1))
        store.create_run(chain, T0 + timedelta(days=5), run_type="manual")

        assert store.latest_slot("g") == T0 + timedelta(hours=1)
        assert store.latest_slot("g", run_types=("manual",)) == T0 + timedelta(days=5)
        assert store.latest_slot("missing") is None

    def test_list_runnable(self, store, chain):
        run = store.create_run(chain, T0)
        assert store.list_runnable(run.run_id, chain, T0) == {"a", "c"}

        finish(store, run.run_id, "a")
        assert store.list_runnable(run.run_id, chain, T0) == {"b", "c"}

    def test_list_task_instances_sorted(self, store, chain):
        run = store.create_run(chain, T0)
        assert [ti.task_key for ti in store.list_task_instances(run.run_id)] == ["a", "b", "c"]


class TestStateMachine:
    """Tests for RunStore.set_task_state()."""

    def test_happy_path_timestamps(self, store, chain):
        run = store.create_run(chain, T0)
        start(store, run.run_id, "a", now=T0)
        ti = store.set_task_state(run.run_id, "a", TaskState.SUCCESS, T0 + timedelta(seconds=5), attempts=1)

        assert ti.state == TaskState.SUCCESS
        assert ti.started_at == T0
        assert ti.first_started_at == T0
        assert ti.ended_at == T0 + timedelta(seconds=5)
        assert store.get_run(run.run_id).started_at == T0

    def test_illegal_transition_raises(self, store, chain):
        run = store.create_run(chain, T0)
        with pytest.raises(InvalidTransition) as exc_info:
            store.set_task_state(run.run_id, "a", TaskState.RUNNING, T0)
        assert exc_info.value.from_state == "none"
        assert exc_info.value.to_state == "running"

    def test_terminal_is_final(self, store, chain):
        run = store.create_run(chain, T0)
        finish(store, run.run_id, "a")
        with pytest.raises(InvalidTransition):
            store.set_task_state(run.run_id, "a", TaskState.FAILED, T0)

    def test_running_requires_finished_upstream(self, store, chain):
        run = store.create_run(chain, T0)
        store.set_task_state(run.run_id, "b", TaskState.SCHEDULED, T0)
        store.set_task_state(run.run_id, "b", TaskState.QUEUED, T0)

        with pytest.raises(InvalidTransition, match="upstream not finished"):
            store.set_task_state(run.run_id, "b", TaskState.RUNNING, T0)
        assert store.get_task_instance(run.run_id, "b").state == TaskState.QUEUED

    def test_skipped_upstream_satisfies_dependency(self, store, chain):
        run = store.create_run(chain, T0)
        finish(store, run.run_id, "a", TaskState.SKIPPED)
        start(store, run.run_id, "b")
        assert store.get_task_instance(run.run_id, "b").state == TaskState.RUNNING

    def test_retry_needs_remaining_attempts(self, store, chain):
        run = store.create_run(chain, T0)
        start(store, run.run_id, "a")
        with pytest.raises(InvalidTransition, match="no attempts remaining"):
            store.set_task_state(run.run_id, "a", TaskState.UP_FOR_RETRY, T0, attempts=1)
        # A failed transaction writes nothing
        assert store.get_task_instance(run.run_id, "a").attempts == 0

    def test_protected_fields(self, store, chain):
        run = store.create_run(chain, T0)
        with pytest.raises(TypeError):
            store.set_task_state(run.run_id, "a", TaskState.SCHEDULED, T0, upstream_keys=frozenset())
        with pytest.raises(TypeError):
            store.set_task_state(run.run_id, "a", TaskState.SCHEDULED, T0, bogus=1)

    def test_update_task_keeps_state(self, store, chain):
        run = store.create_run(chain, T0)
        ti = store.update_task(run.run_id, "a", external_id="h-1", dispatch_attempts=2)
        assert ti.state == TaskState.NONE
        assert store.get_task_instance(run.run_id, "a").external_id == "h-1"
        with pytest.raises(TypeError):
            store.update_task(run.run_id, "a", state=TaskState.SUCCESS)


class TestRunState:
    """Aggregate run state is recomputed on every write."""

    def test_pending_then_running(self, store, chain):
        run = store.create_run(chain, T0)
        assert run.state == RunState.PENDING
        store.set_task_state(run.run_id, "a", TaskState.SCHEDULED, T0)
        assert store.get_run(run.run_id).state == RunState.RUNNING

    def test_succeeded(self, store, chain):
        run = store.create_run(chain, T0)
        for key in ("a", "b", "c"):
            finish(store, run.run_id, key, now=T0 + timedelta(minutes=1))
        run = store.get_run(run.run_id)
        assert run.state == RunState.SUCCEEDED
        assert run.completed_at == T0 + timedelta(minutes=1)

    def test_partially_failed(self, store, chain):
        run = store.create_run(chain, T0)
        finish(store, run.run_id, "a", TaskState.FAILED)
        store.skip_tasks(run.run_id, ["b"], now=T0)
        finish(store, run.run_id, "c")
        assert store.get_run(run.run_id).state == RunState.PARTIALLY_FAILED

    def test_failed(self, store, chain):
        run = store.create_run(chain, T0)
        finish(store, run.run_id, "a", TaskState.FAILED)
        store.skip_tasks(run.run_id, ["b"], now=T0)
        finish(store, run.run_id, "c", TaskState.FAILED)
        assert store.get_run(run.run_id).state == RunState.FAILED

    def test_all_skipped_is_succeeded(self, store, chain):
        run = store.create_run(chain, T0)
        store.skip_tasks(run.run_id, ["a", "b", "c"], SkipReason.OPERATOR, now=T0)
        assert store.get_run(run.run_id).state == RunState.SUCCEEDED


class TestSkipTasks:
    """Tests for RunStore.skip_tasks()."""

    def test_skip_records_reason(self, store, chain):
        run = store.create_run(chain, T0)
        assert store.skip_tasks(run.run_id, ["b"], now=T0) == ["b"]
        ti = store.get_task_instance(run.run_id, "b")
        assert ti.state == TaskState.SKIPPED
        assert ti.skip_reason == SkipReason.UPSTREAM_FAILED

    def test_already_skipped_is_ignored(self, store, chain):
        run = store.create_run(chain, T0)
        store.skip_tasks(run.run_id, ["b"], now=T0)
        assert store.skip_tasks(run.run_id, ["b"], now=T0) == []


class TestCancelRun:
    """Tests for RunStore.cancel_run()."""

    def test_cancel_idle_run(self, store, chain):
        run = store.create_run(chain, T0)
        run = store.cancel_run(run.run_id, now=T0)

        assert run.state == RunState.CANCELLED
        assert run.cancel_requested_at == T0
        assert run.cancel_completed_at == T0
        assert set(run.task_states().values()) == {TaskState.CANCELLED}

    def test_in_flight_tasks_are_flagged(self, store, chain):
        run = store.create_run(chain, T0)
        finish(store, run.run_id, "c")
        start(store, run.run_id, "a")

        run = store.cancel_run(run.run_id, now=T0)
        assert run.state == RunState.RUNNING
        assert run.cancel_completed_at is None
        assert run.task_instances["a"].state == TaskState.RUNNING
        assert run.task_instances["a"].cancel_requested
        assert run.task_instances["b"].state == TaskState.CANCELLED
        assert run.task_instances["c"].state == TaskState.SUCCESS

        later = T0 + timedelta(seconds=30)
        store.set_task_state(run.run_id, "a", TaskState.CANCELLED, later)
        run = store.get_run(run.run_id)
        assert run.state == RunState.CANCELLED
        assert run.cancel_completed_at == later

    def test_terminal_run_untouched(self, store, chain):
        run = store.create_run(chain, T0)
        for key in ("a", "b", "c"):
            finish(store, run.run_id, key)
        run = store.cancel_run(run.run_id, now=T0)
        assert run.state == RunState.SUCCEEDED
        assert run.cancel_requested_at is None


class TestClearTask:
    """Tests for RunStore.clear_task()."""

    def test_clear_resets_upstream_failed_downstream(self, store, chain):
        run = store.create_run(chain, T0)
        finish(store, run.run_id, "a", TaskState.FAILED)
        store.skip_tasks(run.run_id, ["b"], now=T0)
        finish(store, run.run_id, "c")
        assert store.get_run(run.run_id).state == RunState.PARTIALLY_FAILED

        assert store.clear_task(run.run_id, "a", now=T0) == ["a", "b"]

        run = store.get_run(run.run_id)
        assert run.state == RunState.RUNNING
        assert run.completed_at is None
        assert run.task_instances["a"].state == TaskState.NONE
        assert run.task_instances["a"].attempts == 0
        assert run.task_instances["b"].skip_reason is None
        assert run.task_instances["c"].state == TaskState.SUCCESS

    def test_operator_skips_are_kept(self, store, make_graph):
        graph = make_graph(upstream={"a": [], "b": ["a"]})
        run = store.create_run(graph, T0)
        finish(store, run.run_id, "a")
        store.skip_tasks(run.run_id, ["b"], SkipReason.OPERATOR, now=T0)

        assert store.clear_task(run.run_id, "a", now=T0) == ["a"]
        assert store.get_task_instance(run.run_id, "b").state == TaskState.SKIPPED

    def test_clear_reopens_cancelled_run(self, store, chain):
        run = store.create_run(chain, T0)
        store.cancel_run(run.run_id, now=T0)

        store.clear_task(run.run_id, "a", now=T0)
        run = store.get_run(run.run_id)
        assert run.is_active
        assert run.cancel_requested_at is None

    def test_in_flight_task_cannot_be_cleared(self, store, chain):
        run = store.create_run(chain, T0)
        start(store, run.run_id, "a")
        with pytest.raises(InvalidTransition):
            store.clear_task(run.run_id, "a", now=T0)

    def test_refused_while_downstream_in_flight(self, store, chain):
        run = store.create_run(chain, T0)
        finish(store, run.run_id, "a")
        start(store, run.run_id, "b")
        with pytest.raises(InvalidTransition, match="downstream tasks are in flight"):
            store.clear_task(run.run_id, "a", now=T0)
        assert store.get_task_instance(run.run_id, "a").state == TaskState.SUCCESS


class TestReconcileRun:
    """Tests for RunStore.reconcile_run()."""

    def test_added_and_removed_tasks(self, store, make_graph):
        v1 = make_graph(upstream={"a": [], "b": ["a"]})
        v2 = make_graph(upstream={"a": [], "c": ["a"]})
        run = store.create_run(v1, T0)

        run = store.reconcile_run(run.run_id, v2, now=T0)
        assert run.task_instances["c"].state == TaskState.NONE
        assert run.task_instances["c"].upstream_keys == frozenset({"a"})
        assert run.task_instances["b"].state == TaskState.SKIPPED
        assert run.task_instances["b"].skip_reason == SkipReason.REMOVED

    def test_unstarted_instances_follow_new_upstream(self, store, make_graph):
        v1 = make_graph(upstream={"a": [], "b": []})
        v2 = make_graph(upstream={"a": [], "b": ["a"]})
        run = store.create_run(v1, T0)

        run = store.reconcile_run(run.run_id, v2, now=T0)
        assert run.task_instances["b"].upstream_keys == frozenset({"a"})

    def test_in_flight_removed_task_left_alone(self, store, make_graph):
        v1 = make_graph(upstream={"a": [], "b": []})
        v2 = make_graph(upstream={"a": []})
        run = store.create_run(v1, T0)
        start(store, run.run_id, "b")

        run = store.reconcile_run(run.run_id, v2, now=T0)
        assert run.task_instances["b"].state == TaskState.RUNNING


class TestInMemoryRunStore:
    """Tests specific to InMemoryRunStore."""

    def test_clear(self, chain):
        store = InMemoryRunStore()
        store.create_run(chain, T0)
        store.clear()
        assert store.list_runs() == []
        assert store.find_run("g", T0) is None


class TestFileRunStore:
    """Tests for FileRunStore persistence."""

    def test_run_file_layout(self, tmp_path, chain):
        store = FileRunStore(tmp_path)
        run = store.create_run(chain, T0)

        path = tmp_path / "runs" / "g" / f"{run.run_id}.json"
        assert path.exists()
        assert json.loads(path.read_text())["graph_id"] == "g"
        assert not list((tmp_path / "runs" / "g").glob(".tmp-*"))

    def test_state_survives_reopen(self, tmp_path, chain):
        store = FileRunStore(tmp_path)
        run = store.create_run(chain, T0, now=T0)
        finish(store, run.run_id, "a", TaskState.FAILED)

        reopened = FileRunStore(tmp_path)
        assert reopened.get_run(run.run_id) == store.get_run(run.run_id)
        assert reopened.find_run("g", T0).run_id == run.run_id
        # The index is rebuilt, so creation stays idempotent
        assert reopened.create_run(chain, T0).run_id == run.run_id

    def test_corrupt_file(self, tmp_path):
        graph_dir = tmp_path / "runs" / "g"
        graph_dir.mkdir(parents=True)
        (graph_dir / "01BROKEN.json").write_text("{not json")

        with pytest.raises(StoreCorruption, match="01BROKEN"):
            FileRunStore(tmp_path)
