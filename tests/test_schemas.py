"""Tests for dagrun schemas: definitions, instances and the state machine."""

from datetime import datetime, timedelta, timezone

import pytest

from dagrun.schemas import (
    TASK_TRANSITIONS,
    GraphDefinition,
    RetryPolicy,
    RunInstance,
    RunState,
    SkipReason,
    TaskDefinition,
    TaskInstance,
    TaskState,
    can_transition,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_max_attempts(self):
        assert RetryPolicy().max_attempts == 1
        assert RetryPolicy(retries=3).max_attempts == 4

    def test_fixed_delay(self):
        policy = RetryPolicy(retries=3, retry_delay=30)
        assert policy.delay_for(1) == timedelta(seconds=30)
        assert policy.delay_for(3) == timedelta(seconds=30)

    def test_exponential_backoff_capped(self):
        policy = RetryPolicy(retries=5, retry_delay=10, retry_exponential_backoff=True, max_retry_delay=60)
        assert [policy.delay_for(n).total_seconds() for n in (1, 2, 3, 4)] == [10, 20, 40, 60]

    def test_negative_values_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(retries=-1)
        with pytest.raises(ValueError):
            RetryPolicy(retry_delay=-5)

    def test_from_dict_nested_retry(self):
        task = TaskDefinition.from_dict({"key": "a", "retry": {"retries": 2, "retry_delay": 5}})
        assert task.retry == RetryPolicy(retries=2, retry_delay=5.0)

    @pytest.mark.parametrize("retry", [3, "3", ["retries", 3]])
    def test_non_mapping_retry_rejected(self, retry):
        with pytest.raises(ValueError, match="'retry' must be a mapping"):
            TaskDefinition.from_dict({"key": "a", "retry": retry})

    def test_from_dict_converts_values(self):
        policy = RetryPolicy.from_dict({
            "retries": "2",
            "max_retry_delay": "90",
            "retry_exponential_backoff": "true",
        })
        assert policy == RetryPolicy(retries=2, retry_exponential_backoff=True, max_retry_delay=90.0)

    def test_from_dict_bad_max_retry_delay(self):
        with pytest.raises(ValueError):
            RetryPolicy.from_dict({"max_retry_delay": "abc"})
        with pytest.raises(ValueError):
            RetryPolicy.from_dict({"max_retry_delay": -1})


class TestTaskDefinition:
    """Tests for TaskDefinition."""

    def test_defaults(self):
        task = TaskDefinition(key="a")
        assert task.operator == "noop"
        assert task.upstream == frozenset()
        assert task.mode == "poke"

    def test_upstream_coerced_to_frozenset(self):
        task = TaskDefinition(key="b", upstream=["a", "a"])
        assert task.upstream == frozenset({"a"})

    def test_empty_key_rejected(self):
        with pytest.raises(ValueError):
            TaskDefinition(key="")

    def test_to_dict_round_trip(self):
        task = TaskDefinition(
            key="wait",
            operator="file_sensor",
            params={"path": "/tmp/x"},
            upstream={"a"},
            retry=RetryPolicy(retries=1, retry_delay=5),
            mode="reschedule",
        )
        restored = TaskDefinition.from_dict(task.to_dict())
        assert restored == task
        assert restored.params == {"path": "/tmp/x"}


class TestGraphDefinition:
    """Tests for GraphDefinition serialization."""

    def test_round_trip(self):
        graph = GraphDefinition.from_dict({
            "graph_id": "etl",
            "schedule": "@daily",
            "catchup": True,
            "start_date": "2024-01-01",
            "description": "Nightly ETL",
            "owner": "data-team",
            "tasks": [{"key": "a"}, {"key": "b", "upstream": ["a"]}],
        })
        assert graph.start_date == T0
        assert graph.extras == {"owner": "data-team"}
        restored = GraphDefinition.from_dict(graph.to_dict())
        assert restored == graph
        assert restored.extras == {"owner": "data-team"}


class TestStateMachine:
    """Tests for the task instance state machine."""

    @pytest.mark.parametrize("from_state,to_state", [
        (TaskState.NONE, TaskState.SCHEDULED),
        (TaskState.SCHEDULED, TaskState.QUEUED),
        (TaskState.QUEUED, TaskState.RUNNING),
        (TaskState.RUNNING, TaskState.SUCCESS),
        (TaskState.RUNNING, TaskState.FAILED),
        (TaskState.RUNNING, TaskState.UP_FOR_RETRY),
        (TaskState.RUNNING, TaskState.SKIPPED),
        (TaskState.UP_FOR_RETRY, TaskState.SCHEDULED),
        (TaskState.RUNNING, TaskState.SCHEDULED),
        (TaskState.QUEUED, TaskState.SCHEDULED),
        (TaskState.NONE, TaskState.SKIPPED),
        (TaskState.RUNNING, TaskState.CANCELLED),
        (TaskState.FAILED, TaskState.NONE),
        (TaskState.SUCCESS, TaskState.NONE),
    ])
    def test_allowed(self, from_state, to_state):
        assert can_transition(from_state, to_state)

    @pytest.mark.parametrize("from_state,to_state", [
        (TaskState.NONE, TaskState.RUNNING),
        (TaskState.NONE, TaskState.SUCCESS),
        (TaskState.SCHEDULED, TaskState.RUNNING),
        (TaskState.QUEUED, TaskState.SUCCESS),
        (TaskState.SUCCESS, TaskState.FAILED),
        (TaskState.FAILED, TaskState.UP_FOR_RETRY),
        (TaskState.CANCELLED, TaskState.SCHEDULED),
        (TaskState.RUNNING, TaskState.NONE),
        (TaskState.QUEUED, TaskState.NONE),
    ])
    def test_forbidden(self, from_state, to_state):
        assert not can_transition(from_state, to_state)

    def test_terminal_states_only_clear(self):
        for state in TaskState:
            if state.is_terminal:
                assert TASK_TRANSITIONS[state] == frozenset({TaskState.NONE})

    def test_every_state_has_transitions(self):
        assert set(TASK_TRANSITIONS) == set(TaskState)

    def test_in_flight(self):
        assert TaskState.QUEUED.is_in_flight
        assert TaskState.RUNNING.is_in_flight
        assert not TaskState.SCHEDULED.is_in_flight

    def test_run_state_terminal(self):
        assert not RunState.PENDING.is_terminal
        assert not RunState.RUNNING.is_terminal
        assert RunState.PARTIALLY_FAILED.is_terminal


class TestTaskInstance:
    """Tests for TaskInstance."""

    def test_attempt_accounting(self):
        ti = TaskInstance(run_id="r", task_key="a", attempts=1, max_attempts=3)
        assert ti.attempts_remaining == 2
        assert ti.try_number == 2

    def test_reset(self):
        ti = TaskInstance(
            run_id="r", task_key="a", state=TaskState.FAILED, attempts=3, max_attempts=3,
            error={"type": "ValueError", "message": "boom"}, skip_reason=SkipReason.OPERATOR,
            next_eligible_at=T0, cancel_requested=True,
        )
        ti.reset()
        assert ti.state == TaskState.NONE
        assert ti.attempts == 0
        assert ti.max_attempts == 3
        assert ti.error is None
        assert ti.skip_reason is None
        assert ti.next_eligible_at is None
        assert not ti.cancel_requested

    def test_duration(self):
        ti = TaskInstance(run_id="r", task_key="a", started_at=T0, ended_at=T0 + timedelta(seconds=2))
        assert ti.duration_ms == 2000

    def test_round_trip(self):
        ti = TaskInstance(
            run_id="r", task_key="b", upstream_keys=frozenset({"a"}), state=TaskState.SKIPPED,
            attempts=1, max_attempts=2, started_at=T0, skip_reason=SkipReason.UPSTREAM_FAILED,
            error={"type": "X", "message": "y"},
        )
        assert TaskInstance.from_dict(ti.to_dict()) == ti


class TestRunInstance:
    """Tests for RunInstance."""

    def test_template_vars(self):
        run = RunInstance(run_id="r1", graph_id="g", logical_slot=datetime(2024, 3, 5, 6, tzinfo=timezone.utc))
        values = run.template_vars()
        assert values["ds"] == "2024-03-05"
        assert values["ds_nodash"] == "20240305"
        assert values["ts"] == "2024-03-05T06:00:00+00:00"
        assert values["run_id"] == "r1"

    def test_round_trip(self):
        run = RunInstance(
            run_id="r1", graph_id="g", logical_slot=T0, run_type="backfill",
            state=RunState.RUNNING, created_at=T0, started_at=T0,
            cancel_requested_at=T0,
        )
        run.task_instances["a"] = TaskInstance(run_id="r1", task_key="a", state=TaskState.RUNNING)
        restored = RunInstance.from_dict(run.to_dict())
        assert restored == run
        assert restored.cancel_requested
        assert restored.task_states() == {"a": TaskState.RUNNING}
