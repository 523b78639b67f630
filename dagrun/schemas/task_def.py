"""
TaskDefinition schema - one node of a graph definition.

A TaskDefinition is immutable once its graph is loaded. The operator name
and params are opaque to the scheduling core; they are only interpreted by
the worker that executes the task.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Literal, Optional

from dagrun.utils import parse_bool

SensorMode = Literal["poke", "reschedule"]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy for a task.

    Attributes:
        retries: Number of retries after the first attempt (max_attempts = retries + 1)
        retry_delay: Seconds to wait before a retry becomes eligible
        retry_exponential_backoff: Double the delay after each failed attempt
        max_retry_delay: Upper bound for the computed delay, in seconds
    """
    retries: int = 0
    retry_delay: float = 0.0
    retry_exponential_backoff: bool = False
    max_retry_delay: Optional[float] = None

    def __post_init__(self):
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must be >= 0")
        if self.max_retry_delay is not None and self.max_retry_delay < 0:
            raise ValueError("max_retry_delay must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.retries + 1

    def delay_for(self, failed_attempts: int) -> timedelta:
        """Delay before the next attempt after `failed_attempts` failures."""
        delay = self.retry_delay
        if self.retry_exponential_backoff and failed_attempts > 1:
            delay = delay * (2 ** (failed_attempts - 1))
        if self.max_retry_delay is not None:
            delay = min(delay, self.max_retry_delay)
        return timedelta(seconds=delay)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "retries": self.retries,
            "retry_delay": self.retry_delay,
        }
        if self.retry_exponential_backoff:
            result["retry_exponential_backoff"] = True
        if self.max_retry_delay is not None:
            result["max_retry_delay"] = self.max_retry_delay
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any], default: Optional["RetryPolicy"] = None) -> "RetryPolicy":
        """Build a policy from a mapping, falling back to `default` per field."""
        if not isinstance(data, dict):
            raise ValueError(f"Retry policy must be a mapping, got {type(data).__name__}")
        base = default or cls()
        max_retry_delay = data.get("max_retry_delay", base.max_retry_delay)
        return cls(
            retries=int(data.get("retries", base.retries)),
            retry_delay=float(data.get("retry_delay", base.retry_delay)),
            retry_exponential_backoff=parse_bool(
                data.get("retry_exponential_backoff", base.retry_exponential_backoff),
                "retry_exponential_backoff",
            ),
            max_retry_delay=float(max_retry_delay) if max_retry_delay is not None else None,
        )


@dataclass(frozen=True)
class TaskDefinition:
    """
    A task within a graph definition.

    Attributes:
        key: Unique identifier of the task within its graph
        operator: Name of the operator that executes the task
        params: Operator parameters (opaque to the scheduler)
        upstream: Keys of tasks that must finish first
        retry: Retry policy for failed attempts
        mode: Sensor mode; "reschedule" releases the worker slot between pokes
    """
    key: str
    operator: str = "noop"
    params: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    upstream: frozenset[str] = field(default_factory=frozenset)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    mode: SensorMode = "poke"

    def __post_init__(self):
        if not self.key:
            raise ValueError("Task key must be a non-empty string")
        if self.mode not in ("poke", "reschedule"):
            raise ValueError(f"Task '{self.key}': unknown mode '{self.mode}'")
        # Accept any iterable of keys for convenience
        if not isinstance(self.upstream, frozenset):
            object.__setattr__(self, "upstream", frozenset(self.upstream))

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "key": self.key,
            "operator": self.operator,
            "upstream": sorted(self.upstream),
            **self.retry.to_dict(),
        }
        if self.params:
            result["params"] = self.params
        if self.mode != "poke":
            result["mode"] = self.mode
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_retry: Optional[RetryPolicy] = None) -> "TaskDefinition":
        """
        Deserialize from dictionary.

        Retry fields may be given at the top level of the task mapping or
        nested under a `retry` key.
        """
        if "key" not in data:
            raise ValueError(f"Task is missing 'key': {data!r}")
        if "retry" in data:
            retry_data = data["retry"] if data["retry"] is not None else {}
            if not isinstance(retry_data, dict):
                raise ValueError(
                    f"Task '{data['key']}': 'retry' must be a mapping, got {type(retry_data).__name__}"
                )
        else:
            retry_data = {
                k: v for k, v in data.items()
                if k in ("retries", "retry_delay", "retry_exponential_backoff", "max_retry_delay")
            }
        upstream = data.get("upstream") or []
        if isinstance(upstream, str):
            upstream = [upstream]
        return cls(
            key=str(data["key"]),
            operator=data.get("operator", "noop"),
            params=dict(data.get("params") or {}),
            upstream=frozenset(str(u) for u in upstream),
            retry=RetryPolicy.from_dict(retry_data, default=default_retry),
            mode=data.get("mode", "poke"),
        )
