"""
Sensors - operators that wait for a condition.

A sensor calls poke() until it returns True. Between pokes:
- mode "poke" keeps its worker slot and sleeps for poke_interval
- mode "reschedule" raises RescheduleRequested, releasing the slot; the
  task instance returns to `scheduled` and is dispatched again once
  poke_interval has passed

The timeout is measured from the first attempt's start, across
reschedules, and fails the task without retries.
"""

import glob
import time
from abc import abstractmethod
from datetime import timedelta
from typing import Any

from dagrun.errors import Cancelled, PermanentError, RescheduleRequested
from dagrun.operators.base import Operator, TaskContext
from dagrun.operators.python import call_with_context, resolve_callable

DEFAULT_POKE_INTERVAL = 60.0
DEFAULT_TIMEOUT = 7 * 24 * 60 * 60.0


class BaseSensor(Operator):
    """
    Abstract base class for sensors.

    Params:
        poke_interval: Seconds between pokes (default 60)
        timeout: Seconds before the sensor fails (default 7 days)
    """

    @property
    def poke_interval(self) -> float:
        return float(self.params.get("poke_interval", DEFAULT_POKE_INTERVAL))

    @property
    def timeout(self) -> float:
        return float(self.params.get("timeout", DEFAULT_TIMEOUT))

    @abstractmethod
    def poke(self, context: TaskContext) -> bool:
        """Return True once the awaited condition holds."""
        pass

    def _elapsed(self, context: TaskContext, started: float) -> float:
        elapsed = time.monotonic() - started
        if context.first_started_at is not None and context.dispatched_at is not None:
            elapsed += (context.dispatched_at - context.first_started_at).total_seconds()
        return elapsed

    def execute(self, context: TaskContext) -> Any:
        started = time.monotonic()
        while True:
            context.raise_if_cancelled()
            if self.poke(context):
                return True

            if self._elapsed(context, started) >= self.timeout:
                raise PermanentError(
                    f"Sensor '{self.task_key}' timed out after {self.timeout:g}s"
                )
            if self.mode == "reschedule":
                raise RescheduleRequested(timedelta(seconds=self.poke_interval))
            if context.cancel_event.wait(self.poke_interval):
                raise Cancelled(f"Sensor '{self.task_key}' was cancelled")


class PythonSensor(BaseSensor):
    """
    Sensor that pokes a Python callable until it returns a truthy value.

    Params:
        callable: The function, or its "module:attribute" path
        op_kwargs: Keyword arguments passed to the function
    """

    def poke(self, context: TaskContext) -> bool:
        if "callable" not in self.params:
            raise PermanentError(f"Sensor '{self.task_key}' needs a 'callable' param")
        func = resolve_callable(self.params["callable"])
        return bool(call_with_context(func, dict(self.params.get("op_kwargs") or {}), context))


class FileSensor(BaseSensor):
    """
    Sensor that waits for a file (or any glob match) to exist.

    Params:
        path: File path or glob pattern; may use {ds}, {ds_nodash}, {ts}
    """

    def poke(self, context: TaskContext) -> bool:
        pattern = self.params.get("path")
        if not pattern:
            raise PermanentError(f"Sensor '{self.task_key}' needs a 'path' param")
        try:
            pattern = str(pattern).format(**context.template_vars)
        except (KeyError, IndexError) as e:
            raise PermanentError(f"Sensor '{self.task_key}': bad path template: {e}") from e
        return bool(glob.glob(pattern))
