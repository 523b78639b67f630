"""
PythonOperator - run an in-process Python callable.

The callable is given either directly (when graphs are built in code) or as
a "module:attribute" path (when graphs are loaded from YAML/JSON). It is
invoked with the task's `op_kwargs`, plus `context` when its signature
accepts a parameter of that name.
"""

import importlib
import inspect
from typing import Any, Callable

from dagrun.errors import PermanentError
from dagrun.operators.base import Operator, TaskContext


def resolve_callable(target: Any) -> Callable[..., Any]:
    """
    Resolve a callable from an object or a "module:attribute" path.

    Raises:
        PermanentError: If the path is malformed, cannot be imported,
            or does not name a callable
    """
    if callable(target):
        return target
    if not isinstance(target, str) or ":" not in target:
        raise PermanentError(f"Callable must be 'module:attribute', got: {target!r}")

    module_path, attr_path = target.rsplit(":", 1)
    try:
        obj: Any = importlib.import_module(module_path)
    except ImportError as e:
        raise PermanentError(f"Cannot import module '{module_path}': {e}") from e

    for part in attr_path.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError as e:
            raise PermanentError(f"'{attr_path}' not found in '{module_path}'") from e

    if not callable(obj):
        raise PermanentError(f"{target} is not callable")
    return obj


def call_with_context(func: Callable[..., Any], kwargs: dict[str, Any], context: TaskContext) -> Any:
    """Invoke func(**kwargs), passing `context` if the signature accepts it."""
    try:
        signature = inspect.signature(func)
    except (TypeError, ValueError):
        return func(**kwargs)

    accepts_context = "context" in signature.parameters or any(
        p.kind == inspect.Parameter.VAR_KEYWORD for p in signature.parameters.values()
    )
    if accepts_context:
        return func(context=context, **kwargs)
    return func(**kwargs)


class PythonOperator(Operator):
    """
    Operator that calls a Python function.

    Params:
        callable: The function, or its "module:attribute" path
        op_kwargs: Keyword arguments passed to the function
    """

    def execute(self, context: TaskContext) -> Any:
        if "callable" not in self.params:
            raise PermanentError(f"Task '{self.task_key}': python operator needs a 'callable' param")
        func = resolve_callable(self.params["callable"])
        kwargs = dict(self.params.get("op_kwargs") or {})
        return call_with_context(func, kwargs, context)
