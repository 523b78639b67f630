"""
Operator Registry for building operators by name.

The registry maps the `operator` field of a TaskDefinition to an Operator
class. Workers use it to turn a dispatched task request into an operator
instance for one attempt.
"""

from typing import Any, Optional

from dagrun.operators.base import NoOpOperator, Operator


class OperatorRegistry:
    """
    Registry of operator classes by name.

    Usage:
        registry = OperatorRegistry()
        registry.register("extract", ExtractOperator)

        # Build an operator for one attempt
        operator = registry.create("extract", "load_users", params)

        # Or use factory with the built-in operators
        registry = OperatorRegistry.create_default()
    """

    def __init__(self) -> None:
        """Initialize an empty operator registry."""
        self._operators: dict[str, type[Operator]] = {}

    def register(self, name: str, operator_cls: type[Operator]) -> None:
        """
        Register an operator class.

        Args:
            name: Operator name as used in task definitions
            operator_cls: Operator subclass
        """
        if not (isinstance(operator_cls, type) and issubclass(operator_cls, Operator)):
            raise TypeError(f"{operator_cls!r} is not an Operator subclass")
        self._operators[name] = operator_cls

    def get(self, name: str) -> type[Operator]:
        """
        Get the operator class for a name.

        Raises:
            KeyError: If no operator is registered under this name
        """
        if name not in self._operators:
            registered = sorted(self._operators)
            raise KeyError(
                f"No operator registered for name: {name}. "
                f"Registered: {registered}"
            )
        return self._operators[name]

    def has(self, name: str) -> bool:
        return name in self._operators

    def list_operators(self) -> list[str]:
        """List all registered operator names."""
        return sorted(self._operators)

    def create(
        self,
        name: str,
        task_key: str,
        params: Optional[dict[str, Any]] = None,
        mode: str = "poke",
    ) -> Operator:
        """
        Build an operator instance for one attempt.

        Raises:
            KeyError: If no operator is registered under this name
        """
        return self.get(name)(task_key, params, mode)

    @classmethod
    def create_default(cls) -> "OperatorRegistry":
        """
        Create a registry with the built-in operators.

        Returns:
            Registry with noop, python, bash, python_sensor and file_sensor
        """
        from dagrun.operators.bash import BashOperator
        from dagrun.operators.python import PythonOperator
        from dagrun.operators.sensor import FileSensor, PythonSensor

        registry = cls()
        registry.register("noop", NoOpOperator)
        registry.register("python", PythonOperator)
        registry.register("bash", BashOperator)
        registry.register("python_sensor", PythonSensor)
        registry.register("file_sensor", FileSensor)
        return registry
