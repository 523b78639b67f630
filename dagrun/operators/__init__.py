"""
Operators - what a task does when a worker runs it.

Built-in operators:
- noop: succeeds immediately
- python: calls a Python function
- bash: runs a shell command
- python_sensor / file_sensor: wait for a condition (poke or reschedule mode)
"""

from dagrun.operators.base import NoOpOperator, Operator, TaskContext
from dagrun.operators.bash import BashOperator
from dagrun.operators.python import PythonOperator
from dagrun.operators.registry import OperatorRegistry
from dagrun.operators.sensor import BaseSensor, FileSensor, PythonSensor

__all__ = [
    "Operator",
    "TaskContext",
    "NoOpOperator",
    "PythonOperator",
    "BashOperator",
    "BaseSensor",
    "PythonSensor",
    "FileSensor",
    "OperatorRegistry",
]
