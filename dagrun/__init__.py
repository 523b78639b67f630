"""
dagrun - DAG scheduler

Materializes runs of task graphs on a schedule and executes their tasks in
dependency order, with retries, sensors and cooperative cancellation.
"""

__version__ = "0.1.0"


__all__ = ["DagrunConfig", "load_config", "get_dagrun_home"]

from .config import DagrunConfig, load_config, get_dagrun_home
