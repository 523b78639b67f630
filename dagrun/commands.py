"""
Operator commands - manual actions on runs outside the scheduler's own cadence.

Thin wrappers over RunStore operations shared by the CLI and by code that
embeds dagrun:
- trigger_run: materialize a manual run for a slot (default: now)
- backfill: materialize runs for every slot in a date range
- clear_task: reset a task (and its upstream-failed downstream) to run again
- cancel_run: cancel a run cooperatively
"""

import logging
from datetime import datetime
from typing import Optional

from dagrun.run_store import RunStore
from dagrun.schemas import GraphDefinition, RunInstance
from dagrun.utils import parse_datetime, utcnow

logger = logging.getLogger(__name__)


def trigger_run(
    store: RunStore,
    graph: GraphDefinition,
    logical_slot: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> RunInstance:
    """
    Create a manual run of `graph`.

    Idempotent on (graph_id, logical_slot): triggering an existing slot
    returns the existing run.

    Args:
        store: Run state store
        graph: The graph to run
        logical_slot: Slot the run covers (defaults to now)
        now: Current time
    """
    now = now or utcnow()
    slot = parse_datetime(logical_slot) if logical_slot is not None else now
    return store.create_run(graph, slot, run_type="manual", now=now)


def backfill(
    store: RunStore,
    graph: GraphDefinition,
    start: datetime,
    end: datetime,
    now: Optional[datetime] = None,
) -> list[RunInstance]:
    """
    Create runs for every scheduled slot in [start, end].

    Slots that already have a run (of any type) are left alone. Backfill
    works regardless of the graph's catchup flag.

    Returns:
        One RunInstance per slot, chronological

    Raises:
        ValueError: If the graph has a manual schedule or end < start
    """
    start = parse_datetime(start)
    end = parse_datetime(end)
    if graph.schedule.is_manual:
        raise ValueError(f"Graph '{graph.graph_id}' has a manual schedule; nothing to backfill")
    if end < start:
        raise ValueError("Backfill end is before start")

    now = now or utcnow()
    anchor = graph.start_date or start
    runs = [
        store.create_run(graph, slot, run_type="backfill", now=now)
        for slot in graph.schedule.slots_between(start, end, anchor)
    ]
    logger.info(f"Backfilled {len(runs)} runs of {graph.graph_id}",
                extra={"graph_id": graph.graph_id, "event": "backfill"})
    return runs


def clear_task(
    store: RunStore,
    run_id: str,
    task_key: str,
    now: Optional[datetime] = None,
) -> list[str]:
    """Reset a task instance to `none`; returns the keys that were reset."""
    return store.clear_task(run_id, task_key, now=now)


def cancel_run(store: RunStore, run_id: str, now: Optional[datetime] = None) -> RunInstance:
    """Request cancellation of a run."""
    return store.cancel_run(run_id, now=now)
