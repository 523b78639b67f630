"""
Graph model - load and validate graph definitions.

load() is the only way a raw definition becomes a GraphDefinition the
scheduler will act on. It rejects:
- duplicate task keys
- upstream keys that do not exist in the graph
- self-dependencies and cycles (Kahn's algorithm: any task left unvisited
  after the sort sits on a cycle)
- schedules that cannot be materialized (missing start_date)

topological_order() is for display and diagnostics only. Execution order is
driven by dependencies in the evaluator, never by this list.
"""

import heapq
from collections import deque
from typing import Any, Union

from dagrun.errors import DefinitionError
from dagrun.schemas import GraphDefinition


def load(definition: Union[GraphDefinition, dict[str, Any]]) -> GraphDefinition:
    """
    Load and validate a graph definition.

    Args:
        definition: A raw definition mapping (as parsed from YAML/JSON)
                    or an already constructed GraphDefinition

    Returns:
        The validated GraphDefinition

    Raises:
        DefinitionError: If the definition is malformed or cyclic
    """
    if isinstance(definition, GraphDefinition):
        graph = definition
    else:
        graph_id = definition.get("graph_id") if isinstance(definition, dict) else None
        try:
            graph = GraphDefinition.from_dict(definition)
        except (ValueError, TypeError, KeyError) as e:
            raise DefinitionError(str(e), graph_id=graph_id) from e

    validate(graph)
    return graph


def validate(graph: GraphDefinition) -> None:
    """
    Validate the structure of a graph.

    Raises:
        DefinitionError: On unknown upstreams, cycles or an unusable schedule
    """
    for key, task in graph.tasks.items():
        if key != task.key:
            raise DefinitionError(f"Task registered as '{key}' has key '{task.key}'", graph.graph_id)
        if key in task.upstream:
            raise DefinitionError(f"Task '{key}' depends on itself", graph.graph_id)
        missing = sorted(task.upstream - graph.tasks.keys())
        if missing:
            raise DefinitionError(
                f"Task '{key}' references unknown upstream tasks: {missing}",
                graph.graph_id,
            )

    if not graph.schedule.is_manual and graph.start_date is None:
        raise DefinitionError("Scheduled graphs need a start_date", graph.graph_id)
    if graph.start_date and graph.end_date and graph.end_date < graph.start_date:
        raise DefinitionError("end_date is before start_date", graph.graph_id)

    # Raises on cycles
    topological_order(graph)


def topological_order(graph: GraphDefinition) -> list[str]:
    """
    Deterministic topological order of task keys.

    Kahn's algorithm with a min-heap so ties are broken by task key.
    Every upstream key precedes its downstream keys.

    Raises:
        DefinitionError: If the graph contains a cycle
    """
    in_degree = {key: len(task.upstream) for key, task in graph.tasks.items()}
    children: dict[str, list[str]] = {key: [] for key in graph.tasks}
    for key, task in graph.tasks.items():
        for upstream in task.upstream:
            children[upstream].append(key)

    ready = [key for key, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    order: list[str] = []
    while ready:
        key = heapq.heappop(ready)
        order.append(key)
        for child in children[key]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                heapq.heappush(ready, child)

    if len(order) != len(graph.tasks):
        remaining = sorted(set(graph.tasks) - set(order))
        raise DefinitionError(f"Cycle detected among tasks: {remaining}", graph.graph_id)

    return order


def downstream(graph: GraphDefinition, key: str) -> set[str]:
    """All task keys transitively downstream of `key` (BFS)."""
    visited: set[str] = set()
    queue: deque[str] = deque(graph.downstream_of(key))
    while queue:
        current = queue.popleft()
        if current in visited:
            continue
        visited.add(current)
        queue.extend(graph.downstream_of(current))
    return visited
