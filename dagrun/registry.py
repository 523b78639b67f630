"""
GraphRegistry - Load graph definitions from storage.

The registry provides:
- Loading GraphDefinitions from YAML or JSON files in a definitions directory
- Validation through dagrun.graph.load (cycles, unknown upstreams, schedules)
- Per-graph error isolation: one broken file never hides the others
- Content hashing to notice when a definition changed between loads
"""

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import yaml

from dagrun import graph as graph_model
from dagrun.errors import DagrunError, DefinitionError
from dagrun.schemas import GraphDefinition

logger = logging.getLogger(__name__)

RawDefinition = Union[GraphDefinition, dict[str, Any]]


class GraphNotFoundError(DagrunError):
    """Raised when a graph definition is not found."""
    pass


@dataclass
class LoadResult:
    """Outcome of loading every definition of a source."""
    graphs: dict[str, GraphDefinition] = field(default_factory=dict)
    errors: dict[str, DefinitionError] = field(default_factory=dict)


class GraphSource(ABC):
    """
    Abstract base class for places graph definitions come from.

    The scheduler reloads its source on every tick, so a changed definition
    is picked up without a restart.
    """

    @abstractmethod
    def list_graphs(self) -> list[str]:
        """Names of the available definitions, sorted."""
        pass

    @abstractmethod
    def read(self, name: str) -> RawDefinition:
        """
        Read one raw definition.

        Raises:
            GraphNotFoundError: If there is no such definition
            DefinitionError: If it cannot be parsed
        """
        pass

    def load(self, name: str) -> GraphDefinition:
        """
        Read and validate one definition.

        Raises:
            GraphNotFoundError: If there is no such definition
            DefinitionError: If the definition is invalid
        """
        graph = graph_model.load(self.read(name))
        if graph.graph_id != name:
            raise DefinitionError(
                f"Graph ID mismatch: source name is '{name}' but graph_id is '{graph.graph_id}'",
                name,
            )
        return graph

    def load_all(self) -> LoadResult:
        """Load every definition, collecting errors per graph instead of raising."""
        result = LoadResult()
        for name in self.list_graphs():
            try:
                result.graphs[name] = self.load(name)
            except DefinitionError as e:
                logger.error(f"Skipping invalid graph definition: {e}",
                             extra={"graph_id": name, "event": "definition_error"})
                result.errors[name] = e
        return result

    @staticmethod
    def compute_hash(graph: GraphDefinition) -> str:
        """
        Compute SHA256 hash of a GraphDefinition for change detection.

        Uses canonical JSON serialization (sorted keys, no whitespace);
        non-JSON params (e.g. callables) hash by their string form.
        """
        canonical = json.dumps(graph.to_dict(), sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()


class GraphRegistry(GraphSource):
    """
    Registry for loading GraphDefinitions from a directory tree.

    One graph per file, named after its graph_id:
        graphs/
            daily_sales.yaml
            reports/
                weekly_report.json
    """

    def __init__(self, definitions_dir: Union[Path, str]):
        """
        Initialize the registry.

        Args:
            definitions_dir: Path to directory containing graph definition files
        """
        self._definitions_dir = Path(definitions_dir).expanduser()

    @property
    def definitions_dir(self) -> Path:
        """Get the definitions directory path."""
        return self._definitions_dir

    def list_graphs(self) -> list[str]:
        """
        List all available graph IDs.

        Returns:
            Sorted list of graph IDs found in the definitions directory
        """
        if not self._definitions_dir.exists():
            return []

        graph_ids = set()
        for ext in ["*.yaml", "*.yml", "*.json"]:
            for f in self._definitions_dir.glob(f"**/{ext}"):
                if not f.name.startswith("."):
                    graph_ids.add(f.stem)
        return sorted(graph_ids)

    def read(self, name: str) -> RawDefinition:
        path = self._find_definition(name)
        if path is None:
            raise GraphNotFoundError(f"Graph definition not found: {name}")
        try:
            data = self._load_file(path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise DefinitionError(f"Failed to load {path}: {e}", name) from e
        if not isinstance(data, dict):
            raise DefinitionError(f"{path} does not contain a mapping", name)
        return data

    def _load_file(self, path: Path) -> Any:
        """
        Load a definition file (YAML or JSON).

        Raises:
            ValueError: If file format is unsupported or parsing fails
        """
        suffix = path.suffix.lower()
        with open(path) as f:
            if suffix in (".yaml", ".yml"):
                return yaml.safe_load(f)
            elif suffix == ".json":
                return json.load(f)
            else:
                raise ValueError(f"Unsupported file format: {suffix}")

    def _find_definition(self, graph_id: str) -> Optional[Path]:
        """
        Find the definition file for a graph ID.

        Searches the definitions directory recursively.
        YAML files are preferred over JSON.
        """
        for ext in [".yaml", ".yml", ".json"]:
            filename = f"{graph_id}{ext}"

            root_path = self._definitions_dir / filename
            if root_path.exists():
                return root_path

            matches = sorted(self._definitions_dir.glob(f"**/{filename}"))
            if matches:
                return matches[0]

        return None


class StaticGraphSource(GraphSource):
    """
    In-memory graph source for testing and embedding.

    Definitions may be added, replaced or removed between scheduler ticks.
    """

    def __init__(self, definitions: Iterable[RawDefinition] = ()):
        self._definitions: dict[str, RawDefinition] = {}
        for definition in definitions:
            self.put(definition)

    def put(self, definition: RawDefinition) -> None:
        """Add or replace a definition (keyed by its graph_id)."""
        if isinstance(definition, GraphDefinition):
            graph_id = definition.graph_id
        else:
            graph_id = str(definition.get("graph_id", ""))
        if not graph_id:
            raise ValueError("Definition has no graph_id")
        self._definitions[graph_id] = definition

    def remove(self, graph_id: str) -> None:
        self._definitions.pop(graph_id, None)

    def list_graphs(self) -> list[str]:
        return sorted(self._definitions)

    def read(self, name: str) -> RawDefinition:
        if name not in self._definitions:
            raise GraphNotFoundError(f"Graph definition not found: {name}")
        return self._definitions[name]
