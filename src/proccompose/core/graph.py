"""Dependency graph construction and validation for proccompose."""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from loguru import logger

from proccompose.config import ConfigError, CycleError, UnknownDependencyError
from proccompose.models import Condition, ProcessSpec


class DependencyGraph:
    """Validated, read-only dependency graph.

    ``dependencies[name]`` maps each dependency of ``name`` to the condition it
    must reach; ``dependents[name]`` is the reverse edge set used to find which
    processes to re-evaluate after ``name`` changes state.
    """

    def __init__(
        self,
        specs: dict[str, ProcessSpec],
        dependencies: dict[str, dict[str, Condition]],
        dependents: dict[str, set[str]],
    ):
        self.specs = specs
        self.dependencies = dependencies
        self.dependents = dependents
        self._depths: dict[str, int] | None = None

    def __contains__(self, name: object) -> bool:
        return name in self.specs

    def __iter__(self) -> Iterator[str]:
        return iter(self.specs)

    def __len__(self) -> int:
        return len(self.specs)

    def roots(self) -> list[str]:
        """Processes without dependencies."""
        return [name for name, deps in self.dependencies.items() if not deps]

    def start_order(self) -> list[str]:
        """Get a topological order: every process after all of its dependencies."""
        in_degree = {name: len(deps) for name, deps in self.dependencies.items()}

        # Start with processes that have no dependencies
        queue = [name for name, degree in in_degree.items() if degree == 0]
        result = []

        while queue:
            name = queue.pop(0)
            result.append(name)

            for dependent in sorted(self.dependents[name], key=list(self.specs).index):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def closure(self, names: Iterable[str]) -> set[str]:
        """The given processes plus everything they transitively depend on."""
        seen: set[str] = set()
        stack = list(names)
        while stack:
            name = stack.pop()
            if name in seen:
                continue
            seen.add(name)
            stack.extend(self.dependencies[name])
        return seen

    def depth(self, name: str) -> int:
        """Length of the longest dependency chain below ``name``."""
        if self._depths is None:
            # Dependencies come first in start order
            depths: dict[str, int] = {}
            for node in self.start_order():
                deps = self.dependencies[node]
                depths[node] = 1 + max(depths[dep] for dep in deps) if deps else 0
            self._depths = depths
        return self._depths[name]

    def shutdown_waves(self, names: Iterable[str]) -> list[list[str]]:
        """Group processes so that dependents stop before their dependencies."""
        levels: dict[int, list[str]] = {}
        for name in names:
            levels.setdefault(self.depth(name), []).append(name)
        return [levels[level] for level in sorted(levels, reverse=True)]

    def to_dict(self) -> dict[str, dict[str, str]]:
        """Serializable view: process -> {dependency: condition}."""
        return {
            name: {dep: cond.value for dep, cond in deps.items()}
            for name, deps in self.dependencies.items()
        }


class GraphBuilder:
    """Validates process specs into an acyclic dependency graph."""

    def build(self, specs: Iterable[ProcessSpec]) -> DependencyGraph:
        """Build the dependency graph.

        Args:
            specs: All process specifications.

        Returns:
            The validated DependencyGraph.

        Raises:
            ConfigError: on duplicate process names.
            UnknownDependencyError: if a dependency names an undefined process.
            CycleError: if the dependencies form a cycle.
        """
        by_name: dict[str, ProcessSpec] = {}
        for spec in specs:
            if spec.name in by_name:
                raise ConfigError(f"Duplicate process name: '{spec.name}'")
            by_name[spec.name] = spec

        dependencies: dict[str, dict[str, Condition]] = {}
        dependents: dict[str, set[str]] = {name: set() for name in by_name}

        for name, spec in by_name.items():
            for dep in spec.depends_on:
                if dep not in by_name:
                    raise UnknownDependencyError(name, dep)
                dependents[dep].add(name)
            dependencies[name] = dict(spec.depends_on)

        cycle = self._find_cycle(dependencies)
        if cycle:
            raise CycleError(cycle)

        logger.debug(f"Built dependency graph with {len(by_name)} processes")
        return DependencyGraph(by_name, dependencies, dependents)

    @staticmethod
    def _find_cycle(dependencies: dict[str, dict[str, Condition]]) -> list[str] | None:
        """Return the first cycle found as a path, or None."""
        WHITE, GRAY, BLACK = 0, 1, 2
        color = {name: WHITE for name in dependencies}
        path: list[str] = []

        def dfs(node: str) -> list[str] | None:
            color[node] = GRAY
            path.append(node)

            for neighbor in dependencies[node]:
                if color[neighbor] == GRAY:
                    # Back edge
                    cycle_start = path.index(neighbor)
                    return path[cycle_start:] + [neighbor]
                elif color[neighbor] == WHITE:
                    result = dfs(neighbor)
                    if result:
                        return result

            color[node] = BLACK
            path.pop()
            return None

        for name in dependencies:
            if color[name] == WHITE:
                cycle = dfs(name)
                if cycle:
                    return cycle

        return None
