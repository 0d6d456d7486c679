"""
Dependency resolution for services to determine startup stages and shutdown order.
"""
from typing import Dict, Iterable, List, Mapping, Tuple, FrozenSet

from ..MODELS.service_definition import ServiceDefinition
from ..errors import ConfigError, CycleError

Stage = Tuple[str, ...]


class DependencyGraph:
    """
    Read-only dependency graph of one orchestration run.

    Built once from the full descriptor set; safe to share between tasks.
    """
    def __init__(self, names: List[str], edges: List[List[int]], stages: List[Stage]):
        self._names = names
        self._index = {name: i for i, name in enumerate(names)}
        # edges[i] holds the indices that service i depends on
        self._edges = edges
        self._dependents: List[List[int]] = [[] for _ in names]
        for i, deps in enumerate(edges):
            for dep in deps:
                self._dependents[dep].append(i)
        self._stages = stages
        self._stage_of = {name: pos for pos, stage in enumerate(stages) for name in stage}

    @classmethod
    def build(cls, services: Mapping[str, ServiceDefinition]) -> "DependencyGraph":
        """
        Computes startup stages with Kahn's algorithm.

        Each stage holds services with no dependency among themselves, sorted
        by name; a stage only depends on earlier stages.

        :param services: Service definitions by name.
        :return: The graph.
        :raises ConfigError: If a dependency names an undeclared service.
        :raises CycleError: If the dependencies are not acyclic.
        """
        names = sorted(services)
        index = {name: i for i, name in enumerate(names)}
        edges: List[List[int]] = []
        for name in names:
            deps = []
            for dep in sorted(services[name].depends_on):
                if dep not in index:
                    raise ConfigError(f"service {name} depends on undeclared service {dep}")
                deps.append(index[dep])
            edges.append(deps)

        indegree = [len(deps) for deps in edges]
        dependents: List[List[int]] = [[] for _ in names]
        for i, deps in enumerate(edges):
            for dep in deps:
                dependents[dep].append(i)

        stages: List[Stage] = []
        ready = [i for i, degree in enumerate(indegree) if degree == 0]
        placed = 0
        while ready:
            stages.append(tuple(sorted(names[i] for i in ready)))
            placed += len(ready)
            next_ready = []
            for i in ready:
                for dependent in dependents[i]:
                    indegree[dependent] -= 1
                    if indegree[dependent] == 0:
                        next_ready.append(dependent)
            ready = next_ready

        if placed != len(names):
            remaining = {i for i, degree in enumerate(indegree) if degree > 0}
            raise CycleError(names[i] for i in _on_cycles(remaining, edges))

        return cls(names, edges, stages)

    @property
    def stages(self) -> List[Stage]:
        return list(self._stages)

    def order(self) -> List[str]:
        """
        Flattened startup order.
        """
        return [name for stage in self._stages for name in stage]

    def shutdown_order(self) -> List[Stage]:
        """
        Stages in reverse: dependents are stopped before their dependencies.
        """
        return list(reversed(self._stages))

    def stage_of(self, name: str) -> int:
        return self._stage_of[name]

    def dependencies_of(self, name: str) -> FrozenSet[str]:
        return frozenset(self._names[i] for i in self._edges[self._index[name]])

    def dependents_of(self, name: str) -> FrozenSet[str]:
        return frozenset(self._names[i] for i in self._dependents[self._index[name]])

    def __contains__(self, name: str) -> bool:
        return name in self._index

    def __len__(self) -> int:
        return len(self._names)


def _on_cycles(remaining: Iterable[int], edges: List[List[int]]) -> List[int]:
    """
    Narrows the nodes Kahn's algorithm could not place down to those lying on a cycle.

    Leftover nodes either sit on a cycle or depend on one; a node is on a
    cycle when it can reach itself through leftover nodes.
    """
    remaining = set(remaining)
    on_cycle = []
    for start in sorted(remaining):
        stack = [dep for dep in edges[start] if dep in remaining]
        seen = set()
        while stack:
            node = stack.pop()
            if node == start:
                on_cycle.append(start)
                break
            if node in seen:
                continue
            seen.add(node)
            stack.extend(dep for dep in edges[node] if dep in remaining)
    return on_cycle
