import logging
from collections import deque
from typing import Dict, FrozenSet, Iterable, List, Set, Tuple

from .errors import CyclicDependencyError, DuplicateServiceError, UnknownDependencyError, UnknownServiceError
from .models import Service

log = logging.getLogger(__name__)

_VISITING, _VISITED = 1, 2


class ServiceGraph:
    """
    Validated, read-only dependency graph of services.

    Construction fails with a ConfigError subclass if a name is declared twice,
    a dependency is not declared, or the dependency relation has a cycle.
    """

    def __init__(self, services: Iterable[Service]) -> None:
        self._services: Dict[str, Service] = {}
        for service in services:
            if service.name in self._services:
                raise DuplicateServiceError(service.name)
            self._services[service.name] = service

        self._check_references()
        self._order = self._topological_order()

        dependents: Dict[str, Set[str]] = {name: set() for name in self._services}
        for service in self._services.values():
            for dep in service.dependencies:
                dependents[dep].add(service.name)
        self._dependents = {name: tuple(sorted(names)) for name, names in dependents.items()}

    def _check_references(self) -> None:
        for name in sorted(self._services):
            for dep in sorted(self._services[name].dependencies):
                if dep not in self._services:
                    raise UnknownDependencyError(name, dep)

    def _topological_order(self) -> Tuple[str, ...]:
        """
        Depth-first traversal with visiting/visited colouring.
        Emits each service after all of its dependencies; ties are broken by name.
        """
        colour: Dict[str, int] = {}
        order: List[str] = []
        path: List[str] = []

        def visit(name: str) -> None:
            colour[name] = _VISITING
            path.append(name)
            for dep in sorted(self._services[name].dependencies):
                state = colour.get(dep)
                if state == _VISITING:
                    raise CyclicDependencyError(path[path.index(dep):] + [dep])
                if state is None:
                    visit(dep)
            path.pop()
            colour[name] = _VISITED
            order.append(name)

        for name in sorted(self._services):
            if name not in colour:
                visit(name)
        return tuple(order)

    def __contains__(self, name: str) -> bool:
        return name in self._services

    def __len__(self) -> int:
        return len(self._services)

    def __iter__(self):
        return iter(self._order)

    @property
    def names(self) -> FrozenSet[str]:
        return frozenset(self._services)

    def service(self, name: str) -> Service:
        try:
            return self._services[name]
        except KeyError:
            raise UnknownServiceError(name) from None

    def dependencies_of(self, name: str) -> FrozenSet[str]:
        return self.service(name).dependencies

    def dependents_of(self, name: str) -> Tuple[str, ...]:
        """Returns the services that depend directly on `name`, sorted."""
        self.service(name)
        return self._dependents[name]

    def transitive_dependents(self, name: str) -> Set[str]:
        """Returns every service that depends on `name`, directly or not."""
        result: Set[str] = set()
        queue = deque(self.dependents_of(name))
        while queue:
            current = queue.popleft()
            if current not in result:
                result.add(current)
                queue.extend(self._dependents[current])
        return result

    def processing_order(self) -> Tuple[str, ...]:
        """A deterministic order in which every service follows its dependencies."""
        return self._order

    def resolve_transitive_deps(self, names: Iterable[str]) -> Set[str]:
        """
        Returns the given names plus everything they depend on, transitively.

        :raises UnknownServiceError: If a requested name is not declared.
        """
        result: Set[str] = set()
        queue = deque(names)
        while queue:
            name = queue.popleft()
            if name in result:
                continue
            result.add(name)
            queue.extend(self.dependencies_of(name) - result)
        return result

    def subgraph(self, names: Iterable[str]) -> "ServiceGraph":
        """Builds a graph restricted to `names` and their transitive dependencies."""
        keep = self.resolve_transitive_deps(names)
        log.debug(f"Restricting graph to {len(keep)} of {len(self)} services: {', '.join(sorted(keep))}")
        return ServiceGraph(self._services[name] for name in self._order if name in keep)
