"""Dependency graph construction and validation.

Edges come from two places:
1. References inside attribute expressions (${store.primary_blob_host})
2. Explicit `dependsOn` lists, for ordering requirements with no data flow

The graph is validated before anything is applied. Every failure here is a
build error: no driver has been called yet, so aborting is always safe.

EXAMPLE:
```yaml
resources:
  - kind: azure.storage_account
    name: store
    outputs: [primary_blob_host]
  - kind: azure.function_app
    name: app
    dependsOn: [plan]
    attributes:
      storage: "${store.primary_blob_host}"   # edge store -> app
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum

from .expressions import ResourceRef, iter_references
from .models import Resource
from .resolver import UnresolvedReferenceError

logger = logging.getLogger(__name__)


class GraphError(Exception):
    """Raised when the declared resources do not form a valid graph."""

    pass


class CycleError(GraphError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class MissingDependencyError(GraphError):
    """Raised when a resource depends on a resource that is not declared."""

    pass


class _Colour(Enum):
    WHITE = 0  # not visited
    GREY = 1  # on the current DFS stack
    BLACK = 2  # fully explored


@dataclass
class ResourceGraph:
    """Directed acyclic graph of resources, in declaration order.

    `dependencies[name]` lists the producers `name` waits for;
    `dependents[name]` lists the consumers waiting for `name`.
    """

    resources: dict[str, Resource] = field(default_factory=dict)
    dependencies: dict[str, list[str]] = field(default_factory=dict)
    dependents: dict[str, list[str]] = field(default_factory=dict)
    references: list[tuple[str, ResourceRef]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.resources)

    def __iter__(self) -> Iterator[Resource]:
        return iter(self.resources.values())

    def __contains__(self, name: object) -> bool:
        return name in self.resources

    def get(self, name: str) -> Resource:
        return self.resources[name]

    def declaration_index(self, name: str) -> int:
        return list(self.resources).index(name)

    def transitive_dependents(self, name: str) -> list[str]:
        """All resources that (transitively) depend on `name`, declaration order."""
        return self._walk(name, self.dependents)

    def transitive_dependencies(self, name: str) -> list[str]:
        """All resources `name` (transitively) depends on, declaration order."""
        return self._walk(name, self.dependencies)

    def _walk(self, name: str, edges: dict[str, list[str]]) -> list[str]:
        seen: set[str] = set()
        stack = list(edges.get(name, []))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(edges.get(current, []))
        return [candidate for candidate in self.resources if candidate in seen]

    def _add_edge(self, producer: str, consumer: str) -> None:
        if producer not in self.dependencies[consumer]:
            self.dependencies[consumer].append(producer)
            self.dependents[producer].append(consumer)

    def find_cycle(self) -> list[str] | None:
        """Depth-first search with recursion-stack colouring.

        Returns:
            The resources of the first cycle found, with the first resource
            repeated at the end, or None when the graph is acyclic.
        """
        colour = {name: _Colour.WHITE for name in self.resources}
        stack: list[str] = []

        def visit(name: str) -> list[str] | None:
            colour[name] = _Colour.GREY
            stack.append(name)
            for producer in self.dependencies[name]:
                if colour[producer] is _Colour.GREY:
                    start = stack.index(producer)
                    return [*stack[start:], producer]
                if colour[producer] is _Colour.WHITE:
                    found = visit(producer)
                    if found:
                        return found
            stack.pop()
            colour[name] = _Colour.BLACK
            return None

        for name in self.resources:
            if colour[name] is _Colour.WHITE:
                found = visit(name)
                if found:
                    # Report in apply order (producer before consumer)
                    return list(reversed(found))
        return None


def build(resources: Iterable[Resource]) -> ResourceGraph:
    """Build and validate the dependency graph.

    Args:
        resources: Resources in declaration order.

    Returns:
        The validated ResourceGraph.

    Raises:
        GraphError: On duplicate logical names.
        MissingDependencyError: If `depends_on` names an undeclared resource.
        UnresolvedReferenceError: If a reference targets an undeclared
            resource or an attribute its producer does not declare as output.
        CycleError: If any resource transitively depends on itself.
    """
    graph = ResourceGraph()

    for resource in resources:
        if resource.name in graph.resources:
            raise GraphError(f"Duplicate resource name: '{resource.name}'")
        graph.resources[resource.name] = resource
        graph.dependencies[resource.name] = []
        graph.dependents[resource.name] = []

    errors: list[str] = []

    for resource in graph:
        for dependency in resource.depends_on:
            if dependency not in graph:
                raise MissingDependencyError(
                    f"Resource '{resource.name}' depends on undeclared resource '{dependency}'"
                )
            graph._add_edge(dependency, resource.name)

        for attribute, expression in resource.attributes.items():
            for ref in iter_references(expression):
                producer = graph.resources.get(ref.resource)
                if producer is None:
                    errors.append(
                        f"{resource.name}.{attribute}: '${{{ref}}}' references "
                        f"undeclared resource '{ref.resource}'"
                    )
                    continue
                if ref.attribute not in producer.outputs:
                    errors.append(
                        f"{resource.name}.{attribute}: '${{{ref}}}' targets "
                        f"'{ref.attribute}', which '{ref.resource}' does not declare "
                        f"as an output (outputs: {sorted(producer.outputs)})"
                    )
                    continue
                graph.references.append((resource.name, ref))
                graph._add_edge(ref.resource, resource.name)

    if errors:
        raise UnresolvedReferenceError("Invalid references:\n  - " + "\n  - ".join(errors))

    cycle = graph.find_cycle()
    if cycle:
        logger.error("Dependency cycle detected", extra={"cycle": cycle})
        raise CycleError(cycle)

    logger.info(
        "Dependency graph built",
        extra={
            "resources": len(graph),
            "edges": sum(len(deps) for deps in graph.dependencies.values()),
        },
    )
    return graph


def validate_output_references(graph: ResourceGraph, refs: Iterable[ResourceRef]) -> None:
    """Check designated-output references against the graph.

    Raises:
        UnresolvedReferenceError: If an output references an unknown resource
            or an attribute that is not declared as an output.
    """
    errors: list[str] = []
    for ref in refs:
        producer = graph.resources.get(ref.resource)
        if producer is None:
            errors.append(f"'${{{ref}}}' references undeclared resource '{ref.resource}'")
        elif ref.attribute not in producer.outputs:
            errors.append(f"'${{{ref}}}' targets undeclared output '{ref.attribute}'")
    if errors:
        raise UnresolvedReferenceError("Invalid output references:\n  - " + "\n  - ".join(errors))
