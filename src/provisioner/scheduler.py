"""Layered topological scheduling.

Kahn's algorithm, generalised to emit whole layers at a time: batch i holds
every resource whose dependencies all sit in batches < i. Resources inside a
batch are mutually independent and may be applied concurrently; the batch
boundary is where the executor synchronises.
"""

from __future__ import annotations

from dataclasses import dataclass

from .graph import CycleError, ResourceGraph
from .models import Resource


@dataclass(frozen=True)
class Batch:
    """Mutually independent resources, in declaration order."""

    index: int
    resources: tuple[Resource, ...]

    @property
    def names(self) -> list[str]:
        return [resource.name for resource in self.resources]

    def __len__(self) -> int:
        return len(self.resources)


def schedule(graph: ResourceGraph) -> list[Batch]:
    """Order the graph into batches.

    Args:
        graph: A validated resource graph.

    Returns:
        Batches in execution order. Within a batch, resources keep their
        declaration order so logs are reproducible.

    Raises:
        CycleError: If not every resource could be scheduled. The builder
            already rejects cycles, so this only fires for graphs that were
            mutated after build.
    """
    in_degree = {name: len(graph.dependencies[name]) for name in graph.resources}
    ready = [name for name in graph.resources if in_degree[name] == 0]
    batches: list[Batch] = []
    scheduled = 0

    while ready:
        batches.append(Batch(len(batches), tuple(graph.resources[name] for name in ready)))
        scheduled += len(ready)

        unlocked: set[str] = set()
        for name in ready:
            for dependent in graph.dependents[name]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    unlocked.add(dependent)

        # Declaration order, not discovery order
        ready = [name for name in graph.resources if name in unlocked]

    if scheduled != len(graph):
        stuck = [name for name, degree in in_degree.items() if degree > 0]
        raise CycleError(stuck)

    return batches


def reverse(batches: list[Batch]) -> list[Batch]:
    """Batches for teardown: dependents are removed before their producers."""
    return [
        Batch(index, batch.resources) for index, batch in enumerate(reversed(batches))
    ]


def batch_index(batches: list[Batch]) -> dict[str, int]:
    """Map each resource name to the index of the batch it runs in."""
    return {resource.name: batch.index for batch in batches for resource in batch.resources}
