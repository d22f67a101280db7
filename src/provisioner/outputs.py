"""Designated output collection.

Outputs are evaluated with the same resolver as resource attributes, after
the run. Collection fails closed: if any output depends on a resource that
did not reach APPLIED, nothing is returned.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from .expressions import Expression, iter_references
from .graph import ResourceGraph
from .models import ResourceState
from .resolver import ResolutionContext, UnresolvedReferenceError, resolve

if TYPE_CHECKING:
    from .executor import RunResult

logger = logging.getLogger(__name__)


class OutputCollectionError(Exception):
    """Raised when one or more designated outputs cannot be produced.

    `result` carries the run whose outputs failed, when there was one, so
    callers can still persist its identifier.
    """

    def __init__(self, failures: dict[str, str]) -> None:
        self.failures = failures
        self.result: RunResult | None = None
        details = "\n  - ".join(f"{name}: {reason}" for name, reason in failures.items())
        super().__init__(f"Output collection failed:\n  - {details}")


def collect(
    graph: ResourceGraph,
    designated_outputs: Mapping[str, Expression],
    context: ResolutionContext,
) -> dict[str, Any]:
    """Resolve every designated output.

    Args:
        graph: The graph the run applied.
        designated_outputs: Output name -> expression.
        context: Resolution context carrying the run's applied outputs.

    Returns:
        Output name -> resolved value.

    Raises:
        OutputCollectionError: Listing every output whose producer did not
            reach APPLIED or whose value could not be resolved.
    """
    failures: dict[str, str] = {}
    collected: dict[str, Any] = {}

    for name, expression in designated_outputs.items():
        not_applied = sorted(
            {
                ref.resource
                for ref in iter_references(expression)
                if ref.resource not in graph
                or graph.get(ref.resource).state != ResourceState.APPLIED
            }
        )
        if not_applied:
            failures[name] = f"producer(s) not applied: {not_applied}"
            continue
        try:
            collected[name] = resolve(expression, context)
        except UnresolvedReferenceError as e:
            failures[name] = str(e)

    if failures:
        logger.error("Output collection failed", extra={"failed_outputs": sorted(failures)})
        raise OutputCollectionError(failures)

    logger.info("Outputs collected", extra={"outputs": sorted(collected)})
    return collected
