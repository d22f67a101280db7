"""Run orchestration.

A Deployment is one run of the engine over one declaration:

    prepare()  generate identifier -> build graph -> check kinds and names
               -> schedule. Nothing remote is touched; any error here is a
               build error.
    apply()    execute the schedule, then collect designated outputs.
    destroy()  delete what a previous run applied, dependents first.

The identifier is generated eagerly in the constructor and never changes
for the lifetime of the Deployment. Re-running after a partial failure
passes the previous run's identifier back in so that generated names stay
stable and drivers converge the resources that already exist.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from . import identifier as identifier_generator
from .config import EngineConfig
from .drivers import DriverRegistry
from .executor import ApplyExecutor, RunResult, RunStatus
from .expressions import Expression, is_static, iter_references
from .graph import ResourceGraph, build, validate_output_references
from .identifier import Identifier
from .models import DeploymentDeclaration, ResourceState
from .outputs import OutputCollectionError, collect
from .provenance import get_provenance_logger
from .resolver import ResolutionContext, resolve
from .scheduler import Batch, reverse, schedule
from .security import SecretStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Deployment:
    """One engine run over a declaration."""

    def __init__(
        self,
        declaration: DeploymentDeclaration,
        registry: DriverRegistry,
        *,
        config: EngineConfig | None = None,
        location: str | None = None,
        seed: int | None = None,
        identifier: Identifier | None = None,
        secrets: SecretStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
        declaration_hash: str = "",
    ) -> None:
        """Initialize a run.

        Args:
            declaration: Validated declaration.
            registry: Drivers for every kind the declaration uses.
            config: Engine configuration (defaults if omitted).
            location: Target region; overrides declaration and config.
            seed: Identifier seed for reproducible runs; overrides the
                declaration's seed.
            identifier: Reuse an existing identifier (re-runs, destroy).
            secrets: Store for ${secret.NAME} references.
            clock: Source of "now" for credential windows.
            declaration_hash: Digest recorded in provenance.
        """
        self._declaration = declaration
        self._registry = registry
        self._config = config or EngineConfig()
        self._location = location or declaration.location or self._config.location
        self._secrets = secrets
        self._clock = clock
        self._declaration_hash = declaration_hash

        if identifier is None:
            byte_length = (
                declaration.identifier_bytes
                if "identifier_bytes" in declaration.model_fields_set
                else self._config.identifier_bytes
            )
            identifier = identifier_generator.generate(
                byte_length, seed if seed is not None else declaration.seed
            )
        self._identifier = identifier

        self._graph: ResourceGraph | None = None
        self._batches: list[Batch] | None = None
        self._context: ResolutionContext | None = None
        self._executor: ApplyExecutor | None = None
        self._output_expressions: dict[str, Expression] = declaration.output_expressions()

    @property
    def identifier(self) -> Identifier:
        return self._identifier

    @property
    def location(self) -> str | None:
        return self._location

    @property
    def graph(self) -> ResourceGraph:
        if self._graph is None:
            self.prepare()
        assert self._graph is not None
        return self._graph

    @property
    def batches(self) -> list[Batch]:
        if self._batches is None:
            self.prepare()
        assert self._batches is not None
        return self._batches

    @property
    def context(self) -> ResolutionContext:
        if self._context is None:
            self._context = self._new_context()
        return self._context

    def _new_context(self) -> ResolutionContext:
        return ResolutionContext(
            identifier=self._identifier,
            location=self._location,
            secrets=self._secrets,
            clock=self._clock,
            clock_skew=timedelta(seconds=self._config.clock_skew_seconds),
        )

    def prepare(self) -> list[Batch]:
        """Build, validate and schedule the graph without touching anything remote.

        Returns:
            The schedule.

        Raises:
            UnknownKindError: If any resource kind has no driver.
            GraphError: On missing dependencies or duplicate names.
            CycleError: If the graph has a cycle.
            UnresolvedReferenceError: On references to undeclared outputs.
            NamingError: If an identifier-derived name breaks naming rules.
        """
        resources = self._declaration.to_resources()
        self._registry.validate(resources)

        graph = build(resources)
        validate_output_references(
            graph,
            (ref for expr in self._output_expressions.values() for ref in iter_references(expr)),
        )

        self._context = self._new_context()
        self._check_static_names(graph, self._context)

        batches = schedule(graph)
        self._graph = graph
        self._batches = batches

        logger.info(
            "Deployment prepared",
            extra={
                "resources": len(graph),
                "batches": [batch.names for batch in batches],
                "location": self._location,
                "identifier": self._identifier.hex,
            },
        )
        return batches

    def _check_static_names(self, graph: ResourceGraph, context: ResolutionContext) -> None:
        # Names built only from literals and the identifier can be checked up front
        for resource in graph:
            driver = self._registry.get(resource.kind)
            expression = resource.attributes.get("name")
            if driver.naming is None or expression is None or not is_static(expression):
                continue
            name = resolve(expression, context)
            if isinstance(name, str):
                driver.naming.check(name, resource.name)

    def cancel(self, abort_in_flight: bool = False) -> None:
        """Stop the running apply/destroy from dispatching further batches."""
        if self._executor is not None:
            self._executor.cancel(abort_in_flight=abort_in_flight)

    def _new_executor(self, context: ResolutionContext) -> ApplyExecutor:
        self._executor = ApplyExecutor(
            self._registry,
            context,
            max_parallel=self._config.max_parallel,
        )
        return self._executor

    async def apply(self) -> RunResult:
        """Apply the declaration.

        Each call re-prepares from the declaration, so calling apply again on
        the same Deployment is a re-run with the same identifier.

        Returns:
            RunResult; outputs are collected only when every resource applied.

        Raises:
            OutputCollectionError: If the run applied but an output could not
                be resolved. The RunResult is attached as `result`.
        """
        batches = self.prepare()
        graph = self.graph
        context = self.context

        provenance = get_provenance_logger().create_provenance(
            operation="apply",
            location=self._location,
            identifier=self._identifier.hex,
            declaration_hash=self._declaration_hash,
        )
        result = await self._new_executor(context).run(graph, batches, provenance)

        if result.status == RunStatus.APPLIED:
            try:
                result.outputs = collect(graph, self._output_expressions, context)
            except OutputCollectionError as e:
                e.result = result
                raise
        else:
            logger.warning(
                "Run did not fully apply, skipping output collection",
                extra={
                    "status": result.status.value,
                    "failed": result.failed,
                    "skipped": result.skipped,
                },
            )
        return result

    async def destroy(self, previous: RunResult) -> RunResult:
        """Delete the resources a previous run applied.

        Args:
            previous: RunResult of the apply being torn down. Its outputs are
                used to resolve the attributes that identify each resource.

        Returns:
            RunResult of the destroy run, one record per previously applied
            resource.
        """
        applied = previous.applied_outputs()
        self.prepare()
        graph = self.graph

        context = self._new_context()
        for name, outputs in applied.items():
            if name in graph:
                context.outputs[name] = outputs
                context.states[name] = ResourceState.APPLIED
                graph.get(name).state = ResourceState.APPLIED
        self._context = context

        targets: list[Batch] = []
        for batch in reverse(self.batches):
            resources = tuple(r for r in batch.resources if r.name in applied)
            if resources:
                targets.append(Batch(len(targets), resources))

        provenance = get_provenance_logger().create_provenance(
            operation="destroy",
            location=self._location,
            identifier=self._identifier.hex,
            declaration_hash=self._declaration_hash,
        )
        return await self._new_executor(context).destroy(graph, targets, provenance)

    def describe(self) -> dict[str, Any]:
        """Summary of the prepared schedule, for logs and the CLI."""
        return {
            "location": self._location,
            "identifier": self._identifier.dec,
            "batches": [batch.names for batch in self.batches],
            "outputs": sorted(self._output_expressions),
        }
