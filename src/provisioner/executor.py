"""Apply executor.

Walks the scheduled batches and drives every resource through its driver:

1. A batch starts only after every resource of the previous batch has
   reached a terminal state (the batch boundary is a barrier)
2. Resources inside a batch are applied concurrently, bounded by
   `max_parallel`
3. A failed resource poisons its transitive dependents: they are recorded
   as CASCADE_SKIPPED and never attempted. Independent branches continue
4. `cancel()` stops dispatch of further batches. In-flight applies finish
   unless `abort_in_flight` is requested, in which case they are recorded
   as ABANDONED and must be reconciled by a re-run

The executor does not retry. Retries belong to the drivers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .drivers import ApplyAction, DriverError, DriverRegistry, NamingError, UnknownKindError
from .graph import ResourceGraph
from .models import Resource, ResourceState
from .provenance import ProvenanceLogger, RunProvenance, get_provenance_logger
from .resolver import ResolutionContext, UnresolvedReferenceError, resolve_attributes
from .scheduler import Batch

logger = logging.getLogger(__name__)


class ApplyOutcome(str, Enum):
    """Terminal outcome of one resource in one run."""

    APPLIED = "applied"
    FAILED = "failed"
    CASCADE_SKIPPED = "cascade_skipped"
    CANCELLED = "cancelled"  # never dispatched
    ABANDONED = "abandoned"  # aborted in flight, remote state unknown
    DESTROYED = "destroyed"


class RunStatus(str, Enum):
    """Overall status of a run."""

    APPLIED = "applied"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CascadeSkipped(Exception):
    """A resource was not attempted because a dependency failed."""

    def __init__(self, resource: str, failed_dependency: str) -> None:
        self.resource = resource
        self.failed_dependency = failed_dependency
        super().__init__(
            f"'{resource}' skipped because dependency '{failed_dependency}' failed"
        )


# Stands in for sensitive output values in persisted records
REDACTED = "<redacted>"

# Errors that are expected per-resource failures rather than engine bugs
_RESOURCE_ERRORS = (DriverError, UnresolvedReferenceError, UnknownKindError, NamingError)


@dataclass(frozen=True)
class ApplyRecord:
    """Outcome of one resource in one run. Never mutated after append."""

    resource: str
    kind: str
    outcome: ApplyOutcome
    state: ResourceState
    action: ApplyAction | None = None
    outputs: Mapping[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_type: str | None = None
    retryable: bool = False
    batch: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    sensitive: frozenset[str] = frozenset()

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": self.resource,
            "kind": self.kind,
            "outcome": self.outcome.value,
            "state": self.state.value,
            "action": self.action.value if self.action else None,
            "outputs": {
                key: REDACTED if key in self.sensitive else value
                for key, value in self.outputs.items()
            },
            "sensitive": sorted(self.sensitive),
            "error": self.error,
            "error_type": self.error_type,
            "retryable": self.retryable,
            "batch": self.batch,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ApplyRecord:
        def parse_time(value: str | None) -> datetime | None:
            return datetime.fromisoformat(value) if value else None

        return cls(
            resource=data["resource"],
            kind=data["kind"],
            outcome=ApplyOutcome(data["outcome"]),
            state=ResourceState(data["state"]),
            action=ApplyAction(data["action"]) if data.get("action") else None,
            outputs=dict(data.get("outputs") or {}),
            error=data.get("error"),
            error_type=data.get("error_type"),
            retryable=bool(data.get("retryable", False)),
            batch=data.get("batch"),
            started_at=parse_time(data.get("started_at")),
            finished_at=parse_time(data.get("finished_at")),
            sensitive=frozenset(data.get("sensitive") or ()),
        )


class RecordStore:
    """Append-only store of apply records, one per resource.

    Appends are serialised so concurrent appliers never interleave.
    """

    def __init__(self) -> None:
        self._records: dict[str, ApplyRecord] = {}
        self._lock = asyncio.Lock()

    async def append(self, record: ApplyRecord) -> None:
        """Append a record.

        Raises:
            ValueError: If the resource already has a record in this run.
        """
        async with self._lock:
            if record.resource in self._records:
                raise ValueError(f"Resource '{record.resource}' already has an apply record")
            self._records[record.resource] = record

    def get(self, resource: str) -> ApplyRecord | None:
        return self._records.get(resource)

    def __contains__(self, resource: object) -> bool:
        return resource in self._records

    @property
    def records(self) -> list[ApplyRecord]:
        return list(self._records.values())


@dataclass
class RunResult:
    """Everything a caller needs to judge a run and drive a safe re-run."""

    status: RunStatus
    records: list[ApplyRecord] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    operation: str = "apply"
    run_id: str = ""
    identifier: str = ""
    location: str | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def success(self) -> bool:
        return self.status == RunStatus.APPLIED

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def _names(self, *outcomes: ApplyOutcome) -> list[str]:
        return [r.resource for r in self.records if r.outcome in outcomes]

    @property
    def applied(self) -> list[str]:
        return self._names(ApplyOutcome.APPLIED, ApplyOutcome.DESTROYED)

    @property
    def failed(self) -> list[str]:
        return self._names(ApplyOutcome.FAILED, ApplyOutcome.ABANDONED)

    @property
    def skipped(self) -> list[str]:
        return self._names(ApplyOutcome.CASCADE_SKIPPED, ApplyOutcome.CANCELLED)

    def record_for(self, resource: str) -> ApplyRecord | None:
        for record in self.records:
            if record.resource == resource:
                return record
        return None

    def applied_outputs(self) -> dict[str, dict[str, Any]]:
        """Outputs of every applied resource, keyed by resource name."""
        return {
            r.resource: dict(r.outputs) for r in self.records if r.outcome == ApplyOutcome.APPLIED
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "operation": self.operation,
            "run_id": self.run_id,
            "identifier": self.identifier,
            "location": self.location,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "records": [record.to_dict() for record in self.records],
            "outputs": self.outputs,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RunResult:
        end_time = data.get("end_time")
        return cls(
            status=RunStatus(data["status"]),
            records=[ApplyRecord.from_dict(r) for r in data.get("records", [])],
            outputs=dict(data.get("outputs") or {}),
            operation=data.get("operation", "apply"),
            run_id=data.get("run_id", ""),
            identifier=data.get("identifier", ""),
            location=data.get("location"),
            start_time=datetime.fromisoformat(data["start_time"]),
            end_time=datetime.fromisoformat(end_time) if end_time else None,
        )


# resource -> (action, outputs)
_Operation = Callable[[Resource], Awaitable[tuple[ApplyAction, dict[str, Any]]]]


class ApplyExecutor:
    """Drives scheduled batches through the driver registry."""

    def __init__(
        self,
        registry: DriverRegistry,
        context: ResolutionContext,
        *,
        max_parallel: int = 4,
        provenance_logger: ProvenanceLogger | None = None,
    ) -> None:
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self._registry = registry
        self._context = context
        self._max_parallel = max_parallel
        self._provenance_logger = provenance_logger or get_provenance_logger()
        self._cancel_event = asyncio.Event()
        self._in_flight: set[asyncio.Task[ApplyRecord]] = set()

    @property
    def context(self) -> ResolutionContext:
        return self._context

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self, abort_in_flight: bool = False) -> None:
        """Stop dispatching new batches.

        Args:
            abort_in_flight: Also cancel applies that are already running.
                Their resources are recorded as ABANDONED.
        """
        logger.warning(
            "Run cancellation requested",
            extra={"abort_in_flight": abort_in_flight, "in_flight": len(self._in_flight)},
        )
        self._cancel_event.set()
        if abort_in_flight:
            for task in self._in_flight:
                task.cancel()

    async def run(
        self,
        graph: ResourceGraph,
        batches: list[Batch],
        provenance: RunProvenance | None = None,
    ) -> RunResult:
        """Apply every resource of the graph.

        Args:
            graph: Validated resource graph.
            batches: Schedule produced for this graph.
            provenance: Audit record for this run (created if omitted).

        Returns:
            RunResult with one record per resource.
        """

        async def apply_operation(resource: Resource) -> tuple[ApplyAction, dict[str, Any]]:
            driver = self._registry.get(resource.kind)
            attributes = resolve_attributes(resource.attributes, self._context)
            name = attributes.get("name")
            if driver.naming is not None and isinstance(name, str):
                driver.naming.check(name, resource.name)
            result = await driver.apply(resource, attributes)
            self._context.record_outputs(resource.name, result.outputs)
            return result.action, result.outputs

        return await self._execute(
            "apply",
            graph,
            batches,
            apply_operation,
            cascade=graph.transitive_dependents,
            success=(ApplyOutcome.APPLIED, ResourceState.APPLIED),
            provenance=provenance,
        )

    async def destroy(
        self,
        graph: ResourceGraph,
        batches: list[Batch],
        provenance: RunProvenance | None = None,
    ) -> RunResult:
        """Delete resources in the given (already reversed) batches.

        A resource whose dependent failed to delete is skipped, since its
        removal could fail or orphan the dependent.
        """

        async def destroy_operation(resource: Resource) -> tuple[ApplyAction, dict[str, Any]]:
            driver = self._registry.get(resource.kind)
            attributes = resolve_attributes(resource.attributes, self._context)
            deleted = await driver.destroy(resource, attributes)
            return (ApplyAction.DELETED if deleted else ApplyAction.UNCHANGED), {}

        return await self._execute(
            "destroy",
            graph,
            batches,
            destroy_operation,
            cascade=graph.transitive_dependencies,
            success=(ApplyOutcome.DESTROYED, ResourceState.DECLARED),
            provenance=provenance,
        )

    async def _execute(
        self,
        operation: str,
        graph: ResourceGraph,
        batches: list[Batch],
        perform: _Operation,
        *,
        cascade: Callable[[str], list[str]],
        success: tuple[ApplyOutcome, ResourceState],
        provenance: RunProvenance | None,
    ) -> RunResult:
        provenance = provenance or self._provenance_logger.create_provenance(
            operation=operation,
            location=self._context.location,
            identifier=self._context.identifier.hex,
        )
        store = RecordStore()
        semaphore = asyncio.Semaphore(self._max_parallel)
        doomed: dict[str, str] = {}  # resource -> failed dependency that dooms it
        start_time = datetime.now(UTC)
        started = time.monotonic()

        async def append(record: ApplyRecord) -> None:
            await store.append(record)
            self._provenance_logger.log_record(provenance, record)

        async def perform_one(resource: Resource, batch: Batch) -> ApplyRecord:
            try:
                await semaphore.acquire()
            except asyncio.CancelledError:
                # Aborted while queued behind max_parallel: never dispatched
                record = ApplyRecord(
                    resource=resource.name,
                    kind=resource.kind,
                    outcome=ApplyOutcome.CANCELLED,
                    state=ResourceState.PENDING,
                    batch=batch.index,
                )
                await append(record)
                return record

            try:
                resource.state = ResourceState.APPLYING
                self._context.states[resource.name] = ResourceState.APPLYING
                record_start = datetime.now(UTC)
                logger.info(
                    f"Starting {operation}",
                    extra={"resource": resource.name, "kind": resource.kind, "batch": batch.index},
                )
                try:
                    action, outputs = await perform(resource)
                except asyncio.CancelledError:
                    record = ApplyRecord(
                        resource=resource.name,
                        kind=resource.kind,
                        outcome=ApplyOutcome.ABANDONED,
                        state=ResourceState.APPLYING,
                        error=f"{operation} aborted while in flight; remote state unknown",
                        error_type="CancelledError",
                        batch=batch.index,
                        started_at=record_start,
                        finished_at=datetime.now(UTC),
                    )
                except _RESOURCE_ERRORS as e:
                    record = self._failure(resource, batch, record_start, e)
                except Exception as e:
                    # Driver bugs must not take down independent branches
                    logger.exception(
                        f"Unexpected error during {operation}",
                        extra={"resource": resource.name, "kind": resource.kind},
                    )
                    record = self._failure(resource, batch, record_start, e)
                else:
                    record = ApplyRecord(
                        resource=resource.name,
                        kind=resource.kind,
                        outcome=success[0],
                        state=success[1],
                        action=action,
                        outputs=outputs,
                        batch=batch.index,
                        started_at=record_start,
                        finished_at=datetime.now(UTC),
                        sensitive=self._registry.get(resource.kind).sensitive_outputs,
                    )

                resource.state = record.state
                self._context.states[resource.name] = record.state
                await append(record)
                return record
            finally:
                semaphore.release()

        for batch in batches:
            if self.cancelled:
                logger.warning(
                    "Run cancelled, not dispatching remaining batches",
                    extra={"next_batch": batch.index, "operation": operation},
                )
                break

            runnable: list[Resource] = []
            for resource in batch.resources:
                if resource.name in doomed:
                    await append(self._skipped(resource, batch, doomed[resource.name]))
                else:
                    resource.state = ResourceState.PENDING
                    runnable.append(resource)

            tasks = [asyncio.create_task(perform_one(resource, batch)) for resource in runnable]
            self._in_flight.update(tasks)
            try:
                # Barrier: the whole batch settles before the next one starts
                batch_records = await asyncio.gather(*tasks)
            finally:
                self._in_flight.difference_update(tasks)

            for record in batch_records:
                if record.outcome in (ApplyOutcome.FAILED, ApplyOutcome.ABANDONED):
                    for victim in cascade(record.resource):
                        doomed.setdefault(victim, record.resource)

        for batch in batches:
            for resource in batch.resources:
                if resource.name in store:
                    continue
                if resource.name in doomed:
                    # Dispatch stopped with a failed dependency
                    await append(self._skipped(resource, batch, doomed[resource.name]))
                else:
                    # Never dispatched
                    resource.state = ResourceState.PENDING
                    await append(
                        ApplyRecord(
                            resource=resource.name,
                            kind=resource.kind,
                            outcome=ApplyOutcome.CANCELLED,
                            state=ResourceState.PENDING,
                            batch=batch.index,
                        )
                    )

        records = store.records
        failed_outcomes = (
            ApplyOutcome.FAILED,
            ApplyOutcome.ABANDONED,
            ApplyOutcome.CASCADE_SKIPPED,
        )
        if any(r.outcome in failed_outcomes for r in records):
            status = RunStatus.FAILED
        elif any(r.outcome == ApplyOutcome.CANCELLED for r in records):
            status = RunStatus.CANCELLED
        else:
            status = RunStatus.APPLIED

        result = RunResult(
            status=status,
            records=records,
            operation=operation,
            run_id=provenance.run_id,
            identifier=self._context.identifier.hex,
            location=self._context.location,
            start_time=start_time,
            end_time=datetime.now(UTC),
        )

        provenance.status = status.value
        provenance.applied = len(result.applied)
        provenance.failed = len(result.failed)
        provenance.skipped = sum(1 for r in records if r.outcome == ApplyOutcome.CASCADE_SKIPPED)
        provenance.cancelled = sum(1 for r in records if r.outcome == ApplyOutcome.CANCELLED)
        provenance.duration_seconds = time.monotonic() - started
        self._provenance_logger.log_provenance(provenance)

        return result

    @staticmethod
    def _skipped(resource: Resource, batch: Batch, failed_dependency: str) -> ApplyRecord:
        resource.state = ResourceState.FAILED
        skipped = CascadeSkipped(resource.name, failed_dependency)
        return ApplyRecord(
            resource=resource.name,
            kind=resource.kind,
            outcome=ApplyOutcome.CASCADE_SKIPPED,
            state=ResourceState.FAILED,
            error=str(skipped),
            error_type=type(skipped).__name__,
            batch=batch.index,
        )

    @staticmethod
    def _failure(
        resource: Resource, batch: Batch, started_at: datetime, error: Exception
    ) -> ApplyRecord:
        return ApplyRecord(
            resource=resource.name,
            kind=resource.kind,
            outcome=ApplyOutcome.FAILED,
            state=ResourceState.FAILED,
            error=str(error),
            error_type=type(error).__name__,
            retryable=getattr(error, "retryable", False),
            batch=batch.index,
            started_at=started_at,
            finished_at=datetime.now(UTC),
        )
