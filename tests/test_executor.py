"""Tests for the apply executor."""

from __future__ import annotations

from typing import Any

import pytest

from fake_cloud import FakeCloud
from provisioner.drivers import ApplyAction, DriverRegistry
from provisioner.executor import (
    ApplyExecutor,
    ApplyOutcome,
    REDACTED,
    ApplyRecord,
    RecordStore,
    RunResult,
    RunStatus,
)
from provisioner.expressions import parse
from provisioner.graph import ResourceGraph, build
from provisioner.identifier import Identifier
from provisioner.models import Resource, ResourceState
from provisioner.resolver import ResolutionContext
from provisioner.scheduler import schedule


def resource(
    name: str,
    /,
    depends_on: list[str] | None = None,
    kind: str = "fake.resource",
    outputs: tuple[str, ...] = ("id", "name"),
    **attributes: Any,
) -> Resource:
    return Resource(
        kind=kind,
        name=name,
        attributes={key: parse(value) for key, value in attributes.items()},
        depends_on=depends_on or [],
        outputs=frozenset(outputs),
    )


def context() -> ResolutionContext:
    return ResolutionContext(identifier=Identifier(b"\x00\x30\x39"), location="westeurope")


async def run(
    registry: DriverRegistry,
    graph: ResourceGraph,
    *,
    max_parallel: int = 4,
) -> RunResult:
    executor = ApplyExecutor(registry, context(), max_parallel=max_parallel)
    return await executor.run(graph, schedule(graph))


def outcomes(result: RunResult) -> dict[str, ApplyOutcome]:
    return {record.resource: record.outcome for record in result.records}


class TestRun:
    """Tests for successful runs."""

    @pytest.mark.asyncio
    async def test_all_applied(self, registry: DriverRegistry, cloud: FakeCloud) -> None:
        graph = build(
            [
                resource("store", name="st${id.dec}"),
                resource("app", ["store"], name="app-${store.name}"),
            ]
        )
        result = await run(registry, graph)

        assert result.status == RunStatus.APPLIED
        assert result.success
        assert outcomes(result) == {"store": ApplyOutcome.APPLIED, "app": ApplyOutcome.APPLIED}
        assert result.record_for("app").outputs["name"] == "app-st12345"
        assert graph.get("app").state == ResourceState.APPLIED
        assert result.identifier == "003039"

    @pytest.mark.asyncio
    async def test_batches_are_barriers(self, registry: DriverRegistry, cloud: FakeCloud) -> None:
        """No resource of batch i+1 starts before every resource of batch i ended."""
        cloud.delay("slow", 0.05)
        graph = build([resource("slow"), resource("fast"), resource("next", ["fast"])])
        await run(registry, graph)

        end_of_slow = cloud.events.index(("end", "slow"))
        start_of_next = cloud.events.index(("start", "next"))
        assert end_of_slow < start_of_next

    @pytest.mark.asyncio
    async def test_concurrency_within_batch(self, registry: DriverRegistry, cloud: FakeCloud) -> None:
        for name in ("a", "b", "c"):
            cloud.delay(name, 0.02)
        graph = build([resource("a"), resource("b"), resource("c")])
        await run(registry, graph)
        assert cloud.max_active == 3

    @pytest.mark.asyncio
    async def test_max_parallel_bounds_concurrency(
        self, registry: DriverRegistry, cloud: FakeCloud
    ) -> None:
        for name in ("a", "b", "c", "d"):
            cloud.delay(name, 0.02)
        graph = build([resource(n) for n in ("a", "b", "c", "d")])
        result = await run(registry, graph, max_parallel=2)
        assert result.success
        assert cloud.max_active == 2

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, registry: DriverRegistry, cloud: FakeCloud) -> None:
        """A second run against existing state performs no writes."""
        declared = [resource("store", name="st${id.dec}"), resource("app", ["store"])]
        first = await run(registry, build(declared))
        writes_after_first = cloud.count("create") + cloud.count("update")

        second = await run(registry, build(declared))

        assert second.status == RunStatus.APPLIED
        assert {r.action for r in second.records} == {ApplyAction.UNCHANGED}
        assert cloud.count("create") + cloud.count("update") == writes_after_first
        assert first.record_for("store").outputs == second.record_for("store").outputs


class TestFailure:
    """Tests for partial failure and cascading skips."""

    @pytest.mark.asyncio
    async def test_cascade_skip_and_independent_branch(
        self, registry: DriverRegistry, cloud: FakeCloud
    ) -> None:
        """A -> B -> C with A failing; D independent still applies."""
        cloud.fail("a")
        graph = build(
            [resource("a"), resource("b", ["a"]), resource("c", ["b"]), resource("d")]
        )
        result = await run(registry, graph)

        assert result.status == RunStatus.FAILED
        assert outcomes(result) == {
            "a": ApplyOutcome.FAILED,
            "b": ApplyOutcome.CASCADE_SKIPPED,
            "c": ApplyOutcome.CASCADE_SKIPPED,
            "d": ApplyOutcome.APPLIED,
        }
        assert not cloud.touched("b")
        assert not cloud.touched("c")
        assert result.failed == ["a"]
        assert sorted(result.skipped) == ["b", "c"]

    @pytest.mark.asyncio
    async def test_skipped_records_name_the_failed_dependency(
        self, registry: DriverRegistry, cloud: FakeCloud
    ) -> None:
        cloud.fail("a", message="quota exceeded")
        graph = build([resource("a"), resource("b", ["a"])])
        result = await run(registry, graph)

        failed = result.record_for("a")
        skipped = result.record_for("b")
        assert failed.state == ResourceState.FAILED
        assert "quota exceeded" in failed.error
        assert failed.error_type == "DriverError"
        assert skipped.state == ResourceState.FAILED
        assert skipped.error_type == "CascadeSkipped"
        assert "'a'" in skipped.error

    @pytest.mark.asyncio
    async def test_unresolved_reference_fails_only_that_resource(
        self, registry: DriverRegistry, cloud: FakeCloud
    ) -> None:
        """Producer applied but did not emit a declared output."""
        graph = build(
            [
                resource("store", outputs=("id", "host")),
                resource("app", ["store"], url="${store.host}"),
                resource("other"),
            ]
        )
        result = await run(registry, graph)

        assert outcomes(result)["app"] == ApplyOutcome.FAILED
        assert result.record_for("app").error_type == "UnresolvedReferenceError"
        assert outcomes(result)["other"] == ApplyOutcome.APPLIED

    @pytest.mark.asyncio
    async def test_naming_violation_fails_resource(
        self, registry: DriverRegistry, cloud: FakeCloud
    ) -> None:
        graph = build(
            [
                resource("src", outputs=("id", "name"), name="UPPER"),
                resource("store", ["src"], kind="fake.storage_account", name="${src.name}"),
            ]
        )
        result = await run(registry, graph)

        assert outcomes(result)["store"] == ApplyOutcome.FAILED
        assert result.record_for("store").error_type == "NamingError"
        assert not cloud.touched("store")

    @pytest.mark.asyncio
    async def test_rerun_after_partial_failure_converges(
        self, registry: DriverRegistry, cloud: FakeCloud
    ) -> None:
        cloud.fail("b", times=1)
        declared = [resource("a"), resource("b", ["a"]), resource("c", ["b"])]

        first = await run(registry, build(declared))
        assert first.status == RunStatus.FAILED

        second = await run(registry, build(declared))
        assert second.status == RunStatus.APPLIED
        assert second.record_for("a").action == ApplyAction.UNCHANGED
        assert second.record_for("b").action == ApplyAction.CREATED
        assert cloud.count("create", "a") == 1


class TestCancellation:
    """Tests for run cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_stops_dispatch(self, registry: DriverRegistry, cloud: FakeCloud) -> None:
        """In-flight work finishes; later batches are never dispatched."""
        graph = build([resource("a"), resource("b", ["a"]), resource("c", ["b"])])
        executor = ApplyExecutor(registry, context())
        cloud.on_write("a", executor.cancel)

        result = await executor.run(graph, schedule(graph))

        assert result.status == RunStatus.CANCELLED
        assert outcomes(result) == {
            "a": ApplyOutcome.APPLIED,
            "b": ApplyOutcome.CANCELLED,
            "c": ApplyOutcome.CANCELLED,
        }
        assert result.record_for("b").state == ResourceState.PENDING
        assert not cloud.touched("b")

    @pytest.mark.asyncio
    async def test_abort_in_flight(self, registry: DriverRegistry, cloud: FakeCloud) -> None:
        graph = build([resource("a"), resource("b", ["a"])])
        executor = ApplyExecutor(registry, context())
        cloud.delay("a", 1.0)
        cloud.on_write("a", lambda: executor.cancel(abort_in_flight=True))

        result = await executor.run(graph, schedule(graph))

        assert result.status == RunStatus.FAILED
        record = result.record_for("a")
        assert record.outcome == ApplyOutcome.ABANDONED
        assert record.state == ResourceState.APPLYING
        assert outcomes(result)["b"] == ApplyOutcome.CASCADE_SKIPPED
        assert not cloud.touched("b")

    @pytest.mark.asyncio
    async def test_cancel_keeps_cascade_skip(
        self, registry: DriverRegistry, cloud: FakeCloud
    ) -> None:
        """A dependent of a failure is skipped, not cancelled, when dispatch stops."""
        graph = build([resource("a"), resource("x"), resource("b", ["a"])])
        executor = ApplyExecutor(registry, context())
        cloud.fail("a")
        cloud.on_write("x", executor.cancel)

        result = await executor.run(graph, schedule(graph))

        assert result.status == RunStatus.FAILED
        assert outcomes(result) == {
            "a": ApplyOutcome.FAILED,
            "x": ApplyOutcome.APPLIED,
            "b": ApplyOutcome.CASCADE_SKIPPED,
        }
        record = result.record_for("b")
        assert record.state == ResourceState.FAILED
        assert record.error == "'b' skipped because dependency 'a' failed"
        assert result.skipped == ["b"]
        assert not cloud.touched("b")


class TestRecordStore:
    """Tests for the append-only record store."""

    @pytest.mark.asyncio
    async def test_second_record_rejected(self) -> None:
        store = RecordStore()
        record = ApplyRecord(
            resource="a",
            kind="fake.resource",
            outcome=ApplyOutcome.APPLIED,
            state=ResourceState.APPLIED,
        )
        await store.append(record)
        with pytest.raises(ValueError, match="already has an apply record"):
            await store.append(record)
        assert store.records == [record]


class TestRunResultSerialization:
    """Tests for RunResult persistence."""

    @pytest.mark.asyncio
    async def test_to_dict_from_dict(self, registry: DriverRegistry) -> None:
        graph = build([resource("store", name="st${id.dec}")])
        result = await run(registry, graph)

        restored = RunResult.from_dict(result.to_dict())

        assert restored.status == result.status
        assert restored.identifier == result.identifier
        assert restored.applied_outputs() == result.applied_outputs()
        assert restored.records[0].action == ApplyAction.CREATED
        assert restored.records[0].started_at == result.records[0].started_at

    @pytest.mark.asyncio
    async def test_sensitive_outputs_masked(self, registry: DriverRegistry) -> None:
        """Token outputs stay in memory but are masked when persisted."""
        graph = build(
            [
                resource(
                    "container",
                    kind="fake.container_sas",
                    outputs=("container", "sas", "token"),
                    container="data",
                    window={"credentialWindow": {"hours": 1}},
                )
            ]
        )
        result = await run(registry, graph)
        assert result.record_for("container").outputs["sas"].startswith("?sv=")

        persisted = result.to_dict()["records"][0]

        assert persisted["outputs"]["sas"] == REDACTED
        assert persisted["outputs"]["token"] == REDACTED
        assert persisted["outputs"]["container"] == "data"
        assert "sig=" not in str(result.to_dict())
        restored = RunResult.from_dict(result.to_dict())
        assert restored.records[0].sensitive == frozenset({"sas", "token"})
