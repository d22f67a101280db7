"""Tests for apply-time attribute resolution."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from provisioner.credentials import CredentialWindow
from provisioner.expressions import parse
from provisioner.identifier import Identifier
from provisioner.models import ResourceState
from provisioner.resolver import (
    ResolutionContext,
    UnresolvedReferenceError,
    resolve,
    resolve_attributes,
)
from provisioner.security import StaticSecretStore

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def context() -> ResolutionContext:
    return ResolutionContext(
        identifier=Identifier(b"\x00\x30\x39"),  # 12345
        location="westeurope",
        secrets=StaticSecretStore({"STORAGE_KEY": "c2VjcmV0"}),
        clock=lambda: NOW,
    )


class TestResolveStatic:
    """Tests for values that need no other resource."""

    def test_literal(self, context: ResolutionContext) -> None:
        assert resolve(parse(42), context) == 42

    def test_identifier_renderings(self, context: ResolutionContext) -> None:
        assert resolve(parse("st${id.dec}"), context) == "st12345"
        assert resolve(parse("${id.hex}"), context) == "003039"

    def test_location(self, context: ResolutionContext) -> None:
        assert resolve(parse("rg-${location}"), context) == "rg-westeurope"

    def test_missing_location(self, context: ResolutionContext) -> None:
        context.location = None
        with pytest.raises(UnresolvedReferenceError, match="no location"):
            resolve(parse("${location}"), context)

    def test_secret(self, context: ResolutionContext) -> None:
        assert resolve(parse("${secret.STORAGE_KEY}"), context) == "c2VjcmV0"

    def test_missing_secret(self, context: ResolutionContext) -> None:
        with pytest.raises(UnresolvedReferenceError, match="MISSING"):
            resolve(parse("${secret.MISSING}"), context)

    def test_no_secret_store(self, context: ResolutionContext) -> None:
        context.secrets = None
        with pytest.raises(UnresolvedReferenceError, match="no secret store"):
            resolve(parse("${secret.STORAGE_KEY}"), context)

    def test_nested_collections(self, context: ResolutionContext) -> None:
        value = resolve(parse({"names": ["a${id.dec}"], "region": "${location}"}), context)
        assert value == {"names": ["a12345"], "region": "westeurope"}


class TestResolveReferences:
    """Tests for references to other resources' outputs."""

    def test_reference_before_apply_fails_loudly(self, context: ResolutionContext) -> None:
        """Resolving before the producer is APPLIED never yields a placeholder."""
        with pytest.raises(UnresolvedReferenceError, match="before 'store' was applied"):
            resolve(parse("${store.host}"), context)

    def test_reference_while_producer_applying(self, context: ResolutionContext) -> None:
        context.states["store"] = ResourceState.APPLYING
        context.outputs["store"] = {"host": "early"}
        with pytest.raises(UnresolvedReferenceError, match="state: applying"):
            resolve(parse("${store.host}"), context)

    def test_reference_after_apply(self, context: ResolutionContext) -> None:
        context.record_outputs("store", {"host": "st12345.blob.core.windows.net"})
        assert context.states["store"] == ResourceState.APPLIED
        assert resolve(parse("${store.host}"), context) == "st12345.blob.core.windows.net"

    def test_lone_reference_keeps_type(self, context: ResolutionContext) -> None:
        context.record_outputs("store", {"ports": [80, 443]})
        assert resolve(parse("${store.ports}"), context) == [80, 443]

    def test_missing_output_key(self, context: ResolutionContext) -> None:
        context.record_outputs("store", {"id": "x"})
        with pytest.raises(UnresolvedReferenceError, match="did not produce output 'host'"):
            resolve(parse("${store.host}"), context)

    def test_nested_path(self, context: ResolutionContext) -> None:
        context.record_outputs("store", {"properties": {"endpoints": {"blob": "https://b/"}}})
        assert resolve(parse("${store.properties.endpoints.blob}"), context) == "https://b/"
        with pytest.raises(UnresolvedReferenceError, match="does not exist"):
            resolve(parse("${store.properties.endpoints.queue}"), context)

    def test_template_with_null_is_hard_failure(self, context: ResolutionContext) -> None:
        """A missing value is never interpolated as an empty string."""
        context.record_outputs("store", {"host": None})
        with pytest.raises(UnresolvedReferenceError, match="resolved to null"):
            resolve(parse("https://${store.host}/"), context)

    def test_url_from_independently_resolved_parts(self, context: ResolutionContext) -> None:
        context.record_outputs("store", {"host": "st12345.blob.core.windows.net"})
        context.record_outputs("container", {"container": "data", "sas": "?sig=abc"})
        url = resolve(
            parse("https://${store.host}/${container.container}/index.html${container.sas}"),
            context,
        )
        assert url == "https://st12345.blob.core.windows.net/data/index.html?sig=abc"


class TestResolveWindow:
    """Tests for credential windows."""

    def test_window_uses_clock_and_skew(self, context: ResolutionContext) -> None:
        context.clock_skew = timedelta(minutes=5)
        value = resolve(parse({"credentialWindow": {"hours": 24}}), context)
        assert isinstance(value, CredentialWindow)
        assert value.start == NOW - timedelta(minutes=5)
        assert value.expiry - value.start == timedelta(hours=24)

    def test_window_computed_at_resolution_time(self, context: ResolutionContext) -> None:
        expression = parse({"credentialWindow": {"hours": 1}})
        first = resolve(expression, context)
        context.clock = lambda: NOW + timedelta(hours=3)
        second = resolve(expression, context)
        assert second.start - first.start == timedelta(hours=3)


class TestResolveAttributes:
    """Tests for resolve_attributes()."""

    def test_resolves_every_attribute(self, context: ResolutionContext) -> None:
        attributes = {"name": parse("st${id.dec}"), "location": parse("${location}")}
        assert resolve_attributes(attributes, context) == {
            "name": "st12345",
            "location": "westeurope",
        }
