"""Tests for attribute expression parsing."""

from __future__ import annotations

from datetime import timedelta

import pytest

from provisioner.expressions import (
    ExpressionError,
    IdentifierRef,
    ListExpr,
    Literal,
    LocationRef,
    MapExpr,
    ResourceRef,
    SecretRef,
    Template,
    WindowExpr,
    is_static,
    iter_references,
    parse,
)


class TestParseScalars:
    """Tests for plain values and single markers."""

    def test_plain_string(self) -> None:
        assert parse("westeurope") == Literal("westeurope")

    def test_non_string_literal(self) -> None:
        assert parse(5) == Literal(5)
        assert parse(True) == Literal(True)
        assert parse(None) == Literal(None)

    def test_identifier(self) -> None:
        assert parse("${id.hex}") == IdentifierRef("hex")

    def test_location(self) -> None:
        assert parse("${location}") == LocationRef()

    def test_secret(self) -> None:
        assert parse("${secret.STORAGE_KEY}") == SecretRef("STORAGE_KEY")

    def test_resource_reference(self) -> None:
        assert parse("${store.primary_blob_host}") == ResourceRef("store", "primary_blob_host")

    def test_nested_path(self) -> None:
        ref = parse("${store.properties.primaryEndpoints.blob}")
        assert ref == ResourceRef("store", "properties", ("primaryEndpoints", "blob"))
        assert str(ref) == "store.properties.primaryEndpoints.blob"

    def test_whitespace_inside_marker(self) -> None:
        assert parse("${ id.dec }") == IdentifierRef("dec")


class TestParseTemplates:
    """Tests for strings that mix text and markers."""

    def test_template_parts_in_order(self) -> None:
        expression = parse("https://${store.host}/${container.container}")
        assert expression == Template(
            (
                "https://",
                ResourceRef("store", "host"),
                "/",
                ResourceRef("container", "container"),
            )
        )

    def test_name_with_identifier(self) -> None:
        assert parse("st${id.dec}") == Template(("st", IdentifierRef("dec")))

    def test_escape(self) -> None:
        assert parse("$${not.a.reference}") == Literal("${not.a.reference}")

    def test_unterminated(self) -> None:
        with pytest.raises(ExpressionError, match="Unterminated"):
            parse("prefix-${id.hex")

    @pytest.mark.parametrize(
        "text",
        ["${id.oct}", "${id}", "${location.name}", "${secret}", "${store}", "${1bad.x}"],
    )
    def test_invalid_markers(self, text: str) -> None:
        with pytest.raises(ExpressionError):
            parse(text)

    def test_expression_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            parse("${id.oct}")


class TestParseCollections:
    """Tests for lists, mappings and credential windows."""

    def test_list(self) -> None:
        assert parse(["a", "${id.hex}"]) == ListExpr((Literal("a"), IdentifierRef("hex")))

    def test_mapping(self) -> None:
        assert parse({"sku": "Standard_LRS", "region": "${location}"}) == MapExpr(
            (("sku", Literal("Standard_LRS")), ("region", LocationRef()))
        )

    def test_credential_window(self) -> None:
        assert parse({"credentialWindow": {"hours": 24}}) == WindowExpr(timedelta(hours=24))

    def test_credential_window_must_be_alone(self) -> None:
        with pytest.raises(ExpressionError, match="only key"):
            parse({"credentialWindow": {"hours": 1}, "other": 1})

    def test_credential_window_bad_units(self) -> None:
        with pytest.raises(ExpressionError, match="Invalid credentialWindow"):
            parse({"credentialWindow": {"fortnights": 1}})


class TestReferenceHelpers:
    """Tests for iter_references and is_static."""

    def test_iter_references_walks_everything(self) -> None:
        expression = parse(
            {
                "url": "https://${store.host}/${container.container}",
                "hosts": ["${app.default_hostname}"],
            }
        )
        refs = [str(ref) for ref in iter_references(expression)]
        assert refs == ["store.host", "container.container", "app.default_hostname"]

    def test_is_static(self) -> None:
        assert is_static(parse("st${id.dec}"))
        assert is_static(parse("${location}"))
        assert is_static(parse(["a", {"b": "${id.hex}"}]))
        assert not is_static(parse("${store.host}"))
        assert not is_static(parse("${secret.KEY}"))
        assert not is_static(parse({"credentialWindow": {"hours": 1}}))
