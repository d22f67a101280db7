"""Attribute expressions.

Declarations describe attribute values as plain YAML scalars, lists and
mappings. Strings may embed `${...}` markers:

    ${id.dec}                  run identifier (dec, hex or b64_url)
    ${location}                target region of the run
    ${secret.NAME}             run-scoped secret, resolved at apply time
    ${store.primary_blob_host} output attribute of another resource
    ${store.properties.sku}    nested key inside an output attribute

`$${` produces a literal `${`. A mapping of the form
`{credentialWindow: {hours: 24}}` requests a time-bounded credential window
computed when the consuming resource is applied.

Parsing is purely syntactic. Whether a reference points at a declared
output is checked by the graph builder, and values are produced by the
resolver.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Union

from .credentials import parse_validity
from .identifier import IDENTIFIER_RENDERINGS

# Marker roots that are not resource names
IDENTIFIER_ROOT = "id"
LOCATION_ROOT = "location"
SECRET_ROOT = "secret"
RESERVED_ROOTS: frozenset[str] = frozenset({IDENTIFIER_ROOT, LOCATION_ROOT, SECRET_ROOT})

WINDOW_KEY = "credentialWindow"

_SEGMENT_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")


class ExpressionError(ValueError):
    """Raised when an attribute expression is syntactically invalid."""

    pass


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class IdentifierRef:
    rendering: str


@dataclass(frozen=True)
class LocationRef:
    pass


@dataclass(frozen=True)
class SecretRef:
    name: str


@dataclass(frozen=True)
class ResourceRef:
    """Reference to an output attribute of another resource."""

    resource: str
    attribute: str
    path: tuple[str, ...] = ()

    def __str__(self) -> str:
        return ".".join((self.resource, self.attribute, *self.path))


@dataclass(frozen=True)
class Template:
    """String built from literal text and resolved sub-expressions, in order."""

    parts: tuple[Union[str, "Expression"], ...]


@dataclass(frozen=True)
class ListExpr:
    items: tuple["Expression", ...]


@dataclass(frozen=True)
class MapExpr:
    items: tuple[tuple[str, "Expression"], ...]


@dataclass(frozen=True)
class WindowExpr:
    validity: timedelta


Expression = Union[
    Literal,
    IdentifierRef,
    LocationRef,
    SecretRef,
    ResourceRef,
    Template,
    ListExpr,
    MapExpr,
    WindowExpr,
]


def parse(value: Any) -> Expression:
    """Parse a raw declaration value into an expression tree.

    Raises:
        ExpressionError: On malformed markers or window mappings.
    """
    if isinstance(value, str):
        return _parse_string(value)

    if isinstance(value, list | tuple):
        return ListExpr(tuple(parse(item) for item in value))

    if isinstance(value, dict):
        if WINDOW_KEY in value:
            return _parse_window(value)
        items = []
        for key, item in value.items():
            if not isinstance(key, str):
                raise ExpressionError(f"Mapping keys must be strings: {key!r}")
            items.append((key, parse(item)))
        return MapExpr(tuple(items))

    return Literal(value)


def _parse_window(value: dict[str, Any]) -> WindowExpr:
    if len(value) != 1:
        raise ExpressionError(f"'{WINDOW_KEY}' must be the only key of its mapping")
    spec = value[WINDOW_KEY]
    if not isinstance(spec, dict) or not spec:
        raise ExpressionError(f"'{WINDOW_KEY}' needs a mapping of units, e.g. {{hours: 24}}")
    try:
        return WindowExpr(parse_validity(spec))
    except (TypeError, ValueError) as e:
        raise ExpressionError(f"Invalid {WINDOW_KEY}: {e}") from e


def _parse_string(text: str) -> Expression:
    parts: list[str | Expression] = []
    buffer: list[str] = []
    i = 0

    while i < len(text):
        if text.startswith("$${", i):
            buffer.append("${")
            i += 3
            continue
        if text.startswith("${", i):
            end = text.find("}", i + 2)
            if end == -1:
                raise ExpressionError(f"Unterminated '${{' in {text!r}")
            if buffer:
                parts.append("".join(buffer))
                buffer = []
            parts.append(_parse_marker(text[i + 2 : end].strip(), text))
            i = end + 1
            continue
        buffer.append(text[i])
        i += 1

    if buffer:
        parts.append("".join(buffer))

    if not parts:
        return Literal("")
    if len(parts) == 1:
        only = parts[0]
        return Literal(only) if isinstance(only, str) else only
    return Template(tuple(parts))


def _parse_marker(marker: str, source: str) -> Expression:
    segments = marker.split(".")
    for segment in segments:
        if not _SEGMENT_PATTERN.match(segment):
            raise ExpressionError(f"Invalid reference '${{{marker}}}' in {source!r}")

    root, rest = segments[0], segments[1:]

    match root:
        case "id":
            if len(rest) != 1 or rest[0] not in IDENTIFIER_RENDERINGS:
                raise ExpressionError(
                    f"'${{{marker}}}' must be one of "
                    f"{[f'id.{r}' for r in IDENTIFIER_RENDERINGS]}"
                )
            return IdentifierRef(rest[0])
        case "location":
            if rest:
                raise ExpressionError(f"'${{location}}' takes no attribute: '${{{marker}}}'")
            return LocationRef()
        case "secret":
            if len(rest) != 1:
                raise ExpressionError(f"'${{{marker}}}' must name exactly one secret")
            return SecretRef(rest[0])
        case _:
            if not rest:
                raise ExpressionError(
                    f"'${{{marker}}}' must reference an attribute, e.g. '${{{root}.id}}'"
                )
            return ResourceRef(resource=root, attribute=rest[0], path=tuple(rest[1:]))


def iter_references(expression: Expression) -> Iterator[ResourceRef]:
    """Yield every resource reference contained in an expression."""
    match expression:
        case ResourceRef():
            yield expression
        case Template(parts=parts):
            for part in parts:
                if not isinstance(part, str):
                    yield from iter_references(part)
        case ListExpr(items=items):
            for item in items:
                yield from iter_references(item)
        case MapExpr(items=items):
            for _, item in items:
                yield from iter_references(item)


def is_static(expression: Expression) -> bool:
    """True when the expression needs no other resource, secret or clock."""
    match expression:
        case Literal() | IdentifierRef() | LocationRef():
            return True
        case Template(parts=parts):
            return all(isinstance(part, str) or is_static(part) for part in parts)
        case ListExpr(items=items):
            return all(is_static(item) for item in items)
        case MapExpr(items=items):
            return all(is_static(item) for _, item in items)
        case _:
            return False
