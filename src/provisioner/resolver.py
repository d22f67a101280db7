"""Attribute resolution.

Expressions are evaluated lazily, one resource at a time, immediately before
the resource's driver is invoked. A reference to another resource's output
is only resolvable once that resource has reached APPLIED; anything earlier
is a programming error in the scheduler and fails loudly.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from .credentials import window
from .expressions import (
    Expression,
    IdentifierRef,
    ListExpr,
    Literal,
    LocationRef,
    MapExpr,
    ResourceRef,
    SecretRef,
    Template,
    WindowExpr,
)
from .identifier import Identifier
from .models import ResourceState
from .security import SecretNotFoundError, SecretStore

logger = logging.getLogger(__name__)


class UnresolvedReferenceError(Exception):
    """Raised when an expression cannot be resolved to a concrete value."""

    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ResolutionContext:
    """Everything an expression may draw on during one run.

    The identifier and location are fixed for the run. The outputs table and
    state map are filled in by the executor as resources are applied; each
    resource's entry is written by exactly one applier.
    """

    identifier: Identifier
    location: str | None = None
    secrets: SecretStore | None = None
    clock: Callable[[], datetime] = _utcnow
    clock_skew: timedelta = timedelta(0)
    outputs: dict[str, Mapping[str, Any]] = field(default_factory=dict)
    states: dict[str, ResourceState] = field(default_factory=dict)

    def record_outputs(self, resource: str, outputs: Mapping[str, Any]) -> None:
        self.outputs[resource] = dict(outputs)
        self.states[resource] = ResourceState.APPLIED


def resolve(expression: Expression, context: ResolutionContext) -> Any:
    """Resolve an expression to a concrete value.

    Args:
        expression: Parsed expression tree.
        context: Run-scoped resolution context.

    Returns:
        The resolved value. Templates always produce strings; a lone
        reference keeps the type of the referenced value.

    Raises:
        UnresolvedReferenceError: If any part of the expression cannot be
            resolved (producer not applied, missing output key, missing
            secret, unset location).
    """
    match expression:
        case Literal(value=value):
            return value
        case IdentifierRef(rendering=rendering):
            return context.identifier.render(rendering)
        case LocationRef():
            if not context.location:
                raise UnresolvedReferenceError("${location} used but the run has no location")
            return context.location
        case SecretRef(name=name):
            return _resolve_secret(name, context)
        case ResourceRef():
            return _resolve_reference(expression, context)
        case WindowExpr(validity=validity):
            credential_window = window(context.clock(), validity, context.clock_skew)
            logger.debug(
                "Computed credential window",
                extra={"start": credential_window.start_text, "expiry": credential_window.expiry_text},
            )
            return credential_window
        case Template(parts=parts):
            rendered: list[str] = []
            for part in parts:
                if isinstance(part, str):
                    rendered.append(part)
                    continue
                value = resolve(part, context)
                if value is None:
                    raise UnresolvedReferenceError(
                        f"Template value {_describe(part)} resolved to null"
                    )
                rendered.append(str(value))
            return "".join(rendered)
        case ListExpr(items=items):
            return [resolve(item, context) for item in items]
        case MapExpr(items=items):
            return {key: resolve(item, context) for key, item in items}
        case _:
            raise UnresolvedReferenceError(f"Unsupported expression: {expression!r}")


def resolve_attributes(
    attributes: Mapping[str, Expression], context: ResolutionContext
) -> dict[str, Any]:
    """Resolve every attribute of a resource."""
    return {key: resolve(expression, context) for key, expression in attributes.items()}


def _resolve_secret(name: str, context: ResolutionContext) -> Any:
    if context.secrets is None:
        raise UnresolvedReferenceError(f"${{secret.{name}}} used but no secret store is configured")
    try:
        return context.secrets.get(name)
    except SecretNotFoundError as e:
        raise UnresolvedReferenceError(str(e)) from e


def _resolve_reference(ref: ResourceRef, context: ResolutionContext) -> Any:
    state = context.states.get(ref.resource, ResourceState.DECLARED)
    if state != ResourceState.APPLIED:
        raise UnresolvedReferenceError(
            f"Reference '{ref}' resolved before '{ref.resource}' was applied "
            f"(state: {state.value})"
        )

    outputs = context.outputs.get(ref.resource, {})
    if ref.attribute not in outputs:
        raise UnresolvedReferenceError(
            f"Resource '{ref.resource}' did not produce output '{ref.attribute}' "
            f"(available: {sorted(outputs)})"
        )

    value = outputs[ref.attribute]
    walked = [ref.resource, ref.attribute]
    for key in ref.path:
        walked.append(key)
        if not isinstance(value, Mapping) or key not in value:
            raise UnresolvedReferenceError(f"Output path '{'.'.join(walked)}' does not exist")
        value = value[key]
    return value


def _describe(expression: Expression) -> str:
    match expression:
        case ResourceRef():
            return f"'${{{expression}}}'"
        case SecretRef(name=name):
            return f"'${{secret.{name}}}'"
        case _:
            return type(expression).__name__
