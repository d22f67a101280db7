"""Pydantic models for deployment declarations with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation into runtime Resource objects for the graph
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import DEFAULT_IDENTIFIER_BYTES, MAX_RESOURCES_PER_RUN, MIN_IDENTIFIER_BYTES
from .expressions import RESERVED_ROOTS, Expression, ExpressionError, parse

# Logical names double as the root of ${name.attribute} references
VALID_LOGICAL_NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_-]{0,63}$"
VALID_KIND_PATTERN = r"^[a-z][a-z0-9_.-]{0,127}$"


class ResourceState(str, Enum):
    """Lifecycle state of a resource within one run."""

    DECLARED = "declared"
    PENDING = "pending"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"


# =============================================================================
# Runtime model
# =============================================================================


@dataclass
class Resource:
    """A declared unit of infrastructure, owned by the graph during a run."""

    kind: str
    name: str
    attributes: dict[str, Expression] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    outputs: frozenset[str] = frozenset()
    state: ResourceState = ResourceState.DECLARED

    def __str__(self) -> str:
        return f"{self.kind}/{self.name}"


# =============================================================================
# Declaration models
# =============================================================================


class ResourceDeclaration(BaseModel):
    """One resource as written in a declaration file."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    kind: Annotated[str, Field(min_length=1)]
    name: Annotated[str, Field(min_length=1)]
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    # Attribute names this resource exposes to references and outputs
    outputs: list[str] = Field(default_factory=list)

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if not re.match(VALID_KIND_PATTERN, v):
            raise ValueError(f"kind must match pattern {VALID_KIND_PATTERN}: {v}")
        return v

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not re.match(VALID_LOGICAL_NAME_PATTERN, v):
            raise ValueError(f"name must match pattern {VALID_LOGICAL_NAME_PATTERN}: {v}")
        if v in RESERVED_ROOTS:
            raise ValueError(f"name '{v}' is reserved for {sorted(RESERVED_ROOTS)} references")
        return v

    @field_validator("attributes")
    @classmethod
    def validate_attributes(cls, v: dict[str, Any]) -> dict[str, Any]:
        for key, value in v.items():
            try:
                parse(value)
            except ExpressionError as e:
                raise ValueError(f"attribute '{key}': {e}") from e
        return v

    @field_validator("outputs")
    @classmethod
    def validate_outputs(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("outputs must not contain duplicates")
        return v

    def to_resource(self) -> Resource:
        """Convert to the runtime Resource used by the graph."""
        return Resource(
            kind=self.kind,
            name=self.name,
            attributes={key: parse(value) for key, value in self.attributes.items()},
            depends_on=list(self.depends_on),
            outputs=frozenset(self.outputs),
        )


class DeploymentDeclaration(BaseModel):
    """A complete declared deployment: resources plus designated outputs."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    location: str | None = None
    seed: int | None = None
    identifier_bytes: Annotated[int, Field(ge=MIN_IDENTIFIER_BYTES, le=16)] = Field(
        DEFAULT_IDENTIFIER_BYTES, alias="identifierBytes"
    )
    resources: list[ResourceDeclaration] = Field(default_factory=list)

    # Designated output name -> expression evaluated after a successful apply
    outputs: dict[str, Any] = Field(default_factory=dict)

    @field_validator("resources")
    @classmethod
    def validate_resource_count(cls, v: list[ResourceDeclaration]) -> list[ResourceDeclaration]:
        if len(v) > MAX_RESOURCES_PER_RUN:
            raise ValueError(f"at most {MAX_RESOURCES_PER_RUN} resources per run, got {len(v)}")
        return v

    @field_validator("outputs")
    @classmethod
    def validate_output_expressions(cls, v: dict[str, Any]) -> dict[str, Any]:
        for key, value in v.items():
            try:
                parse(value)
            except ExpressionError as e:
                raise ValueError(f"output '{key}': {e}") from e
        return v

    @model_validator(mode="after")
    def validate_unique_names(self) -> DeploymentDeclaration:
        seen: set[str] = set()
        duplicates: list[str] = []
        for resource in self.resources:
            if resource.name in seen:
                duplicates.append(resource.name)
            seen.add(resource.name)
        if duplicates:
            raise ValueError(f"resource names must be unique, duplicated: {sorted(set(duplicates))}")
        return self

    def to_resources(self) -> list[Resource]:
        """Runtime resources in declaration order."""
        return [declaration.to_resource() for declaration in self.resources]

    def output_expressions(self) -> dict[str, Expression]:
        return {key: parse(value) for key, value in self.outputs.items()}
