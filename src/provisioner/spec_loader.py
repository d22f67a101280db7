"""Declaration file loading with validation.

SECURITY: File reads enforce a size limit and YAML is parsed with
safe_load only. Input validation is performed at the boundary.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_DECLARATION_FILE_SIZE_BYTES
from .models import DeploymentDeclaration

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when a declaration cannot be loaded or fails validation."""

    pass


def parse_declaration(raw_data: Any, source: str = "<declaration>") -> DeploymentDeclaration:
    """Validate already-parsed declaration data.

    Supports both the flat format and a Kubernetes-style wrapper with
    apiVersion/kind/spec, in which case the spec section is used.

    Raises:
        SpecLoadError: If the data is not a valid declaration.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Declaration must be a mapping: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
    else:
        spec_data = raw_data

    try:
        return DeploymentDeclaration.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e


def load_declaration(path: Path) -> tuple[DeploymentDeclaration, str]:
    """Load and validate a declaration file.

    Args:
        path: YAML (or JSON) declaration file.

    Returns:
        The validated declaration and the SHA256 hex digest of the file,
        recorded in run provenance.

    Raises:
        SpecLoadError: If the file cannot be read or fails validation.
    """
    if not path.exists():
        raise SpecLoadError(f"Declaration file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat declaration file {path}: {e}") from e

    if file_size > MAX_DECLARATION_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Declaration file exceeds maximum size of "
            f"{MAX_DECLARATION_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read declaration file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    declaration = parse_declaration(raw_data, str(path))
    digest = hashlib.sha256(content.encode("utf-8")).hexdigest()

    logger.info(
        "Loaded declaration from %s (%d resources)",
        path,
        len(declaration.resources),
    )
    return declaration, digest
