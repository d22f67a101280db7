"""Tests for declaration file loading."""

from __future__ import annotations

import hashlib
from pathlib import Path
from unittest.mock import patch

import pytest

from provisioner.spec_loader import SpecLoadError, load_declaration, parse_declaration

DECLARATION = """\
location: westeurope
seed: 7
resources:
  - kind: fake.storage_account
    name: store
    attributes:
      name: st${id.dec}
    outputs: [primary_blob_host]
outputs:
  host: ${store.primary_blob_host}
"""


class TestParseDeclaration:
    """Tests for parse_declaration()."""

    def test_flat_format(self) -> None:
        declaration = parse_declaration({"location": "westeurope"})
        assert declaration.location == "westeurope"

    def test_kubernetes_wrapper(self) -> None:
        declaration = parse_declaration(
            {
                "apiVersion": "provisioner/v1",
                "kind": "Deployment",
                "spec": {"location": "northeurope", "resources": []},
            }
        )
        assert declaration.location == "northeurope"

    def test_not_a_mapping(self) -> None:
        with pytest.raises(SpecLoadError, match="must be a mapping"):
            parse_declaration(["not", "a", "mapping"])

    def test_validation_errors_are_listed(self) -> None:
        with pytest.raises(SpecLoadError) as exc_info:
            parse_declaration({"resources": [{"kind": "fake.resource"}]}, "deploy.yaml")
        message = str(exc_info.value)
        assert "deploy.yaml" in message
        assert "resources.0.name" in message


class TestLoadDeclaration:
    """Tests for load_declaration()."""

    def test_loads_and_hashes(self, tmp_path: Path) -> None:
        path = tmp_path / "deploy.yaml"
        path.write_text(DECLARATION, encoding="utf-8")

        declaration, digest = load_declaration(path)

        assert declaration.location == "westeurope"
        assert declaration.seed == 7
        assert declaration.resources[0].outputs == ["primary_blob_host"]
        assert declaration.outputs == {"host": "${store.primary_blob_host}"}
        assert digest == hashlib.sha256(DECLARATION.encode("utf-8")).hexdigest()

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(SpecLoadError, match="not found"):
            load_declaration(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.yaml"
        path.write_text("resources: [unclosed", encoding="utf-8")
        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            load_declaration(path)

    def test_size_limit(self, tmp_path: Path) -> None:
        path = tmp_path / "deploy.yaml"
        path.write_text(DECLARATION, encoding="utf-8")
        with patch("provisioner.spec_loader.MAX_DECLARATION_FILE_SIZE_BYTES", 10):
            with pytest.raises(SpecLoadError, match="exceeds maximum size"):
                load_declaration(path)
