"""Data-population driver.

Runs an external command (seeding a database, uploading blobs) as an
ordinary resource, so it is scheduled after the resources it references
and skipped when they fail.

Idempotency comes from a stamp file per resource holding a digest of the
resolved command and environment: an unchanged command is not run again,
a changed one is.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shlex
import subprocess
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .drivers import Driver, DriverError, RetryPolicy, run_blocking
from .models import Resource

logger = logging.getLogger(__name__)

# Command timeout (seconds); the driver-level operation timeout still applies
COMMAND_TIMEOUT_SECONDS = 600
# Tail of stderr kept in error messages
STDERR_TAIL_CHARS = 2000


def _command(resource: Resource, attributes: Mapping[str, Any]) -> list[str]:
    command = attributes.get("command")
    if isinstance(command, str) and command.strip():
        return shlex.split(command)
    if isinstance(command, list) and command:
        return [str(part) for part in command]
    raise DriverError(f"Resource '{resource.name}' (script) requires a non-empty 'command'")


def digest(attributes: Mapping[str, Any]) -> str:
    """SHA256 over the resolved command, environment and working directory."""
    material = {
        "command": attributes.get("command"),
        "env": {str(k): str(v) for k, v in (attributes.get("env") or {}).items()},
        "cwd": str(attributes.get("cwd") or ""),
    }
    encoded = json.dumps(material, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


class ScriptDriver(Driver):
    """Driver for kind `script`.

    Attributes:
        command: Argument list or shell-style string (no shell is spawned)
        env: Extra environment variables; may carry ${secret.NAME} values
        cwd: Working directory
    """

    naming = None

    def __init__(self, state_dir: Path, retry: RetryPolicy | None = None) -> None:
        super().__init__(retry)
        self._state_dir = state_dir

    def _stamp_path(self, resource: Resource) -> Path:
        return self._state_dir / f"{resource.name}.stamp.json"

    async def read(self, resource: Resource, attributes: Mapping[str, Any]) -> dict[str, Any] | None:
        stamp = self._stamp_path(resource)
        if not stamp.exists():
            return None
        try:
            return json.loads(stamp.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(
                "Ignoring unreadable stamp file",
                extra={"resource": resource.name, "path": str(stamp), "error": str(e)},
            )
            return None

    def needs_update(self, attributes: Mapping[str, Any], current: Mapping[str, Any]) -> bool:
        return current.get("digest") != digest(attributes)

    async def create(self, resource: Resource, attributes: Mapping[str, Any]) -> dict[str, Any]:
        cmd = _command(resource, attributes)
        env = os.environ.copy()
        env.update({str(k): str(v) for k, v in (attributes.get("env") or {}).items()})
        cwd = attributes.get("cwd") or None

        logger.info("Running script", extra={"resource": resource.name, "program": cmd[0]})
        try:
            result = await run_blocking(
                subprocess.run,
                cmd,
                cwd=cwd,
                env=env,
                timeout=COMMAND_TIMEOUT_SECONDS,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as e:
            raise DriverError(f"Script '{resource.name}': command not found: {cmd[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise DriverError(
                f"Script '{resource.name}' timed out after {COMMAND_TIMEOUT_SECONDS}s",
                retryable=True,
            ) from e

        if result.returncode != 0:
            stderr = (result.stderr or "")[-STDERR_TAIL_CHARS:]
            raise DriverError(
                f"Script '{resource.name}' failed with exit code {result.returncode}: {stderr}"
            )

        outputs = {
            "digest": digest(attributes),
            "completed_at": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "stdout": (result.stdout or "").strip(),
        }
        self._state_dir.mkdir(parents=True, exist_ok=True)
        self._stamp_path(resource).write_text(json.dumps(outputs), encoding="utf-8")
        return outputs

    async def delete(self, resource: Resource, attributes: Mapping[str, Any]) -> None:
        # Populated data goes away with its target resource; only the stamp is ours
        self._stamp_path(resource).unlink(missing_ok=True)
