"""Tests for the script (data-population) driver."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any

import pytest

from fake_cloud import FAST_RETRY
from provisioner.drivers import ApplyAction, DriverError
from provisioner.models import Resource
from provisioner.script_driver import ScriptDriver, digest

COUNTING_SCRIPT = (
    "import pathlib; p = pathlib.Path('runs.txt'); "
    "p.write_text((p.read_text() if p.exists() else '') + 'x')"
)

resource = Resource(kind="script", name="seed")


@pytest.fixture
def driver(tmp_path: Path) -> ScriptDriver:
    return ScriptDriver(tmp_path / "state", FAST_RETRY)


def counting(tmp_path: Path, **extra: Any) -> dict[str, Any]:
    return {"command": [sys.executable, "-c", COUNTING_SCRIPT], "cwd": str(tmp_path), **extra}


def runs(tmp_path: Path) -> int:
    path = tmp_path / "runs.txt"
    return len(path.read_text()) if path.exists() else 0


class TestDigest:
    """Tests for digest()."""

    def test_stable(self) -> None:
        attributes = {"command": ["seed"], "env": {"A": "1"}}
        assert digest(attributes) == digest(dict(attributes))

    def test_env_changes_digest(self) -> None:
        assert digest({"command": ["seed"], "env": {"A": "1"}}) != digest(
            {"command": ["seed"], "env": {"A": "2"}}
        )


class TestScriptDriver:
    """Tests for ScriptDriver."""

    @pytest.mark.asyncio
    async def test_runs_once_for_unchanged_command(
        self, driver: ScriptDriver, tmp_path: Path
    ) -> None:
        first = await driver.apply(resource, counting(tmp_path))
        second = await driver.apply(resource, counting(tmp_path))

        assert first.action == ApplyAction.CREATED
        assert second.action == ApplyAction.UNCHANGED
        assert second.outputs["digest"] == first.outputs["digest"]
        assert runs(tmp_path) == 1

    @pytest.mark.asyncio
    async def test_changed_env_runs_again(self, driver: ScriptDriver, tmp_path: Path) -> None:
        await driver.apply(resource, counting(tmp_path, env={"TARGET": "a"}))
        result = await driver.apply(resource, counting(tmp_path, env={"TARGET": "b"}))

        assert result.action == ApplyAction.UPDATED
        assert runs(tmp_path) == 2

    @pytest.mark.asyncio
    async def test_env_and_stdout(self, driver: ScriptDriver, tmp_path: Path) -> None:
        attributes = {
            "command": [sys.executable, "-c", "import os; print(os.environ['SEED_URL'])"],
            "env": {"SEED_URL": "https://st12345.blob.core.windows.net/data"},
        }

        result = await driver.apply(resource, attributes)

        assert result.outputs["stdout"] == "https://st12345.blob.core.windows.net/data"

    @pytest.mark.asyncio
    async def test_string_command_is_split(self, driver: ScriptDriver, tmp_path: Path) -> None:
        attributes = {"command": f"'{sys.executable}' -c \"print('hello world')\""}

        result = await driver.apply(resource, attributes)

        assert result.outputs["stdout"] == "hello world"

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails_with_stderr(self, driver: ScriptDriver) -> None:
        failing = "import sys; sys.stderr.write('bad seed'); sys.exit(3)"
        attributes = {"command": [sys.executable, "-c", failing]}

        with pytest.raises(DriverError) as exc_info:
            await driver.apply(resource, attributes)

        assert "exit code 3" in str(exc_info.value)
        assert "bad seed" in str(exc_info.value)
        assert not exc_info.value.retryable
        assert await driver.read(resource, attributes) is None

    @pytest.mark.asyncio
    async def test_command_not_found(self, driver: ScriptDriver) -> None:
        with pytest.raises(DriverError, match="command not found"):
            await driver.apply(resource, {"command": ["definitely-not-a-real-command-xyz"]})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("command", [None, "", "   ", []])
    async def test_command_required(self, driver: ScriptDriver, command: Any) -> None:
        with pytest.raises(DriverError, match="non-empty 'command'"):
            await driver.apply(resource, {"command": command})

    @pytest.mark.asyncio
    async def test_unreadable_stamp_runs_again(
        self, driver: ScriptDriver, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        await driver.apply(resource, counting(tmp_path))
        (tmp_path / "state" / "seed.stamp.json").write_text("{not json", encoding="utf-8")

        with caplog.at_level(logging.WARNING):
            result = await driver.apply(resource, counting(tmp_path))

        assert result.action == ApplyAction.CREATED
        assert runs(tmp_path) == 2
        assert "Ignoring unreadable stamp file" in caplog.text

    @pytest.mark.asyncio
    async def test_destroy_removes_stamp(self, driver: ScriptDriver, tmp_path: Path) -> None:
        await driver.apply(resource, counting(tmp_path))

        assert await driver.destroy(resource, counting(tmp_path)) is True
        assert not (tmp_path / "state" / "seed.stamp.json").exists()
        assert await driver.destroy(resource, counting(tmp_path)) is False
