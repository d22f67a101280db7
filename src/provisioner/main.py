"""Process entry point: logging, driver wiring and run execution.

The `provisioner` command (cli.py) and the container entry point (`run`)
share everything here. The container entry point applies the declaration
named by PROVISIONER_DECLARATION using environment configuration only.
When PROVISIONER_RECORD names a run record, an existing record is a re-run
(its identifier and location are reused) and the result is written back.

Exit codes:
    0  every resource applied (or destroyed)
    1  a resource failed, was skipped or the run was cancelled
    2  the declaration, graph or configuration was rejected before any apply
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO

from .azure_drivers import register_azure_drivers
from .config import ConfigurationError, EngineConfig
from .drivers import DriverRegistry, NamingError, RetryPolicy, UnknownKindError
from .engine import Deployment
from .executor import RunResult, RunStatus
from .expressions import ExpressionError
from .graph import GraphError
from .identifier import Identifier
from .outputs import OutputCollectionError
from .resolver import UnresolvedReferenceError
from .script_driver import ScriptDriver
from .security import (
    EnvironmentSecretStore,
    SecretlessViolationError,
    get_managed_identity_credential,
)
from .spec_loader import SpecLoadError, load_declaration

EXIT_APPLIED = 0
EXIT_FAILED = 1
EXIT_BUILD_ERROR = 2

DEFAULT_STATE_DIR = ".provisioner"

# Raised before anything remote is touched
BUILD_ERRORS: tuple[type[Exception], ...] = (
    SpecLoadError,
    ConfigurationError,
    GraphError,
    UnknownKindError,
    UnresolvedReferenceError,
    ExpressionError,
    NamingError,
    SecretlessViolationError,
)

# LogRecord attributes that are not structured `extra` fields
_RESERVED_LOG_ATTRS = frozenset(
    {
        "name", "msg", "args", "created", "filename", "funcName", "levelname",
        "levelno", "lineno", "module", "msecs", "pathname", "process",
        "processName", "relativeCreated", "stack_info", "exc_info", "exc_text",
        "thread", "threadName", "taskName", "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO, stream: TextIO | None = None) -> None:
    """Configure structured logging with JSON output (stdout unless `stream` is given)."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def state_dir() -> Path:
    """Directory for driver state such as script stamps."""
    return Path(os.environ.get("PROVISIONER_STATE_DIR", DEFAULT_STATE_DIR))


def build_registry(config: EngineConfig, *, script_state_dir: Path | None = None) -> DriverRegistry:
    """Register the built-in drivers.

    Azure drivers are registered only when a subscription is configured;
    declarations using azure.* kinds then fail validation with
    UnknownKindError instead of failing at apply time.

    Raises:
        SecretlessViolationError: If credential secrets are in the environment.
    """
    retry = RetryPolicy.from_config(config)
    registry = DriverRegistry()
    registry.register("script", ScriptDriver(script_state_dir or state_dir(), retry))

    if config.subscription_id:
        credential = get_managed_identity_credential(os.environ.get("AZURE_CLIENT_ID"))
        register_azure_drivers(registry, credential, config.subscription_id, retry)

    return registry


def exit_code(result: RunResult) -> int:
    return EXIT_APPLIED if result.status == RunStatus.APPLIED else EXIT_FAILED


async def run_with_signals(
    deployment: Deployment,
    operation: Callable[[], Awaitable[RunResult]],
) -> RunResult:
    """Run an apply/destroy with SIGINT/SIGTERM wired to cancellation.

    The first signal stops dispatch of further batches; a second one also
    aborts applies that are in flight.
    """
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()
    received: list[signal.Signals] = []

    def signal_handler(sig: signal.Signals) -> None:
        received.append(sig)
        logger.info("Received signal", extra={"signal": sig.name, "count": len(received)})
        deployment.cancel(abort_in_flight=len(received) > 1)

    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not on the main thread or not supported on this platform
            logger.debug("Signal handler not installed", extra={"signal": sig.name})

    try:
        return await operation()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def write_record(result: RunResult, path: Path) -> None:
    """Persist a RunResult as JSON for later re-runs and destroy."""
    path.write_text(json.dumps(result.to_dict(), indent=2, default=str), encoding="utf-8")


def read_record(path: Path) -> RunResult:
    """Load a RunResult written by `write_record`.

    Raises:
        SpecLoadError: If the file is missing or malformed.
    """
    try:
        return RunResult.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except FileNotFoundError as e:
        raise SpecLoadError(f"Run record not found: {path}") from e
    except (OSError, ValueError, KeyError) as e:
        raise SpecLoadError(f"Invalid run record {path}: {e}") from e


def recorded_identifier(previous: RunResult, path: Path) -> Identifier:
    """Identifier of a recorded run, reused so that re-runs converge.

    Raises:
        SpecLoadError: If the record carries no valid identifier.
    """
    try:
        value = bytes.fromhex(previous.identifier)
    except ValueError as e:
        raise SpecLoadError(f"Run record has no valid identifier: {path}") from e
    if not value:
        raise SpecLoadError(f"Run record has no valid identifier: {path}")
    return Identifier(value)


async def main() -> int:
    """Apply the declaration named by PROVISIONER_DECLARATION.

    Returns:
        Exit code (see module docstring).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    declaration_path = os.environ.get("PROVISIONER_DECLARATION")
    if not declaration_path:
        logger.error("PROVISIONER_DECLARATION is not set")
        return EXIT_BUILD_ERROR

    record_path = os.environ.get("PROVISIONER_RECORD")
    record = Path(record_path) if record_path else None

    try:
        config = EngineConfig.from_env()
        declaration, digest = load_declaration(Path(declaration_path))
        previous = read_record(record) if record is not None and record.exists() else None
        identifier = None
        if previous is not None:
            identifier = recorded_identifier(previous, record)
            logger.info(
                "Re-running recorded deployment",
                extra={"record": str(record), "identifier": previous.identifier},
            )
        deployment = Deployment(
            declaration,
            build_registry(config),
            config=config,
            location=previous.location if previous is not None else None,
            identifier=identifier,
            secrets=EnvironmentSecretStore(),
            declaration_hash=digest,
        )
        deployment.prepare()
    except SecretlessViolationError as e:
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_BUILD_ERROR
    except BUILD_ERRORS as e:
        logger.error(
            "Declaration rejected",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return EXIT_BUILD_ERROR

    try:
        result = await run_with_signals(deployment, deployment.apply)
    except OutputCollectionError as e:
        logger.error("Output collection failed", extra={"failures": e.failures})
        if record is not None and e.result is not None:
            write_record(e.result, record)
        return EXIT_FAILED

    if record is not None:
        write_record(result, record)

    logger.info(
        "Run finished",
        extra={
            "status": result.status.value,
            "applied": result.applied,
            "failed": result.failed,
            "skipped": result.skipped,
            "outputs": sorted(result.outputs),
        },
    )
    return exit_code(result)


def run() -> None:
    """Container entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
