"""Resource driver interface and registry.

A driver translates a Resource into calls against one remote system. The
engine never talks to a remote API itself; it looks up the driver for a
resource's kind and calls `apply` (or `destroy`) with fully resolved
attributes.

IDEMPOTENCY CONTRACT:
`apply` reads the remote object first and only creates or updates when the
remote state differs from the desired state. Applying a resource that is
already converged returns its current outputs and performs no write.

RETRY CONTRACT:
Retryable DriverErrors (throttling, transient 5xx, timeouts) are retried
here with bounded exponential backoff and jitter. The executor never
retries; whatever escapes `apply` is final for the run.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from .config import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_OPERATION_TIMEOUT_SECONDS,
    DEFAULT_RETRY_BACKOFF_SECONDS,
    EngineConfig,
)
from .models import Resource

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DriverError(Exception):
    """Raised when a remote system rejects or fails an operation."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class UnknownKindError(LookupError):
    """Raised when no driver is registered for a resource kind."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown resource kind"


class NamingError(ValueError):
    """Raised when a generated resource name violates the target's naming rules."""

    pass


class ApplyAction(str, Enum):
    """What a driver did to converge a resource."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DELETED = "deleted"


@dataclass
class DriverResult:
    """Outputs of a successful apply plus the action taken."""

    outputs: dict[str, Any] = field(default_factory=dict)
    action: ApplyAction = ApplyAction.UNCHANGED


@dataclass(frozen=True)
class NamingRule:
    """Naming constraints of the target system for the `name` attribute."""

    pattern: str
    min_length: int = 1
    max_length: int = 63
    description: str = ""

    def violations(self, name: str) -> list[str]:
        problems: list[str] = []
        if not (self.min_length <= len(name) <= self.max_length):
            problems.append(
                f"length {len(name)} outside {self.min_length}-{self.max_length}"
            )
        if not re.fullmatch(self.pattern, name):
            problems.append(self.description or f"must match {self.pattern}")
        return problems

    def check(self, name: str, resource: str) -> None:
        """Raises NamingError describing every violated constraint."""
        problems = self.violations(name)
        if problems:
            raise NamingError(f"Name '{name}' of resource '{resource}' is invalid: {'; '.join(problems)}")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for retryable driver errors."""

    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS
    timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS

    @classmethod
    def from_config(cls, config: EngineConfig) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            backoff_base_seconds=config.retry_backoff_seconds,
            timeout_seconds=config.operation_timeout_seconds,
        )

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based), with up to 20% jitter."""
        base = self.backoff_base_seconds * (2 ** (attempt - 1))
        return base + random.uniform(0, base * 0.2)


async def run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a synchronous SDK call in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


class Driver(ABC):
    """Base class for resource drivers.

    Subclasses implement the capability set (read, create, update, delete)
    and optionally `needs_update`. `apply` and `destroy` combine them into
    idempotent, retried operations.
    """

    naming: NamingRule | None = None
    # Output keys masked when apply records are persisted
    sensitive_outputs: frozenset[str] = frozenset()

    def __init__(self, retry: RetryPolicy | None = None) -> None:
        self._retry = retry or RetryPolicy()

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    @abstractmethod
    async def read(self, resource: Resource, attributes: Mapping[str, Any]) -> dict[str, Any] | None:
        """Return the current outputs of the remote object, or None if absent."""

    @abstractmethod
    async def create(self, resource: Resource, attributes: Mapping[str, Any]) -> dict[str, Any]:
        """Create the remote object and return its outputs."""

    async def update(
        self,
        resource: Resource,
        attributes: Mapping[str, Any],
        current: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Converge an existing remote object. Defaults to create-or-update."""
        return await self.create(resource, attributes)

    async def delete(self, resource: Resource, attributes: Mapping[str, Any]) -> None:
        raise DriverError(f"{type(self).__name__} does not support delete")

    def needs_update(self, attributes: Mapping[str, Any], current: Mapping[str, Any]) -> bool:
        """Whether an existing object differs from the desired attributes."""
        return False

    async def apply(self, resource: Resource, attributes: Mapping[str, Any]) -> DriverResult:
        """Idempotently converge the remote object to `attributes`.

        Raises:
            DriverError: When the operation fails after retries.
        """

        async def converge() -> DriverResult:
            current = await self.read(resource, attributes)
            if current is None:
                return DriverResult(await self.create(resource, attributes), ApplyAction.CREATED)
            if self.needs_update(attributes, current):
                return DriverResult(
                    await self.update(resource, attributes, current), ApplyAction.UPDATED
                )
            return DriverResult(dict(current), ApplyAction.UNCHANGED)

        return await self._with_retry("apply", resource, converge)

    async def destroy(self, resource: Resource, attributes: Mapping[str, Any]) -> bool:
        """Delete the remote object if it exists.

        Returns:
            True if something was deleted, False if it was already gone.
        """

        async def remove() -> bool:
            if await self.read(resource, attributes) is None:
                return False
            await self.delete(resource, attributes)
            return True

        return await self._with_retry("destroy", resource, remove)

    async def _with_retry(
        self,
        operation: str,
        resource: Resource,
        func: Callable[[], Awaitable[T]],
    ) -> T:
        policy = self._retry
        last_error: DriverError | None = None

        for attempt in range(1, policy.max_retries + 2):
            try:
                return await asyncio.wait_for(func(), timeout=policy.timeout_seconds)
            except TimeoutError:
                last_error = DriverError(
                    f"{operation} of '{resource.name}' timed out after {policy.timeout_seconds}s",
                    retryable=True,
                )
            except DriverError as e:
                if not e.retryable:
                    raise
                last_error = e

            if attempt <= policy.max_retries:
                wait_time = policy.backoff(attempt)
                logger.warning(
                    "Driver operation failed, retrying",
                    extra={
                        "resource": resource.name,
                        "kind": resource.kind,
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": policy.max_retries + 1,
                        "wait_seconds": wait_time,
                        "error": str(last_error),
                    },
                )
                await asyncio.sleep(wait_time)

        assert last_error is not None, "Retry loop completed without setting last_error"
        raise last_error


class DriverRegistry:
    """Maps resource kind strings to drivers."""

    def __init__(self) -> None:
        self._drivers: dict[str, Driver] = {}

    def register(self, kind: str, driver: Driver) -> None:
        """Register a driver for a kind.

        Raises:
            ValueError: If the kind is already registered.
        """
        if kind in self._drivers:
            raise ValueError(f"A driver is already registered for kind '{kind}'")
        self._drivers[kind] = driver
        logger.debug("Driver registered", extra={"kind": kind, "driver": type(driver).__name__})

    def get(self, kind: str) -> Driver:
        """Look up the driver for a kind.

        Raises:
            UnknownKindError: If no driver is registered for the kind.
        """
        driver = self._drivers.get(kind)
        if driver is None:
            raise UnknownKindError(
                f"No driver registered for kind '{kind}'. Registered kinds: {self.kinds()}"
            )
        return driver

    def kinds(self) -> list[str]:
        return sorted(self._drivers)

    def __contains__(self, kind: object) -> bool:
        return kind in self._drivers

    def validate(self, resources: Iterable[Resource]) -> None:
        """Check every resource has a driver before anything is applied.

        Raises:
            UnknownKindError: Listing every resource with an unknown kind.
        """
        unknown = [f"{r.name} ({r.kind})" for r in resources if r.kind not in self._drivers]
        if unknown:
            raise UnknownKindError(
                f"No driver registered for: {', '.join(unknown)}. "
                f"Registered kinds: {self.kinds()}"
            )
