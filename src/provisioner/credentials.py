"""Credential window calculation for time-bounded access tokens.

A window is computed at the instant the consuming resource is applied, not
when the declaration is loaded, so that long runs never hand out tokens
whose validity has already partly elapsed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

# Calendar format accepted by Azure Storage SAS `st`/`se` fields
SAS_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


@dataclass(frozen=True)
class CredentialWindow:
    """Immutable (start, expiry) pair for one access token."""

    start: datetime
    expiry: datetime

    @property
    def validity(self) -> timedelta:
        return self.expiry - self.start

    @property
    def start_text(self) -> str:
        return self.start.strftime(SAS_TIME_FORMAT)

    @property
    def expiry_text(self) -> str:
        return self.expiry.strftime(SAS_TIME_FORMAT)

    def is_valid_at(self, moment: datetime) -> bool:
        """Check whether a token issued for this window is usable at `moment`."""
        return self.start <= _as_utc(moment) < self.expiry

    def remaining(self, moment: datetime) -> timedelta:
        """Time left until expiry (zero once expired)."""
        left = self.expiry - _as_utc(moment)
        return max(left, timedelta(0))

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start_text, "expiry": self.expiry_text}


def _as_utc(moment: datetime) -> datetime:
    # Naive datetimes are taken to be UTC
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def window(
    now: datetime,
    validity: timedelta,
    skew: timedelta = timedelta(0),
) -> CredentialWindow:
    """Compute a credential window.

    The start is pulled back by `skew` so that a remote validator whose clock
    runs slightly behind still accepts the token. The expiry is always
    exactly `validity` after the start.

    Args:
        now: Apply instant.
        validity: How long the token is valid.
        skew: Clock-skew tolerance subtracted from the start.

    Returns:
        The computed CredentialWindow, truncated to whole seconds.

    Raises:
        ValueError: If validity is not positive or skew is negative.
    """
    if validity <= timedelta(0):
        raise ValueError(f"Credential validity must be positive: {validity}")
    if skew < timedelta(0):
        raise ValueError(f"Clock skew tolerance cannot be negative: {skew}")

    # SAS bounds carry second precision only
    start = _as_utc(now).replace(microsecond=0) - skew
    return CredentialWindow(start=start, expiry=start + validity)


def parse_validity(spec: dict[str, int | float]) -> timedelta:
    """Turn a {"days": .., "hours": .., "minutes": ..} mapping into a timedelta.

    Raises:
        ValueError: On unknown units or a non-positive total.
    """
    allowed = {"days", "hours", "minutes", "seconds"}
    unknown = set(spec) - allowed
    if unknown:
        raise ValueError(f"Unknown credential window units: {sorted(unknown)}")

    validity = timedelta(**{unit: float(amount) for unit, amount in spec.items()})
    if validity <= timedelta(0):
        raise ValueError(f"Credential window validity must be positive: {spec}")
    return validity
