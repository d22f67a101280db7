"""Run-scoped unique identifier generation.

Every resource name that must be globally unique (storage accounts, function
apps, ...) embeds the same generated suffix. The suffix is generated once
when a run starts and is then passed explicitly to the attribute resolver;
there is no module-level state.
"""

from __future__ import annotations

import base64
import random
import secrets
from dataclasses import dataclass

from .config import DEFAULT_IDENTIFIER_BYTES, MIN_IDENTIFIER_BYTES

# Renderings addressable from expressions as ${id.<rendering>}
IDENTIFIER_RENDERINGS: tuple[str, ...] = ("dec", "hex", "b64_url")


@dataclass(frozen=True)
class Identifier:
    """Immutable random value shared by every name in a run."""

    value: bytes

    @property
    def dec(self) -> str:
        """Big-endian integer value rendered in decimal."""
        return str(int.from_bytes(self.value, "big"))

    @property
    def hex(self) -> str:
        return self.value.hex()

    @property
    def b64_url(self) -> str:
        return base64.urlsafe_b64encode(self.value).decode("ascii").rstrip("=")

    @property
    def entropy_bits(self) -> int:
        return len(self.value) * 8

    def render(self, rendering: str) -> str:
        """Render the identifier by name.

        Raises:
            KeyError: If the rendering is not one of IDENTIFIER_RENDERINGS.
        """
        if rendering not in IDENTIFIER_RENDERINGS:
            raise KeyError(rendering)
        return getattr(self, rendering)


def generate(byte_length: int = DEFAULT_IDENTIFIER_BYTES, seed: int | None = None) -> Identifier:
    """Generate a new identifier.

    Args:
        byte_length: Number of random bytes (at least 3, i.e. 24 bits).
        seed: Optional seed for reproducible test runs. Production runs
            leave this unset and draw from the OS CSPRNG.

    Returns:
        A new Identifier.

    Raises:
        ValueError: If byte_length is below the minimum entropy.
    """
    if byte_length < MIN_IDENTIFIER_BYTES:
        raise ValueError(
            f"Identifier needs at least {MIN_IDENTIFIER_BYTES} bytes of entropy, got {byte_length}"
        )

    if seed is None:
        return Identifier(secrets.token_bytes(byte_length))

    rng = random.Random(seed)
    return Identifier(rng.randbytes(byte_length))
