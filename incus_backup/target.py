"""Backup target strings: ``dir:/abs/path`` or ``restic:<repository>``."""

import os
from dataclasses import dataclass

from .errors import ConfigurationError

SUPPORTED_SCHEMES = ("dir", "restic")


@dataclass(frozen=True)
class Target:
    raw: str
    scheme: str
    value: str

    @property
    def path(self) -> str:
        """Filesystem path of a ``dir:`` target; empty for other schemes."""
        return self.value if self.scheme == "dir" else ""

    def __str__(self) -> str:
        return f"{self.scheme}:{self.value}"


def parse_target(raw: str) -> Target:
    """Parse a target string.

    The scheme is case-insensitive and the value is trimmed. ``dir:`` values
    must be absolute and are normalized.

    Raises:
        ConfigurationError: Empty, malformed, unsupported or relative target
    """
    text = (raw or "").strip()
    if not text:
        raise ConfigurationError("target must not be empty")
    scheme, sep, value = text.partition(":")
    scheme = scheme.strip().lower()
    value = value.strip()
    if not sep or not scheme:
        raise ConfigurationError(f"invalid target {raw!r}; expected dir:/path or restic:<repository>")
    if scheme not in SUPPORTED_SCHEMES:
        raise ConfigurationError(f"unsupported target scheme {scheme!r}; expected one of {', '.join(SUPPORTED_SCHEMES)}")
    if not value:
        raise ConfigurationError(f"target {raw!r} has an empty {scheme} value")
    if scheme == "dir":
        if not os.path.isabs(value):
            raise ConfigurationError(f"dir target path must be absolute, got {value!r}")
        value = os.path.normpath(value)
    return Target(raw=raw, scheme=scheme, value=value)
