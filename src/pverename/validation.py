"""Pre-flight checks for node identifiers and host preconditions.

Every check in this module is read-only: it inspects the filesystem and the
host adapter but never changes either, so calling the same check twice on an
unchanged system yields the same result.
"""
from __future__ import annotations

import re
from enum import Enum
from pathlib import Path

from .config import PathsConfig
from .providers import HostSystem

MAX_IDENTIFIER_LENGTH = 63
IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?$")
RESERVED_IDENTIFIERS = frozenset(
    {
        "localhost",
        "localhost.localdomain",
        "broadcasthost",
        "ip6-localhost",
        "ip6-loopback",
    }
)
SPACE_FACTOR = 3


class ValidationKind(str, Enum):
    """Reasons a rename is refused before anything is touched."""

    INVALID_FORMAT = "invalid_format"
    RESERVED = "reserved"
    SAME_IDENTIFIER = "same_identifier"
    SOURCE_MISSING = "source_missing"
    TARGET_EXISTS = "target_exists"
    NOT_PRIVILEGED = "not_privileged"
    SYSTEM_NOT_DETECTED = "system_not_detected"
    FILESYSTEM_NOT_MOUNTED = "filesystem_not_mounted"
    INSUFFICIENT_SPACE = "insufficient_space"

    @property
    def is_environment(self) -> bool:
        """Return ``True`` for host precondition failures."""
        return self in _ENVIRONMENT_KINDS


_ENVIRONMENT_KINDS = frozenset(
    {
        ValidationKind.NOT_PRIVILEGED,
        ValidationKind.SYSTEM_NOT_DETECTED,
        ValidationKind.FILESYSTEM_NOT_MOUNTED,
        ValidationKind.INSUFFICIENT_SPACE,
    }
)


class ValidationError(RuntimeError):
    """Raised when identifiers or host preconditions are unacceptable."""

    def __init__(self, kind: ValidationKind, message: str) -> None:
        """Record the failure *kind* alongside the readable message."""
        super().__init__(message)
        self.kind = kind


def validate_identifier(value: str, label: str, *, allow_reserved: bool = False) -> str:
    """Return the stripped identifier or raise :class:`ValidationError`."""
    candidate = (value or "").strip()
    if not candidate:
        raise ValidationError(ValidationKind.INVALID_FORMAT, f"{label} must not be empty.")
    if len(candidate) > MAX_IDENTIFIER_LENGTH:
        raise ValidationError(
            ValidationKind.INVALID_FORMAT,
            f"{label} '{candidate}' is longer than {MAX_IDENTIFIER_LENGTH} characters.",
        )
    if not allow_reserved and candidate.lower() in RESERVED_IDENTIFIERS:
        raise ValidationError(
            ValidationKind.RESERVED, f"{label} '{candidate}' is a reserved hostname."
        )
    if not IDENTIFIER_PATTERN.match(candidate):
        raise ValidationError(
            ValidationKind.INVALID_FORMAT,
            f"{label} '{candidate}' must contain only letters, digits and hyphens, "
            "and must start and end with a letter or digit.",
        )
    return candidate


def validate_rename(old: str, new: str, paths: PathsConfig) -> tuple[str, str]:
    """Validate an ``old`` to ``new`` rename against the node-scope tree."""
    old_name = validate_identifier(old, "Current node name", allow_reserved=True)
    new_name = validate_identifier(new, "New node name")
    if old_name == new_name:
        raise ValidationError(
            ValidationKind.SAME_IDENTIFIER,
            f"New node name '{new_name}' is the same as the current one.",
        )
    old_dir = paths.node_dir(old_name)
    if not old_dir.is_dir():
        raise ValidationError(
            ValidationKind.SOURCE_MISSING, f"Node directory {old_dir} does not exist."
        )
    new_dir = paths.node_dir(new_name)
    if new_dir.exists():
        raise ValidationError(
            ValidationKind.TARGET_EXISTS,
            f"Node directory {new_dir} already exists; a previous rename may be incomplete.",
        )
    return old_name, new_name


def required_space(paths: PathsConfig, host: HostSystem, *, floor: int) -> int:
    """Return the free bytes needed to snapshot the data a rename touches."""
    data_size = host.tree_size(paths.pve_mount) + host.tree_size(paths.rrd_base)
    return max(floor, SPACE_FACTOR * data_size)


def check_preconditions(
    paths: PathsConfig,
    host: HostSystem,
    *,
    backup_root: Path,
    min_free_bytes: int,
) -> None:
    """Raise :class:`ValidationError` when the host cannot run a rename."""
    if not host.is_root():
        raise ValidationError(
            ValidationKind.NOT_PRIVILEGED, "Renaming a node requires root privileges."
        )
    if not paths.pve_mount.is_dir():
        raise ValidationError(
            ValidationKind.SYSTEM_NOT_DETECTED,
            f"{paths.pve_mount} not found; this does not look like a Proxmox VE host.",
        )
    if not host.is_mountpoint(paths.pve_mount):
        raise ValidationError(
            ValidationKind.FILESYSTEM_NOT_MOUNTED,
            f"{paths.pve_mount} is not mounted; is pve-cluster running?",
        )
    needed = required_space(paths, host, floor=min_free_bytes)
    available = host.free_bytes(backup_root)
    if available < needed:
        raise ValidationError(
            ValidationKind.INSUFFICIENT_SPACE,
            f"Insufficient space in {backup_root}: need {needed // 1024} KB, "
            f"have {available // 1024} KB.",
        )


__all__ = [
    "RESERVED_IDENTIFIERS",
    "ValidationError",
    "ValidationKind",
    "check_preconditions",
    "required_space",
    "validate_identifier",
    "validate_rename",
]
