"""Configuration loader for pverename.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/pverename/config.yml`` (or an override path).
3. Environment variables prefixed with ``PVERENAME_`` plus the legacy
   timeout variables ``PVE_SERVICE_TIMEOUT``, ``PVE_CLUSTER_TIMEOUT`` and
   ``PVE_MOUNT_TIMEOUT``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export PVERENAME_TIMEOUTS__SERVICE_STOP=120
    export PVERENAME_CLUSTER__DETECTION=standalone

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load pverename configuration. Install with "
        "`pip install pverename` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "PVERENAME_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

# Timeout variables understood by the original shell tooling.
LEGACY_TIMEOUT_ENV = {
    "PVE_SERVICE_TIMEOUT": "service_stop",
    "PVE_CLUSTER_TIMEOUT": "cluster_start",
    "PVE_MOUNT_TIMEOUT": "mount",
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PathsConfig:
    """Filesystem locations touched by a rename."""

    pve_mount: Path = Path("/etc/pve")
    nodes_dir: Path = Path("/etc/pve/nodes")
    hosts_file: Path = Path("/etc/hosts")
    hostname_file: Path = Path("/etc/hostname")
    storage_cfg: Path = Path("/etc/pve/storage.cfg")
    corosync_candidates: tuple[Path, ...] = (
        Path("/etc/pve/corosync.conf"),
        Path("/etc/corosync/corosync.conf"),
    )
    rrd_base: Path = Path("/var/lib/rrdcached/db")
    cluster_db_dir: Path = Path("/var/lib/pve-cluster")
    extra_hostname_files: tuple[Path, ...] = (
        Path("/etc/mailname"),
        Path("/etc/postfix/main.cf"),
    )

    def node_dir(self, node: str) -> Path:
        """Return the node-scope directory for *node*."""
        return self.nodes_dir / node

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "pve_mount": str(self.pve_mount),
            "nodes_dir": str(self.nodes_dir),
            "hosts_file": str(self.hosts_file),
            "hostname_file": str(self.hostname_file),
            "storage_cfg": str(self.storage_cfg),
            "corosync_candidates": [str(path) for path in self.corosync_candidates],
            "rrd_base": str(self.rrd_base),
            "cluster_db_dir": str(self.cluster_db_dir),
            "extra_hostname_files": [str(path) for path in self.extra_hostname_files],
        }


@dataclass(frozen=True)
class TimeoutsConfig:
    """Polling budgets (seconds) for waits against external state."""

    service_stop: int = 60
    cluster_start: int = 90
    mount: int = 60
    guest_settle: int = 10
    guest_resume_delay: int = 2
    cluster_retry_wait: int = 5
    cluster_sync: int = 15

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "service_stop": self.service_stop,
            "cluster_start": self.cluster_start,
            "mount": self.mount,
            "guest_settle": self.guest_settle,
            "guest_resume_delay": self.guest_resume_delay,
            "cluster_retry_wait": self.cluster_retry_wait,
            "cluster_sync": self.cluster_sync,
        }


@dataclass(frozen=True)
class ClusterConfig:
    """Cluster detection policy."""

    detection: str = "auto"
    threshold: int = 2
    reset_database_on_retry: bool = True
    reset_database_on_rollback: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "detection": self.detection,
            "threshold": self.threshold,
            "reset_database_on_retry": self.reset_database_on_retry,
            "reset_database_on_rollback": self.reset_database_on_rollback,
        }


@dataclass(frozen=True)
class VerificationConfig:
    """Behaviour when the post-rename verification fails."""

    on_failure: str = "rollback"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"on_failure": self.on_failure}


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"systemctl_bin": self.systemctl_bin}


@dataclass(frozen=True)
class GuestToolsConfig:
    """Binaries used to manage guests."""

    qm_bin: str = "qm"
    pct_bin: str = "pct"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"qm_bin": self.qm_bin, "pct_bin": self.pct_bin}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for pverename."""

    config_file: Path
    backup_root: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    min_free_bytes: int
    paths: PathsConfig
    timeouts: TimeoutsConfig
    cluster: ClusterConfig
    verification: VerificationConfig
    systemd: SystemdConfig
    guest_tools: GuestToolsConfig

    @property
    def snapshot_index(self) -> Path:
        """Return the path of the snapshot index file."""
        return self.backup_root / "pverename-snapshots.json"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "backup_root": str(self.backup_root),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "min_free_bytes": self.min_free_bytes,
            "paths": self.paths.to_dict(),
            "timeouts": self.timeouts.to_dict(),
            "cluster": self.cluster.to_dict(),
            "verification": self.verification.to_dict(),
            "systemd": self.systemd.to_dict(),
            "guest_tools": self.guest_tools.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/pverename/config.yml",
    "backup_root": "/root",
    "logs_dir": "/var/log/pverename",
    "runtime_dir": "/run/pverename",
    "lock_timeout": 5.0,
    "min_free_bytes": 2_000_000 * 1024,
    "paths": {
        "pve_mount": "/etc/pve",
        "nodes_dir": None,  # derived from pve_mount when absent
        "hosts_file": "/etc/hosts",
        "hostname_file": "/etc/hostname",
        "storage_cfg": None,  # derived from pve_mount when absent
        "corosync_candidates": None,  # derived from pve_mount when absent
        "rrd_base": "/var/lib/rrdcached/db",
        "cluster_db_dir": "/var/lib/pve-cluster",
        "extra_hostname_files": ["/etc/mailname", "/etc/postfix/main.cf"],
    },
    "timeouts": {
        "service_stop": 60,
        "cluster_start": 90,
        "mount": 60,
        "guest_settle": 10,
        "guest_resume_delay": 2,
        "cluster_retry_wait": 5,
        "cluster_sync": 15,
    },
    "cluster": {
        "detection": "auto",
        "threshold": 2,
        "reset_database_on_retry": True,
        "reset_database_on_rollback": False,
    },
    "verification": {
        "on_failure": "rollback",
    },
    "systemd": {
        "systemctl_bin": "systemctl",
    },
    "guest_tools": {
        "qm_bin": "qm",
        "pct_bin": "pct",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_PATH_KEYS = set(cast(Mapping[str, object], DEFAULTS["paths"]).keys())
ALLOWED_TIMEOUT_KEYS = set(cast(Mapping[str, object], DEFAULTS["timeouts"]).keys())
ALLOWED_CLUSTER_KEYS = set(cast(Mapping[str, object], DEFAULTS["cluster"]).keys())
ALLOWED_CLUSTER_DETECTION = {"auto", "clustered", "standalone"}
ALLOWED_VERIFY_FAILURE = {"rollback", "keep"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    legacy_values = _build_legacy_overrides(resolved_env)
    if legacy_values:
        _deep_merge(merged, legacy_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=5.0)

    paths = raw.get("paths")
    if paths is not None:
        unknown = set(_as_dict(paths, "paths").keys()) - ALLOWED_PATH_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown paths configuration keys: {joined}.")

    timeouts = raw.get("timeouts")
    if timeouts is not None:
        timeouts_map = _as_dict(timeouts, "timeouts")
        unknown = set(timeouts_map.keys()) - ALLOWED_TIMEOUT_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown timeouts configuration keys: {joined}.")
        for key, value in timeouts_map.items():
            if value is None:
                continue
            seconds = _expect_int(value, f"timeouts.{key}", default=0)
            if seconds < 0:
                raise ConfigError(f"timeouts.{key} must be non-negative.")

    cluster = raw.get("cluster")
    if cluster is not None:
        cluster_map = _as_dict(cluster, "cluster")
        unknown = set(cluster_map.keys()) - ALLOWED_CLUSTER_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown cluster configuration keys: {joined}.")
        detection = cluster_map.get("detection")
        if detection is not None and str(detection) not in ALLOWED_CLUSTER_DETECTION:
            allowed = ", ".join(sorted(ALLOWED_CLUSTER_DETECTION))
            raise ConfigError(
                f"Unsupported cluster detection mode '{detection}'. Allowed: {allowed}."
            )
        threshold = cluster_map.get("threshold")
        if threshold is not None:
            if _expect_int(threshold, "cluster.threshold", default=2) < 1:
                raise ConfigError("cluster.threshold must be at least 1.")

    verification = raw.get("verification")
    if verification is not None:
        verification_map = _as_dict(verification, "verification")
        unknown = set(verification_map.keys()) - {"on_failure"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown verification configuration keys: {joined}.")
        on_failure = verification_map.get("on_failure")
        if on_failure is not None and str(on_failure) not in ALLOWED_VERIFY_FAILURE:
            allowed = ", ".join(sorted(ALLOWED_VERIFY_FAILURE))
            raise ConfigError(
                f"Unsupported verification.on_failure '{on_failure}'. Allowed: {allowed}."
            )

    for section, allowed_keys in (
        ("systemd", {"systemctl_bin"}),
        ("guest_tools", {"qm_bin", "pct_bin"}),
    ):
        value = raw.get(section)
        if value is None:
            continue
        unknown = set(_as_dict(value, section).keys()) - allowed_keys
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    backup_root = _to_path(raw.get("backup_root"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=5.0)
    min_free_bytes = _expect_int(raw.get("min_free_bytes"), "min_free_bytes", default=0)
    if min_free_bytes < 0:
        raise ConfigError("min_free_bytes must be non-negative.")

    paths_mapping = _as_dict(raw.get("paths"), "paths")
    pve_mount = _to_path(paths_mapping.get("pve_mount", "/etc/pve"))
    nodes_value = paths_mapping.get("nodes_dir")
    storage_value = paths_mapping.get("storage_cfg")
    corosync_value = paths_mapping.get("corosync_candidates")
    corosync_candidates = (
        tuple(_to_path(item) for item in _as_sequence(corosync_value, "paths.corosync_candidates"))
        if corosync_value
        else (pve_mount / "corosync.conf", Path("/etc/corosync/corosync.conf"))
    )
    extra_value = paths_mapping.get("extra_hostname_files")
    extra_files = (
        tuple(_to_path(item) for item in _as_sequence(extra_value, "paths.extra_hostname_files"))
        if extra_value
        else ()
    )
    paths = PathsConfig(
        pve_mount=pve_mount,
        nodes_dir=_to_path(nodes_value) if nodes_value else pve_mount / "nodes",
        hosts_file=_to_path(paths_mapping.get("hosts_file", "/etc/hosts")),
        hostname_file=_to_path(paths_mapping.get("hostname_file", "/etc/hostname")),
        storage_cfg=_to_path(storage_value) if storage_value else pve_mount / "storage.cfg",
        corosync_candidates=corosync_candidates,
        rrd_base=_to_path(paths_mapping.get("rrd_base", "/var/lib/rrdcached/db")),
        cluster_db_dir=_to_path(paths_mapping.get("cluster_db_dir", "/var/lib/pve-cluster")),
        extra_hostname_files=extra_files,
    )

    timeouts_mapping = _as_dict(raw.get("timeouts"), "timeouts")
    defaults = TimeoutsConfig()
    timeouts = TimeoutsConfig(
        **{
            key: _expect_int(
                timeouts_mapping.get(key), f"timeouts.{key}", default=getattr(defaults, key)
            )
            for key in ALLOWED_TIMEOUT_KEYS
        }
    )

    cluster_mapping = _as_dict(raw.get("cluster"), "cluster")
    cluster = ClusterConfig(
        detection=str(cluster_mapping.get("detection", "auto")),
        threshold=_expect_int(cluster_mapping.get("threshold"), "cluster.threshold", default=2),
        reset_database_on_retry=_expect_bool(
            cluster_mapping.get("reset_database_on_retry"),
            "cluster.reset_database_on_retry",
            default=True,
        ),
        reset_database_on_rollback=_expect_bool(
            cluster_mapping.get("reset_database_on_rollback"),
            "cluster.reset_database_on_rollback",
            default=False,
        ),
    )

    verification_mapping = _as_dict(raw.get("verification"), "verification")
    verification = VerificationConfig(
        on_failure=str(verification_mapping.get("on_failure", "rollback")),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
    )

    tools_mapping = _as_dict(raw.get("guest_tools"), "guest_tools")
    guest_tools = GuestToolsConfig(
        qm_bin=str(tools_mapping.get("qm_bin", "qm")),
        pct_bin=str(tools_mapping.get("pct_bin", "pct")),
    )

    return AppConfig(
        config_file=config_file,
        backup_root=backup_root,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        min_free_bytes=min_free_bytes,
        paths=paths,
        timeouts=timeouts,
        cluster=cluster,
        verification=verification,
        systemd=systemd,
        guest_tools=guest_tools,
    )


def _build_legacy_overrides(env: Mapping[str, str]) -> dict[str, object]:
    timeouts: dict[str, object] = {}
    for env_key, field in LEGACY_TIMEOUT_ENV.items():
        if env_key in env:
            timeouts[field] = _coerce_value(env[env_key])
    return {"timeouts": timeouts} if timeouts else {}


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ClusterConfig",
    "ConfigError",
    "GuestToolsConfig",
    "PathsConfig",
    "SystemdConfig",
    "TimeoutsConfig",
    "VerificationConfig",
    "load_config",
]
