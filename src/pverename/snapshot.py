"""Pre-rename snapshots of every piece of state a rename touches.

A snapshot is a directory ``<backup_root>/pve_rollback_backup_<timestamp>``
holding copies of the node-scope tree, the hosts and hostname files, the
storage and corosync configuration and the RRD history of the old node.
Each entry is copied to ``<name>.tmp`` first and renamed into place, and
``manifest.json`` is written last: a directory without a manifest is an
incomplete snapshot and is never used for rollback.

Snapshots are recorded in a JSON index in the backup root with a status of
``available``, ``discarded``, ``retained`` or ``failed``.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .config import PathsConfig

LOGGER = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "pve_rollback_backup_"
MANIFEST_NAME = "manifest.json"
STOPPED_GUESTS_NAME = "stopped_guests.list"
RUN_LOG_NAME = "rename.log"
RRD_CATEGORIES = ("node", "storage", "vm")
GUEST_CONFIG_DIRS = ("qemu-server", "lxc")

STATUS_AVAILABLE = "available"
STATUS_DISCARDED = "discarded"
STATUS_RETAINED = "retained"
STATUS_FAILED = "failed"


class BackupError(RuntimeError):
    """Raised when a snapshot cannot be created or read."""

    def __init__(self, message: str, *, item: str | None = None) -> None:
        """Record the snapshot *item* that failed."""
        super().__init__(message)
        self.item = item


class SnapshotIndexError(BackupError):
    """Raised when the snapshot index cannot be read or written."""


def _now_iso(moment: datetime | None = None) -> str:
    value = moment or datetime.now(tz=UTC)
    return value.isoformat(timespec="seconds").replace("+00:00", "Z")


def rrd_item_name(category: str) -> str:
    """Return the snapshot item name for an RRD *category*."""
    return f"rrd-{category}"


@dataclass(frozen=True, slots=True)
class SnapshotItem:
    """A single entry of a snapshot."""

    name: str
    source: Path
    relative: str
    kind: str
    present: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "source": str(self.source),
            "relative": self.relative,
            "kind": self.kind,
            "present": self.present,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SnapshotItem:
        """Build an item from its manifest representation."""
        return cls(
            name=str(data["name"]),
            source=Path(str(data["source"])),
            relative=str(data["relative"]),
            kind=str(data.get("kind", "file")),
            present=bool(data.get("present", True)),
        )


@dataclass(frozen=True, slots=True)
class Snapshot:
    """A complete, manifest-backed pre-rename snapshot."""

    root: Path
    snapshot_id: str
    created_at: str
    old: str
    new: str
    items: tuple[SnapshotItem, ...] = field(default_factory=tuple)

    @property
    def manifest_path(self) -> Path:
        """Return the manifest location."""
        return self.root / MANIFEST_NAME

    @property
    def stopped_guests_path(self) -> Path:
        """Return the file listing guests stopped for the rename."""
        return self.root / STOPPED_GUESTS_NAME

    @property
    def run_log_path(self) -> Path:
        """Return the human readable log of the run."""
        return self.root / RUN_LOG_NAME

    def item(self, name: str) -> SnapshotItem | None:
        """Return the item called *name*, if recorded."""
        for entry in self.items:
            if entry.name == name:
                return entry
        return None

    def path_for(self, name: str) -> Path | None:
        """Return the backup copy of *name* when it was present."""
        entry = self.item(name)
        if entry is None or not entry.present:
            return None
        return self.root / entry.relative

    def to_dict(self) -> dict[str, object]:
        """Return the manifest representation."""
        return {
            "id": self.snapshot_id,
            "root": str(self.root),
            "created_at": self.created_at,
            "old": self.old,
            "new": self.new,
            "items": [entry.to_dict() for entry in self.items],
        }


@dataclass(frozen=True, slots=True)
class _PlannedItem:
    name: str
    source: Path | None
    relative: str
    kind: str
    required: bool = False


@dataclass(slots=True)
class SnapshotIndex:
    """Manage the JSON snapshot index under the backup root."""

    index: Path

    def __post_init__(self) -> None:
        """Normalise the index path."""
        self.index = self.index.expanduser()

    def read(self) -> dict[str, object]:
        """Return the parsed index (empty structure when missing)."""
        if not self.index.exists():
            return {"snapshots": []}
        try:
            data = json.loads(self.index.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {"snapshots": []}
        except json.JSONDecodeError as exc:
            raise SnapshotIndexError(f"Snapshot index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise SnapshotIndexError(f"Snapshot index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the index."""
        try:
            _atomic_write_json(self.index, payload)
        except OSError as exc:
            raise SnapshotIndexError(f"Failed to write snapshot index: {exc}") from exc

    def list_entries(self) -> list[dict[str, object]]:
        """Return every recorded snapshot entry."""
        snapshots = self.read().get("snapshots", [])
        entries: list[dict[str, object]] = []
        if isinstance(snapshots, list):
            for item in snapshots:
                if isinstance(item, Mapping):
                    entries.append(dict(item))
        return entries

    def find_by_id(self, snapshot_id: str) -> dict[str, object] | None:
        """Return the entry for *snapshot_id* if present."""
        wanted = snapshot_id.strip()
        for entry in self.list_entries():
            if str(entry.get("id", "")).strip() == wanted:
                return entry
        return None

    def upsert(self, snapshot_id: str, mutator: Callable[[dict[str, object]], None]) -> None:
        """Apply *mutator* to the entry for *snapshot_id*, creating it if needed."""
        entries = self.list_entries()
        for position, entry in enumerate(entries):
            if str(entry.get("id", "")).strip() == snapshot_id:
                mutable = dict(entry)
                mutator(mutable)
                entries[position] = mutable
                break
        else:
            fresh: dict[str, object] = {"id": snapshot_id}
            mutator(fresh)
            entries.append(fresh)
        self.write({"snapshots": entries})

    def set_status(self, snapshot_id: str, status: str, **extra: object) -> None:
        """Record *status* (and optional fields) for *snapshot_id*."""

        def _apply(entry: dict[str, object]) -> None:
            entry["status"] = status
            entry[f"{status}_at"] = _now_iso()
            entry.update(extra)

        self.upsert(snapshot_id, _apply)


class SnapshotManager:
    """Create, load, retain and discard rename snapshots."""

    def __init__(
        self,
        backup_root: Path,
        paths: PathsConfig,
        *,
        index: SnapshotIndex | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialise the manager writing snapshots below *backup_root*."""
        self.backup_root = Path(backup_root).expanduser()
        self.paths = paths
        self.index = index or SnapshotIndex(self.backup_root / "pverename-snapshots.json")
        self._now = now or (lambda: datetime.now(tz=UTC))

    # Creation -----------------------------------------------------------
    def create_snapshot(self, old: str, new: str) -> Snapshot:
        """Copy every item a rename of *old* touches into a new snapshot.

        Raises :class:`BackupError` naming the offending item on any failure;
        the partial directory is then left without a manifest and marked
        ``failed`` in the index.
        """
        moment = self._now()
        root = self._allocate_root(moment)
        snapshot_id = root.name
        try:
            root.mkdir(parents=True, mode=0o700)
        except OSError as exc:
            raise BackupError(f"Failed to create snapshot directory {root}: {exc}") from exc

        items: list[SnapshotItem] = []
        try:
            for planned in self._plan(old):
                items.append(self._capture(root, planned))
            snapshot = Snapshot(
                root=root,
                snapshot_id=snapshot_id,
                created_at=_now_iso(moment),
                old=old,
                new=new,
                items=tuple(items),
            )
            try:
                _atomic_write_json(snapshot.manifest_path, snapshot.to_dict())
            except OSError as exc:
                raise BackupError(
                    f"Failed to write snapshot manifest: {exc}", item="manifest"
                ) from exc
        except BackupError as exc:
            LOGGER.error("Snapshot %s failed at item %s: %s", snapshot_id, exc.item, exc)
            self._record_failure(snapshot_id, root, old, new, exc)
            raise

        self.index.set_status(
            snapshot_id,
            STATUS_AVAILABLE,
            path=str(root),
            old=old,
            new=new,
            created_at=snapshot.created_at,
            items=[entry.name for entry in items if entry.present],
        )
        LOGGER.info("Snapshot created at %s", root)
        return snapshot

    def _allocate_root(self, moment: datetime) -> Path:
        base = f"{SNAPSHOT_PREFIX}{moment.strftime('%Y%m%d_%H%M%S')}"
        candidate = self.backup_root / base
        counter = 1
        while candidate.exists():
            candidate = self.backup_root / f"{base}_{counter}"
            counter += 1
        return candidate

    def _plan(self, old: str) -> list[_PlannedItem]:
        paths = self.paths
        old_dir = paths.node_dir(old)
        corosync = next(
            (candidate for candidate in paths.corosync_candidates if candidate.is_file()),
            None,
        )
        plan = [
            _PlannedItem("nodes", paths.nodes_dir, "nodes", "dir", required=True),
            _PlannedItem("hosts", paths.hosts_file, "hosts", "file", required=True),
            _PlannedItem("hostname", paths.hostname_file, "hostname", "file"),
            _PlannedItem("storage.cfg", paths.storage_cfg, "storage.cfg", "file"),
            _PlannedItem("corosync.conf", corosync, "corosync.conf", "file"),
        ]
        for subdir in GUEST_CONFIG_DIRS:
            plan.append(_PlannedItem(subdir, old_dir / subdir, subdir, "dir"))
        for category in RRD_CATEGORIES:
            plan.append(
                _PlannedItem(
                    rrd_item_name(category),
                    paths.rrd_base / f"pve2-{category}" / old,
                    f"pve2-{category}-{old}",
                    "dir",
                )
            )
        for extra in paths.extra_hostname_files:
            plan.append(
                _PlannedItem(f"extra:{extra}", extra, f"extra/{extra.name}", "file")
            )
        return plan

    def _capture(self, root: Path, planned: _PlannedItem) -> SnapshotItem:
        source = planned.source
        exists = source is not None and (
            source.is_dir() if planned.kind == "dir" else source.is_file()
        )
        if not exists:
            if planned.required:
                raise BackupError(
                    f"Required item '{planned.name}' not found at {source}.",
                    item=planned.name,
                )
            LOGGER.debug("Skipping missing optional item %s", planned.name)
            return SnapshotItem(
                planned.name, source or Path(), planned.relative, planned.kind, present=False
            )
        assert source is not None
        destination = root / planned.relative
        temporary = destination.with_name(f"{destination.name}.tmp")
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            self._copy_entry(source, temporary, planned.kind)
            os.replace(temporary, destination)
        except OSError as exc:
            remove_path(temporary)
            raise BackupError(
                f"Failed to back up '{planned.name}' from {source}: {exc}",
                item=planned.name,
            ) from exc
        LOGGER.info("Backed up %s", source)
        return SnapshotItem(planned.name, source, planned.relative, planned.kind)

    def _copy_entry(self, source: Path, destination: Path, kind: str) -> None:
        copy_entry(source, destination, kind)

    def _record_failure(
        self, snapshot_id: str, root: Path, old: str, new: str, exc: BackupError
    ) -> None:
        try:
            self.index.set_status(
                snapshot_id,
                STATUS_FAILED,
                path=str(root),
                old=old,
                new=new,
                error=str(exc),
                failed_item=exc.item,
            )
        except SnapshotIndexError as index_exc:
            LOGGER.warning("Could not record failed snapshot: %s", index_exc)

    # Lifecycle ----------------------------------------------------------
    def load(self, root: Path) -> Snapshot:
        """Read the snapshot stored in *root* from its manifest."""
        manifest = Path(root) / MANIFEST_NAME
        try:
            data = json.loads(manifest.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise BackupError(
                f"{root} has no manifest; it is not a complete snapshot.", item="manifest"
            ) from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise BackupError(
                f"Failed to read manifest {manifest}: {exc}", item="manifest"
            ) from exc
        items = data.get("items", [])
        return Snapshot(
            root=Path(root),
            snapshot_id=str(data.get("id", Path(root).name)),
            created_at=str(data.get("created_at", "")),
            old=str(data.get("old", "")),
            new=str(data.get("new", "")),
            items=tuple(SnapshotItem.from_dict(item) for item in items),
        )

    def retain(self, snapshot: Snapshot, *, reason: str | None = None) -> None:
        """Mark *snapshot* as retained for manual recovery."""
        extra: dict[str, object] = {"path": str(snapshot.root)}
        if reason:
            extra["reason"] = reason
        self.index.set_status(snapshot.snapshot_id, STATUS_RETAINED, **extra)

    def discard(self, snapshot: Snapshot) -> None:
        """Delete *snapshot* from disk and mark it discarded."""
        try:
            shutil.rmtree(snapshot.root)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise BackupError(f"Failed to remove snapshot {snapshot.root}: {exc}") from exc
        self.index.set_status(snapshot.snapshot_id, STATUS_DISCARDED)
        LOGGER.info("Snapshot %s discarded", snapshot.root)


def copy_entry(source: Path, destination: Path, kind: str) -> None:
    """Copy *source* to *destination* preserving attributes."""
    if kind == "dir":
        shutil.copytree(source, destination, symlinks=True, copy_function=shutil.copy2)
    else:
        shutil.copy2(source, destination)


def remove_path(path: Path) -> None:
    """Remove *path* whether it is a file, symlink or directory."""
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
    elif path.is_dir():
        shutil.rmtree(path)


def restore_entry(backup: Path, destination: Path, kind: str) -> None:
    """Replace *destination* with a copy of *backup*.

    The copy lands in ``<destination>.tmp`` first so a failed copy never
    leaves a half-written destination behind.
    """
    temporary = destination.with_name(f"{destination.name}.tmp")
    remove_path(temporary)
    destination.parent.mkdir(parents=True, exist_ok=True)
    try:
        copy_entry(backup, temporary, kind)
    except OSError:
        remove_path(temporary)
        raise
    if kind == "dir":
        remove_path(destination)
    os.replace(temporary, destination)


def _atomic_write_json(path: Path, payload: Mapping[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=False)
            handle.write("\n")
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "BackupError",
    "GUEST_CONFIG_DIRS",
    "RRD_CATEGORIES",
    "Snapshot",
    "SnapshotIndex",
    "SnapshotIndexError",
    "SnapshotItem",
    "SnapshotManager",
    "copy_entry",
    "remove_path",
    "restore_entry",
    "rrd_item_name",
]
