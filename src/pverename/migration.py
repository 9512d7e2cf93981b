"""Forward mutation steps of a node rename.

Each step works on the :class:`~pverename.orchestrator.RenameContext` it is
handed and raises :class:`MigrationStepError` when the rename cannot go on.
Steps that only touch optional data (RRD history, mail configuration, the
storage configuration) record warnings instead of raising. None of the steps
know how to undo themselves; rollback restores the whole snapshot.
"""
from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from .config import PathsConfig
from .providers import HostCommandError, HostSystem
from .snapshot import GUEST_CONFIG_DIRS, RRD_CATEGORIES, remove_path

if TYPE_CHECKING:
    from .orchestrator import RenameContext

LOGGER = logging.getLogger(__name__)

FALLBACK_IPV4 = "127.0.1.1"
PRE_RENAME_SUFFIX = ".pre-rename"
_VERSION_PATTERN = re.compile(r"^([ \t]*(?:config_)?version:[ \t]*)(\S*)", re.MULTILINE)


class MigrationStepError(RuntimeError):
    """Raised when a forward step fails and the rename must be rolled back."""

    def __init__(self, step: str, message: str) -> None:
        """Record the name of the failed *step*."""
        super().__init__(message)
        self.step = step


# Text rewriting ---------------------------------------------------------
def word_pattern(word: str) -> re.Pattern[str]:
    """Return a pattern matching *word* as a whole hostname token.

    Letters, digits, ``_`` and ``-`` continue a token on either side, and a
    leading ``.`` makes the match part of a longer domain name. A trailing
    ``.`` is allowed so ``pve1.localdomain`` still matches ``pve1``.
    """
    return re.compile(rf"(?<![\w.-]){re.escape(word)}(?![\w-])")


def replace_word(text: str, old: str, new: str) -> tuple[str, int]:
    """Replace every whole-token occurrence of *old* with *new*."""
    return word_pattern(old).subn(new, text)


def contains_word(text: str, word: str) -> bool:
    """Return ``True`` when *word* occurs in *text* as a whole token."""
    return word_pattern(word).search(text) is not None


def bump_version(text: str) -> tuple[str, int | None, int | None]:
    """Increment the membership file's version counter.

    ``config_version`` is preferred over a bare ``version`` field. Returns
    the new text plus the previous and new version; both are ``None`` (and
    the text unchanged) when no numeric version is found.
    """
    matches = list(_VERSION_PATTERN.finditer(text))
    if not matches:
        return text, None, None
    preferred = [match for match in matches if "config_version" in match.group(1)]
    match = (preferred or matches)[0]
    raw = match.group(2)
    if not raw.isdigit():
        return text, None, None
    previous = int(raw)
    updated = text[: match.start(2)] + str(previous + 1) + text[match.end(2) :]
    return updated, previous, previous + 1


def ensure_hosts_entry(text: str, ip: str, new: str) -> tuple[str, bool]:
    """Append ``ip new new.localdomain`` unless a line already maps *ip* to *new*."""
    for line in text.splitlines():
        fields = line.split("#", 1)[0].split()
        if len(fields) >= 2 and fields[0] == ip and new in fields[1:]:
            return text, False
    if text and not text.endswith("\n"):
        text += "\n"
    return f"{text}{ip} {new} {new}.localdomain\n", True


def atomic_write_text(path: Path, content: str) -> None:
    """Replace *path* with *content* via a temporary sibling and ``os.replace``."""
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        try:
            shutil.copymode(path, tmp_path)
        except OSError:
            pass
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


def rewrite_file(path: Path, old: str, new: str, *, backup: bool = False) -> int:
    """Rewrite whole-token occurrences of *old* in *path*; return the count."""
    original = path.read_text(encoding="utf-8")
    if backup:
        shutil.copy2(path, path.with_name(path.name + PRE_RENAME_SUFFIX))
    updated, count = replace_word(original, old, new)
    if count:
        atomic_write_text(path, updated)
    return count


def apply_hostname(host: HostSystem, hostname_file: Path, name: str) -> None:
    """Set the system hostname, falling back to writing the hostname file.

    Raises :class:`HostCommandError` or :class:`OSError` when both paths fail.
    """
    try:
        host.set_hostname_persistent(name)
        return
    except HostCommandError as exc:
        LOGGER.warning("hostnamectl failed (%s); writing %s directly", exc, hostname_file)
    atomic_write_text(hostname_file, f"{name}\n")
    host.set_hostname_transient(name)


# Reports ---------------------------------------------------------------
@dataclass(slots=True)
class RrdMigrationReport:
    """Per-category outcome of the RRD history move."""

    migrated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


# Steps -----------------------------------------------------------------
class MigrationSteps:
    """The ordered forward actions of a rename."""

    def __init__(self, paths: PathsConfig, host: HostSystem) -> None:
        """Initialise the steps for the filesystem layout in *paths*."""
        self.paths = paths
        self.host = host

    def stage_guest_configs(self, context: RenameContext) -> Path:
        """Copy the old node's guest configuration into a private directory."""
        staging = Path(tempfile.mkdtemp(prefix="pverename-"))
        os.chmod(staging, 0o700)
        context.staging_dir = staging
        node_dir = self.paths.node_dir(context.old)
        for subdir in GUEST_CONFIG_DIRS:
            source = node_dir / subdir
            if not source.is_dir():
                continue
            try:
                shutil.copytree(source, staging / subdir, symlinks=True)
            except OSError as exc:
                raise MigrationStepError(
                    "stage_guest_configs", f"Failed to stage {source}: {exc}"
                ) from exc
        LOGGER.info("Guest configuration staged in %s", staging)
        return staging

    def change_hostname(self, context: RenameContext) -> None:
        """Set the hostname to the new identifier and confirm it stuck."""
        step = "hostname"
        try:
            apply_hostname(self.host, self.paths.hostname_file, context.new)
        except (HostCommandError, OSError) as exc:
            raise MigrationStepError(step, f"Failed to set hostname: {exc}") from exc
        current = self.host.get_hostname()
        if current != context.new:
            raise MigrationStepError(
                step, f"Hostname is '{current}' after update, expected '{context.new}'."
            )
        LOGGER.info("Hostname set to %s", context.new)

    def update_hosts(self, context: RenameContext) -> None:
        """Rewrite the hosts file and make sure the new name resolves."""
        step = "hosts"
        hosts = self.paths.hosts_file
        try:
            shutil.copy2(hosts, hosts.with_name(hosts.name + PRE_RENAME_SUFFIX))
            content = hosts.read_text(encoding="utf-8")
        except OSError as exc:
            raise MigrationStepError(step, f"Failed to back up {hosts}: {exc}") from exc
        try:
            ip = self.host.primary_ipv4()
        except HostCommandError as exc:
            LOGGER.warning("Primary address lookup failed: %s", exc)
            ip = None
        if not ip:
            context.warn("Could not detect a primary IPv4 address; using " + FALLBACK_IPV4)
            ip = FALLBACK_IPV4
        updated, count = replace_word(content, context.old, context.new)
        updated, appended = ensure_hosts_entry(updated, ip, context.new)
        try:
            atomic_write_text(hosts, updated)
        except OSError as exc:
            raise MigrationStepError(step, f"Failed to write {hosts}: {exc}") from exc
        LOGGER.info(
            "Updated %s (%d replacements%s)", hosts, count, ", entry added" if appended else ""
        )

    def update_extra_files(self, context: RenameContext) -> None:
        """Rewrite the hostname in auxiliary files such as ``/etc/mailname``."""
        for path in self.paths.extra_hostname_files:
            if not path.is_file():
                continue
            try:
                rewrite_file(path, context.old, context.new)
            except OSError as exc:
                context.warn(f"Failed to update {path}: {exc}")

    def migrate_rrd(self, context: RenameContext) -> RrdMigrationReport:
        """Move RRD history for every category; failures are only recorded."""
        report = RrdMigrationReport()
        for category in RRD_CATEGORIES:
            base = self.paths.rrd_base / f"pve2-{category}"
            source = base / context.old
            destination = base / context.new
            if not source.is_dir():
                report.skipped.append(category)
                continue
            try:
                destination.mkdir(parents=True, exist_ok=True)
                shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
            except OSError as exc:
                report.failed[category] = f"copy failed: {exc}"
                _discard(destination)
                continue
            if not any(destination.iterdir()):
                report.failed[category] = "copy verification failed"
                _discard(destination)
                continue
            try:
                shutil.rmtree(source)
            except OSError as exc:
                context.warn(f"Failed to remove old RRD directory {source}: {exc}")
            report.migrated.append(category)
        for category, reason in report.failed.items():
            context.warn(f"RRD data for {category} not migrated ({reason})")
        context.rrd_report = report
        return report

    def update_cluster(self, context: RenameContext) -> None:
        """Rewrite the membership file (clustered nodes) and storage configuration."""
        if context.cluster.clustered:
            self._update_membership(context)
        else:
            LOGGER.info("Standalone node; membership file left unchanged")
        self._update_storage(context)

    def _update_membership(self, context: RenameContext) -> None:
        step = "cluster"
        membership = next(
            (path for path in self.paths.corosync_candidates if path.is_file()), None
        )
        if membership is None:
            context.warn("No corosync.conf found to update")
            return
        try:
            shutil.copy2(membership, membership.with_name(membership.name + PRE_RENAME_SUFFIX))
            content = membership.read_text(encoding="utf-8")
        except OSError as exc:
            raise MigrationStepError(step, f"Failed to back up {membership}: {exc}") from exc
        updated, _count = replace_word(content, context.old, context.new)
        updated, previous, current = bump_version(updated)
        if previous is None:
            context.warn(f"Could not parse the version in {membership}; left unchanged")
        else:
            LOGGER.info("Membership version %d -> %d", previous, current)
        try:
            atomic_write_text(membership, updated)
        except OSError as exc:
            raise MigrationStepError(step, f"Failed to write {membership}: {exc}") from exc

    def _update_storage(self, context: RenameContext) -> None:
        storage = self.paths.storage_cfg
        if not storage.is_file():
            LOGGER.debug("No %s to update", storage)
            return
        try:
            rewrite_file(storage, context.old, context.new, backup=True)
        except OSError as exc:
            context.warn(f"Failed to update {storage}: {exc}")

    def migrate_node_dir(self, context: RenameContext) -> None:
        """Rename the node-scope directory, copying staged configs on failure."""
        step = "node_dir"
        old_dir = self.paths.node_dir(context.old)
        new_dir = self.paths.node_dir(context.new)
        moved = False
        if old_dir.is_dir():
            try:
                os.rename(old_dir, new_dir)
                moved = True
            except OSError as exc:
                LOGGER.error("Failed to move %s: %s; rebuilding from staged copy", old_dir, exc)
        if not moved:
            try:
                self._rebuild_node_dir(context, new_dir)
            except OSError as exc:
                raise MigrationStepError(
                    step, f"Failed to create {new_dir} from staged configuration: {exc}"
                ) from exc
        if not new_dir.is_dir():
            raise MigrationStepError(step, f"Node directory {new_dir} was not created.")
        LOGGER.info("Node directory is now %s", new_dir)

    def _rebuild_node_dir(self, context: RenameContext, new_dir: Path) -> None:
        for subdir in GUEST_CONFIG_DIRS:
            (new_dir / subdir).mkdir(parents=True, exist_ok=True)
        staging = context.staging_dir
        if staging is None:
            return
        for subdir in GUEST_CONFIG_DIRS:
            source = staging / subdir
            if source.is_dir():
                shutil.copytree(source, new_dir / subdir, symlinks=True, dirs_exist_ok=True)

    def cleanup_staging(self, context: RenameContext) -> None:
        """Remove the staging directory, if any."""
        if context.staging_dir is None:
            return
        try:
            shutil.rmtree(context.staging_dir)
        except FileNotFoundError:
            pass
        except OSError as exc:
            context.warn(f"Failed to remove staging directory {context.staging_dir}: {exc}")
            return
        context.staging_dir = None


def _discard(path: Path) -> None:
    try:
        remove_path(path)
    except OSError as exc:
        LOGGER.warning("Failed to clean up %s: %s", path, exc)


__all__ = [
    "FALLBACK_IPV4",
    "MigrationStepError",
    "MigrationSteps",
    "RrdMigrationReport",
    "apply_hostname",
    "atomic_write_text",
    "bump_version",
    "contains_word",
    "ensure_hosts_entry",
    "replace_word",
    "rewrite_file",
    "word_pattern",
]
