"""
Durable state sync - restore on boot, back up on a timer.

The durable root is an object-store bucket mounted as a filesystem (s3fs).
It has no locking, no atomic rename and is prone to transient I/O errors, so:

- every subtree copy is independently fault-tolerant
- backup never deletes anything on the durable side
- the marker is written only after every subtree landed

Layout on the durable root:
    config/       gateway config dir (openclaw.json, legacy clawdbot.json)
    workspace/    agent workspace (IDENTITY.md, MEMORY.md, memory/, ...)
    skills/       installed skills
    .last-sync    ISO-8601 timestamp of the last complete backup
Older backups used a flat layout with clawdbot.json directly at the root.

Conflict model: whole-subtree last-writer-wins on the marker timestamp. Two
instances backing up to the same root can silently lose each other's writes;
single-instance deployment is the only guard.
"""

import fnmatch
import os
import shutil
import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from ..log_config import get_logger
from ..settings import SandboxSettings
from .types import BackupOutcome, BackupStatus, RestoreOutcome, RestoreStatus

MARKER_NAME = ".last-sync"
EXCLUDE_PATTERNS = ("*.lock", "*.log", "*.tmp", MARKER_NAME)
WORKSPACE_EXCLUDES = ("node_modules", ".git")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_marker(raw: str) -> datetime:
    """Parse a marker timestamp; anything unparseable sorts as the epoch."""
    value = raw.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def should_restore(remote: str | None, local: str | None) -> bool:
    """Durable state wins only when its marker exists and is strictly newer."""
    if remote is None:
        return False
    if local is None:
        return True
    return parse_marker(remote) > parse_marker(local)


def _read_marker(path: Path) -> str | None:
    try:
        return path.read_text().strip()
    except FileNotFoundError:
        return None


def _has_entries(path: Path) -> bool:
    try:
        return path.is_dir() and any(path.iterdir())
    except OSError:
        return False


def _excluded(name: str, patterns: tuple[str, ...]) -> bool:
    return any(fnmatch.fnmatch(name, pattern) for pattern in patterns)


def copy_files(
    src: Path,
    dst: Path,
    *,
    exclude: tuple[str, ...] = EXCLUDE_PATTERNS,
    exclude_top: tuple[str, ...] = (),
) -> None:
    """
    Overwrite-in-place copy of file contents from ``src`` into ``dst``.

    Content only: the durable mount rejects chmod/utime. Nothing under ``dst``
    is ever removed. Keeps going past individual failures, then raises
    shutil.Error listing all of them.
    """
    errors: list[tuple[str, str, str]] = []

    for dirpath, dirnames, filenames in os.walk(src):
        current = Path(dirpath)
        relative = current.relative_to(src)
        top_level = current == src
        dirnames[:] = [
            d
            for d in dirnames
            if not _excluded(d, exclude) and not (top_level and d in exclude_top)
        ]

        target_dir = dst / relative
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            errors.append((str(current), str(target_dir), str(e)))
            dirnames[:] = []
            continue

        for name in filenames:
            if _excluded(name, exclude):
                continue
            source_file = current / name
            target_file = target_dir / name
            try:
                shutil.copyfile(source_file, target_file)
            except OSError as e:
                errors.append((str(source_file), str(target_file), str(e)))

    if errors:
        raise shutil.Error(errors)


class DurableStateSync:
    """Restore and back up the config, workspace and skills subtrees."""

    CONFIG_SUBTREE = "config"
    WORKSPACE_SUBTREE = "workspace"
    SKILLS_SUBTREE = "skills"

    def __init__(
        self,
        durable_root: Path,
        config_dir: Path,
        workspace_dir: Path,
        skills_dir: Path,
        config_filename: str = "openclaw.json",
        legacy_config_filename: str = "clawdbot.json",
        clock: Callable[[], datetime] | None = None,
    ):
        self.durable_root = durable_root
        self.config_dir = config_dir
        self.workspace_dir = workspace_dir
        self.skills_dir = skills_dir
        self.config_filename = config_filename
        self.legacy_config_filename = legacy_config_filename
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self._lock = threading.Lock()
        self.log = get_logger("sync", service="sandbox")

    @classmethod
    def from_settings(cls, settings: SandboxSettings) -> "DurableStateSync":
        return cls(
            durable_root=settings.durable_root,
            config_dir=settings.config_dir,
            workspace_dir=settings.workspace_dir,
            skills_dir=settings.skills_dir,
            config_filename=settings.config_filename,
            legacy_config_filename=settings.legacy_config_filename,
        )

    @property
    def remote_marker_path(self) -> Path:
        return self.durable_root / MARKER_NAME

    @property
    def local_marker_path(self) -> Path:
        return self.config_dir / MARKER_NAME

    def _config_source(self) -> tuple[Path | None, bool]:
        """Return (source dir, is_legacy_flat_layout) for config restore."""
        structured = self.durable_root / self.CONFIG_SUBTREE
        for name in (self.config_filename, self.legacy_config_filename):
            if (structured / name).is_file():
                return structured, False
        if (self.durable_root / self.legacy_config_filename).is_file():
            return self.durable_root, True
        return None, False

    def restore(self) -> RestoreOutcome:
        """
        Copy durable state onto local disk if the durable marker is newer.

        Never raises for I/O problems: a subtree that fails to copy is logged
        and reported in ``failed``, and the remaining subtrees still run.
        """
        with self._lock:
            start_time = time.time()
            outcome = self._restore()
            self.log.info(
                "sync.restore_complete",
                status=outcome.status.value,
                restored=outcome.restored,
                failed=outcome.failed,
                remote_marker=outcome.remote_marker,
                local_marker=outcome.local_marker,
                duration_ms=int((time.time() - start_time) * 1000),
            )
            return outcome

    def _restore(self) -> RestoreOutcome:
        try:
            mounted = self.durable_root.is_dir()
        except OSError as e:
            self.log.warn("sync.restore_error", subtree="root", exc=e)
            return RestoreOutcome(status=RestoreStatus.SKIPPED)
        if not mounted:
            self.log.info("sync.restore_skip", reason="not_mounted", path=str(self.durable_root))
            return RestoreOutcome(status=RestoreStatus.NOT_MOUNTED)

        try:
            remote = _read_marker(self.remote_marker_path)
            local = _read_marker(self.local_marker_path)
        except OSError as e:
            self.log.warn("sync.marker_read_error", exc=e)
            return RestoreOutcome(status=RestoreStatus.SKIPPED)

        config_unreadable = False
        try:
            config_source, legacy = self._config_source()
        except OSError as e:
            self.log.warn("sync.restore_error", subtree=self.CONFIG_SUBTREE, exc=e)
            config_source, legacy, config_unreadable = None, False, True

        workspace_source = self.durable_root / self.WORKSPACE_SUBTREE
        skills_source = self.durable_root / self.SKILLS_SUBTREE
        has_workspace = _has_entries(workspace_source)
        has_skills = _has_entries(skills_source)

        outcome = RestoreOutcome(
            status=RestoreStatus.SKIPPED,
            remote_marker=remote,
            local_marker=local,
            legacy_layout=legacy,
        )

        if config_source is None and not (config_unreadable or has_workspace or has_skills):
            self.log.info("sync.restore_skip", reason="no_backup_data")
            outcome.status = RestoreStatus.NO_BACKUP
            return outcome

        # Evaluated once: restoring config advances the local marker.
        if not should_restore(remote, local):
            self.log.info("sync.restore_skip", reason="local_is_current")
            return outcome

        outcome.status = RestoreStatus.RESTORED

        if config_unreadable:
            outcome.failed.append(self.CONFIG_SUBTREE)
        elif config_source is not None:
            if self._restore_config(config_source, legacy, outcome):
                outcome.restored.append(self.CONFIG_SUBTREE)
            else:
                outcome.failed.append(self.CONFIG_SUBTREE)

        for name, source, target in (
            (self.WORKSPACE_SUBTREE, workspace_source, self.workspace_dir),
            (self.SKILLS_SUBTREE, skills_source, self.skills_dir),
        ):
            if not _has_entries(source):
                continue
            try:
                target.mkdir(parents=True, exist_ok=True)
                shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True)
                outcome.restored.append(name)
            except (OSError, shutil.Error) as e:
                self.log.warn("sync.restore_error", subtree=name, exc=e)
                outcome.failed.append(name)

        return outcome

    def _restore_config(self, source: Path, legacy: bool, outcome: RestoreOutcome) -> bool:
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            if legacy:
                # Flat layout: only the files at the root belong to the config dir.
                for entry in source.iterdir():
                    if entry.is_file() and entry.name != MARKER_NAME:
                        shutil.copy2(entry, self.config_dir / entry.name)
            else:
                shutil.copytree(source, self.config_dir, symlinks=True, dirs_exist_ok=True)
        except (OSError, shutil.Error) as e:
            self.log.warn("sync.restore_error", subtree=self.CONFIG_SUBTREE, legacy=legacy, exc=e)
            return False

        try:
            shutil.copyfile(self.remote_marker_path, self.local_marker_path)
        except OSError as e:
            self.log.warn("sync.marker_copy_error", exc=e)

        current = self.config_dir / self.config_filename
        previous = self.config_dir / self.legacy_config_filename
        try:
            if previous.is_file() and not current.exists():
                shutil.copy2(previous, current)
                outcome.migrated_legacy_config = True
                self.log.info("sync.legacy_config_migrated", source=previous.name)
        except OSError as e:
            self.log.warn("sync.legacy_migration_error", exc=e)

        return True

    def backup(self) -> BackupOutcome:
        """
        Copy local state onto the durable root, then advance the marker.

        Additive and overwrite-in-place; safe to fail at any point.
        """
        with self._lock:
            start_time = time.time()
            outcome = self._backup()
            self.log.info(
                "sync.backup_complete",
                status=outcome.status.value,
                reason=outcome.reason,
                synced=outcome.synced,
                failed=outcome.failed,
                marker=outcome.marker,
                duration_ms=int((time.time() - start_time) * 1000),
            )
            return outcome

    def _backup(self) -> BackupOutcome:
        try:
            mounted = self.durable_root.is_dir()
            # An empty container must never overwrite a good backup.
            has_config = (self.config_dir / self.config_filename).is_file()
        except OSError as e:
            self.log.warn("sync.backup_error", subtree="root", exc=e)
            return BackupOutcome(status=BackupStatus.SKIPPED, reason="stat_failed")

        if not mounted:
            return BackupOutcome(status=BackupStatus.NOT_MOUNTED)
        if not has_config:
            return BackupOutcome(status=BackupStatus.SKIPPED, reason="no_local_config")

        outcome = BackupOutcome(status=BackupStatus.COMPLETED)

        nested_skills = self.skills_dir.parent == self.workspace_dir
        subtrees = (
            (self.CONFIG_SUBTREE, self.config_dir, EXCLUDE_PATTERNS, ()),
            (
                self.WORKSPACE_SUBTREE,
                self.workspace_dir,
                EXCLUDE_PATTERNS + WORKSPACE_EXCLUDES,
                (self.skills_dir.name,) if nested_skills else (),
            ),
            (self.SKILLS_SUBTREE, self.skills_dir, EXCLUDE_PATTERNS + WORKSPACE_EXCLUDES, ()),
        )

        for name, source, exclude, exclude_top in subtrees:
            try:
                if not source.is_dir():
                    continue
                copy_files(
                    source,
                    self.durable_root / name,
                    exclude=exclude,
                    exclude_top=exclude_top,
                )
                outcome.synced.append(name)
            except (OSError, shutil.Error) as e:
                self.log.warn("sync.backup_error", subtree=name, exc=e)
                outcome.failed.append(name)

        if outcome.failed:
            outcome.status = BackupStatus.PARTIAL
            outcome.reason = "subtree_copy_failed"
            return outcome

        marker = self.clock().isoformat(timespec="seconds")
        try:
            self.remote_marker_path.write_text(marker)
        except OSError as e:
            self.log.warn("sync.marker_write_error", target="durable", exc=e)
            outcome.status = BackupStatus.PARTIAL
            outcome.reason = "marker_write_failed"
            return outcome

        outcome.marker = marker
        try:
            self.local_marker_path.write_text(marker)
        except OSError as e:
            self.log.warn("sync.marker_write_error", target="local", exc=e)

        return outcome
