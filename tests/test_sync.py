"""Tests for durable state restore and backup."""

import errno
import shutil
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from moltbox.sandbox.sync import (
    MARKER_NAME,
    DurableStateSync,
    copy_files,
    parse_marker,
    should_restore,
)
from moltbox.sandbox.types import BackupStatus, RestoreStatus

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def paths(tmp_path: Path) -> dict[str, Path]:
    durable = tmp_path / "durable"
    durable.mkdir()
    workspace = tmp_path / "clawd"
    return {
        "durable": durable,
        "config": tmp_path / "clawdbot",
        "workspace": workspace,
        "skills": workspace / "skills",
    }


@pytest.fixture
def sync(paths) -> DurableStateSync:
    return DurableStateSync(
        durable_root=paths["durable"],
        config_dir=paths["config"],
        workspace_dir=paths["workspace"],
        skills_dir=paths["skills"],
        clock=lambda: FIXED_NOW,
    )


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


class TestRestoreGate:
    """should_restore(remote, local) truth table."""

    @pytest.mark.parametrize(
        "remote,local,expected",
        [
            (None, None, False),
            (None, "2026-01-01T00:00:00Z", False),
            ("2026-01-01T00:00:00Z", None, True),
            ("2026-01-02T00:00:00Z", "2026-01-01T00:00:00Z", True),
            ("2026-01-01T00:00:00Z", "2026-01-01T00:00:00Z", False),
            ("2026-01-01T00:00:00Z", "2026-01-02T00:00:00Z", False),
            ("2026-01-01T00:00:00+00:00", "2025-12-31T23:00:00-02:00", False),
            ("garbage", "2026-01-01T00:00:00Z", False),
            ("2026-01-01T00:00:00Z", "garbage", True),
        ],
    )
    def test_truth_table(self, remote, local, expected):
        assert should_restore(remote, local) is expected

    def test_unparseable_marker_is_epoch(self):
        assert parse_marker("not a date") == datetime(1970, 1, 1, tzinfo=timezone.utc)

    def test_naive_marker_is_utc(self):
        assert parse_marker("2026-01-01T00:00:00") == datetime(2026, 1, 1, tzinfo=timezone.utc)


class TestRestore:
    """DurableStateSync.restore()"""

    def test_not_mounted(self, paths, sync):
        shutil.rmtree(paths["durable"])

        outcome = sync.restore()

        assert outcome.status == RestoreStatus.NOT_MOUNTED
        assert not paths["config"].exists()

    def test_no_backup_data(self, paths, sync):
        write(paths["durable"] / MARKER_NAME, "2026-01-01T00:00:00Z")

        outcome = sync.restore()

        assert outcome.status == RestoreStatus.NO_BACKUP

    def test_restores_legacy_config_into_fresh_container(self, paths, sync):
        """Remote marker, no local marker, only clawdbot.json in the backup."""
        durable = paths["durable"]
        write(durable / MARKER_NAME, "2026-01-01T00:00:00Z")
        write(durable / "config" / "clawdbot.json", '{"gateway": {"port": 1}}')
        write(durable / "workspace" / "IDENTITY.md", "I am molt")

        outcome = sync.restore()

        config_dir = paths["config"]
        assert outcome.status == RestoreStatus.RESTORED
        assert outcome.migrated_legacy_config is True
        assert (config_dir / "openclaw.json").read_text() == '{"gateway": {"port": 1}}'
        assert (config_dir / "clawdbot.json").exists()
        assert (config_dir / MARKER_NAME).read_text() == "2026-01-01T00:00:00Z"
        assert (paths["workspace"] / "IDENTITY.md").read_text() == "I am molt"
        assert outcome.restored == ["config", "workspace"]

    def test_existing_new_config_not_overwritten_by_migration(self, paths, sync):
        durable = paths["durable"]
        write(durable / MARKER_NAME, "2026-01-01T00:00:00Z")
        write(durable / "config" / "openclaw.json", "new")
        write(durable / "config" / "clawdbot.json", "old")

        outcome = sync.restore()

        assert outcome.migrated_legacy_config is False
        assert (paths["config"] / "openclaw.json").read_text() == "new"

    def test_skips_when_local_is_current(self, paths, sync):
        durable = paths["durable"]
        write(durable / MARKER_NAME, "2026-01-01T00:00:00Z")
        write(durable / "config" / "openclaw.json", "remote")
        write(paths["config"] / MARKER_NAME, "2026-01-02T00:00:00Z")
        write(paths["config"] / "openclaw.json", "local")

        outcome = sync.restore()

        assert outcome.status == RestoreStatus.SKIPPED
        assert (paths["config"] / "openclaw.json").read_text() == "local"

    def test_gate_evaluated_once_for_all_subtrees(self, paths, sync):
        """Restoring config advances the local marker; workspace and skills still restore."""
        durable = paths["durable"]
        write(durable / MARKER_NAME, "2026-01-01T00:00:00Z")
        write(durable / "config" / "openclaw.json", "{}")
        write(durable / "workspace" / "MEMORY.md", "remember")
        write(durable / "skills" / "weather" / "SKILL.md", "skill")

        outcome = sync.restore()

        assert outcome.restored == ["config", "workspace", "skills"]
        assert (paths["workspace"] / "MEMORY.md").exists()
        assert (paths["skills"] / "weather" / "SKILL.md").exists()

    def test_legacy_flat_layout(self, paths, sync):
        """Old backups kept clawdbot.json at the durable root."""
        durable = paths["durable"]
        write(durable / MARKER_NAME, "2026-01-01T00:00:00Z")
        write(durable / "clawdbot.json", "{}")
        write(durable / "workspace" / "notes.md", "n")

        outcome = sync.restore()

        config_dir = paths["config"]
        assert outcome.legacy_layout is True
        assert (config_dir / "clawdbot.json").exists()
        assert (config_dir / "openclaw.json").exists()
        assert not (config_dir / "workspace").exists()
        assert (config_dir / MARKER_NAME).read_text() == "2026-01-01T00:00:00Z"

    def test_failed_subtree_does_not_stop_others(self, paths, sync):
        durable = paths["durable"]
        write(durable / MARKER_NAME, "2026-01-01T00:00:00Z")
        write(durable / "config" / "openclaw.json", "{}")
        write(durable / "workspace" / "MEMORY.md", "remember")
        write(durable / "skills" / "a" / "SKILL.md", "skill")

        real_copytree = shutil.copytree

        def flaky_copytree(src, dst, *args, **kwargs):
            if Path(src).name == "workspace":
                raise OSError("Input/output error")
            return real_copytree(src, dst, *args, **kwargs)

        with patch("moltbox.sandbox.sync.shutil.copytree", side_effect=flaky_copytree):
            outcome = sync.restore()

        assert outcome.failed == ["workspace"]
        assert "config" in outcome.restored
        assert "skills" in outcome.restored

    def test_unreadable_config_source_is_failed_not_raised(self, paths, sync):
        """EIO while looking for the backed-up config leaves the other subtrees restoring."""
        durable = paths["durable"]
        write(durable / MARKER_NAME, "2026-01-01T00:00:00Z")
        write(durable / "config" / "openclaw.json", "{}")
        write(durable / "workspace" / "MEMORY.md", "remember")
        real_is_file = Path.is_file

        def flaky_is_file(path):
            if path.parent == durable / "config":
                raise OSError(errno.EIO, "Input/output error", str(path))
            return real_is_file(path)

        with patch.object(Path, "is_file", flaky_is_file):
            outcome = sync.restore()

        assert outcome.status == RestoreStatus.RESTORED
        assert outcome.failed == ["config"]
        assert outcome.restored == ["workspace"]
        assert (paths["workspace"] / "MEMORY.md").read_text() == "remember"
        assert not (paths["config"] / "openclaw.json").exists()

    def test_unreadable_durable_root_is_skipped(self, paths, sync):
        durable = paths["durable"]
        real_is_dir = Path.is_dir

        def flaky_is_dir(path):
            if path == durable:
                raise OSError(errno.EIO, "Input/output error", str(path))
            return real_is_dir(path)

        with patch.object(Path, "is_dir", flaky_is_dir):
            outcome = sync.restore()

        assert outcome.status == RestoreStatus.SKIPPED
        assert outcome.restored == []


class TestBackup:
    """DurableStateSync.backup()"""

    def test_not_mounted(self, paths, sync):
        shutil.rmtree(paths["durable"])

        assert sync.backup().status == BackupStatus.NOT_MOUNTED

    def test_skipped_without_local_config(self, paths, sync):
        """An empty container never overwrites a good backup."""
        write(paths["durable"] / MARKER_NAME, "2026-01-01T00:00:00Z")

        outcome = sync.backup()

        assert outcome.status == BackupStatus.SKIPPED
        assert outcome.reason == "no_local_config"
        assert (paths["durable"] / MARKER_NAME).read_text() == "2026-01-01T00:00:00Z"

    def test_completed(self, paths, sync):
        write(paths["config"] / "openclaw.json", "{}")
        write(paths["config"] / "gateway.lock", "")
        write(paths["workspace"] / "MEMORY.md", "m")
        write(paths["workspace"] / "node_modules" / "x.js", "x")
        write(paths["workspace"] / ".git" / "HEAD", "ref")
        write(paths["skills"] / "weather" / "SKILL.md", "s")

        outcome = sync.backup()

        durable = paths["durable"]
        assert outcome.status == BackupStatus.COMPLETED
        assert outcome.synced == ["config", "workspace", "skills"]
        assert outcome.marker == "2026-03-01T12:00:00+00:00"
        assert (durable / MARKER_NAME).read_text() == outcome.marker
        assert (paths["config"] / MARKER_NAME).read_text() == outcome.marker
        assert (durable / "config" / "openclaw.json").exists()
        assert not (durable / "config" / "gateway.lock").exists()
        assert (durable / "workspace" / "MEMORY.md").exists()
        assert not (durable / "workspace" / "node_modules").exists()
        assert not (durable / "workspace" / ".git").exists()
        assert not (durable / "workspace" / "skills").exists()
        assert (durable / "skills" / "weather" / "SKILL.md").exists()

    def test_never_deletes_durable_files(self, paths, sync):
        write(paths["durable"] / "workspace" / "old.md", "keep me")
        write(paths["config"] / "openclaw.json", "{}")
        write(paths["workspace"] / "new.md", "n")

        sync.backup()

        assert (paths["durable"] / "workspace" / "old.md").read_text() == "keep me"

    def test_partial_failure_keeps_prior_marker_and_data(self, paths, sync):
        """A failing subtree leaves the durable marker and earlier data untouched."""
        durable = paths["durable"]
        write(durable / MARKER_NAME, "2026-01-01T00:00:00Z")
        write(durable / "workspace" / "MEMORY.md", "previous")
        write(paths["config"] / "openclaw.json", "{}")
        write(paths["workspace"] / "MEMORY.md", "current")

        real_copy_files = copy_files

        def flaky_copy_files(src, dst, **kwargs):
            if Path(dst).name == "workspace":
                raise shutil.Error([(str(src), str(dst), "Input/output error")])
            return real_copy_files(src, dst, **kwargs)

        with patch("moltbox.sandbox.sync.copy_files", side_effect=flaky_copy_files):
            outcome = sync.backup()

        assert outcome.status == BackupStatus.PARTIAL
        assert outcome.reason == "subtree_copy_failed"
        assert outcome.failed == ["workspace"]
        assert (durable / MARKER_NAME).read_text() == "2026-01-01T00:00:00Z"
        assert (durable / "workspace" / "MEMORY.md").read_text() == "previous"
        assert not (paths["config"] / MARKER_NAME).exists()

    def test_marker_write_failure_is_partial(self, paths, sync):
        write(paths["config"] / "openclaw.json", "{}")

        with patch.object(Path, "write_text", side_effect=OSError("read-only")):
            outcome = sync.backup()

        assert outcome.status == BackupStatus.PARTIAL
        assert outcome.reason == "marker_write_failed"
        assert outcome.marker is None

    def test_unreadable_durable_root_is_skipped(self, paths, sync):
        write(paths["config"] / "openclaw.json", "{}")
        durable = paths["durable"]
        real_is_dir = Path.is_dir

        def flaky_is_dir(path):
            if path == durable:
                raise OSError(errno.EIO, "Input/output error", str(path))
            return real_is_dir(path)

        with patch.object(Path, "is_dir", flaky_is_dir):
            outcome = sync.backup()

        assert outcome.status == BackupStatus.SKIPPED
        assert outcome.reason == "stat_failed"
        assert not (durable / MARKER_NAME).exists()


class TestCopyFiles:
    """Content-only, additive copy."""

    def test_collects_errors(self, tmp_path):
        src = tmp_path / "src"
        write(src / "a.txt", "a")
        write(src / "b.txt", "b")

        real_copyfile = shutil.copyfile

        def flaky(source, target):
            if Path(source).name == "a.txt":
                raise OSError("boom")
            return real_copyfile(source, target)

        with patch("moltbox.sandbox.sync.shutil.copyfile", side_effect=flaky):
            with pytest.raises(shutil.Error) as exc_info:
                copy_files(src, tmp_path / "dst")

        assert len(exc_info.value.args[0]) == 1
        assert (tmp_path / "dst" / "b.txt").read_text() == "b"

    def test_excludes(self, tmp_path):
        src = tmp_path / "src"
        write(src / "keep.md", "k")
        write(src / "run.log", "l")
        write(src / "x.tmp", "t")

        copy_files(src, tmp_path / "dst")

        assert sorted(p.name for p in (tmp_path / "dst").iterdir()) == ["keep.md"]
