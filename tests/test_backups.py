"""Tests for the device backup retention sweep."""
from __future__ import annotations

import os
from collections.abc import Sequence
from pathlib import Path

import pytest
from conftest import FakeEngine

from unmsctl.backups import (
    BackupRetentionSweeper,
    PostgresBackupRecords,
    sql_literal,
)
from unmsctl.errors import CommandError, ConsistencyError, PreconditionError, UnmsctlError
from unmsctl.stack import RuntimeStateProbe

BASE_MTIME = 1_700_000_000


def _populate(directory: Path, count: int, *, start: int = 1, same_mtime: bool = False) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    for index in range(start, start + count):
        path = directory / f"backup-{index:03d}.tar"
        path.write_bytes(b"backup")
        mtime = BASE_MTIME if same_mtime else BASE_MTIME + index * 60
        os.utime(path, (mtime, mtime))


def _names(directory: Path) -> list[str]:
    return sorted(path.name for path in directory.iterdir())


def _sweeper(
    engine: FakeEngine,
    root: Path,
    *,
    batch_size: int = 100,
) -> BackupRetentionSweeper:
    return BackupRetentionSweeper(
        root,
        PostgresBackupRecords(engine),
        RuntimeStateProbe(engine),
        keep=5,
        batch_size=batch_size,
    )


def test_directories_at_or_below_limit_untouched(engine: FakeEngine, tmp_path: Path) -> None:
    """Five or fewer files is a no-op with no database statement."""
    root = tmp_path / "config-backups"
    _populate(root / "device-a", 5)
    _populate(root / "device-b", 2)

    report = _sweeper(engine, root).sweep()

    assert report.total == 0
    assert report.per_directory_deleted == {}
    assert len(_names(root / "device-a")) == 5
    assert engine.statements == []


def test_sweep_keeps_five_newest(engine: FakeEngine, tmp_path: Path) -> None:
    """Only the five most recently modified files survive."""
    root = tmp_path / "config-backups"
    _populate(root / "device-a", 8)

    report = _sweeper(engine, root).sweep()

    assert report.per_directory_deleted == {"device-a": 3}
    assert report.total == 3
    assert _names(root / "device-a") == [f"backup-{index:03d}.tar" for index in range(4, 9)]
    assert engine.statements == [
        "DELETE FROM device_backup WHERE backup_id IN "
        "('backup-001','backup-002','backup-003');"
    ]
    psql = engine.commands("exec")[-1]
    assert psql[1:3] == ("postgres", "psql")
    assert psql[3][:6] == ("-v", "ON_ERROR_STOP=1", "-U", "postgres", "-d", "unms")


def test_sweep_is_idempotent(engine: FakeEngine, tmp_path: Path) -> None:
    """A second sweep finds nothing to delete."""
    root = tmp_path / "config-backups"
    _populate(root / "device-a", 9)
    sweeper = _sweeper(engine, root)

    assert sweeper.sweep().total == 4
    assert sweeper.sweep().total == 0
    assert len(engine.statements) == 1


def test_batches_are_bounded(engine: FakeEngine, tmp_path: Path) -> None:
    """Deletion runs in batches and each batch removes its own records."""
    root = tmp_path / "config-backups"
    _populate(root / "device-a", 12)

    report = _sweeper(engine, root, batch_size=2).sweep()

    assert report.total == 7
    assert _names(root / "device-a") == [f"backup-{index:03d}.tar" for index in range(8, 13)]
    assert engine.statements == [
        "DELETE FROM device_backup WHERE backup_id IN ('backup-001','backup-002');",
        "DELETE FROM device_backup WHERE backup_id IN ('backup-003','backup-004');",
        "DELETE FROM device_backup WHERE backup_id IN ('backup-005','backup-006');",
        "DELETE FROM device_backup WHERE backup_id IN ('backup-007');",
    ]


def test_equal_mtimes_break_ties_by_name(engine: FakeEngine, tmp_path: Path) -> None:
    """Files with identical timestamps are ordered by name, highest kept."""
    root = tmp_path / "config-backups"
    _populate(root / "device-a", 7, same_mtime=True)

    report = _sweeper(engine, root).sweep()

    assert report.total == 2
    assert _names(root / "device-a") == [f"backup-{index:03d}.tar" for index in range(3, 8)]


def test_files_added_during_sweep_are_kept(engine: FakeEngine, tmp_path: Path) -> None:
    """Backups newer than the boundary are never candidates."""
    root = tmp_path / "config-backups"
    device = root / "device-a"
    _populate(device, 9)

    class AddingRecords:
        def __init__(self) -> None:
            self.batches: list[list[str]] = []

        def delete(self, backup_ids: Sequence[str]) -> int:
            if not self.batches:
                _populate(device, 1, start=100)
            self.batches.append(list(backup_ids))
            return len(backup_ids)

    records = AddingRecords()
    sweeper = BackupRetentionSweeper(root, records, RuntimeStateProbe(engine), batch_size=2)

    assert sweeper.sweep().total == 4
    assert records.batches == [["backup-001", "backup-002"], ["backup-003", "backup-004"]]
    assert _names(device) == [
        *[f"backup-{index:03d}.tar" for index in range(5, 10)],
        "backup-100.tar",
    ]


def test_multiple_devices_reported_separately(engine: FakeEngine, tmp_path: Path) -> None:
    """Only directories that lost files appear in the report."""
    root = tmp_path / "config-backups"
    _populate(root / "device-a", 7)
    _populate(root / "device-b", 3)
    _populate(root / "device-c", 6)
    (root / "stray.txt").write_text("not a device", encoding="utf-8")

    report = _sweeper(engine, root).sweep()

    assert report.per_directory_deleted == {"device-a": 2, "device-c": 1}
    assert report.to_dict() == {
        "per_directory_deleted": {"device-a": 2, "device-c": 1},
        "total": 3,
        "dry_run": False,
    }


def test_dry_run_deletes_nothing(engine: FakeEngine, tmp_path: Path) -> None:
    """Dry runs count candidates without touching files or records."""
    root = tmp_path / "config-backups"
    _populate(root / "device-a", 8)

    report = _sweeper(engine, root).sweep(dry_run=True)

    assert report.dry_run is True
    assert report.total == 3
    assert len(_names(root / "device-a")) == 8
    assert engine.statements == []


def test_missing_root_is_empty_sweep(engine: FakeEngine, tmp_path: Path) -> None:
    """A host without any backups yet sweeps nothing."""
    report = _sweeper(engine, tmp_path / "config-backups").sweep()

    assert report.total == 0


def test_sweep_requires_running_stack(stopped_engine: FakeEngine, tmp_path: Path) -> None:
    """The relational store must be reachable before anything is deleted."""
    root = tmp_path / "config-backups"
    _populate(root / "device-a", 8)

    with pytest.raises(PreconditionError, match="unmsctl start"):
        _sweeper(stopped_engine, root).sweep()

    assert len(_names(root / "device-a")) == 8


def test_missing_boundary_is_consistency_error(
    engine: FakeEngine,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A directory over the limit without a boundary aborts the sweep."""
    root = tmp_path / "config-backups"
    _populate(root / "device-a", 8)
    sweeper = _sweeper(engine, root)
    monkeypatch.setattr(sweeper, "boundary", lambda directory: None)

    with pytest.raises(ConsistencyError, match="no boundary file"):
        sweeper.sweep()

    assert len(_names(root / "device-a")) == 8


def test_quotes_in_backup_names_are_escaped(engine: FakeEngine, tmp_path: Path) -> None:
    """Odd file names are deleted with an escaped literal, not skipped."""
    root = tmp_path / "config-backups"
    device = root / "device-a"
    _populate(device, 6)
    odd = device / "o'brien backup.tar"
    odd.write_bytes(b"backup")
    os.utime(odd, (BASE_MTIME, BASE_MTIME))
    _populate(root / "device-b", 6)

    report = _sweeper(engine, root).sweep()

    assert report.per_directory_deleted == {"device-a": 2, "device-b": 1}
    assert not odd.exists()
    assert engine.statements[0] == (
        "DELETE FROM device_backup WHERE backup_id IN ('o''brien backup','backup-001');"
    )


def test_record_failure_keeps_files(engine: FakeEngine, tmp_path: Path) -> None:
    """A failed DELETE leaves the batch's files in place and names the retry command."""
    root = tmp_path / "config-backups"
    _populate(root / "device-a", 8)
    engine.failures["psql"] = CommandError("psql failed (exit 1): connection refused", returncode=1)

    with pytest.raises(CommandError) as excinfo:
        _sweeper(engine, root).sweep()

    assert "Their files were kept" in str(excinfo.value)
    assert "Re-run: unmsctl clear-device-backups" in str(excinfo.value)
    assert excinfo.value.remediation == "unmsctl clear-device-backups"
    assert excinfo.value.returncode == 1
    assert len(_names(root / "device-a")) == 8


def test_rerun_after_record_failure_removes_rows(engine: FakeEngine, tmp_path: Path) -> None:
    """Re-running the sweep after a failed DELETE removes the same rows and files."""
    root = tmp_path / "config-backups"
    _populate(root / "device-a", 8)
    sweeper = _sweeper(engine, root)
    engine.failures["psql"] = CommandError("psql failed (exit 1): connection refused", returncode=1)
    with pytest.raises(CommandError):
        sweeper.sweep()

    del engine.failures["psql"]
    report = sweeper.sweep()

    assert report.total == 3
    assert engine.statements == [
        "DELETE FROM device_backup WHERE backup_id IN "
        "('backup-001','backup-002','backup-003');"
    ]
    assert _names(root / "device-a") == [f"backup-{index:03d}.tar" for index in range(4, 9)]


def test_unlink_failure_after_rows_removed(
    engine: FakeEngine,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A file that survives its row is picked up again by the next sweep."""
    root = tmp_path / "config-backups"
    device = root / "device-a"
    _populate(device, 6)

    def fail_unlink(self: Path, missing_ok: bool = False) -> None:
        raise PermissionError("read-only file system")

    monkeypatch.setattr(Path, "unlink", fail_unlink)
    with pytest.raises(UnmsctlError, match="Re-run: unmsctl clear-device-backups"):
        _sweeper(engine, root).sweep()
    monkeypatch.undo()

    assert _sweeper(engine, root).sweep().total == 1
    assert len(engine.statements) == 2
    assert engine.statements[0] == engine.statements[1]
    assert len(_names(device)) == 5


def test_sql_literal_escapes_quotes() -> None:
    """Single quotes are doubled inside the literal."""
    assert sql_literal("5f1a-backup_01") == "'5f1a-backup_01'"
    assert sql_literal("x');DROP TABLE device_backup;--") == "'x'');DROP TABLE device_backup;--'"
    assert PostgresBackupRecords.delete_statement(["a'b", "c"]) == (
        "DELETE FROM device_backup WHERE backup_id IN ('a''b','c');"
    )
