"""Retention sweep for device configuration backups.

Backups live under ``<data_dir>/config-backups/<device-id>/<backup-id>`` and
each file has a matching ``device_backup`` row in postgres. The sweep keeps the
newest files of every device directory and removes the rest in bounded batches.
The rows of a batch are deleted before its files, so a failed run never leaves
a row without a file that a later sweep would find.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .errors import CommandError, ConsistencyError, PreconditionError, UnmsctlError
from .settings import ContainerExecutor
from .stack import RuntimeStateProbe

LOGGER = logging.getLogger(__name__)

DEFAULT_KEEP = 5
DEFAULT_BATCH_SIZE = 100
RERUN_COMMAND = "unmsctl clear-device-backups"
_DELETE_REPLY = re.compile(r"DELETE\s+(\d+)")


@dataclass(frozen=True)
class BackupFile:
    """A backup file and its modification time."""

    path: Path
    mtime: float

    @property
    def name(self) -> str:
        """Return the file name."""
        return self.path.name

    @property
    def backup_id(self) -> str:
        """Return the identifier of the matching database record."""
        return self.path.stem


@dataclass
class SweepReport:
    """Files removed per device directory."""

    per_directory_deleted: dict[str, int] = field(default_factory=dict)
    dry_run: bool = False

    @property
    def total(self) -> int:
        """Return the number of files removed across all directories."""
        return sum(self.per_directory_deleted.values())

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "per_directory_deleted": dict(self.per_directory_deleted),
            "total": self.total,
            "dry_run": self.dry_run,
        }


class BackupRecordStore(Protocol):
    """Relational store holding one record per backup file."""

    def delete(self, backup_ids: Sequence[str]) -> int:
        """Delete the records for *backup_ids*; return rows removed."""
        ...


def sql_literal(value: str) -> str:
    """Return *value* as a single-quoted SQL string literal."""
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


class PostgresBackupRecords:
    """Delete ``device_backup`` rows through ``psql`` in the postgres container."""

    def __init__(
        self,
        executor: ContainerExecutor,
        *,
        service: str = "postgres",
        user: str = "postgres",
        database: str = "unms",
    ) -> None:
        """Bind the store to the postgres *service* and *database*."""
        self.executor = executor
        self.service = service
        self.user = user
        self.database = database

    @staticmethod
    def delete_statement(backup_ids: Sequence[str]) -> str:
        """Return the single DELETE statement for *backup_ids*."""
        literals = ",".join(sql_literal(backup_id) for backup_id in backup_ids)
        return f"DELETE FROM device_backup WHERE backup_id IN ({literals});"

    def delete(self, backup_ids: Sequence[str]) -> int:
        """Delete the records for *backup_ids* in one statement."""
        if not backup_ids:
            return 0
        result = self.executor.exec(
            self.service,
            "psql",
            [
                "-v",
                "ON_ERROR_STOP=1",
                "-U",
                self.user,
                "-d",
                self.database,
                "-c",
                self.delete_statement(backup_ids),
            ],
        )
        match = _DELETE_REPLY.search(result.stdout)
        return int(match.group(1)) if match else 0


class BackupRetentionSweeper:
    """Apply the keep-newest policy to every device backup directory."""

    def __init__(
        self,
        root: Path,
        records: BackupRecordStore,
        probe: RuntimeStateProbe,
        *,
        keep: int = DEFAULT_KEEP,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        """Configure the sweep over *root*."""
        if keep < 1 or batch_size < 1:
            raise ValueError("keep and batch_size must be positive")
        self.root = root
        self.records = records
        self.probe = probe
        self.keep = keep
        self.batch_size = batch_size

    def sweep(self, *, dry_run: bool = False) -> SweepReport:
        """Sweep all device directories; the database must be reachable."""
        if not self.probe.is_running():
            raise PreconditionError(
                "UNMS is not running. Start it first: unmsctl start",
                remediation="unmsctl start",
            )
        report = SweepReport(dry_run=dry_run)
        for directory in self.device_directories():
            deleted = self.sweep_directory(directory, dry_run=dry_run)
            if deleted:
                report.per_directory_deleted[directory.name] = deleted
        return report

    def device_directories(self) -> list[Path]:
        """Return the per-device directories under the backup root."""
        if not self.root.is_dir():
            LOGGER.debug("Backup root %s does not exist; nothing to sweep", self.root)
            return []
        return sorted(path for path in self.root.iterdir() if path.is_dir())

    def sweep_directory(self, directory: Path, *, dry_run: bool = False) -> int:
        """Remove everything older than the boundary file in *directory*."""
        if len(self.list_files(directory)) <= self.keep:
            return 0

        boundary = self.boundary(directory)
        if boundary is None:
            raise ConsistencyError(
                f"{directory} holds more than {self.keep} backups but no boundary file "
                "could be determined."
            )
        boundary_file, kept = boundary

        if dry_run:
            return len(self._candidates(directory, boundary_file, kept))

        deleted = 0
        while True:
            batch = self._candidates(directory, boundary_file, kept)[: self.batch_size]
            if not batch:
                break
            try:
                self.records.delete([item.backup_id for item in batch])
            except CommandError as exc:
                raise CommandError(
                    f"Removing {len(batch)} backup records for {directory} failed: {exc}. "
                    f"Their files were kept. Re-run: {RERUN_COMMAND}",
                    returncode=exc.returncode,
                    remediation=RERUN_COMMAND,
                ) from exc
            for item in batch:
                try:
                    item.path.unlink(missing_ok=True)
                except OSError as exc:
                    raise UnmsctlError(
                        f"Failed to delete backup {item.path}: {exc}. Re-run: {RERUN_COMMAND}",
                        remediation=RERUN_COMMAND,
                    ) from exc
            deleted += len(batch)
            LOGGER.debug("Removed batch of %d backups from %s", len(batch), directory)
        return deleted

    def list_files(self, directory: Path) -> list[BackupFile]:
        """Return backup files newest first; ties order by name descending."""
        files: list[BackupFile] = []
        for path in directory.iterdir():
            try:
                info = path.stat()
            except FileNotFoundError:
                continue
            if path.is_file():
                files.append(BackupFile(path=path, mtime=info.st_mtime))
        files.sort(key=lambda item: (item.mtime, item.name), reverse=True)
        return files

    def boundary(self, directory: Path) -> tuple[BackupFile, frozenset[str]] | None:
        """Return the boundary file and the names of the files kept with it."""
        files = self.list_files(directory)
        if len(files) < self.keep:
            return None
        kept = files[: self.keep]
        return kept[-1], frozenset(item.name for item in kept)

    def _candidates(
        self,
        directory: Path,
        boundary_file: BackupFile,
        kept: frozenset[str],
    ) -> list[BackupFile]:
        candidates = [
            item
            for item in self.list_files(directory)
            if item.name not in kept and item.mtime <= boundary_file.mtime
        ]
        candidates.reverse()
        return candidates


__all__ = [
    "BackupFile",
    "BackupRecordStore",
    "BackupRetentionSweeper",
    "PostgresBackupRecords",
    "SweepReport",
    "sql_literal",
]
