"""
SQLite snapshots, compressed and shipped to object storage.

A backup is taken with the sqlite3 online backup API, so it is consistent even
while the service keeps writing. Snapshots are gzipped, uploaded under
``cms_backups/`` and pruned locally and remotely by age.
"""

from __future__ import annotations

import gzip
import logging
import shutil
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy.engine import Engine

from cms_backend.clock import Clock, SystemClock, as_utc
from cms_backend.config import Settings
from cms_backend.errors import BackupError, RequestValidationFailed, StorageError
from cms_backend.storage import StorageClient

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "cms_backup_"
REMOTE_DIR = "cms_backups"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


def backup_filename(moment: datetime) -> str:
    return f"{BACKUP_PREFIX}{as_utc(moment).strftime(TIMESTAMP_FORMAT)}.db"


def parse_backup_timestamp(name: str) -> Optional[datetime]:
    """Timestamp embedded in ``cms_backup_YYYYmmdd_HHMMSS.db[.gz]``, if any."""
    base = name.rsplit("/", 1)[-1]
    if not base.startswith(BACKUP_PREFIX):
        return None
    stamp = base[len(BACKUP_PREFIX):].split(".", 1)[0]
    try:
        return datetime.strptime(stamp, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


class BackupService:
    def __init__(
        self,
        engine: Engine,
        storage: Optional[StorageClient],
        settings: Settings,
        clock: Optional[Clock] = None,
    ):
        self.engine = engine
        self.storage = storage
        self.settings = settings
        self.clock = clock or SystemClock()

    @property
    def backup_dir(self) -> Path:
        return Path(self.settings.backup_dir)

    def _require_sqlite(self) -> None:
        if self.engine.dialect.name != "sqlite":
            raise BackupError(
                f"Backups are only supported for SQLite, not {self.engine.dialect.name}"
            )

    def _snapshot_to(self, target: Path) -> None:
        raw = self.engine.raw_connection()
        try:
            with sqlite3.connect(str(target)) as dest:
                raw.driver_connection.backup(dest)
            dest.close()
        except sqlite3.Error as exc:
            raise BackupError(f"Failed to snapshot database: {exc}") from exc
        finally:
            raw.close()

    def backup_database(self, force: bool = False) -> Optional[Path]:
        """
        Snapshot, compress and upload the database.

        Returns the local path of the compressed snapshot when it is kept (no
        storage configured or the upload failed), otherwise ``None``. Does
        nothing unless backups are enabled or ``force`` is set.
        """
        if not (self.settings.backup_enabled or force):
            logger.info("Backup is disabled, skipping")
            return None
        self._require_sqlite()

        logger.info("Starting database backup")
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        name = backup_filename(self.clock.now())
        raw_path = self.backup_dir / name
        compressed_path = self.backup_dir / f"{name}.gz"

        self._snapshot_to(raw_path)
        with open(raw_path, "rb") as src, gzip.open(compressed_path, "wb") as dst:
            shutil.copyfileobj(src, dst)
        raw_path.unlink()
        logger.info("Database backup created: %s", compressed_path)

        kept: Optional[Path] = compressed_path
        if self.storage is not None:
            remote_path = f"{REMOTE_DIR}/{compressed_path.name}"
            try:
                self.storage.upload_file(str(compressed_path), remote_path)
            except (StorageError, OSError) as exc:
                logger.error("Failed to upload backup %s: %s", remote_path, exc)
            else:
                logger.info("Backup uploaded to %s", remote_path)
                compressed_path.unlink()
                kept = None
        else:
            logger.warning("No backup storage configured, keeping local backup only")

        self.cleanup_old_local_backups()
        return kept

    def cleanup_old_local_backups(self) -> list[Path]:
        cutoff = as_utc(self.clock.now()) - timedelta(
            days=self.settings.local_backup_retention_days
        )
        removed = []
        if not self.backup_dir.exists():
            return removed
        for path in sorted(self.backup_dir.glob(f"{BACKUP_PREFIX}*")):
            stamp = parse_backup_timestamp(path.name)
            if stamp is not None and stamp < cutoff:
                path.unlink()
                logger.info("Deleted old local backup: %s", path)
                removed.append(path)
        return removed

    def cleanup_old_remote_backups(self) -> list[str]:
        if self.storage is None:
            logger.info("No backup storage configured, skipping remote cleanup")
            return []
        cutoff = as_utc(self.clock.now()) - timedelta(
            days=self.settings.backup_retention_days
        )
        removed = []
        for obj in self.storage.list_objects(f"{REMOTE_DIR}/"):
            stamp = parse_backup_timestamp(obj.path)
            if stamp is not None and stamp < cutoff:
                self.storage.delete(obj.path)
                logger.info("Deleted old remote backup: %s", obj.path)
                removed.append(obj.path)
        return removed

    def resolve_backup_path(self, backup_path: str) -> Path:
        """
        Locate ``backup_path`` inside the backup directory. Relative names are
        taken relative to it; anything outside it is refused.
        """
        root = self.backup_dir.resolve()
        candidate = Path(backup_path)
        if not candidate.is_absolute():
            candidate = root / candidate
        source = candidate.resolve()
        if root not in source.parents:
            raise RequestValidationFailed(
                f"Backup path must be inside {self.backup_dir}: {backup_path}"
            )
        if not source.is_file():
            raise BackupError(f"Backup file not found: {backup_path}")
        return source

    def restore_database(self, backup_path: str) -> None:
        """Overwrite the live database with the snapshot at ``backup_path``."""
        self._require_sqlite()
        source = self.resolve_backup_path(backup_path)

        logger.warning("Restoring database from backup: %s", source)
        with tempfile.TemporaryDirectory(prefix="cms_restore_") as workdir:
            snapshot = source
            if source.suffix == ".gz":
                snapshot = Path(workdir) / source.with_suffix("").name
                with gzip.open(source, "rb") as src, open(snapshot, "wb") as dst:
                    shutil.copyfileobj(src, dst)
            self._load_snapshot(snapshot)
        logger.info("Database restored from %s", source)

    def _load_snapshot(self, snapshot: Path) -> None:
        raw = self.engine.raw_connection()
        try:
            with sqlite3.connect(str(snapshot)) as src_conn:
                src_conn.backup(raw.driver_connection)
            src_conn.close()
        except sqlite3.Error as exc:
            raise BackupError(f"Failed to restore database: {exc}") from exc
        finally:
            raw.close()
