#!/usr/bin/env python3
"""
Backups of the vault store.

Features:
- Online backups through the SQLite backup API (no writer downtime)
- Manual and scheduled backups
- Backup rotation (keep N backups)
- Compression support
- Verification with PRAGMA integrity_check
- Restore, with a safety backup of the current database first

Losing the store loses the note secrets, which makes every unspent note
permanently unspendable, so a failed backup is always raised to the caller.
"""
import asyncio
import gzip
import json
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Dict, Any

import aiosqlite

from services.api.logging_config import get_logger

logger = get_logger("database.backup")

BACKUP_PREFIX = "vault_backup_"
METADATA_FILE = "backups.json"


class VaultBackup:
    """
    Backup manager for the vault SQLite store
    """

    def __init__(
        self,
        db_path: str,
        backup_dir: str,
        max_backups: int = 7,
        compress: bool = True
    ):
        """
        Args:
            db_path: Path to the vault SQLite database
            backup_dir: Directory to store backups
            max_backups: Maximum number of backups to keep (default: 7)
            compress: Whether to compress backups with gzip (default: True)
        """
        if max_backups < 1:
            raise ValueError("max_backups must be >= 1")
        self.db_path = Path(db_path)
        self.backup_dir = Path(backup_dir)
        self.max_backups = max_backups
        self.compress = compress

        self.backup_dir.mkdir(parents=True, exist_ok=True)

        logger.info(
            f"VaultBackup initialized: db={db_path}, "
            f"backup_dir={backup_dir}, max_backups={max_backups}, compress={compress}"
        )

    @property
    def metadata_path(self) -> Path:
        return self.backup_dir / METADATA_FILE

    def _generate_backup_filename(self) -> str:
        """Generate backup filename with timestamp"""
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
        filename = f"{BACKUP_PREFIX}{timestamp}.db"
        if self.compress:
            filename += ".gz"
        return filename

    async def create_backup(self, description: Optional[str] = None) -> Dict[str, Any]:
        """
        Create a backup of the vault store

        Args:
            description: Optional description for the backup

        Returns:
            dict with backup info (path, size, timestamp)

        Raises:
            FileNotFoundError: If the database does not exist
        """
        logger.info("Starting vault store backup...")

        if not self.db_path.exists():
            raise FileNotFoundError(f"Database not found: {self.db_path}")

        backup_filename = self._generate_backup_filename()
        backup_path = self.backup_dir / backup_filename

        try:
            if self.compress:
                temp_path = self.backup_dir / f"temp_{backup_filename[:-3]}"
                await self._backup_database(temp_path)

                logger.info("Compressing backup...")
                with open(temp_path, 'rb') as f_in:
                    with gzip.open(backup_path, 'wb') as f_out:
                        shutil.copyfileobj(f_in, f_out)
                temp_path.unlink()
            else:
                await self._backup_database(backup_path)
        except Exception as e:
            logger.error(f"Backup failed: {e}", exc_info=True)
            raise

        backup_size = backup_path.stat().st_size
        backup_info = {
            "path": str(backup_path),
            "filename": backup_filename,
            "size_bytes": backup_size,
            "size_mb": round(backup_size / (1024 * 1024), 2),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "compressed": self.compress,
            "description": description
        }

        self._save_backup_metadata(backup_info)
        self._rotate_backups()

        logger.info(
            f"Backup created successfully: {backup_filename} "
            f"({backup_info['size_mb']} MB)"
        )
        return backup_info

    async def _backup_database(self, backup_path: Path):
        """Copy the live database page by page with the SQLite backup API"""
        async with aiosqlite.connect(str(self.db_path)) as source_conn:
            async with aiosqlite.connect(str(backup_path)) as backup_conn:
                await source_conn.backup(backup_conn)

    def _load_metadata(self) -> Dict[str, Any]:
        if self.metadata_path.exists():
            with open(self.metadata_path, 'r') as f:
                return json.load(f)
        return {"backups": []}

    def _write_metadata(self, metadata: Dict[str, Any]):
        with open(self.metadata_path, 'w') as f:
            json.dump(metadata, f, indent=2)

    def _save_backup_metadata(self, backup_info: Dict[str, Any]):
        metadata = self._load_metadata()
        metadata["backups"].append(backup_info)
        self._write_metadata(metadata)

    def _rotate_backups(self):
        """
        Delete the oldest backups beyond max_backups and drop them from the metadata
        """
        backup_files = sorted(self.backup_dir.glob(f"{BACKUP_PREFIX}*.db*"), key=lambda p: p.name, reverse=True)

        if len(backup_files) <= self.max_backups:
            return

        for backup_file in backup_files[self.max_backups:]:
            logger.info(f"Rotating old backup: {backup_file.name}")
            backup_file.unlink()

        metadata = self._load_metadata()
        metadata["backups"] = [b for b in metadata["backups"] if Path(b["path"]).exists()]
        self._write_metadata(metadata)

    async def list_backups(self) -> List[Dict[str, Any]]:
        """
        List all available backups, oldest first

        Returns:
            List of backup info dicts
        """
        metadata = self._load_metadata()
        return [b for b in metadata["backups"] if Path(b["path"]).exists()]

    def _extract(self, backup_path: Path, temp_name: str) -> Path:
        temp_path = self.backup_dir / temp_name
        with gzip.open(backup_path, 'rb') as f_in:
            with open(temp_path, 'wb') as f_out:
                shutil.copyfileobj(f_in, f_out)
        return temp_path

    async def restore_backup(self, backup_filename: str, force: bool = False) -> Dict[str, Any]:
        """
        Restore the vault store from a backup.

        The store must not be open while restoring; reopen it afterwards.

        Args:
            backup_filename: Name of backup file to restore
            force: If True, skip the safety backup of the current database

        Returns:
            dict with the restored file and the safety backup (if any)

        Raises:
            FileNotFoundError: If backup file doesn't exist
            ValueError: If the backup fails PRAGMA integrity_check
        """
        backup_path = self.backup_dir / backup_filename
        if not backup_path.exists():
            raise FileNotFoundError(f"Backup not found: {backup_filename}")

        safety = None
        if self.db_path.exists() and not force:
            logger.warning("Creating safety backup before restore...")
            safety = await self.create_backup(description="Safety backup before restore")

        temp_path = None
        if backup_path.suffix == ".gz":
            logger.info("Extracting compressed backup...")
            temp_path = self._extract(backup_path, "temp_restore.db")
            restore_source = temp_path
        else:
            restore_source = backup_path

        try:
            logger.info("Verifying backup integrity...")
            if not await self._verify_backup(restore_source):
                raise ValueError("Backup verification failed - file may be corrupted")

            logger.info(f"Restoring database from {backup_filename}...")
            # stale WAL frames from the old database must not be replayed onto the restored one
            for suffix in ("-wal", "-shm"):
                Path(str(self.db_path) + suffix).unlink(missing_ok=True)
            shutil.copy2(restore_source, self.db_path)
        finally:
            if temp_path is not None and temp_path.exists():
                temp_path.unlink()

        logger.info("Database restored successfully")
        return {"restored": backup_filename, "safety_backup": safety["filename"] if safety else None}

    async def _verify_backup(self, backup_path: Path) -> bool:
        """
        Run PRAGMA integrity_check on a backup file

        Returns:
            True if valid, False otherwise
        """
        try:
            async with aiosqlite.connect(str(backup_path)) as conn:
                async with conn.execute("PRAGMA integrity_check") as cursor:
                    result = await cursor.fetchone()
                    return result is not None and result[0] == "ok"
        except aiosqlite.DatabaseError as e:
            logger.error(f"Backup verification failed: {e}")
            return False

    async def verify_latest_backup(self) -> bool:
        """
        Verify the most recent backup

        Returns:
            True if valid, False otherwise
        """
        backups = await self.list_backups()
        if not backups:
            logger.warning("No backups found to verify")
            return False

        backup_path = Path(backups[-1]["path"])
        logger.info(f"Verifying backup: {backup_path.name}")

        if backup_path.suffix == ".gz":
            temp_path = self._extract(backup_path, "temp_verify.db")
            try:
                is_valid = await self._verify_backup(temp_path)
            finally:
                temp_path.unlink()
        else:
            is_valid = await self._verify_backup(backup_path)

        if is_valid:
            logger.info("Backup verification passed")
        else:
            logger.error("Backup verification failed")
        return is_valid

    async def get_backup_stats(self) -> Dict[str, Any]:
        backups = await self.list_backups()

        if not backups:
            return {
                "total_backups": 0,
                "total_size_mb": 0,
                "oldest_backup": None,
                "newest_backup": None
            }

        total_size = sum(b["size_bytes"] for b in backups)
        timestamps = [b["timestamp"] for b in backups]

        return {
            "total_backups": len(backups),
            "total_size_bytes": total_size,
            "total_size_mb": round(total_size / (1024 * 1024), 2),
            "oldest_backup": min(timestamps),
            "newest_backup": max(timestamps),
            "backups": backups
        }


class BackupScheduler:
    """
    Periodic backups inside the API process.

    A failed run is retried after `retry_seconds` (never longer than the
    interval itself). Every run that fails or whose backup does not verify
    counts towards `consecutive_failures`; from `alert_after` failures on,
    each one is logged at CRITICAL.
    """

    def __init__(
        self,
        backup_manager: VaultBackup,
        interval_hours: float = 24,
        retry_seconds: float = 300,
        alert_after: int = 3,
    ):
        """
        Args:
            backup_manager: VaultBackup instance
            interval_hours: Backup interval in hours (default: 24)
            retry_seconds: Delay before retrying a failed run
            alert_after: Consecutive failures before every failure is CRITICAL
        """
        if interval_hours <= 0:
            raise ValueError(f"interval_hours must be > 0 (got {interval_hours})")
        self.backup_manager = backup_manager
        self.interval_seconds = interval_hours * 3600
        self.retry_seconds = min(retry_seconds, self.interval_seconds)
        self.alert_after = alert_after
        self.running = False
        self.task: Optional[asyncio.Task] = None

        self.consecutive_failures = 0
        self.last_backup: Optional[Dict[str, Any]] = None
        self.last_error: Optional[str] = None

        logger.info(f"BackupScheduler initialized: interval={interval_hours}h, retry={self.retry_seconds}s")

    async def start(self):
        """Start automatic backup scheduler"""
        if self.running:
            logger.warning("Backup scheduler already running")
            return

        self.running = True
        self.task = asyncio.create_task(self._backup_loop())
        logger.info("Backup scheduler started")

    async def stop(self):
        """Stop automatic backup scheduler"""
        if not self.running:
            return

        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass

        logger.info("Backup scheduler stopped")

    def _failed(self, reason: str) -> None:
        self.consecutive_failures += 1
        self.last_error = reason
        msg = f"Scheduled backup failed ({self.consecutive_failures} in a row): {reason}"
        if self.consecutive_failures >= self.alert_after:
            logger.critical(msg + "; unspent notes are not protected by a recent backup")
        else:
            logger.error(msg)

    async def run_once(self) -> bool:
        """One scheduled backup plus verification. Returns True when it verified."""
        logger.info("Scheduled backup starting...")
        try:
            backup_info = await self.backup_manager.create_backup(
                description="Scheduled automatic backup"
            )
        except Exception as e:
            self._failed(f"{type(e).__name__}: {e}")
            return False

        if not await self.backup_manager.verify_latest_backup():
            # a backup that does not verify cannot restore the note secrets
            logger.critical(f"Scheduled backup {backup_info['filename']} failed verification")
            self._failed(f"{backup_info['filename']} failed verification")
            return False

        self.consecutive_failures = 0
        self.last_error = None
        self.last_backup = backup_info
        logger.info(f"Scheduled backup completed: {backup_info['filename']}")
        return True

    async def _backup_loop(self):
        while self.running:
            try:
                ok = await self.run_once()
                await asyncio.sleep(self.interval_seconds if ok else self.retry_seconds)
            except asyncio.CancelledError:
                logger.info("Backup scheduler cancelled")
                break
