"""Periodic, optionally encrypted and incremental backups of synced data.

A backup is a JSON document holding the store's data points::

    {"version": 1, "created_at": "...", "is_incremental": false,
     "since": null, "points": [ {...HealthDataPoint.to_dict()...}, ... ]}

When ``encrypt_backups`` is on, the serialized document is written as a
Fernet token.  Incremental backups only carry points synced after the
previous backup; the first backup is always full.  After each write,
backups older than ``retention_period_days`` are deleted.
"""

from __future__ import annotations

import copy
import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Mapping

from healthsync.services.backup_storage import (
    BackupInfo,
    BackupNotFound,
    BackupStorage,
    BackupStorageError,
)
from healthsync.services.encryption import EncryptionError, FieldEncryptor
from healthsync.wearables.base import Clock, HealthDataPoint, utc_now
from healthsync.wearables.config_loader import BackupConfig, BackupFrequency, StorageLocation
from healthsync.wearables.store import HealthDataStore

logger = logging.getLogger("healthsync.wearables.backup")

BACKUP_FORMAT_VERSION = 1

BACKUP_INTERVALS: dict[BackupFrequency, timedelta] = {
    BackupFrequency.DAILY: timedelta(days=1),
    BackupFrequency.WEEKLY: timedelta(days=7),
    BackupFrequency.MONTHLY: timedelta(days=30),
}


class BackupError(Exception):
    """Raised when a backup cannot be created or restored."""


class BackupNotFoundError(BackupError):
    """Raised when restoring a backup id that does not exist."""


class BackupManager:
    """Create, list, prune and restore backups of a ``HealthDataStore``.

    Args:
        config:    Backup policy.
        store:     Data to back up and restore into.
        storages:  Backend per storage location; the policy's
                   ``storage_location`` picks one.
        encryptor: Required when ``encrypt_backups`` is on.
        clock:     Time source.
    """

    def __init__(
        self,
        config: BackupConfig,
        store: HealthDataStore,
        storages: Mapping[StorageLocation, BackupStorage],
        encryptor: FieldEncryptor | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._config = copy.deepcopy(config)
        self._store = store
        self._storages = dict(storages)
        self._encryptor = encryptor
        self._clock = clock
        self._last_backup_time: datetime | None = None

    @property
    def last_backup_time(self) -> datetime | None:
        return self._last_backup_time

    def update_config(self, config: BackupConfig) -> None:
        self._config = copy.deepcopy(config)

    def create_backup_if_needed(self) -> bool:
        """Back up when the frequency interval has elapsed.

        Returns:
            True if a backup was written.

        Raises:
            BackupError: If the backup was due but could not be written.
        """
        if not self._config.enabled:
            return False
        if self._last_backup_time is not None:
            elapsed = self._clock() - self._last_backup_time
            if elapsed < BACKUP_INTERVALS[self._config.frequency]:
                return False
        return self.create_backup()

    def create_backup(self) -> bool:
        """Write a backup now, then prune expired ones.

        Returns:
            False if backups are disabled, otherwise True.

        Raises:
            BackupError: On serialization, encryption or storage failure.
        """
        if not self._config.enabled:
            return False

        storage = self._storage()
        now = self._clock()
        since = self._last_backup_time if self._config.incremental_backups else None
        points = self._store.points(since=since)

        document = {
            "version": BACKUP_FORMAT_VERSION,
            "created_at": now.isoformat(),
            "is_incremental": since is not None,
            "since": since.isoformat() if since is not None else None,
            "points": [p.to_dict() for p in points],
        }
        try:
            payload = json.dumps(document, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise BackupError(f"Could not serialize backup: {exc}") from exc

        if self._config.encrypt_backups:
            if self._encryptor is None:
                raise BackupError("Backup encryption is enabled but no key is configured")
            payload = self._encryptor.encrypt_bytes(payload)

        info = BackupInfo(
            id=f"backup_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:6]}",
            timestamp=now,
            size=len(payload),
            is_incremental=since is not None,
            encrypted=self._config.encrypt_backups,
        )
        try:
            storage.write(info, payload)
        except Exception as exc:
            raise BackupError(f"Could not write backup {info.id}: {exc}") from exc

        self._last_backup_time = now
        logger.info(
            "Created %s backup %s with %d points",
            "incremental" if info.is_incremental else "full",
            info.id,
            len(points),
        )
        self._cleanup(storage, now)
        return True

    def list_backups(self) -> list[BackupInfo]:
        """Return stored backups, newest first.

        Raises:
            BackupError: If the storage backend cannot be listed.
        """
        storage = self._storage()
        try:
            backups = storage.list()
        except (BackupStorageError, OSError) as exc:
            raise BackupError(f"Could not list backups: {exc}") from exc
        return sorted(backups, key=lambda b: b.timestamp, reverse=True)

    def restore_from_backup(self, backup_id: str) -> int:
        """Merge a backup's points into the store.

        Returns:
            Number of points restored.

        Raises:
            BackupNotFoundError: If no backup has that id.
            BackupError:         If the payload is corrupted or cannot be decrypted.
        """
        storage = self._storage()
        try:
            info, payload = storage.read(backup_id)
        except BackupNotFound as exc:
            raise BackupNotFoundError(f"Backup {backup_id} not found") from exc
        except (BackupStorageError, OSError, ValueError) as exc:
            raise BackupError(f"Could not read backup {backup_id}: {exc}") from exc

        if info.encrypted:
            if self._encryptor is None:
                raise BackupError(f"Backup {backup_id} is encrypted but no key is configured")
            try:
                payload = self._encryptor.decrypt_bytes(payload)
            except EncryptionError as exc:
                raise BackupError(f"Could not decrypt backup {backup_id}: {exc}") from exc

        try:
            document = json.loads(payload)
            if document.get("version") != BACKUP_FORMAT_VERSION:
                raise ValueError(f"unsupported backup version {document.get('version')!r}")
            points = [HealthDataPoint.from_dict(item) for item in document["points"]]
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise BackupError(f"Backup {backup_id} is corrupted: {exc}") from exc

        count = self._store.restore(points)
        logger.info("Restored %d points from backup %s", count, backup_id)
        return count

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _storage(self) -> BackupStorage:
        location = self._config.storage_location
        storage = self._storages.get(location)
        if storage is None:
            raise BackupError(f"No backup storage configured for location '{location.value}'")
        return storage

    def _cleanup(self, storage: BackupStorage, now: datetime) -> None:
        cutoff = now - timedelta(days=self._config.retention_period_days)
        try:
            expired = [b for b in storage.list() if b.timestamp < cutoff]
            for backup in expired:
                storage.delete(backup.id)
        except Exception:
            logger.exception("Backup retention cleanup failed")
            return
        if expired:
            logger.info("Deleted %d expired backups", len(expired))
