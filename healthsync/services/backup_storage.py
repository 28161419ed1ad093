"""Backup payload storage: local filesystem or S3-compatible object storage."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from healthsync.config import Settings
from healthsync.wearables.base import parse_timestamp

logger = logging.getLogger("healthsync.backup_storage")


@dataclass(frozen=True)
class BackupInfo:
    """Listing entry for one stored backup.

    Attributes:
        id:             Backup id (also the storage key stem).
        timestamp:      Creation time (UTC).
        size:           Stored payload size in bytes.
        is_incremental: True if only points since the previous backup were saved.
        encrypted:      True if the payload is a Fernet token.
    """

    id: str
    timestamp: datetime
    size: int
    is_incremental: bool
    encrypted: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "size": self.size,
            "is_incremental": self.is_incremental,
            "encrypted": self.encrypted,
        }


class BackupNotFound(KeyError):
    """Raised by storage backends when a backup id does not exist."""


class BackupStorageError(Exception):
    """Raised by storage backends when the backing store cannot be reached or read."""


class BackupStorage(Protocol):
    def write(self, info: BackupInfo, payload: bytes) -> None: ...

    def read(self, backup_id: str) -> tuple[BackupInfo, bytes]: ...

    def list(self) -> list[BackupInfo]: ...

    def delete(self, backup_id: str) -> None: ...


def _info_from_metadata(backup_id: str, metadata: dict[str, Any], size: int) -> BackupInfo:
    timestamp = parse_timestamp(metadata.get("timestamp"))
    if timestamp is None:
        raise ValueError(f"Backup {backup_id} has no valid timestamp")
    return BackupInfo(
        id=backup_id,
        timestamp=timestamp,
        size=size,
        is_incremental=str(metadata.get("is_incremental")).lower() == "true",
        encrypted=str(metadata.get("encrypted")).lower() == "true",
    )


def _metadata(info: BackupInfo) -> dict[str, str]:
    return {
        "timestamp": info.timestamp.isoformat(),
        "is_incremental": str(info.is_incremental).lower(),
        "encrypted": str(info.encrypted).lower(),
    }


# ---------------------------------------------------------------------------
# Local filesystem
# ---------------------------------------------------------------------------


class LocalBackupStorage:
    """Stores each backup as ``<id>.bak`` plus a ``<id>.json`` metadata sidecar."""

    def __init__(self, directory: Path | str) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def write(self, info: BackupInfo, payload: bytes) -> None:
        self._payload_path(info.id).write_bytes(payload)
        self._meta_path(info.id).write_text(json.dumps(_metadata(info)), encoding="utf-8")
        logger.info("Wrote backup %s (%d bytes) to %s", info.id, len(payload), self._dir)

    def read(self, backup_id: str) -> tuple[BackupInfo, bytes]:
        payload_path = self._payload_path(backup_id)
        meta_path = self._meta_path(backup_id)
        if not payload_path.exists() or not meta_path.exists():
            raise BackupNotFound(backup_id)
        payload = payload_path.read_bytes()
        metadata = json.loads(meta_path.read_text(encoding="utf-8"))
        return _info_from_metadata(backup_id, metadata, len(payload)), payload

    def list(self) -> list[BackupInfo]:
        infos = []
        for meta_path in self._dir.glob("*.json"):
            backup_id = meta_path.stem
            payload_path = self._payload_path(backup_id)
            if not payload_path.exists():
                continue
            try:
                metadata = json.loads(meta_path.read_text(encoding="utf-8"))
                infos.append(
                    _info_from_metadata(backup_id, metadata, payload_path.stat().st_size)
                )
            except ValueError as exc:
                logger.warning("Ignoring unreadable backup metadata %s: %s", meta_path, exc)
        return infos

    def delete(self, backup_id: str) -> None:
        self._payload_path(backup_id).unlink(missing_ok=True)
        self._meta_path(backup_id).unlink(missing_ok=True)
        logger.info("Deleted backup %s", backup_id)

    def _payload_path(self, backup_id: str) -> Path:
        return self._dir / f"{_safe_id(backup_id)}.bak"

    def _meta_path(self, backup_id: str) -> Path:
        return self._dir / f"{_safe_id(backup_id)}.json"


def _safe_id(backup_id: str) -> str:
    # Keep ids from escaping the backup directory
    return backup_id.replace("/", "_").replace("\\", "_").replace("..", "_")


# ---------------------------------------------------------------------------
# S3-compatible object storage
# ---------------------------------------------------------------------------


def build_s3_client(settings: Settings) -> Any:
    """Create a boto3 S3 client from process settings.

    ``backup_s3_endpoint_url`` may point at any S3-compatible service
    (Cloudflare R2, MinIO); leave it empty for AWS.
    """
    return boto3.client(
        "s3",
        endpoint_url=settings.backup_s3_endpoint_url or None,
        aws_access_key_id=settings.backup_s3_access_key_id or None,
        aws_secret_access_key=settings.backup_s3_secret_access_key or None,
        config=BotoConfig(
            signature_version="s3v4",
            retries={"max_attempts": 3, "mode": "standard"},
        ),
        region_name=settings.backup_s3_region or None,
    )


class S3BackupStorage:
    """Stores backups as objects under ``{prefix}/{id}.bak``.

    Backup metadata travels in the object's user metadata.
    """

    def __init__(self, bucket: str, client: Any, prefix: str = "backups") -> None:
        self._bucket = bucket
        self._client = client
        self._prefix = prefix.strip("/")

    def write(self, info: BackupInfo, payload: bytes) -> None:
        key = self._key(info.id)
        self._client.put_object(
            Bucket=self._bucket,
            Key=key,
            Body=payload,
            ContentType="application/octet-stream",
            Metadata=_metadata(info),
        )
        logger.info("Uploaded backup %s (%d bytes) to s3://%s/%s", info.id, len(payload), self._bucket, key)

    def read(self, backup_id: str) -> tuple[BackupInfo, bytes]:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=self._key(backup_id))
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise BackupNotFound(backup_id) from exc
            raise BackupStorageError(f"Could not fetch backup {backup_id}: {exc}") from exc
        except BotoCoreError as exc:
            raise BackupStorageError(f"Could not fetch backup {backup_id}: {exc}") from exc
        payload = response["Body"].read()
        return _info_from_metadata(backup_id, response.get("Metadata", {}), len(payload)), payload

    def list(self) -> list[BackupInfo]:
        try:
            return self._list()
        except (BotoCoreError, ClientError) as exc:
            raise BackupStorageError(f"Could not list backups in s3://{self._bucket}: {exc}") from exc

    def _list(self) -> list[BackupInfo]:
        infos = []
        paginator = self._client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self._bucket, Prefix=f"{self._prefix}/"):
            for obj in page.get("Contents", []):
                key = obj["Key"]
                if not key.endswith(".bak"):
                    continue
                backup_id = key[len(self._prefix) + 1 : -len(".bak")]
                head = self._client.head_object(Bucket=self._bucket, Key=key)
                metadata = dict(head.get("Metadata", {}))
                metadata.setdefault("timestamp", obj["LastModified"].isoformat())
                try:
                    infos.append(_info_from_metadata(backup_id, metadata, obj["Size"]))
                except ValueError as exc:
                    logger.warning("Ignoring unreadable backup object %s: %s", key, exc)
        return infos

    def delete(self, backup_id: str) -> None:
        self._client.delete_object(Bucket=self._bucket, Key=self._key(backup_id))
        logger.info("Deleted backup object %s", self._key(backup_id))

    def _key(self, backup_id: str) -> str:
        return f"{self._prefix}/{backup_id}.bak"
