"""
Blob storage for uploaded documents (contract attachments).

Backends: a local directory (dev/tests) or an S3-compatible bucket
(DigitalOcean Spaces, MinIO, AWS). Callers go through store_upload(), which
derives the key, hashes the content and writes it in one step.
"""
from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import BinaryIO

from werkzeug.utils import secure_filename


class StorageError(RuntimeError):
    pass


class Storage:
    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def _path(self, key: str) -> Path:
        p = (self.root / key.lstrip("/").replace("\\", "/")).resolve()
        if self.root.resolve() not in p.parents:
            raise StorageError(f"Storage key escapes root: {key}")
        return p

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)

    def open(self, key: str) -> BinaryIO:
        p = self._path(key)
        if not p.is_file():
            raise StorageError(f"Stored file missing: {key}")
        return p.open("rb")


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str

    def _client(self):
        import boto3

        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
        )

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        self._client().put_object(
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type or "application/octet-stream",
        )

    def open(self, key: str) -> BinaryIO:
        return self._client().get_object(Bucket=self.bucket, Key=key)["Body"]  # type: ignore[return-value]


def storage_from_config(config: dict) -> Storage:
    if (config.get("STORAGE_BACKEND") or "local").strip().lower() == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "").strip(),
            bucket=(config.get("S3_BUCKET") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
        )
    return LocalStorage(root=Path(config.get("STORAGE_ROOT") or Path(os.getcwd()) / "storage"))


def build_storage_key(prefix: str, entity_id: int, filename: str, upload_date: date | None = None) -> str:
    """<prefix>/<id>/<YYYY-MM-DD>/<safe filename>."""
    safe_filename = secure_filename(filename) or "document.bin"
    return f"{prefix}/{entity_id}/{(upload_date or date.today()).isoformat()}/{safe_filename}"


@dataclass(frozen=True)
class StoredFile:
    key: str
    filename: str
    content_type: str
    sha256: str
    size_bytes: int


def store_upload(config: dict, prefix: str, entity_id: int, filename: str, data: bytes, content_type: str | None) -> StoredFile:
    content_type = content_type or "application/octet-stream"
    stored = StoredFile(
        key=build_storage_key(prefix, entity_id, filename),
        filename=secure_filename(filename) or "document.bin",
        content_type=content_type,
        sha256=hashlib.sha256(data).hexdigest(),
        size_bytes=len(data),
    )
    storage_from_config(config).put_bytes(stored.key, data, content_type=content_type)
    return stored
