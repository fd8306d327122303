from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from app.examflow.utils import sanitize_upload_filename

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    pass


class Storage:
    """
    Blob store for encrypted document content.

    Content is opaque here: bytes arrive already encrypted and the key handle is
    only carried along as metadata. ``put`` returns the locator that identifies
    the blob from then on.
    """

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None, metadata: dict[str, str] | None = None) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        """Remove a blob; a missing key is not an error."""
        raise NotImplementedError

    def put(self, data: bytes, key_handle: str, *, prefix: str = "blobs", filename: str | None = None) -> str:
        name = sanitize_upload_filename(filename or "content")
        locator = f"{prefix.strip('/')}/{uuid.uuid4().hex}/{name}.enc"
        self.put_bytes(
            locator,
            data,
            content_type="application/octet-stream",
            metadata={"key-handle": key_handle},
        )
        logger.info("Stored blob locator=%s size=%s", locator, len(data))
        return locator

    def get(self, locator: str) -> bytes:
        if not self.exists(locator):
            raise StorageError(f"Blob not found: {locator}")
        with self.open(locator) as f:
            return f.read()


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def _path(self, key: str) -> Path:
        safe_key = key.lstrip("/").replace("\\", "/")
        if ".." in safe_key.split("/"):
            raise StorageError(f"Invalid storage key: {key}")
        return self.root / safe_key

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None, metadata: dict[str, str] | None = None) -> None:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)

    def open(self, key: str) -> BinaryIO:
        p = self._path(key)
        return p.open("rb")

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)
        logger.info("Deleted blob locator=%s", key)


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

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None, metadata: dict[str, str] | None = None) -> None:
        extra: dict[str, object] = {}
        if content_type:
            extra["ContentType"] = content_type
        if metadata:
            extra["Metadata"] = metadata
        self._client().put_object(Bucket=self.bucket, Key=key, Body=data, **extra)

    def open(self, key: str) -> BinaryIO:
        obj = self._client().get_object(Bucket=self.bucket, Key=key)
        return obj["Body"]  # type: ignore[return-value]

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self._client().head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError:
            return False

    def delete(self, key: str) -> None:
        self._client().delete_object(Bucket=self.bucket, Key=key)
        logger.info("Deleted blob locator=%s", key)


def storage_from_config(config: dict) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "nyc3").strip(),
            bucket=(config.get("S3_BUCKET") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
        )
    # default local
    root = Path((config.get("STORAGE_ROOT") or "").strip() or (Path(os.getcwd()) / "storage"))
    return LocalStorage(root=root)
