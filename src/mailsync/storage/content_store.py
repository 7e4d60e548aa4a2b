"""Durable object storage for message content.

Objects are addressed by deterministic keys, so writing the same message twice
overwrites the earlier object instead of creating a duplicate. Two backends
are provided:

* :class:`FilesystemContentStore` - a directory tree, written atomically
* :class:`S3ContentStore` - any S3-compatible service (AWS, Cloudflare R2, MinIO)

Both are synchronous; the sync pipeline calls them from executor threads.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from mailsync.configuration.settings import Settings
from mailsync.errors import (
    ConfigurationError,
    ContentNotFoundError,
    ContentStoreError,
    TransientIOError,
)


logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}
_TRANSIENT_CODES = {
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "ServiceUnavailable",
    "InternalError",
}


@runtime_checkable
class ContentStore(Protocol):
    """Key/value object store with idempotent writes."""

    def put(self, key: str, blob: bytes) -> str:
        ...

    def get(self, key: str) -> bytes:
        ...

    def exists(self, key: str) -> bool:
        ...

    def delete(self, key: str) -> None:
        ...


def validate_key(key: str) -> str:
    """Reject keys that could escape the store's namespace."""
    if not key or key.startswith("/") or "\\" in key:
        raise ValueError(f"Invalid content key: {key!r}")
    if any(segment in ("", ".", "..") for segment in key.split("/")):
        raise ValueError(f"Invalid content key: {key!r}")
    return key


# ---------------------------------------------------------------------------
# Filesystem backend
# ---------------------------------------------------------------------------


class FilesystemContentStore:
    """Stores each object as a file under ``root``."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigurationError(f"Cannot create content store at {root}: {exc}") from exc

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        return self._root.joinpath(*validate_key(key).split("/"))

    def put(self, key: str, blob: bytes) -> str:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".part")
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(blob)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise TransientIOError(
                f"Content write failed for {key}: {exc}", details={"key": key}
            ) from exc
        return key

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise ContentNotFoundError(f"No content stored at {key}", details={"key": key}) from exc
        except OSError as exc:
            raise TransientIOError(
                f"Content read failed for {key}: {exc}", details={"key": key}
            ) from exc

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise TransientIOError(
                f"Content delete failed for {key}: {exc}", details={"key": key}
            ) from exc


# ---------------------------------------------------------------------------
# S3-compatible backend
# ---------------------------------------------------------------------------


class S3ContentStore:
    """Stores objects in an S3-compatible bucket."""

    def __init__(
        self,
        bucket: str,
        *,
        prefix: str = "",
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        region: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        if not bucket:
            raise ConfigurationError("S3 content store requires a bucket name")
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.endpoint_url = endpoint_url
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._region = region
        self._timeout = timeout
        self._client: Any = None
        self._client_lock = threading.Lock()

    def _get_client(self) -> Any:
        with self._client_lock:
            if self._client is None:
                config = Config(
                    connect_timeout=self._timeout,
                    read_timeout=self._timeout,
                    retries={"max_attempts": 2},
                )
                self._client = boto3.client(
                    "s3",
                    endpoint_url=self.endpoint_url,
                    aws_access_key_id=self._access_key_id,
                    aws_secret_access_key=self._secret_access_key,
                    region_name=self._region,
                    config=config,
                )
            return self._client

    def _object_key(self, key: str) -> str:
        validate_key(key)
        return f"{self.prefix}/{key}" if self.prefix else key

    def put(self, key: str, blob: bytes) -> str:
        try:
            self._get_client().put_object(
                Bucket=self.bucket,
                Key=self._object_key(key),
                Body=blob,
                ContentType="application/json",
            )
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, key) from exc
        return key

    def get(self, key: str) -> bytes:
        try:
            response = self._get_client().get_object(Bucket=self.bucket, Key=self._object_key(key))
            return response["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, key) from exc

    def exists(self, key: str) -> bool:
        try:
            self._get_client().head_object(Bucket=self.bucket, Key=self._object_key(key))
        except (ClientError, BotoCoreError) as exc:
            error = self._translate(exc, key)
            if isinstance(error, ContentNotFoundError):
                return False
            raise error from exc
        return True

    def delete(self, key: str) -> None:
        try:
            self._get_client().delete_object(Bucket=self.bucket, Key=self._object_key(key))
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, key) from exc

    def _translate(self, exc: Exception, key: str) -> Exception:
        details = {"bucket": self.bucket, "key": key}
        if isinstance(exc, BotoCoreError):
            return TransientIOError(f"Object store unreachable: {exc}", details=details)

        error = getattr(exc, "response", {}).get("Error", {})
        code = str(error.get("Code", ""))
        status = getattr(exc, "response", {}).get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        if code in _NOT_FOUND_CODES or status == 404:
            return ContentNotFoundError(f"No content stored at {key}", details=details)
        if code in _TRANSIENT_CODES or status >= 500 or status == 429:
            return TransientIOError(f"Object store unavailable: {code or status}", details=details)
        return ContentStoreError(f"Object store rejected request: {code or exc}", details=details)


def open_content_store(settings: Settings) -> ContentStore:
    """Build the backend selected by ``settings.content_store_url``.

    Raises:
        ConfigurationError: If the URL cannot be mapped to a backend
    """
    url = settings.content_store_url
    if url.startswith("s3://"):
        bucket, _, prefix = url[len("s3://"):].partition("/")
        secret = settings.content_store_secret_access_key
        return S3ContentStore(
            bucket,
            prefix=prefix,
            endpoint_url=settings.content_store_endpoint,
            access_key_id=settings.content_store_access_key_id,
            secret_access_key=secret.get_secret_value() if secret else None,
            region=settings.content_store_region,
            timeout=settings.network_timeout_seconds,
        )
    if url.startswith("file://"):
        url = url[len("file://"):]
    return FilesystemContentStore(Path(url).expanduser())


__all__ = [
    "ContentStore",
    "FilesystemContentStore",
    "S3ContentStore",
    "open_content_store",
    "validate_key",
]
