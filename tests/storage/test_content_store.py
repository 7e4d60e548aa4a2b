"""Tests for the filesystem and S3 content stores."""

from __future__ import annotations

import io
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from mailsync.configuration.settings import Settings
from mailsync.errors import ContentNotFoundError, ContentStoreError, TransientIOError
from mailsync.storage.content_store import (
    ContentStore,
    FilesystemContentStore,
    S3ContentStore,
    open_content_store,
    validate_key,
)


def _client_error(code: str, status: int) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "Operation",
    )


# ============================================================================
# Filesystem store
# ============================================================================


def test_put_then_get(content_store: FilesystemContentStore):
    key = content_store.put("conn-1/thread/7.1", b'{"id": 1}')

    assert key == "conn-1/thread/7.1"
    assert content_store.exists(key)
    assert content_store.get(key) == b'{"id": 1}'
    assert isinstance(content_store, ContentStore)


def test_put_overwrites(content_store: FilesystemContentStore):
    content_store.put("conn-1/t/7.1", b"first")
    content_store.put("conn-1/t/7.1", b"second")

    assert content_store.get("conn-1/t/7.1") == b"second"
    files = [p for p in content_store.root.rglob("*") if p.is_file()]
    assert len(files) == 1


def test_get_missing_key(content_store: FilesystemContentStore):
    with pytest.raises(ContentNotFoundError):
        content_store.get("conn-1/t/none")
    assert content_store.exists("conn-1/t/none") is False


def test_delete_is_idempotent(content_store: FilesystemContentStore):
    content_store.put("conn-1/t/7.1", b"x")
    content_store.delete("conn-1/t/7.1")
    content_store.delete("conn-1/t/7.1")

    assert not content_store.exists("conn-1/t/7.1")


@pytest.mark.parametrize("key", ["", "/etc/passwd", "a/../../b", "a//b", "a\\b", "./a"])
def test_rejects_unsafe_keys(content_store: FilesystemContentStore, key):
    with pytest.raises(ValueError):
        content_store.put(key, b"x")


def test_write_failure_is_transient(content_store: FilesystemContentStore):
    with patch("mailsync.storage.content_store.os.replace", side_effect=OSError("disk full")):
        with pytest.raises(TransientIOError):
            content_store.put("conn-1/t/7.1", b"x")

    leftovers = [p for p in content_store.root.rglob("*") if p.is_file()]
    assert leftovers == []


def test_validate_key_accepts_nested_keys():
    assert validate_key("conn-1/abc/g123") == "conn-1/abc/g123"


# ============================================================================
# S3 store
# ============================================================================


@pytest.fixture
def s3_client():
    client = MagicMock()
    with patch("mailsync.storage.content_store.boto3.client", return_value=client) as factory:
        client.factory = factory
        yield client


def test_s3_put_uses_prefix(s3_client):
    store = S3ContentStore("mail-bucket", prefix="archive/", endpoint_url="https://r2.example.com")

    store.put("conn-1/t/7.1", b"{}")

    s3_client.put_object.assert_called_once_with(
        Bucket="mail-bucket",
        Key="archive/conn-1/t/7.1",
        Body=b"{}",
        ContentType="application/json",
    )
    kwargs = s3_client.factory.call_args.kwargs
    assert kwargs["endpoint_url"] == "https://r2.example.com"


def test_s3_get_reads_body(s3_client):
    s3_client.get_object.return_value = {"Body": io.BytesIO(b"payload")}
    store = S3ContentStore("mail-bucket")

    assert store.get("conn-1/t/7.1") == b"payload"


def test_s3_missing_key(s3_client):
    s3_client.get_object.side_effect = _client_error("NoSuchKey", 404)
    s3_client.head_object.side_effect = _client_error("404", 404)
    store = S3ContentStore("mail-bucket")

    with pytest.raises(ContentNotFoundError):
        store.get("conn-1/t/7.1")
    assert store.exists("conn-1/t/7.1") is False


@pytest.mark.parametrize(
    "error",
    [
        _client_error("SlowDown", 503),
        _client_error("InternalError", 500),
        _client_error("TooManyRequests", 429),
        EndpointConnectionError(endpoint_url="https://r2.example.com"),
    ],
)
def test_s3_unavailability_is_transient(s3_client, error):
    s3_client.put_object.side_effect = error
    store = S3ContentStore("mail-bucket")

    with pytest.raises(TransientIOError):
        store.put("conn-1/t/7.1", b"{}")


def test_s3_access_denied_is_not_transient(s3_client):
    s3_client.put_object.side_effect = _client_error("AccessDenied", 403)
    store = S3ContentStore("mail-bucket")

    with pytest.raises(ContentStoreError):
        store.put("conn-1/t/7.1", b"{}")


def test_s3_client_is_created_once(s3_client):
    store = S3ContentStore("mail-bucket")
    store.exists("a/b")
    store.exists("a/c")

    assert s3_client.factory.call_count == 1


# ============================================================================
# Backend selection
# ============================================================================


def test_open_content_store_filesystem(tmp_path: Path):
    settings = Settings(database_url="x.db", content_store_url=f"file://{tmp_path / 'blobs'}")

    store = open_content_store(settings)

    assert isinstance(store, FilesystemContentStore)
    assert store.root == tmp_path / "blobs"


def test_open_content_store_s3():
    settings = Settings(
        database_url="x.db",
        content_store_url="s3://mail-bucket/prod",
        content_store_endpoint="https://minio.local:9000",
        content_store_access_key_id="AKIA",
        content_store_secret_access_key="secret",
    )

    store = open_content_store(settings)

    assert isinstance(store, S3ContentStore)
    assert store.bucket == "mail-bucket"
    assert store.prefix == "prod"
    assert store.endpoint_url == "https://minio.local:9000"
