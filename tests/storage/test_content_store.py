"""Tests for the R2 content repository with a mocked boto3 client."""

import asyncio
import io
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from brightcare.errors import ContentNotFoundError, ContentStoreError, UploadValidationError
from brightcare.storage.content_store import (
    LocalSource,
    R2ContentRepository,
    _CancellableReader,
)

PUBLIC_BASE = "https://files.brightcare.test"


def client_error(code: str, operation: str = "HeadObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


@pytest.fixture
def s3_client():
    client = MagicMock()
    client.head_object.return_value = {
        "ContentLength": 5,
        "ContentType": "text/plain",
        "LastModified": datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        "Metadata": {"created-at": "2024-05-01T11:59:00"},
    }
    client.generate_presigned_url.return_value = "https://r2.test/signed?X-Amz-Signature=abc"
    return client


@pytest.fixture
def repository(s3_client):
    return R2ContentRepository(client=s3_client, bucket="brightcare", public_base_url=PUBLIC_BASE)


class TestLocalSource:
    def test_bytes(self):
        source = LocalSource.from_ref(b"hello")
        assert source.size == 5
        with source.open() as fileobj:
            assert fileobj.read() == b"hello"

    def test_path(self, tmp_path):
        path = tmp_path / "scan.pdf"
        path.write_bytes(b"%PDF-1.4")

        source = LocalSource.from_ref(str(path))

        assert source.size == 8
        assert source.name == "scan.pdf"

    def test_seekable_stream_is_reread_from_start(self):
        stream = io.BytesIO(b"abcdef")
        source = LocalSource.from_ref(stream)

        for _ in range(2):
            with source.open() as fileobj:
                assert fileobj.read() == b"abcdef"
        assert source.size == 6

    def test_none_rejected(self):
        with pytest.raises(UploadValidationError, match="required"):
            LocalSource.from_ref(None)


class TestPut:
    @pytest.mark.asyncio
    async def test_upload_reports_cumulative_progress(self, repository, s3_client):
        def upload_fileobj(fileobj, bucket, key, ExtraArgs, Callback):
            while True:
                chunk = fileobj.read(4)
                if not chunk:
                    break
                Callback(len(chunk))

        s3_client.upload_fileobj.side_effect = upload_fileobj
        reports = []

        await repository.put(
            "conversations/c/files/a.txt",
            LocalSource.from_ref(b"0123456789"),
            "text/plain",
            on_progress=lambda done, total: reports.append((done, total)),
            metadata={"conversation-id": "c"},
        )
        await asyncio.sleep(0)

        assert reports == [(4, 10), (8, 10), (10, 10)]
        _, bucket, key = s3_client.upload_fileobj.call_args.args
        extra = s3_client.upload_fileobj.call_args.kwargs["ExtraArgs"]
        assert (bucket, key) == ("brightcare", "conversations/c/files/a.txt")
        assert extra["ContentType"] == "text/plain"
        assert extra["Metadata"]["conversation-id"] == "c"
        assert "created-at" in extra["Metadata"]

    @pytest.mark.asyncio
    async def test_concurrent_part_callbacks_are_counted_in_order(self, repository, s3_client):
        """Multipart uploads report from several threads; no bytes are lost."""

        def upload_fileobj(fileobj, bucket, key, ExtraArgs, Callback):
            def send_part():
                for _ in range(500):
                    Callback(1)

            with ThreadPoolExecutor(max_workers=8) as pool:
                for _ in range(8):
                    pool.submit(send_part)

        s3_client.upload_fileobj.side_effect = upload_fileobj
        reports = []

        await repository.put(
            "conversations/c/files/big.bin",
            LocalSource.from_ref(b"\x00" * 4000),
            "application/octet-stream",
            on_progress=lambda done, total: reports.append(done),
        )
        await asyncio.sleep(0)

        assert len(reports) == 4000
        assert reports == sorted(reports)
        assert reports[-1] == 4000

    @pytest.mark.asyncio
    async def test_client_error_becomes_content_store_error(self, repository, s3_client):
        s3_client.upload_fileobj.side_effect = client_error("AccessDenied", "PutObject")

        with pytest.raises(ContentStoreError, match="Upload failed"):
            await repository.put("conversations/c/files/a.txt", LocalSource.from_ref(b"x"), "text/plain")

    def test_cancelled_reader_stops_transfer(self):
        cancelled = threading.Event()
        reader = _CancellableReader(io.BytesIO(b"abc"), cancelled)
        assert reader.read(1) == b"a"

        cancelled.set()
        with pytest.raises(ContentStoreError) as exc_info:
            reader.read(1)
        assert exc_info.value.code == "cancelled"


class TestReferencesAndMetadata:
    @pytest.mark.asyncio
    async def test_public_url(self, repository):
        url = await repository.download_reference("conversations/c/files/lab results.pdf")
        assert url == f"{PUBLIC_BASE}/conversations/c/files/lab%20results.pdf"

    @pytest.mark.asyncio
    async def test_presigned_url_without_public_base(self, s3_client):
        repository = R2ContentRepository(client=s3_client, bucket="brightcare", public_base_url=None)

        url = await repository.download_reference("conversations/c/images/a.jpg")

        assert url.startswith("https://r2.test/signed")
        s3_client.generate_presigned_url.assert_called_once()

    @pytest.mark.asyncio
    async def test_missing_object_is_not_found(self, repository, s3_client):
        s3_client.head_object.side_effect = client_error("404")

        with pytest.raises(ContentNotFoundError):
            await repository.download_reference("conversations/c/images/gone.jpg")

    @pytest.mark.asyncio
    async def test_metadata_map(self, repository):
        metadata = await repository.metadata("conversations/c/files/notes.txt")

        assert metadata == {
            "name": "notes.txt",
            "size": 5,
            "contentType": "text/plain",
            "timeCreated": "2024-05-01T11:59:00",
            "updated": "2024-05-01T12:00:00+00:00",
        }


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_existing(self, repository, s3_client):
        await repository.delete("conversations/c/files/notes.txt")
        s3_client.delete_object.assert_called_once_with(
            Bucket="brightcare", Key="conversations/c/files/notes.txt"
        )

    @pytest.mark.asyncio
    async def test_delete_missing_raises_not_found(self, repository, s3_client):
        s3_client.head_object.side_effect = client_error("NoSuchKey")

        with pytest.raises(ContentNotFoundError):
            await repository.delete("conversations/c/files/notes.txt")
        s3_client.delete_object.assert_not_called()


class TestResolveFromUrl:
    def test_public_url(self, repository):
        key = repository.resolve_from_url(f"{PUBLIC_BASE}/conversations/c/files/lab%20results.pdf")
        assert key == "conversations/c/files/lab results.pdf"

    def test_presigned_path_style_url(self, repository):
        key = repository.resolve_from_url(
            "https://acct.r2.cloudflarestorage.com/brightcare/conversations/c/images/a.jpg?X-Amz-Expires=60"
        )
        assert key == "conversations/c/images/a.jpg"

    @pytest.mark.parametrize("url", ["", "not a url", "https://host.test/"])
    def test_invalid(self, repository, url):
        with pytest.raises(ContentStoreError) as exc_info:
            repository.resolve_from_url(url)
        assert exc_info.value.code == "invalid_url"
