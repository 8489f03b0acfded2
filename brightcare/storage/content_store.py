"""
Content store for conversation attachments.
Wraps an S3-compatible bucket (Cloudflare R2) behind the narrow contract the
upload pipeline consumes: put with progress, download reference, metadata,
delete, and URL-to-path resolution.
"""

import asyncio
import io
import logging
import os
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager, nullcontext
from datetime import datetime
from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterator, Optional, Union
from urllib.parse import quote, unquote, urlparse

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..config import (
    DOWNLOAD_URL_EXPIRATION,
    R2_ACCESS_KEY_ID,
    R2_ACCOUNT_ID,
    R2_BUCKET_NAME,
    R2_PUBLIC_BASE_URL,
    R2_SECRET_ACCESS_KEY,
)
from ..errors import ContentNotFoundError, ContentStoreError, UploadValidationError

logger = logging.getLogger(__name__)

CONVERSATIONS_PATH = "conversations"

# Called with (bytes_transferred, total_bytes), cumulative
ProgressCallback = Callable[[int, int], None]

LocalSourceRef = Union[bytes, bytearray, memoryview, str, Path, BinaryIO]


def conversation_storage_path(conversation_id: str) -> str:
    return f"{CONVERSATIONS_PATH}/{conversation_id}"


class LocalSource:
    """A readable byte source resolved from whatever the caller handed us"""

    def __init__(
        self,
        opener: Callable[[], Any],
        size: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ):
        self._opener = opener
        self.size = size
        self.name = name
        self.description = description

    @contextmanager
    def open(self) -> Iterator[BinaryIO]:
        with self._opener() as fileobj:
            yield fileobj

    @classmethod
    def from_ref(cls, ref: LocalSourceRef) -> "LocalSource":
        """
        Resolve bytes, a filesystem path, or a binary file object.

        Raises:
            UploadValidationError: If the reference is not a readable byte source
        """
        if ref is None:
            raise UploadValidationError("Attachment source is required")

        if isinstance(ref, (bytes, bytearray, memoryview)):
            data = bytes(ref)
            return cls(lambda: io.BytesIO(data), len(data), description="<bytes>")

        if isinstance(ref, (str, Path)):
            path = Path(ref)
            if not path.is_file():
                raise UploadValidationError(f"Attachment source not found: {path.name}")
            if not os.access(path, os.R_OK):
                raise UploadValidationError(f"Attachment source is not readable: {path.name}")
            return cls(
                lambda: open(path, "rb"),
                path.stat().st_size,
                name=path.name,
                description=str(path),
            )

        if hasattr(ref, "read"):
            readable = getattr(ref, "readable", None)
            if callable(readable) and not readable():
                raise UploadValidationError("Attachment source is not readable")
            name = os.path.basename(getattr(ref, "name", "") or "") or None
            if callable(getattr(ref, "seekable", None)) and ref.seekable():
                start = ref.tell()
                size = ref.seek(0, io.SEEK_END) - start
                ref.seek(start)

                def reopen():
                    ref.seek(start)
                    return nullcontext(ref)

                return cls(reopen, size, name=name, description=name or "<stream>")

            # Non-seekable streams are buffered so the total is known up front
            data = ref.read()
            if isinstance(data, str):
                raise UploadValidationError("Attachment source must be opened in binary mode")
            return cls(lambda: io.BytesIO(data), len(data), name=name, description=name or "<stream>")

        raise UploadValidationError(f"Unsupported attachment source: {type(ref).__name__}")


class ContentRepository(ABC):
    """Remote blob store used by the attachment pipeline"""

    @abstractmethod
    async def put(
        self,
        path: str,
        source: LocalSource,
        content_type: str,
        on_progress: Optional[ProgressCallback] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        """Upload the source to path, reporting cumulative progress"""

    @abstractmethod
    async def download_reference(self, path: str) -> str:
        """Return a fetchable URL for a stored object"""

    @abstractmethod
    async def metadata(self, path: str) -> dict:
        """Return a flat name/size/contentType/timeCreated/updated map"""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Remove an object; raises ContentNotFoundError if it is already gone"""

    @abstractmethod
    def resolve_from_url(self, url: str) -> str:
        """Map a download reference back to its storage path"""


def get_r2_client():
    """Get configured boto3 client for Cloudflare R2"""
    return boto3.client(
        "s3",
        endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
        aws_access_key_id=R2_ACCESS_KEY_ID,
        aws_secret_access_key=R2_SECRET_ACCESS_KEY,
        config=Config(signature_version="s3v4"),
        region_name="auto",
    )


class _CancellableReader(io.RawIOBase):
    """File wrapper that aborts the transfer once the session is cancelled"""

    def __init__(self, fileobj: BinaryIO, cancelled: threading.Event):
        super().__init__()
        self._fileobj = fileobj
        self._cancelled = cancelled

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        if self._cancelled.is_set():
            raise ContentStoreError("Upload cancelled", code="cancelled")
        return self._fileobj.read(size)

    def readinto(self, buffer) -> int:
        data = self.read(len(buffer))
        buffer[: len(data)] = data
        return len(data)


def _is_not_found(error: ClientError) -> bool:
    code = str(error.response.get("Error", {}).get("Code", ""))
    return code in ("404", "NoSuchKey", "NotFound")


class R2ContentRepository(ContentRepository):
    """ContentRepository backed by an R2 bucket through boto3"""

    def __init__(
        self,
        client=None,
        bucket: str = R2_BUCKET_NAME,
        public_base_url: Optional[str] = R2_PUBLIC_BASE_URL,
        url_expiration: int = DOWNLOAD_URL_EXPIRATION,
    ):
        self._client = client
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.url_expiration = url_expiration

    @property
    def client(self):
        if self._client is None:
            self._client = get_r2_client()
        return self._client

    async def put(
        self,
        path: str,
        source: LocalSource,
        content_type: str,
        on_progress: Optional[ProgressCallback] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        loop = asyncio.get_running_loop()
        cancelled = threading.Event()
        total = source.size
        transferred = 0
        # Multipart transfers call back from several worker threads
        progress_lock = threading.Lock()

        def callback(chunk: int):
            nonlocal transferred
            with progress_lock:
                transferred += chunk
                if on_progress and not cancelled.is_set():
                    loop.call_soon_threadsafe(on_progress, transferred, total)

        object_metadata = {"created-at": datetime.utcnow().isoformat()}
        if metadata:
            object_metadata.update({str(k): str(v) for k, v in metadata.items()})
        extra_args = {"ContentType": content_type, "Metadata": object_metadata}

        def run_upload():
            with source.open() as fileobj:
                self.client.upload_fileobj(
                    _CancellableReader(fileobj, cancelled),
                    self.bucket,
                    path,
                    ExtraArgs=extra_args,
                    Callback=callback,
                )

        logger.info(f"📤 Uploading {path} ({total} bytes) to R2")
        try:
            await asyncio.to_thread(run_upload)
        except asyncio.CancelledError:
            cancelled.set()
            logger.info(f"🛑 Upload cancelled for {path}")
            raise
        except (ClientError, BotoCoreError) as e:
            logger.error(f"❌ R2 upload failed for {path}: {e}")
            raise ContentStoreError(f"Upload failed: {e}") from e
        logger.info(f"✅ Uploaded {path} to R2")

    async def _head(self, path: str) -> dict:
        try:
            return await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=path)
        except ClientError as e:
            if _is_not_found(e):
                raise ContentNotFoundError(f"Object not found: {path}") from e
            raise ContentStoreError(f"Failed to read object {path}: {e}") from e
        except BotoCoreError as e:
            raise ContentStoreError(f"Failed to read object {path}: {e}") from e

    async def download_reference(self, path: str) -> str:
        # Confirms the object landed before handing out a reference
        await self._head(path)

        if self.public_base_url:
            return f"{self.public_base_url}/{quote(path)}"

        try:
            url = self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": path},
                ExpiresIn=self.url_expiration,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"❌ Failed to generate presigned URL for key {path}: {e}")
            raise ContentStoreError(f"Failed to resolve download URL: {e}") from e
        logger.info(f"✅ Generated presigned URL for key: {path}")
        return url

    async def metadata(self, path: str) -> dict:
        response = await self._head(path)
        last_modified = response.get("LastModified")
        updated = last_modified.isoformat() if last_modified else None
        custom = response.get("Metadata") or {}
        return {
            "name": path.rsplit("/", 1)[-1],
            "size": response.get("ContentLength", 0),
            "contentType": response.get("ContentType", ""),
            "timeCreated": custom.get("created-at", updated),
            "updated": updated,
        }

    async def delete(self, path: str) -> None:
        # S3 deletes of missing keys succeed silently, so check first
        await self._head(path)
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=path)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"❌ Failed to delete {path} from R2: {e}")
            raise ContentStoreError(f"Delete failed: {e}") from e
        logger.info(f"🗑️ Deleted {path} from R2")

    def resolve_from_url(self, url: str) -> str:
        if not url:
            raise ContentStoreError("File URL is required", code="invalid_url")

        if self.public_base_url and url.startswith(self.public_base_url + "/"):
            key = url[len(self.public_base_url) + 1 :].split("?", 1)[0]
            return unquote(key)

        parsed = urlparse(url)
        if not parsed.scheme or not parsed.netloc:
            raise ContentStoreError(f"Not a storage URL: {url}", code="invalid_url")

        key = unquote(parsed.path.lstrip("/"))
        # Path-style URLs carry the bucket as the first segment
        if key.startswith(f"{self.bucket}/"):
            key = key[len(self.bucket) + 1 :]
        if not key:
            raise ContentStoreError(f"Not a storage URL: {url}", code="invalid_url")
        return key
