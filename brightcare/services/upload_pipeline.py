"""
Attachment delivery pipeline.

Every image or file sent into a conversation is transferred by one
UploadSession. A session is consumed as an async stream of UploadProgress
records: zero or more progress records, then exactly one terminal record
(success with a download URL, or failure with an error). Cancelling a
session ends the stream without a terminal record.

Storage layout: conversations/{conversation_id}/{images|files|thumbnails}/{file_name}
"""

import asyncio
import logging
import mimetypes
import time
import uuid
from typing import AsyncIterator, Callable, Optional

from ..config import MAX_ATTACHMENT_SIZE_BYTES, UPLOAD_PROGRESS_MIN_INTERVAL
from ..errors import ContentNotFoundError, ContentStoreError, UploadValidationError
from ..schemas import Attachment, AttachmentKind, OperationResult, UploadProgress
from ..shared.validators import validate_conversation_id, validate_file_name
from ..storage.content_store import (
    ContentRepository,
    LocalSource,
    LocalSourceRef,
    conversation_storage_path,
)

logger = logging.getLogger(__name__)

KIND_FOLDERS = {
    AttachmentKind.IMAGE: "images",
    AttachmentKind.FILE: "files",
    AttachmentKind.THUMBNAIL: "thumbnails",
}

KIND_PREFIXES = {
    AttachmentKind.IMAGE: "image",
    AttachmentKind.FILE: "file",
    AttachmentKind.THUMBNAIL: "thumb",
}

DEFAULT_MIME_TYPES = {
    AttachmentKind.IMAGE: "image/jpeg",
    AttachmentKind.FILE: "application/octet-stream",
    AttachmentKind.THUMBNAIL: "image/jpeg",
}

# Document types accepted for file attachments
ALLOWED_FILE_MIME_TYPES = [
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
    "application/zip",
]

_END = object()


def _describe(error: Exception) -> str:
    return str(error) or type(error).__name__


class UploadSession:
    """
    Transfer of one attachment to the content store.

    The stream is lazy and single-use: iterating it starts the transfer, and
    a second subscription raises RuntimeError.
    """

    def __init__(
        self,
        attachment: Attachment,
        source: LocalSource,
        repository: ContentRepository,
        min_interval: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.attachment = attachment
        self._source = source
        self._repository = repository
        self._min_interval = max(min_interval, 0.0)
        self._clock = clock
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._subscribed = False
        self._closed = False
        self._cancelled = False
        self._last_fraction = 0.0
        self._last_emit_at: Optional[float] = None
        self.outcome: Optional[UploadProgress] = None

    @property
    def key(self) -> str:
        return self.attachment.id

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Begin the transfer if it is not already running"""
        if self._task is None and not self._closed:
            self._task = asyncio.create_task(
                self._run(), name=f"upload:{self.attachment.id}"
            )

    async def events(self) -> AsyncIterator[UploadProgress]:
        if self._subscribed:
            raise RuntimeError("Upload progress stream can only be consumed once")
        self._subscribed = True
        self.start()
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item

    def __aiter__(self) -> AsyncIterator[UploadProgress]:
        return self.events()

    async def wait(self) -> Optional[UploadProgress]:
        """Wait for the transfer to finish; None if it was cancelled"""
        self.start()
        if self._task is not None:
            await asyncio.wait([self._task])
        return self.outcome

    async def cancel(self) -> None:
        """Abort the transfer and end the stream. Repeated calls are no-ops."""
        if self._closed:
            return
        self._cancelled = True
        self._closed = True
        self._queue.put_nowait(_END)
        logger.info(f"🛑 Cancelling upload {self.attachment.file_name}")
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.wait([self._task])

    def _on_transport_progress(self, transferred: int, total: int) -> None:
        if self._closed:
            return

        fraction = 1.0 if total <= 0 else transferred / total
        fraction = min(max(fraction, self._last_fraction), 1.0)

        now = self._clock()
        if (
            self._min_interval > 0
            and self._last_emit_at is not None
            and now - self._last_emit_at < self._min_interval
            and fraction < 1.0
        ):
            self._last_fraction = fraction
            return

        self._last_fraction = fraction
        self._last_emit_at = now
        self._queue.put_nowait(
            UploadProgress(
                attachment_file_name=self.attachment.file_name,
                fraction_complete=fraction,
            )
        )

    def _finish(self, record: UploadProgress) -> None:
        if self._closed:
            return
        self.outcome = record
        self._closed = True
        self._queue.put_nowait(record)
        self._queue.put_nowait(_END)

    async def _run(self) -> None:
        attachment = self.attachment
        try:
            await self._repository.put(
                attachment.remote_path,
                self._source,
                attachment.mime_type,
                on_progress=self._on_transport_progress,
                metadata={
                    "conversation-id": attachment.conversation_id,
                    "attachment-kind": attachment.kind.value,
                },
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"❌ Upload failed for {attachment.remote_path}: {e}")
            self._finish(
                UploadProgress.failure(attachment.file_name, _describe(e), self._last_fraction)
            )
            return

        try:
            download_url = await self._repository.download_reference(attachment.remote_path)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"❌ Uploaded {attachment.remote_path} but could not resolve download URL: {e}"
            )
            self._finish(
                UploadProgress.failure(
                    attachment.file_name,
                    f"Download URL could not be resolved: {_describe(e)}",
                    self._last_fraction,
                )
            )
            return

        logger.info(f"✅ Upload complete: {attachment.remote_path}")
        self._finish(UploadProgress.success(attachment.file_name, download_url))


class AttachmentUploadPipeline:
    """Creates upload sessions and runs the single-shot storage operations"""

    def __init__(
        self,
        repository: ContentRepository,
        max_size_bytes: int = MAX_ATTACHMENT_SIZE_BYTES,
        progress_min_interval: float = UPLOAD_PROGRESS_MIN_INTERVAL,
        allowed_file_types: Optional[list[str]] = None,
    ):
        self.repository = repository
        self.max_size_bytes = max_size_bytes
        self.progress_min_interval = progress_min_interval
        self.allowed_file_types = allowed_file_types or ALLOWED_FILE_MIME_TYPES

    @staticmethod
    def remote_path(conversation_id: str, kind: AttachmentKind, file_name: str) -> str:
        return f"{conversation_storage_path(conversation_id)}/{KIND_FOLDERS[kind]}/{file_name}"

    @staticmethod
    def generate_file_name(
        kind: AttachmentKind, mime_type: Optional[str] = None, original_name: Optional[str] = None
    ) -> str:
        """Collision-resistant name: <kind-prefix>_<uuid>.<ext>"""
        ext = None
        if original_name and "." in original_name:
            ext = original_name.rsplit(".", 1)[-1].lower()
        if not ext and mime_type:
            guessed = mimetypes.guess_extension(mime_type)
            ext = guessed.lstrip(".") if guessed else None
        if not ext:
            ext = "bin" if kind == AttachmentKind.FILE else "jpg"
        if ext == "jpe":
            ext = "jpg"
        return f"{KIND_PREFIXES[kind]}_{uuid.uuid4()}.{ext}"

    def validate_file(
        self, kind: AttachmentKind, size_bytes: int, mime_type: str
    ) -> tuple[bool, Optional[str]]:
        """
        Validate an attachment before upload.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if size_bytes > self.max_size_bytes:
            return (
                False,
                f"File size exceeds maximum of {self.max_size_bytes / (1024 * 1024):.0f}MB",
            )
        if kind in (AttachmentKind.IMAGE, AttachmentKind.THUMBNAIL):
            if not mime_type.startswith("image/"):
                return False, "Invalid file type. Please upload an image file."
        elif mime_type not in self.allowed_file_types:
            return False, f"File type {mime_type} is not allowed"
        return True, None

    def prepare(
        self,
        conversation_id: str,
        local_source_ref: LocalSourceRef,
        kind: AttachmentKind,
        file_name: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> tuple[Attachment, LocalSource]:
        """
        Resolve the source and build the immutable Attachment record.

        Raises:
            UploadValidationError: On any input problem; no I/O has happened yet
        """
        kind = AttachmentKind(kind)
        try:
            conversation_id = validate_conversation_id(conversation_id)
            if file_name is not None:
                file_name = validate_file_name(file_name)
        except ValueError as e:
            raise UploadValidationError(str(e)) from e

        source = LocalSource.from_ref(local_source_ref)

        if not mime_type:
            guess_from = file_name or source.name
            mime_type = (mimetypes.guess_type(guess_from)[0] if guess_from else None) or (
                DEFAULT_MIME_TYPES[kind]
            )

        is_valid, error = self.validate_file(kind, source.size, mime_type)
        if not is_valid:
            raise UploadValidationError(error)

        if not file_name:
            file_name = self.generate_file_name(kind, mime_type, source.name)

        attachment = Attachment(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            kind=kind,
            local_source_ref=source.description,
            remote_path=self.remote_path(conversation_id, kind, file_name),
            file_name=file_name,
            mime_type=mime_type,
            size_bytes=source.size,
        )
        return attachment, source

    def start_upload(
        self,
        conversation_id: str,
        local_source_ref: LocalSourceRef,
        kind: AttachmentKind,
        file_name: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> UploadSession:
        """Create a session; the transfer begins when its stream is consumed"""
        attachment, source = self.prepare(
            conversation_id, local_source_ref, kind, file_name, mime_type
        )
        logger.info(
            f"📤 Starting {attachment.kind.value} upload {attachment.file_name} "
            f"for conversation {attachment.conversation_id}"
        )
        return UploadSession(
            attachment, source, self.repository, min_interval=self.progress_min_interval
        )

    def upload_image(
        self,
        conversation_id: str,
        local_source_ref: LocalSourceRef,
        file_name: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> UploadSession:
        return self.start_upload(
            conversation_id, local_source_ref, AttachmentKind.IMAGE, file_name, mime_type
        )

    def upload_file(
        self,
        conversation_id: str,
        local_source_ref: LocalSourceRef,
        file_name: str,
        mime_type: str,
    ) -> UploadSession:
        return self.start_upload(
            conversation_id, local_source_ref, AttachmentKind.FILE, file_name, mime_type
        )

    async def generate_thumbnail(
        self,
        conversation_id: str,
        original_image_url: str,
        thumbnail_source: LocalSourceRef,
    ) -> OperationResult:
        """
        Upload a pre-rendered thumbnail and resolve its URL. Independent of
        the original image's session; a failure here never touches it.
        """
        try:
            attachment, source = self.prepare(
                conversation_id, thumbnail_source, AttachmentKind.THUMBNAIL
            )
        except UploadValidationError as e:
            return OperationResult.failed(e.detail, e.code)

        try:
            await self.repository.put(
                attachment.remote_path,
                source,
                attachment.mime_type,
                metadata={"original-url": original_image_url} if original_image_url else None,
            )
            download_url = await self.repository.download_reference(attachment.remote_path)
        except Exception as e:
            logger.error(f"❌ Thumbnail generation failed for {original_image_url}: {e}")
            code = e.code if isinstance(e, ContentStoreError) else "thumbnail_failed"
            return OperationResult.failed(_describe(e), code, attachment_key=attachment.id)

        logger.info(f"🖼️ Thumbnail stored at {attachment.remote_path}")
        return OperationResult.ok(download_url=download_url, attachment_key=attachment.id)

    async def delete_file(self, file_url: str) -> OperationResult:
        """Delete by download URL. A missing object is reported as not_found."""
        try:
            path = self.repository.resolve_from_url(file_url)
            await self.repository.delete(path)
        except ContentNotFoundError as e:
            logger.warning(f"⚠️ Delete requested for missing object: {file_url}")
            return OperationResult.failed(e.detail, e.code)
        except ContentStoreError as e:
            logger.error(f"❌ Failed to delete {file_url}: {e}")
            return OperationResult.failed(e.detail, e.code)
        except Exception as e:
            logger.error(f"❌ Failed to delete {file_url}: {e}")
            return OperationResult.failed(_describe(e), "delete_failed")
        return OperationResult.ok()

    async def get_file_metadata(self, file_url: str) -> OperationResult:
        """Display-only metadata for a stored attachment"""
        try:
            path = self.repository.resolve_from_url(file_url)
            metadata = await self.repository.metadata(path)
        except ContentStoreError as e:
            return OperationResult.failed(e.detail, e.code)
        except Exception as e:
            logger.error(f"❌ Failed to fetch metadata for {file_url}: {e}")
            return OperationResult.failed(_describe(e), "metadata_failed")
        return OperationResult.ok(metadata=metadata)
