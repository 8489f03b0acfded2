"""Tests for UploadSession and AttachmentUploadPipeline."""

import asyncio
import re

import pytest

from brightcare.errors import ContentStoreError, UploadValidationError
from brightcare.schemas import AttachmentKind
from brightcare.services.upload_pipeline import AttachmentUploadPipeline, UploadSession
from tests.fakes import CDN_BASE, InMemoryContentRepository, wait_until

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 120


async def collect(session: UploadSession) -> list:
    return [record async for record in session]


class TestNamingAndPaths:
    """Generated names and the three-level storage layout."""

    def test_image_name_generated_with_prefix_and_uuid(self, pipeline):
        """Images without a name get image_<uuid>.<ext>."""
        session = pipeline.upload_image("conv-1", PNG_BYTES, mime_type="image/png")

        name = session.attachment.file_name
        assert re.fullmatch(r"image_[0-9a-f\-]{36}\.png", name)
        assert session.attachment.remote_path == f"conversations/conv-1/images/{name}"

    def test_default_image_extension_is_jpg(self, pipeline):
        """Unknown image sources fall back to image/jpeg and .jpg."""
        session = pipeline.upload_image("conv-1", PNG_BYTES)

        assert session.attachment.mime_type == "image/jpeg"
        assert session.attachment.file_name.endswith(".jpg")

    def test_explicit_file_name_is_kept(self, pipeline):
        """Files keep the caller's name under the files folder."""
        session = pipeline.upload_file("conv-1", b"%PDF-1.4", "report.pdf", "application/pdf")

        assert session.attachment.file_name == "report.pdf"
        assert session.attachment.remote_path == "conversations/conv-1/files/report.pdf"
        assert session.attachment.kind == AttachmentKind.FILE
        assert session.attachment.size_bytes == 8

    def test_thumbnail_prefix(self):
        """Thumbnails use the thumb_ prefix."""
        name = AttachmentUploadPipeline.generate_file_name(AttachmentKind.THUMBNAIL, "image/jpeg")
        assert name.startswith("thumb_")
        assert AttachmentUploadPipeline.remote_path("c", AttachmentKind.THUMBNAIL, name) == (
            f"conversations/c/thumbnails/{name}"
        )


class TestValidation:
    """Inputs are rejected before any I/O."""

    def test_empty_conversation_id_rejected(self, pipeline, content_repo):
        with pytest.raises(UploadValidationError):
            pipeline.upload_image("", PNG_BYTES)
        assert content_repo.put_calls == 0

    def test_missing_source_path_rejected(self, pipeline, tmp_path):
        with pytest.raises(UploadValidationError, match="not found"):
            pipeline.upload_image("conv-1", tmp_path / "missing.jpg")

    def test_unsupported_source_rejected(self, pipeline):
        with pytest.raises(UploadValidationError):
            pipeline.upload_image("conv-1", 12345)

    def test_oversized_file_rejected(self, content_repo):
        small_pipeline = AttachmentUploadPipeline(content_repo, max_size_bytes=10)
        with pytest.raises(UploadValidationError, match="exceeds maximum"):
            small_pipeline.upload_file("conv-1", b"x" * 11, "notes.txt", "text/plain")

    def test_disallowed_file_type_rejected(self, pipeline):
        with pytest.raises(UploadValidationError, match="not allowed"):
            pipeline.upload_file("conv-1", b"MZ", "setup.exe", "application/x-msdownload")

    def test_non_image_rejected_for_image_upload(self, pipeline):
        with pytest.raises(UploadValidationError, match="image"):
            pipeline.upload_image("conv-1", b"%PDF", mime_type="application/pdf")

    def test_path_traversal_in_file_name_rejected(self, pipeline):
        with pytest.raises(UploadValidationError, match="dangerous"):
            pipeline.upload_file("conv-1", b"hi", "../escape.txt", "text/plain")


class TestUploadSession:
    """Progress stream semantics."""

    @pytest.mark.asyncio
    async def test_exactly_one_terminal_success_record(self, pipeline, content_repo):
        """Progress records are followed by one success record with a URL."""
        session = pipeline.upload_image("conv-1", PNG_BYTES, mime_type="image/png")

        records = await collect(session)

        terminal = [r for r in records if r.is_terminal]
        assert len(terminal) == 1
        assert records[-1] is terminal[0]
        assert terminal[0].succeeded
        assert terminal[0].error is None
        assert terminal[0].download_url == f"{CDN_BASE}/{session.attachment.remote_path}"
        assert session.attachment.remote_path in content_repo.objects

    @pytest.mark.asyncio
    async def test_fraction_is_monotonic_and_clamped(self, pipeline, content_repo):
        """Regressing or overshooting transport reports never move the bar backwards or past 1."""
        content_repo.progress_script = [(50, 100), (30, 100), (80, 100), (150, 100)]
        session = pipeline.upload_image("conv-1", PNG_BYTES)

        records = await collect(session)
        fractions = [r.fraction_complete for r in records if not r.is_terminal]

        assert fractions == [0.5, 0.5, 0.8, 1.0]
        assert fractions == sorted(fractions)

    @pytest.mark.asyncio
    async def test_transport_failure_is_terminal_failure(self, pipeline, content_repo):
        content_repo.fail_put = ContentStoreError("connection reset")
        session = pipeline.upload_image("conv-1", PNG_BYTES)

        records = await collect(session)

        assert records[-1].error == "connection reset"
        assert records[-1].download_url is None
        assert not records[-1].is_complete
        assert len([r for r in records if r.is_terminal]) == 1

    @pytest.mark.asyncio
    async def test_reference_resolution_failure_is_terminal_failure(self, pipeline, content_repo):
        """Bytes were stored but no URL could be resolved: overall failure."""
        content_repo.fail_reference = ContentStoreError("signing key unavailable")
        session = pipeline.upload_image("conv-1", PNG_BYTES)

        records = await collect(session)

        assert session.attachment.remote_path in content_repo.objects
        assert records[-1].error is not None
        assert "could not be resolved" in records[-1].error
        assert records[-1].download_url is None
        assert session.outcome is records[-1]

    @pytest.mark.asyncio
    async def test_stream_is_lazy(self, pipeline, content_repo):
        """Nothing is transferred until the stream is consumed."""
        session = pipeline.upload_image("conv-1", PNG_BYTES)
        await asyncio.sleep(0.01)
        assert content_repo.put_calls == 0

        await collect(session)
        assert content_repo.put_calls == 1

    @pytest.mark.asyncio
    async def test_second_subscription_rejected(self, pipeline):
        session = pipeline.upload_image("conv-1", PNG_BYTES)
        await collect(session)

        with pytest.raises(RuntimeError, match="only be consumed once"):
            await collect(session)

    @pytest.mark.asyncio
    async def test_cancel_ends_stream_without_terminal_record(self, pipeline, content_repo):
        """Cancelling stops the transfer and closes the stream; repeats are no-ops."""
        gate = asyncio.Event()
        content_repo.gates.append(gate)
        session = pipeline.upload_image("conv-1", PNG_BYTES)

        collector = asyncio.create_task(collect(session))
        await wait_until(lambda: content_repo.put_calls == 1)

        await session.cancel()
        await session.cancel()
        records = await asyncio.wait_for(collector, timeout=1)

        assert all(not r.is_terminal for r in records)
        assert session.cancelled
        assert session.outcome is None
        assert session.attachment.remote_path not in content_repo.objects

    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_noop(self, pipeline):
        session = pipeline.upload_image("conv-1", PNG_BYTES)
        records = await collect(session)

        await session.cancel()

        assert not session.cancelled
        assert records[-1].succeeded

    @pytest.mark.asyncio
    async def test_throttle_coalesces_progress(self, content_repo):
        """With a minimum interval only the first and the final progress pass."""
        content_repo.steps = 10
        pipeline = AttachmentUploadPipeline(content_repo)
        attachment, source = pipeline.prepare("conv-1", b"\x00" * 100, AttachmentKind.IMAGE)
        session = UploadSession(
            attachment, source, content_repo, min_interval=60, clock=lambda: 100.0
        )

        records = await collect(session)

        assert [r.fraction_complete for r in records[:-1]] == [0.1, 1.0]
        assert records[-1].succeeded


class TestSingleShotOperations:
    """Thumbnail, delete and metadata."""

    @pytest.mark.asyncio
    async def test_generate_thumbnail(self, pipeline, content_repo):
        result = await pipeline.generate_thumbnail(
            "conv-1", f"{CDN_BASE}/conversations/conv-1/images/image_a.jpg", b"\xff\xd8thumb"
        )

        assert result.success
        assert "/thumbnails/thumb_" in result.download_url
        stored = content_repo.objects[pipeline.repository.resolve_from_url(result.download_url)]
        assert stored["metadata"]["original-url"].endswith("image_a.jpg")

    @pytest.mark.asyncio
    async def test_thumbnail_failure_does_not_touch_original(self, pipeline, content_repo):
        """A failed thumbnail leaves the original image in place."""
        original = pipeline.upload_image("conv-1", PNG_BYTES)
        records = await collect(original)
        content_repo.fail_put = ContentStoreError("quota exceeded")

        result = await pipeline.generate_thumbnail("conv-1", records[-1].download_url, b"thumb")

        assert not result.success
        assert result.error == "quota exceeded"
        assert original.attachment.remote_path in content_repo.objects

    @pytest.mark.asyncio
    async def test_delete_twice_reports_not_found(self, pipeline):
        """Deleting an already-deleted object is a not_found failure."""
        records = await collect(pipeline.upload_image("conv-1", PNG_BYTES))
        url = records[-1].download_url

        first = await pipeline.delete_file(url)
        second = await pipeline.delete_file(url)

        assert first.success
        assert not second.success
        assert second.error_code == "not_found"

    @pytest.mark.asyncio
    async def test_delete_invalid_url(self, pipeline):
        result = await pipeline.delete_file("not a url")
        assert not result.success
        assert result.error_code == "invalid_url"

    @pytest.mark.asyncio
    async def test_get_file_metadata(self, pipeline):
        session = pipeline.upload_file("conv-1", b"hello", "notes.txt", "text/plain")
        records = await collect(session)

        result = await pipeline.get_file_metadata(records[-1].download_url)

        assert result.success
        assert result.metadata["name"] == "notes.txt"
        assert result.metadata["size"] == 5
        assert result.metadata["contentType"] == "text/plain"
        assert set(result.metadata) == {"name", "size", "contentType", "timeCreated", "updated"}

    @pytest.mark.asyncio
    async def test_metadata_for_missing_object(self):
        pipeline = AttachmentUploadPipeline(InMemoryContentRepository())
        result = await pipeline.get_file_metadata(f"{CDN_BASE}/conversations/c/files/gone.txt")
        assert not result.success
        assert result.error_code == "not_found"
