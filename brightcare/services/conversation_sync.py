"""
Local working state for open conversations.

A ConversationSyncStore is the single owner of one participant's view of one
conversation: its message list, the per-attachment upload progress map and
the unread counters. Every mutation goes through its operations and is
serialized by one asyncio.Lock, so concurrent upload completions, remote
events and user actions never interleave.

State machine: idle -> loading -> ready, with loading/ready -> error and a
refresh from error back to loading.
"""

import asyncio
import itertools
import logging
import time
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, Optional

from ..config import MAX_MESSAGE_LENGTH
from ..errors import MessageValidationError, RemoteStoreError, UploadValidationError
from ..schemas import (
    AttachmentKind,
    Conversation,
    ConversationSnapshot,
    Message,
    MessageStatus,
    MessageType,
    OperationResult,
    SyncState,
    UploadProgress,
)
from ..storage.content_store import LocalSourceRef
from ..storage.conversation_store import (
    CONVERSATION_UPDATED,
    MESSAGE_ADDED,
    MESSAGE_DELETED,
    MESSAGE_UPDATED,
    MESSAGES_READ,
    ConversationEvent,
    ConversationRemoteStore,
    Subscription,
)
from ..utils.sanitization import sanitize_message_text
from .upload_pipeline import AttachmentUploadPipeline, UploadSession

logger = logging.getLogger(__name__)

_sequence = itertools.count()


def new_message_id() -> str:
    """Ids increase with creation order, so they break timestamp ties stably"""
    return f"{time.time_ns():020d}-{next(_sequence):06d}"


def _error_code(error: Exception, default: str) -> str:
    return getattr(error, "code", None) or default


class ConversationSyncStore:
    def __init__(
        self,
        conversation_id: str,
        user_id: str,
        remote: ConversationRemoteStore,
        pipeline: AttachmentUploadPipeline,
        clock: Callable[[], datetime] = datetime.utcnow,
        max_message_length: int = MAX_MESSAGE_LENGTH,
    ):
        self.conversation_id = conversation_id
        self.user_id = user_id
        self._remote = remote
        self._pipeline = pipeline
        self._clock = clock
        self._max_message_length = max_message_length

        self._lock = asyncio.Lock()
        self._state = SyncState.IDLE
        self._error: Optional[str] = None
        self._error_code: Optional[str] = None
        self._conversation: Optional[Conversation] = None
        self._messages: Dict[str, Message] = {}
        self._deleted_ids: set = set()
        self._uploads: Dict[str, UploadProgress] = {}
        self._sessions: Dict[str, UploadSession] = {}
        self._upload_tasks: Dict[str, asyncio.Task] = {}
        self._subscription: Optional[Subscription] = None
        self._listener: Optional[asyncio.Task] = None
        self._watchers: set = set()
        self._closed = False

    @property
    def state(self) -> SyncState:
        return self._state

    def snapshot(self) -> ConversationSnapshot:
        """Deep copy of the current state, in display order"""
        messages = sorted(self._messages.values(), key=lambda m: m.sort_key())
        return ConversationSnapshot(
            state=self._state,
            conversation=self._conversation.model_copy(deep=True) if self._conversation else None,
            messages=[m.model_copy(deep=True) for m in messages],
            uploads=dict(self._uploads),
            error=self._error,
            error_code=self._error_code,
        )

    async def watch(self) -> AsyncIterator[ConversationSnapshot]:
        """Yield the current snapshot, then one per change until the store closes"""
        changed = asyncio.Event()
        self._watchers.add(changed)
        try:
            yield self.snapshot()
            while not self._closed:
                await changed.wait()
                changed.clear()
                yield self.snapshot()
        finally:
            self._watchers.discard(changed)

    def _notify(self) -> None:
        for changed in self._watchers:
            changed.set()

    # Lifecycle

    async def load(self) -> ConversationSnapshot:
        """Load once; later calls return the current snapshot"""
        if self._state in (SyncState.READY, SyncState.LOADING):
            return self.snapshot()
        return await self.refresh()

    async def open(self) -> ConversationSnapshot:
        """Load if needed, then mark the conversation read for this participant"""
        await self.load()
        if self._state == SyncState.READY:
            # Best effort; a failure leaves the counter for the next open
            await self.mark_conversation_read()
        return self.snapshot()

    async def refresh(self) -> ConversationSnapshot:
        """Load conversation and messages; the only way out of the error state"""
        async with self._lock:
            self._state = SyncState.LOADING
            self._error = None
            self._error_code = None
            self._ensure_listener()
            self._notify()

        try:
            conversation = await self._remote.get_conversation(self.conversation_id)
            if conversation is None:
                raise RemoteStoreError(
                    f"Conversation {self.conversation_id} not found", code="not_found"
                )
            if self.user_id not in conversation.participant_ids:
                raise RemoteStoreError(
                    "You are not a participant in this conversation", code="forbidden"
                )
            messages = await self._remote.list_messages(self.conversation_id)
        except Exception as e:
            logger.error(f"❌ Failed to load conversation {self.conversation_id}: {e}")
            async with self._lock:
                self._state = SyncState.ERROR
                self._error = str(e)
                self._error_code = _error_code(e, "remote_store_error")
                self._notify()
            return self.snapshot()

        async with self._lock:
            # Keep local-only messages and anything a live event delivered meanwhile
            merged = {m.id: m for m in messages if m.id not in self._deleted_ids}
            for message_id, message in self._messages.items():
                if message_id not in merged:
                    merged[message_id] = message
            self._messages = merged
            self._conversation = conversation
            self._state = SyncState.READY
            self._notify()

        logger.info(
            f"💬 Conversation {self.conversation_id} ready for {self.user_id} "
            f"({len(messages)} messages)"
        )
        return self.snapshot()

    async def close(self) -> None:
        """Stop listening and cancel any in-flight uploads"""
        if self._closed:
            return
        self._closed = True
        for session in list(self._sessions.values()):
            await session.cancel()
        if self._listener is not None:
            self._listener.cancel()
            await asyncio.wait([self._listener])
        if self._subscription is not None:
            self._subscription.close()
        self._notify()

    def _ensure_listener(self) -> None:
        if self._listener is None and not self._closed:
            # Registered synchronously so no event between load and listen is lost
            self._subscription = self._remote.subscribe(self.conversation_id)
            self._listener = asyncio.create_task(
                self._listen(self._subscription), name=f"conversation:{self.conversation_id}"
            )

    async def _listen(self, subscription: Subscription) -> None:
        try:
            async for event in subscription:
                async with self._lock:
                    self._apply_event(event)
                    self._notify()
        finally:
            subscription.close()

    def _apply_event(self, event: ConversationEvent) -> None:
        if event.kind in (MESSAGE_ADDED, MESSAGE_UPDATED) and event.message is not None:
            incoming = event.message
            if incoming.id in self._deleted_ids:
                return
            existing = self._messages.get(incoming.id)
            if existing is not None and existing.is_read and not incoming.is_read:
                incoming = incoming.model_copy(update={"is_read": True})
            self._messages[incoming.id] = incoming
        elif event.kind == MESSAGE_DELETED and event.message_id:
            self._messages.pop(event.message_id, None)
            self._deleted_ids.add(event.message_id)
        elif event.kind == MESSAGES_READ and event.reader_id:
            self._mark_read_locally(event.reader_id)
        elif event.kind == CONVERSATION_UPDATED and event.conversation is not None:
            self._conversation = event.conversation

    def _mark_read_locally(self, reader_id: str) -> None:
        for message_id, message in self._messages.items():
            if message.sender_id != reader_id and not message.is_read:
                self._messages[message_id] = message.model_copy(update={"is_read": True})
        if self._conversation is not None:
            counts = dict(self._conversation.unread_counts)
            counts[reader_id] = 0
            self._conversation = self._conversation.model_copy(update={"unread_counts": counts})

    def _receiver_id(self) -> Optional[str]:
        if self._conversation is None:
            return None
        for participant_id in self._conversation.participant_ids:
            if participant_id != self.user_id:
                return participant_id
        return None

    def _not_ready(self) -> Optional[OperationResult]:
        if self._closed:
            return OperationResult.failed("Conversation is closed", "closed")
        if self._conversation is None:
            return OperationResult.failed("Conversation is not loaded", "not_ready")
        return None

    # Text messages

    async def send_text_message(
        self, text: str, reply_to_message_id: Optional[str] = None
    ) -> OperationResult:
        """Show the message immediately, then write it through"""
        try:
            content = sanitize_message_text(text, self._max_message_length)
        except ValueError as e:
            return OperationResult.failed(str(e), MessageValidationError.code)

        not_ready = self._not_ready()
        if not_ready:
            return not_ready

        message = Message(
            id=new_message_id(),
            conversation_id=self.conversation_id,
            sender_id=self.user_id,
            receiver_id=self._receiver_id(),
            type=MessageType.TEXT,
            content=content,
            timestamp=self._clock(),
            status=MessageStatus.SENDING,
            reply_to_message_id=reply_to_message_id,
        )
        async with self._lock:
            self._messages[message.id] = message
            self._notify()

        return await self._write_through(message)

    async def retry_message(self, message_id: str) -> OperationResult:
        """Resend a text message whose earlier write failed"""
        async with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                return OperationResult.failed("Message not found", "not_found")
            if message.status != MessageStatus.FAILED:
                return OperationResult.failed("Only failed messages can be retried", "not_failed")
            message = message.model_copy(update={"status": MessageStatus.SENDING})
            self._messages[message_id] = message
            self._notify()

        logger.info(f"🔁 Retrying message {message_id}")
        return await self._write_through(message)

    async def _write_through(self, message: Message) -> OperationResult:
        confirmed = message.model_copy(update={"status": MessageStatus.SENT})
        try:
            await self._remote.append_message(self.conversation_id, confirmed)
        except Exception as e:
            logger.error(f"❌ Failed to send message {message.id}: {e}")
            failed = message.model_copy(update={"status": MessageStatus.FAILED})
            async with self._lock:
                if message.id in self._messages:
                    self._messages[message.id] = failed
                self._notify()
            return OperationResult.failed(
                f"Failed to send message: {e}", _error_code(e, "send_failed"), message=failed
            )

        async with self._lock:
            deleted = message.id in self._deleted_ids
            if not deleted:
                self._messages[message.id] = confirmed
            self._notify()

        if deleted:
            # Deleted while the write was in flight
            try:
                await self._remote.delete_message(self.conversation_id, message.id)
            except Exception as e:
                logger.warning(f"⚠️ Remote delete failed for message {message.id}: {e}")
            return OperationResult.ok(message=confirmed)

        await self._update_last_message(confirmed)
        return OperationResult.ok(message=confirmed)

    async def _update_last_message(self, message: Message) -> None:
        try:
            conversation = await self._remote.update_conversation_last_message(
                self.conversation_id, message
            )
        except Exception as e:
            # The message itself is stored; a stale preview is tolerable
            logger.warning(f"⚠️ Failed to update conversation summary for {self.conversation_id}: {e}")
            return
        async with self._lock:
            self._conversation = conversation
            self._notify()

    # Attachments

    async def send_image_message(
        self,
        local_source_ref: LocalSourceRef,
        file_name: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> OperationResult:
        return await self._start_attachment(
            AttachmentKind.IMAGE, local_source_ref, file_name, mime_type
        )

    async def send_file_message(
        self, local_source_ref: LocalSourceRef, file_name: str, mime_type: str
    ) -> OperationResult:
        return await self._start_attachment(
            AttachmentKind.FILE, local_source_ref, file_name, mime_type
        )

    async def _start_attachment(
        self,
        kind: AttachmentKind,
        local_source_ref: LocalSourceRef,
        file_name: Optional[str],
        mime_type: Optional[str],
    ) -> OperationResult:
        not_ready = self._not_ready()
        if not_ready:
            return not_ready

        try:
            session = self._pipeline.start_upload(
                self.conversation_id, local_source_ref, kind, file_name, mime_type
            )
        except UploadValidationError as e:
            return OperationResult.failed(e.detail, e.code)

        key = session.key
        async with self._lock:
            self._uploads[key] = UploadProgress(
                attachment_file_name=session.attachment.file_name
            )
            self._sessions[key] = session
            self._upload_tasks[key] = asyncio.create_task(
                self._track_upload(session), name=f"track-upload:{key}"
            )
            self._notify()
        return OperationResult.ok(attachment_key=key)

    async def _track_upload(self, session: UploadSession) -> None:
        key = session.key
        try:
            async for record in session:
                if record.succeeded:
                    await self._complete_upload(session, record)
                else:
                    async with self._lock:
                        if key in self._uploads:
                            self._uploads[key] = record
                            self._notify()
        finally:
            self._sessions.pop(key, None)
            self._upload_tasks.pop(key, None)

    async def _complete_upload(self, session: UploadSession, record: UploadProgress) -> None:
        attachment = session.attachment
        message = Message(
            id=new_message_id(),
            conversation_id=self.conversation_id,
            sender_id=self.user_id,
            receiver_id=self._receiver_id(),
            type=MessageType.IMAGE if attachment.kind == AttachmentKind.IMAGE else MessageType.FILE,
            content=attachment.file_name,
            timestamp=self._clock(),
            status=MessageStatus.SENT,
            file_url=record.download_url,
            file_name=attachment.file_name,
            file_size=attachment.size_bytes,
            mime_type=attachment.mime_type,
        )
        try:
            await self._remote.append_message(self.conversation_id, message)
        except Exception as e:
            logger.error(f"❌ Uploaded {attachment.file_name} but could not save its message: {e}")
            async with self._lock:
                if session.key in self._uploads:
                    self._uploads[session.key] = UploadProgress.failure(
                        attachment.file_name, f"Failed to send message: {e}", 1.0
                    )
                self._notify()
            cleanup = await self._pipeline.delete_file(record.download_url)
            if not cleanup.success:
                logger.warning(f"⚠️ Orphaned attachment left in storage: {attachment.remote_path}")
            return

        async with self._lock:
            self._uploads.pop(session.key, None)
            self._messages[message.id] = message
            self._notify()

        logger.info(f"✅ Attachment message {message.id} added to {self.conversation_id}")
        await self._update_last_message(message)

    async def cancel_upload(self, attachment_key: str) -> OperationResult:
        session = self._sessions.get(attachment_key)
        if session is None:
            return OperationResult.failed("No upload in progress", "not_found")
        await session.cancel()
        async with self._lock:
            self._uploads.pop(attachment_key, None)
            self._notify()
        return OperationResult.ok(attachment_key=attachment_key)

    async def dismiss_upload(self, attachment_key: str) -> OperationResult:
        """Clear a failed upload from the progress map"""
        async with self._lock:
            progress = self._uploads.get(attachment_key)
            if progress is None:
                return OperationResult.failed("Upload not found", "not_found")
            if progress.error is None:
                return OperationResult.failed("Upload is still in progress", "in_progress")
            del self._uploads[attachment_key]
            self._notify()
        return OperationResult.ok(attachment_key=attachment_key)

    async def wait_for_uploads(self) -> None:
        tasks = list(self._upload_tasks.values())
        if tasks:
            await asyncio.wait(tasks)

    # Deletion and read state

    async def delete_message(self, message_id: str) -> OperationResult:
        """
        Remove a message locally, then remotely. Repeating the call is a
        no-op; remote and storage failures are logged, never surfaced.
        """
        async with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                return OperationResult.ok()
            if message.sender_id != self.user_id:
                return OperationResult.failed("You can only delete your own messages", "forbidden")
            del self._messages[message_id]
            self._deleted_ids.add(message_id)
            self._notify()

        for url in (message.file_url, message.thumbnail_url):
            if url:
                result = await self._pipeline.delete_file(url)
                if not result.success:
                    logger.warning(f"⚠️ Could not delete attachment for message {message_id}: {result.error}")

        if message.status == MessageStatus.SENT:
            try:
                await self._remote.delete_message(self.conversation_id, message_id)
            except Exception as e:
                logger.warning(f"⚠️ Remote delete failed for message {message_id}: {e}")

        logger.info(f"🗑️ Deleted message {message_id} from {self.conversation_id}")
        return OperationResult.ok(message=message)

    async def mark_conversation_read(self) -> OperationResult:
        """Reset this participant's unread counter and mark incoming messages read"""
        async with self._lock:
            self._mark_read_locally(self.user_id)
            self._notify()

        try:
            conversation = await self._remote.mark_messages_read(self.conversation_id, self.user_id)
        except Exception as e:
            logger.warning(f"⚠️ Failed to sync read state for {self.conversation_id}: {e}")
            return OperationResult.failed(str(e), _error_code(e, "remote_store_error"))

        async with self._lock:
            self._conversation = conversation
            self._notify()
        return OperationResult.ok()


class ConversationStoreRegistry:
    """One ConversationSyncStore per (conversation, user)"""

    def __init__(self, remote: ConversationRemoteStore, pipeline: AttachmentUploadPipeline):
        self.remote = remote
        self.pipeline = pipeline
        self._stores: Dict[tuple, ConversationSyncStore] = {}
        self._lock = asyncio.Lock()

    async def get(self, conversation_id: str, user_id: str) -> ConversationSyncStore:
        async with self._lock:
            store = self._stores.get((conversation_id, user_id))
            if store is None:
                store = ConversationSyncStore(conversation_id, user_id, self.remote, self.pipeline)
                self._stores[(conversation_id, user_id)] = store
        await store.load()
        return store

    async def close(self, conversation_id: str, user_id: str) -> None:
        async with self._lock:
            store = self._stores.pop((conversation_id, user_id), None)
        if store is not None:
            await store.close()

    async def close_all(self) -> None:
        async with self._lock:
            stores = list(self._stores.values())
            self._stores.clear()
        for store in stores:
            await store.close()
