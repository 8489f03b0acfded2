"""
Remote conversation store.

Persists conversations and their messages and fans out change events to
in-process subscribers so every open ConversationSyncStore sees writes made
by the other participant.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..database import SessionLocal
from ..errors import RemoteStoreError
from ..models import ConversationRecord, MessageRecord
from ..schemas import Conversation, Message, MessageType

logger = logging.getLogger(__name__)

MESSAGE_ADDED = "message_added"
MESSAGE_DELETED = "message_deleted"
MESSAGE_UPDATED = "message_updated"
MESSAGES_READ = "messages_read"
CONVERSATION_UPDATED = "conversation_updated"


@dataclass
class ConversationEvent:
    kind: str
    conversation_id: str
    message: Optional[Message] = None
    message_id: Optional[str] = None
    reader_id: Optional[str] = None
    conversation: Optional[Conversation] = None


def last_message_preview(message: Message) -> str:
    """Conversation list preview for a message"""
    if message.type == MessageType.IMAGE:
        return "📷 Image"
    if message.type == MessageType.FILE:
        return f"📎 {message.file_name or 'File'}"
    return message.content


class ConversationRemoteStore(ABC):
    """Durable conversation storage shared by both participants"""

    def __init__(self):
        self._subscribers: Dict[str, set] = defaultdict(set)

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def find_conversation(self, participant_ids: List[str]) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def create_conversation(
        self, participant_ids: List[str], participant_names: Optional[Dict[str, str]] = None
    ) -> Conversation:
        pass

    @abstractmethod
    async def list_conversations(self, user_id: str) -> List[Conversation]:
        pass

    @abstractmethod
    async def list_messages(self, conversation_id: str) -> List[Message]:
        pass

    @abstractmethod
    async def append_message(self, conversation_id: str, message: Message) -> Message:
        """Persist a confirmed message"""

    @abstractmethod
    async def update_conversation_last_message(
        self, conversation_id: str, message: Message
    ) -> Conversation:
        """Set the last-message summary and bump the receivers' unread counters"""

    @abstractmethod
    async def delete_message(self, conversation_id: str, message_id: str) -> bool:
        """Remove a message; False if it did not exist"""

    @abstractmethod
    async def mark_messages_read(self, conversation_id: str, reader_id: str) -> Conversation:
        """Reset the reader's unread counter and mark messages addressed to them read"""

    @abstractmethod
    async def attach_thumbnail(
        self, conversation_id: str, file_url: str, thumbnail_url: str
    ) -> Optional[Message]:
        """Link a thumbnail to the image message stored at file_url; None if there is none"""

    async def get_or_create_conversation(
        self, participant_ids: List[str], participant_names: Optional[Dict[str, str]] = None
    ) -> Conversation:
        existing = await self.find_conversation(participant_ids)
        if existing is not None:
            return existing
        return await self.create_conversation(participant_ids, participant_names)

    def subscribe(self, conversation_id: str) -> "Subscription":
        """Register for change events; events published from now on are delivered"""
        return Subscription(self, conversation_id)

    def publish(self, event: ConversationEvent) -> None:
        for queue in list(self._subscribers.get(event.conversation_id, ())):
            queue.put_nowait(event)

    def _unsubscribe(self, conversation_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(conversation_id)
        if queues is None:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[conversation_id]


class Subscription:
    """Async iterator over one conversation's change events until closed"""

    def __init__(self, store: ConversationRemoteStore, conversation_id: str):
        self._store = store
        self.conversation_id = conversation_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        store._subscribers[conversation_id].add(self._queue)

    def __aiter__(self) -> AsyncIterator[ConversationEvent]:
        return self

    async def __anext__(self) -> ConversationEvent:
        if self._closed:
            raise StopAsyncIteration
        return await self._queue.get()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._store._unsubscribe(self.conversation_id, self._queue)


class SqlConversationRemoteStore(ConversationRemoteStore):
    """ConversationRemoteStore on the SQLAlchemy models"""

    def __init__(self, session_factory=SessionLocal):
        super().__init__()
        self._session_factory = session_factory

    async def _run(self, operation: str, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as e:
            logger.error(f"❌ Database error during {operation}: {e}")
            raise RemoteStoreError(f"Failed to {operation}: {e}") from e

    @staticmethod
    def _message_values(message: Message) -> dict:
        values = message.model_dump()
        values["type"] = message.type.value
        values["status"] = message.status.value
        return values

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        def _get():
            with self._session_factory() as db:
                record = db.get(ConversationRecord, conversation_id)
                return Conversation.model_validate(record) if record else None

        return await self._run("load conversation", _get)

    async def find_conversation(self, participant_ids: List[str]) -> Optional[Conversation]:
        wanted = set(participant_ids)

        def _find():
            with self._session_factory() as db:
                for record in db.query(ConversationRecord).all():
                    if set(record.participant_ids or []) == wanted:
                        return Conversation.model_validate(record)
                return None

        return await self._run("find conversation", _find)

    async def create_conversation(
        self, participant_ids: List[str], participant_names: Optional[Dict[str, str]] = None
    ) -> Conversation:
        def _create():
            with self._session_factory() as db:
                now = datetime.utcnow()
                record = ConversationRecord(
                    id=str(uuid.uuid4()),
                    participant_ids=list(participant_ids),
                    participant_names=dict(participant_names or {}),
                    unread_counts={uid: 0 for uid in participant_ids},
                    created_at=now,
                    updated_at=now,
                )
                db.add(record)
                db.commit()
                db.refresh(record)
                return Conversation.model_validate(record)

        conversation = await self._run("create conversation", _create)
        logger.info(f"💬 Created conversation {conversation.id}")
        return conversation

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        def _list():
            with self._session_factory() as db:
                records = (
                    db.query(ConversationRecord)
                    .order_by(ConversationRecord.updated_at.desc())
                    .all()
                )
                return [
                    Conversation.model_validate(r)
                    for r in records
                    if user_id in (r.participant_ids or [])
                ]

        return await self._run("list conversations", _list)

    async def list_messages(self, conversation_id: str) -> List[Message]:
        def _list():
            with self._session_factory() as db:
                records = (
                    db.query(MessageRecord)
                    .filter(MessageRecord.conversation_id == conversation_id)
                    .order_by(MessageRecord.timestamp.asc(), MessageRecord.id.asc())
                    .all()
                )
                return [Message.model_validate(r) for r in records]

        return await self._run("load messages", _list)

    async def append_message(self, conversation_id: str, message: Message) -> Message:
        def _append():
            with self._session_factory() as db:
                if db.get(ConversationRecord, conversation_id) is None:
                    raise RemoteStoreError(
                        f"Conversation {conversation_id} not found", code="not_found"
                    )
                db.add(MessageRecord(**self._message_values(message)))
                db.commit()

        await self._run("save message", _append)
        self.publish(ConversationEvent(MESSAGE_ADDED, conversation_id, message=message))
        return message

    async def update_conversation_last_message(
        self, conversation_id: str, message: Message
    ) -> Conversation:
        def _update():
            with self._session_factory() as db:
                record = db.get(ConversationRecord, conversation_id)
                if record is None:
                    raise RemoteStoreError(
                        f"Conversation {conversation_id} not found", code="not_found"
                    )
                receivers = (
                    [message.receiver_id]
                    if message.receiver_id
                    else [uid for uid in record.participant_ids if uid != message.sender_id]
                )
                # JSON columns only persist on reassignment
                counts = dict(record.unread_counts or {})
                for uid in receivers:
                    counts[uid] = counts.get(uid, 0) + 1
                record.unread_counts = counts
                record.last_message = last_message_preview(message)
                record.last_message_type = message.type.value
                record.last_message_timestamp = message.timestamp
                record.last_message_sender_id = message.sender_id
                record.updated_at = datetime.utcnow()
                db.commit()
                db.refresh(record)
                return Conversation.model_validate(record)

        conversation = await self._run("update conversation", _update)
        self.publish(
            ConversationEvent(CONVERSATION_UPDATED, conversation_id, conversation=conversation)
        )
        return conversation

    async def delete_message(self, conversation_id: str, message_id: str) -> bool:
        def _delete():
            with self._session_factory() as db:
                deleted = (
                    db.query(MessageRecord)
                    .filter(
                        MessageRecord.conversation_id == conversation_id,
                        MessageRecord.id == message_id,
                    )
                    .delete()
                )
                db.commit()
                return deleted > 0

        deleted = await self._run("delete message", _delete)
        if deleted:
            self.publish(ConversationEvent(MESSAGE_DELETED, conversation_id, message_id=message_id))
        return deleted

    async def mark_messages_read(self, conversation_id: str, reader_id: str) -> Conversation:
        def _mark():
            with self._session_factory() as db:
                record = db.get(ConversationRecord, conversation_id)
                if record is None:
                    raise RemoteStoreError(
                        f"Conversation {conversation_id} not found", code="not_found"
                    )
                db.query(MessageRecord).filter(
                    MessageRecord.conversation_id == conversation_id,
                    MessageRecord.sender_id != reader_id,
                    MessageRecord.is_read.is_(False),
                ).update({MessageRecord.is_read: True}, synchronize_session=False)
                counts = dict(record.unread_counts or {})
                counts[reader_id] = 0
                record.unread_counts = counts
                db.commit()
                db.refresh(record)
                return Conversation.model_validate(record)

        conversation = await self._run("mark messages read", _mark)
        self.publish(ConversationEvent(MESSAGES_READ, conversation_id, reader_id=reader_id))
        self.publish(
            ConversationEvent(CONVERSATION_UPDATED, conversation_id, conversation=conversation)
        )
        return conversation

    async def attach_thumbnail(
        self, conversation_id: str, file_url: str, thumbnail_url: str
    ) -> Optional[Message]:
        def _attach():
            with self._session_factory() as db:
                record = (
                    db.query(MessageRecord)
                    .filter(
                        MessageRecord.conversation_id == conversation_id,
                        MessageRecord.file_url == file_url,
                        MessageRecord.type == MessageType.IMAGE.value,
                    )
                    .first()
                )
                if record is None:
                    return None
                record.thumbnail_url = thumbnail_url
                db.commit()
                db.refresh(record)
                return Message.model_validate(record)

        message = await self._run("attach thumbnail", _attach)
        if message is not None:
            self.publish(ConversationEvent(MESSAGE_UPDATED, conversation_id, message=message))
        return message
