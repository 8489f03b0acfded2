from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class ConversationRecord(Base):
    __tablename__ = "conversations"

    id = Column(String(255), primary_key=True, index=True)
    participant_ids = Column(JSON, nullable=False, default=list)  # [patient_uid, provider_uid]
    participant_names = Column(JSON, nullable=False, default=dict)  # uid -> display name
    last_message = Column(Text, nullable=False, default="")
    last_message_type = Column(String(20), nullable=False, default="text")
    last_message_timestamp = Column(DateTime, nullable=True)
    last_message_sender_id = Column(String(255), nullable=True)
    unread_counts = Column(JSON, nullable=False, default=dict)  # uid -> count
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    messages = relationship(
        "MessageRecord", back_populates="conversation", cascade="all, delete-orphan"
    )


class MessageRecord(Base):
    __tablename__ = "messages"

    id = Column(String(64), primary_key=True, index=True)
    conversation_id = Column(
        String(255), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_id = Column(String(255), nullable=False)
    receiver_id = Column(String(255), nullable=True)
    type = Column(String(20), nullable=False, default="text")
    content = Column(Text, nullable=False, default="")
    timestamp = Column(DateTime, nullable=False, index=True)
    is_read = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default="sent")
    file_url = Column(Text, nullable=True)
    file_name = Column(String(255), nullable=True)
    file_size = Column(Integer, nullable=True)
    mime_type = Column(String(255), nullable=True)
    thumbnail_url = Column(Text, nullable=True)
    reply_to_message_id = Column(String(64), nullable=True)

    conversation = relationship("ConversationRecord", back_populates="messages")
