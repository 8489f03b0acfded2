from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import OTP_APP_NAME, OTP_EXPIRY_MINUTES


class AttachmentKind(str, Enum):
    IMAGE = "image"
    FILE = "file"
    THUMBNAIL = "thumbnail"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"
    VIDEO = "video"
    LOCATION = "location"
    CONTACT = "contact"


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class SyncState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


AuthMethod = Literal["primary", "fallback"]


# Attachment Schemas
class Attachment(BaseModel):
    """A binary payload bound to one conversation; frozen once its upload starts"""

    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    kind: AttachmentKind
    local_source_ref: Optional[str] = None
    remote_path: str
    file_name: str
    mime_type: str
    size_bytes: int = 0


class UploadProgress(BaseModel):
    """
    One record of an upload session's progress stream.

    Terminal records either carry a download URL (success) or an error
    (failure), never both.
    """

    model_config = ConfigDict(frozen=True)

    attachment_file_name: str
    fraction_complete: float = Field(default=0.0, ge=0.0, le=1.0)
    is_complete: bool = False
    download_url: Optional[str] = None
    error: Optional[str] = None

    @model_validator(mode="after")
    def check_terminal_shape(self):
        if self.error is not None and (self.is_complete or self.download_url is not None):
            raise ValueError("A failed upload record cannot carry a download URL")
        if self.is_complete and not self.download_url:
            raise ValueError("A completed upload record requires a download URL")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.is_complete or self.error is not None

    @property
    def succeeded(self) -> bool:
        return self.is_complete and self.download_url is not None

    @classmethod
    def success(cls, file_name: str, download_url: str) -> "UploadProgress":
        return cls(
            attachment_file_name=file_name,
            fraction_complete=1.0,
            is_complete=True,
            download_url=download_url,
        )

    @classmethod
    def failure(cls, file_name: str, error: str, fraction: float = 0.0) -> "UploadProgress":
        return cls(attachment_file_name=file_name, fraction_complete=fraction, error=error)


# Messaging Schemas
class Message(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    receiver_id: Optional[str] = None
    type: MessageType = MessageType.TEXT
    content: str = ""
    timestamp: datetime
    is_read: bool = False
    status: MessageStatus = MessageStatus.SENT
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    thumbnail_url: Optional[str] = None
    reply_to_message_id: Optional[str] = None

    class Config:
        from_attributes = True

    def sort_key(self) -> tuple:
        return (self.timestamp, self.id)


class Conversation(BaseModel):
    id: str
    participant_ids: List[str] = Field(default_factory=list)
    participant_names: Dict[str, str] = Field(default_factory=dict)
    last_message: str = ""
    last_message_type: MessageType = MessageType.TEXT
    last_message_timestamp: Optional[datetime] = None
    last_message_sender_id: Optional[str] = None
    unread_counts: Dict[str, int] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OperationResult(BaseModel):
    """Structured outcome of a non-streaming store or pipeline operation"""

    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[Message] = None
    attachment_key: Optional[str] = None
    download_url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(cls, **kwargs) -> "OperationResult":
        return cls(success=True, **kwargs)

    @classmethod
    def failed(cls, error: str, error_code: Optional[str] = None, **kwargs) -> "OperationResult":
        return cls(success=False, error=error, error_code=error_code, **kwargs)


class ConversationSnapshot(BaseModel):
    """Read-only copy of a conversation's local state for the UI"""

    state: SyncState
    conversation: Optional[Conversation] = None
    messages: List[Message] = Field(default_factory=list)
    uploads: Dict[str, UploadProgress] = Field(default_factory=dict)
    error: Optional[str] = None
    error_code: Optional[str] = None


# OTP Dispatch Schemas
class OtpDispatchRequest(BaseModel):
    """
    Single-shot OTP email request. Fields are deliberately loose so the
    dispatch service can report format problems as structured results.
    """

    email: Optional[str] = None
    otp: Optional[str] = None
    expiry_minutes: int = Field(default=OTP_EXPIRY_MINUTES, ge=1, le=1440)
    app_name: str = OTP_APP_NAME

    @field_validator("otp", mode="before")
    @classmethod
    def coerce_otp(cls, value):
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class DispatchResult(BaseModel):
    success: bool
    auth_method_used: Optional[AuthMethod] = None
    message_id: Optional[str] = None
    error_detail: Optional[str] = None
    error_code: Optional[str] = None
    risk_flagged: bool = False


class RenderedMessage(BaseModel):
    subject: str
    html: str
    text: str
