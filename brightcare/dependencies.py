"""Process-wide service singletons, injected into routes with Depends"""

from functools import lru_cache

from .email_service import NotificationDispatchService, build_dispatch_service
from .services.conversation_sync import ConversationStoreRegistry
from .services.upload_pipeline import AttachmentUploadPipeline
from .storage.content_store import ContentRepository, R2ContentRepository
from .storage.conversation_store import ConversationRemoteStore, SqlConversationRemoteStore


@lru_cache
def get_content_repository() -> ContentRepository:
    return R2ContentRepository()


@lru_cache
def get_remote_store() -> ConversationRemoteStore:
    return SqlConversationRemoteStore()


@lru_cache
def get_pipeline() -> AttachmentUploadPipeline:
    return AttachmentUploadPipeline(get_content_repository())


@lru_cache
def get_registry() -> ConversationStoreRegistry:
    return ConversationStoreRegistry(get_remote_store(), get_pipeline())


@lru_cache
def get_dispatch_service() -> NotificationDispatchService:
    return build_dispatch_service()
