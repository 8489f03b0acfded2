"""
Conversation Routes
Patient/provider messaging: text, image and file messages, upload progress,
read receipts and a live snapshot stream.
"""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ..auth import get_current_user_id
from ..dependencies import get_registry
from ..errors import RemoteStoreError
from ..schemas import (
    Conversation,
    ConversationSnapshot,
    OperationResult,
    SyncState,
    UploadProgress,
)
from ..services.conversation_sync import ConversationStoreRegistry, ConversationSyncStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["Conversations"])

ERROR_STATUS = {
    "validation_error": 400,
    "invalid_message": 400,
    "invalid_upload": 400,
    "invalid_url": 400,
    "forbidden": 403,
    "not_found": 404,
    "not_ready": 409,
    "closed": 409,
    "not_failed": 409,
    "in_progress": 409,
}


def raise_for_result(result: OperationResult) -> OperationResult:
    """Translate a failed OperationResult into an HTTPException"""
    if not result.success:
        status_code = ERROR_STATUS.get(result.error_code, 502)
        raise HTTPException(status_code=status_code, detail=result.error)
    return result


class CreateConversationRequest(BaseModel):
    participant_id: str = Field(..., min_length=1, max_length=255)
    participant_names: Dict[str, str] = Field(default_factory=dict)


class SendTextRequest(BaseModel):
    text: str
    reply_to_message_id: Optional[str] = None


async def open_store(
    conversation_id: str, user_id: str, registry: ConversationStoreRegistry
) -> ConversationSyncStore:
    store = await registry.get(conversation_id, user_id)
    snapshot = store.snapshot()
    if snapshot.state == SyncState.ERROR and snapshot.error_code in ("not_found", "forbidden"):
        await registry.close(conversation_id, user_id)
        status_code = ERROR_STATUS[snapshot.error_code]
        raise HTTPException(status_code=status_code, detail=snapshot.error)
    return store


@router.post("", response_model=Conversation)
async def create_or_find_conversation(
    data: CreateConversationRequest,
    user_id: str = Depends(get_current_user_id),
    registry: ConversationStoreRegistry = Depends(get_registry),
):
    """Return the conversation between the caller and participant, creating it if needed"""
    if data.participant_id == user_id:
        raise HTTPException(status_code=400, detail="Cannot start a conversation with yourself")
    try:
        return await registry.remote.get_or_create_conversation(
            [user_id, data.participant_id], data.participant_names
        )
    except RemoteStoreError as e:
        logger.error(f"❌ Failed to create conversation for {user_id}: {e}")
        raise HTTPException(status_code=502, detail="Failed to create conversation") from e


@router.get("", response_model=List[Conversation])
async def list_conversations(
    user_id: str = Depends(get_current_user_id),
    registry: ConversationStoreRegistry = Depends(get_registry),
):
    try:
        return await registry.remote.list_conversations(user_id)
    except RemoteStoreError as e:
        raise HTTPException(status_code=502, detail="Failed to load conversations") from e


@router.get("/{conversation_id}", response_model=ConversationSnapshot)
async def open_conversation(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    registry: ConversationStoreRegistry = Depends(get_registry),
):
    store = await open_store(conversation_id, user_id, registry)
    return await store.open()


@router.post("/{conversation_id}/refresh", response_model=ConversationSnapshot)
async def refresh_conversation(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    registry: ConversationStoreRegistry = Depends(get_registry),
):
    store = await open_store(conversation_id, user_id, registry)
    return await store.refresh()


@router.get("/{conversation_id}/events")
async def stream_conversation(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    registry: ConversationStoreRegistry = Depends(get_registry),
):
    """Server-Sent Events: one snapshot per state change"""
    store = await open_store(conversation_id, user_id, registry)
    await store.open()

    async def event_stream():
        async for snapshot in store.watch():
            yield f"data: {snapshot.model_dump_json()}\n\n"

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@router.post("/{conversation_id}/messages", response_model=OperationResult)
async def send_text_message(
    conversation_id: str,
    data: SendTextRequest,
    user_id: str = Depends(get_current_user_id),
    registry: ConversationStoreRegistry = Depends(get_registry),
):
    store = await open_store(conversation_id, user_id, registry)
    return raise_for_result(await store.send_text_message(data.text, data.reply_to_message_id))


@router.post("/{conversation_id}/messages/{message_id}/retry", response_model=OperationResult)
async def retry_message(
    conversation_id: str,
    message_id: str,
    user_id: str = Depends(get_current_user_id),
    registry: ConversationStoreRegistry = Depends(get_registry),
):
    store = await open_store(conversation_id, user_id, registry)
    return raise_for_result(await store.retry_message(message_id))


@router.delete("/{conversation_id}/messages/{message_id}", response_model=OperationResult)
async def delete_message(
    conversation_id: str,
    message_id: str,
    user_id: str = Depends(get_current_user_id),
    registry: ConversationStoreRegistry = Depends(get_registry),
):
    store = await open_store(conversation_id, user_id, registry)
    return raise_for_result(await store.delete_message(message_id))


@router.post("/{conversation_id}/images", response_model=OperationResult, status_code=202)
async def send_image_message(
    conversation_id: str,
    file: UploadFile = File(...),
    user_id: str = Depends(get_current_user_id),
    registry: ConversationStoreRegistry = Depends(get_registry),
):
    """Start an image upload; poll /uploads or the event stream for progress"""
    store = await open_store(conversation_id, user_id, registry)
    # Read now: the request's temporary file is closed before the upload finishes
    contents = await file.read()
    logger.info(f"📤 Image upload requested in {conversation_id} ({len(contents)} bytes)")
    return raise_for_result(await store.send_image_message(contents, mime_type=file.content_type))


@router.post("/{conversation_id}/files", response_model=OperationResult, status_code=202)
async def send_file_message(
    conversation_id: str,
    file: UploadFile = File(...),
    file_name: Optional[str] = Form(None),
    user_id: str = Depends(get_current_user_id),
    registry: ConversationStoreRegistry = Depends(get_registry),
):
    store = await open_store(conversation_id, user_id, registry)
    name = file_name or file.filename
    if not name:
        raise HTTPException(status_code=400, detail="File name is required")
    contents = await file.read()
    logger.info(f"📤 File upload requested in {conversation_id} ({len(contents)} bytes)")
    return raise_for_result(
        await store.send_file_message(
            contents, name, file.content_type or "application/octet-stream"
        )
    )


@router.get("/{conversation_id}/uploads", response_model=Dict[str, UploadProgress])
async def list_uploads(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    registry: ConversationStoreRegistry = Depends(get_registry),
):
    store = await open_store(conversation_id, user_id, registry)
    return store.snapshot().uploads


@router.delete("/{conversation_id}/uploads/{attachment_key}", response_model=OperationResult)
async def cancel_upload(
    conversation_id: str,
    attachment_key: str,
    user_id: str = Depends(get_current_user_id),
    registry: ConversationStoreRegistry = Depends(get_registry),
):
    """Cancel an in-flight upload, or clear a failed one"""
    store = await open_store(conversation_id, user_id, registry)
    progress = store.snapshot().uploads.get(attachment_key)
    if progress is not None and progress.error is not None:
        return raise_for_result(await store.dismiss_upload(attachment_key))
    return raise_for_result(await store.cancel_upload(attachment_key))


@router.post("/{conversation_id}/read", response_model=OperationResult)
async def mark_conversation_read(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    registry: ConversationStoreRegistry = Depends(get_registry),
):
    store = await open_store(conversation_id, user_id, registry)
    return raise_for_result(await store.mark_conversation_read())
