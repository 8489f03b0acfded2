"""
Attachment Routes
Thumbnail upload, metadata lookup and deletion for stored conversation
attachments. Callers must be participants of the owning conversation.
"""

import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile

from ..auth import get_current_user_id
from ..dependencies import get_pipeline, get_remote_store
from ..errors import ContentStoreError, RemoteStoreError
from ..schemas import OperationResult
from ..services.upload_pipeline import AttachmentUploadPipeline
from ..storage.content_store import CONVERSATIONS_PATH
from ..storage.conversation_store import ConversationRemoteStore
from .conversations import raise_for_result

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/attachments", tags=["Attachments"])


async def require_participant(
    conversation_id: str, user_id: str, remote: ConversationRemoteStore
) -> None:
    try:
        conversation = await remote.get_conversation(conversation_id)
    except RemoteStoreError as e:
        raise HTTPException(status_code=502, detail="Failed to load conversation") from e
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if user_id not in conversation.participant_ids:
        logger.warning(f"⚠️ User {user_id} denied access to conversation {conversation_id}")
        raise HTTPException(status_code=403, detail="Access denied")


def conversation_id_from_url(url: str, pipeline: AttachmentUploadPipeline) -> str:
    """conversations/{id}/{folder}/{name} -> id"""
    try:
        path = pipeline.repository.resolve_from_url(url)
    except ContentStoreError as e:
        raise HTTPException(status_code=400, detail=e.detail) from e
    parts = path.split("/")
    if len(parts) != 4 or parts[0] != CONVERSATIONS_PATH:
        raise HTTPException(status_code=400, detail="Not a conversation attachment URL")
    return parts[1]


@router.post("/thumbnails", response_model=OperationResult)
async def generate_thumbnail(
    conversation_id: str = Form(...),
    original_image_url: str = Form(...),
    file: UploadFile = File(...),
    user_id: str = Depends(get_current_user_id),
    pipeline: AttachmentUploadPipeline = Depends(get_pipeline),
    remote: ConversationRemoteStore = Depends(get_remote_store),
):
    """Store a pre-rendered thumbnail and link it to the image message it belongs to"""
    await require_participant(conversation_id, user_id, remote)
    contents = await file.read()
    result = raise_for_result(
        await pipeline.generate_thumbnail(conversation_id, original_image_url, contents)
    )

    try:
        message = await remote.attach_thumbnail(
            conversation_id, original_image_url, result.download_url
        )
    except RemoteStoreError as e:
        logger.error(f"❌ Failed to link thumbnail to {original_image_url}: {e}")
        await pipeline.delete_file(result.download_url)
        raise HTTPException(status_code=502, detail="Failed to link thumbnail") from e
    if message is None:
        await pipeline.delete_file(result.download_url)
        raise HTTPException(status_code=404, detail="No image message for that URL")
    return result


@router.get("/metadata", response_model=OperationResult)
async def get_file_metadata(
    url: str = Query(...),
    user_id: str = Depends(get_current_user_id),
    pipeline: AttachmentUploadPipeline = Depends(get_pipeline),
    remote: ConversationRemoteStore = Depends(get_remote_store),
):
    await require_participant(conversation_id_from_url(url, pipeline), user_id, remote)
    return raise_for_result(await pipeline.get_file_metadata(url))


@router.delete("", response_model=OperationResult)
async def delete_file(
    url: str = Query(...),
    user_id: str = Depends(get_current_user_id),
    pipeline: AttachmentUploadPipeline = Depends(get_pipeline),
    remote: ConversationRemoteStore = Depends(get_remote_store),
):
    """Delete a stored attachment; an already-deleted object is a 404"""
    await require_participant(conversation_id_from_url(url, pipeline), user_id, remote)
    return raise_for_result(await pipeline.delete_file(url))
