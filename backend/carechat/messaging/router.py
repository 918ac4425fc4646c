"""Messaging REST router.

Endpoints (all require ``Authorization: Bearer <token>``):
    GET    /messages/conversations                  - List my conversations
    GET    /messages/job-application/{application_id} - Get or create the conversation
    GET    /messages/stats                          - Conversation and unread counts
    GET    /messages/{conversation_id}/messages     - Paginated history (oldest first)
    POST   /messages/{conversation_id}/messages     - Send a message
    PATCH  /messages/{conversation_id}/read         - Mark the conversation read
    PATCH  /messages/{conversation_id}/block        - Block or unblock
    PATCH  /messages/{conversation_id}/archive      - Archive or unarchive
    PATCH  /messages/messages/{message_id}          - Edit a message
    DELETE /messages/messages/{message_id}          - Soft-delete a message

Writes are fanned out over WebSocket exactly as the equivalent socket events
are, whenever the session manager is running.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from starlette.concurrency import run_in_threadpool

from ..auth.dependencies import get_current_user
from ..directory.schemas import UserRecord
from ..realtime.session import get_session_manager
from .schemas import (
    ArchiveRequest,
    BlockRequest,
    EditMessageRequest,
    SendMessageRequest,
)
from .service import MessageService, get_message_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])


def _ok(data, message: Optional[str] = None) -> dict:
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


@router.get("/conversations")
def list_conversations(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    archived: bool = False,
    blocked: bool = False,
    user: UserRecord = Depends(get_current_user),
    service: MessageService = Depends(get_message_service),
) -> dict:
    result = service.get_user_conversations(user.id, page, limit, archived, blocked)
    return {"success": True, "data": result.data, "pagination": result.pagination}


@router.get("/job-application/{application_id}")
def conversation_for_application(
    application_id: str,
    user: UserRecord = Depends(get_current_user),
    service: MessageService = Depends(get_message_service),
) -> dict:
    return _ok(service.get_or_create_conversation(application_id, user.id))


@router.get("/stats")
def conversation_stats(
    user: UserRecord = Depends(get_current_user),
    service: MessageService = Depends(get_message_service),
) -> dict:
    return _ok(service.get_stats(user.id))


@router.patch("/messages/{message_id}")
async def edit_message(
    message_id: str,
    body: EditMessageRequest,
    user: UserRecord = Depends(get_current_user),
    service: MessageService = Depends(get_message_service),
) -> dict:
    message = await run_in_threadpool(service.edit_message, message_id, user.id, body.content)
    manager = get_session_manager()
    if manager is not None:
        await manager.announce_edited(message)
    return _ok(message, "Message updated successfully")


@router.delete("/messages/{message_id}")
async def delete_message(
    message_id: str,
    user: UserRecord = Depends(get_current_user),
    service: MessageService = Depends(get_message_service),
) -> dict:
    message = await run_in_threadpool(service.delete_message, message_id, user.id)
    manager = get_session_manager()
    if manager is not None:
        await manager.announce_deleted(message)
    return _ok({"id": message.id, "conversationId": message.conversationId},
               "Message deleted successfully")


@router.get("/{conversation_id}/messages")
def conversation_messages(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    before: Optional[str] = None,
    after: Optional[str] = None,
    user: UserRecord = Depends(get_current_user),
    service: MessageService = Depends(get_message_service),
) -> dict:
    """History page, oldest first. ``before``/``after`` override ``page``."""
    result = service.get_conversation_messages(
        conversation_id, user.id, page=page, limit=limit, before=before, after=after
    )
    return {"success": True, "data": result.data, "pagination": result.pagination}


@router.post("/{conversation_id}/messages", status_code=201)
async def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    user: UserRecord = Depends(get_current_user),
    service: MessageService = Depends(get_message_service),
) -> dict:
    message = await run_in_threadpool(
        service.send_message,
        conversation_id,
        user.id,
        body.content,
        body.messageType,
        body.replyToMessageId,
        body.fileName,
        body.fileSize,
        body.mimeType,
    )
    manager = get_session_manager()
    if manager is not None:
        await manager.announce_new_message(message)
    return _ok(message, "Message sent successfully")


@router.patch("/{conversation_id}/read")
async def mark_read(
    conversation_id: str,
    user: UserRecord = Depends(get_current_user),
    service: MessageService = Depends(get_message_service),
) -> dict:
    manager = get_session_manager()
    if manager is not None:
        result = await manager.announce_read(conversation_id, user.id)
    else:
        result = await run_in_threadpool(service.mark_as_read, conversation_id, user.id)
    return _ok(result, "Messages marked as read")


@router.patch("/{conversation_id}/block")
def block_conversation(
    conversation_id: str,
    body: BlockRequest,
    user: UserRecord = Depends(get_current_user),
    service: MessageService = Depends(get_message_service),
) -> dict:
    conversation = service.set_blocked(conversation_id, user.id, body.block)
    return _ok(
        conversation,
        "Conversation blocked successfully" if body.block else "Conversation unblocked successfully",
    )


@router.patch("/{conversation_id}/archive")
def archive_conversation(
    conversation_id: str,
    body: ArchiveRequest,
    user: UserRecord = Depends(get_current_user),
    service: MessageService = Depends(get_message_service),
) -> dict:
    conversation = service.set_archived(conversation_id, user.id, body.archive)
    return _ok(
        conversation,
        "Conversation archived successfully" if body.archive else "Conversation unarchived successfully",
    )
