from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Path,
    Query,
    Response,
    UploadFile,
    status,
)
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from .. import crud, models, schemas
from ..core.config import settings
from ..realtime import hub as realtime
from ..services import attachment_uploader, channel_directory
from ..utils.errors import ChatValidationError, NotFoundError
from .dependencies import get_db, get_current_user

router = APIRouter(tags=["messages"])

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500


@router.get(
    "/bookings/{booking_id}/conversation",
    response_model=schemas.ConversationResponse,
)
def read_conversation(
    booking_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    """Who is in the conversation and whether it currently accepts messages."""
    conversation = channel_directory.resolve_conversation(db, booking_id, current_user.id)
    return schemas.ConversationResponse.model_validate(conversation)


@router.get(
    "/bookings/{booking_id}/messages",
    response_model=schemas.MessageListResponse,
)
def read_messages(
    booking_id: int,
    after_id: Optional[int] = Query(None, ge=0, description="Only messages with id greater than this"),
    before_id: Optional[int] = Query(None, ge=1, description="Only messages with id smaller than this"),
    limit: Optional[int] = Query(None, ge=1, le=MAX_PAGE_SIZE),
    ids: Optional[List[int]] = Query(None, description="Only these message ids"),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    """Conversation history oldest→newest.

    Without parameters the whole history is returned. ``after_id`` serves
    polling clients; ``before_id`` with ``limit`` pages backwards. ``ids``
    re-reads known rows, e.g. to see whether sent messages were read.
    """
    items = crud.crud_message.fetch_history(
        db,
        booking_id,
        current_user.id,
        after_id=after_id,
        before_id=before_id,
        limit=limit,
        ids=ids,
    )
    return schemas.MessageListResponse(
        items=[schemas.MessageResponse.model_validate(m) for m in items],
        has_more=bool(limit) and len(items) == limit,
        next_before_id=items[0].id if items else None,
        last_id=items[-1].id if items else after_id,
    )


@router.post(
    "/bookings/{booking_id}/messages",
    response_model=schemas.MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_message(
    booking_id: int,
    message_in: schemas.MessageCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    msg = crud.crud_message.append(
        db,
        booking_id,
        current_user.id,
        body=message_in.content if not message_in.attachment_url else None,
        attachment_url=message_in.attachment_url or None,
        mime_hint=message_in.mime_hint,
    )
    logger.info(
        "Message stored booking_id=%s message_id=%s kind=%s",
        booking_id,
        msg.id,
        msg.kind.value,
    )
    background_tasks.add_task(realtime.publish_message_created, msg)
    return msg


@router.put(
    "/bookings/{booking_id}/messages/read",
    response_model=schemas.MarkReadResponse,
)
def mark_messages_read(
    booking_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    """Mark messages in the thread as read by the current user."""
    updated = crud.crud_message.mark_read(db, booking_id, current_user.id)
    if updated:
        background_tasks.add_task(
            realtime.publish_messages_read, booking_id, current_user.id, updated
        )
    return schemas.MarkReadResponse(
        updated=len(updated),
        message_ids=[m.id for m in updated],
        messages=[schemas.MessageResponse.model_validate(m) for m in updated],
    )


@router.delete(
    "/bookings/{booking_id}/messages/{message_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_message(
    background_tasks: BackgroundTasks,
    booking_id: int = Path(..., description="Booking id"),
    message_id: int = Path(..., description="Message id"),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    """Delete one of the caller's own messages."""
    msg = crud.crud_message.get_message(db, message_id)
    if msg is None or msg.booking_id != booking_id:
        raise NotFoundError("Message not found", {"message_id": "not_found"})
    deleted = crud.crud_message.delete_own(db, message_id, current_user.id)
    background_tasks.add_task(realtime.publish_message_deleted, deleted)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "/bookings/{booking_id}/messages",
    response_model=schemas.DeleteConversationResponse,
)
def delete_conversation(
    booking_id: int,
    background_tasks: BackgroundTasks,
    confirm: bool = Query(False, description="Must be true; the delete cannot be undone"),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    """Wipe the whole conversation for both participants."""
    conversation = channel_directory.resolve_conversation(db, booking_id, current_user.id)
    if not confirm:
        raise ChatValidationError(
            "Deleting a conversation requires confirm=true", {"confirm": "required"}
        )
    deleted = crud.crud_message.delete_conversation(db, booking_id, current_user.id)
    logger.info(
        "Conversation cleared booking_id=%s by user_id=%s deleted=%s",
        booking_id,
        current_user.id,
        deleted,
    )
    background_tasks.add_task(
        realtime.publish_conversation_cleared, conversation, current_user.id, deleted
    )
    return schemas.DeleteConversationResponse(deleted=deleted)


@router.post(
    "/bookings/{booking_id}/attachments",
    response_model=schemas.AttachmentOut,
    status_code=status.HTTP_201_CREATED,
)
async def upload_attachment(
    booking_id: int,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    """Store an image and return its URL; sending it is a separate call."""
    try:
        # One byte past the limit is enough to reject oversize uploads
        payload = await file.read(settings.ATTACHMENT_MAX_BYTES + 1)
    finally:
        await file.close()
    return await attachment_uploader.upload(
        booking_id,
        current_user.id,
        payload,
        file.content_type,
        filename=file.filename,
        db=db,
    )


@router.post(
    "/bookings/{booking_id}/typing",
    status_code=status.HTTP_202_ACCEPTED,
)
def send_typing(
    booking_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    """Broadcast an ephemeral typing signal; nothing is stored."""
    conversation = channel_directory.resolve_conversation(db, booking_id, current_user.id)
    channel_directory.require_open(conversation)
    background_tasks.add_task(realtime.publish_typing, booking_id, current_user.id)
    return {"ok": True}
