from fastapi import APIRouter, Depends, Header, Response, status
from fastapi.responses import ORJSONResponse
from sqlalchemy.orm import Session
from typing import List, Optional
import hashlib
import logging

from .. import crud, models, schemas
from ..services.channel_directory import is_chat_open
from .dependencies import get_db, get_current_user

router = APIRouter(tags=["unread"])

logger = logging.getLogger(__name__)

_CACHE_HEADERS = {
    "Cache-Control": "no-cache, private",
    "Vary": "If-None-Match",
}


def _unread_etag(user_id: int, total: int, latest_id: Optional[int]) -> str:
    marker = f"{int(user_id)}:{int(total)}:{latest_id or 0}"
    return f'W/"{hashlib.sha1(marker.encode()).hexdigest()}"'


@router.get(
    "/messages/unread",
    response_model=schemas.UnreadTotalResponse,
    responses={304: {"description": "Not Modified"}},
)
def get_unread_total(
    if_none_match: Optional[str] = Header(default=None, alias="If-None-Match"),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    """Total unread messages for the header badge, with weak ETag support."""
    total, latest_id = crud.crud_message.get_unread_totals_for_user(db, current_user.id)
    etag_value = _unread_etag(current_user.id, total, latest_id)
    headers = {"ETag": etag_value, **_CACHE_HEADERS}
    if if_none_match and if_none_match.strip() == etag_value:
        return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers=headers)
    return ORJSONResponse(content={"total": int(total)}, headers=headers)


@router.get(
    "/messages/unread/by-conversation",
    response_model=schemas.UnreadByConversationResponse,
)
def get_unread_by_conversation(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    """Per-booking unread counts; bookings with nothing unread are omitted."""
    counts = crud.crud_message.per_conversation_unread_counts(db, current_user.id)
    return schemas.UnreadByConversationResponse(total=sum(counts.values()), counts=counts)


def _participant_summary(
    db: Session, booking: models.Booking, user_id: int
) -> Optional[schemas.ParticipantSummary]:
    provider = crud.booking.get_provider(db, booking.provider_id)
    if provider is None:
        return None
    if int(user_id) == int(booking.customer_id):
        other = provider.user
        name = provider.business_name or (other.full_name if other else "")
    else:
        other = crud.booking.get_user(db, booking.customer_id)
        name = other.full_name if other else ""
    if other is None:
        return None
    return schemas.ParticipantSummary(
        id=int(other.id), name=name or other.email, avatar_url=other.avatar_url
    )


@router.get("/conversations", response_model=List[schemas.ConversationSummary])
def list_conversations(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    """Chat list for dashboards, most recent activity first."""
    rows = crud.crud_message.list_conversations(db, current_user.id)
    return [
        schemas.ConversationSummary(
            booking_id=int(booking.id),
            status=booking.status,
            is_open=is_chat_open(booking.status),
            other_participant=_participant_summary(db, booking, current_user.id),
            last_message=schemas.MessageResponse.model_validate(last),
            unread_count=unread,
        )
        for booking, last, unread in rows
    ]
