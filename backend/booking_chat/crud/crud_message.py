from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import models
from ..services import channel_directory
from ..utils.attachments import mime_from_url
from .crud_booking import booking as crud_booking
from ..utils.errors import AccessDeniedError, ChatValidationError, ForbiddenError, NotFoundError


def _participant_conversation(
    db: Session, booking_id: int, user_id: int
) -> "channel_directory.Conversation":
    """Resolve the conversation for a store operation.

    Third parties get ``ForbiddenError`` here; the directory's plain
    ``AccessDeniedError`` is reserved for lookups that are not mutations.
    """
    try:
        return channel_directory.resolve_conversation(db, booking_id, user_id)
    except ForbiddenError:
        raise
    except AccessDeniedError as exc:
        raise ForbiddenError("Not a participant of this conversation", {}) from exc


def append(
    db: Session,
    booking_id: int,
    sender_id: int,
    body: Optional[str] = None,
    attachment_url: Optional[str] = None,
    mime_hint: Optional[str] = None,
) -> models.Message:
    """Store a new message from ``sender_id`` to the other participant.

    Exactly one of ``body`` (text) or ``attachment_url`` must be given. The
    receiver is derived from the conversation, never taken from the caller.
    """
    conversation = _participant_conversation(db, booking_id, sender_id)
    channel_directory.require_open(conversation)

    has_text = body is not None and bool(body.strip())
    has_attachment = attachment_url is not None and bool(attachment_url.strip())
    if body is not None and attachment_url is not None:
        raise ChatValidationError(
            "Message must be either text or an attachment",
            {"content": "exclusive", "attachment_url": "exclusive"},
        )
    if attachment_url is not None and not has_attachment:
        raise ChatValidationError("Attachment URL cannot be empty", {"attachment_url": "required"})
    if not has_text and not has_attachment:
        raise ChatValidationError("Message content cannot be empty", {"content": "required"})

    if has_attachment:
        url = attachment_url.strip()
        db_msg = models.Message(
            booking_id=conversation.conversation_id,
            sender_id=int(sender_id),
            receiver_id=conversation.other_participant,
            body=url,
            kind=models.MessageKind.ATTACHMENT,
            mime_hint=mime_hint or mime_from_url(url),
            is_read=False,
        )
    else:
        db_msg = models.Message(
            booking_id=conversation.conversation_id,
            sender_id=int(sender_id),
            receiver_id=conversation.other_participant,
            body=body,
            kind=models.MessageKind.TEXT,
            is_read=False,
        )
    db.add(db_msg)
    db.commit()
    db.refresh(db_msg)
    return db_msg


def fetch_history(
    db: Session,
    booking_id: int,
    requesting_user_id: int,
    after_id: Optional[int] = None,
    before_id: Optional[int] = None,
    limit: Optional[int] = None,
    ids: Optional[List[int]] = None,
) -> List[models.Message]:
    """Return the conversation oldest→newest, ordered by (created_at, id).

    Without cursors the full history is returned. ``after_id`` yields only
    newer rows (polling deltas); ``before_id`` with ``limit`` pages backwards
    and still returns the page in ascending order. ``ids`` restricts the
    result to those rows so pollers can pick up read flags on known messages.
    """
    _participant_conversation(db, booking_id, requesting_user_id)
    query = db.query(models.Message).filter(models.Message.booking_id == booking_id)
    if ids is not None:
        query = query.filter(models.Message.id.in_([int(i) for i in ids]))
    if after_id is not None:
        query = query.filter(models.Message.id > after_id)
    if before_id is not None:
        query = query.filter(models.Message.id < before_id)

    if before_id is not None and limit:
        # Grab the newest page below the cursor, then flip for the caller
        rows = (
            query.order_by(models.Message.created_at.desc(), models.Message.id.desc())
            .limit(limit)
            .all()
        )
        rows.reverse()
        return rows

    query = query.order_by(models.Message.created_at.asc(), models.Message.id.asc())
    if limit:
        query = query.limit(limit)
    return query.all()


def mark_read(db: Session, booking_id: int, receiver_id: int) -> List[models.Message]:
    """Flip every unread message addressed to ``receiver_id`` in the thread.

    Returns the rows that changed so the caller can push them to the sender;
    a repeated call changes nothing and returns an empty list.
    """
    _participant_conversation(db, booking_id, receiver_id)
    unread = (
        db.query(models.Message)
        .filter(
            models.Message.booking_id == booking_id,
            models.Message.receiver_id == receiver_id,
            models.Message.is_read.is_(False),
        )
        .order_by(models.Message.created_at.asc(), models.Message.id.asc())
        .all()
    )
    if not unread:
        return []
    for msg in unread:
        msg.is_read = True
    db.commit()
    return unread


def get_message(db: Session, message_id: int) -> Optional[models.Message]:
    return db.query(models.Message).filter(models.Message.id == message_id).first()


def delete_own(db: Session, message_id: int, requesting_user_id: int) -> models.Message:
    """Delete one message; only its sender may do so."""
    msg = get_message(db, message_id)
    if msg is None:
        raise NotFoundError("Message not found", {"message_id": "not_found"})
    if int(msg.sender_id) != int(requesting_user_id):
        raise ForbiddenError("You can only delete your own messages", {})
    db.delete(msg)
    db.commit()
    return msg


def delete_conversation(db: Session, booking_id: int, requesting_user_id: int) -> int:
    """Remove the whole thread, both directions, on behalf of one participant."""
    _participant_conversation(db, booking_id, requesting_user_id)
    user_id = int(requesting_user_id)
    deleted = (
        db.query(models.Message)
        .filter(
            models.Message.booking_id == booking_id,
            (models.Message.sender_id == user_id) | (models.Message.receiver_id == user_id),
        )
        .delete(synchronize_session="fetch")
    )
    db.commit()
    return int(deleted)


# ─── Unread aggregation ────────────────────────────────────────────────────────


def _unread_filter(user_id: int):
    return (
        models.Message.receiver_id == int(user_id),
        models.Message.is_read.is_(False),
    )


def global_unread_count(db: Session, user_id: int) -> int:
    count = db.query(func.count(models.Message.id)).filter(*_unread_filter(user_id)).scalar()
    return int(count or 0)


def per_conversation_unread_counts(db: Session, user_id: int) -> Dict[int, int]:
    """Unread counts keyed by booking id; threads with nothing unread are omitted."""
    rows = (
        db.query(models.Message.booking_id, func.count(models.Message.id))
        .filter(*_unread_filter(user_id))
        .group_by(models.Message.booking_id)
        .all()
    )
    return {int(bid): int(cnt) for bid, cnt in rows if cnt}


def unread_count_for_conversation(db: Session, user_id: int, booking_id: int) -> int:
    count = (
        db.query(func.count(models.Message.id))
        .filter(*_unread_filter(user_id))
        .filter(models.Message.booking_id == booking_id)
        .scalar()
    )
    return int(count or 0)


def get_unread_totals_for_user(db: Session, user_id: int) -> Tuple[int, Optional[int]]:
    """Return the unread total and the newest unread message id (for ETags)."""
    count, latest_id = (
        db.query(func.count(models.Message.id), func.max(models.Message.id))
        .filter(*_unread_filter(user_id))
        .one()
    )
    return int(count or 0), (int(latest_id) if latest_id is not None else None)


# ─── Conversation list ─────────────────────────────────────────────────────────


def get_last_messages_for_bookings(
    db: Session, booking_ids: List[int]
) -> Dict[int, models.Message]:
    """Return the latest message for each booking in one query."""
    if not booking_ids:
        return {}

    window = (
        db.query(
            models.Message.booking_id.label("booking_id"),
            models.Message.id.label("message_id"),
            func.row_number()
            .over(
                partition_by=models.Message.booking_id,
                order_by=(models.Message.created_at.desc(), models.Message.id.desc()),
            )
            .label("rn"),
        )
        .filter(models.Message.booking_id.in_(booking_ids))
        .subquery()
    )
    latest_ids = [
        row.message_id
        for row in db.query(window.c.message_id).filter(window.c.rn == 1).all()
    ]
    if not latest_ids:
        return {}
    messages = db.query(models.Message).filter(models.Message.id.in_(latest_ids)).all()
    return {int(m.booking_id): m for m in messages}


def list_conversations(
    db: Session, user_id: int
) -> List[Tuple[models.Booking, models.Message, int]]:
    """Threads the user takes part in, newest activity first.

    Each entry is ``(booking, last_message, unread_count)``. Only bookings
    with at least one message appear.
    """
    uid = int(user_id)
    booking_ids = [
        int(row[0])
        for row in db.query(models.Message.booking_id)
        .filter((models.Message.sender_id == uid) | (models.Message.receiver_id == uid))
        .distinct()
        .all()
    ]
    if not booking_ids:
        return []
    bookings = {int(b.id): b for b in crud_booking.get_bookings(db, booking_ids)}
    last = get_last_messages_for_bookings(db, booking_ids)
    unread = per_conversation_unread_counts(db, uid)

    out: List[Tuple[models.Booking, models.Message, int]] = []
    for bid in booking_ids:
        booking = bookings.get(bid)
        msg = last.get(bid)
        if booking is None or msg is None:
            continue
        out.append((booking, msg, unread.get(bid, 0)))
    out.sort(key=lambda item: (item[1].created_at, item[1].id), reverse=True)
    return out
