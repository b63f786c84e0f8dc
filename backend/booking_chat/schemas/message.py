from typing import Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, Field, model_validator

from ..models.message import MessageKind


class MessageCreate(BaseModel):
    content: Optional[str] = None
    attachment_url: str | None = None
    mime_hint: str | None = None

    @model_validator(mode="after")
    def ensure_content_or_attachment(cls, values: "MessageCreate") -> "MessageCreate":
        content = (values.content or "").strip()
        attachment = (values.attachment_url or "").strip()
        if not content and not attachment:
            raise ValueError("Message must include content or attachment")
        if content and attachment:
            raise ValueError("Message must be either text or an attachment, not both")
        return values


class MessageResponse(BaseModel):
    id: int
    booking_id: int
    sender_id: int
    receiver_id: int
    body: str
    kind: MessageKind = MessageKind.TEXT
    mime_hint: str | None = None
    is_read: bool = False
    created_at: datetime
    is_attachment: bool = False

    model_config = {"from_attributes": True}


class MessageListResponse(BaseModel):
    """History page, oldest→newest."""

    items: List[MessageResponse]
    has_more: bool = False
    # Smallest id in ``items``; pass as ``before_id`` to load the previous page
    next_before_id: Optional[int] = None
    # Largest id in ``items``; pass as ``after_id`` to poll for newer rows
    last_id: Optional[int] = None


class MarkReadResponse(BaseModel):
    updated: int
    message_ids: List[int] = Field(default_factory=list)
    messages: List[MessageResponse] = Field(default_factory=list)


class UnreadTotalResponse(BaseModel):
    total: int


class UnreadByConversationResponse(BaseModel):
    total: int
    counts: Dict[int, int] = Field(default_factory=dict)


class DeleteConversationResponse(BaseModel):
    deleted: int
