from .message import (
    MessageCreate,
    MessageResponse,
    MessageListResponse,
    MarkReadResponse,
    UnreadTotalResponse,
    UnreadByConversationResponse,
    DeleteConversationResponse,
)
from .conversation import ConversationResponse, ConversationSummary, ParticipantSummary
from .storage import AttachmentOut
