from .backend import ChatBackend, HttpChatBackend, LocalChatBackend
from .session import ConversationSession, PendingAttachment, SessionState, TypingIndicator
from .unread import UnreadCounter

__all__ = [
    "ChatBackend",
    "HttpChatBackend",
    "LocalChatBackend",
    "ConversationSession",
    "PendingAttachment",
    "SessionState",
    "TypingIndicator",
    "UnreadCounter",
]
