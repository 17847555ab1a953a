"""Client-side real-time chat: event channel, token refresh and timeline store."""

from .api import ChatApi
from .config import ClientConfig
from .connection import AckResult, ConnectionManager
from .errors import (
    AckFailedError,
    AckTimeoutError,
    ApiError,
    ChatError,
    SessionExpiredError,
    TransportUnavailableError,
    UploadError,
)
from .models import Conversation, LocalImage, Message, MessageImage, MessageReaction, TokenPair
from .mutations import MutationPipeline, MutationResult
from .pagination import PaginationController, ScrollAction, Viewport
from .presence import PresenceController
from .session import ChatSession, ConversationView
from .store import ChatStore
from .tokens import TokenAuthority
from .typing_indicator import TypingController

__all__ = [
    "AckFailedError",
    "AckResult",
    "AckTimeoutError",
    "ApiError",
    "ChatApi",
    "ChatError",
    "ChatSession",
    "ChatStore",
    "ClientConfig",
    "ConnectionManager",
    "Conversation",
    "ConversationView",
    "LocalImage",
    "Message",
    "MessageImage",
    "MessageReaction",
    "MutationPipeline",
    "MutationResult",
    "PaginationController",
    "PresenceController",
    "ScrollAction",
    "SessionExpiredError",
    "TokenAuthority",
    "TokenPair",
    "TransportUnavailableError",
    "TypingController",
    "UploadError",
    "Viewport",
]
