from chatrelay.schemas.conversation import (
    AutomationResponse,
    AutomationUpdate,
    ConnectionInfo,
    ConversationDetail,
    ConversationSummary,
    EvictionResponse,
)
from chatrelay.schemas.message import ChatMessage, Direction, MessageKind, RespondedBy

__all__ = [
    "AutomationResponse",
    "AutomationUpdate",
    "ChatMessage",
    "ConnectionInfo",
    "ConversationDetail",
    "ConversationSummary",
    "Direction",
    "EvictionResponse",
    "MessageKind",
    "RespondedBy",
]
