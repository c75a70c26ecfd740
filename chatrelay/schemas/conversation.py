from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel

from chatrelay.schemas.message import ChatMessage


class LastMessage(BaseModel):
    body: str
    sent_at: Optional[datetime] = None
    responded_by: Optional[str] = None


class ConversationSummary(BaseModel):
    id: UUID
    contact_address: str
    display_name: Optional[str] = None
    automation_enabled: bool
    status: str
    message_count: int
    last_message: Optional[LastMessage] = None

    @classmethod
    def from_model(cls, conversation) -> "ConversationSummary":
        return cls(
            id=conversation.id,
            contact_address=conversation.contact_address,
            display_name=conversation.display_name,
            automation_enabled=conversation.automation_enabled,
            status=conversation.status,
            message_count=len(conversation.messages or []),
            last_message=LastMessage(**conversation.last_message) if conversation.last_message else None,
        )


class ConversationDetail(ConversationSummary):
    linked_record_ref: Optional[dict[str, Any]] = None
    messages: list[ChatMessage]

    @classmethod
    def from_model(cls, conversation) -> "ConversationDetail":
        summary = ConversationSummary.from_model(conversation)
        return cls(
            **summary.model_dump(),
            linked_record_ref=conversation.linked_record_ref,
            messages=[ChatMessage.from_document(item) for item in conversation.messages or []],
        )


class AutomationUpdate(BaseModel):
    enabled: bool
    actor: Optional[str] = None


class AutomationResponse(BaseModel):
    success: bool
    contact_address: str
    old_state: Optional[str] = None
    new_state: Optional[str] = None
    message: Optional[str] = None


class ConnectionInfo(BaseModel):
    tenant_id: str
    state: str
    idle_seconds: float
    in_flight: int
    url: str


class EvictionResponse(BaseModel):
    evicted: list[str]
    active: int
