from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class RespondedBy(str, Enum):
    AUTOMATION = "automation"
    HUMAN = "human"  # the end user
    EXTERNAL_OPERATOR = "external-operator"


class MessageKind(str, Enum):
    TEXT = "text"
    MEDIA = "media"
    LOCATION = "location"
    DOCUMENT = "document"


class ChatMessage(BaseModel):
    """One entry of a conversation. Immutable once appended."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    direction: Direction
    body: str
    sent_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    responded_by: RespondedBy
    external_id: Optional[str] = None
    media_refs: list[str] = Field(default_factory=list)
    kind: MessageKind = MessageKind.TEXT
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "ChatMessage":
        return cls.model_validate(data)


class OperatorMessageRequest(BaseModel):
    body: str = Field(min_length=1)
    operator_name: Optional[str] = None


class OperatorMessageResponse(BaseModel):
    success: bool
    external_id: Optional[str] = None
    message: Optional[str] = None
