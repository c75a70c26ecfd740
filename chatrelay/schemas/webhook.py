from dataclasses import dataclass
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class InboundPayload(BaseModel):
    """Fields of a gateway push that routing and coalescing depend on."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    sender: Optional[str] = Field(default=None, validation_alias=AliasChoices("From", "from", "sender"))
    recipient: Optional[str] = Field(default=None, validation_alias=AliasChoices("To", "to", "recipient"))
    body: Optional[str] = Field(default=None, validation_alias=AliasChoices("Body", "body", "message"))
    message_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("MessageSid", "SmsMessageSid", "messageId", "message_id"),
    )
    profile_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("ProfileName", "profile_name"))
    num_media: int = Field(default=0, validation_alias=AliasChoices("NumMedia", "num_media"))
    media_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("MediaUrl0", "media_url"))
    media_content_type: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("MediaContentType0", "media_content_type"),
    )
    latitude: Optional[float] = Field(default=None, validation_alias=AliasChoices("Latitude", "latitude"))
    longitude: Optional[float] = Field(default=None, validation_alias=AliasChoices("Longitude", "longitude"))

    @field_validator("num_media", mode="before")
    @classmethod
    def coerce_num_media(cls, value: object) -> int:
        if value in (None, ""):
            return 0
        try:
            return int(value)
        except (TypeError, ValueError):
            return 0

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def coerce_coordinate(cls, value: object) -> Optional[float]:
        if value in (None, ""):
            return None
        return value

    @field_validator("sender", "recipient", "body", "message_id", "profile_name", "media_url", mode="before")
    @classmethod
    def blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value


@dataclass
class RawWebhookEvent:
    """An inbound push as received by the HTTP layer, before any interpretation."""

    params: dict[str, Any]
    url: str = ""
    signature: Optional[str] = None
    tenant_hint: Optional[str] = None
