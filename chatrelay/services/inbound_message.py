"""Inbound message variants and their normalization to plain text."""

from dataclasses import dataclass, field
from typing import Optional, Union

from chatrelay.errors import WebhookValidationError
from chatrelay.schemas.message import MessageKind
from chatrelay.schemas.webhook import InboundPayload

MAPS_URL = "https://www.google.com/maps?q={lat},{lng}"


@dataclass(frozen=True)
class TextMessage:
    body: str
    kind: MessageKind = field(default=MessageKind.TEXT, init=False)

    @property
    def text(self) -> str:
        return self.body

    @property
    def media_refs(self) -> list[str]:
        return []


@dataclass(frozen=True)
class MediaMessage:
    url: str
    content_type: Optional[str] = None
    caption: Optional[str] = None
    kind: MessageKind = field(default=MessageKind.MEDIA, init=False)

    @property
    def text(self) -> str:
        if self.caption:
            return self.caption
        label = (self.content_type or "media").split("/", 1)[0]
        return f"[{label}] {self.url}"

    @property
    def media_refs(self) -> list[str]:
        return [self.url]


@dataclass(frozen=True)
class DocumentMessage:
    url: str
    content_type: Optional[str] = None
    caption: Optional[str] = None
    kind: MessageKind = field(default=MessageKind.DOCUMENT, init=False)

    @property
    def text(self) -> str:
        if self.caption:
            return f"{self.caption}\n[document] {self.url}"
        return f"[document] {self.url}"

    @property
    def media_refs(self) -> list[str]:
        return [self.url]


@dataclass(frozen=True)
class LocationMessage:
    latitude: float
    longitude: float
    label: Optional[str] = None
    kind: MessageKind = field(default=MessageKind.LOCATION, init=False)

    @property
    def maps_url(self) -> str:
        return MAPS_URL.format(lat=self.latitude, lng=self.longitude)

    @property
    def text(self) -> str:
        if self.label:
            return f"{self.label}\n{self.maps_url}"
        return self.maps_url

    @property
    def media_refs(self) -> list[str]:
        return []


InboundMessage = Union[TextMessage, MediaMessage, DocumentMessage, LocationMessage]

_DOCUMENT_PREFIXES = ("application/", "text/")


def contact_address_from(sender: Optional[str]) -> str:
    """'whatsapp:+52 1000' -> '+521000'. Raises if nothing usable remains."""
    if not sender:
        raise WebhookValidationError("Missing sender address")
    value = sender.strip()
    if ":" in value:
        value = value.split(":", 1)[1]
    digits = "".join(ch for ch in value if ch.isdigit())
    if not digits:
        raise WebhookValidationError(f"Unusable sender address: {sender!r}")
    return f"+{digits}"


def classify_payload(payload: InboundPayload) -> InboundMessage:
    """Pick the message variant for a gateway push."""
    if payload.latitude is not None and payload.longitude is not None:
        return LocationMessage(latitude=payload.latitude, longitude=payload.longitude, label=payload.body)

    if payload.media_url:
        content_type = payload.media_content_type
        if content_type and content_type.startswith(_DOCUMENT_PREFIXES):
            return DocumentMessage(url=payload.media_url, content_type=content_type, caption=payload.body)
        return MediaMessage(url=payload.media_url, content_type=content_type, caption=payload.body)

    if payload.body:
        return TextMessage(body=payload.body)

    raise WebhookValidationError("Inbound payload has no content")
