import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB

from chatrelay.database import Base

JSONDocument = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("tenant_id", "contact_address", name="uq_conversations_tenant_contact"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False, index=True)
    contact_address = Column(Text, nullable=False)
    display_name = Column(Text)
    messages = Column(JSONDocument, nullable=False, default=list)  # embedded, arrival order
    automation_enabled = Column(Boolean, nullable=False, default=True)
    last_message = Column(JSONDocument)  # {body, sent_at, responded_by}
    linked_record_ref = Column(JSONDocument)  # {ref_model, ref_id}
    status = Column(Text, nullable=False, default="active")  # active, inactive, blocked
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def has_external_id(self, external_id: str | None) -> bool:
        if not external_id:
            return False
        return any(item.get("external_id") == external_id for item in self.messages or [])

    def __repr__(self) -> str:
        return f"<Conversation tenant={self.tenant_id} contact={self.contact_address} messages={len(self.messages or [])}>"
