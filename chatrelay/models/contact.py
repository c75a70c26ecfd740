import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Text, UniqueConstraint, Uuid

from chatrelay.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Contact(Base):
    """Customer record a conversation links to. Created on first contact."""

    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("tenant_id", "contact_address", name="uq_contacts_tenant_contact"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False, index=True)
    contact_address = Column(Text, nullable=False)
    display_name = Column(Text)
    classification = Column(Text, nullable=False, default="prospect")  # prospect, customer
    source = Column(Text, nullable=False, default="whatsapp")
    advisor = Column(Text)  # assigned on handoff
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"<Contact tenant={self.tenant_id} contact={self.contact_address} advisor={self.advisor}>"
