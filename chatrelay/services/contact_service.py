"""Contact records linked from conversations, and advisor assignment on handoff."""

import asyncio
import weakref
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from chatrelay.config import Settings
from chatrelay.errors import ChatRelayError, PersistenceError
from chatrelay.logging_config import get_logger
from chatrelay.models import Contact, Conversation
from chatrelay.services.alert_service import alert_info
from chatrelay.services.chat_repository import DocumentRepository
from chatrelay.services.connection_registry import TenantConnection
from chatrelay.services.handoff_service import HandoffDecision
from chatrelay.services.tenant_router import TenantConnectionRouter

logger = get_logger("contacts")

CONTACT_REF_MODEL = "contact"


def _contact_store(connection: TenantConnection) -> DocumentRepository[Contact]:
    return DocumentRepository(connection, Contact)


def contact_ref(contact: Contact) -> dict[str, str]:
    return {"ref_model": CONTACT_REF_MODEL, "ref_id": str(contact.id)}


class ContactDirectory:
    """One contact record per (tenant, contact address), created on first contact."""

    def __init__(self, router: TenantConnectionRouter, settings: Settings):
        self._router = router
        self._settings = settings
        self._locks: "weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, tenant_id: str, contact_address: str) -> asyncio.Lock:
        key = (tenant_id, contact_address)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def get(self, tenant_id: str, contact_address: str) -> Optional[Contact]:
        async with self._router.acquire(tenant_id) as connection:
            store = connection.repository("contact", _contact_store)
            try:
                return await store.find_one(tenant_id=tenant_id, contact_address=contact_address)
            except SQLAlchemyError as exc:
                raise PersistenceError(f"Contact read failed: {exc}", tenant_id=tenant_id) from exc

    async def ensure(self, tenant_id: str, contact_address: str, display_name: Optional[str] = None) -> Contact:
        async with self._lock_for(tenant_id, contact_address):
            return await self._ensure(tenant_id, contact_address, display_name)

    async def _ensure(self, tenant_id: str, contact_address: str, display_name: Optional[str]) -> Contact:
        async with self._router.acquire(tenant_id) as connection:
            store = connection.repository("contact", _contact_store)
            try:
                contact = await store.find_one(tenant_id=tenant_id, contact_address=contact_address)
                if contact is not None:
                    return contact
                try:
                    contact = await store.insert(
                        tenant_id=tenant_id,
                        contact_address=contact_address,
                        display_name=display_name,
                    )
                except IntegrityError:
                    contact = await store.find_one(tenant_id=tenant_id, contact_address=contact_address)
                    if contact is None:
                        raise PersistenceError(
                            f"Contact {contact_address} vanished after conflict", tenant_id=tenant_id
                        )
                    return contact
            except SQLAlchemyError as exc:
                raise PersistenceError(f"Contact write failed: {exc}", tenant_id=tenant_id) from exc

        logger.info(
            "Contact created",
            extra={"context": {"tenant_id": tenant_id, "contact_address": contact_address}},
        )
        return contact

    async def link(self, tenant_id: str, contact_address: str, display_name: Optional[str] = None) -> dict[str, str]:
        """Reference to the contact record, creating it if needed."""
        return contact_ref(await self.ensure(tenant_id, contact_address, display_name))

    async def assign_advisor(self, tenant_id: str, contact_address: str) -> Optional[str]:
        """Advisor for a handed-off contact.

        An advisor already assigned and still listed for the tenant is kept.
        Otherwise the listed advisor with the fewest contacts wins, ties going
        to list order. Returns None when the tenant lists no advisors.
        """
        config = self._settings.tenant(tenant_id)
        advisors = list(config.advisors) if config else []
        if not advisors:
            return None

        contact = await self.ensure(tenant_id, contact_address)
        if contact.advisor in advisors:
            return contact.advisor

        async with self._router.acquire(tenant_id) as connection:
            store = connection.repository("contact", _contact_store)
            try:
                load = await store.count_by("advisor", tenant_id=tenant_id)
                chosen = min(advisors, key=lambda name: (load.get(name, 0), advisors.index(name)))

                def _assign(row: Contact) -> None:
                    row.advisor = chosen
                    row.updated_at = datetime.now(timezone.utc)

                updated = await store.modify({"id": contact.id, "tenant_id": tenant_id}, _assign)
            except SQLAlchemyError as exc:
                raise PersistenceError(f"Advisor assignment failed: {exc}", tenant_id=tenant_id) from exc

        if updated is None:
            raise PersistenceError(f"Contact {contact_address} not found for assignment", tenant_id=tenant_id)
        logger.info(
            "Advisor assigned",
            extra={
                "context": {
                    "tenant_id": tenant_id,
                    "contact_address": contact_address,
                    "advisor": chosen,
                    "previous": contact.advisor,
                }
            },
        )
        return chosen


class HandoffNotifier:
    """Runs after the agent hands a conversation off: assigns an advisor and alerts operators."""

    def __init__(
        self,
        contacts: ContactDirectory,
        *,
        notifier: Callable[[str, Optional[dict]], Awaitable[Any]] = alert_info,
    ):
        self._contacts = contacts
        self._notify = notifier

    async def __call__(self, conversation: Conversation, decision: HandoffDecision) -> Optional[str]:
        tenant_id = conversation.tenant_id
        contact_address = conversation.contact_address
        advisor = None
        try:
            advisor = await self._contacts.assign_advisor(tenant_id, contact_address)
        except ChatRelayError as exc:
            logger.warning(
                "Advisor assignment failed",
                extra={"context": {"tenant_id": tenant_id, "contact_address": contact_address, "error": exc.message}},
            )

        await self._notify(
            "Conversation handed to operators",
            {
                "tenant_id": tenant_id,
                "contact_address": contact_address,
                "display_name": conversation.display_name,
                "matched_phrase": decision.matched_phrase,
                "advisor": advisor or "unassigned",
                "persisted": decision.persisted,
            },
        )
        return advisor
