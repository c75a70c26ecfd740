import asyncio
import weakref
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Generic, Optional, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from chatrelay.errors import PersistenceError, TenantConnectionError
from chatrelay.logging_config import get_logger
from chatrelay.models import Conversation
from chatrelay.schemas.message import ChatMessage
from chatrelay.services.connection_registry import TenantConnection
from chatrelay.services.tenant_router import TenantConnectionRouter

logger = get_logger("chat_repository")

ModelT = TypeVar("ModelT")


class DocumentRepository(Generic[ModelT]):
    """Accessor for one model on one tenant connection. Built once per (tenant, model)."""

    def __init__(self, connection: TenantConnection, model: type[ModelT]):
        self.connection = connection
        self.model = model

    async def find_one(self, **criteria: Any) -> Optional[ModelT]:
        async with self.connection.sessionmaker() as session:
            result = await session.execute(select(self.model).filter_by(**criteria).limit(1))
            return result.scalars().first()

    async def find_many(
        self,
        *,
        order_by: Any = None,
        limit: Optional[int] = None,
        offset: int = 0,
        **criteria: Any,
    ) -> list[ModelT]:
        stmt = select(self.model).filter_by(**criteria)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.connection.sessionmaker() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count_by(self, column: str, **criteria: Any) -> dict[Any, int]:
        """Row counts grouped by one column."""
        field = getattr(self.model, column)
        stmt = select(field, func.count()).filter_by(**criteria).group_by(field)
        async with self.connection.sessionmaker() as session:
            result = await session.execute(stmt)
            return {value: count for value, count in result.all()}

    async def insert(self, **values: Any) -> ModelT:
        async with self.connection.sessionmaker() as session:
            instance = self.model(**values)
            session.add(instance)
            await session.commit()
            return instance

    async def modify(self, criteria: dict[str, Any], mutate: Callable[[ModelT], None]) -> Optional[ModelT]:
        """Read-modify-write of one row inside a single transaction."""
        async with self.connection.sessionmaker() as session:
            async with session.begin():
                stmt = select(self.model).filter_by(**criteria).limit(1).with_for_update()
                instance = (await session.execute(stmt)).scalars().first()
                if instance is None:
                    return None
                mutate(instance)
            return instance


def _conversation_store(connection: TenantConnection) -> DocumentRepository[Conversation]:
    return DocumentRepository(connection, Conversation)


@dataclass
class ConversationDefaults:
    display_name: Optional[str] = None
    automation_enabled: bool = True
    linked_record_ref: Optional[dict[str, Any]] = None


def _append(document: dict[str, Any], conversation: Conversation, *, only_if_automated: bool = False) -> None:
    if only_if_automated and not conversation.automation_enabled:
        logger.warning(
            "Automated message not recorded, conversation handed off",
            extra={"context": {"tenant_id": conversation.tenant_id, "contact_address": conversation.contact_address}},
        )
        return
    external_id = document.get("external_id")
    if conversation.has_external_id(external_id):
        logger.info(
            "Duplicate message ignored",
            extra={"context": {"tenant_id": conversation.tenant_id, "external_id": external_id}},
        )
        return
    now = datetime.now(timezone.utc)
    # New list object so the JSON column is flagged dirty; last_message lands in the same commit.
    conversation.messages = [*(conversation.messages or []), document]
    conversation.last_message = {
        "body": document.get("body", ""),
        "sent_at": document.get("sent_at"),
        "responded_by": document.get("responded_by"),
    }
    conversation.updated_at = now


def _read_failed(tenant_id: str, contact_address: Optional[str], exc: SQLAlchemyError) -> PersistenceError:
    logger.warning(
        "Conversation read failed",
        extra={"context": {"tenant_id": tenant_id, "contact_address": contact_address, "error": str(exc)}},
    )
    return PersistenceError(f"Conversation read failed: {exc}", tenant_id=tenant_id)


class ChatRepository:
    """Per-tenant conversation documents keyed by contact address.

    Writes for one (tenant, contact) are serialized by an asyncio lock, so the
    message sequence always reflects arrival order.
    """

    def __init__(
        self,
        router: TenantConnectionRouter,
        *,
        max_attempts: int = 2,
        retry_backoff_seconds: float = 0.2,
        sleep_func=asyncio.sleep,
    ):
        self._router = router
        self._max_attempts = max(1, max_attempts)
        self._retry_backoff_seconds = max(0.0, retry_backoff_seconds)
        self._sleep = sleep_func
        self._locks: "weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, tenant_id: str, contact_address: str) -> asyncio.Lock:
        key = (tenant_id, contact_address)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def get(self, tenant_id: str, contact_address: str) -> Optional[Conversation]:
        async with self._router.acquire(tenant_id) as connection:
            store = connection.repository("conversation", _conversation_store)
            try:
                return await store.find_one(tenant_id=tenant_id, contact_address=contact_address)
            except SQLAlchemyError as exc:
                raise _read_failed(tenant_id, contact_address, exc) from exc

    async def list_conversations(self, tenant_id: str, *, limit: int = 50, offset: int = 0) -> list[Conversation]:
        async with self._router.acquire(tenant_id) as connection:
            store = connection.repository("conversation", _conversation_store)
            try:
                return await store.find_many(
                    tenant_id=tenant_id,
                    order_by=Conversation.updated_at.desc(),
                    limit=limit,
                    offset=offset,
                )
            except SQLAlchemyError as exc:
                raise _read_failed(tenant_id, None, exc) from exc

    async def find_or_create(
        self,
        tenant_id: str,
        contact_address: str,
        defaults: Optional[ConversationDefaults] = None,
    ) -> Conversation:
        defaults = defaults or ConversationDefaults()
        async with self._lock_for(tenant_id, contact_address):
            async with self._router.acquire(tenant_id) as connection:
                store = connection.repository("conversation", _conversation_store)
                try:
                    conversation = await store.find_one(tenant_id=tenant_id, contact_address=contact_address)
                except SQLAlchemyError as exc:
                    raise _read_failed(tenant_id, contact_address, exc) from exc
                if conversation is not None:
                    return conversation

                try:
                    conversation = await store.insert(
                        tenant_id=tenant_id,
                        contact_address=contact_address,
                        display_name=defaults.display_name,
                        automation_enabled=defaults.automation_enabled,
                        linked_record_ref=defaults.linked_record_ref,
                        messages=[],
                        status="active",
                    )
                except IntegrityError:
                    # Another process created it first.
                    try:
                        conversation = await store.find_one(tenant_id=tenant_id, contact_address=contact_address)
                    except SQLAlchemyError as exc:
                        raise _read_failed(tenant_id, contact_address, exc) from exc
                    if conversation is None:
                        raise PersistenceError(
                            f"Conversation for {contact_address} vanished after conflict", tenant_id=tenant_id
                        )
                    return conversation
                except SQLAlchemyError as exc:
                    raise PersistenceError(f"Failed to create conversation: {exc}", tenant_id=tenant_id) from exc

                logger.info(
                    "Conversation created",
                    extra={
                        "context": {
                            "tenant_id": tenant_id,
                            "contact_address": contact_address,
                            "automation_enabled": conversation.automation_enabled,
                        }
                    },
                )
                return conversation

    async def append_message(
        self,
        conversation: Conversation,
        message: ChatMessage,
        *,
        only_if_automated: bool = False,
    ) -> Conversation:
        """Append one message and refresh last_message in the same transaction.

        With only_if_automated the append is skipped when the stored row has
        automation disabled; the returned row then reports automation_enabled=False.
        """
        document = message.to_document()
        return await self._modify(
            conversation,
            lambda row: _append(document, row, only_if_automated=only_if_automated),
            action="append_message",
        )

    async def set_automation(self, conversation: Conversation, enabled: bool) -> Conversation:
        def _set(row: Conversation) -> None:
            row.automation_enabled = enabled
            row.updated_at = datetime.now(timezone.utc)

        return await self._modify(conversation, _set, action="set_automation")

    async def link_record(self, conversation: Conversation, ref: dict[str, Any]) -> Conversation:
        def _link(row: Conversation) -> None:
            row.linked_record_ref = ref
            row.updated_at = datetime.now(timezone.utc)

        return await self._modify(conversation, _link, action="link_record")

    async def _modify(self, conversation: Conversation, mutate: Callable[[Conversation], None], *, action: str):
        tenant_id = conversation.tenant_id
        criteria = {"id": conversation.id, "tenant_id": tenant_id}
        last_error: Optional[Exception] = None

        async with self._lock_for(tenant_id, conversation.contact_address):
            for attempt in range(1, self._max_attempts + 1):
                try:
                    async with self._router.acquire(tenant_id) as connection:
                        store = connection.repository("conversation", _conversation_store)
                        updated = await store.modify(criteria, mutate)
                except (SQLAlchemyError, TenantConnectionError) as exc:
                    last_error = exc
                    logger.warning(
                        "Conversation write failed",
                        extra={
                            "context": {
                                "tenant_id": tenant_id,
                                "contact_address": conversation.contact_address,
                                "action": action,
                                "attempt": attempt,
                                "error": str(exc),
                            }
                        },
                    )
                    if attempt < self._max_attempts:
                        await self._sleep(self._retry_backoff_seconds * attempt)
                    continue

                if updated is None:
                    raise PersistenceError(
                        f"Conversation {conversation.id} not found for {action}", tenant_id=tenant_id
                    )
                return updated

        raise PersistenceError(
            f"{action} failed after {self._max_attempts} attempts: {last_error}", tenant_id=tenant_id
        ) from last_error
