import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from chatrelay.database import Base, build_engine, build_sessionmaker
from chatrelay.errors import TenantConnectionError
from chatrelay.logging_config import get_logger
from chatrelay.services.connection_registry import ConnectionRegistry, ConnectionState, TenantConnection

logger = get_logger("tenant_router")

EngineFactory = Callable[[str], AsyncEngine]


class TenantConnectionRouter:
    """Resolves a tenant id to its store connection, opening one on first use.

    Concurrent first resolves of the same tenant share a single in-flight
    open task. A failed open leaves nothing behind, so the next call retries.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        url_for: Callable[[str], str],
        *,
        engine_factory: Optional[EngineFactory] = None,
        create_schema: bool = True,
    ):
        self._registry = registry
        self._url_for = url_for
        self._engine_factory = engine_factory or build_engine
        self._create_schema = create_schema
        self._pending: dict[str, asyncio.Task] = {}

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    async def resolve(self, tenant_id: str) -> TenantConnection:
        if not tenant_id:
            raise TenantConnectionError("Empty tenant id")

        connection = self._registry.get(tenant_id)
        if connection is not None:
            connection.touch()
            return connection

        # Lookup and task creation happen with no await in between.
        pending = self._pending.get(tenant_id)
        if pending is None:
            pending = asyncio.create_task(self._open(tenant_id), name=f"open-tenant-{tenant_id}")
            self._pending[tenant_id] = pending

        connection = await asyncio.shield(pending)
        connection.touch()
        return connection

    async def _open(self, tenant_id: str) -> TenantConnection:
        try:
            return await self._connect(tenant_id)
        finally:
            if self._pending.get(tenant_id) is asyncio.current_task():
                del self._pending[tenant_id]

    async def _connect(self, tenant_id: str) -> TenantConnection:
        try:
            url = self._url_for(tenant_id)
            engine = self._engine_factory(url)
        except (SQLAlchemyError, KeyError, ValueError) as exc:
            logger.error(
                "Tenant store misconfigured",
                extra={"context": {"tenant_id": tenant_id, "error": str(exc)}},
            )
            raise TenantConnectionError(f"Store for tenant '{tenant_id}' is misconfigured: {exc}", tenant_id=tenant_id) from exc

        connection = TenantConnection(
            tenant_id=tenant_id,
            engine=engine,
            sessionmaker=build_sessionmaker(engine),
            url=url,
        )
        started = time.monotonic()
        try:
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
                if self._create_schema:
                    await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError, TimeoutError) as exc:
            await engine.dispose()
            logger.warning(
                "Tenant store unreachable",
                extra={"context": {"tenant_id": tenant_id, "error": str(exc)}},
            )
            raise TenantConnectionError(f"Store for tenant '{tenant_id}' is unreachable", tenant_id=tenant_id) from exc

        connection.state = ConnectionState.READY
        self._registry.register(connection)
        logger.info(
            "Tenant connection opened",
            extra={
                "context": {
                    "tenant_id": tenant_id,
                    "elapsed_ms": round((time.monotonic() - started) * 1000, 2),
                }
            },
        )
        return connection

    @asynccontextmanager
    async def acquire(self, tenant_id: str) -> AsyncIterator[TenantConnection]:
        """Resolved connection that counts as busy (not evictable) until the block exits."""
        connection = await self.resolve(tenant_id)
        if connection.state == ConnectionState.CLOSED:
            # Evicted between resolve and use.
            connection = await self.resolve(tenant_id)
        connection.in_flight += 1
        try:
            yield connection
        finally:
            connection.in_flight -= 1
            connection.touch()

    @asynccontextmanager
    async def session(self, tenant_id: str) -> AsyncIterator[AsyncSession]:
        async with self.acquire(tenant_id) as connection:
            async with connection.sessionmaker() as session:
                yield session

    def list_active(self) -> list[TenantConnection]:
        return self._registry.active()

    async def evict_idle(self, max_idle_seconds: float) -> list[str]:
        now = time.monotonic()
        evicted: list[str] = []
        for connection in self._registry:
            if connection.in_flight > 0:
                continue
            if connection.idle_seconds(now) < max_idle_seconds:
                continue
            self._registry.remove(connection.tenant_id)
            evicted.append(connection.tenant_id)
            await connection.close()

        if evicted:
            logger.info("Evicted idle tenant connections", extra={"context": {"tenants": evicted}})
        return evicted

    async def close_all(self) -> None:
        for task in list(self._pending.values()):
            task.cancel()
        self._pending.clear()

        for connection in self._registry:
            self._registry.remove(connection.tenant_id)
            await connection.close()
        logger.info("All tenant connections closed")
