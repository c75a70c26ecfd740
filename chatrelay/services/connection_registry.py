import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"


@dataclass(eq=False)
class TenantConnection:
    """Handle to one tenant's store. Identity is the object itself."""

    tenant_id: str
    engine: AsyncEngine
    sessionmaker: async_sessionmaker
    url: str
    state: ConnectionState = ConnectionState.CONNECTING
    last_used_at: float = field(default_factory=time.monotonic)
    in_flight: int = 0
    _repositories: dict[str, Any] = field(default_factory=dict, repr=False)

    def touch(self) -> None:
        self.last_used_at = time.monotonic()

    def idle_seconds(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.monotonic()) - self.last_used_at

    def repository(self, kind: str, factory: Callable[["TenantConnection"], Any]) -> Any:
        """Accessor for one entity kind, built once per connection and cached."""
        repo = self._repositories.get(kind)
        if repo is None:
            repo = factory(self)
            self._repositories[kind] = repo
        return repo

    async def close(self) -> None:
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        self._repositories.clear()
        await self.engine.dispose()


class ConnectionRegistry:
    """Process-wide map tenant id -> TenantConnection. Owned by the composition root."""

    def __init__(self):
        self._connections: dict[str, TenantConnection] = {}

    def get(self, tenant_id: str) -> Optional[TenantConnection]:
        connection = self._connections.get(tenant_id)
        if connection is None or connection.state == ConnectionState.CLOSED:
            return None
        return connection

    def register(self, connection: TenantConnection) -> None:
        existing = self.get(connection.tenant_id)
        if existing is not None and existing is not connection:
            raise ValueError(f"Tenant {connection.tenant_id} already has a live connection")
        self._connections[connection.tenant_id] = connection

    def remove(self, tenant_id: str) -> Optional[TenantConnection]:
        return self._connections.pop(tenant_id, None)

    def __contains__(self, tenant_id: str) -> bool:
        return self.get(tenant_id) is not None

    def active(self) -> list[TenantConnection]:
        return [connection for connection in self._connections.values() if connection.state == ConnectionState.READY]

    def __iter__(self) -> Iterator[TenantConnection]:
        return iter(list(self._connections.values()))

    def __len__(self) -> int:
        return len(self.active())
