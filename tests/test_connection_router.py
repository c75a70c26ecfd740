import asyncio

import pytest

from chatrelay.database import build_engine
from chatrelay.errors import TenantConnectionError
from chatrelay.services.connection_registry import ConnectionRegistry, ConnectionState, TenantConnection
from chatrelay.services.tenant_router import TenantConnectionRouter


def _router(template: str, **kwargs) -> TenantConnectionRouter:
    return TenantConnectionRouter(ConnectionRegistry(), lambda tenant: template.format(tenant=tenant), **kwargs)


class TestResolve:
    def test_distinct_tenants_get_distinct_handles(self, store_template):
        router = _router(store_template)

        async def scenario():
            acme = await router.resolve("acme")
            globex = await router.resolve("globex")
            again = await router.resolve("acme")
            await router.close_all()
            return acme, globex, again

        acme, globex, again = asyncio.run(scenario())

        assert acme is not globex
        assert acme.url != globex.url
        assert again is acme

    def test_concurrent_first_resolve_opens_once(self, store_template):
        created = []

        def counting_factory(url):
            created.append(url)
            return build_engine(url)

        router = _router(store_template, engine_factory=counting_factory)

        async def scenario():
            connections = await asyncio.gather(*(router.resolve("acme") for _ in range(10)))
            count = len(router.registry)
            await router.close_all()
            return connections, count

        connections, count = asyncio.run(scenario())

        assert len(created) == 1
        assert all(connection is connections[0] for connection in connections)
        assert count == 1
        assert connections[0].state == ConnectionState.CLOSED

    def test_unreachable_store_is_retried_on_next_call(self, tmp_path):
        store_dir = tmp_path / "later"
        router = _router(f"sqlite+aiosqlite:///{store_dir}/{{tenant}}.db")

        async def scenario():
            with pytest.raises(TenantConnectionError) as exc_info:
                await router.resolve("acme")
            assert exc_info.value.tenant_id == "acme"
            assert len(router.registry) == 0

            store_dir.mkdir()
            connection = await router.resolve("acme")
            state = connection.state
            count = len(router.registry)
            await router.close_all()
            return state, count

        state, count = asyncio.run(scenario())

        assert state == ConnectionState.READY
        assert count == 1

    def test_misconfigured_tenant_raises_connection_error(self):
        def url_for(tenant_id):
            raise KeyError(tenant_id)

        router = TenantConnectionRouter(ConnectionRegistry(), url_for)

        with pytest.raises(TenantConnectionError):
            asyncio.run(router.resolve("ghost"))
        assert len(router.registry) == 0

    def test_empty_tenant_id_rejected(self, store_template):
        router = _router(store_template)

        with pytest.raises(TenantConnectionError):
            asyncio.run(router.resolve(""))


class TestEviction:
    def test_evict_idle_skips_connections_in_use(self, store_template):
        router = _router(store_template)

        async def scenario():
            async with router.acquire("acme") as connection:
                evicted_while_busy = await router.evict_idle(0)
                in_flight = connection.in_flight
            evicted_after = await router.evict_idle(0)
            replacement = await router.resolve("acme")
            await router.close_all()
            return connection, evicted_while_busy, in_flight, evicted_after, replacement

        connection, evicted_while_busy, in_flight, evicted_after, replacement = asyncio.run(scenario())

        assert evicted_while_busy == []
        assert in_flight == 1
        assert evicted_after == ["acme"]
        assert connection.state == ConnectionState.CLOSED
        assert replacement is not connection

    def test_recently_used_connection_is_kept(self, store_template):
        router = _router(store_template)

        async def scenario():
            await router.resolve("acme")
            evicted = await router.evict_idle(3600)
            active = [connection.tenant_id for connection in router.list_active()]
            await router.close_all()
            return evicted, active

        evicted, active = asyncio.run(scenario())

        assert evicted == []
        assert active == ["acme"]

    def test_close_all_empties_registry(self, store_template):
        router = _router(store_template)

        async def scenario():
            acme = await router.resolve("acme")
            globex = await router.resolve("globex")
            await router.close_all()
            return acme, globex

        acme, globex = asyncio.run(scenario())

        assert len(router.registry) == 0
        assert acme.state == ConnectionState.CLOSED
        assert globex.state == ConnectionState.CLOSED


class TestRegistry:
    def test_register_rejects_second_live_entry(self, store_template):
        router = _router(store_template)

        async def scenario():
            connection = await router.resolve("acme")
            duplicate = TenantConnection(
                tenant_id="acme",
                engine=connection.engine,
                sessionmaker=connection.sessionmaker,
                url=connection.url,
            )
            try:
                router.registry.register(connection)
                with pytest.raises(ValueError):
                    router.registry.register(duplicate)
            finally:
                await router.close_all()

        asyncio.run(scenario())

    def test_repository_cached_per_connection(self, store_template):
        router = _router(store_template)
        built = []

        def factory(connection):
            built.append(connection)
            return object()

        async def scenario():
            connection = await router.resolve("acme")
            first = connection.repository("conversation", factory)
            second = connection.repository("conversation", factory)
            await router.close_all()
            return first, second

        first, second = asyncio.run(scenario())

        assert first is second
        assert len(built) == 1

    def test_length_counts_only_ready_connections(self, store_template):
        router = _router(store_template)

        async def scenario():
            connection = await router.resolve("acme")
            opening = TenantConnection(
                tenant_id="globex",
                engine=connection.engine,
                sessionmaker=connection.sessionmaker,
                url=connection.url,
            )
            router.registry.register(opening)
            counts = (len(router.registry), len(router.list_active()))
            router.registry.remove("globex")
            await router.close_all()
            return counts

        assert asyncio.run(scenario()) == (1, 1)
