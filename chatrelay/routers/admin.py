"""Admin API endpoints for connection and buffer diagnostics."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.engine import make_url

from chatrelay.dependencies import Services, get_services, require_admin_token
from chatrelay.schemas.conversation import ConnectionInfo, EvictionResponse

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])


def _safe_url(url: str) -> str:
    return make_url(url).render_as_string(hide_password=True)


@router.get("/connections", response_model=list[ConnectionInfo])
async def list_connections(services: Services = Depends(get_services)):
    return [
        ConnectionInfo(
            tenant_id=connection.tenant_id,
            state=connection.state.value,
            idle_seconds=round(connection.idle_seconds(), 3),
            in_flight=connection.in_flight,
            url=_safe_url(connection.url),
        )
        for connection in services.router.list_active()
    ]


@router.post("/connections/evict", response_model=EvictionResponse)
async def evict_connections(
    max_idle_seconds: Optional[float] = Query(default=None, ge=0),
    services: Services = Depends(get_services),
):
    threshold = services.settings.connection_idle_seconds if max_idle_seconds is None else max_idle_seconds
    evicted = await services.router.evict_idle(threshold)
    return EvictionResponse(evicted=evicted, active=len(services.router.list_active()))


@router.get("/coalescer")
async def coalescer_status(services: Services = Depends(get_services)):
    keys = services.coalescer.pending_keys()
    return {
        "quiet_period_seconds": services.coalescer.quiet_period_seconds,
        "pending": [
            {"tenant_id": key[0], "contact_address": key[1]} if isinstance(key, tuple) else {"key": str(key)}
            for key in keys
        ],
    }
