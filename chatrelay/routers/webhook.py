"""Inbound gateway webhooks."""

import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from starlette.requests import ClientDisconnect

from chatrelay.dependencies import Services, get_services
from chatrelay.errors import AuthenticityError, ChatRelayError, WebhookValidationError
from chatrelay.logging_config import get_logger
from chatrelay.schemas.webhook import RawWebhookEvent

router = APIRouter(tags=["webhook"])

logger = get_logger("webhook")

SIGNATURE_HEADER = "X-Twilio-Signature"


def _ok() -> PlainTextResponse:
    return PlainTextResponse("OK", status_code=200)


def _public_url(request: Request, public_base_url: Optional[str]) -> str:
    """URL the provider signed. Behind a proxy the configured public base wins."""
    if not public_base_url:
        return str(request.url)
    url = public_base_url.rstrip("/") + request.url.path
    if request.url.query:
        url += f"?{request.url.query}"
    return url


async def _parse_webhook_request(request: Request) -> Optional[dict[str, Any]]:
    """Read form-encoded or JSON webhook bodies into a flat dict. None when unusable."""
    content_type = request.headers.get("content-type", "")
    try:
        if "application/json" in content_type:
            raw = await request.body()
            if not raw or not raw.strip():
                logger.info("Webhook probe with empty body")
                return None
            try:
                payload = json.loads(raw)
            except ValueError as exc:
                logger.warning(
                    "Webhook payload is not valid JSON",
                    extra={"context": {"error": str(exc), "body_preview": raw[:200].decode("utf-8", "ignore")}},
                )
                return None
            if not isinstance(payload, dict):
                logger.warning("Webhook payload is not an object")
                return None
            return payload

        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read")
        return None


async def _handle(request: Request, services: Services, tenant_id: Optional[str]) -> PlainTextResponse:
    params = await _parse_webhook_request(request)
    if params is None:
        return _ok()

    event = RawWebhookEvent(
        params=params,
        url=_public_url(request, services.settings.public_base_url),
        signature=request.headers.get(SIGNATURE_HEADER),
        tenant_hint=tenant_id,
    )
    try:
        outcome = await services.pipeline.ingest(event)
    except AuthenticityError:
        return PlainTextResponse("Forbidden", status_code=403)
    except WebhookValidationError as exc:
        # Acknowledge so the gateway does not redeliver an event we will never accept.
        logger.info(
            "Webhook ignored",
            extra={"context": {"tenant_id": exc.tenant_id or tenant_id, "reason": exc.message}},
        )
        return _ok()
    except ChatRelayError as exc:
        logger.error(
            "Webhook processing failed",
            extra={"context": {"tenant_id": exc.tenant_id or tenant_id, "code": exc.code, "error": exc.message}},
        )
        return PlainTextResponse("Service Unavailable", status_code=503)

    logger.info(
        "Webhook accepted",
        extra={
            "context": {
                "tenant_id": outcome.tenant_id,
                "contact_address": outcome.contact_address,
                "status": outcome.status,
            }
        },
    )
    return _ok()


@router.post("/webhook")
async def handle_webhook(request: Request, services: Services = Depends(get_services)):
    """Gateway push; the tenant is chosen by the recipient number."""
    return await _handle(request, services, None)


@router.post("/webhook/{tenant_id}")
async def handle_tenant_webhook(tenant_id: str, request: Request, services: Services = Depends(get_services)):
    return await _handle(request, services, tenant_id)


@router.get("/webhook/{tenant_id}")
async def handle_webhook_probe(tenant_id: str):
    """Health probe for gateway console checks; real webhooks must use POST."""
    return {"ok": True, "message": "Use POST with a form or JSON payload", "tenant_id": tenant_id}
