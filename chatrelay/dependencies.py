"""Composition root: one instance of every long-lived component per process."""

import hmac
from dataclasses import dataclass
from typing import Hashable, Optional

from fastapi import Header, HTTPException, Request, status

from chatrelay.config import Settings
from chatrelay.database import build_engine
from chatrelay.logging_config import get_logger
from chatrelay.services.agent_service import ConversationalAgent
from chatrelay.services.alert_service import alert_error
from chatrelay.services.chat_repository import ChatRepository
from chatrelay.services.coalescer import MessageCoalescer
from chatrelay.services.connection_registry import ConnectionRegistry
from chatrelay.services.contact_service import ContactDirectory, HandoffNotifier
from chatrelay.services.handoff_service import HandoffController
from chatrelay.services.ingest_service import WebhookIngestPipeline
from chatrelay.services.llm.openai_provider import OpenAIProvider
from chatrelay.services.messaging.base import MessagingProvider
from chatrelay.services.messaging.twilio_provider import TwilioProvider
from chatrelay.services.tenant_router import TenantConnectionRouter

logger = get_logger("dependencies")


@dataclass
class Services:
    settings: Settings
    registry: ConnectionRegistry
    router: TenantConnectionRouter
    repository: ChatRepository
    contacts: ContactDirectory
    coalescer: MessageCoalescer
    handoff: HandoffController
    agent: ConversationalAgent
    provider: MessagingProvider
    pipeline: WebhookIngestPipeline


async def _report_flush_error(key: Hashable, exc: BaseException) -> None:
    tenant_id, contact_address = key if isinstance(key, tuple) else (None, str(key))
    await alert_error(
        "Coalesced reply failed",
        {"tenant_id": tenant_id, "contact_address": contact_address, "error": str(exc)},
    )


def build_services(
    settings: Settings,
    *,
    agent: ConversationalAgent | None = None,
    provider: MessagingProvider | None = None,
) -> Services:
    registry = ConnectionRegistry()
    router = TenantConnectionRouter(
        registry,
        settings.database_url_for,
        engine_factory=_engine_factory(settings),
    )
    repository = ChatRepository(
        router,
        max_attempts=settings.append_max_attempts,
        retry_backoff_seconds=settings.append_retry_backoff_seconds,
    )
    coalescer = MessageCoalescer(settings.coalesce_quiet_seconds, on_error=_report_flush_error)
    contacts = ContactDirectory(router, settings)
    handoff = HandoffController(repository, settings.handoff_phrases, on_handoff=HandoffNotifier(contacts))

    if agent is None:
        llm = OpenAIProvider(settings.openai_api_key, settings.openai_model) if settings.openai_api_key else None
        if llm is None:
            logger.warning("OPENAI_API_KEY not set; automated replies will use the fallback text")
        agent = ConversationalAgent(
            llm,
            history_limit=settings.agent_history_limit,
            timeout_seconds=settings.agent_timeout_seconds,
        )
    if provider is None:
        provider = TwilioProvider(
            api_base_url=settings.twilio_api_base_url,
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from_number,
        )

    pipeline = WebhookIngestPipeline(settings, repository, coalescer, handoff, agent, provider, contacts=contacts)
    return Services(
        settings=settings,
        registry=registry,
        router=router,
        repository=repository,
        contacts=contacts,
        coalescer=coalescer,
        handoff=handoff,
        agent=agent,
        provider=provider,
        pipeline=pipeline,
    )


def _engine_factory(settings: Settings):
    def factory(url: str):
        return build_engine(url, echo=settings.sql_echo)

    return factory


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_admin_token(
    request: Request,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
) -> None:
    expected = get_services(request).settings.admin_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ADMIN_TOKEN not configured",
        )
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")
