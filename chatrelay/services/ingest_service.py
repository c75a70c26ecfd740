"""Inbound webhook processing: tenant routing, persistence, coalescing and reply."""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from chatrelay.config import DEFAULT_FALLBACK_REPLY, Settings, TenantConfig
from chatrelay.errors import (
    AgentInvocationError,
    AuthenticityError,
    PersistenceError,
    ProviderSendError,
    WebhookValidationError,
)
from chatrelay.logging_config import get_logger
from chatrelay.models import Conversation
from chatrelay.schemas.message import ChatMessage, Direction, RespondedBy
from chatrelay.schemas.webhook import InboundPayload, RawWebhookEvent
from chatrelay.services.agent_service import ConversationalAgent
from chatrelay.services.alert_service import alert_error, alert_warning
from chatrelay.services.chat_repository import ChatRepository, ConversationDefaults
from chatrelay.services.coalescer import MessageCoalescer
from chatrelay.services.contact_service import ContactDirectory
from chatrelay.services.handoff_service import HandoffController, HandoffDecision
from chatrelay.services.inbound_message import (
    InboundMessage,
    LocationMessage,
    classify_payload,
    contact_address_from,
)
from chatrelay.services.messaging.base import MessagingProvider
from chatrelay.services.signature import verify_signature

logger = get_logger("ingest")

Reporter = Callable[[str, Optional[dict]], Awaitable[Any]]


@dataclass
class IngestOutcome:
    status: str  # buffered | stored | duplicate
    tenant_id: str
    contact_address: str
    conversation_id: Optional[str] = None


@dataclass
class FlushOutcome:
    status: str  # replied | fallback | dropped | agent_failed | send_failed | not_recorded
    tenant_id: str
    contact_address: str
    reply: Optional[str] = None
    external_id: Optional[str] = None
    handoff: Optional[HandoffDecision] = None


class WebhookIngestPipeline:
    def __init__(
        self,
        settings: Settings,
        repository: ChatRepository,
        coalescer: MessageCoalescer,
        handoff: HandoffController,
        agent: ConversationalAgent,
        provider: MessagingProvider,
        *,
        reporter: Reporter = alert_error,
        warner: Reporter = alert_warning,
        contacts: Optional[ContactDirectory] = None,
    ):
        self.settings = settings
        self.repository = repository
        self.coalescer = coalescer
        self.handoff = handoff
        self.agent = agent
        self.provider = provider
        self.contacts = contacts
        self._report = reporter
        self._warn = warner
        self._warned_missing_secret: set[str] = set()

    async def ingest(self, raw: RawWebhookEvent) -> IngestOutcome:
        """Persist one inbound event and schedule the automated reply.

        Raises WebhookValidationError for unusable events and AuthenticityError
        for an enforced signature mismatch. Returns once the inbound message is
        stored; the reply runs later from the coalescer.
        """
        try:
            payload = InboundPayload.model_validate(raw.params)
        except ValidationError as exc:
            raise WebhookValidationError(f"Malformed payload: {exc.error_count()} invalid field(s)") from exc

        tenant_id = self._resolve_tenant(raw, payload)
        tenant_config = self.settings.tenant(tenant_id)
        await self._check_signature(tenant_id, tenant_config, raw)

        message = classify_payload(payload)
        contact_address = contact_address_from(payload.sender)

        defaults = ConversationDefaults(
            display_name=payload.profile_name,
            automation_enabled=self.handoff.initial_automation(tenant_config),
        )
        conversation = await self.repository.find_or_create(tenant_id, contact_address, defaults)

        if payload.message_id and conversation.has_external_id(payload.message_id):
            logger.info(
                "Duplicate delivery ignored",
                extra={
                    "context": {
                        "tenant_id": tenant_id,
                        "contact_address": contact_address,
                        "message_id": payload.message_id,
                    }
                },
            )
            return IngestOutcome("duplicate", tenant_id, contact_address, str(conversation.id))

        if conversation.linked_record_ref is None and self.contacts is not None:
            conversation = await self._link_contact(conversation, payload.profile_name)

        conversation = await self.repository.append_message(
            conversation, self._inbound_message(message, payload)
        )
        conversation = await self.handoff.retry_pending(conversation)

        if not self.handoff.allows_automation(conversation):
            logger.info(
                "Automation disabled, message stored for operator",
                extra={"context": {"tenant_id": tenant_id, "contact_address": contact_address}},
            )
            return IngestOutcome("stored", tenant_id, contact_address, str(conversation.id))

        self.coalescer.push(
            (tenant_id, contact_address),
            message.text,
            lambda text: self.respond(tenant_id, contact_address, text),
        )
        return IngestOutcome("buffered", tenant_id, contact_address, str(conversation.id))

    async def _link_contact(self, conversation: Conversation, display_name: Optional[str]) -> Conversation:
        """Attach the contact record. A failure leaves the conversation unlinked until the next event."""
        try:
            ref = await self.contacts.link(conversation.tenant_id, conversation.contact_address, display_name)
            return await self.repository.link_record(conversation, ref)
        except PersistenceError as exc:
            logger.warning(
                "Contact record not linked",
                extra={
                    "context": {
                        "tenant_id": conversation.tenant_id,
                        "contact_address": conversation.contact_address,
                        "error": exc.message,
                    }
                },
            )
            return conversation

    def _resolve_tenant(self, raw: RawWebhookEvent, payload: InboundPayload) -> str:
        if raw.tenant_hint:
            config = self.settings.tenant(raw.tenant_hint)
            if config is None:
                raise WebhookValidationError(f"Unknown tenant '{raw.tenant_hint}'")
            if config.gateway_numbers and payload.recipient:
                if self.settings.tenant_for_number(payload.recipient) != raw.tenant_hint:
                    raise WebhookValidationError(
                        f"Recipient {payload.recipient} does not belong to tenant", tenant_id=raw.tenant_hint
                    )
            return raw.tenant_hint

        tenant_id = self.settings.tenant_for_number(payload.recipient)
        if tenant_id is None:
            raise WebhookValidationError(f"No tenant for recipient {payload.recipient!r}")
        return tenant_id

    async def _check_signature(
        self, tenant_id: str, tenant_config: Optional[TenantConfig], raw: RawWebhookEvent
    ) -> None:
        secret = tenant_config.webhook_secret if tenant_config else None
        if not secret:
            if tenant_id not in self._warned_missing_secret:
                self._warned_missing_secret.add(tenant_id)
                await self._warn(
                    "Webhook secret is not configured; signature check skipped",
                    {"tenant_id": tenant_id},
                )
            return

        if verify_signature(secret, raw.url, raw.params, raw.signature):
            return

        policy = tenant_config.signature_policy
        context = {"tenant_id": tenant_id, "url": raw.url, "has_signature": bool(raw.signature), "policy": policy}
        if policy == "enforce":
            logger.warning("Webhook signature rejected", extra={"context": context})
            raise AuthenticityError("Invalid webhook signature", tenant_id=tenant_id)
        logger.warning("Webhook signature mismatch accepted by policy", extra={"context": context})

    @staticmethod
    def _inbound_message(message: InboundMessage, payload: InboundPayload) -> ChatMessage:
        metadata: dict[str, Any] = {}
        if payload.profile_name:
            metadata["profile_name"] = payload.profile_name
        if isinstance(message, LocationMessage):
            metadata["latitude"] = message.latitude
            metadata["longitude"] = message.longitude
        return ChatMessage(
            direction=Direction.INBOUND,
            body=message.text,
            responded_by=RespondedBy.HUMAN,
            external_id=payload.message_id,
            media_refs=message.media_refs,
            kind=message.kind,
            metadata=metadata,
        )

    async def respond(self, tenant_id: str, contact_address: str, text: str) -> FlushOutcome:
        """Answer one coalesced text. Called by the coalescer on flush."""
        conversation = await self.repository.get(tenant_id, contact_address)
        if conversation is None or not self.handoff.allows_automation(conversation):
            return self._log_outcome(FlushOutcome("dropped", tenant_id, contact_address))

        tenant_config = self.settings.tenant(tenant_id)
        prompt = tenant_config.agent_prompt if tenant_config else None
        try:
            reply = await self.agent.reply(tenant_id, conversation, text, system_prompt=prompt)
        except AgentInvocationError as exc:
            await self._report(
                "Agent invocation failed",
                {"tenant_id": tenant_id, "contact_address": contact_address, "error": exc.message},
            )
            return await self._send_fallback(tenant_id, contact_address, tenant_config)

        # The agent call can take seconds; an operator may have taken over meanwhile.
        conversation = await self.repository.get(tenant_id, contact_address)
        if conversation is None or not self.handoff.allows_automation(conversation):
            return self._log_outcome(FlushOutcome("dropped", tenant_id, contact_address, reply=reply))

        outcome = await self._deliver(conversation, reply, tenant_config)
        if outcome.status == "replied":
            outcome.handoff = await self.handoff.evaluate_reply(conversation, reply)
        return self._log_outcome(outcome)

    async def _deliver(
        self,
        conversation: Conversation,
        body: str,
        tenant_config: Optional[TenantConfig],
        *,
        metadata: Optional[dict] = None,
    ) -> FlushOutcome:
        tenant_id = conversation.tenant_id
        contact_address = conversation.contact_address
        try:
            sent = await self.provider.send(tenant_id, contact_address, body, tenant_config=tenant_config)
        except ProviderSendError as exc:
            await self._report(
                "Outbound send failed",
                {"tenant_id": tenant_id, "contact_address": contact_address, "error": exc.message},
            )
            return FlushOutcome("send_failed", tenant_id, contact_address, reply=body)

        outbound = ChatMessage(
            direction=Direction.OUTBOUND,
            body=body,
            responded_by=RespondedBy.AUTOMATION,
            external_id=sent.external_id,
            metadata=metadata or {},
        )
        try:
            updated = await self.repository.append_message(conversation, outbound, only_if_automated=True)
        except PersistenceError as exc:
            await self._report(
                "Delivered reply could not be recorded",
                {"tenant_id": tenant_id, "contact_address": contact_address, "error": exc.message},
            )
            return FlushOutcome("not_recorded", tenant_id, contact_address, reply=body, external_id=sent.external_id)

        if not updated.automation_enabled:
            return FlushOutcome("not_recorded", tenant_id, contact_address, reply=body, external_id=sent.external_id)
        return FlushOutcome("replied", tenant_id, contact_address, reply=body, external_id=sent.external_id)

    async def _send_fallback(
        self, tenant_id: str, contact_address: str, tenant_config: Optional[TenantConfig]
    ) -> FlushOutcome:
        fallback = tenant_config.fallback_reply if tenant_config else DEFAULT_FALLBACK_REPLY
        conversation = await self.repository.get(tenant_id, contact_address)
        if not fallback or conversation is None or not self.handoff.allows_automation(conversation):
            return self._log_outcome(FlushOutcome("agent_failed", tenant_id, contact_address))

        outcome = await self._deliver(conversation, fallback, tenant_config, metadata={"fallback": True})
        if outcome.status == "replied":
            outcome.status = "fallback"
        return self._log_outcome(outcome)

    @staticmethod
    def _log_outcome(outcome: FlushOutcome) -> FlushOutcome:
        logger.info(
            "Coalesced message handled",
            extra={
                "context": {
                    "tenant_id": outcome.tenant_id,
                    "contact_address": outcome.contact_address,
                    "status": outcome.status,
                    "external_id": outcome.external_id,
                    "handoff": outcome.handoff.triggered if outcome.handoff else False,
                }
            },
        )
        return outcome
