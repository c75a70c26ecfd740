"""Operator API: browse conversations, reply as a human, toggle automation."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from chatrelay.dependencies import Services, get_services, require_admin_token
from chatrelay.errors import ChatRelayError, ProviderSendError, WebhookValidationError
from chatrelay.logging_config import tenant_logger
from chatrelay.models import Conversation
from chatrelay.schemas.conversation import (
    AutomationResponse,
    AutomationUpdate,
    ConversationDetail,
    ConversationSummary,
)
from chatrelay.schemas.message import (
    ChatMessage,
    Direction,
    OperatorMessageRequest,
    OperatorMessageResponse,
    RespondedBy,
)
from chatrelay.services.inbound_message import contact_address_from
from chatrelay.services.state_machine import state_of

router = APIRouter(
    prefix="/tenants/{tenant_id}/conversations",
    tags=["conversations"],
    dependencies=[Depends(require_admin_token)],
)


def _ensure_tenant(services: Services, tenant_id: str) -> None:
    if services.settings.tenant(tenant_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Tenant '{tenant_id}' not found")


async def _load(services: Services, tenant_id: str, contact: str) -> Conversation:
    _ensure_tenant(services, tenant_id)
    try:
        contact_address = contact_address_from(contact)
    except WebhookValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    try:
        conversation = await services.repository.get(tenant_id, contact_address)
    except ChatRelayError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


@router.get("", response_model=list[ConversationSummary])
async def list_conversations(
    tenant_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    services: Services = Depends(get_services),
):
    _ensure_tenant(services, tenant_id)
    try:
        rows = await services.repository.list_conversations(tenant_id, limit=limit, offset=offset)
    except ChatRelayError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message)
    return [ConversationSummary.from_model(row) for row in rows]


@router.get("/{contact}", response_model=ConversationDetail)
async def get_conversation(tenant_id: str, contact: str, services: Services = Depends(get_services)):
    conversation = await _load(services, tenant_id, contact)
    return ConversationDetail.from_model(conversation)


@router.post("/{contact}/messages", response_model=OperatorMessageResponse)
async def send_operator_message(
    tenant_id: str,
    contact: str,
    payload: OperatorMessageRequest,
    services: Services = Depends(get_services),
):
    """Send a message typed by a tenant operator. Does not change the handoff state."""
    conversation = await _load(services, tenant_id, contact)
    log = tenant_logger("operator", tenant_id, contact_address=conversation.contact_address)

    try:
        sent = await services.provider.send(
            tenant_id,
            conversation.contact_address,
            payload.body,
            tenant_config=services.settings.tenant(tenant_id),
        )
    except ProviderSendError as exc:
        log.error("Operator message not delivered", context={"error": exc.message})
        return OperatorMessageResponse(success=False, message=exc.message)

    metadata = {"operator_name": payload.operator_name} if payload.operator_name else {}
    message = ChatMessage(
        direction=Direction.OUTBOUND,
        body=payload.body,
        responded_by=RespondedBy.EXTERNAL_OPERATOR,
        external_id=sent.external_id,
        metadata=metadata,
    )
    try:
        await services.repository.append_message(conversation, message)
    except ChatRelayError as exc:
        log.error("Operator message delivered but not recorded", context={"error": exc.message})
        return OperatorMessageResponse(success=False, external_id=sent.external_id, message=exc.message)

    log.info("Operator message sent", context={"external_id": sent.external_id})
    return OperatorMessageResponse(success=True, external_id=sent.external_id, message="Message sent")


@router.put("/{contact}/automation", response_model=AutomationResponse)
async def update_automation(
    tenant_id: str,
    contact: str,
    payload: AutomationUpdate,
    services: Services = Depends(get_services),
):
    conversation = await _load(services, tenant_id, contact)
    old_state = state_of(conversation.automation_enabled)
    actor: Optional[str] = payload.actor or "operator"

    if payload.enabled:
        result = await services.handoff.enable(conversation, actor=actor)
    else:
        result = await services.handoff.disable(conversation, actor=actor)

    if not result.ok:
        return AutomationResponse(
            success=False,
            contact_address=conversation.contact_address,
            old_state=old_state.value,
            new_state=old_state.value,
            message=result.error,
        )

    updated = result.value
    return AutomationResponse(
        success=True,
        contact_address=conversation.contact_address,
        old_state=old_state.value,
        new_state=state_of(updated.automation_enabled).value,
        message="Automation enabled" if payload.enabled else "Automation disabled",
    )
