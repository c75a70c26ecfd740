from chatrelay.services.chat_repository import ChatRepository, ConversationDefaults
from chatrelay.services.coalescer import MessageCoalescer
from chatrelay.services.connection_registry import ConnectionRegistry, TenantConnection
from chatrelay.services.handoff_service import HandoffController, HandoffDecision
from chatrelay.services.ingest_service import WebhookIngestPipeline
from chatrelay.services.state_machine import (
    HandoffState,
    InvalidTransitionError,
    can_transition,
    hand_off,
    reactivate,
    transition,
)
from chatrelay.services.tenant_router import TenantConnectionRouter
