"""Error taxonomy shared by the ingest pipeline and its collaborators."""

from typing import Optional


class ChatRelayError(Exception):
    code = "chatrelay_error"

    def __init__(self, message: str, *, tenant_id: Optional[str] = None):
        self.message = message
        self.tenant_id = tenant_id
        super().__init__(message)


class TenantConnectionError(ChatRelayError):
    """Tenant store unreachable or misconfigured. Never cached; the next resolve retries."""

    code = "connection_error"


class WebhookValidationError(ChatRelayError):
    """Malformed payload or unknown tenant. Acknowledged at transport level."""

    code = "validation_error"


class AuthenticityError(ChatRelayError):
    """Provider signature did not match the tenant's shared secret."""

    code = "authenticity_error"


class AgentInvocationError(ChatRelayError):
    """Automated agent failed or timed out."""

    code = "agent_error"


class PersistenceError(ChatRelayError):
    """A tenant store read failed, or a write failed after retries."""

    code = "persistence_error"


class ProviderSendError(ChatRelayError):
    """Outbound provider refused or failed to deliver a message."""

    code = "provider_error"
