from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from chatrelay.config import TenantConfig


@dataclass
class SendResult:
    external_id: Optional[str]
    status: Optional[str] = None


class MessagingProvider(ABC):
    """Outbound channel to the end user."""

    @abstractmethod
    async def send(
        self,
        tenant_id: str,
        to_address: str,
        body: str,
        *,
        tenant_config: Optional[TenantConfig] = None,
    ) -> SendResult:
        """Deliver one message. Raises ProviderSendError on failure."""
        pass
