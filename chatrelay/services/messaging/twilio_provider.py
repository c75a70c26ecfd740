from typing import Optional

import httpx

from chatrelay.config import TenantConfig
from chatrelay.errors import ProviderSendError
from chatrelay.logging_config import get_logger
from chatrelay.services.messaging.base import MessagingProvider, SendResult

logger = get_logger("messaging.twilio")

WHATSAPP_PREFIX = "whatsapp:"


def _as_whatsapp(address: str) -> str:
    if address.startswith(WHATSAPP_PREFIX):
        return address
    return f"{WHATSAPP_PREFIX}{address}"


class TwilioProvider(MessagingProvider):
    """Sends WhatsApp messages through the Twilio Messages API.

    Credentials come from the tenant's config when set, otherwise from the
    process-wide defaults passed here.
    """

    def __init__(
        self,
        *,
        api_base_url: str = "https://api.twilio.com/2010-04-01",
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base_url = api_base_url.rstrip("/")
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _credentials(self, tenant_config: Optional[TenantConfig]) -> tuple[Optional[str], Optional[str], Optional[str]]:
        sid = (tenant_config and tenant_config.twilio_account_sid) or self.account_sid
        token = (tenant_config and tenant_config.twilio_auth_token) or self.auth_token
        sender = (tenant_config and tenant_config.twilio_from_number) or self.from_number
        if not sender and tenant_config and tenant_config.gateway_numbers:
            sender = tenant_config.gateway_numbers[0]
        return sid, token, sender

    async def send(
        self,
        tenant_id: str,
        to_address: str,
        body: str,
        *,
        tenant_config: Optional[TenantConfig] = None,
    ) -> SendResult:
        sid, token, sender = self._credentials(tenant_config)
        if not sid or not token or not sender:
            raise ProviderSendError("Messaging credentials not configured", tenant_id=tenant_id)

        url = f"{self.api_base_url}/Accounts/{sid}/Messages.json"
        data = {"From": _as_whatsapp(sender), "To": _as_whatsapp(to_address), "Body": body}

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(url, data=data, auth=(sid, token))
        except httpx.HTTPError as e:
            logger.error(
                "Provider request failed",
                extra={"context": {"tenant_id": tenant_id, "to": to_address, "error": str(e)}},
            )
            raise ProviderSendError(f"Provider request failed: {e}", tenant_id=tenant_id) from e

        if response.status_code not in (200, 201):
            logger.error(
                "Provider rejected message",
                extra={
                    "context": {
                        "tenant_id": tenant_id,
                        "to": to_address,
                        "status_code": response.status_code,
                        "response": response.text[:500],
                    }
                },
            )
            raise ProviderSendError(f"Provider returned {response.status_code}", tenant_id=tenant_id)

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        logger.info(
            "Message sent",
            extra={"context": {"tenant_id": tenant_id, "to": to_address, "sid": payload.get("sid")}},
        )
        return SendResult(external_id=payload.get("sid"), status=payload.get("status"))
