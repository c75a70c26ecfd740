from typing import List, Optional

import pytest

from chatrelay.config import Settings, TenantConfig
from chatrelay.dependencies import build_services
from chatrelay.errors import ProviderSendError
from chatrelay.services.agent_service import ConversationalAgent
from chatrelay.services.llm.base import LLMProvider, LLMResponse
from chatrelay.services.messaging.base import MessagingProvider, SendResult


class ScriptedLLM(LLMProvider):
    """Returns queued replies in order; an Exception in the queue is raised instead."""

    def __init__(self, replies: Optional[list] = None, default: str = "Hola, ¿en qué te ayudo?"):
        self.replies = list(replies or [])
        self.default = default
        self.calls: List[list] = []

    async def generate(self, messages, model=None, temperature=0.7, max_tokens=1000, timeout_seconds=None):
        self.calls.append(messages)
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(content=reply, model="scripted")


class RecordingProvider(MessagingProvider):
    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    async def send(self, tenant_id, to_address, body, *, tenant_config=None):
        if self.fail:
            raise ProviderSendError("gateway down", tenant_id=tenant_id)
        self.sent.append((tenant_id, to_address, body))
        return SendResult(external_id=f"SMout{len(self.sent)}", status="queued")


@pytest.fixture
def store_template(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path}/{{tenant}}.db"


@pytest.fixture
def tenants():
    return {
        "acme": TenantConfig(
            display_name="Acme",
            gateway_numbers=["whatsapp:+15550001"],
            webhook_secret="acme-secret",
        ),
        "globex": TenantConfig(
            display_name="Globex",
            gateway_numbers=["whatsapp:+15550002"],
        ),
    }


@pytest.fixture
def test_settings(store_template, tenants):
    return Settings(
        database_url_template=store_template,
        tenants=tenants,
        coalesce_quiet_seconds=0.05,
        append_retry_backoff_seconds=0.0,
        admin_token="admin-token",
    )


@pytest.fixture
def scripted_llm():
    return ScriptedLLM()


@pytest.fixture
def recording_provider():
    return RecordingProvider()


@pytest.fixture
def services(test_settings, scripted_llm, recording_provider):
    agent = ConversationalAgent(scripted_llm, timeout_seconds=2.0)
    return build_services(test_settings, agent=agent, provider=recording_provider)
