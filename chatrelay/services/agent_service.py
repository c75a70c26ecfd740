import asyncio
import time
from typing import List, Optional

from chatrelay.errors import AgentInvocationError
from chatrelay.logging_config import get_logger
from chatrelay.models import Conversation
from chatrelay.services.llm.base import LLMError, LLMProvider

logger = get_logger("agent_service")

DEFAULT_SYSTEM_PROMPT = (
    "Eres un asistente de atención al cliente. Responde de forma breve y amable. "
    "Si el cliente necesita a una persona, responde que le vas a transferir con un asesor."
)
LLM_MAX_TOKENS = 600


def build_history(conversation: Conversation, limit: int) -> List[dict]:
    """Recent messages as chat turns, oldest first.

    Trailing inbound messages are left out: the coalesced text that triggered
    this reply already contains them.
    """
    documents = list(conversation.messages or [])
    while documents and documents[-1].get("direction") == "inbound":
        documents.pop()
    if limit > 0:
        documents = documents[-limit:]

    history = []
    for doc in documents:
        body = doc.get("body")
        if not body:
            continue
        role = "user" if doc.get("direction") == "inbound" else "assistant"
        history.append({"role": role, "content": body})
    return history


class ConversationalAgent:
    """Produces the automated reply for a coalesced inbound text."""

    def __init__(
        self,
        provider: Optional[LLMProvider],
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        history_limit: int = 20,
        timeout_seconds: float = 45.0,
        model: Optional[str] = None,
    ):
        self._provider = provider
        self.system_prompt = system_prompt
        self.history_limit = history_limit
        self.timeout_seconds = timeout_seconds
        self.model = model

    async def reply(
        self,
        tenant_id: str,
        conversation: Conversation,
        text: str,
        *,
        system_prompt: Optional[str] = None,
    ) -> str:
        if self._provider is None:
            raise AgentInvocationError("No LLM provider configured", tenant_id=tenant_id)

        messages = [{"role": "system", "content": system_prompt or self.system_prompt}]
        messages.extend(build_history(conversation, self.history_limit))
        messages.append({"role": "user", "content": text})

        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._provider.generate(
                    messages,
                    model=self.model,
                    max_tokens=LLM_MAX_TOKENS,
                    timeout_seconds=self.timeout_seconds,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise AgentInvocationError(
                f"Agent timed out after {self.timeout_seconds}s", tenant_id=tenant_id
            ) from exc
        except LLMError as exc:
            raise AgentInvocationError(f"Agent failed: {exc}", tenant_id=tenant_id) from exc

        content = (response.content or "").strip()
        if not content:
            raise AgentInvocationError("Agent returned an empty reply", tenant_id=tenant_id)

        logger.info(
            "Agent reply generated",
            extra={
                "context": {
                    "tenant_id": tenant_id,
                    "contact_address": conversation.contact_address,
                    "model": response.model,
                    "history_messages": len(messages) - 2,
                    "elapsed_ms": round((time.monotonic() - started) * 1000, 2),
                }
            },
        )
        return content
