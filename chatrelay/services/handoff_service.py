from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

from chatrelay.config import TenantConfig
from chatrelay.errors import ChatRelayError
from chatrelay.logging_config import get_logger
from chatrelay.models import Conversation
from chatrelay.services.alert_service import alert_error
from chatrelay.services.chat_repository import ChatRepository
from chatrelay.services.result import Result
from chatrelay.services.state_machine import HandoffState, InvalidTransitionError, state_of, transition

logger = get_logger("handoff")

Reporter = Callable[[str, Optional[dict]], Awaitable[Any]]


@dataclass
class HandoffDecision:
    state: HandoffState
    triggered: bool = False
    matched_phrase: Optional[str] = None
    persisted: bool = True


HandoffHook = Callable[[Conversation, HandoffDecision], Awaitable[Any]]


class HandoffController:
    """Chooses agent vs. human routing for each conversation.

    AUTOMATED -> HUMAN on operator action or when the agent's own reply
    contains a handoff phrase. HUMAN -> AUTOMATED only on operator action.

    The phrase check is a plain case-insensitive substring match on generated
    text, so rewording the agent prompt can silently disable it.
    """

    def __init__(
        self,
        repository: ChatRepository,
        phrases: Iterable[str],
        *,
        reporter: Reporter = alert_error,
        on_handoff: Optional[HandoffHook] = None,
    ):
        self._repository = repository
        self._phrases = tuple(phrase.strip().casefold() for phrase in phrases if phrase and phrase.strip())
        self._reporter = reporter
        self._on_handoff = on_handoff
        # Handoffs whose state write failed, retried on the next event for that conversation.
        self._pending_writes: dict[tuple[str, str], str] = {}

    @property
    def phrases(self) -> tuple[str, ...]:
        return self._phrases

    @staticmethod
    def initial_automation(tenant_config: Optional[TenantConfig]) -> bool:
        if tenant_config is None:
            return True
        return tenant_config.automation_default

    @staticmethod
    def _key(conversation: Conversation) -> tuple[str, str]:
        return conversation.tenant_id, conversation.contact_address

    def state(self, conversation: Conversation) -> HandoffState:
        if self._key(conversation) in self._pending_writes:
            return HandoffState.HUMAN
        return state_of(conversation.automation_enabled)

    def allows_automation(self, conversation: Conversation) -> bool:
        return self.state(conversation) == HandoffState.AUTOMATED

    def has_pending_write(self, conversation: Conversation) -> bool:
        return self._key(conversation) in self._pending_writes

    def match_handoff_phrase(self, text: Optional[str]) -> Optional[str]:
        if not text:
            return None
        normalized = text.casefold()
        for phrase in self._phrases:
            if phrase in normalized:
                return phrase
        return None

    async def evaluate_reply(self, conversation: Conversation, reply_text: str) -> HandoffDecision:
        """Check an automated reply for a handoff phrase and persist the handoff if found.

        A failed state write or store read does not raise: the reply has
        already gone out, so the write is queued and reported instead. The
        on_handoff hook runs for every triggered handoff, queued or not.
        """
        phrase = self.match_handoff_phrase(reply_text)
        if phrase is None:
            return HandoffDecision(state=self.state(conversation))

        result = await self._transition(conversation, HandoffState.HUMAN, actor="automation", reason="agent_phrase")
        if result.ok:
            decision = HandoffDecision(state=HandoffState.HUMAN, triggered=True, matched_phrase=phrase)
            await self._after_handoff(result.value, decision)
            return decision
        if result.error_code == "invalid_state":
            # Already with a human.
            return HandoffDecision(state=HandoffState.HUMAN, triggered=False, matched_phrase=phrase)

        self._pending_writes[self._key(conversation)] = "agent_phrase"
        await self._reporter(
            "Handoff state write failed, queued for retry",
            {
                "tenant_id": conversation.tenant_id,
                "contact_address": conversation.contact_address,
                "error": result.error,
            },
        )
        decision = HandoffDecision(state=HandoffState.HUMAN, triggered=True, matched_phrase=phrase, persisted=False)
        await self._after_handoff(conversation, decision)
        return decision

    async def _after_handoff(self, conversation: Conversation, decision: HandoffDecision) -> None:
        if self._on_handoff is None:
            return
        try:
            await self._on_handoff(conversation, decision)
        except ChatRelayError as exc:
            logger.warning(
                "Handoff hook failed",
                extra={
                    "context": {
                        "tenant_id": conversation.tenant_id,
                        "contact_address": conversation.contact_address,
                        "error": exc.message,
                    }
                },
            )

    async def retry_pending(self, conversation: Conversation) -> Conversation:
        """Re-attempt a queued handoff write. Returns the freshest known conversation."""
        key = self._key(conversation)
        reason = self._pending_writes.get(key)
        if reason is None:
            return conversation

        try:
            updated = await self._repository.set_automation(conversation, False)
        except ChatRelayError as exc:
            logger.warning(
                "Queued handoff write still failing",
                extra={"context": {"tenant_id": key[0], "contact_address": key[1], "error": exc.message}},
            )
            return conversation

        self._pending_writes.pop(key, None)
        logger.info(
            "Queued handoff write applied",
            extra={"context": {"tenant_id": key[0], "contact_address": key[1], "reason": reason}},
        )
        return updated

    async def disable(self, conversation: Conversation, *, actor: str = "operator") -> Result[Conversation]:
        """Operator takes over: AUTOMATED -> HUMAN."""
        return await self._transition(conversation, HandoffState.HUMAN, actor=actor, reason="manual")

    async def enable(self, conversation: Conversation, *, actor: str = "operator") -> Result[Conversation]:
        """Operator hands back to the agent: HUMAN -> AUTOMATED."""
        # An explicit re-enable supersedes any handoff still waiting to be written.
        discarded = self._pending_writes.pop(self._key(conversation), None) is not None
        result = await self._transition(conversation, HandoffState.AUTOMATED, actor=actor, reason="manual")
        if discarded and result.error_code == "invalid_state":
            # The handoff never reached the store, so it is already automated there.
            logger.info(
                "Queued handoff discarded by operator",
                extra={
                    "context": {
                        "tenant_id": conversation.tenant_id,
                        "contact_address": conversation.contact_address,
                        "actor": actor,
                    }
                },
            )
            try:
                fresh = await self._repository.get(conversation.tenant_id, conversation.contact_address)
            except ChatRelayError as exc:
                return Result.from_error(exc)
            return Result.success(fresh or conversation)
        return result

    async def _transition(
        self,
        conversation: Conversation,
        target: HandoffState,
        *,
        actor: str,
        reason: str,
    ) -> Result[Conversation]:
        try:
            fresh = await self._repository.get(conversation.tenant_id, conversation.contact_address)
        except ChatRelayError as exc:
            return Result.from_error(exc)
        current_conversation = fresh or conversation
        current = state_of(current_conversation.automation_enabled)

        try:
            new_state = transition(current, target)
        except InvalidTransitionError as e:
            return Result.failure(str(e), "invalid_state")

        try:
            updated = await self._repository.set_automation(
                current_conversation, new_state == HandoffState.AUTOMATED
            )
        except ChatRelayError as exc:
            logger.error(
                "Handoff transition not persisted",
                extra={
                    "context": {
                        "tenant_id": conversation.tenant_id,
                        "contact_address": conversation.contact_address,
                        "target": target.value,
                        "error": exc.message,
                    }
                },
            )
            return Result.from_error(exc)

        logger.info(
            "Handoff transition",
            extra={
                "context": {
                    "tenant_id": conversation.tenant_id,
                    "contact_address": conversation.contact_address,
                    "from": current.value,
                    "to": new_state.value,
                    "actor": actor,
                    "reason": reason,
                }
            },
        )
        return Result.success(updated)
