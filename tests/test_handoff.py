import asyncio
from unittest.mock import AsyncMock, patch

from sqlalchemy.exc import OperationalError

from chatrelay.config import TenantConfig
from chatrelay.errors import PersistenceError, TenantConnectionError
from chatrelay.services.chat_repository import ChatRepository, DocumentRepository
from chatrelay.services.handoff_service import HandoffController
from chatrelay.services.state_machine import HandoffState


class TestPhraseMatching:
    def setup_method(self):
        self.controller = HandoffController(AsyncMock(), ["transferir con un asesor", "te voy a transferir"])

    def test_matches_case_insensitive_substring(self):
        assert self.controller.match_handoff_phrase("Claro, TE VOY A TRANSFERIR ahora.") == "te voy a transferir"

    def test_no_match(self):
        assert self.controller.match_handoff_phrase("Nuestro horario es de 9 a 18.") is None

    def test_empty_text(self):
        assert self.controller.match_handoff_phrase("") is None
        assert self.controller.match_handoff_phrase(None) is None

    def test_blank_phrases_ignored(self):
        controller = HandoffController(AsyncMock(), ["", "  ", "Asesor"])
        assert controller.phrases == ("asesor",)


class TestInitialAutomation:
    def test_defaults_to_automated(self):
        assert HandoffController.initial_automation(None) is True

    def test_tenant_can_start_with_humans(self):
        assert HandoffController.initial_automation(TenantConfig(automation_default=False)) is False


class TestTransitions:
    def test_disable_then_enable(self, services):
        async def scenario():
            conversation = await services.repository.find_or_create("acme", "+521000")
            disabled = await services.handoff.disable(conversation, actor="ana")
            disabled_again = await services.handoff.disable(conversation, actor="ana")
            enabled = await services.handoff.enable(conversation, actor="ana")
            await services.router.close_all()
            return disabled, disabled_again, enabled

        disabled, disabled_again, enabled = asyncio.run(scenario())

        assert disabled.ok is True
        assert disabled.value.automation_enabled is False
        assert disabled_again.ok is False
        assert disabled_again.error_code == "invalid_state"
        assert enabled.ok is True
        assert enabled.value.automation_enabled is True

    def test_enable_uses_fresh_state(self, services):
        async def scenario():
            conversation = await services.repository.find_or_create("acme", "+521000")
            await services.repository.set_automation(conversation, False)
            # conversation object is stale (still automated)
            result = await services.handoff.enable(conversation)
            await services.router.close_all()
            return result

        result = asyncio.run(scenario())

        assert result.ok is True
        assert result.value.automation_enabled is True


class TestEvaluateReply:
    def test_phrase_in_reply_hands_off(self, services):
        async def scenario():
            conversation = await services.repository.find_or_create("acme", "+521000")
            decision = await services.handoff.evaluate_reply(
                conversation, "Entiendo, te voy a transferir con un asesor."
            )
            fresh = await services.repository.get("acme", "+521000")
            await services.router.close_all()
            return decision, fresh

        decision, fresh = asyncio.run(scenario())

        assert decision.triggered is True
        assert decision.persisted is True
        assert decision.state == HandoffState.HUMAN
        assert fresh.automation_enabled is False

    def test_plain_reply_keeps_automation(self, services):
        async def scenario():
            conversation = await services.repository.find_or_create("acme", "+521000")
            decision = await services.handoff.evaluate_reply(conversation, "Abrimos a las 9.")
            await services.router.close_all()
            return decision

        decision = asyncio.run(scenario())

        assert decision.triggered is False
        assert decision.state == HandoffState.AUTOMATED

    def test_failed_write_is_queued_and_retried(self, services):
        reporter = AsyncMock()
        controller = HandoffController(services.repository, services.settings.handoff_phrases, reporter=reporter)
        real_set_automation = ChatRepository.set_automation
        failures = iter([PersistenceError("store down", tenant_id="acme")])

        async def flaky_set_automation(self, conversation, enabled):
            error = next(failures, None)
            if error is not None:
                raise error
            return await real_set_automation(self, conversation, enabled)

        async def scenario():
            conversation = await services.repository.find_or_create("acme", "+521000")
            with patch.object(ChatRepository, "set_automation", flaky_set_automation):
                decision = await controller.evaluate_reply(conversation, "Te voy a transferir.")
                allows_while_pending = controller.allows_automation(conversation)
                stored_before_retry = (await services.repository.get("acme", "+521000")).automation_enabled
                updated = await controller.retry_pending(conversation)
            await services.router.close_all()
            return decision, allows_while_pending, stored_before_retry, updated, controller.has_pending_write(updated)

        decision, allows_while_pending, stored_before_retry, updated, still_pending = asyncio.run(scenario())

        assert decision.triggered is True
        assert decision.persisted is False
        assert allows_while_pending is False
        assert stored_before_retry is True
        assert updated.automation_enabled is False
        assert still_pending is False
        reporter.assert_awaited_once()

    def test_operator_enable_discards_queued_write(self, services):
        controller = HandoffController(services.repository, services.settings.handoff_phrases, reporter=AsyncMock())

        async def failing_set_automation(self, conversation, enabled):
            raise PersistenceError("store down", tenant_id="acme")

        async def scenario():
            conversation = await services.repository.find_or_create("acme", "+521000")
            with patch.object(ChatRepository, "set_automation", failing_set_automation):
                await controller.evaluate_reply(conversation, "Te voy a transferir.")
            queued = controller.has_pending_write(conversation)
            result = await controller.enable(conversation)
            await services.router.close_all()
            return queued, result, controller.has_pending_write(conversation), controller.allows_automation(conversation)

        queued, result, still_queued, allows = asyncio.run(scenario())

        assert queued is True
        assert result.ok is True
        assert result.value.automation_enabled is True
        assert still_queued is False
        assert allows is True

    def test_store_outage_during_handoff_queues_the_write(self, services):
        reporter = AsyncMock()
        controller = HandoffController(services.repository, services.settings.handoff_phrases, reporter=reporter)

        async def failing_read(self, **criteria):
            raise OperationalError("SELECT conversations", {}, Exception("server closed the connection"))

        async def failing_modify(self, criteria, mutate):
            raise OperationalError("UPDATE conversations", {}, Exception("server closed the connection"))

        async def scenario():
            conversation = await services.repository.find_or_create("acme", "+521000")
            with patch.object(DocumentRepository, "find_one", failing_read), patch.object(
                DocumentRepository, "modify", failing_modify
            ):
                decision = await controller.evaluate_reply(conversation, "Te voy a transferir.")
            queued = controller.has_pending_write(conversation)
            updated = await controller.retry_pending(conversation)
            await services.router.close_all()
            return decision, queued, updated

        decision, queued, updated = asyncio.run(scenario())

        assert decision.triggered is True
        assert decision.persisted is False
        assert queued is True
        assert updated.automation_enabled is False
        reporter.assert_awaited_once()

    def test_unreachable_store_during_handoff_queues_the_write(self, services):
        controller = HandoffController(services.repository, services.settings.handoff_phrases, reporter=AsyncMock())

        async def scenario():
            conversation = await services.repository.find_or_create("acme", "+521000")
            with patch.object(
                ChatRepository, "get", AsyncMock(side_effect=TenantConnectionError("down", tenant_id="acme"))
            ):
                decision = await controller.evaluate_reply(conversation, "Te voy a transferir.")
            allows = controller.allows_automation(conversation)
            await services.router.close_all()
            return decision, allows

        decision, allows = asyncio.run(scenario())

        assert decision.persisted is False
        assert allows is False


class TestHandoffHook:
    def test_hook_runs_on_triggered_handoff(self, services):
        hook = AsyncMock()
        controller = HandoffController(services.repository, services.settings.handoff_phrases, on_handoff=hook)

        async def scenario():
            conversation = await services.repository.find_or_create("acme", "+521000")
            decision = await controller.evaluate_reply(conversation, "Te voy a transferir con un asesor.")
            await services.router.close_all()
            return decision

        decision = asyncio.run(scenario())

        hook.assert_awaited_once()
        conversation, passed = hook.await_args.args
        assert passed is decision
        assert conversation.automation_enabled is False

    def test_hook_skipped_without_phrase(self, services):
        hook = AsyncMock()
        controller = HandoffController(services.repository, services.settings.handoff_phrases, on_handoff=hook)

        async def scenario():
            conversation = await services.repository.find_or_create("acme", "+521000")
            await controller.evaluate_reply(conversation, "Abrimos a las 9.")
            await services.router.close_all()

        asyncio.run(scenario())

        hook.assert_not_awaited()

    def test_hook_runs_for_queued_handoff(self, services):
        hook = AsyncMock()
        controller = HandoffController(
            services.repository, services.settings.handoff_phrases, reporter=AsyncMock(), on_handoff=hook
        )

        async def failing_set_automation(self, conversation, enabled):
            raise PersistenceError("store down", tenant_id="acme")

        async def scenario():
            conversation = await services.repository.find_or_create("acme", "+521000")
            with patch.object(ChatRepository, "set_automation", failing_set_automation):
                await controller.evaluate_reply(conversation, "Te voy a transferir.")
            await services.router.close_all()

        asyncio.run(scenario())

        hook.assert_awaited_once()
        assert hook.await_args.args[1].persisted is False

    def test_hook_failure_does_not_undo_handoff(self, services):
        hook = AsyncMock(side_effect=PersistenceError("contacts down", tenant_id="acme"))
        controller = HandoffController(services.repository, services.settings.handoff_phrases, on_handoff=hook)

        async def scenario():
            conversation = await services.repository.find_or_create("acme", "+521000")
            decision = await controller.evaluate_reply(conversation, "Te voy a transferir.")
            fresh = await services.repository.get("acme", "+521000")
            await services.router.close_all()
            return decision, fresh

        decision, fresh = asyncio.run(scenario())

        assert decision.persisted is True
        assert fresh.automation_enabled is False
