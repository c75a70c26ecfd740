import asyncio
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import httpx

from chatrelay.services import alert_service
from chatrelay.services.alert_service import (
    alert_critical,
    alert_error,
    alert_warning,
    send_alert,
)


def _mock_client(mock_client_class, status_code=200):
    mock_client = MagicMock()
    mock_client_class.return_value.__aenter__.return_value = mock_client
    mock_response = Mock()
    mock_response.status_code = status_code
    mock_client.post = AsyncMock(return_value=mock_response)
    return mock_client


class TestSendAlert:
    @patch.object(alert_service.settings, "alert_bot_token", None)
    @patch.object(alert_service.settings, "alert_chat_id", None)
    def test_returns_false_when_not_configured(self):
        result = asyncio.run(send_alert("ERROR", "Test message"))
        assert result is False

    @patch.object(alert_service.settings, "alert_bot_token", None)
    @patch.object(alert_service.settings, "alert_chat_id", None)
    def test_logs_even_when_not_configured(self, caplog):
        with caplog.at_level("ERROR", logger="chatrelay.alert_service"):
            asyncio.run(send_alert("ERROR", "Store unreachable", {"tenant_id": "acme"}))
        record = next(r for r in caplog.records if r.getMessage() == "Store unreachable")
        assert record.context == {"alert_level": "ERROR", "tenant_id": "acme"}

    @patch("chatrelay.services.alert_service.httpx.AsyncClient")
    def test_sends_alert_to_telegram(self, mock_client_class):
        mock_client = _mock_client(mock_client_class)

        result = asyncio.run(send_alert("ERROR", "Test error message", bot_token="test-token", chat_id="test-chat"))

        assert result is True
        mock_client.post.assert_awaited_once()

        call_args = mock_client.post.call_args
        assert "api.telegram.org" in call_args[0][0]
        json_data = call_args[1]["json"]
        assert json_data["chat_id"] == "test-chat"
        assert "ERROR" in json_data["text"]

    @patch.object(alert_service.settings, "alert_bot_token", "test-token")
    @patch.object(alert_service.settings, "alert_chat_id", "test-chat")
    @patch("chatrelay.services.alert_service.httpx.AsyncClient")
    def test_uses_configured_credentials(self, mock_client_class):
        mock_client = _mock_client(mock_client_class)

        asyncio.run(send_alert("WARNING", "Configured"))

        assert "bottest-token" in mock_client.post.call_args[0][0]

    @patch("chatrelay.services.alert_service.httpx.AsyncClient")
    def test_includes_context_in_message(self, mock_client_class):
        mock_client = _mock_client(mock_client_class)

        context = {"tenant_id": "acme", "error": "test error"}
        asyncio.run(send_alert("ERROR", "Test message", context, bot_token="t", chat_id="c"))

        json_data = mock_client.post.call_args[1]["json"]
        assert "tenant_id" in json_data["text"]
        assert "acme" in json_data["text"]

    @patch("chatrelay.services.alert_service.httpx.AsyncClient")
    def test_returns_false_on_telegram_error(self, mock_client_class):
        _mock_client(mock_client_class, status_code=400)

        result = asyncio.run(send_alert("ERROR", "Test message", bot_token="t", chat_id="c"))

        assert result is False

    @patch("chatrelay.services.alert_service.httpx.AsyncClient")
    def test_returns_false_on_network_error(self, mock_client_class):
        mock_client = _mock_client(mock_client_class)
        mock_client.post.side_effect = httpx.ConnectError("Network error")

        result = asyncio.run(send_alert("ERROR", "Test message", bot_token="t", chat_id="c"))

        assert result is False


class TestAlertShortcuts:
    @patch("chatrelay.services.alert_service.send_alert", new_callable=AsyncMock)
    def test_alert_error_calls_send_alert_with_error_level(self, mock_send):
        mock_send.return_value = True

        result = asyncio.run(alert_error("Test error", {"key": "value"}))

        mock_send.assert_awaited_once_with("ERROR", "Test error", {"key": "value"})
        assert result is True

    @patch("chatrelay.services.alert_service.send_alert", new_callable=AsyncMock)
    def test_alert_critical_calls_send_alert_with_critical_level(self, mock_send):
        mock_send.return_value = True

        result = asyncio.run(alert_critical("Critical issue"))

        mock_send.assert_awaited_once_with("CRITICAL", "Critical issue", None)
        assert result is True

    @patch("chatrelay.services.alert_service.send_alert", new_callable=AsyncMock)
    def test_alert_warning_calls_send_alert_with_warning_level(self, mock_send):
        mock_send.return_value = True

        result = asyncio.run(alert_warning("Warning message"))

        mock_send.assert_awaited_once_with("WARNING", "Warning message", None)
        assert result is True


class TestAlertEmojis:
    @patch("chatrelay.services.alert_service.httpx.AsyncClient")
    def test_error_has_correct_emoji(self, mock_client_class):
        mock_client = _mock_client(mock_client_class)

        asyncio.run(send_alert("ERROR", "Test", bot_token="t", chat_id="c"))

        json_data = mock_client.post.call_args[1]["json"]
        assert "❌" in json_data["text"]

    @patch("chatrelay.services.alert_service.httpx.AsyncClient")
    def test_critical_has_correct_emoji(self, mock_client_class):
        mock_client = _mock_client(mock_client_class)

        asyncio.run(send_alert("CRITICAL", "Test", bot_token="t", chat_id="c"))

        json_data = mock_client.post.call_args[1]["json"]
        assert "🔥" in json_data["text"]
