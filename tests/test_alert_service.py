from unittest.mock import MagicMock, Mock, patch

import httpx

from agenda_bot.services.alert_service import alert_critical, alert_warning, format_alert, send_alert


class TestSendAlert:
    @patch("agenda_bot.services.alert_service.ALERT_BOT_TOKEN", None)
    @patch("agenda_bot.services.alert_service.ALERT_CHAT_ID", None)
    def test_returns_false_when_not_configured(self):
        assert send_alert("WARNING", "Gateway misconfigured") is False

    @patch("agenda_bot.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("agenda_bot.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("agenda_bot.services.alert_service.httpx.Client")
    def test_sends_alert_to_telegram(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=200)

        result = send_alert("CRITICAL", "Reply not delivered", {"tenant": "Studio Bella"})

        assert result is True
        url = mock_client.post.call_args[0][0]
        json_data = mock_client.post.call_args[1]["json"]
        assert "api.telegram.org/bottest-token" in url
        assert json_data["chat_id"] == "test-chat"
        assert "CRITICAL" in json_data["text"]
        assert "tenant: Studio Bella" in json_data["text"]

    @patch("agenda_bot.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("agenda_bot.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("agenda_bot.services.alert_service.httpx.Client")
    def test_returns_false_on_telegram_error(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=400)

        assert send_alert("WARNING", "x") is False

    @patch("agenda_bot.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("agenda_bot.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("agenda_bot.services.alert_service.httpx.Client")
    def test_returns_false_on_network_error(self, mock_client_class):
        mock_client_class.return_value.__enter__.side_effect = httpx.ConnectError("Network error")

        assert send_alert("WARNING", "x") is False


class TestFormatAlert:
    def test_skips_empty_context_values(self):
        text = format_alert("WARNING", "msg", {"code": "invalid_gateway_url", "reason": None})
        assert "code: invalid_gateway_url" in text
        assert "reason" not in text


class TestAlertHelpers:
    @patch("agenda_bot.services.alert_service.send_alert")
    def test_alert_warning(self, mock_send):
        alert_warning("Test", {"key": "value"})
        mock_send.assert_called_once_with("WARNING", "Test", {"key": "value"})

    @patch("agenda_bot.services.alert_service.send_alert")
    def test_alert_critical(self, mock_send):
        alert_critical("Test")
        mock_send.assert_called_once_with("CRITICAL", "Test", None)
