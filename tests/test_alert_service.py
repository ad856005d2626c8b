from unittest.mock import MagicMock, Mock, patch

import httpx

from relay.services.alert_service import (
    alert_critical,
    alert_error,
    alert_warning,
    send_alert,
)


class TestSendAlert:
    @patch("relay.services.alert_service.ALERT_BOT_TOKEN", None)
    @patch("relay.services.alert_service.ALERT_CHAT_ID", None)
    def test_returns_false_when_not_configured(self):
        assert send_alert("ERROR", "Test message") is False

    @patch("relay.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("relay.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("relay.services.alert_service.httpx.Client")
    def test_sends_alert_to_telegram(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_response = Mock()
        mock_response.status_code = 200
        mock_client.post.return_value = mock_response

        result = send_alert("ERROR", "Pipeline failed")

        assert result is True
        mock_client.post.assert_called_once()
        call_args = mock_client.post.call_args
        assert "api.telegram.org" in call_args[0][0]
        json_data = call_args[1]["json"]
        assert json_data["chat_id"] == "test-chat"
        assert "ERROR" in json_data["text"]
        assert "Pipeline failed" in json_data["text"]

    @patch("relay.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("relay.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("relay.services.alert_service.httpx.Client")
    def test_includes_context_in_message(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=200)

        send_alert("ERROR", "Test message", {"tenant_id": "t-1", "provider_message_id": "SM123"})

        text = mock_client.post.call_args[1]["json"]["text"]
        assert "tenant_id: t-1" in text
        assert "SM123" in text

    @patch("relay.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("relay.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("relay.services.alert_service.httpx.Client")
    def test_returns_false_on_api_error(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=500)

        assert send_alert("ERROR", "Test") is False

    @patch("relay.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("relay.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("relay.services.alert_service.httpx.Client")
    def test_returns_false_on_transport_error(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.side_effect = httpx.ConnectError("boom")

        assert send_alert("ERROR", "Test") is False


class TestShortcuts:
    @patch("relay.services.alert_service.send_alert")
    def test_alert_error(self, mock_send):
        mock_send.return_value = True
        assert alert_error("Test", {"key": "value"}) is True
        mock_send.assert_called_once_with("ERROR", "Test", {"key": "value"})

    @patch("relay.services.alert_service.send_alert")
    def test_alert_critical(self, mock_send):
        alert_critical("Provider down")
        mock_send.assert_called_once_with("CRITICAL", "Provider down", None)

    @patch("relay.services.alert_service.send_alert")
    def test_alert_warning(self, mock_send):
        alert_warning("Slow")
        mock_send.assert_called_once_with("WARNING", "Slow", None)
