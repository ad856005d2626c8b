from unittest.mock import MagicMock, Mock, patch

import httpx

from relay.services.twilio_service import TwilioSender, compute_signature, verify_signature

URL = "https://relay.example.com/webhooks/twilio/whatsapp"
PARAMS = {"MessageSid": "SM123", "From": "whatsapp:+33600000001", "To": "whatsapp:+14155238886", "Body": "Bonjour"}


class TestSignature:
    def test_signature_is_order_independent(self):
        reordered = dict(reversed(list(PARAMS.items())))
        assert compute_signature("secret", URL, PARAMS) == compute_signature("secret", URL, reordered)

    def test_valid_signature(self):
        signature = compute_signature("secret", URL, PARAMS)
        assert verify_signature("secret", URL, PARAMS, signature) is True

    def test_tampered_body_is_rejected(self):
        signature = compute_signature("secret", URL, PARAMS)
        assert verify_signature("secret", URL, {**PARAMS, "Body": "Autre"}, signature) is False

    def test_other_url_is_rejected(self):
        signature = compute_signature("secret", URL, PARAMS)
        assert verify_signature("secret", URL + "?x=1", PARAMS, signature) is False

    def test_missing_token_or_signature_fails_closed(self):
        signature = compute_signature("secret", URL, PARAMS)
        assert verify_signature("", URL, PARAMS, signature) is False
        assert verify_signature("secret", URL, PARAMS, None) is False


class TestSend:
    @patch("relay.services.twilio_service.httpx.Client")
    def test_posts_form_from_tenant_number(self, mock_client_class, settings):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=201, json=Mock(return_value={"sid": "SMout1"}))

        result = TwilioSender(settings).send_whatsapp_message("+14155238886", "+33600000001", "Bonjour !")

        assert result.ok is True
        assert result.value == "SMout1"
        url = mock_client.post.call_args[0][0]
        data = mock_client.post.call_args[1]["data"]
        assert url.endswith("/Accounts/AC123/Messages.json")
        assert data == {"From": "whatsapp:+14155238886", "To": "whatsapp:+33600000001", "Body": "Bonjour !"}
        assert mock_client_class.call_args[1]["auth"] == ("AC123", "twilio-token")

    @patch("relay.services.twilio_service.httpx.Client")
    def test_status_callback_is_requested_when_configured(self, mock_client_class, settings):
        settings.twilio_status_callback_url = "https://relay.example.com/webhooks/twilio/status"
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=201, json=Mock(return_value={"sid": "SMout1"}))

        TwilioSender(settings).send_whatsapp_message("+14155238886", "+33600000001", "Bonjour")

        assert mock_client.post.call_args[1]["data"]["StatusCallback"].endswith("/status")

    @patch("relay.services.twilio_service.httpx.Client")
    def test_provider_error(self, mock_client_class, settings):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=400, text="bad number")

        result = TwilioSender(settings).send_whatsapp_message("+14155238886", "+33600000001", "Bonjour")

        assert result.is_error("provider_error")

    @patch("relay.services.twilio_service.httpx.Client")
    def test_transport_error(self, mock_client_class, settings):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.side_effect = httpx.ReadTimeout("slow")

        result = TwilioSender(settings).send_whatsapp_message("+14155238886", "+33600000001", "Bonjour")

        assert result.is_error("transport_error")

    @patch("relay.services.twilio_service.alert_critical")
    @patch("relay.services.twilio_service.httpx.Client")
    def test_missing_credentials_alert(self, mock_client_class, mock_alert, settings):
        settings.twilio_auth_token = ""

        result = TwilioSender(settings).send_whatsapp_message("+14155238886", "+33600000001", "Bonjour")

        assert result.is_error("missing_credentials")
        mock_alert.assert_called_once()
        mock_client_class.assert_not_called()
