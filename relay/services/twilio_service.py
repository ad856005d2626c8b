"""Twilio WhatsApp transport: outbound sends and webhook signature checks."""

import base64
import hashlib
import hmac
from typing import Mapping, Optional

import httpx

from relay.config import Settings
from relay.logging_config import get_logger
from relay.services.alert_service import alert_critical
from relay.services.phone import to_channel_address
from relay.services.result import Result

logger = get_logger("twilio_service")

MAX_BODY_LENGTH = 1600


def compute_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """Base64 HMAC-SHA1 of the URL followed by each sorted key and its value."""
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(auth_token: str, url: str, params: Mapping[str, str], signature: Optional[str]) -> bool:
    if not auth_token or not signature:
        return False
    expected = compute_signature(auth_token, url, params)
    return hmac.compare_digest(expected, signature)


class TwilioSender:
    """Sends replies using the tenant's registered number as the sender."""

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def messages_url(self) -> str:
        base = self.settings.twilio_api_base_url.rstrip("/")
        return f"{base}/Accounts/{self.settings.twilio_account_sid}/Messages.json"

    def send_whatsapp_message(self, from_number: str, to_number: str, body: str) -> Result[str]:
        """Returns the provider message SID on success."""
        if not self.settings.twilio_account_sid or not self.settings.twilio_auth_token:
            logger.error("Twilio credentials missing (TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN)")
            alert_critical("WhatsApp send failed", {"to": to_number, "error": "missing_twilio_credentials"})
            return Result.failure("Twilio credentials missing", "missing_credentials")
        if not from_number or not body:
            logger.warning(f"send_whatsapp_message: missing from_number={from_number} or body")
            return Result.failure("Missing sender or body", "invalid_request")

        data = {
            "From": to_channel_address(from_number),
            "To": to_channel_address(to_number),
            "Body": body[:MAX_BODY_LENGTH],
        }
        if self.settings.twilio_status_callback_url:
            data["StatusCallback"] = self.settings.twilio_status_callback_url

        try:
            with httpx.Client(
                timeout=self.settings.twilio_send_timeout_seconds,
                auth=(self.settings.twilio_account_sid, self.settings.twilio_auth_token),
            ) as client:
                response = client.post(self.messages_url, data=data)
        except httpx.HTTPError as e:
            logger.error(
                "Twilio send failed",
                extra={"context": {"to": to_number, "error": str(e)}},
            )
            return Result.failure(str(e), "transport_error")

        if response.status_code not in (200, 201):
            logger.error(
                "Twilio send rejected",
                extra={"context": {"to": to_number, "status_code": response.status_code, "body": response.text[:300]}},
            )
            return Result.failure(f"Twilio API error: {response.status_code}", "provider_error")

        sid = response.json().get("sid")
        logger.info("Twilio message sent", extra={"context": {"to": to_number, "sid": sid}})
        return Result.success(sid)
