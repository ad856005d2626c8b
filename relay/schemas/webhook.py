from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from relay.services.phone import normalize_phone

MEDIA_PLACEHOLDER = "[media]"
DELIVERY_STATUSES = ("queued", "sent", "delivered", "read", "failed")
STATUS_MAP = {
    "accepted": "queued",
    "queued": "queued",
    "sending": "queued",
    "sent": "sent",
    "delivered": "delivered",
    "read": "read",
    "failed": "failed",
    "undelivered": "failed",
}


class InboundEvent(BaseModel):
    """One provider message, validated before any business logic runs."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    provider_message_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("MessageSid", "SmsMessageSid", "provider_message_id"),
    )
    sender: str = Field(validation_alias=AliasChoices("From", "sender"))
    destination: str = Field(validation_alias=AliasChoices("To", "destination"))
    body: str = Field(default="", validation_alias=AliasChoices("Body", "body"))
    profile_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("ProfileName", "profile_name"))
    media_urls: tuple[str, ...] = ()
    media_types: tuple[str, ...] = ()
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="before")
    @classmethod
    def collect_media(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "media_urls" in data:
            return data
        try:
            count = int(data.get("NumMedia") or 0)
        except (TypeError, ValueError):
            count = 0
        data = dict(data)
        data["media_urls"] = tuple(data[f"MediaUrl{i}"] for i in range(count) if data.get(f"MediaUrl{i}"))
        data["media_types"] = tuple(data.get(f"MediaContentType{i}") or "" for i in range(count))
        body = str(data.get("Body") or data.get("body") or "").strip()
        if not body and data["media_urls"]:
            data["Body"] = MEDIA_PLACEHOLDER
        return data

    @field_validator("sender", "destination")
    @classmethod
    def canonical_phone(cls, value: str) -> str:
        phone = normalize_phone(value)
        if phone is None:
            raise ValueError("not a phone address")
        return phone

    @field_validator("body", mode="before")
    @classmethod
    def strip_body(cls, value: Any) -> str:
        return str(value or "").strip()

    @model_validator(mode="after")
    def require_content(self) -> "InboundEvent":
        if not self.body:
            raise ValueError("message has neither text nor media")
        return self


class StatusCallback(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider_message_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("MessageSid", "SmsSid", "provider_message_id"),
    )
    raw_status: str = Field(validation_alias=AliasChoices("MessageStatus", "SmsStatus", "status"))
    error_code: Optional[str] = Field(default=None, validation_alias=AliasChoices("ErrorCode", "error_code"))
    error_message: Optional[str] = Field(default=None, validation_alias=AliasChoices("ErrorMessage", "error_message"))

    @field_validator("raw_status")
    @classmethod
    def known_status(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in STATUS_MAP:
            raise ValueError(f"unknown status {value!r}")
        return value

    @property
    def status(self) -> str:
        return STATUS_MAP[self.raw_status]


class WebhookResponse(BaseModel):
    success: bool
    message: str
    conversation_id: Optional[UUID] = None
