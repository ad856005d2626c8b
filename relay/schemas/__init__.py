from relay.schemas.webhook import InboundEvent, StatusCallback, WebhookResponse

__all__ = ["InboundEvent", "StatusCallback", "WebhookResponse"]
