"""Twilio WhatsApp webhooks: inbound messages and delivery status callbacks."""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from relay.config import Settings, get_settings
from relay.database import get_db
from relay.logging_config import get_logger
from relay.schemas.webhook import InboundEvent, StatusCallback, WebhookResponse
from relay.services.alert_service import alert_warning
from relay.services.conversation_service import update_message_status
from relay.services.pipeline import InboundPipeline, get_pipeline
from relay.services.twilio_service import verify_signature

logger = get_logger("webhook")

router = APIRouter(prefix="/webhooks/twilio", tags=["webhook"])

EMPTY_TWIML = "<Response></Response>"


def _signed_url(request: Request, settings: Settings) -> str:
    # Behind a proxy the public URL differs from the one uvicorn sees.
    if settings.public_base_url:
        url = settings.public_base_url.rstrip("/") + request.url.path
        if request.url.query:
            url += f"?{request.url.query}"
        return url
    return str(request.url)


async def _verified_form(request: Request, settings: Settings) -> dict[str, str]:
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    if settings.skip_signature_verification:
        return params

    signature = request.headers.get("X-Twilio-Signature")
    if not verify_signature(settings.twilio_auth_token, _signed_url(request, settings), params, signature):
        logger.warning(
            "Rejected webhook with invalid signature",
            extra={"context": {"path": request.url.path, "has_signature": bool(signature)}},
        )
        if not settings.twilio_auth_token:
            alert_warning("Twilio auth token missing, webhooks are rejected", {"path": request.url.path})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
    return params


@router.post("/whatsapp")
async def receive_whatsapp(
    request: Request,
    background_tasks: BackgroundTasks,
    settings: Settings = Depends(get_settings),
    pipeline: InboundPipeline = Depends(get_pipeline),
):
    """Acknowledge immediately; the pipeline runs after the response is sent."""
    params = await _verified_form(request, settings)
    try:
        event = InboundEvent.model_validate(params)
    except ValidationError as e:
        logger.warning(
            "Invalid inbound payload",
            extra={"context": {"errors": e.errors(include_url=False, include_context=False)}},
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid inbound payload")

    logger.info(
        "Inbound accepted",
        extra={
            "context": {
                "provider_message_id": event.provider_message_id,
                "destination": event.destination,
                "has_media": bool(event.media_urls),
            }
        },
    )
    background_tasks.add_task(pipeline.process, event)
    return Response(content=EMPTY_TWIML, media_type="application/xml")


@router.post("/status", response_model=WebhookResponse)
async def receive_status(
    request: Request,
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
):
    params = await _verified_form(request, settings)
    try:
        callback = StatusCallback.model_validate(params)
    except ValidationError as e:
        logger.warning(
            "Invalid status callback",
            extra={"context": {"errors": e.errors(include_url=False, include_context=False)}},
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid status callback")

    message = update_message_status(
        db,
        callback.provider_message_id,
        callback.status,
        error_code=callback.error_code,
        error_message=callback.error_message,
    )
    if message is None:
        logger.warning(
            "Status for unknown message",
            extra={"context": {"provider_message_id": callback.provider_message_id, "status": callback.status}},
        )
        return WebhookResponse(success=True, message="unknown_message")

    db.commit()
    return WebhookResponse(success=True, message=message.status, conversation_id=message.conversation_id)
