"""Dashboard notifications emitted as side effects of the pipeline."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from relay.logging_config import get_logger
from relay.models import Booking, Conversation, Notification
from relay.services.result import Result

logger = get_logger("notification_service")


class NotificationType(str, Enum):
    NEW_BOOKING = "new_booking"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_UPDATED = "booking_updated"
    REMINDER_PENDING = "reminder_pending"
    NO_SHOW = "no_show"
    NEW_LEAD = "new_lead"
    CONVERSATION_ESCALATED = "conversation_escalated"


TEMPLATES = {
    NotificationType.NEW_BOOKING: ("Nouvelle réservation", "{who} a réservé {service} le {date} à {time}."),
    NotificationType.BOOKING_CANCELLED: ("Réservation annulée", "La réservation de {who} du {date} à {time} a été annulée."),
    NotificationType.BOOKING_UPDATED: ("Réservation modifiée", "La réservation de {who} est maintenant le {date} à {time}."),
    NotificationType.REMINDER_PENDING: ("Rappel à envoyer", "Rappel à envoyer à {who} pour le {date} à {time}."),
    NotificationType.NO_SHOW: ("Client absent", "{who} ne s'est pas présenté le {date} à {time}."),
    NotificationType.NEW_LEAD: ("Nouveau prospect", "{who} est intéressé par : {interest}."),
    NotificationType.CONVERSATION_ESCALATED: ("Conversation à reprendre", "{who} a besoin d'un conseiller ({reason})."),
}


class _Blank(dict):
    def __missing__(self, key):
        return "-"


@dataclass
class PendingNotification:
    """A notification decided during a turn, written once the turn has committed."""

    tenant_id: UUID
    type: NotificationType
    payload: dict = field(default_factory=dict)


def booking_notification(booking: Booking, type_: NotificationType = NotificationType.NEW_BOOKING) -> PendingNotification:
    return PendingNotification(
        tenant_id=booking.tenant_id,
        type=type_,
        payload={
            "booking_id": booking.id,
            "conversation_id": booking.conversation_id,
            "customer_name": booking.customer_name,
            "customer_phone": booking.customer_phone,
            "service": booking.service or "un rendez-vous",
            "date": booking.booking_date.strftime("%d/%m/%Y"),
            "time": booking.booking_time,
        },
    )


def escalation_notification(conversation: Conversation, reason: Optional[str]) -> PendingNotification:
    return PendingNotification(
        tenant_id=conversation.tenant_id,
        type=NotificationType.CONVERSATION_ESCALATED,
        payload={
            "conversation_id": conversation.id,
            "customer_name": conversation.customer_name,
            "customer_phone": conversation.customer_phone,
            "reason": reason,
        },
    )


def render(type_: NotificationType, payload: dict) -> tuple[str, str]:
    title, template = TEMPLATES[NotificationType(type_)]
    values = _Blank(payload)
    values.setdefault("who", payload.get("customer_name") or payload.get("customer_phone") or "Un client")
    message = payload.get("message") or template.format_map(values)
    return payload.get("title") or title, message


class Notifier:
    """Fire-and-forget: a failed notification is logged, never raised."""

    def emit(self, db: Session, tenant_id: UUID, type_: NotificationType, payload: Optional[dict] = None) -> Result[Notification]:
        payload = payload or {}
        try:
            title, message = render(type_, payload)
            notification = Notification(
                tenant_id=tenant_id,
                type=NotificationType(type_).value,
                title=title,
                message=message,
                booking_id=payload.get("booking_id"),
                conversation_id=payload.get("conversation_id"),
                is_read=False,
            )
            db.add(notification)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(
                "Notification emit failed",
                extra={"context": {"tenant_id": str(tenant_id), "type": str(type_), "error": str(e)}},
            )
            return Result.failure(str(e), "notification_failed")

        logger.info(
            "Notification emitted",
            extra={"context": {"tenant_id": str(tenant_id), "type": notification.type}},
        )
        return Result.success(notification)

    def notify_booking(self, db: Session, booking: Booking, type_: NotificationType) -> Result[Notification]:
        """Booking lifecycle events raised outside a turn (dashboard edits, reminder jobs)."""
        pending = booking_notification(booking, type_)
        return self.emit(db, pending.tenant_id, pending.type, pending.payload)

    def notify_escalation(self, db: Session, conversation: Conversation, reason: Optional[str] = None) -> Result[Notification]:
        pending = escalation_notification(conversation, reason)
        return self.emit(db, pending.tenant_id, pending.type, pending.payload)

    def emit_pending(self, db: Session, pending: Iterable[PendingNotification]) -> int:
        emitted = 0
        for item in pending:
            if self.emit(db, item.tenant_id, item.type, item.payload).ok:
                emitted += 1
        return emitted
