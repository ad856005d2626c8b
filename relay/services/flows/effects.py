"""Persistence of flow side effects (bookings, leads, escalations)."""

from datetime import date, datetime
from typing import Optional

from sqlalchemy.orm import Session

from relay.logging_config import get_logger
from relay.models import Booking, Contact, Conversation
from relay.services.conversation_service import escalate_conversation
from relay.services.flows.base import CaptureLead, CreateBooking, Escalate, SideEffect
from relay.services.flows.booking import free_slots
from relay.services.notification_service import (
    NotificationType,
    PendingNotification,
    booking_notification,
    escalation_notification,
)
from relay.services.result import Result

logger = get_logger("flows.effects")

LEAD_SCORE_CAPTURED = 70
LEAD_STATUS_NEW = "new"


def booked_times(db: Session, tenant_id, day: date) -> set[str]:
    rows = (
        db.query(Booking.booking_time)
        .filter(
            Booking.tenant_id == tenant_id,
            Booking.booking_date == day,
            Booking.status != "cancelled",
        )
        .all()
    )
    return {row[0] for row in rows}


def available_slots(db: Session, tenant_id, day: date, now: Optional[datetime] = None) -> list[str]:
    return free_slots(booked_times(db, tenant_id, day), day, now)


class FlowEffects:
    def apply(self, db: Session, conversation: Conversation, effect: SideEffect) -> Result[list[PendingNotification]]:
        actor = f"flow:{conversation.current_flow or 'unknown'}"
        if isinstance(effect, CreateBooking):
            return self._create_booking(db, conversation, effect)
        if isinstance(effect, CaptureLead):
            return self._capture_lead(db, conversation, effect, actor)
        if isinstance(effect, Escalate):
            return self._escalate(conversation, effect, actor)
        return Result.failure(f"Unsupported side effect: {type(effect).__name__}", "unsupported_effect")

    def _create_booking(self, db: Session, conversation: Conversation, effect: CreateBooking) -> Result[list[PendingNotification]]:
        if effect.booking_time in booked_times(db, conversation.tenant_id, effect.booking_date):
            logger.info(
                "Booking slot already taken",
                extra={
                    "context": {
                        "conversation_id": str(conversation.id),
                        "date": effect.booking_date.isoformat(),
                        "time": effect.booking_time,
                    }
                },
            )
            return Result.failure("Slot already booked", "slot_taken")

        booking = Booking(
            tenant_id=conversation.tenant_id,
            conversation_id=conversation.id,
            customer_phone=conversation.customer_phone,
            customer_name=effect.customer_name or conversation.customer_name,
            service=effect.service,
            booking_date=effect.booking_date,
            booking_time=effect.booking_time,
            status="confirmed",
        )
        db.add(booking)
        db.flush()
        if effect.customer_name and not conversation.customer_name:
            conversation.customer_name = effect.customer_name
        logger.info(
            "Booking created",
            extra={"context": {"booking_id": str(booking.id), "conversation_id": str(conversation.id)}},
        )
        return Result.success([booking_notification(booking)])

    def _capture_lead(self, db: Session, conversation: Conversation, effect: CaptureLead, actor: str) -> Result[list[PendingNotification]]:
        conversation.lead_status = LEAD_STATUS_NEW
        conversation.lead_score = max(conversation.lead_score or 0, LEAD_SCORE_CAPTURED)
        conversation.updated_by = actor
        if effect.name and not conversation.customer_name:
            conversation.customer_name = effect.name

        phone = effect.phone or conversation.customer_phone
        contact = (
            db.query(Contact)
            .filter(Contact.tenant_id == conversation.tenant_id, Contact.phone == phone)
            .first()
        )
        if contact is None:
            contact = Contact(tenant_id=conversation.tenant_id, phone=phone, source="whatsapp_lead", tags=[])
            db.add(contact)
        contact.name = effect.name or contact.name
        contact.email = effect.email or contact.email
        contact.tags = sorted(set(contact.tags or []) | {"lead"})
        db.flush()

        return Result.success(
            [
                PendingNotification(
                    tenant_id=conversation.tenant_id,
                    type=NotificationType.NEW_LEAD,
                    payload={
                        "conversation_id": conversation.id,
                        "customer_name": effect.name,
                        "customer_phone": phone,
                        "interest": effect.interest or "-",
                    },
                )
            ]
        )

    def _escalate(self, conversation: Conversation, effect: Escalate, actor: str) -> Result[list[PendingNotification]]:
        escalate_conversation(conversation, actor=actor)
        return Result.success([escalation_notification(conversation, effect.reason)])
