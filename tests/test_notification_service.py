from datetime import date
from unittest.mock import Mock

from sqlalchemy.exc import OperationalError

from relay.models import Booking, Notification
from relay.services.conversation_service import upsert_conversation
from relay.services.notification_service import NotificationType, Notifier, PendingNotification, render


class TestRender:
    def test_booking_message(self):
        title, message = render(
            NotificationType.NEW_BOOKING,
            {"customer_name": "Marie", "service": "Coupe", "date": "20/10/2026", "time": "10:00"},
        )
        assert title == "Nouvelle réservation"
        assert message == "Marie a réservé Coupe le 20/10/2026 à 10:00."

    def test_missing_values_are_dashed_and_phone_is_used(self):
        _, message = render(NotificationType.NEW_LEAD, {"customer_phone": "+33600000001"})
        assert message == "+33600000001 est intéressé par : -."

    def test_explicit_title_and_message_win(self):
        assert render("no_show", {"title": "T", "message": "M"}) == ("T", "M")


class TestNotifier:
    def test_emit_writes_unread_row(self, db_session, make_tenant):
        tenant = make_tenant()
        result = Notifier().emit(db_session, tenant.id, NotificationType.CONVERSATION_ESCALATED, {"reason": "ESCALATE"})

        assert result.ok is True
        row = db_session.query(Notification).one()
        assert row.type == "conversation_escalated"
        assert row.is_read is False
        assert "ESCALATE" in row.message

    def test_emit_failure_is_reported_not_raised(self):
        db = Mock()
        db.commit.side_effect = OperationalError("INSERT", {}, Exception("db down"))

        result = Notifier().emit(db, "tenant", NotificationType.NEW_LEAD, {})

        assert result.ok is False
        assert result.error_code == "notification_failed"
        db.rollback.assert_called_once()

    def test_emit_pending_counts_successes(self, db_session, make_tenant):
        tenant = make_tenant()
        pending = [
            PendingNotification(tenant_id=tenant.id, type=NotificationType.NEW_LEAD, payload={"interest": "devis"}),
            PendingNotification(tenant_id=tenant.id, type=NotificationType.NEW_BOOKING),
        ]
        assert Notifier().emit_pending(db_session, pending) == 2
        assert db_session.query(Notification).count() == 2


class TestHelpers:
    def test_notify_booking_uses_booking_fields(self, db_session, make_tenant):
        tenant = make_tenant()
        booking = Booking(
            tenant_id=tenant.id,
            customer_phone="+33600000001",
            customer_name="Marie",
            service="Coupe",
            booking_date=date(2026, 10, 20),
            booking_time="10:00",
        )
        db_session.add(booking)
        db_session.commit()

        result = Notifier().notify_booking(db_session, booking, NotificationType.BOOKING_CANCELLED)

        assert result.ok is True
        row = db_session.query(Notification).one()
        assert row.type == "booking_cancelled"
        assert row.booking_id == booking.id
        assert row.message == "La réservation de Marie du 20/10/2026 à 10:00 a été annulée."

    def test_notify_escalation(self, db_session, make_tenant):
        tenant = make_tenant()
        conversation = upsert_conversation(db_session, tenant.id, "+33600000001")
        db_session.commit()

        Notifier().notify_escalation(db_session, conversation, "ESCALATE")

        row = db_session.query(Notification).one()
        assert row.conversation_id == conversation.id
        assert row.message == "+33600000001 a besoin d'un conseiller (ESCALATE)."
