from datetime import datetime, timedelta

import pytest

from models import db
from models.appointment import Appointment
from models.audit_log import AuditLog
from utils import payment_ledger, reconciler
from utils.errors import NotFoundError


def _complete(payment):
    payment, _ = payment_ledger.apply_notification(payment.id, "2", "320025071278", {"status_code": "2"})
    return payment


def test_confirm_from_payment_confirms_and_marks_paid(pending_payment, appointment):
    appointment_after, changed = reconciler.confirm_from_payment(_complete(pending_payment))

    assert changed is True
    assert appointment_after.id == appointment.id
    assert appointment_after.status == "confirmed"
    assert appointment_after.payment_status == "paid"
    assert AuditLog.query.filter_by(action="APPOINTMENT_CONFIRMED").count() == 1


def test_confirm_from_payment_is_idempotent(pending_payment):
    payment = _complete(pending_payment)
    reconciler.confirm_from_payment(payment)
    appointment, changed = reconciler.confirm_from_payment(payment)

    assert changed is False
    assert appointment.status == "confirmed"
    assert AuditLog.query.filter_by(action="APPOINTMENT_CONFIRMED").count() == 1


def test_confirm_from_payment_requires_completed(pending_payment):
    with pytest.raises(ValueError):
        reconciler.confirm_from_payment(pending_payment)


def test_confirm_keeps_cancelled_appointment_status(pending_payment, appointment):
    appointment.status = "cancelled"
    db.session.commit()

    appointment_after, changed = reconciler.confirm_from_payment(_complete(pending_payment))

    assert changed is True
    assert appointment_after.status == "cancelled"
    assert appointment_after.payment_status == "paid"


def test_reconcile_repairs_scheduled_appointment(pending_payment, appointment):
    _complete(pending_payment)
    appointment.status = "scheduled"
    appointment.payment_status = "pending"
    db.session.commit()

    view = reconciler.reconcile(pending_payment.id)

    assert view["payment"].status == "completed"
    assert view["appointment"].status == "confirmed"
    assert view["appointment"].payment_status == "paid"
    assert db.session.get(Appointment, appointment.id).status == "confirmed"


def test_reconcile_leaves_pending_payment_alone(pending_payment, appointment):
    view = reconciler.reconcile(pending_payment.id)

    assert view["payment"].status == "pending"
    assert view["appointment"].status == "pending_payment"


def test_reconcile_unknown_payment(app):
    with pytest.raises(NotFoundError):
        reconciler.reconcile(12345)


def test_mark_refunded(pending_payment, appointment):
    _complete(pending_payment)
    reconciler.confirm_from_payment(pending_payment)
    payment = payment_ledger.manual_update(appointment.id, status="refunded")

    appointment_after = reconciler.mark_refunded(payment)

    assert appointment_after.payment_status == "refunded"


def test_bulk_reconcile_promotes_only_stale_payments(appointment, patient, doctor, outbox):
    stale = payment_ledger.initiate(appointment.id, patient.id)
    stale.created_at = datetime.utcnow() - timedelta(minutes=30)
    db.session.commit()

    fresh_appointment = Appointment(
        patient_id=patient.id,
        doctor_id=doctor.id,
        appointment_date=appointment.appointment_date,
        appointment_time="11:00",
        consultation_type="remote",
        reason="Second opinion",
        consultation_fee=doctor.remote_fee,
    )
    db.session.add(fresh_appointment)
    db.session.commit()
    fresh = payment_ledger.initiate(fresh_appointment.id, patient.id)

    outcome = reconciler.bulk_reconcile(timedelta(minutes=5))

    assert outcome["fixed_count"] == 1
    assert outcome["total_pending"] == 2
    assert outcome["results"] == [{
        "payment_id": stale.id,
        "appointment_id": appointment.id,
        "status": "fixed",
        "patient_email": patient.email,
    }]
    assert stale.status == "completed"
    assert stale.payment_reference == f"MANUAL-{stale.id}"
    assert appointment.status == "confirmed"
    assert appointment.payment_status == "paid"
    assert fresh.status == "pending"
    assert fresh_appointment.status == "pending_payment"
    assert [m["to"] for m in outbox] == [patient.email]


def test_bulk_reconcile_with_nothing_pending(app):
    outcome = reconciler.bulk_reconcile(timedelta(minutes=5))
    assert outcome == {"fixed_count": 0, "total_pending": 0, "results": []}


def test_concurrent_confirmation_reports_no_change(pending_payment, appointment, write_elsewhere, monkeypatch):
    payment = _complete(pending_payment)
    read_appointment = reconciler._appointment_for

    def read_then_lose_race(p):
        found = read_appointment(p)
        write_elsewhere(Appointment, found.id, status="confirmed", payment_status="paid")
        return found

    monkeypatch.setattr(reconciler, "_appointment_for", read_then_lose_race)
    appointment_after, changed = reconciler.confirm_from_payment(payment)

    assert changed is False
    assert appointment_after.status == "confirmed"
    assert AuditLog.query.filter_by(action="APPOINTMENT_CONFIRMED").count() == 0


def test_release_payment_reopens_confirmed_appointment(pending_payment, appointment):
    reconciler.confirm_from_payment(_complete(pending_payment))
    payment = payment_ledger.manual_update(appointment.id, status="failed")

    appointment_after = reconciler.release_payment(payment)

    assert appointment_after.status == "pending_payment"
    assert appointment_after.payment_status == "failed"
    assert AuditLog.query.filter_by(action="APPOINTMENT_PAYMENT_RELEASED").count() == 1


def test_release_payment_keeps_cancelled_appointment(pending_payment, appointment):
    reconciler.confirm_from_payment(_complete(pending_payment))
    appointment.status = "cancelled"
    db.session.commit()
    payment = payment_ledger.manual_update(appointment.id, status="pending")

    appointment_after = reconciler.release_payment(payment)

    assert appointment_after.status == "cancelled"
    assert appointment_after.payment_status == "pending"


def test_release_payment_rejects_completed(pending_payment):
    with pytest.raises(ValueError):
        reconciler.release_payment(_complete(pending_payment))


def test_bulk_reconcile_threshold_is_exclusive(pending_payment, appointment, outbox):
    created = pending_payment.created_at

    at_threshold = reconciler.bulk_reconcile(timedelta(minutes=5), now=created + timedelta(minutes=5))
    assert at_threshold["fixed_count"] == 0
    assert pending_payment.status == "pending"

    past_threshold = reconciler.bulk_reconcile(timedelta(minutes=5), now=created + timedelta(minutes=5, seconds=1))
    assert past_threshold["fixed_count"] == 1
    assert appointment.status == "confirmed"


def test_bulk_reconcile_then_late_webhook_sends_single_email(client, pending_payment, notify_form, outbox):
    reconciler.bulk_reconcile(timedelta(minutes=0), now=datetime.utcnow() + timedelta(seconds=1))
    client.post("/payments/notify", data=notify_form(pending_payment.order_id, "2500.00", 2))

    assert len(outbox) == 1
