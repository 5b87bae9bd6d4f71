from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.appointment import Appointment
from models.payment import Payment
from utils import notifications, payment_ledger
from utils.audit import log_event
from utils.errors import NotFoundError, PaymentError

# appointments in these states are moved to "confirmed" once paid
CONFIRMABLE_STATUSES = ("pending_payment", "scheduled")


def _appointment_for(payment: Payment) -> Appointment:
    appointment = db.session.get(Appointment, payment.appointment_id)
    if appointment is None:
        raise NotFoundError(f"Appointment {payment.appointment_id} not found for payment {payment.id}")
    return appointment


def _write(appointment: Appointment, values: dict) -> bool:
    """Writes ``values`` unless another request changed the appointment since it was read."""
    expected = {"status": appointment.status, "payment_status": appointment.payment_status}
    return payment_ledger.guarded_update(
        Appointment, appointment.id, expected, values, f"appointment {appointment.id}"
    )


def confirm_from_payment(payment: Payment):
    """
    Marks the payment's appointment as paid (and confirmed while it is still
    awaiting payment). Returns ``(appointment, changed)``; ``changed`` is
    False when the appointment was already confirmed, by this or a
    concurrent request.
    """
    if payment.status != "completed":
        raise ValueError(f"Payment {payment.id} is {payment.status}, not completed")

    appointment = _appointment_for(payment)
    values = {}
    if appointment.payment_status != "paid":
        values["payment_status"] = "paid"
    if appointment.status in CONFIRMABLE_STATUSES:
        values["status"] = "confirmed"

    if not values or not _write(appointment, values):
        return appointment, False

    log_event(
        "APPOINTMENT_CONFIRMED",
        entity="appointment",
        entity_id=appointment.id,
        metadata={"payment_id": payment.id, "status": appointment.status},
    )
    current_app.logger.info("Appointment %s confirmed by payment %s", appointment.id, payment.id)
    return appointment, True


def mark_refunded(payment: Payment) -> Appointment:
    if payment.status != "refunded":
        raise ValueError(f"Payment {payment.id} is {payment.status}, not refunded")
    appointment = _appointment_for(payment)
    if appointment.payment_status != "refunded":
        _write(appointment, {"payment_status": "refunded"})
    return appointment


def release_payment(payment: Payment) -> Appointment:
    """
    Keeps the appointment in step after an administrator moves its payment
    back off ``completed``: an appointment that was confirmed by the payment
    returns to ``pending_payment``.
    """
    if payment.status in ("completed", "refunded"):
        raise ValueError(f"Payment {payment.id} is {payment.status}")

    appointment = _appointment_for(payment)
    if appointment.payment_status == "not_required":
        return appointment

    values = {"payment_status": "failed" if payment.status in ("failed", "cancelled") else "pending"}
    if appointment.status == "confirmed":
        values["status"] = "pending_payment"
    changed = any(getattr(appointment, key) != value for key, value in values.items())
    if changed and _write(appointment, values):
        log_event(
            "APPOINTMENT_PAYMENT_RELEASED",
            entity="appointment",
            entity_id=appointment.id,
            metadata={"payment_id": payment.id, "payment_status": payment.status},
        )
    return appointment


def reconcile(payment_id) -> dict:
    """
    Read-time repair for clients polling after checkout: a completed
    payment whose appointment was never confirmed (lost or delayed webhook)
    is confirmed now. Always returns the post-repair view of both records.
    """
    payment = payment_ledger.get_payment(payment_id)
    appointment = db.session.get(Appointment, payment.appointment_id)

    if payment.status == "completed" and appointment is not None:
        if appointment.status != "confirmed" or appointment.payment_status != "paid":
            appointment, changed = confirm_from_payment(payment)
            if changed:
                current_app.logger.warning(
                    "Reconciled drift: appointment %s was behind completed payment %s",
                    appointment.id, payment.id,
                )

    return {"payment": payment, "appointment": appointment}


def bulk_reconcile(age_threshold: timedelta, now=None) -> dict:
    """
    Promotes payments that have stayed ``pending`` longer than
    ``age_threshold`` to completed, confirms their appointments and sends
    the confirmation email a lost webhook would have triggered.

    This is a heuristic: elapsed time stands in for the gateway's answer,
    so a payment that genuinely failed without notifying us gets confirmed
    too. Per-payment failures are reported, not raised.
    """
    now = now or datetime.utcnow()
    cutoff = now - age_threshold

    pending = Payment.query.filter_by(status="pending").order_by(Payment.created_at.asc()).all()

    fixed_count = 0
    results = []
    for payment in pending:
        if payment.created_at >= cutoff:
            continue
        payment_id = payment.id
        try:
            _appointment_for(payment)
            payment_ledger.settle_stale(payment)
            appointment, changed = confirm_from_payment(payment)
        except (PaymentError, SQLAlchemyError) as exc:
            db.session.rollback()
            current_app.logger.error("Could not reconcile payment %s: %s", payment_id, exc)
            results.append({"payment_id": payment_id, "status": "error", "error": str(exc)})
            continue

        # a later webhook for this payment is a duplicate and sends nothing
        if changed:
            notifications.dispatch_confirmation(appointment, payment)

        fixed_count += 1
        results.append({
            "payment_id": payment.id,
            "appointment_id": appointment.id,
            "status": "fixed",
            "patient_email": appointment.patient.email if appointment.patient else None,
        })

    if fixed_count:
        current_app.logger.warning("Bulk reconcile promoted %d stale pending payments", fixed_count)
    return {"fixed_count": fixed_count, "total_pending": len(pending), "results": results}
