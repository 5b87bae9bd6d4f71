"""
Payment lifecycle. Every change to ``Payment.status`` goes through here.

Gateway notifications are applied on a monotone lattice instead of
last-write-wins, so a late "pending" or "failed" delivery cannot regress a
payment that already completed:

    pending / unknown  ->  failed / cancelled  ->  completed  ->  refunded

A notification is applied when it moves the payment up the lattice, or
sideways below ``completed``. Anything else (duplicates included) is
recorded in the audit log and otherwise ignored.
"""
import json
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.appointment import Appointment
from models.payment import Payment, PAYMENT_STATUSES
from utils.audit import log_event
from utils.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    TransientInfraError,
    ValidationError,
)

STATUS_BY_CODE = {
    "2": "completed",
    "0": "pending",
    "-1": "cancelled",
    "-2": "failed",
}

STATUS_RANK = {
    "pending": 0,
    "unknown": 0,
    "failed": 1,
    "cancelled": 1,
    "completed": 2,
    "refunded": 3,
}

PAYABLE_APPOINTMENT_STATUSES = ("pending_payment", "scheduled")


def commit(context: str):
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise TransientInfraError(f"Could not store {context}") from exc


def status_for_code(status_code) -> str:
    return STATUS_BY_CODE.get(str(status_code).strip(), "unknown")


def can_transition(current: str, new: str) -> bool:
    if current == new:
        return False
    current_rank = STATUS_RANK.get(current, 0)
    new_rank = STATUS_RANK[new]
    if new_rank > current_rank:
        return True
    return new_rank == current_rank and current_rank < STATUS_RANK["completed"]


def get_payment(payment_id) -> Payment:
    payment = db.session.get(Payment, payment_id) if payment_id is not None else None
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment


def initiate(appointment_id, patient_id) -> Payment:
    """
    Creates a pending payment for the appointment's consultation fee.
    Older pending payments for the same appointment are cancelled so the
    stale-payment sweep never promotes an abandoned checkout.
    """
    appointment = db.session.get(Appointment, appointment_id) if appointment_id else None
    if appointment is None:
        raise NotFoundError("Appointment not found")
    if appointment.patient_id != patient_id:
        raise AuthorizationError("Not authorized")
    if appointment.payment_status in ("paid", "not_required"):
        raise ConflictError(f"Appointment payment is {appointment.payment_status}")
    if appointment.status not in PAYABLE_APPOINTMENT_STATUSES:
        raise ConflictError(f"Appointment is {appointment.status}")
    if appointment.consultation_fee is None or appointment.consultation_fee <= 0:
        raise ValidationError("Appointment has no payable fee")

    superseded = Payment.query.filter_by(appointment_id=appointment.id, status="pending").all()
    for old in superseded:
        old.status = "cancelled"

    payment = Payment(
        appointment_id=appointment.id,
        patient_id=patient_id,
        doctor_id=appointment.doctor_id,
        amount=appointment.consultation_fee,
        currency=current_app.config.get("PAYHERE_CURRENCY", "LKR"),
        method="payhere",
        status="pending",
    )
    db.session.add(payment)
    commit("payment")

    log_event(
        "PAYMENT_INITIATED",
        user_id=patient_id,
        entity="payment",
        entity_id=payment.id,
        metadata={
            "appointment_id": appointment.id,
            "amount": f"{payment.amount:.2f}",
            "superseded": [p.id for p in superseded],
        },
    )
    return payment


def guarded_update(model, row_id, expected: dict, values: dict, context: str) -> bool:
    """
    Compare-and-set: writes ``values`` only while the row still matches
    ``expected`` and commits. Returns False when a concurrent writer moved
    the row first.
    """
    try:
        updated = (
            model.query
            .filter_by(id=row_id, **expected)
            .update(values, synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise TransientInfraError(f"Could not store {context}") from exc
    return updated == 1


def _ignore(payment: Payment, new_status: str, raw_payload):
    log_event(
        "PAYMENT_NOTIFY_IGNORED",
        entity="payment",
        entity_id=payment.id,
        metadata={
            "current_status": payment.status,
            "notified_status": new_status,
            "payload": raw_payload,
        },
    )
    current_app.logger.info(
        "Ignoring %s notification for payment %s (already %s)",
        new_status, payment.id, payment.status,
    )
    return payment, False


def apply_notification(payment_id, status_code, external_ref, raw_payload):
    """
    Applies a verified gateway notification. Returns ``(payment, applied)``;
    ``applied`` is False when the notification was a duplicate or stale,
    including when a concurrent delivery for the same payment won the write.
    """
    payment = get_payment(payment_id)
    new_status = status_for_code(status_code)

    if not can_transition(payment.status, new_status):
        return _ignore(payment, new_status, raw_payload)

    previous = payment.status
    values = {"status": new_status, "gateway_response": json.dumps(raw_payload, default=str)}
    if new_status == "completed":
        values["payment_reference"] = external_ref or payment.payment_reference
        values["payment_date"] = datetime.utcnow()

    if not guarded_update(Payment, payment.id, {"status": previous}, values, f"payment {payment.id}"):
        # the commit expired the instance; attributes now show the winner's write
        return _ignore(payment, new_status, raw_payload)

    log_event(
        "PAYMENT_NOTIFY_APPLIED",
        entity="payment",
        entity_id=payment.id,
        metadata={"from": previous, "to": new_status, "payment_reference": payment.payment_reference},
    )
    current_app.logger.info("Payment %s moved %s -> %s", payment.id, previous, new_status)
    return payment, True


def settle_stale(payment: Payment) -> Payment:
    """Presumes a long-pending payment succeeded upstream (lost webhook)."""
    if payment.status != "pending":
        raise ConflictError(f"Payment {payment.id} is {payment.status}")

    values = {
        "status": "completed",
        "payment_reference": payment.payment_reference or f"MANUAL-{payment.id}",
        "payment_date": payment.payment_date or datetime.utcnow(),
    }
    if not guarded_update(Payment, payment.id, {"status": "pending"}, values, f"payment {payment.id}"):
        raise ConflictError(f"Payment {payment.id} changed while settling")

    log_event(
        "PAYMENT_SETTLED_STALE",
        entity="payment",
        entity_id=payment.id,
        metadata={"payment_reference": payment.payment_reference, "age_seconds": _age_seconds(payment)},
    )
    return payment


def _age_seconds(payment: Payment) -> int:
    return int((datetime.utcnow() - payment.created_at).total_seconds())


def manual_update(appointment_id, status="completed", reference=None) -> Payment:
    """
    Administrative override: sets the appointment's latest payment to
    ``status`` (creating a completed cash-desk record when none exists).
    Bypasses the notification lattice.
    """
    if status not in PAYMENT_STATUSES:
        raise ValidationError(f"Invalid payment status: {status!r}")

    appointment = db.session.get(Appointment, appointment_id) if appointment_id else None
    if appointment is None:
        raise NotFoundError("Appointment not found")

    now = datetime.utcnow()
    payment = (
        Payment.query
        .filter_by(appointment_id=appointment.id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .first()
    )
    if payment is None:
        payment = Payment(
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            doctor_id=appointment.doctor_id,
            amount=appointment.consultation_fee,
            currency=current_app.config.get("PAYHERE_CURRENCY", "LKR"),
            method="cash",
        )
        db.session.add(payment)

    payment.status = status
    payment.payment_reference = reference or payment.payment_reference or f"MANUAL-{appointment.id}"
    if status == "completed":
        payment.payment_date = payment.payment_date or now
    elif status == "refunded":
        payment.refund_date = now
        payment.refund_amount = payment.amount
    commit(f"payment {payment.id}")
    return payment
