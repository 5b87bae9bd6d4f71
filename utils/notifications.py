import threading

from flask import current_app

from utils.emailer import send_email
from utils.errors import EmailDeliveryError

CONSULTATION_LABELS = {"in_person": "In-person", "remote": "Online"}


def build_confirmation_message(appointment, payment):
    """Returns (address, subject, body) for the booking confirmation email."""
    patient = appointment.patient
    doctor = appointment.doctor
    patient_name = (patient.full_name if patient and patient.full_name else "Patient")

    lines = [
        f"Dear {patient_name},",
        "",
        "Your payment was received and your appointment is confirmed.",
        "",
        f"Appointment ID: {appointment.id}",
        f"Doctor: {doctor.display_name if doctor else 'Doctor'}",
        f"Date: {appointment.appointment_date.strftime('%d %b %Y')}",
        f"Time: {appointment.appointment_time}",
        f"Consultation: {CONSULTATION_LABELS.get(appointment.consultation_type, appointment.consultation_type)}",
    ]
    if appointment.hospital is not None:
        lines.append(f"Hospital: {appointment.hospital.name}")
    lines += [
        "",
        f"Amount paid: {payment.currency} {payment.amount:.2f}",
        f"Payment reference: {payment.payment_reference or payment.order_id}",
        "",
        "Please arrive 10 minutes before your slot.",
    ]

    subject = "Appointment confirmed - payment received"
    return (patient.email if patient else None), subject, "\n".join(lines)


def _deliver(address, subject, body, appointment_id) -> dict:
    try:
        ok, error = send_email(address, subject, body)
        if not ok:
            raise EmailDeliveryError(error or "unknown error")
    except Exception as exc:
        current_app.logger.error("Confirmation email for appointment %s failed: %s", appointment_id, exc)
        return {"success": False, "error": str(exc)}

    current_app.logger.info("Confirmation email for appointment %s sent to %s", appointment_id, address)
    return {"success": True, "error": None}


def notify_confirmed(appointment, payment) -> dict:
    """Renders and sends the confirmation email. Never raises."""
    try:
        address, subject, body = build_confirmation_message(appointment, payment)
    except Exception as exc:
        current_app.logger.error("Could not render confirmation for appointment %s: %s", appointment.id, exc)
        return {"success": False, "error": str(exc)}
    return _deliver(address, subject, body, appointment.id)


def dispatch_confirmation(appointment, payment):
    """
    Fire-and-forget variant used by the webhook. The message is rendered
    here while the ORM objects are still bound to the request session; only
    the SMTP round-trip moves to a background thread.
    """
    if not current_app.config.get("EMAIL_ASYNC", True):
        return notify_confirmed(appointment, payment)

    try:
        address, subject, body = build_confirmation_message(appointment, payment)
    except Exception as exc:
        current_app.logger.error("Could not render confirmation for appointment %s: %s", appointment.id, exc)
        return None

    app = current_app._get_current_object()
    appointment_id = appointment.id

    def _run():
        with app.app_context():
            _deliver(address, subject, body, appointment_id)

    threading.Thread(target=_run, name=f"confirm-email-{appointment_id}", daemon=True).start()
    return None
