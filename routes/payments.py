import os
from datetime import timedelta

from flask import Blueprint, Response, current_app, g, jsonify, request, send_file

from models import db
from models.audit_log import AuditLog
from models.payment import Payment
from security.payhere import (
    compute_hash,
    format_amount,
    parse_notification,
    payment_id_from_order,
    verify_notification_hash,
)
from security.rbac import has_role, login_required, require_roles, ROLE_ADMIN
from utils import notifications, payment_ledger, reconciler
from utils.audit import log_event
from utils.errors import AuthenticityError, NotFoundError, PaymentError, ValidationError
from utils.receipts import receipt_path, render_receipt

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


def _plain(body: str, status: int):
    # PayHere only looks at the status line; keep bodies terse
    return Response(body, status=status, mimetype="text/plain")


def _checkout_url() -> str:
    cfg = current_app.config
    return cfg["PAYHERE_SANDBOX_URL"] if cfg.get("PAYHERE_SANDBOX") else cfg["PAYHERE_LIVE_URL"]


def _environment() -> str:
    return "sandbox" if current_app.config.get("PAYHERE_SANDBOX") else "live"


def _can_access(payment: Payment) -> bool:
    return payment.patient_id == g.user.id or has_role(ROLE_ADMIN)


def _checkout_form(payment: Payment) -> dict:
    """Fields the client posts to the PayHere checkout page."""
    cfg = current_app.config
    appointment = payment.appointment
    patient = appointment.patient
    doctor = appointment.doctor

    names = (patient.full_name or "").split()
    amount = format_amount(payment.amount)
    merchant_id = cfg["PAYHERE_MERCHANT_ID"]

    return {
        "merchant_id": merchant_id,
        "return_url": f"{cfg['CLIENT_URL'].rstrip('/')}/payment/success",
        "cancel_url": f"{cfg['CLIENT_URL'].rstrip('/')}/payment/cancel",
        "notify_url": f"{cfg['SERVER_URL'].rstrip('/')}/payments/notify",
        "order_id": payment.order_id,
        "items": f"Consultation with {doctor.display_name}",
        "currency": payment.currency,
        "amount": amount,
        "first_name": names[0] if names else "Patient",
        "last_name": " ".join(names[1:]) or "Patient",
        "email": patient.email,
        "phone": patient.phone_number or "",
        "address": patient.address or "",
        "city": patient.city or cfg.get("PAYHERE_DEFAULT_CITY", "Colombo"),
        "country": cfg.get("PAYHERE_COUNTRY", "Sri Lanka"),
        "hash": compute_hash(merchant_id, payment.order_id, amount, payment.currency, cfg["PAYHERE_MERCHANT_SECRET"]),
    }


def _verify_authentic(notification: dict) -> None:
    cfg = current_app.config
    if notification["merchant_id"] != cfg["PAYHERE_MERCHANT_ID"]:
        raise AuthenticityError("Unknown merchant")
    if not verify_notification_hash(
        notification["merchant_id"],
        notification["order_id"],
        notification["amount"],
        notification["currency"],
        notification["status_code"],
        cfg["PAYHERE_MERCHANT_SECRET"],
        notification["md5sig"],
    ):
        raise AuthenticityError("Invalid hash")


# ---------- PATIENTS: start checkout ----------
@payments_bp.post("/initiate")
@login_required
def initiate_payment():
    data = request.get_json(silent=True) or {}
    appointment_id = data.get("appointment_id")
    if not appointment_id:
        return jsonify(error="appointment_id required"), 400

    try:
        payment = payment_ledger.initiate(appointment_id, g.user.id)
    except PaymentError as exc:
        return jsonify(error=exc.message), exc.status_code

    current_app.logger.info("Checkout started for %s (%s)", payment.order_id, _environment())
    return jsonify(
        payment_id=payment.id,
        environment=_environment(),
        payment_url=_checkout_url(),
        payment_data=_checkout_form(payment),
    ), 200


# ---------- GATEWAY: server-to-server notification ----------
@payments_bp.post("/notify")
def payhere_notify():
    try:
        notification = parse_notification(request.form)
    except ValidationError as exc:
        current_app.logger.warning("Rejected PayHere notification: %s", exc.message)
        return _plain(exc.message, exc.status_code)

    order_id = notification["order_id"]
    try:
        _verify_authentic(notification)
    except AuthenticityError as exc:
        current_app.logger.warning("PayHere notification for %s failed verification: %s", order_id, exc.message)
        log_event(
            "PAYMENT_HASH_MISMATCH",
            entity="payment",
            entity_id=order_id,
            metadata={
                "merchant_id": notification["merchant_id"],
                "status_code": notification["status_code"],
                "amount": notification["amount"],
            },
        )
        return _plain("Invalid hash", exc.status_code)

    payment_id = payment_id_from_order(order_id)
    if payment_id is None:
        return _plain("Payment not found", 404)

    try:
        payment, _applied = payment_ledger.apply_notification(
            payment_id,
            notification["status_code"],
            notification["payment_id"],
            notification["raw"],
        )
    except NotFoundError:
        current_app.logger.error("PayHere notification for unknown order %s", order_id)
        return _plain("Payment not found", 404)
    except PaymentError as exc:
        current_app.logger.error("Could not apply notification for %s: %s", order_id, exc.message)
        return _plain("Error processing payment", 500)

    # duplicates included; a no-op once the appointment is confirmed
    if payment.status == "completed":
        try:
            appointment, confirmed_now = reconciler.confirm_from_payment(payment)
        except NotFoundError as exc:
            current_app.logger.error("Payment %s completed but %s", payment.id, exc.message)
            return _plain("OK", 200)
        except PaymentError as exc:
            current_app.logger.error("Could not confirm appointment for %s: %s", order_id, exc.message)
            return _plain("Error processing payment", 500)

        if confirmed_now:
            notifications.dispatch_confirmation(appointment, payment)

    return _plain("OK", 200)


# ---------- PATIENTS: poll after returning from checkout ----------
@payments_bp.post("/verify")
@login_required
def verify_payment():
    data = request.get_json(silent=True) or {}
    order_id = data.get("order_id")
    if not order_id:
        return jsonify(success=False, message="order_id required"), 400

    payment = db.session.get(Payment, payment_id_from_order(order_id) or 0)
    if payment is None or not _can_access(payment):
        return jsonify(success=False, message="Payment not found"), 404

    try:
        view = reconciler.reconcile(payment.id)
    except PaymentError as exc:
        return jsonify(success=False, message=exc.message), exc.status_code

    payment, appointment = view["payment"], view["appointment"]
    receipt = {
        "order_id": payment.order_id,
        "amount": f"{payment.amount:.2f}",
        "currency": payment.currency,
        "payment_reference": payment.payment_reference,
        "date": payment.payment_date.isoformat() if payment.payment_date else None,
        "status": payment.status,
    }

    if payment.status == "completed":
        return jsonify(
            success=True,
            message="Payment verified successfully",
            receipt=receipt,
            appointment=appointment.to_dict() if appointment else None,
        ), 200
    if payment.status == "pending":
        return jsonify(success=True, message="Payment is still being processed", receipt=receipt), 200
    return jsonify(success=False, message=f"Payment {payment.status}", receipt=receipt), 200


# ---------- PATIENTS: history and receipts ----------
@payments_bp.get("")
@login_required
def my_payments():
    rows = (
        Payment.query
        .filter_by(patient_id=g.user.id)
        .order_by(Payment.created_at.desc())
        .all()
    )
    return jsonify([p.to_dict() for p in rows]), 200


@payments_bp.get("/<int:payment_id>/receipt")
@login_required
def download_receipt(payment_id: int):
    payment = db.session.get(Payment, payment_id)
    if payment is None or not _can_access(payment):
        return jsonify(error="Payment not found"), 404
    if payment.status not in ("completed", "refunded"):
        return jsonify(error="Receipt available once payment completes"), 409

    path = receipt_path(payment)
    if not os.path.exists(path):
        path = render_receipt(payment, payment.appointment, payment.doctor)
        log_event("RECEIPT_GENERATED", user_id=g.user.id, entity="payment", entity_id=payment.id)

    return send_file(
        path,
        mimetype="application/pdf",
        as_attachment=True,
        download_name=f"receipt-{payment.order_id}.pdf",
    )


# ---------- ADMIN: reconciliation ----------
@payments_bp.post("/fix-pending")
@require_roles(ROLE_ADMIN)
def fix_pending_payments():
    data = request.get_json(silent=True) or {}
    raw_minutes = data.get("older_than_minutes")
    if raw_minutes is None:
        raw_minutes = current_app.config.get("PENDING_RECONCILE_MINUTES", 5)
    try:
        minutes = int(raw_minutes)
    except (TypeError, ValueError):
        return jsonify(error="older_than_minutes must be an integer"), 400
    if minutes < 0:
        return jsonify(error="older_than_minutes must be >= 0"), 400

    outcome = reconciler.bulk_reconcile(timedelta(minutes=minutes))
    log_event(
        "PAYMENTS_BULK_RECONCILED",
        user_id=g.user.id,
        metadata={"older_than_minutes": minutes, "fixed": outcome["fixed_count"]},
    )
    return jsonify(
        success=True,
        message=f"Fixed {outcome['fixed_count']} pending payments",
        total_pending=outcome["total_pending"],
        fixed=outcome["fixed_count"],
        results=outcome["results"],
    ), 200


@payments_bp.post("/manual-update/<int:appointment_id>")
@require_roles(ROLE_ADMIN)
def manual_payment_update(appointment_id: int):
    data = request.get_json(silent=True) or {}
    status = data.get("status") or "completed"
    reference = (data.get("payment_reference") or "").strip() or None

    try:
        payment = payment_ledger.manual_update(appointment_id, status=status, reference=reference)
        if payment.status == "completed":
            appointment, _ = reconciler.confirm_from_payment(payment)
        elif payment.status == "refunded":
            appointment = reconciler.mark_refunded(payment)
        else:
            appointment = reconciler.release_payment(payment)
    except PaymentError as exc:
        return jsonify(error=exc.message), exc.status_code

    log_event(
        "PAYMENT_MANUAL_UPDATE",
        user_id=g.user.id,
        entity="payment",
        entity_id=payment.id,
        metadata={"appointment_id": appointment_id, "status": payment.status, "reference": payment.payment_reference},
    )
    return jsonify(
        message="Payment status updated successfully",
        appointment={"id": appointment.id, "status": appointment.status, "payment_status": appointment.payment_status},
        payment={"id": payment.id, "status": payment.status, "reference": payment.payment_reference},
    ), 200


@payments_bp.get("/<int:payment_id>/audit")
@require_roles(ROLE_ADMIN)
def payment_audit_trail(payment_id: int):
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        return jsonify(error="Payment not found"), 404

    # hash mismatches are recorded against the order id, not the payment id
    rows = AuditLog.trail("payment", payment.id) + AuditLog.trail("payment", payment.order_id)
    rows.sort(key=lambda r: (r.timestamp, r.id))
    return jsonify(
        payment=payment.to_dict(),
        events=[
            {
                "id": r.id,
                "created_at": r.timestamp.isoformat(),
                "user_id": r.user_id,
                "action": r.action,
                "details": r.details,
            }
            for r in rows
        ],
    ), 200
