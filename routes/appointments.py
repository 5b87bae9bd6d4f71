import re
from datetime import date

from flask import Blueprint, request, jsonify, g

from models import db
from models.appointment import Appointment, CONSULTATION_TYPES
from models.doctor import Doctor
from models.hospital import Hospital
from security.rbac import login_required, has_role, ROLE_ADMIN
from utils.audit import log_event

appointments_bp = Blueprint("appointments", __name__, url_prefix="/appointments")

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _can_view(appointment: Appointment) -> bool:
    if has_role(ROLE_ADMIN) or appointment.patient_id == g.user.id:
        return True
    return appointment.doctor is not None and appointment.doctor.user_id == g.user.id


# ---------- PATIENTS: book appointment ----------
@appointments_bp.post("")
@login_required
def create_appointment():
    data = request.get_json(silent=True) or {}
    doctor_id = data.get("doctor_id")
    hospital_id = data.get("hospital_id")
    date_str = data.get("appointment_date")
    time_str = (data.get("appointment_time") or "").strip()
    consultation_type = data.get("consultation_type")
    reason = (data.get("reason") or "").strip()

    if not doctor_id or not date_str or not time_str or not reason:
        return jsonify(error="doctor_id, appointment_date, appointment_time, reason are required"), 400
    if consultation_type not in CONSULTATION_TYPES:
        return jsonify(error=f"consultation_type must be one of {', '.join(CONSULTATION_TYPES)}"), 400
    if len(reason) > 200:
        return jsonify(error="Reason cannot exceed 200 characters"), 400
    if not _TIME_RE.match(time_str):
        return jsonify(error="Invalid time. Use HH:MM"), 400

    try:
        day = date.fromisoformat(date_str)
    except (TypeError, ValueError):
        return jsonify(error="Invalid date. Use YYYY-MM-DD"), 400
    if day < date.today():
        return jsonify(error="Cannot book past dates"), 400

    doctor = db.session.get(Doctor, doctor_id)
    if not doctor or not doctor.is_active:
        return jsonify(error="Doctor not found"), 404

    hospital = None
    if consultation_type == "in_person":
        if not hospital_id:
            return jsonify(error="hospital_id required for in-person consultations"), 400
        hospital = db.session.get(Hospital, hospital_id)
        if not hospital or not hospital.is_active:
            return jsonify(error="Hospital not found"), 404

    fee = doctor.fee_for(consultation_type)
    payable = fee is not None and fee > 0

    appointment = Appointment(
        patient_id=g.user.id,
        doctor_id=doctor.id,
        hospital_id=hospital.id if hospital else None,
        appointment_date=day,
        appointment_time=time_str,
        consultation_type=consultation_type,
        reason=reason,
        consultation_fee=fee or 0,
        status="pending_payment" if payable else "scheduled",
        payment_status="pending" if payable else "not_required",
    )
    db.session.add(appointment)
    db.session.commit()

    log_event("APPOINTMENT_CREATE", user_id=g.user.id, entity="appointment", entity_id=appointment.id,
              metadata={"doctor_id": doctor.id, "fee": f"{appointment.consultation_fee:.2f}"})
    return jsonify(appointment.to_dict()), 201


# ---------- PATIENTS: my appointments ----------
@appointments_bp.get("/me")
@login_required
def my_appointments():
    status = request.args.get("status")
    q = Appointment.query.filter_by(patient_id=g.user.id)
    if status:
        q = q.filter_by(status=status)
    rows = q.order_by(Appointment.appointment_date.desc(), Appointment.appointment_time.desc()).all()
    return jsonify([a.to_dict() for a in rows]), 200


@appointments_bp.get("/<int:appointment_id>")
@login_required
def get_appointment(appointment_id: int):
    appointment = db.session.get(Appointment, appointment_id)
    if not appointment or not _can_view(appointment):
        return jsonify(error="Appointment not found"), 404
    return jsonify(appointment.to_dict()), 200
