from decimal import Decimal, InvalidOperation

from flask import Blueprint, request, jsonify, g
from sqlalchemy.exc import IntegrityError

from models import db
from models.doctor import Doctor
from models.hospital import Hospital
from models.user import User, Role
from security.rbac import require_roles, ROLE_ADMIN, ROLE_DOCTOR
from utils.audit import log_event

doctors_bp = Blueprint("doctors", __name__)


def _parse_fee(value):
    try:
        fee = Decimal(str(value if value is not None else 0))
    except InvalidOperation:
        return None
    if not fee.is_finite() or fee < 0:
        return None
    return fee.quantize(Decimal("0.01"))


def _doctor_dict(d: Doctor):
    return {
        "id": d.id,
        "user_id": d.user_id,
        "name": d.display_name,
        "specialization": d.specialization,
        "license_number": d.license_number,
        "experience_years": d.experience_years,
        "in_person_fee": f"{d.in_person_fee:.2f}",
        "remote_fee": f"{d.remote_fee:.2f}",
    }


# ---------- ADMIN: manage hospitals ----------
@doctors_bp.post("/hospitals")
@require_roles(ROLE_ADMIN)
def create_hospital():
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    if not name:
        return jsonify(error="Hospital name required"), 400

    h = Hospital(
        name=name,
        address=(data.get("address") or "").strip() or None,
        city=(data.get("city") or "").strip() or None,
        phone_number=(data.get("phone_number") or "").strip() or None,
    )
    db.session.add(h)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify(error="Hospital name already exists"), 409

    log_event("HOSPITAL_CREATE", user_id=g.user.id, entity="hospital", entity_id=h.id)
    return jsonify(id=h.id, name=h.name), 201


@doctors_bp.get("/hospitals")
def list_hospitals():
    rows = Hospital.query.filter_by(is_active=True).order_by(Hospital.name.asc()).all()
    return jsonify([
        {"id": h.id, "name": h.name, "address": h.address, "city": h.city, "phone_number": h.phone_number}
        for h in rows
    ]), 200


# ---------- ADMIN: register doctors ----------
@doctors_bp.post("/doctors")
@require_roles(ROLE_ADMIN)
def create_doctor():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    specialization = (data.get("specialization") or "").strip()
    license_number = (data.get("license_number") or "").strip()

    if not email or not specialization or not license_number:
        return jsonify(error="email, specialization, license_number are required"), 400

    in_person_fee = _parse_fee(data.get("in_person_fee"))
    remote_fee = _parse_fee(data.get("remote_fee"))
    if in_person_fee is None or remote_fee is None:
        return jsonify(error="Fees must be non-negative numbers"), 400

    user = User.query.filter_by(email=email).first()
    if not user:
        return jsonify(error="User not found"), 404

    doctor = Doctor(
        user_id=user.id,
        specialization=specialization,
        license_number=license_number,
        experience_years=int(data.get("experience_years") or 0),
        in_person_fee=in_person_fee,
        remote_fee=remote_fee,
    )
    db.session.add(doctor)

    doctor_role = Role.query.filter_by(name=ROLE_DOCTOR).first()
    if doctor_role and doctor_role not in user.roles:
        user.roles.append(doctor_role)

    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify(error="Doctor or licence already registered"), 409

    log_event("DOCTOR_CREATE", user_id=g.user.id, entity="doctor", entity_id=doctor.id)
    return jsonify(_doctor_dict(doctor)), 201


@doctors_bp.get("/doctors")
def list_doctors():
    specialization = request.args.get("specialization")
    q = Doctor.query.filter_by(is_active=True)
    if specialization:
        q = q.filter_by(specialization=specialization)
    return jsonify([_doctor_dict(d) for d in q.order_by(Doctor.id.asc()).all()]), 200
