from flask import Blueprint, request, jsonify, current_app, g

from models import db
from models.user import User, Role
from security.csrf import issue_csrf_token
from security.password import hash_password, verify_password, MIN_PASSWORD_LENGTH
from security.rbac import login_required, ROLE_PATIENT
from security.session import create_session, revoke_session, revoke_all_sessions
from utils.audit import log_event

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")

PROFILE_FIELDS = {"full_name": 120, "phone_number": 30, "address": 255, "city": 80}


def _is_valid_email(email: str) -> bool:
    return isinstance(email, str) and "@" in email and len(email) <= 255


def _user_dict(user: User):
    return {
        "id": user.id,
        "email": user.email,
        "roles": [r.name for r in user.roles],
        "full_name": user.full_name,
        "phone_number": user.phone_number,
        "address": user.address,
        "city": user.city,
    }


@auth_bp.post("/register")
def register():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    if not _is_valid_email(email):
        return jsonify(error="Invalid email"), 400
    if len(password) < MIN_PASSWORD_LENGTH:
        return jsonify(error=f"Password must be at least {MIN_PASSWORD_LENGTH} characters"), 400

    profile = {}
    for field, max_len in PROFILE_FIELDS.items():
        value = data.get(field)
        if value is None:
            continue
        if not isinstance(value, str) or len(value.strip()) > max_len:
            return jsonify(error=f"Invalid {field}"), 400
        profile[field] = value.strip() or None

    if User.query.filter_by(email=email).first():
        log_event("REGISTER_FAIL_EMAIL_EXISTS", metadata={"email": email})
        return jsonify(error="Email already registered"), 409

    user = User(email=email, password_hash=hash_password(password), **profile)
    db.session.add(user)
    db.session.flush()

    patient_role = Role.query.filter_by(name=ROLE_PATIENT).first()
    if patient_role:
        user.roles.append(patient_role)

    db.session.commit()
    log_event("REGISTER_SUCCESS", user_id=user.id)

    return jsonify(message="Registered successfully", id=user.id), 201


@auth_bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    user = User.query.filter_by(email=email).first()
    if not user or not verify_password(password, user.password_hash):
        log_event("LOGIN_FAIL", user_id=user.id if user else None, metadata={"email": email})
        return jsonify(error="Invalid credentials"), 401

    # Rotate: one live session per user
    revoked_count = revoke_all_sessions(user.id)
    raw_token = create_session(user.id)

    resp = jsonify(message="Login OK")
    resp.set_cookie(
        current_app.config.get("AUTH_COOKIE_NAME", "medibook_session"),
        raw_token,
        httponly=True,
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        max_age=current_app.config.get("SESSION_LIFETIME_SECONDS", 8 * 60 * 60),
        path="/",
    )
    resp = issue_csrf_token(resp)

    log_event("LOGIN_SUCCESS", user_id=user.id, metadata={"revoked_sessions": revoked_count})
    return resp, 200


@auth_bp.get("/me")
@login_required
def me():
    return jsonify(_user_dict(g.user)), 200


@auth_bp.post("/logout")
@login_required
def logout():
    cookie_name = current_app.config.get("AUTH_COOKIE_NAME", "medibook_session")
    revoke_session(request.cookies.get(cookie_name))
    log_event("LOGOUT", user_id=g.user.id)

    resp = jsonify(message="Logged out")
    resp.delete_cookie(cookie_name, path="/")
    return resp, 200
