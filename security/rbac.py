from functools import wraps
from flask import g, jsonify

from security.session import get_session_from_request

ROLE_PATIENT = "PATIENT"
ROLE_DOCTOR = "DOCTOR"
ROLE_ADMIN = "ADMIN"
DEFAULT_ROLES = (ROLE_PATIENT, ROLE_DOCTOR, ROLE_ADMIN)


def load_current_user():
    sess = get_session_from_request()
    g.session = sess
    g.user = sess.user if sess else None


def has_role(role_name: str) -> bool:
    user = getattr(g, "user", None)
    return bool(user) and user.has_role(role_name)


def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            return jsonify(error="Authentication required"), 401
        return fn(*args, **kwargs)
    return wrapper


def require_roles(*role_names: str):
    """
    Usage: @require_roles("ADMIN")
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, "user", None)
            if user is None:
                return jsonify(error="Authentication required"), 401
            if not any(user.has_role(name) for name in role_names):
                return jsonify(error="Forbidden"), 403
            return fn(*args, **kwargs)
        return wrapper
    return decorator
