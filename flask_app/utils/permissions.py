# flask_app/utils/permissions.py

from functools import wraps
from http import HTTPStatus

from flask import jsonify, request
from flask_login import current_user

from flask_app.models import User


def load_user_from_request(req):
    """Resolve ``Authorization: Bearer <token>`` to an active user, if any"""
    header = req.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return User.find_by_api_token(token.strip())


def is_admin(user):
    """Opaque capability check used by every sync entry point"""
    if not user or not user.is_authenticated:
        return False
    return bool(getattr(user, "is_admin", False))


def admin_api_required(f):
    """Reject unauthenticated (401) or non-admin (403) callers before the view runs"""

    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated:
            return jsonify({"ok": False, "error": "Authentication required."}), HTTPStatus.UNAUTHORIZED
        if not is_admin(current_user):
            return jsonify({"ok": False, "error": "Admin privileges required."}), HTTPStatus.FORBIDDEN
        return f(*args, **kwargs)

    return decorated_function


def current_actor():
    """Short label for audit fields; ``None`` outside a request"""
    if not request or not current_user.is_authenticated:
        return None
    return current_user.email
