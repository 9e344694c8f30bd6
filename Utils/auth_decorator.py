# Utils/auth_decorator.py
from functools import wraps
from bson import ObjectId
from bson.errors import InvalidId
from flask import request, current_app

from Utils.appError import Unauthorized, Forbidden
from Utils.jwt_utils import decode_token
from Models.userModel import User, role_of


def _extract_token():
    auth_header = request.headers.get("Authorization")
    token = None

    # Prefer Authorization header if present and well-formed
    if auth_header:
        try:
            token_type, token_val = auth_header.split(" ")
            if token_type.lower() == "bearer" and token_val:
                token = token_val
        except ValueError:
            pass

    # Fallback to cookies
    if not token:
        token = request.cookies.get("access_token")

    return token


def _user_from_token(token):
    decoded = decode_token(token, current_app.config.get("JWT_SECRET"))
    if not decoded:
        return None

    try:
        user_id = ObjectId(decoded.get("user_id"))
    except (InvalidId, TypeError):
        return None

    return User.objects(id=user_id, active=True).first()


def token_required(f):
    """Ensure that a valid JWT is present and pass the user as first argument."""
    @wraps(f)
    def decorated(*args, **kwargs):
        token = _extract_token()
        if not token:
            raise Unauthorized("Authorization token missing")

        user = _user_from_token(token)
        if not user:
            raise Unauthorized("Invalid or expired token")

        return f(user, *args, **kwargs)

    return decorated


def optional_user(f):
    """Like token_required, but anonymous callers get ``None`` instead of a 401."""
    @wraps(f)
    def decorated(*args, **kwargs):
        token = _extract_token()
        user = _user_from_token(token) if token else None
        return f(user, *args, **kwargs)

    return decorated


def roles_required(*allowed_roles):
    """
    Restrict access to users with specific roles.
    Example:
        @roles_required("admin", "security")
        def update_report(user, report_ref): ...
    """
    def wrapper(f):
        @wraps(f)
        @token_required
        def decorated(user, *args, **kwargs):
            if role_of(user) not in allowed_roles:
                raise Forbidden(f"Access denied. Requires role(s): {', '.join(allowed_roles)}")

            return f(user, *args, **kwargs)

        return decorated
    return wrapper
