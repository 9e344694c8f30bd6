import logging
from flask import current_app, make_response, jsonify
from mongoengine import Q, ValidationError

from Models.userModel import Role, User, role_of
from Utils.appError import Conflict, Forbidden, Unauthorized, ValidationFailed
from Utils.auth_decorator import token_required
from Utils.http import json_body, request_meta, services, success
from Utils.identifiers import format_phone_number
from Utils.jwt_utils import create_access_token

logger = logging.getLogger(__name__)

# Admins are created from the CLI or by another admin
SELF_SERVICE_ROLES = (Role.STUDENT.value, Role.STAFF.value, Role.SECURITY.value)

PROFILE_FIELDS = (
    "first_name", "last_name", "campus", "department", "guard_id", "security_company", "shift",
)

COOKIE_KWARGS = {
    "httponly": True,
    "samesite": "Lax",
    "secure": False  # set True when using HTTPS
}


def _token_response(user, status_code, message):
    token = create_access_token(
        user.id, role_of(user),
        expires_in_minutes=current_app.config["JWT_EXPIRES_IN_MINUTES"],
        secret=current_app.config["JWT_SECRET"],
    )
    resp = make_response(jsonify({
        "success": True,
        "message": message,
        "data": {"token": token, "user": user.to_json()},
    }), status_code)
    resp.set_cookie("access_token", token, **COOKIE_KWARGS)
    return resp


# =====================================================
# REGISTER
# =====================================================
def register():
    data = json_body()
    email = (data.get("email") or "").strip().lower() or None
    phone = format_phone_number((data.get("phone") or "").strip()) or None
    student_id = (data.get("student_id") or "").strip() or None
    staff_id = (data.get("staff_id") or "").strip() or None
    role = (data.get("role") or Role.STUDENT.value).lower()

    if role not in SELF_SERVICE_ROLES:
        raise ValidationFailed(f"Role must be one of: {', '.join(SELF_SERVICE_ROLES)}")
    if not any([email, phone, student_id, staff_id]):
        raise ValidationFailed("Please provide at least one identifier (email, phone, or ID number)")
    if not data.get("password"):
        raise ValidationFailed("Password is required")

    clauses = [Q(**{field: value}) for field, value in (
        ("email", email), ("phone", phone), ("student_id", student_id), ("staff_id", staff_id)
    ) if value]
    query = clauses[0]
    for clause in clauses[1:]:
        query |= clause
    if User.objects(query).first():
        raise Conflict("An account already exists with these details")

    user = User(
        email=email,
        phone=phone,
        student_id=student_id,
        staff_id=staff_id,
        role=Role(role),
        password=data["password"],
        is_verified=True,
        **{field: data[field] for field in PROFILE_FIELDS if data.get(field)}
    )
    try:
        user.save()
    except ValidationError as e:
        raise ValidationFailed(str(e))

    services()["audit"].record(
        "create_user", user, "user", user.id,
        after_state={"role": role, "campus": user.campus},
        request_meta=request_meta(), tags=["registration"],
    )
    logger.info(f"✅ New {role} registered: {email or phone or student_id or staff_id}")
    return _token_response(user, 201, "User registered successfully.")


# =====================================================
# LOGIN
# =====================================================
def _find_login_user(identifier, role_hint):
    if role_hint == Role.SECURITY.value:
        # Guards sign in with their phone number
        return User.objects(phone=format_phone_number(identifier), role=Role.SECURITY).first()

    return User.objects(
        Q(role__in=[Role.STUDENT, Role.STAFF, Role.ADMIN]) & (
            Q(email=identifier.lower())
            | Q(phone=format_phone_number(identifier))
            | Q(student_id=identifier)
            | Q(staff_id=identifier)
        )
    ).first()


def login():
    data = json_body()
    identifier = (data.get("identifier") or data.get("email") or data.get("phone") or "").strip()
    password = data.get("password")

    if not identifier or not password:
        raise ValidationFailed("Please provide an identifier and password")

    user = _find_login_user(identifier, data.get("role"))
    if not user or not user.active:
        raise Unauthorized("Invalid credentials")

    if user.is_locked():
        raise Forbidden("Account is temporarily locked. Please try again later.", 423)

    audit = services()["audit"]
    if not user.correct_password(password):
        user.register_failed_login()
        audit.record("login", user, "user", user.id, request_meta=request_meta(), tags=["failed_login"])
        logger.warning(f"⚠️ Failed login for {identifier}")
        raise Unauthorized("Invalid credentials")

    user.reset_login_attempts()
    audit.record("login", user, "user", user.id, request_meta=request_meta(), tags=["successful_login"])
    logger.info(f"✅ Login successful for {identifier}")
    return _token_response(user, 200, "Login successful.")


# =====================================================
# LOGOUT / ME
# =====================================================
@token_required
def logout(user):
    services()["audit"].record("logout", user, "user", user.id, request_meta=request_meta())
    resp = make_response(jsonify({"success": True, "message": "Logout successful."}))
    resp.delete_cookie("access_token")
    logger.info(f"👋 {user.email or user.phone} logged out")
    return resp, 200


@token_required
def get_me(user):
    return success(user.to_json())


@token_required
def update_preferences(user):
    """Toggle email/SMS/push notification preferences."""
    data = json_body()
    prefs = user.notification_preferences
    for channel in ("email", "sms", "push"):
        if channel in data:
            if not isinstance(data[channel], bool):
                raise ValidationFailed(f"{channel} must be true or false")
            setattr(prefs, channel, data[channel])
    user.save()
    return success(user.to_json())
