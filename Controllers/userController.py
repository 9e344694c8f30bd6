import logging
from flask import make_response, jsonify
from mongoengine import Q, ValidationError

from Models.idReportModel import CLAIMABLE_STATUSES, IDReport, ReportStatus
from Models.userModel import Campus, User
from Models.verificationModel import ACTIVE_STATUSES, Verification
from Utils.appError import Conflict, InvalidState, Unauthorized, ValidationFailed
from Utils.auth_decorator import token_required
from Utils.http import json_body, request_meta, services, success
from Utils.identifiers import format_phone_number

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("first_name", "last_name", "phone", "campus", "department")
MIN_PASSWORD_LENGTH = 6


@token_required
def get_profile(user):
    return success(user.to_json())


@token_required
def update_profile(user):
    data = json_body()
    changes = {field: data[field] for field in PROFILE_FIELDS if data.get(field) is not None}

    if "campus" in changes and changes["campus"] not in [c.value for c in Campus]:
        raise ValidationFailed(f"Invalid campus '{changes['campus']}'")
    if "phone" in changes:
        changes["phone"] = format_phone_number(str(changes["phone"]).strip())
        if User.objects(Q(phone=changes["phone"]) & Q(id__ne=user.id)).first():
            raise Conflict("Another account already uses this phone number")

    before = {field: getattr(user, field) for field in changes}
    for field, value in changes.items():
        setattr(user, field, value)
    try:
        user.save()
    except ValidationError as e:
        raise ValidationFailed(str(e))

    services()["audit"].record(
        "update_user", user, "user", user.id,
        before_state=before, after_state=changes,
        request_meta=request_meta(), tags=["profile_update"],
    )
    return success(user.to_json())


@token_required
def change_password(user):
    data = json_body()
    current = data.get("current_password") or ""
    new = data.get("new_password") or ""

    if len(new) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"New password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not current or not user.correct_password(current):
        raise Unauthorized("Invalid current password")

    user.password = new
    user.save()

    services()["audit"].record(
        "change_password", user, "user", user.id,
        request_meta=request_meta(), tags=["password_change"], is_sensitive=True,
    )
    logger.info(f"🔑 Password changed for user {user.id}")
    return success({"message": "Password updated successfully"})


@token_required
def delete_account(user):
    """Close the caller's own account.

    Refused while the user still has open reports or an open claim.
    """
    open_reports = IDReport.objects(
        Q(finder_id=user.id, status__in=list(CLAIMABLE_STATUSES))
        | Q(owner_id=user.id, status=ReportStatus.CLAIMED.value)
    ).count()
    open_claims = Verification.objects(claimant_id=user.id, status__in=list(ACTIVE_STATUSES)).count()
    if open_reports or open_claims:
        raise InvalidState(
            "Close your open reports and claims before deleting your account",
            details={"active_reports": open_reports, "active_verifications": open_claims},
        )

    services()["audit"].record(
        "delete_user", user, "user", user.id,
        before_state={"email": user.email, "role": getattr(user.role, "value", user.role)},
        request_meta=request_meta(), tags=["self_service"], is_sensitive=True,
    )
    user.delete()

    resp = make_response(jsonify({"success": True, "data": {}}))
    resp.delete_cookie("access_token")
    return resp, 200
