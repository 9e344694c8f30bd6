"""Who may see and change reports and verifications.

Every function here is a pure predicate or filter over already-loaded
documents; none of them touch the database. Actors are ``User`` documents,
or ``None`` for anonymous callers.
"""
from Models.idReportModel import CLAIMABLE_STATUSES
from Models.userModel import Campus, Role, role_of

REPORT_PRIVATE_FIELDS = (
    "id_number",
    "id_number_key",
    "finder_contact",
    "finder_contact_method",
    "security_notes",
    "access_log",
)

VERIFICATION_PRIVATE_FIELDS = (
    "phone_otp",
    "phone_otp_expires",
    "security_questions",
    "verification_token",
)

STAFF_ROLES = (Role.ADMIN.value, Role.SECURITY.value)


def _same_id(left, right) -> bool:
    return left is not None and right is not None and str(left) == str(right)


def _covers_campus(actor, campus) -> bool:
    return actor.campus == Campus.ALL.value or actor.campus == campus


def is_finder(report, actor) -> bool:
    return actor is not None and _same_id(report.finder_id, actor.id)


def is_owner(report, actor) -> bool:
    return actor is not None and _same_id(report.owner_id, actor.id)


# -------------------------
# reports
# -------------------------
def can_view_report(report, actor) -> bool:
    role = role_of(actor)
    if role == Role.ADMIN.value:
        return True
    if is_finder(report, actor) or is_owner(report, actor):
        return True
    if role == Role.SECURITY.value:
        return _covers_campus(actor, report.campus)
    return report.status in CLAIMABLE_STATUSES


def can_edit_report(actor) -> bool:
    return role_of(actor) in STAFF_ROLES


def can_delete_report(actor) -> bool:
    return role_of(actor) == Role.ADMIN.value


def filter_sensitive_fields(report, actor) -> dict:
    """Serialise a report for ``actor``, hiding what they may not see."""
    data = report.to_json()
    if role_of(actor) in STAFF_ROLES or is_finder(report, actor) or is_owner(report, actor):
        return data

    for field in REPORT_PRIVATE_FIELDS:
        data.pop(field, None)
    data["photos"] = [
        {"placeholder": photo.get("placeholder"), "uploaded_at": photo.get("uploaded_at")}
        for photo in data.get("photos", [])
    ]
    return data


# -------------------------
# verifications
# -------------------------
def can_view_verification(verification, report, actor) -> bool:
    role = role_of(actor)
    if role is None:
        return False
    if role == Role.ADMIN.value:
        return True
    if _same_id(verification.claimant_id, actor.id):
        return True
    if _same_id(verification.verified_by_guard_id, actor.id):
        return True
    if role == Role.SECURITY.value and report is not None:
        return _covers_campus(actor, report.campus)
    return False


def filter_verification_fields(verification, actor) -> dict:
    data = verification.to_json()
    if role_of(actor) in STAFF_ROLES:
        return data

    for field in VERIFICATION_PRIVATE_FIELDS:
        data.pop(field, None)
    data["documents"] = [
        {
            "document_type": doc.get("document_type"),
            "uploaded_at": doc.get("uploaded_at"),
            "verified": doc.get("verified"),
        }
        for doc in data.get("documents", [])
    ]
    return data


def can_review_documents(actor) -> bool:
    return role_of(actor) == Role.SECURITY.value


def can_review_campus(actor, campus) -> bool:
    """Security sees its own campus, admins see everything."""
    role = role_of(actor)
    if role == Role.ADMIN.value:
        return True
    return role == Role.SECURITY.value and _covers_campus(actor, campus)


# -------------------------
# users
# -------------------------
def can_manage_users(actor) -> bool:
    return role_of(actor) == Role.ADMIN.value


def can_view_stats(actor) -> bool:
    return role_of(actor) in STAFF_ROLES
