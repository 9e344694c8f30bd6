import csv
import io
import json
import logging
from collections import Counter as Tally
from datetime import datetime, timedelta
from flask import make_response, request
from mongoengine import Q, ValidationError

from Models.auditLogModel import AuditLog
from Models.idReportModel import CLAIMABLE_STATUSES, IDReport, ReportStatus
from Models.userModel import Campus, Role, Shift, User
from Models.verificationModel import ACTIVE_STATUSES, Verification
from Services.accessPolicy import can_manage_users
from Utils.appError import Forbidden, InvalidState, NotFound, ValidationFailed
from Utils.auth_decorator import roles_required
from Utils.hashid_utils import resolve_object_id
from Utils.http import request_meta, services, success, json_body
from Utils.identifiers import utcnow
from Utils.logger import summarize_log_dir, summary_totals

logger = logging.getLogger(__name__)

USER_UPDATABLE_FIELDS = (
    "role", "campus", "department", "is_verified", "active", "security_company", "shift",
)
USER_CHOICES = {"role": Role, "campus": Campus, "shift": Shift}
EXPORT_TYPES = ("reports", "users", "verifications", "audit")
# Never leaves the server, even in an export
STATE_SECRETS = ("password", "phone_otp", "verification_token")


def _page_args(default_limit):
    try:
        page = max(int(request.args.get("page", 1)), 1)
        limit = min(max(int(request.args.get("limit", default_limit)), 1), 100)
    except ValueError:
        raise ValidationFailed("page and limit must be integers")
    return page, limit


def _pagination(total, page, limit):
    pagination = {"total": total, "page": page, "limit": limit, "pages": -(-total // limit)}
    if page * limit < total:
        pagination["next"] = {"page": page + 1}
    if page > 1:
        pagination["prev"] = {"page": page - 1}
    return pagination


def _load_user(user_id):
    oid = resolve_object_id(user_id)
    target = User.objects(id=oid).first() if oid else None
    if not target:
        raise NotFound("User not found")
    return target


def _parse_day(value, name):
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise ValidationFailed(f"{name} must be a YYYY-MM-DD date")


def _scrub(state):
    return {k: v for k, v in (state or {}).items() if k not in STATE_SECRETS}


# =============================
# Dashboard
# =============================
@roles_required("admin")
def dashboard(user):
    since = utcnow() - timedelta(days=7)

    recent = {}
    for report in IDReport.objects(created_at__gte=since).only("created_at", "status"):
        day = recent.setdefault(report.created_at.strftime("%Y-%m-%d"), {"total": 0, "statuses": Tally()})
        day["total"] += 1
        day["statuses"][report.status] += 1

    user_stats = Tally(getattr(u.role, "value", u.role) for u in User.objects.only("role"))
    verification_stats = Tally(v.status for v in Verification.objects.only("status"))
    stats = services()["registry"].get_stats(user)

    return success({
        "recent_reports": {
            day: {"total": v["total"], "statuses": dict(v["statuses"])}
            for day, v in sorted(recent.items(), reverse=True)
        },
        "user_stats": dict(user_stats),
        "report_stats": stats,
        "verification_stats": dict(verification_stats),
        "pending_approvals": Verification.objects(status="in_progress", method="document_upload").count(),
        "recent_activity": [e.to_json() for e in AuditLog.objects.order_by("-created_at").limit(10)],
        "summary": {
            "total_users": sum(user_stats.values()),
            "total_reports": stats["total"],
            "active_verifications": sum(verification_stats[s] for s in ACTIVE_STATUSES),
        },
    })


# =============================
# Users
# =============================
@roles_required("admin")
def list_users(user):
    page, limit = _page_args(20)
    query = Q()
    if request.args.get("role"):
        query &= Q(role=request.args["role"])
    if request.args.get("campus"):
        query &= Q(campus=request.args["campus"])
    if request.args.get("is_verified") in ("true", "false"):
        query &= Q(is_verified=request.args["is_verified"] == "true")
    search = (request.args.get("search") or "").strip()
    if search:
        query &= (
            Q(first_name__icontains=search) | Q(last_name__icontains=search)
            | Q(email__icontains=search) | Q(phone__icontains=search)
            | Q(student_id__icontains=search) | Q(staff_id__icontains=search)
        )

    users = User.objects(query).order_by("-created_at")
    total = users.count()
    items = []
    for u in users.skip((page - 1) * limit).limit(limit):
        items.append({
            **u.to_json(),
            "reports_found": IDReport.objects(finder_id=u.id).count(),
            "reports_owned": IDReport.objects(owner_id=u.id).count(),
        })
    return success(items, count=len(items), pagination=_pagination(total, page, limit))


@roles_required("admin")
def update_user(user, user_id):
    if not can_manage_users(user):
        raise Forbidden("Only admins can manage users")
    target = _load_user(user_id)
    data = json_body()

    for field, enum_cls in USER_CHOICES.items():
        if data.get(field) is not None and data[field] not in [e.value for e in enum_cls]:
            raise ValidationFailed(f"Invalid {field} '{data[field]}'")
    if target.id == user.id and (
        data.get("active") is False or data.get("role") not in (None, Role.ADMIN.value)
    ):
        raise InvalidState("Admins cannot deactivate or demote their own account")

    before = {"role": getattr(target.role, "value", target.role), "campus": target.campus,
              "is_verified": target.is_verified, "active": target.active}

    for field in USER_UPDATABLE_FIELDS:
        if data.get(field) is None:
            continue
        setattr(target, field, Role(data[field]) if field == "role" else data[field])
    try:
        target.save()
    except ValidationError as e:
        raise ValidationFailed(str(e))

    services()["audit"].record(
        "update_user", user, "user", target.id,
        before_state=before,
        after_state={"role": getattr(target.role, "value", target.role), "campus": target.campus,
                     "is_verified": target.is_verified, "active": target.active},
        request_meta=request_meta(), tags=["admin_update"],
    )
    return success(target.to_json())


@roles_required("admin")
def delete_user(user, user_id):
    if not can_manage_users(user):
        raise Forbidden("Only admins can manage users")
    target = _load_user(user_id)
    if target.id == user.id:
        raise InvalidState("Admins cannot delete their own account")

    active_reports = IDReport.objects(
        Q(finder_id=target.id, status__in=list(CLAIMABLE_STATUSES))
        | Q(owner_id=target.id, status__in=list(CLAIMABLE_STATUSES) + [ReportStatus.CLAIMED.value])
    ).count()
    if active_reports:
        raise InvalidState(
            f"Cannot delete user with {active_reports} active reports. Please transfer or close reports first.",
            details={"active_reports": active_reports},
        )

    services()["audit"].record(
        "delete_user", user, "user", target.id,
        before_state={"email": target.email, "role": getattr(target.role, "value", target.role)},
        request_meta=request_meta(), tags=["user_deleted"], is_sensitive=True,
    )
    target.delete()
    logger.info(f"🗑️ User {target.id} deleted by admin {user.id}")
    return success({})


# =============================
# Audit trail / logs / export
# =============================
@roles_required("admin")
def audit_logs(user):
    page, limit = _page_args(50)
    user_id = request.args.get("user_id")
    end = _parse_day(request.args.get("end_date"), "end_date")
    total, entries = services()["audit"].recent(
        limit=limit,
        page=page,
        action=request.args.get("action"),
        resource_type=request.args.get("resource_type"),
        user_id=resolve_object_id(user_id) if user_id else None,
        start=_parse_day(request.args.get("start_date"), "start_date"),
        end=end + timedelta(days=1) if end else None,
    )
    items = []
    for entry in entries:
        data = entry.to_json()
        data["before_state"] = _scrub(data["before_state"])
        data["after_state"] = _scrub(data["after_state"])
        items.append(data)
    return success(items, count=len(items), pagination=_pagination(total, page, limit))


@roles_required("admin")
def log_summary(user):
    try:
        days = int(request.args.get("days", 7))
    except ValueError:
        raise ValidationFailed("days must be an integer")
    summary = summarize_log_dir(days=days)
    return success({"summary": dict(sorted(summary.items())), "totals": summary_totals(summary)})


def _export_rows(kind, query):
    if kind == "reports":
        rows = [r.to_json() for r in IDReport.objects(**query)]
        for row in rows:
            row.pop("access_log", None)
        return rows
    if kind == "users":
        return [u.to_json() for u in User.objects(**query)]
    if kind == "verifications":
        rows = [v.to_json() for v in Verification.objects(**query)]
        for row in rows:
            for secret in STATE_SECRETS:
                row.pop(secret, None)
        return rows
    rows = [e.to_json() for e in AuditLog.objects(**query)]
    for row in rows:
        row.pop("before_state", None)
        row.pop("after_state", None)
    return rows


def _to_csv(rows):
    if not rows:
        return ""
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=list(rows[0].keys()), extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow({
            k: json.dumps(v) if isinstance(v, (dict, list)) else ("" if v is None else v)
            for k, v in row.items()
        })
    return buffer.getvalue()


@roles_required("admin")
def export_data(user):
    kind = request.args.get("type")
    fmt = request.args.get("format", "json")
    if kind not in EXPORT_TYPES:
        raise ValidationFailed(f"type must be one of: {', '.join(EXPORT_TYPES)}")
    if fmt not in ("json", "csv"):
        raise ValidationFailed("format must be json or csv")

    query = {}
    start = _parse_day(request.args.get("start_date"), "start_date")
    end = _parse_day(request.args.get("end_date"), "end_date")
    if start:
        query["created_at__gte"] = start
    if end:
        query["created_at__lt"] = end + timedelta(days=1)

    rows = _export_rows(kind, query)
    services()["audit"].record(
        "export_data", user, kind, request_meta=request_meta(), tags=["data_export", fmt],
        is_sensitive=True,
    )

    if fmt == "csv":
        resp = make_response(_to_csv(rows))
        resp.headers["Content-Type"] = "text/csv"
        resp.headers["Content-Disposition"] = (
            f"attachment; filename={kind}-export-{utcnow().strftime('%Y%m%d%H%M%S')}.csv"
        )
        return resp
    return success(rows, count=len(rows))
