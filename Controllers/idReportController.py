import logging
from datetime import datetime, timedelta
from flask import request

from Services.accessPolicy import can_view_report, filter_sensitive_fields
from Utils.appError import Forbidden, ValidationFailed
from Utils.auth_decorator import optional_user, roles_required, token_required
from Utils.hashid_utils import encode_object_id
from Utils.http import json_body, request_meta, services, success
from Utils.uploads import PHOTO_TYPES, delete_upload, store_upload

logger = logging.getLogger(__name__)

MAX_PHOTOS = 5


def _serialize(report, user) -> dict:
    data = filter_sensitive_fields(report, user)
    data["slug"] = encode_object_id(report.id)
    return data


def _form_payload() -> dict:
    """Report fields from a multipart form, with the photos stored first."""
    data = request.form.to_dict()
    if data.get("gps_lat") and data.get("gps_lng"):
        data["gps_coordinates"] = {"lat": data.pop("gps_lat"), "lng": data.pop("gps_lng")}

    files = [f for f in request.files.getlist("photos") if f and f.filename]
    if len(files) > MAX_PHOTOS:
        raise ValidationFailed(f"At most {MAX_PHOTOS} photos can be attached")

    data["photos"] = [store_upload(f, "report_photo", allowed_types=PHOTO_TYPES) for f in files]
    return data


def _parse_date(value, name, end_of_day=False):
    if not value:
        return None
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise ValidationFailed(f"{name} must be a YYYY-MM-DD date")
    return parsed + timedelta(days=1) - timedelta(microseconds=1) if end_of_day else parsed


# =====================================================
# CREATE
# =====================================================
@optional_user
def create_report(user):
    multipart = request.mimetype == "multipart/form-data"
    data = _form_payload() if multipart else json_body()

    try:
        report = services()["registry"].create_report(data, actor=user, request_meta=request_meta())
    except Exception:
        if multipart:
            for photo in data.get("photos", []):
                delete_upload(photo["public_id"])
        raise

    return success({
        "id": str(report.id),
        "slug": encode_object_id(report.id),
        "report_number": report.report_number,
        "status": report.status,
        "message": "ID reported successfully",
    }, 201)


# =====================================================
# SEARCH / LIST
# =====================================================
@optional_user
def search_reports(user):
    result = services()["registry"].search_reports(request.args.to_dict(), actor=user, request_meta=request_meta())
    return success(
        [_serialize(r, user) for r in result["results"]],
        count=len(result["results"]),
        total=result["total"],
        pagination=result["pagination"],
    )


@token_required
def my_reports(user):
    reports = services()["registry"].list_my_reports(user, request.args.get("type", "found"))
    return success([_serialize(r, user) for r in reports], count=len(reports))


@roles_required("admin", "security")
def get_stats(user):
    stats = services()["registry"].get_stats(
        user,
        campus=request.args.get("campus"),
        start=_parse_date(request.args.get("start_date"), "start_date"),
        end=_parse_date(request.args.get("end_date"), "end_date", end_of_day=True),
    )
    return success(stats)


# =====================================================
# SINGLE REPORT
# =====================================================
@optional_user
def get_report(user, report_ref):
    registry = services()["registry"]
    report = registry.resolve_report(report_ref)

    if not can_view_report(report, user):
        logger.warning(f"🔒 Access denied for report {report.report_number} to {getattr(user, 'id', 'guest')}")
        raise Forbidden("Not authorized to view this report")

    registry.record_access(report, user, "view_report")
    return success(_serialize(report, user))


@roles_required("admin", "security")
def update_report(user, report_ref):
    registry = services()["registry"]
    report = registry.resolve_report(report_ref)
    report = registry.update_status(report, json_body(), user, request_meta=request_meta())
    return success(_serialize(report, user))


@roles_required("admin")
def delete_report(user, report_ref):
    registry = services()["registry"]
    report = registry.resolve_report(report_ref)
    registry.delete_report(report, user, request_meta=request_meta())
    return success({})
