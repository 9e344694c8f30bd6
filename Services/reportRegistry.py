import logging
from collections import defaultdict

from bson import ObjectId
from mongoengine import ValidationError

from Models.counterModel import Counter
from Models.idReportModel import (
    CLAIMABLE_STATUSES, AccessLogEntry, CollectionPoint, ContactMethod, FinderType,
    GpsCoordinates, IDReport, IDType, ReportCampus, ReportPhoto, ReportStatus,
    ReportVerificationStatus, new_report
)
from Models.userModel import Campus, Role, User, role_of
from Models.verificationModel import ACTIVE_STATUSES, Verification
from Services.accessPolicy import can_delete_report, can_edit_report, can_view_stats
from Utils.appError import Conflict, Forbidden, InvalidState, NotFound, ValidationFailed
from Utils.hashid_utils import resolve_object_id
from Utils.identifiers import calculate_recovery_rate, normalize_id_number, utcnow
from Utils.uploads import delete_upload

logger = logging.getLogger(__name__)

REPORT_SEQUENCE = "id_reports"
MAX_PAGE_SIZE = 100
MY_REPORTS_LIMIT = 50

REQUIRED_FIELDS = (
    "id_type", "full_name", "id_number", "finder_type", "finder_contact",
    "finder_contact_method", "campus", "specific_location",
)

CHOICE_FIELDS = {
    "id_type": IDType,
    "finder_type": FinderType,
    "finder_contact_method": ContactMethod,
    "campus": ReportCampus,
}

UPDATABLE_FIELDS = (
    "status",
    "verification_status",
    "security_guard_id",
    "security_notes",
    "collection_point",
    "collection_notes",
)

UPDATE_CHOICES = {
    "status": ReportStatus,
    "verification_status": ReportVerificationStatus,
    "collection_point": CollectionPoint,
}


def _snapshot(report) -> dict:
    return {
        "status": report.status,
        "verification_status": report.verification_status,
        "security_guard_id": str(report.security_guard_id) if report.security_guard_id else None,
    }


def _choice_error(field, value, enum_cls):
    allowed = ", ".join(e.value for e in enum_cls)
    return f"Invalid {field} '{value}'. Allowed: {allowed}"


def _parse_positive_int(value, name, default, maximum=None):
    if value in (None, ""):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{name} must be an integer")
    if number < 1 or (maximum is not None and number > maximum):
        bound = f" and {maximum}" if maximum is not None else ""
        raise ValidationFailed(f"{name} must be between 1{bound}")
    return number


class ReportRegistry:
    """Owns found-ID reports: creation, lookup, staff updates and claiming."""

    def __init__(self, audit, notifier, notify_security=False, clock=utcnow):
        self.audit = audit
        self.notifier = notifier
        self.notify_security = notify_security
        self.clock = clock

    # ==================================================
    # CREATE
    # ==================================================
    def create_report(self, data: dict, actor=None, request_meta=None) -> IDReport:
        data = data or {}
        missing = [f for f in REQUIRED_FIELDS if not str(data.get(f) or "").strip()]
        if missing:
            raise ValidationFailed(
                f"Missing required fields: {', '.join(missing)}", details={"fields": missing}
            )

        invalid = {
            field: _choice_error(field, data[field], enum_cls)
            for field, enum_cls in CHOICE_FIELDS.items()
            if data[field] not in [e.value for e in enum_cls]
        }
        if invalid:
            raise ValidationFailed("Invalid report fields", details=invalid)

        id_key = normalize_id_number(data["id_number"])
        duplicate = IDReport.objects(id_number_key=id_key, status__in=list(CLAIMABLE_STATUSES)).first()
        if duplicate:
            raise Conflict(
                "This ID has already been reported as found",
                details={"report_number": duplicate.report_number},
            )

        fields = {
            "full_name": data["full_name"].strip(),
            "finder_type": data["finder_type"],
            "finder_contact": data["finder_contact"].strip(),
            "finder_contact_method": data["finder_contact_method"],
            "campus": data["campus"],
            "building": (data.get("building") or "").strip(),
            "specific_location": data["specific_location"].strip(),
            "security_notes": data.get("security_notes") or "",
            "status": ReportStatus.PENDING.value,
            "photos": [self._photo(p) for p in data.get("photos") or []],
        }
        gps = data.get("gps_coordinates")
        if gps:
            try:
                fields["gps_coordinates"] = GpsCoordinates(lat=float(gps["lat"]), lng=float(gps["lng"]))
            except (KeyError, TypeError, ValueError):
                raise ValidationFailed("gps_coordinates must contain numeric lat and lng")
        if data.get("found_at"):
            fields["found_at"] = data["found_at"]
        if actor is not None:
            fields["finder_id"] = actor.id

        sequence = Counter.next_value(REPORT_SEQUENCE)
        try:
            report = new_report(sequence, id_type=data["id_type"], id_number=data["id_number"], **fields)
            report.save()
        except ValidationError as e:
            raise ValidationFailed(str(e))

        logger.info(f"✅ Report {report.report_number} created at {report.campus}")
        self.audit.record(
            "create_report", actor, "report", report.id,
            after_state={
                "report_number": report.report_number,
                "id_type": report.id_type,
                "campus": report.campus,
                "status": report.status,
            },
            request_meta=request_meta, tags=["report_created"],
        )

        self.notifier.send_report_confirmation(
            report.finder_contact_method, report.finder_contact, report.report_number
        )
        if self.notify_security:
            for guard in self.campus_guards(report.campus, sms_only=True):
                self.notifier.send_guard_new_report(guard.phone, report.report_number, report.specific_location)
        self._alert_registered_owner(report)
        return report

    def _photo(self, photo) -> ReportPhoto:
        if not isinstance(photo, dict) or not photo.get("url"):
            raise ValidationFailed("Each photo needs a url")
        return ReportPhoto(
            url=photo["url"],
            public_id=photo.get("public_id"),
            placeholder=photo.get("placeholder"),
            uploaded_at=photo.get("uploaded_at") or self.clock(),
        )

    def _alert_registered_owner(self, report):
        """Let a registered user know an ID matching theirs turned up.

        The match is only a hint; ownership is decided by verification.
        """
        id_field = "student_id" if report.id_type == IDType.STUDENT.value else "staff_id"
        role = Role.STUDENT if report.id_type == IDType.STUDENT.value else Role.STAFF
        try:
            owner = User.objects(
                role=role, active=True,
                **{f"{id_field}__in": list({report.id_number, report.id_number_key})}
            ).first()
        except Exception as e:
            logger.warning(f"⚠️ Owner lookup failed for {report.report_number}: {e}")
            return
        if owner:
            self.notifier.send_owner_found_alert(owner, report.report_number, report.campus)

    @staticmethod
    def campus_guards(campus, sms_only=False):
        """Active guards covering ``campus`` with a phone on file.

        ``sms_only`` keeps just the guards who opted into SMS alerts.
        """
        query = {
            "role": Role.SECURITY,
            "active": True,
            "campus__in": [campus, Campus.ALL.value],
        }
        if sms_only:
            query["notification_preferences__sms"] = True
        return [g for g in User.objects(**query) if g.phone]

    # ==================================================
    # LOOKUP
    # ==================================================
    def get_report(self, report_id) -> IDReport:
        if isinstance(report_id, ObjectId):
            oid = report_id
        elif report_id and ObjectId.is_valid(str(report_id)):
            oid = ObjectId(str(report_id))
        else:
            raise NotFound("Report not found")

        report = IDReport.objects(id=oid).first()
        if not report:
            raise NotFound("Report not found")
        return report

    def resolve_report(self, ref) -> IDReport:
        """Look a report up by ObjectId or by its shareable slug."""
        oid = resolve_object_id(ref)
        if oid is None:
            raise NotFound("Report not found")
        return self.get_report(oid)

    def record_access(self, report, actor, action="view_report"):
        if actor is None:
            return
        now = self.clock()
        try:
            IDReport.objects(id=report.id).update_one(
                push__access_log=AccessLogEntry(user_id=actor.id, accessed_at=now, action=action),
                set__last_accessed=now,
            )
        except Exception as e:
            logger.warning(f"⚠️ Could not log access to {report.report_number}: {e}")

    def search_reports(self, filters: dict, actor=None, request_meta=None) -> dict:
        filters = filters or {}
        page = _parse_positive_int(filters.get("page"), "page", 1)
        limit = _parse_positive_int(filters.get("limit"), "limit", 10, MAX_PAGE_SIZE)

        query = {"status__in": list(CLAIMABLE_STATUSES)}
        status = filters.get("status")
        if status:
            if status not in CLAIMABLE_STATUSES:
                raise ValidationFailed(f"Search only covers {', '.join(CLAIMABLE_STATUSES)} reports")
            query["status__in"] = [status]
        for field in ("id_type", "campus"):
            if filters.get(field):
                query[field] = filters[field]
        if filters.get("name"):
            query["full_name__icontains"] = filters["name"].strip()
        if filters.get("id_number"):
            query["masked_id_number__icontains"] = filters["id_number"].strip()

        reports = IDReport.objects(**query).order_by("-created_at")
        total = reports.count()
        results = list(reports.skip((page - 1) * limit).limit(limit))

        pagination = {}
        if page * limit < total:
            pagination["next"] = {"page": page + 1, "limit": limit}
        if page > 1:
            pagination["prev"] = {"page": page - 1, "limit": limit}

        self.audit.record(
            "search_reports", actor, "report",
            after_state={"filters": {k: v for k, v in filters.items() if k not in ("page", "limit")}},
            request_meta=request_meta, tags=["search"],
        )
        return {"total": total, "page": page, "limit": limit, "pagination": pagination, "results": results}

    def list_my_reports(self, actor, kind="found"):
        if kind == "found":
            query = {"finder_id": actor.id}
        elif kind == "lost":
            query = {"owner_id": actor.id}
        else:
            raise ValidationFailed("type must be 'found' or 'lost'")
        return list(IDReport.objects(**query).order_by("-created_at").limit(MY_REPORTS_LIMIT))

    # ==================================================
    # STAFF UPDATES
    # ==================================================
    def update_status(self, report, changes: dict, actor, request_meta=None) -> IDReport:
        if not can_edit_report(actor):
            raise Forbidden("Not authorized to update reports")

        changes = changes or {}
        for field, enum_cls in UPDATE_CHOICES.items():
            value = changes.get(field)
            if value is not None and value not in [e.value for e in enum_cls]:
                raise ValidationFailed(_choice_error(field, value, enum_cls))

        before = _snapshot(report)
        now = self.clock()

        for field in UPDATABLE_FIELDS:
            if field not in changes or changes[field] is None:
                continue
            value = changes[field]
            if field == "security_guard_id":
                value = resolve_object_id(value)
                if value is None:
                    raise ValidationFailed("security_guard_id is not a valid id")
            setattr(report, field, value)

        if report.status != before["status"]:
            if report.status == ReportStatus.CLAIMED.value:
                report.claimed_at = now
            elif report.status == ReportStatus.RETURNED.value:
                report.collected_at = now

        if role_of(actor) == Role.SECURITY.value and not report.security_guard_id:
            report.security_guard_id = actor.id

        report.access_log.append(AccessLogEntry(user_id=actor.id, accessed_at=now, action="update_report"))
        report.last_accessed = now
        try:
            report.save()
        except ValidationError as e:
            raise ValidationFailed(str(e))

        self.audit.record(
            "update_report", actor, "report", report.id,
            before_state=before, after_state=_snapshot(report),
            request_meta=request_meta, tags=["report_updated"],
        )

        if before["status"] != ReportStatus.VERIFIED.value and report.status == ReportStatus.VERIFIED.value \
                and report.owner_id:
            owner = User.objects(id=report.owner_id).first()
            if owner:
                self.notifier.send_verification_complete(
                    owner.email, owner.first_name, report.report_number, report.campus,
                    _collection_label(report.collection_point),
                )
        return report

    # ==================================================
    # CLAIMING
    # ==================================================
    def complete_claim(self, report_id, claimant_id, claimed_method, guard_id=None,
                       actor=None, request_meta=None) -> IDReport:
        """Hand the report to a verified claimant.

        A single conditional find-and-modify: only a claimable report without
        an owner is updated, so of two racing claims exactly one wins.
        """
        now = self.clock()
        updates = {
            "set__status": ReportStatus.CLAIMED.value,
            "set__owner_id": claimant_id,
            "set__claimed_method": claimed_method,
            "set__claimed_at": now,
            "set__verification_status": ReportVerificationStatus.VERIFIED.value,
            "set__updated_at": now,
        }
        if guard_id is not None:
            updates["set__security_guard_id"] = guard_id

        report = IDReport.objects(
            id=report_id, status__in=list(CLAIMABLE_STATUSES), owner_id=None
        ).modify(new=True, **updates)

        if report is None:
            current = IDReport.objects(id=report_id).first()
            if current is None:
                raise NotFound("Report not found")
            logger.warning(f"⚠️ Claim on {current.report_number} lost: report is {current.status}")
            raise Conflict(
                "This report has already been claimed",
                details={"report_number": current.report_number, "status": current.status},
            )

        logger.info(f"✅ Report {report.report_number} claimed via {claimed_method}")
        self.audit.record(
            "claim_report", actor, "report", report.id,
            before_state={"status": "claimable", "owner_id": None},
            after_state={
                "status": report.status,
                "owner_id": str(report.owner_id),
                "claimed_method": report.claimed_method,
            },
            request_meta=request_meta, tags=["report_claimed", claimed_method],
        )

        if report.security_guard_id:
            guard = User.objects(id=report.security_guard_id).first()
            if guard and guard.phone:
                self.notifier.send_guard_claim_notice(guard.phone, report.report_number)
        return report

    def mark_verification_started(self, report) -> bool:
        updated = IDReport.objects(
            id=report.id, verification_status=ReportVerificationStatus.UNVERIFIED.value
        ).update_one(
            set__verification_status=ReportVerificationStatus.PENDING_VERIFICATION.value,
            set__updated_at=self.clock(),
        )
        return bool(updated)

    # ==================================================
    # DELETE
    # ==================================================
    def delete_report(self, report, actor, request_meta=None):
        if not can_delete_report(actor):
            raise Forbidden("Not authorized to delete reports")

        open_claims = Verification.objects(report_id=report.id, status__in=list(ACTIVE_STATUSES)).count()
        if open_claims:
            raise InvalidState(
                "Report has claims in progress and cannot be deleted",
                details={"active_verifications": open_claims},
            )

        for photo in report.photos:
            if not photo.public_id:
                continue
            try:
                delete_upload(photo.public_id)
            except Exception as e:
                logger.warning(f"⚠️ Could not delete photo {photo.public_id}: {e}")

        self.audit.record(
            "delete_report", actor, "report", report.id,
            before_state={
                "report_number": report.report_number,
                "id_type": report.id_type,
                "campus": report.campus,
                "status": report.status,
            },
            request_meta=request_meta, tags=["report_deleted"], is_sensitive=True,
        )
        report.delete()
        logger.info(f"🗑️ Report {report.report_number} deleted")

    # ==================================================
    # STATS
    # ==================================================
    def get_stats(self, actor, campus=None, start=None, end=None) -> dict:
        if not can_view_stats(actor):
            raise Forbidden("Not authorized to view statistics")

        query = {}
        if campus:
            query["campus"] = campus
        if start:
            query["created_at__gte"] = start
        if end:
            query["created_at__lte"] = end

        totals = {s.value: 0 for s in ReportStatus}
        by_campus = defaultdict(lambda: {s.value: 0 for s in ReportStatus})
        recovery_days = []

        for report in IDReport.objects(**query).only("status", "campus", "claimed_at", "collected_at"):
            totals[report.status] += 1
            by_campus[report.campus][report.status] += 1
            if report.status == ReportStatus.RETURNED.value and report.claimed_at and report.collected_at:
                recovery_days.append((report.collected_at - report.claimed_at).total_seconds() / 86400)

        total = sum(totals.values())
        recovered = totals[ReportStatus.CLAIMED.value] + totals[ReportStatus.RETURNED.value]
        return {
            "total": total,
            **totals,
            "recovery_rate": calculate_recovery_rate(total, recovered),
            "by_campus": {
                name: {**counts, "total": sum(counts.values())} for name, counts in by_campus.items()
            },
            "avg_recovery_days": round(sum(recovery_days) / len(recovery_days), 2) if recovery_days else 0,
        }


def _collection_label(collection_point):
    if not collection_point:
        return None
    return collection_point.replace("_", " ").title()
