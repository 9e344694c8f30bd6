import pytest
from bson import ObjectId

from Models.auditLogModel import AuditLog
from Models.idReportModel import IDReport
from Utils.appError import Conflict, Forbidden, InvalidState, NotFound, ValidationFailed
from conftest import make_user, report_payload


def test_create_report_assigns_number_and_mask(registry, email_sender):
    report = registry.create_report(report_payload())

    assert report.report_number == "STU000001"
    assert report.masked_id_number == "*****3456"
    assert report.id_number == "ABC123456"
    assert report.status == "pending"
    assert report.verification_status == "unverified"
    assert report.owner_id is None
    assert email_sender.sent[0]["to"] == "finder@example.com"
    assert AuditLog.objects(action="create_report").count() == 1


def test_photos_are_stamped_with_registry_clock(registry, clock):
    report = registry.create_report(report_payload(photos=[{"url": "/uploads/a.jpg", "public_id": "a.jpg"}]))

    assert report.photos[0].url == "/uploads/a.jpg"
    assert report.photos[0].uploaded_at == clock.now


def test_report_numbers_increase_across_types(registry):
    first = registry.create_report(report_payload())
    second = registry.create_report(report_payload(id_type="staff", id_number="STAFF9876"))
    assert first.report_number == "STU000001"
    assert second.report_number == "STA000002"


def test_create_report_reports_missing_fields(registry):
    with pytest.raises(ValidationFailed) as exc:
        registry.create_report(report_payload(full_name="", campus=None))
    assert set(exc.value.details["fields"]) == {"full_name", "campus"}


def test_create_report_rejects_unknown_campus(registry):
    with pytest.raises(ValidationFailed) as exc:
        registry.create_report(report_payload(campus="Kisumu"))
    assert "campus" in exc.value.details


def test_duplicate_open_report_conflicts(registry):
    registry.create_report(report_payload(id_number="abc123456"))
    with pytest.raises(Conflict) as exc:
        registry.create_report(report_payload(id_number=" ABC123456 "))
    assert exc.value.details["report_number"] == "STU000001"


def test_finder_is_recorded_for_signed_in_reporter(registry, student):
    report = registry.create_report(report_payload(), actor=student)
    assert report.finder_id == student.id


def test_registered_owner_is_alerted_without_being_assigned(registry, email_sender):
    make_user("student", student_id="ABC123456", email="owner@example.com")
    report = registry.create_report(report_payload())

    assert any(m["to"] == "owner@example.com" for m in email_sender.sent)
    assert IDReport.objects(id=report.id).first().owner_id is None


def test_guards_get_sms_when_enabled(audit, notifier, clock, sms_sender):
    from Models.userModel import NotificationPreferences
    from Services.reportRegistry import ReportRegistry

    make_user("security", phone="+254711111111",
              notification_preferences=NotificationPreferences(sms=True))
    make_user("security", phone="+254722222222")
    registry = ReportRegistry(audit, notifier, notify_security=True, clock=clock)

    registry.create_report(report_payload())
    assert [m["to"] for m in sms_sender.sent] == ["+254711111111"]


def test_get_report_unknown_ids(registry):
    with pytest.raises(NotFound):
        registry.get_report(ObjectId())
    with pytest.raises(NotFound):
        registry.resolve_report("nonsense")


def test_search_only_returns_claimable_reports(registry, admin):
    open_report = registry.create_report(report_payload())
    closed = registry.create_report(report_payload(id_number="XYZ998877", full_name="Peter Otieno"))
    registry.update_status(closed, {"status": "returned"}, admin)

    result = registry.search_reports({})
    assert [r.id for r in result["results"]] == [open_report.id]
    assert result["total"] == 1


def test_search_filters_by_name_and_masked_digits(registry):
    registry.create_report(report_payload())
    registry.create_report(report_payload(id_number="XYZ998877", full_name="Peter Otieno"))

    assert registry.search_reports({"name": "otieno"})["total"] == 1
    assert registry.search_reports({"id_number": "3456"})["total"] == 1
    with pytest.raises(ValidationFailed):
        registry.search_reports({"status": "returned"})
    with pytest.raises(ValidationFailed):
        registry.search_reports({"limit": "500"})


def test_search_pagination(registry):
    for n in range(3):
        registry.create_report(report_payload(id_number=f"NUM00000{n}"))
    result = registry.search_reports({"page": "1", "limit": "2"})
    assert len(result["results"]) == 2
    assert result["pagination"]["next"] == {"page": 2, "limit": 2}


def test_update_status_requires_staff(registry, report, student):
    with pytest.raises(Forbidden):
        registry.update_status(report, {"status": "verified"}, student)


def test_update_status_by_guard_assigns_guard(registry, report, guard):
    updated = registry.update_status(report, {"status": "verified", "security_notes": "at desk"}, guard)
    assert updated.status == "verified"
    assert updated.security_guard_id == guard.id
    assert updated.access_log[-1].action == "update_report"


def test_update_status_rejects_unknown_status(registry, report, admin):
    with pytest.raises(ValidationFailed):
        registry.update_status(report, {"status": "lost"}, admin)


def test_update_status_ignores_owner_fields(registry, report, admin, student):
    updated = registry.update_status(report, {"owner_id": str(student.id), "status": "verified"}, admin)
    assert updated.owner_id is None


def test_complete_claim_only_once(registry, report, student, other_student):
    claimed = registry.complete_claim(report.id, student.id, "id_verification")
    assert claimed.status == "claimed"
    assert claimed.owner_id == student.id
    assert claimed.verification_status == "verified"

    with pytest.raises(Conflict):
        registry.complete_claim(report.id, other_student.id, "id_verification")
    assert IDReport.objects(id=report.id).first().owner_id == student.id


def test_complete_claim_unknown_report(registry, student):
    with pytest.raises(NotFound):
        registry.complete_claim(ObjectId(), student.id, "id_verification")


def test_delete_report_blocked_by_open_claim(registry, engine, report, student, admin):
    engine.start(str(report.id), student, "id_number")
    with pytest.raises(InvalidState):
        registry.delete_report(report, admin)


def test_delete_report_admin_only(registry, report, guard, admin):
    with pytest.raises(Forbidden):
        registry.delete_report(report, guard)
    registry.delete_report(report, admin)
    assert IDReport.objects.count() == 0
    assert AuditLog.objects(action="delete_report", is_sensitive=True).count() == 1


def test_stats(registry, admin, student):
    first = registry.create_report(report_payload())
    registry.create_report(report_payload(id_number="XYZ998877", campus="Nairobi"))
    registry.complete_claim(first.id, student.id, "id_verification")

    stats = registry.get_stats(admin)
    assert stats["total"] == 2
    assert stats["claimed"] == 1
    assert stats["pending"] == 1
    assert stats["recovery_rate"] == 50
    assert stats["by_campus"]["Nairobi"]["total"] == 1
    with pytest.raises(Forbidden):
        registry.get_stats(student)
