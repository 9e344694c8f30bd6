import pytest

from Models.auditLogModel import AuditLog
from Models.idReportModel import IDReport
from Models.verificationModel import Verification, VerificationMethod
from Services.notificationService import NotificationDispatcher
from Services.verificationEngine import HANDLERS, MAX_ATTEMPTS, VerificationEngine
from Utils.appError import (
    Conflict, Forbidden, InvalidState, Unauthorized, ValidationFailed, VerificationExpired
)
from conftest import RecordingEmailSender, RecordingSmsSender, make_user, report_payload


def _reload(doc):
    return type(doc).objects(id=doc.id).first()


# -------------------------
# start
# -------------------------
def test_start_opens_pending_claim(engine, report, student, email_sender):
    verification, created = engine.start(str(report.id), student, "id_number")

    assert created is True
    assert verification.status == "pending"
    assert verification.attempt_count == 0
    assert verification.claimant_email == student.email
    assert _reload(report).verification_status == "pending_verification"
    assert any(m["to"] == student.email for m in email_sender.sent)


def test_start_is_idempotent_per_claimant(engine, report, student):
    first, _ = engine.start(str(report.id), student, "id_number")
    second, created = engine.start(str(report.id), student, "security_questions")

    assert created is False
    assert second.id == first.id
    assert Verification.objects.count() == 1


def test_start_requires_claimable_report(engine, registry, report, student, other_student):
    registry.complete_claim(report.id, other_student.id, "id_verification")
    with pytest.raises(InvalidState):
        engine.start(str(report.id), student, "id_number")


def test_start_rejects_unknown_method(engine, report, student):
    with pytest.raises(ValidationFailed):
        engine.start(str(report.id), student, "fingerprint")
    with pytest.raises(ValidationFailed):
        engine.start(str(report.id), student, ["id_number"])


def test_start_requires_login(engine, report):
    with pytest.raises(Unauthorized):
        engine.start(str(report.id), None, "id_number")


def test_phone_verification_alias_and_phone_requirement(engine, report, student, sms_sender):
    verification, _ = engine.start(str(report.id), student, "phone_verification")
    assert verification.method == "phone_otp"
    assert len(verification.phone_otp) == 6
    assert sms_sender.sent[-1]["to"] == student.phone
    assert verification.phone_otp in sms_sender.sent[-1]["body"]

    no_phone = make_user("student", phone=None)
    with pytest.raises(ValidationFailed):
        engine.start(str(report.id), no_phone, "phone_otp")


def test_security_questions_are_seeded(engine, report, student):
    verification, _ = engine.start(str(report.id), student, "security_questions")
    assert len(verification.security_questions) == 3
    assert all(q.answer_provided == "" for q in verification.security_questions)


# -------------------------
# id number
# -------------------------
def test_id_number_claim_end_to_end(engine, registry, student, email_sender):
    report = registry.create_report(report_payload(id_number="STD202300456"))
    assert report.masked_id_number == "********0456"

    verification, _ = engine.start(str(report.id), student, "id_number")
    verified, claimed = engine.verify_id(str(verification.id), student, "  std202300456 ")

    assert verified.status == "verified"
    assert verified.active_claim_key is None
    assert claimed.status == "claimed"
    assert claimed.owner_id == student.id
    assert claimed.claimed_method == "id_verification"
    assert email_sender.sent[-1]["subject"] == "Your ID Claim Has Been Verified"
    assert AuditLog.objects(action="verify_claim").count() == 1
    assert AuditLog.objects(action="claim_report").count() == 1


def test_wrong_id_number_counts_an_attempt(engine, report, student):
    verification, _ = engine.start(str(report.id), student, "id_number")

    with pytest.raises(ValidationFailed) as exc:
        engine.verify_id(str(verification.id), student, "WRONG0000")

    assert exc.value.details == {"attempts_remaining": MAX_ATTEMPTS - 1}
    current = _reload(verification)
    assert current.attempt_count == 1
    assert current.status == "pending"
    assert _reload(report).owner_id is None


def test_empty_submission_does_not_count(engine, report, student):
    verification, _ = engine.start(str(report.id), student, "id_number")
    with pytest.raises(ValidationFailed):
        engine.verify_id(str(verification.id), student, "   ")
    assert _reload(verification).attempt_count == 0


def test_only_claimant_may_submit(engine, report, student, other_student):
    verification, _ = engine.start(str(report.id), student, "id_number")
    with pytest.raises(Forbidden):
        engine.verify_id(str(verification.id), other_student, "ABC123456")


def test_method_mismatch_is_rejected(engine, report, student):
    verification, _ = engine.start(str(report.id), student, "id_number")
    with pytest.raises(ValidationFailed):
        engine.verify_otp(str(verification.id), student, "123456")
    assert _reload(verification).attempt_count == 0


# -------------------------
# security questions
# -------------------------
def test_two_answers_pass_security_questions(engine, report, student):
    verification, _ = engine.start(str(report.id), student, "security_questions")
    verified, claimed = engine.verify_questions(str(verification.id), student, ["Achieng", "", "Rex"])

    assert verified.status == "verified"
    assert [q.answer_provided for q in verified.security_questions] == ["Achieng", "", "Rex"]
    assert claimed.claimed_method == "security_questions"


def test_one_answer_fails_security_questions(engine, report, student):
    verification, _ = engine.start(str(report.id), student, "security_questions")
    with pytest.raises(ValidationFailed) as exc:
        engine.verify_questions(str(verification.id), student, ["Achieng", "  "])
    assert exc.value.details["attempts_remaining"] == MAX_ATTEMPTS - 1


def test_answers_must_be_a_list(engine, report, student):
    verification, _ = engine.start(str(report.id), student, "security_questions")
    with pytest.raises(ValidationFailed):
        engine.verify_questions(str(verification.id), student, "Achieng")
    assert _reload(verification).attempt_count == 0


# -------------------------
# phone otp
# -------------------------
def test_otp_attempts_are_capped(engine, report, student):
    verification, _ = engine.start(str(report.id), student, "phone_otp")
    code = verification.phone_otp

    for remaining in range(MAX_ATTEMPTS - 1, 0, -1):
        with pytest.raises(ValidationFailed) as exc:
            engine.verify_otp(str(verification.id), student, "wrong!")
        assert exc.value.details["attempts_remaining"] == remaining

    with pytest.raises(VerificationExpired):
        engine.verify_otp(str(verification.id), student, "wrong!")

    expired = _reload(verification)
    assert expired.status == "expired"
    assert expired.attempt_count == MAX_ATTEMPTS
    assert expired.active_claim_key is None
    assert expired.phone_otp is None

    with pytest.raises(VerificationExpired):
        engine.verify_otp(str(verification.id), student, code)
    assert _reload(report).owner_id is None


def test_otp_expires_after_ten_minutes(engine, report, student, clock):
    verification, _ = engine.start(str(report.id), student, "phone_otp")
    clock.advance(minutes=11)

    with pytest.raises(VerificationExpired):
        engine.verify_otp(str(verification.id), student, verification.phone_otp)
    assert _reload(verification).status == "expired"


def test_otp_cannot_be_reused(engine, report, student):
    verification, _ = engine.start(str(report.id), student, "phone_otp")
    engine.verify_otp(str(verification.id), student, verification.phone_otp)

    with pytest.raises(InvalidState):
        engine.verify_otp(str(verification.id), student, verification.phone_otp)
    assert _reload(verification).phone_otp is None


def test_correct_otp_loses_to_concurrently_spent_budget(engine, report, student, monkeypatch):
    verification, _ = engine.start(str(report.id), student, "phone_otp")
    for _ in range(MAX_ATTEMPTS - 1):
        with pytest.raises(ValidationFailed):
            engine.verify_otp(str(verification.id), student, "wrong!")

    handler = HANDLERS[VerificationMethod.PHONE_OTP]
    real_check = handler.check

    def check_during_parallel_failure(current, report_doc, submission):
        # A parallel wrong guess lands while this one is being checked
        Verification.objects(id=current.id).update_one(inc__attempt_count=1)
        return real_check(current, report_doc, submission)

    monkeypatch.setattr(handler, "check", check_during_parallel_failure)
    with pytest.raises(VerificationExpired):
        engine.verify_otp(str(verification.id), student, verification.phone_otp)

    expired = _reload(verification)
    assert expired.status == "expired"
    assert expired.attempt_count == MAX_ATTEMPTS
    assert expired.active_claim_key is None
    assert _reload(report).owner_id is None


def test_parallel_failures_each_spend_one_attempt(engine, report, student, monkeypatch):
    verification, _ = engine.start(str(report.id), student, "id_number")
    handler = HANDLERS[VerificationMethod.ID_NUMBER]
    real_check = handler.check
    interleaved = []

    def check_during_parallel_failure(current, report_doc, submission):
        if not interleaved:
            interleaved.append(True)
            with pytest.raises(ValidationFailed):
                engine.verify_id(str(verification.id), student, "XYZ000000")
        return real_check(current, report_doc, submission)

    monkeypatch.setattr(handler, "check", check_during_parallel_failure)
    with pytest.raises(ValidationFailed) as exc:
        engine.verify_id(str(verification.id), student, "XYZ000000")

    assert exc.value.details["attempts_remaining"] == MAX_ATTEMPTS - 2
    assert _reload(verification).attempt_count == 2


# -------------------------
# expiry
# -------------------------
def test_claim_expires_after_a_day(engine, report, student, clock):
    verification, _ = engine.start(str(report.id), student, "id_number")
    clock.advance(hours=24, seconds=1)

    with pytest.raises(VerificationExpired):
        engine.verify_id(str(verification.id), student, "ABC123456")

    expired = _reload(verification)
    assert expired.status == "expired"
    assert expired.active_claim_key is None

    fresh, created = engine.start(str(report.id), student, "id_number")
    assert created is True
    assert fresh.id != verification.id


def test_start_replaces_a_stale_claim(engine, report, student, clock):
    verification, _ = engine.start(str(report.id), student, "id_number")
    clock.advance(hours=25)

    fresh, created = engine.start(str(report.id), student, "id_number")
    assert created is True
    assert _reload(verification).status == "expired"


def test_reading_a_stale_claim_expires_it(engine, report, student, clock):
    verification, _ = engine.start(str(report.id), student, "id_number")
    clock.advance(hours=25)

    data = engine.get_verification(str(verification.id), student)
    assert data["status"] == "expired"


# -------------------------
# races
# -------------------------
def test_second_winner_gets_conflict_and_is_rejected(engine, report, student, other_student):
    first, _ = engine.start(str(report.id), student, "id_number")
    second, _ = engine.start(str(report.id), other_student, "id_number")

    engine.verify_id(str(first.id), student, "ABC123456")
    with pytest.raises(Conflict):
        engine.verify_id(str(second.id), other_student, "ABC123456")

    assert _reload(first).status == "verified"
    assert _reload(second).status == "rejected"
    assert _reload(report).owner_id == student.id


def test_interleaved_winners_leave_one_owner(engine, registry, report, student, other_student, monkeypatch):
    first, _ = engine.start(str(report.id), student, "id_number")
    second, _ = engine.start(str(report.id), other_student, "id_number")
    real_complete_claim = registry.complete_claim
    interleaved = []

    def complete_after_rival(*args, **kwargs):
        if not interleaved:
            interleaved.append(True)
            # Both records are verified before either claim is written
            assert _reload(first).status == "verified"
            engine.verify_id(str(second.id), other_student, "ABC123456")
        return real_complete_claim(*args, **kwargs)

    monkeypatch.setattr(registry, "complete_claim", complete_after_rival)
    with pytest.raises(Conflict):
        engine.verify_id(str(first.id), student, "ABC123456")

    assert _reload(first).status == "rejected"
    assert _reload(second).status == "verified"
    assert _reload(report).owner_id == other_student.id
    assert IDReport.objects(owner_id__ne=None).count() == 1
    assert Verification.objects(status="verified").count() == 1


def test_failed_claim_write_restores_verification(engine, registry, report, student, monkeypatch):
    verification, _ = engine.start(str(report.id), student, "id_number")

    def broken_claim(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(registry, "complete_claim", broken_claim)
    with pytest.raises(RuntimeError):
        engine.verify_id(str(verification.id), student, "ABC123456")

    restored = _reload(verification)
    assert restored.status == "pending"
    assert restored.active_claim_key == verification.active_claim_key


# -------------------------
# notifications
# -------------------------
def test_notification_failures_do_not_break_claims(registry, audit, report, student, clock):
    broken = NotificationDispatcher(RecordingEmailSender(fail=True), RecordingSmsSender(fail=True))
    engine = VerificationEngine(registry, broken, audit, clock=clock)

    verification, _ = engine.start(str(report.id), student, "phone_otp")
    verified, claimed = engine.verify_otp(str(verification.id), student, verification.phone_otp)

    assert verified.status == "verified"
    assert claimed.status == "claimed"


# -------------------------
# documents
# -------------------------
DOCUMENTS = [
    {"url": "/uploads/fee_statement.pdf", "public_id": "fee_statement.pdf", "document_type": "fee_statement"},
    {"url": "/uploads/selfie.jpg", "public_id": "selfie.jpg", "document_type": "photo"},
]


def test_document_claim_waits_for_security(engine, report, student, guard, sms_sender):
    verification, _ = engine.start(str(report.id), student, "document_upload")
    uploaded = engine.upload_documents(str(verification.id), student, DOCUMENTS)

    assert uploaded.status == "in_progress"
    assert len(uploaded.documents) == 2
    assert sms_sender.sent[-1]["to"] == guard.phone
    assert _reload(report).owner_id is None

    approved, claimed = engine.security_verify(str(verification.id), guard, True, "Matched fee statement")

    assert approved.status == "verified"
    assert approved.verified_by_guard_id == guard.id
    assert all(doc.verified for doc in approved.documents)
    assert claimed.claimed_method == "document_upload"
    assert claimed.security_guard_id == guard.id


def test_guard_rejection(engine, report, student, guard):
    verification, _ = engine.start(str(report.id), student, "document_upload")
    engine.upload_documents(str(verification.id), student, DOCUMENTS)

    rejected, claimed = engine.security_verify(str(verification.id), guard, False, "Blurry")

    assert claimed is None
    assert rejected.status == "rejected"
    assert rejected.guard_notes == "Blurry"
    assert not any(doc.verified for doc in rejected.documents)
    assert _reload(report).status == "pending"


def test_review_after_deadline_expires_claim(engine, report, student, guard, clock):
    verification, _ = engine.start(str(report.id), student, "document_upload")
    engine.upload_documents(str(verification.id), student, DOCUMENTS)
    clock.advance(hours=25)

    with pytest.raises(VerificationExpired):
        engine.security_verify(str(verification.id), guard, True, "Matched fee statement")

    expired = _reload(verification)
    assert expired.status == "expired"
    assert expired.active_claim_key is None
    assert _reload(report).owner_id is None
    assert _reload(report).status == "pending"


def test_pending_reviews_skip_stale_claims(engine, report, student, guard, clock):
    verification, _ = engine.start(str(report.id), student, "document_upload")
    engine.upload_documents(str(verification.id), student, DOCUMENTS)
    clock.advance(hours=24, seconds=1)

    assert engine.list_pending_reviews(guard) == []


def test_only_security_reviews_documents(engine, report, student, admin):
    verification, _ = engine.start(str(report.id), student, "document_upload")
    engine.upload_documents(str(verification.id), student, DOCUMENTS)

    with pytest.raises(Forbidden):
        engine.security_verify(str(verification.id), student, True)
    with pytest.raises(Forbidden):
        engine.security_verify(str(verification.id), admin, True)


def test_review_needs_uploaded_documents(engine, report, student, guard):
    verification, _ = engine.start(str(report.id), student, "document_upload")
    with pytest.raises(InvalidState):
        engine.security_verify(str(verification.id), guard, True)


def test_upload_validates_documents(engine, report, student):
    verification, _ = engine.start(str(report.id), student, "document_upload")
    with pytest.raises(ValidationFailed):
        engine.upload_documents(str(verification.id), student, [])
    with pytest.raises(ValidationFailed):
        engine.upload_documents(str(verification.id), student, [{"document_type": "photo"}])


def test_pending_reviews_are_scoped_to_campus(engine, report, student, guard):
    nairobi_guard = make_user("security", campus="Nairobi")
    verification, _ = engine.start(str(report.id), student, "document_upload")
    engine.upload_documents(str(verification.id), student, DOCUMENTS)

    assert [r["verification"]["id"] for r in engine.list_pending_reviews(guard)] == [str(verification.id)]
    assert engine.list_pending_reviews(nairobi_guard) == []
    with pytest.raises(Forbidden):
        engine.list_pending_reviews(student)


# -------------------------
# reads
# -------------------------
def test_claimant_view_hides_secrets(engine, report, student, other_student, guard):
    verification, _ = engine.start(str(report.id), student, "phone_otp")

    data = engine.get_verification(str(verification.id), student)
    assert "phone_otp" not in data
    assert "verification_token" not in data
    assert data["report"]["report_number"] == report.report_number

    assert engine.get_verification(str(verification.id), guard)["phone_otp"] == verification.phone_otp

    with pytest.raises(Forbidden):
        engine.get_verification(str(verification.id), other_student)


def test_report_status_never_changes_without_verification(engine, report, student):
    engine.start(str(report.id), student, "id_number")
    assert IDReport.objects(id=report.id).first().status == "pending"
