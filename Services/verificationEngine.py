"""Claim verification state machine.

A claim moves ``pending -> in_progress -> verified | rejected | expired``;
the synchronous methods go straight from ``pending`` to ``verified`` or
``expired``. Terminal records never change again. Every status write is a
conditional update on the status the engine last read, so concurrent
requests cannot both move the same record.
"""
import logging
import secrets
from datetime import timedelta

from bson import ObjectId
from mongoengine import NotUniqueError

from Models.idReportModel import CLAIMABLE_STATUSES, IDReport
from Models.userModel import Role, User, role_of
from Models.verificationModel import (
    ACTIVE_STATUSES, VERIFICATION_TTL, SecurityQuestion, Verification,
    VerificationDocument, VerificationMethod, VerificationStatus, active_claim_key
)
from Services.accessPolicy import (
    can_review_campus, can_review_documents, can_view_verification, filter_verification_fields
)
from Utils.appError import (
    Conflict, Forbidden, InvalidState, NotFound, Unauthorized, ValidationFailed,
    VerificationExpired
)
from Utils.identifiers import normalize_id_number, utcnow

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
OTP_TTL = timedelta(minutes=10)
OTP_DIGITS = 6
MIN_ANSWERED_QUESTIONS = 2

SECURITY_QUESTIONS = (
    "What is your mother's maiden name?",
    "What was your first pet's name?",
    "What elementary school did you attend?",
)

METHOD_ALIASES = {"phone_verification": VerificationMethod.PHONE_OTP.value}

PENDING = VerificationStatus.PENDING.value
IN_PROGRESS = VerificationStatus.IN_PROGRESS.value
VERIFIED = VerificationStatus.VERIFIED.value
REJECTED = VerificationStatus.REJECTED.value
EXPIRED = VerificationStatus.EXPIRED.value


# ==================================================
# METHOD HANDLERS
# ==================================================
class MethodHandler:
    method = None
    claimed_method = None
    attempt_limited = True

    def prepare(self, claimant):
        """Reject a claimant who cannot use this method."""

    def initialize(self, verification, now):
        """Fill in the method payload of a new verification."""

    def announce(self, notifier, verification, report):
        notifier.send_claim_started(verification.claimant_email, report.report_number, self.method.value)

    def is_stale(self, verification, now) -> bool:
        return False

    def validate(self, submission):
        return submission

    def check(self, verification, report, submission) -> bool:
        raise NotImplementedError

    def submission_updates(self, verification, submission) -> dict:
        return {}


class IdNumberHandler(MethodHandler):
    """Claimant types the full number printed on the card."""
    method = VerificationMethod.ID_NUMBER
    claimed_method = "id_verification"

    def validate(self, submission):
        if not isinstance(submission, str) or not submission.strip():
            raise ValidationFailed("id_number is required")
        return submission

    def check(self, verification, report, submission) -> bool:
        return normalize_id_number(submission) == normalize_id_number(report.id_number)


class SecurityQuestionsHandler(MethodHandler):
    """Fixed challenge questions; any two non-empty answers pass.

    This is a weak stand-in for real per-user secrets and must not be treated
    as authoritative identity proof.
    """
    method = VerificationMethod.SECURITY_QUESTIONS
    claimed_method = "security_questions"

    def initialize(self, verification, now):
        verification.security_questions = [SecurityQuestion(question=q) for q in SECURITY_QUESTIONS]

    def validate(self, submission):
        if not isinstance(submission, list):
            raise ValidationFailed("answers must be a list")
        return submission

    @staticmethod
    def _answered(answer) -> bool:
        return isinstance(answer, str) and bool(answer.strip())

    def check(self, verification, report, submission) -> bool:
        return sum(1 for a in submission if self._answered(a)) >= MIN_ANSWERED_QUESTIONS

    def submission_updates(self, verification, submission) -> dict:
        questions = []
        for index, question in enumerate(verification.security_questions):
            answer = submission[index] if index < len(submission) else ""
            answer = answer.strip() if isinstance(answer, str) else ""
            questions.append(SecurityQuestion(
                question=question.question, answer_provided=answer, is_correct=bool(answer)
            ))
        return {"set__security_questions": questions}


class PhoneOtpHandler(MethodHandler):
    method = VerificationMethod.PHONE_OTP
    claimed_method = "phone_verification"

    def prepare(self, claimant):
        if not claimant.phone:
            raise ValidationFailed("A phone number is required for phone verification")

    def initialize(self, verification, now):
        verification.phone_otp = f"{secrets.randbelow(10 ** OTP_DIGITS):0{OTP_DIGITS}d}"
        verification.phone_otp_expires = now + OTP_TTL

    def announce(self, notifier, verification, report):
        notifier.send_otp(verification.claimant_phone, verification.phone_otp)

    def is_stale(self, verification, now) -> bool:
        return not verification.phone_otp_expires or verification.phone_otp_expires <= now

    def validate(self, submission):
        if submission is None or not str(submission).strip():
            raise ValidationFailed("otp is required")
        return str(submission).strip()

    def check(self, verification, report, submission) -> bool:
        return bool(verification.phone_otp) and submission == verification.phone_otp


class DocumentUploadHandler(MethodHandler):
    """Claimant attaches documents; campus security decides."""
    method = VerificationMethod.DOCUMENT_UPLOAD
    claimed_method = "document_upload"
    attempt_limited = False

    def check(self, verification, report, submission) -> bool:
        raise InvalidState("Documents are reviewed by campus security")


HANDLERS = {
    handler.method: handler
    for handler in (IdNumberHandler(), SecurityQuestionsHandler(), PhoneOtpHandler(), DocumentUploadHandler())
}

_unhandled = [m.value for m in VerificationMethod if m not in HANDLERS]
if _unhandled:
    raise RuntimeError(f"No verification handler for: {', '.join(_unhandled)}")


def parse_method(value) -> VerificationMethod:
    if not isinstance(value, str):
        raise ValidationFailed("method is required")
    value = METHOD_ALIASES.get(value, value)
    try:
        return VerificationMethod(value)
    except ValueError:
        allowed = ", ".join(m.value for m in VerificationMethod)
        raise ValidationFailed(f"Unknown verification method '{value}'. Allowed: {allowed}")


def _field_updates_to_restore(original, updates) -> dict:
    """Inverse of ``updates`` computed from the record as it was before."""
    restore = {}
    for key in updates:
        field = key.split("__", 1)[1]
        value = getattr(original, field)
        if value is None:
            restore[f"unset__{field}"] = True
        else:
            restore[f"set__{field}"] = value
    return restore


# ==================================================
# ENGINE
# ==================================================
class VerificationEngine:
    def __init__(self, registry, notifier, audit, clock=utcnow):
        self.registry = registry
        self.notifier = notifier
        self.audit = audit
        self.clock = clock

    # -------------------------
    # lookups
    # -------------------------
    @staticmethod
    def _load(verification_id) -> Verification:
        if not verification_id or not ObjectId.is_valid(str(verification_id)):
            raise NotFound("Verification not found")
        verification = Verification.objects(id=ObjectId(str(verification_id))).first()
        if not verification:
            raise NotFound("Verification not found")
        return verification

    def _expire(self, verification, reason, actor=None, request_meta=None):
        now = self.clock()
        expired = Verification.objects(id=verification.id, status__in=list(ACTIVE_STATUSES)).modify(
            new=True,
            set__status=EXPIRED,
            unset__active_claim_key=True,
            unset__phone_otp=True,
            set__updated_at=now,
        )
        if expired is None:
            return Verification.objects(id=verification.id).first()

        logger.info(f"⌛ Verification {verification.id} expired ({reason})")
        self.audit.record(
            "expire_verification", actor, "verification", verification.id,
            before_state={"status": verification.status, "attempt_count": verification.attempt_count},
            after_state={"status": EXPIRED, "attempt_count": expired.attempt_count},
            request_meta=request_meta, tags=["verification_expired", reason],
        )
        return expired

    @staticmethod
    def _raise_for_terminal(verification):
        if verification.status == EXPIRED:
            raise VerificationExpired("This verification has expired", details={"attempts_remaining": 0})
        raise InvalidState(f"Verification is already {verification.status}")

    def _ensure_open(self, verification, actor=None, request_meta=None):
        if not verification.is_active:
            self._raise_for_terminal(verification)
        if verification.is_past_deadline(self.clock()):
            self._expire(verification, "deadline_passed", actor, request_meta)
            raise VerificationExpired("This verification has expired", details={"attempts_remaining": 0})

    def _load_for_claimant(self, verification_id, actor, method, request_meta=None) -> Verification:
        if actor is None:
            raise Unauthorized("You must be logged in")
        verification = self._load(verification_id)
        if str(verification.claimant_id) != str(actor.id):
            raise Forbidden("Only the claimant can submit this verification")
        if verification.method != method.value:
            raise ValidationFailed(
                f"This verification uses {verification.method}, not {method.value}"
            )
        self._ensure_open(verification, actor, request_meta)
        return verification

    # -------------------------
    # start
    # -------------------------
    def start(self, report_id, claimant, method, request_meta=None):
        """Open a claim. Returns ``(verification, created)``."""
        if claimant is None:
            raise Unauthorized("You must be logged in to claim an ID")

        report = self.registry.resolve_report(report_id)
        if report.status not in CLAIMABLE_STATUSES:
            raise InvalidState("This report is not ready for claim", details={"status": report.status})

        method = parse_method(method)
        handler = HANDLERS[method]
        handler.prepare(claimant)

        now = self.clock()
        key = active_claim_key(report.id, claimant.id)
        existing = Verification.objects(active_claim_key=key).first()
        if existing:
            if not existing.is_past_deadline(now):
                return existing, False
            self._expire(existing, "deadline_passed", claimant, request_meta)

        verification = Verification(
            report_id=report.id,
            claimant_id=claimant.id,
            claimant_email=claimant.email,
            claimant_phone=claimant.phone,
            method=method.value,
            status=PENDING,
            active_claim_key=key,
            expires_at=now + VERIFICATION_TTL,
            created_at=now,
            updated_at=now,
        )
        handler.initialize(verification, now)

        try:
            verification.save(force_insert=True)
        except NotUniqueError:
            winner = Verification.objects(active_claim_key=key).first()
            if winner is None:
                raise Conflict("A claim for this report is already being opened")
            return winner, False

        self.registry.mark_verification_started(report)

        logger.info(f"🔐 Verification {verification.id} started for {report.report_number} via {method.value}")
        self.audit.record(
            "start_verification", claimant, "verification", verification.id,
            after_state={"status": verification.status, "method": method.value,
                         "report_id": str(report.id)},
            request_meta=request_meta, tags=["verification_started", method.value],
        )
        handler.announce(self.notifier, verification, report)
        return verification, True

    # -------------------------
    # claimant submissions
    # -------------------------
    def verify_id(self, verification_id, actor, id_number, request_meta=None):
        return self._submit(verification_id, actor, VerificationMethod.ID_NUMBER, id_number, request_meta)

    def verify_questions(self, verification_id, actor, answers, request_meta=None):
        return self._submit(verification_id, actor, VerificationMethod.SECURITY_QUESTIONS, answers, request_meta)

    def verify_otp(self, verification_id, actor, otp, request_meta=None):
        return self._submit(verification_id, actor, VerificationMethod.PHONE_OTP, otp, request_meta)

    def _submit(self, verification_id, actor, method, submission, request_meta):
        handler = HANDLERS[method]
        verification = self._load_for_claimant(verification_id, actor, method, request_meta)

        if handler.attempt_limited and verification.attempt_count >= MAX_ATTEMPTS:
            self._expire(verification, "attempts_exhausted", actor, request_meta)
            raise VerificationExpired("Too many attempts. Verification expired", details={"attempts_remaining": 0})

        submission = handler.validate(submission)

        if handler.is_stale(verification, self.clock()):
            self._expire(verification, "code_expired", actor, request_meta)
            raise VerificationExpired("The verification code has expired", details={"attempts_remaining": 0})

        report = self.registry.get_report(verification.report_id)
        updates = handler.submission_updates(verification, submission)

        if not handler.check(verification, report, submission):
            self._register_failure(verification, handler, updates, actor, request_meta)  # raises

        return self._succeed(verification, handler, updates, actor, request_meta)

    def _register_failure(self, verification, handler, updates, actor, request_meta):
        current = verification
        for _ in range(MAX_ATTEMPTS + 1):
            if not current.is_active:
                self._raise_for_terminal(current)
            if current.attempt_count >= MAX_ATTEMPTS:
                self._expire(current, "attempts_exhausted", actor, request_meta)
                raise VerificationExpired("Too many attempts. Verification expired",
                                          details={"attempts_remaining": 0})

            now = self.clock()
            failure = {"inc__attempt_count": 1, "set__last_attempt": now, "set__updated_at": now, **updates}
            if current.attempt_count + 1 >= MAX_ATTEMPTS:
                # The last attempt closes the claim in the same write
                failure.update({
                    "set__status": EXPIRED,
                    "unset__active_claim_key": True,
                    "unset__phone_otp": True,
                    "unset__phone_otp_expires": True,
                })
            # Conditioned on the exact count so concurrent failures cannot both spend it
            updated = Verification.objects(
                id=verification.id,
                status__in=list(ACTIVE_STATUSES),
                attempt_count=current.attempt_count,
            ).modify(new=True, **failure)
            if updated is not None:
                break
            current = Verification.objects(id=verification.id).first()
        else:
            raise Conflict("Verification changed while checking, try again")

        remaining = MAX_ATTEMPTS - updated.attempt_count
        self.audit.record(
            "verification_failed", actor, "verification", verification.id,
            before_state={"attempt_count": current.attempt_count},
            after_state={"attempt_count": updated.attempt_count},
            request_meta=request_meta, tags=["verification_failed", handler.method.value],
        )

        if remaining <= 0:
            self.audit.record(
                "expire_verification", actor, "verification", verification.id,
                before_state={"status": current.status}, after_state={"status": EXPIRED},
                request_meta=request_meta, tags=["verification_expired", "attempts_exhausted"],
            )
            self.notifier.send_claim_outcome(verification.claimant_email, EXPIRED, self._report_number(verification))
            raise VerificationExpired("Too many attempts. Verification expired", details={"attempts_remaining": 0})

        raise ValidationFailed("Verification failed", details={"attempts_remaining": remaining})

    def _succeed(self, verification, handler, updates, actor, request_meta, guard=None):
        """Mark the verification verified, then claim the report.

        If the claim loses to a competing verification this one ends up
        ``rejected``; any other failure puts the record back as it was.
        """
        now = self.clock()
        transition = {
            "set__status": VERIFIED,
            "unset__active_claim_key": True,
            "unset__phone_otp": True,
            "unset__phone_otp_expires": True,
            "set__last_attempt": now,
            "set__updated_at": now,
            **updates,
        }
        guard_filter = {"id": verification.id, "status": verification.status}
        if handler.attempt_limited:
            guard_filter["attempt_count__lt"] = MAX_ATTEMPTS
        won = Verification.objects(**guard_filter).modify(new=True, **transition)
        if won is None:
            current = Verification.objects(id=verification.id).first()
            if not current.is_active:
                self._raise_for_terminal(current)
            if handler.attempt_limited and current.attempt_count >= MAX_ATTEMPTS:
                self._expire(current, "attempts_exhausted", actor, request_meta)
                raise VerificationExpired("Too many attempts. Verification expired",
                                          details={"attempts_remaining": 0})
            raise Conflict("Verification changed while checking, try again")

        try:
            report = self.registry.complete_claim(
                verification.report_id, verification.claimant_id, handler.claimed_method,
                guard_id=guard.id if guard is not None else None,
                actor=actor, request_meta=request_meta,
            )
        except Conflict:
            Verification.objects(id=verification.id, status=VERIFIED).update_one(
                set__status=REJECTED, set__updated_at=self.clock()
            )
            self.audit.record(
                "reject_verification", actor, "verification", verification.id,
                before_state={"status": VERIFIED}, after_state={"status": REJECTED},
                request_meta=request_meta, tags=["claim_conflict", handler.method.value],
            )
            self.notifier.send_claim_outcome(verification.claimant_email, REJECTED, self._report_number(verification))
            raise
        except Exception:
            self._restore(verification, transition)
            raise

        self.audit.record(
            "verify_claim", actor, "verification", verification.id,
            before_state={"status": verification.status},
            after_state={"status": VERIFIED, "report_id": str(report.id)},
            request_meta=request_meta, tags=["verification_success", handler.method.value],
        )
        self.notifier.send_claim_outcome(
            verification.claimant_email, VERIFIED, report.report_number, report.campus,
            report.collection_point.replace("_", " ").title() if report.collection_point else None,
        )
        return Verification.objects(id=verification.id).first(), report

    def _restore(self, verification, transition):
        restore = _field_updates_to_restore(verification, transition)
        try:
            Verification.objects(id=verification.id, status=VERIFIED).update_one(**restore)
        except NotUniqueError:
            # Another open claim took the key meanwhile; this one cannot reopen
            Verification.objects(id=verification.id, status=VERIFIED).update_one(
                set__status=EXPIRED, unset__active_claim_key=True
            )
        logger.error(f"❌ Claim for verification {verification.id} failed; restored to {verification.status}")

    @staticmethod
    def _report_number(verification):
        report = IDReport.objects(id=verification.report_id).only("report_number").first()
        return report.report_number if report else None

    # -------------------------
    # document review
    # -------------------------
    def upload_documents(self, verification_id, actor, documents, request_meta=None) -> Verification:
        verification = self._load_for_claimant(
            verification_id, actor, VerificationMethod.DOCUMENT_UPLOAD, request_meta
        )
        if not isinstance(documents, list) or not documents:
            raise ValidationFailed("At least one document is required")
        if any(not isinstance(d, dict) or not d.get("url") for d in documents):
            raise ValidationFailed("Each document needs a url")

        now = self.clock()
        attached = list(verification.documents) + [
            VerificationDocument(
                url=d["url"],
                public_id=d.get("public_id"),
                document_type=d.get("document_type"),
                verified=False,
                uploaded_at=now,
            )
            for d in documents
        ]
        updated = Verification.objects(id=verification.id, status=verification.status).modify(
            new=True, set__documents=attached, set__status=IN_PROGRESS, set__updated_at=now
        )
        if updated is None:
            current = Verification.objects(id=verification.id).first()
            if not current.is_active:
                self._raise_for_terminal(current)
            raise Conflict("Verification changed while uploading, try again")

        self.audit.record(
            "upload_documents", actor, "verification", verification.id,
            before_state={"status": verification.status},
            after_state={"status": IN_PROGRESS, "document_count": len(attached)},
            request_meta=request_meta, tags=["document_uploaded"],
        )

        report = IDReport.objects(id=verification.report_id).first()
        for phone in self._reviewer_phones(report):
            self.notifier.send_document_review_request(phone, str(verification.id))
        return updated

    def _reviewer_phones(self, report):
        if report is None:
            return []
        if report.security_guard_id:
            guard = User.objects(id=report.security_guard_id).first()
            return [guard.phone] if guard and guard.phone else []
        return [g.phone for g in self.registry.campus_guards(report.campus)]

    def security_verify(self, verification_id, actor, approve, notes=None, request_meta=None):
        """Guard decision on an uploaded-documents claim.

        Returns ``(verification, report)``; ``report`` is None on rejection.
        """
        if actor is None:
            raise Unauthorized("You must be logged in")
        if not can_review_documents(actor):
            raise Forbidden("Only security guards can perform this action")
        if not isinstance(approve, bool):
            raise ValidationFailed("approve must be true or false")

        verification = self._load(verification_id)
        if verification.is_active and verification.is_past_deadline(self.clock()):
            self._expire(verification, "deadline_passed", actor, request_meta)
            raise VerificationExpired("Verification expired before review", details={"status": EXPIRED})
        if verification.status != IN_PROGRESS:
            raise InvalidState("Verification is not in progress", details={"status": verification.status})

        handler = HANDLERS[VerificationMethod(verification.method)]
        reviewed = {
            "set__documents": [
                VerificationDocument(
                    url=d.url, public_id=d.public_id, document_type=d.document_type,
                    verified=approve, uploaded_at=d.uploaded_at,
                )
                for d in verification.documents
            ],
            "set__verified_by_guard_id": actor.id,
            "set__guard_notes": notes or "",
        }

        if approve:
            return self._succeed(verification, handler, reviewed, actor, request_meta, guard=actor)

        rejected = Verification.objects(id=verification.id, status=IN_PROGRESS).modify(
            new=True, set__status=REJECTED, unset__active_claim_key=True,
            set__updated_at=self.clock(), **reviewed
        )
        if rejected is None:
            self._raise_for_terminal(Verification.objects(id=verification.id).first())

        self.audit.record(
            "reject_verification", actor, "verification", verification.id,
            before_state={"status": IN_PROGRESS},
            after_state={"status": REJECTED, "verified_by_guard_id": str(actor.id)},
            request_meta=request_meta, tags=["security_verification", "rejected"],
        )
        self.notifier.send_claim_outcome(verification.claimant_email, REJECTED, self._report_number(verification))
        return rejected, None

    # -------------------------
    # reads
    # -------------------------
    def get_verification(self, verification_id, actor) -> dict:
        if actor is None:
            raise Unauthorized("You must be logged in")
        verification = self._load(verification_id)
        report = IDReport.objects(id=verification.report_id).first()

        if not can_view_verification(verification, report, actor):
            raise Forbidden("Not authorized to view this verification")

        if verification.is_active and verification.is_past_deadline(self.clock()):
            verification = self._expire(verification, "deadline_passed", actor)

        data = filter_verification_fields(verification, actor)
        if report is not None:
            data["report"] = {
                "id": str(report.id),
                "report_number": report.report_number,
                "campus": report.campus,
                "status": report.status,
            }
        return data

    def list_pending_reviews(self, actor) -> list:
        if role_of(actor) not in (Role.SECURITY.value, Role.ADMIN.value):
            raise Forbidden("Only security staff can review documents")

        pending = Verification.objects(
            status=IN_PROGRESS,
            method=VerificationMethod.DOCUMENT_UPLOAD.value,
            expires_at__gt=self.clock(),
        ).order_by("created_at")

        reports = {r.id: r for r in IDReport.objects(id__in=[v.report_id for v in pending])}
        reviews = []
        for verification in pending:
            report = reports.get(verification.report_id)
            if report is None or not can_review_campus(actor, report.campus):
                continue
            reviews.append({
                "verification": filter_verification_fields(verification, actor),
                "report": {
                    "id": str(report.id),
                    "report_number": report.report_number,
                    "full_name": report.full_name,
                    "masked_id_number": report.masked_id_number,
                    "campus": report.campus,
                },
            })
        return reviews
