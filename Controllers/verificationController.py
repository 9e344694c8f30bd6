import logging
from flask import request

from Services.accessPolicy import filter_verification_fields
from Utils.appError import ValidationFailed
from Utils.auth_decorator import roles_required, token_required
from Utils.http import json_body, request_meta, services, success
from Utils.uploads import DOCUMENT_TYPES, delete_upload, store_upload

logger = logging.getLogger(__name__)

MAX_DOCUMENTS = 5


def _engine():
    return services()["engine"]


def _claim_result(verification, report, message):
    return {
        "message": message,
        "verification_id": str(verification.id),
        "status": verification.status,
        "report_id": str(report.id),
        "report_number": report.report_number,
        "next_step": "collect_id",
    }


# =====================================================
# START
# =====================================================
@token_required
def start_verification(user):
    data = json_body()
    verification, created = _engine().start(
        data.get("report_id"), user, data.get("method"), request_meta=request_meta()
    )

    payload = {
        "verification_id": str(verification.id),
        "method": verification.method,
        "status": verification.status,
        "expires_at": verification.expires_at.isoformat(),
    }
    if verification.method == "security_questions":
        payload["questions"] = [q.question for q in verification.security_questions]
    if verification.method == "phone_otp" and created:
        payload["message"] = "OTP sent to your phone"
    return success(payload, 201 if created else 200)


# =====================================================
# CLAIMANT SUBMISSIONS
# =====================================================
@token_required
def verify_id(user):
    data = json_body()
    verification, report = _engine().verify_id(
        data.get("verification_id"), user, data.get("id_number"), request_meta=request_meta()
    )
    return success(_claim_result(verification, report, "Verification successful"))


@token_required
def verify_questions(user):
    data = json_body()
    verification, report = _engine().verify_questions(
        data.get("verification_id"), user, data.get("answers"), request_meta=request_meta()
    )
    return success(_claim_result(verification, report, "Verification successful"))


@token_required
def verify_otp(user):
    data = json_body()
    verification, report = _engine().verify_otp(
        data.get("verification_id"), user, data.get("otp"), request_meta=request_meta()
    )
    return success(_claim_result(verification, report, "Verification successful"))


@token_required
def upload_documents(user):
    """Attach documents to a document-upload claim.

    Accepts multipart files under ``documents`` or a JSON list of already
    stored document descriptors.
    """
    if request.mimetype == "multipart/form-data":
        verification_id = request.form.get("verification_id")
        document_type = request.form.get("document_type") or "other"
        files = [f for f in request.files.getlist("documents") if f and f.filename]
        if not files:
            raise ValidationFailed("No files uploaded")
        if len(files) > MAX_DOCUMENTS:
            raise ValidationFailed(f"At most {MAX_DOCUMENTS} documents can be uploaded at once")

        documents = []
        for f in files:
            stored = store_upload(f, "verification_document", uploaded_by=user.id, allowed_types=DOCUMENT_TYPES)
            documents.append({**stored, "document_type": document_type})
    else:
        data = json_body()
        verification_id = data.get("verification_id")
        documents = data.get("documents")

    try:
        verification = _engine().upload_documents(verification_id, user, documents, request_meta=request_meta())
    except Exception:
        if request.mimetype == "multipart/form-data":
            for doc in documents:
                delete_upload(doc["public_id"])
        raise

    return success({
        "message": "Documents uploaded successfully",
        "verification": filter_verification_fields(verification, user),
        "next_step": "wait_for_security_verification",
    })


# =====================================================
# SECURITY REVIEW
# =====================================================
@roles_required("security")
def security_verify(user):
    data = json_body()
    approve = data["approve"] if "approve" in data else data.get("is_approved")
    verification, report = _engine().security_verify(
        data.get("verification_id"), user, approve, data.get("notes"), request_meta=request_meta()
    )
    return success({
        "message": "Verification approved" if report is not None else "Verification rejected",
        "verification": filter_verification_fields(verification, user),
        "report_id": str(verification.report_id),
    })


@roles_required("security", "admin")
def pending_reviews(user):
    reviews = _engine().list_pending_reviews(user)
    return success(reviews, count=len(reviews))


@token_required
def get_verification(user, verification_id):
    return success(_engine().get_verification(verification_id, user))
