from mongoengine import (
    Document, EmbeddedDocument, EmbeddedDocumentListField, StringField,
    BooleanField, DateTimeField, IntField, ObjectIdField
)
from datetime import timedelta
from enum import Enum
import secrets

from Utils.identifiers import utcnow

VERIFICATION_TTL = timedelta(hours=24)


class VerificationMethod(Enum):
    ID_NUMBER = "id_number"
    SECURITY_QUESTIONS = "security_questions"
    PHONE_OTP = "phone_otp"
    DOCUMENT_UPLOAD = "document_upload"


class VerificationStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    VERIFIED = "verified"
    REJECTED = "rejected"
    EXPIRED = "expired"


ACTIVE_STATUSES = (VerificationStatus.PENDING.value, VerificationStatus.IN_PROGRESS.value)
TERMINAL_STATUSES = (
    VerificationStatus.VERIFIED.value,
    VerificationStatus.REJECTED.value,
    VerificationStatus.EXPIRED.value,
)


def active_claim_key(report_id, claimant_id) -> str:
    return f"{report_id}:{claimant_id}"


def _default_expiry():
    return utcnow() + VERIFICATION_TTL


def _new_token():
    return secrets.token_hex(32)


class SecurityQuestion(EmbeddedDocument):
    question = StringField(required=True)
    answer_provided = StringField(default="")
    is_correct = BooleanField(default=False)


class VerificationDocument(EmbeddedDocument):
    url = StringField(required=True)
    public_id = StringField()
    document_type = StringField()
    verified = BooleanField(default=False)
    uploaded_at = DateTimeField(default=utcnow)

    def to_json(self):
        return {
            'url': self.url,
            'public_id': self.public_id,
            'document_type': self.document_type,
            'verified': self.verified,
            'uploaded_at': self.uploaded_at.isoformat() if self.uploaded_at else None,
        }


class Verification(Document):
    report_id = ObjectIdField(required=True)

    # Claimant
    claimant_id = ObjectIdField(required=True)
    claimant_email = StringField()
    claimant_phone = StringField()

    method = StringField(choices=[m.value for m in VerificationMethod], required=True)

    # Method specific payload
    security_questions = EmbeddedDocumentListField(SecurityQuestion)
    phone_otp = StringField()
    phone_otp_expires = DateTimeField()
    documents = EmbeddedDocumentListField(VerificationDocument)

    status = StringField(
        choices=[s.value for s in VerificationStatus],
        default=VerificationStatus.PENDING.value
    )

    # Manual review
    verified_by_guard_id = ObjectIdField()
    guard_notes = StringField()

    verification_token = StringField(unique=True, default=_new_token)
    attempt_count = IntField(default=0, min_value=0)
    last_attempt = DateTimeField()
    expires_at = DateTimeField(default=_default_expiry)

    # Present only while the record is pending/in_progress; the sparse unique
    # index keeps one open claim per (report, claimant) at the storage layer.
    active_claim_key = StringField(unique=True, sparse=True)

    created_at = DateTimeField(default=utcnow)
    updated_at = DateTimeField(default=utcnow)

    meta = {
        'collection': 'verifications',
        'indexes': [
            'report_id',
            'claimant_id',
            ('status', 'expires_at'),
            '-created_at',
        ]
    }

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def is_past_deadline(self, now) -> bool:
        return bool(self.expires_at and self.expires_at <= now)

    def to_json(self) -> dict:
        return {
            'id': str(self.id),
            'report_id': str(self.report_id),
            'claimant_id': str(self.claimant_id),
            'claimant_email': self.claimant_email,
            'claimant_phone': self.claimant_phone,
            'method': self.method,
            'status': self.status,
            'security_questions': [
                {
                    'question': q.question,
                    'answer_provided': q.answer_provided,
                    'is_correct': q.is_correct,
                }
                for q in self.security_questions
            ],
            'phone_otp': self.phone_otp,
            'phone_otp_expires': self.phone_otp_expires.isoformat() if self.phone_otp_expires else None,
            'documents': [doc.to_json() for doc in self.documents],
            'verified_by_guard_id': str(self.verified_by_guard_id) if self.verified_by_guard_id else None,
            'guard_notes': self.guard_notes,
            'verification_token': self.verification_token,
            'attempt_count': self.attempt_count,
            'last_attempt': self.last_attempt.isoformat() if self.last_attempt else None,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }
