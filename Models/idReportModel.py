from mongoengine import (
    Document, EmbeddedDocument, EmbeddedDocumentField, EmbeddedDocumentListField,
    StringField, BooleanField, DateTimeField, FloatField, ObjectIdField, ValidationError
)
from enum import Enum

from Utils.identifiers import (
    format_report_number, mask_id_number, normalize_id_number, utcnow
)


class IDType(Enum):
    STUDENT = "student"
    STAFF = "staff"


class ReportStatus(Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    CLAIMED = "claimed"
    RETURNED = "returned"
    ARCHIVED = "archived"


class ReportVerificationStatus(Enum):
    UNVERIFIED = "unverified"
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"
    FAILED = "failed"


class FinderType(Enum):
    STUDENT = "student"
    STAFF = "staff"
    SECURITY = "security"
    PUBLIC = "public"


class ContactMethod(Enum):
    EMAIL = "email"
    PHONE = "phone"


class ReportCampus(Enum):
    ATHI_RIVER = "Athi River"
    NAIROBI = "Nairobi"
    MOMBASA = "Mombasa"


class ClaimedMethod(Enum):
    ID_VERIFICATION = "id_verification"
    SECURITY_QUESTIONS = "security_questions"
    PHONE_VERIFICATION = "phone_verification"
    DOCUMENT_UPLOAD = "document_upload"


class CollectionPoint(Enum):
    CAMPUS_SECURITY = "campus_security"
    STUDENT_AFFAIRS = "student_affairs"
    RECEPTION = "reception"
    OTHER = "other"


# Reports that can still be claimed, and that the public may browse
CLAIMABLE_STATUSES = (ReportStatus.PENDING.value, ReportStatus.VERIFIED.value)


def _values(enum_cls):
    return [e.value for e in enum_cls]


class GpsCoordinates(EmbeddedDocument):
    lat = FloatField()
    lng = FloatField()


class ReportPhoto(EmbeddedDocument):
    url = StringField()
    public_id = StringField()
    placeholder = StringField()  # perceptual placeholder, safe for public display
    uploaded_at = DateTimeField(default=utcnow)

    def to_json(self):
        return {
            'url': self.url,
            'public_id': self.public_id,
            'placeholder': self.placeholder,
            'uploaded_at': self.uploaded_at.isoformat() if self.uploaded_at else None,
        }


class AccessLogEntry(EmbeddedDocument):
    user_id = ObjectIdField()
    accessed_at = DateTimeField(default=utcnow)
    action = StringField()


class IDReport(Document):
    # Report identification
    report_number = StringField(required=True, unique=True)

    # Found ID details
    id_type = StringField(choices=_values(IDType), required=True)
    full_name = StringField(required=True, max_length=200)
    id_number = StringField(required=True)
    id_number_key = StringField(required=True)
    masked_id_number = StringField(required=True)

    # Finder information
    finder_id = ObjectIdField()
    finder_type = StringField(choices=_values(FinderType), required=True)
    finder_contact = StringField(required=True)
    finder_contact_method = StringField(choices=_values(ContactMethod), required=True)

    # Location details
    campus = StringField(choices=_values(ReportCampus), required=True)
    building = StringField(default="")
    specific_location = StringField(required=True, max_length=500)
    gps_coordinates = EmbeddedDocumentField(GpsCoordinates)

    photos = EmbeddedDocumentListField(ReportPhoto)

    # Status tracking
    status = StringField(choices=_values(ReportStatus), default=ReportStatus.PENDING.value)
    verification_status = StringField(
        choices=_values(ReportVerificationStatus),
        default=ReportVerificationStatus.UNVERIFIED.value
    )

    # Owner information, written only by a winning verification
    owner_id = ObjectIdField()
    claimed_at = DateTimeField()
    claimed_method = StringField(choices=_values(ClaimedMethod))

    # Security guard handling
    security_guard_id = ObjectIdField()
    security_notes = StringField(default="")

    # Collection details
    collection_point = StringField(choices=_values(CollectionPoint))
    collection_notes = StringField()
    collected_at = DateTimeField()

    # Privacy
    is_sensitive = BooleanField(default=False)
    last_accessed = DateTimeField()
    access_log = EmbeddedDocumentListField(AccessLogEntry)

    found_at = DateTimeField(default=utcnow)
    created_at = DateTimeField(default=utcnow)
    updated_at = DateTimeField(default=utcnow)

    meta = {
        'collection': 'id_reports',
        'indexes': [
            ('status', 'campus'),
            'id_number_key',
            'masked_id_number',
            'finder_id',
            'owner_id',
            '-created_at',
        ]
    }

    def clean(self):
        """Identity fields come from new_report(); refuse documents without them."""
        if not self.report_number or not self.masked_id_number or not self.id_number_key:
            raise ValidationError("Reports must be built with new_report()")

    def save(self, *args, **kwargs):
        self.updated_at = utcnow()
        return super(IDReport, self).save(*args, **kwargs)

    def to_json(self) -> dict:
        gps = None
        if self.gps_coordinates:
            gps = {'lat': self.gps_coordinates.lat, 'lng': self.gps_coordinates.lng}

        return {
            'id': str(self.id),
            'report_number': self.report_number,
            'id_type': self.id_type,
            'full_name': self.full_name,
            'id_number': self.id_number,
            'masked_id_number': self.masked_id_number,
            'finder_id': str(self.finder_id) if self.finder_id else None,
            'finder_type': self.finder_type,
            'finder_contact': self.finder_contact,
            'finder_contact_method': self.finder_contact_method,
            'campus': self.campus,
            'building': self.building,
            'specific_location': self.specific_location,
            'gps_coordinates': gps,
            'photos': [photo.to_json() for photo in self.photos],
            'status': self.status,
            'verification_status': self.verification_status,
            'owner_id': str(self.owner_id) if self.owner_id else None,
            'claimed_at': self.claimed_at.isoformat() if self.claimed_at else None,
            'claimed_method': self.claimed_method,
            'security_guard_id': str(self.security_guard_id) if self.security_guard_id else None,
            'security_notes': self.security_notes,
            'collection_point': self.collection_point,
            'collection_notes': self.collection_notes,
            'collected_at': self.collected_at.isoformat() if self.collected_at else None,
            'access_log': [
                {
                    'user_id': str(entry.user_id) if entry.user_id else None,
                    'accessed_at': entry.accessed_at.isoformat() if entry.accessed_at else None,
                    'action': entry.action,
                }
                for entry in self.access_log
            ],
            'found_at': self.found_at.isoformat() if self.found_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


def new_report(sequence: int, *, id_type: str, id_number: str, **fields) -> IDReport:
    """Build an unsaved report with its derived identity fields filled in.

    The report number and the masked ID number are fixed here, once, from the
    sequence value and the trimmed ID number.
    """
    id_number = (id_number or "").strip()
    if not id_number:
        raise ValidationError("ID number is required")

    return IDReport(
        report_number=format_report_number(id_type, sequence),
        id_type=id_type,
        id_number=id_number,
        id_number_key=normalize_id_number(id_number),
        masked_id_number=mask_id_number(id_number),
        **fields,
    )
