from mongoengine import (
    Document, EmbeddedDocument, EmbeddedDocumentField, EmailField, StringField,
    BooleanField, DateTimeField, EnumField, IntField, ValidationError
)
from bcrypt import hashpw, gensalt, checkpw
from datetime import timedelta
from enum import Enum

from Utils.identifiers import format_phone_number, utcnow

MAX_LOGIN_ATTEMPTS = 5
LOCK_DURATION = timedelta(minutes=15)


# =====================================
#  ROLE / CAMPUS ENUMS
# =====================================
class Role(Enum):
    STUDENT = "student"
    STAFF = "staff"
    SECURITY = "security"
    ADMIN = "admin"


class Campus(Enum):
    ATHI_RIVER = "Athi River"
    NAIROBI = "Nairobi"
    MOMBASA = "Mombasa"
    ALL = "All Campuses"


class Shift(Enum):
    MORNING = "Morning"
    EVENING = "Evening"
    NIGHT = "Night"
    FLEXIBLE = "Flexible"


def role_of(user) -> str | None:
    """Plain role string for a user document (or None for anonymous)."""
    if user is None:
        return None
    return getattr(user.role, "value", user.role)


class NotificationPreferences(EmbeddedDocument):
    email = BooleanField(default=True)
    sms = BooleanField(default=False)
    push = BooleanField(default=True)


# =====================================
#  USER MODEL
# =====================================
class User(Document):
    first_name = StringField(required=True, max_length=50)
    last_name = StringField(required=True, max_length=50)
    email = EmailField()
    phone = StringField()
    role = EnumField(Role, required=True, default=Role.STUDENT)

    # Student / staff identifiers
    student_id = StringField()
    staff_id = StringField()
    campus = StringField(choices=[c.value for c in Campus], default=Campus.ATHI_RIVER.value)
    department = StringField(max_length=100)

    # Security guard specifics
    guard_id = StringField()
    security_company = StringField(max_length=100)
    shift = StringField(choices=[s.value for s in Shift])

    # Authentication
    password = StringField(required=True, min_length=6)
    is_verified = BooleanField(default=False)
    login_attempts = IntField(default=0)
    lock_until = DateTimeField()
    last_login = DateTimeField()
    active = BooleanField(default=True)

    notification_preferences = EmbeddedDocumentField(
        NotificationPreferences, default=NotificationPreferences
    )

    created_at = DateTimeField(default=utcnow)
    updated_at = DateTimeField(default=utcnow)

    meta = {
        'collection': 'users',
        'indexes': ['email', 'phone', 'student_id', 'staff_id', 'role', 'campus']
    }

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def clean(self):
        """Validate and normalize user input before saving."""
        if self.email:
            self.email = self.email.strip().lower()

        if self.phone:
            self.phone = format_phone_number(self.phone.strip())

        if self.role == Role.STUDENT and not self.student_id:
            raise ValidationError("Student ID is required for students.")
        if self.role == Role.STAFF and not self.staff_id:
            raise ValidationError("Staff ID is required for staff.")
        if self.role == Role.SECURITY and not self.phone:
            raise ValidationError("Phone number is required for security guards.")

    # =====================================
    #  SAVE OVERRIDE
    # =====================================
    def save(self, *args, **kwargs):
        """Hash the password on first save or after it was changed."""
        self.clean()

        if self.password and not self.password.startswith("$2b$"):
            self.password = self.hash_password(self.password)

        self.updated_at = utcnow()
        return super(User, self).save(*args, **kwargs)

    # =====================================
    #  PASSWORD + LOCKOUT HELPERS
    # =====================================
    def correct_password(self, candidate_password: str) -> bool:
        return checkpw(candidate_password.encode('utf-8'), self.password.encode('utf-8'))

    @staticmethod
    def hash_password(password: str) -> str:
        return hashpw(password.encode('utf-8'), gensalt(12)).decode('utf-8')

    def is_locked(self, now=None) -> bool:
        now = now or utcnow()
        return bool(self.lock_until and self.lock_until > now)

    def register_failed_login(self):
        """Count a failed login, locking the account after too many."""
        now = utcnow()
        if self.lock_until and self.lock_until <= now:
            User.objects(id=self.id).update_one(set__login_attempts=1, unset__lock_until=True)
            return

        updates = {"inc__login_attempts": 1}
        if (self.login_attempts or 0) + 1 >= MAX_LOGIN_ATTEMPTS and not self.is_locked(now):
            updates["set__lock_until"] = now + LOCK_DURATION
        User.objects(id=self.id).update_one(**updates)

    def reset_login_attempts(self):
        User.objects(id=self.id).update_one(
            set__login_attempts=0, unset__lock_until=True, set__last_login=utcnow()
        )

    # =====================================
    #  JSON SERIALIZER
    # =====================================
    def to_json(self) -> dict:
        prefs = self.notification_preferences or NotificationPreferences()
        return {
            'id': str(self.id),
            'first_name': self.first_name,
            'last_name': self.last_name,
            'full_name': self.full_name,
            'email': self.email,
            'phone': self.phone,
            'role': role_of(self),
            'student_id': self.student_id,
            'staff_id': self.staff_id,
            'guard_id': self.guard_id,
            'campus': self.campus,
            'department': self.department,
            'security_company': self.security_company,
            'shift': self.shift,
            'is_verified': self.is_verified,
            'active': self.active,
            'notification_preferences': {
                'email': prefs.email,
                'sms': prefs.sms,
                'push': prefs.push,
            },
            'last_login': self.last_login.isoformat() if self.last_login else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
