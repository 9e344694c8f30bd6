"""
Pytest configuration and fixtures for the PataID backend tests.

Every test gets its own in-memory mongomock database, so nothing here ever
touches a real MongoDB server.
"""
import sys
import pathlib
from datetime import datetime, timedelta

import mongomock
import pytest
from mongoengine import connect, disconnect

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from Models.userModel import Role, User  # noqa: E402
from Services.auditTrail import AuditTrail  # noqa: E402
from Services.notificationService import NotificationDispatcher  # noqa: E402
from Services.reportRegistry import ReportRegistry  # noqa: E402
from Services.verificationEngine import VerificationEngine  # noqa: E402
from Utils.db import ensure_indexes  # noqa: E402
from Utils.jwt_utils import create_access_token  # noqa: E402

TEST_JWT_SECRET = "test-jwt-secret"
PASSWORD = "password123"


# -------------------------
# fakes
# -------------------------
class RecordingEmailSender:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def send(self, to_email, subject, body):
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append({"to": to_email, "subject": subject, "body": body})


class RecordingSmsSender:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def send(self, to_phone, body):
        if self.fail:
            raise ConnectionError("twilio down")
        self.sent.append({"to": to_phone, "body": body})
        return True


class FakeClock:
    """Manually advanced naive UTC clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 3, 1, 9, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


# -------------------------
# database
# -------------------------
@pytest.fixture(autouse=True)
def db():
    connection = connect(
        db="pataid_test",
        host="mongodb://localhost",
        alias="default",
        mongo_client_class=mongomock.MongoClient,
    )
    ensure_indexes()
    yield connection
    connection.drop_database("pataid_test")
    disconnect(alias="default")


# -------------------------
# collaborators
# -------------------------
@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def sms_sender():
    return RecordingSmsSender()


@pytest.fixture
def notifier(email_sender, sms_sender):
    return NotificationDispatcher(email_sender, sms_sender)


@pytest.fixture
def audit():
    return AuditTrail()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(audit, notifier, clock):
    return ReportRegistry(audit, notifier, clock=clock)


@pytest.fixture
def engine(registry, notifier, audit, clock):
    return VerificationEngine(registry, notifier, audit, clock=clock)


# -------------------------
# users
# -------------------------
def make_user(role="student", **fields):
    counter = User.objects.count() + 1
    defaults = {
        "first_name": "Test",
        "last_name": f"User{counter}",
        "email": f"user{counter}@example.com",
        "phone": f"+2547000000{counter:02d}",
        "password": PASSWORD,
        "role": Role(role),
        "campus": "Athi River",
        "is_verified": True,
    }
    if role == "student":
        defaults["student_id"] = f"S{counter:05d}"
    if role == "staff":
        defaults["staff_id"] = f"T{counter:05d}"
    defaults.update(fields)
    user = User(**defaults)
    user.save()
    return user


@pytest.fixture
def student():
    return make_user("student")


@pytest.fixture
def other_student():
    return make_user("student")


@pytest.fixture
def guard():
    return make_user("security", guard_id="G-01")


@pytest.fixture
def admin():
    return make_user("admin", campus="All Campuses")


def report_payload(**overrides):
    data = {
        "id_type": "student",
        "full_name": "Jane Wanjiku",
        "id_number": "ABC123456",
        "finder_type": "public",
        "finder_contact": "finder@example.com",
        "finder_contact_method": "email",
        "campus": "Athi River",
        "building": "Library",
        "specific_location": "Second floor reading area",
    }
    data.update(overrides)
    return data


@pytest.fixture
def report(registry):
    return registry.create_report(report_payload())


# -------------------------
# flask
# -------------------------
@pytest.fixture
def app(notifier):
    from app import create_app

    app = create_app({
        "TESTING": True,
        "SKIP_DB_INIT": True,
        "RATELIMIT_ENABLED": False,
        "JWT_SECRET": TEST_JWT_SECRET,
        "NOTIFIER": notifier,
    })
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def auth_header(user):
    token = create_access_token(user.id, user.role.value, secret=TEST_JWT_SECRET)
    return {"Authorization": f"Bearer {token}"}
