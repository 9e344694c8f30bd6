from Models.userModel import User
from Models.verificationModel import Verification
from conftest import PASSWORD, auth_header, make_user, report_payload


def _error(resp):
    body = resp.get_json()
    assert body["success"] is False
    return body["error"]


# -------------------------
# auth
# -------------------------
def test_register_and_login(client):
    resp = client.post("/api/v1/auth/register", json={
        "first_name": "Jane", "last_name": "Wanjiku", "email": "Jane@Example.com",
        "phone": "0712345678", "student_id": "STD202300456", "password": PASSWORD,
    })
    assert resp.status_code == 201
    assert resp.get_json()["data"]["user"]["email"] == "jane@example.com"

    resp = client.post("/api/v1/auth/login", json={"identifier": "STD202300456", "password": PASSWORD})
    assert resp.status_code == 200
    token = resp.get_json()["data"]["token"]

    me = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.get_json()["data"]["phone"] == "+254712345678"


def test_register_rejects_admin_role(client):
    resp = client.post("/api/v1/auth/register", json={
        "first_name": "Eve", "last_name": "Admin", "email": "eve@example.com",
        "password": PASSWORD, "role": "admin",
    })
    assert resp.status_code == 400
    assert _error(resp)["kind"] == "validation_failed"


def test_register_duplicate_conflicts(client, student):
    resp = client.post("/api/v1/auth/register", json={
        "first_name": "Dup", "last_name": "User", "email": student.email,
        "student_id": "NEW0001", "password": PASSWORD,
    })
    assert resp.status_code == 409
    assert _error(resp)["kind"] == "conflict"


def test_login_locks_after_repeated_failures(client, student):
    for _ in range(5):
        resp = client.post("/api/v1/auth/login", json={"identifier": student.email, "password": "nope"})
        assert resp.status_code == 401

    resp = client.post("/api/v1/auth/login", json={"identifier": student.email, "password": PASSWORD})
    assert resp.status_code == 423


def test_missing_token(client):
    resp = client.get("/api/v1/auth/me")
    assert resp.status_code == 401
    assert _error(resp) == {"kind": "unauthorized", "message": "Authorization token missing"}


def test_update_preferences(client, student):
    resp = client.put("/api/v1/auth/preferences", json={"sms": True}, headers=auth_header(student))
    assert resp.status_code == 200
    assert User.objects(id=student.id).first().notification_preferences.sms is True

    resp = client.put("/api/v1/auth/preferences", json={"sms": "yes"}, headers=auth_header(student))
    assert resp.status_code == 400


# -------------------------
# reports
# -------------------------
def test_anonymous_report_and_public_view(client):
    resp = client.post("/api/v1/reports", json=report_payload())
    assert resp.status_code == 201
    created = resp.get_json()["data"]
    assert created["report_number"] == "STU000001"

    resp = client.get(f"/api/v1/reports/{created['slug']}")
    data = resp.get_json()["data"]
    assert resp.status_code == 200
    assert data["masked_id_number"] == "*****3456"
    assert "id_number" not in data
    assert "finder_contact" not in data


def test_report_validation_errors_carry_details(client):
    resp = client.post("/api/v1/reports", json=report_payload(campus="Kisumu"))
    assert resp.status_code == 400
    error = _error(resp)
    assert error["kind"] == "validation_failed"
    assert "campus" in error["details"]


def test_non_object_body_is_rejected(client):
    resp = client.post("/api/v1/reports", json=["not", "an", "object"])
    assert resp.status_code == 400


def test_search_endpoint(client, registry):
    registry.create_report(report_payload())
    resp = client.get("/api/v1/reports/search?name=jane")
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["total"] == 1
    assert body["data"][0]["report_number"] == "STU000001"


def test_staff_update_and_student_forbidden(client, report, guard, student):
    resp = client.put(f"/api/v1/reports/{report.id}", json={"status": "verified"}, headers=auth_header(student))
    assert resp.status_code == 403
    assert _error(resp)["kind"] == "forbidden"

    resp = client.put(f"/api/v1/reports/{report.id}", json={"status": "verified"}, headers=auth_header(guard))
    assert resp.status_code == 200
    assert resp.get_json()["data"]["status"] == "verified"


def test_unknown_report_is_404(client):
    resp = client.get("/api/v1/reports/000000000000000000000000")
    assert resp.status_code == 404
    assert _error(resp)["kind"] == "not_found"


def test_unknown_route_is_json_404(client):
    resp = client.get("/api/v1/nowhere")
    assert resp.status_code == 404
    assert _error(resp)["kind"] == "not_found"


def test_stats_requires_staff(client, report, student, admin):
    assert client.get("/api/v1/reports/stats", headers=auth_header(student)).status_code == 403
    resp = client.get("/api/v1/reports/stats", headers=auth_header(admin))
    assert resp.get_json()["data"]["total"] == 1


# -------------------------
# verifications
# -------------------------
def test_claim_flow_over_http(client, report, student):
    headers = auth_header(student)
    resp = client.post("/api/v1/verifications/start",
                       json={"report_id": str(report.id), "method": "id_number"}, headers=headers)
    assert resp.status_code == 201
    verification_id = resp.get_json()["data"]["verification_id"]

    again = client.post("/api/v1/verifications/start",
                        json={"report_id": str(report.id), "method": "id_number"}, headers=headers)
    assert again.status_code == 200
    assert again.get_json()["data"]["verification_id"] == verification_id

    resp = client.post("/api/v1/verifications/verify-id",
                       json={"verification_id": verification_id, "id_number": "wrong"}, headers=headers)
    assert resp.status_code == 400
    assert _error(resp)["details"] == {"attempts_remaining": 4}

    resp = client.post("/api/v1/verifications/verify-id",
                       json={"verification_id": verification_id, "id_number": "abc123456"}, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["data"]["status"] == "verified"

    resp = client.get(f"/api/v1/reports/{report.id}", headers=headers)
    assert resp.get_json()["data"]["owner_id"] == str(student.id)


def test_security_questions_are_returned_on_start(client, report, student):
    resp = client.post("/api/v1/verifications/start",
                       json={"report_id": str(report.id), "method": "security_questions"},
                       headers=auth_header(student))
    assert len(resp.get_json()["data"]["questions"]) == 3


def test_exhausted_claim_is_410(client, report, student):
    headers = auth_header(student)
    resp = client.post("/api/v1/verifications/start",
                       json={"report_id": str(report.id), "method": "phone_otp"}, headers=headers)
    verification_id = resp.get_json()["data"]["verification_id"]

    for _ in range(5):
        resp = client.post("/api/v1/verifications/verify-otp",
                           json={"verification_id": verification_id, "otp": "wrong!"}, headers=headers)
    assert resp.status_code == 410
    assert _error(resp)["kind"] == "verification_expired"
    assert Verification.objects(id=verification_id).first().status == "expired"


def test_document_review_over_http(client, report, student, guard):
    headers = auth_header(student)
    resp = client.post("/api/v1/verifications/start",
                       json={"report_id": str(report.id), "method": "document_upload"}, headers=headers)
    verification_id = resp.get_json()["data"]["verification_id"]

    resp = client.post("/api/v1/verifications/upload-documents", json={
        "verification_id": verification_id,
        "documents": [{"url": "/uploads/fees.pdf", "public_id": "fees.pdf", "document_type": "fee_statement"}],
    }, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["data"]["verification"]["status"] == "in_progress"

    pending = client.get("/api/v1/verifications/pending-reviews", headers=auth_header(guard))
    assert pending.get_json()["count"] == 1

    resp = client.post("/api/v1/verifications/security-verify",
                       json={"verification_id": verification_id, "approve": True}, headers=headers)
    assert resp.status_code == 403

    resp = client.post("/api/v1/verifications/security-verify",
                       json={"verification_id": verification_id, "approve": True}, headers=auth_header(guard))
    assert resp.status_code == 200
    assert resp.get_json()["data"]["message"] == "Verification approved"


def test_verification_detail_is_filtered(client, report, student):
    headers = auth_header(student)
    resp = client.post("/api/v1/verifications/start",
                       json={"report_id": str(report.id), "method": "phone_otp"}, headers=headers)
    verification_id = resp.get_json()["data"]["verification_id"]

    data = client.get(f"/api/v1/verifications/{verification_id}", headers=headers).get_json()["data"]
    assert "phone_otp" not in data

    stranger = make_user("student")
    resp = client.get(f"/api/v1/verifications/{verification_id}", headers=auth_header(stranger))
    assert resp.status_code == 403


def test_health(client):
    assert client.get("/health").get_json() == {"success": True, "status": "ok"}
