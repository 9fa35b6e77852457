from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient

from faceattend.main import create_app
from tests.conftest import make_descriptor


@pytest.fixture
def client(engine):
    # lifespan is not entered: no log files, no default engine, no scheduler
    return TestClient(create_app(engine=engine, start_scheduler=False))


def upload(images, field="files"):
    return [(field, (f"capture-{i}.jpg", image, "image/jpeg")) for i, image in enumerate(images)]


@pytest.fixture
def enrolled_user(client, extractor):
    face = make_descriptor(1)
    response = client.post("/users/", data={"name": "Alice", "identifier": "EMP-001"})
    assert response.status_code == 201
    user_id = response.json()["id"]

    response = client.post(f"/users/{user_id}/enroll", files=upload(extractor.captures("alice", face)))
    assert response.status_code == 200
    assert response.json()["descriptors"] == 5
    return user_id, extractor.add(b"alice-live", face)


@pytest.fixture
def guest_token(client, extractor):
    images = extractor.captures("visitor", make_descriptor(2))
    response = client.post("/guests/", data={"name": "Visitor", "consent": "true", "email": "v@example.com"},
                           files=upload(images))
    assert response.status_code == 201
    return response.json()["token"]


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "running"
    assert body["threshold"] == 0.6
    assert body["gpu_enabled"] is False


def test_get_user(client, enrolled_user):
    user_id, _ = enrolled_user
    body = client.get(f"/users/{user_id}").json()
    assert body["identifier"] == "EMP-001"
    assert body["enrolled"] is True


def test_unknown_user(client):
    response = client.get("/users/missing")
    assert response.status_code == 404
    assert response.json()["code"] == "unknown_identity"


def test_enrollment_errors_are_422(client, extractor):
    user_id = client.post("/users/", data={"name": "Bob", "identifier": "EMP-002"}).json()["id"]
    response = client.post(f"/users/{user_id}/enroll", files=upload(extractor.captures("bob", make_descriptor(3), 4)))
    assert response.status_code == 422
    assert response.json()["code"] == "insufficient_captures"


def test_check_in_and_out(client, enrolled_user, clock):
    user_id, live = enrolled_user
    capture = {"file": ("live.jpg", live, "image/jpeg")}

    response = client.post("/attendance/check-in", data={"user_id": user_id}, files=capture)
    assert response.status_code == 201
    body = response.json()
    assert body["attendance"]["status"] == "present"
    assert body["verification"]["match"] is True

    response = client.post("/attendance/check-in", data={"user_id": user_id}, files=capture)
    assert response.status_code == 409
    assert response.json()["code"] == "already_checked_in"

    clock.advance(hours=8)
    response = client.post("/attendance/check-out", data={"user_id": user_id}, files=capture)
    assert response.status_code == 200
    assert response.json()["attendance"]["hours_worked"] == 8.0

    history = client.get(f"/attendance/{user_id}").json()["attendance"]
    assert len(history) == 1


def test_check_in_with_wrong_face(client, enrolled_user, extractor):
    user_id, _ = enrolled_user
    impostor = extractor.add(b"impostor", make_descriptor(99))
    response = client.post("/attendance/check-in", data={"user_id": user_id},
                           files={"file": ("live.jpg", impostor, "image/jpeg")})
    assert response.status_code == 401
    assert response.json()["code"] == "verification_failed"


def test_check_out_without_check_in(client, enrolled_user):
    user_id, live = enrolled_user
    response = client.post("/attendance/check-out", data={"user_id": user_id},
                           files={"file": ("live.jpg", live, "image/jpeg")})
    assert response.status_code == 409
    assert response.json()["code"] == "no_check_in"


def test_guest_requires_consent(client, extractor):
    images = extractor.captures("visitor", make_descriptor(2))
    response = client.post("/guests/", data={"name": "Visitor"}, files=upload(images))
    assert response.status_code == 400
    assert response.json()["code"] == "consent_required"


def test_guest_flow(client, guest_token):
    headers = {"Authorization": f"Bearer {guest_token}"}

    assert client.get("/guests/me", headers=headers).json()["name"] == "Visitor"

    response = client.post("/guests/check-in", headers=headers)
    assert response.status_code == 201
    assert response.json()["attendance"]["identity_kind"] == "guest"

    assert client.post("/guests/check-out", headers=headers).status_code == 200
    assert client.post("/guests/logout", headers=headers).status_code == 200
    assert client.get("/guests/me", headers=headers).status_code == 401


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer forged"}, {"Authorization": "Basic abc"}])
def test_bad_tokens_are_unauthorized(client, headers):
    response = client.post("/guests/check-in", headers=headers)
    assert response.status_code == 401
    assert response.json() == {"detail": "Unauthorized", "code": "unauthorized"}


def test_expired_token_looks_like_invalid(client, guest_token, clock):
    clock.advance(hours=25)
    response = client.post("/guests/check-in", headers={"Authorization": f"Bearer {guest_token}"})
    assert response.status_code == 401
    assert response.json() == {"detail": "Unauthorized", "code": "unauthorized"}


def test_resume_guest(client, guest_token, extractor):
    live = extractor.add(b"visitor-live", make_descriptor(2))
    response = client.post("/guests/resume", data={"email": "V@example.com"},
                           files={"file": ("live.jpg", live, "image/jpeg")})
    assert response.status_code == 200
    assert response.json()["token"] != guest_token


def test_admin_cleanup_uses_server_clock(client, guest_token, clock):
    response = client.post("/admin/cleanup")
    assert response.status_code == 200
    assert response.json()["deleted"] == 0

    clock.advance(days=8)
    response = client.post("/admin/cleanup")
    assert response.json()["deleted"] == 1
    assert response.json()["ran_at"] == clock.now().isoformat()


def test_admin_cleanup_ignores_client_supplied_time(client, guest_token):
    response = client.post("/admin/cleanup", json={"now": "2100-01-01T00:00:00"})
    assert response.status_code == 200
    assert response.json()["deleted"] == 0
    assert client.get("/guests/me", headers={"Authorization": f"Bearer {guest_token}"}).status_code == 200


def test_process_time_header(client):
    assert "X-Process-Time" in client.get("/health").headers


def test_today_and_day_listing(client, enrolled_user, guest_token, clock):
    user_id, live = enrolled_user
    assert client.get(f"/attendance/{user_id}/today").json() == {"attendance": None}

    client.post("/attendance/check-in", data={"user_id": user_id}, files={"file": ("live.jpg", live, "image/jpeg")})
    clock.advance(minutes=10)
    client.post("/guests/check-in", headers={"Authorization": f"Bearer {guest_token}"})

    today = client.get(f"/attendance/{user_id}/today").json()["attendance"]
    assert today["identity_id"] == user_id
    assert today["check_out_time"] is None

    everyone = client.get("/attendance/").json()["attendance"]
    assert [r["identity_kind"] for r in everyone] == ["user", "guest"]

    tomorrow = (clock.now() + timedelta(days=1)).date()
    assert client.get("/attendance/", params={"day": tomorrow.isoformat()}).json() == {"attendance": []}
    assert len(client.get("/attendance/", params={"day": date(2026, 10, 19).isoformat()}).json()["attendance"]) == 2


def test_guest_reads_own_attendance(client, guest_token, clock):
    headers = {"Authorization": f"Bearer {guest_token}"}
    body = client.get("/guests/attendance", headers=headers).json()
    assert body == {"today": None, "history": []}

    client.post("/guests/check-in", headers=headers)
    clock.advance(hours=3)
    client.post("/guests/check-out", headers=headers)

    body = client.get("/guests/attendance", headers=headers).json()
    assert body["today"]["hours_worked"] == 3.0
    assert len(body["history"]) == 1


def test_guest_attendance_requires_token(client):
    response = client.get("/guests/attendance")
    assert response.status_code == 401
    assert response.json()["code"] == "unauthorized"
