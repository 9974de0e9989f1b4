"""Integration tests for the HTTP authentication flow.

Tests the complete auth flow including:
- Registration and duplicate detection
- Login
- Token refresh rotation
- Logout
- Profile read/update and password change behind the request gate
"""

import threading
import time

import pytest
from fastapi.testclient import TestClient

from pitchcoach.app import create_app
from pitchcoach.service.tokens import TokenIssuer
from pitchcoach.storage.models import AuditEvent

REGISTRATION = {"firstName": "A", "lastName": "B", "email": "a@b.com", "password": "secret1"}


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def registered(client):
    response = client.post("/auth/register", json=REGISTRATION)
    assert response.status_code == 201
    return response.json()


class TestRegister:
    """Tests for user registration."""

    def test_register_then_profile(self, client):
        response = client.post("/auth/register", json=REGISTRATION)

        assert response.status_code == 201
        data = response.json()
        assert data["accessToken"]
        assert data["refreshToken"]
        assert set(data["user"]) == {"id", "firstName", "lastName", "email", "createdAt"}

        profile = client.get("/user/profile", headers=_auth(data["accessToken"]))
        assert profile.status_code == 200
        assert profile.json()["email"] == "a@b.com"

    def test_duplicate_email(self, client, registered, memory_store):
        tokens_before = len(memory_store.refresh_tokens)

        response = client.post(
            "/auth/register", json={**REGISTRATION, "email": "A@B.COM"}
        )

        assert response.status_code == 400
        body = response.json()
        assert body == {"message": "Email already registered", "status": 400, "code": "DUPLICATE_EMAIL"}
        assert len(memory_store.refresh_tokens) == tokens_before

    def test_missing_fields(self, client):
        response = client.post("/auth/register", json={"email": "a@b.com"})

        assert response.status_code == 400
        assert response.json()["message"] == "All fields are required"
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_wrong_field_type_is_a_400(self, client):
        response = client.post("/auth/register", json={**REGISTRATION, "password": 123456})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_password_hash_never_serialized(self, client, registered):
        assert "password" not in str(registered).lower()


class TestLogin:
    """Tests for user login."""

    def test_login_with_valid_credentials(self, client, registered):
        response = client.post("/auth/login", json={"email": "a@b.com", "password": "secret1"})

        assert response.status_code == 200
        data = response.json()
        assert data["user"]["id"] == registered["user"]["id"]
        assert data["refreshToken"] != registered["refreshToken"]

    def test_wrong_password(self, client, registered):
        response = client.post("/auth/login", json={"email": "a@b.com", "password": "nope-nope"})

        assert response.status_code == 401
        assert response.json() == {
            "message": "Invalid credentials",
            "status": 401,
            "code": "INVALID_CREDENTIALS",
        }

    def test_unknown_email_matches_wrong_password(self, client, registered):
        wrong = client.post("/auth/login", json={"email": "a@b.com", "password": "nope-nope"})
        unknown = client.post("/auth/login", json={"email": "x@y.com", "password": "secret1"})

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()

    def test_login_with_the_string_used_at_registration(self, client):
        fullwidth = "ａ@b.com"
        registered = client.post("/auth/register", json={**REGISTRATION, "email": fullwidth})
        assert registered.json()["user"]["email"] == "a@b.com"

        response = client.post("/auth/login", json={"email": fullwidth, "password": "secret1"})

        assert response.status_code == 200
        assert response.json()["user"]["id"] == registered.json()["user"]["id"]

    def test_malformed_email_is_a_generic_401(self, client, registered):
        response = client.post("/auth/login", json={"email": "not-an-email", "password": "secret1"})

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_CREDENTIALS"

    def test_missing_fields(self, client):
        response = client.post("/auth/login", json={})

        assert response.status_code == 400
        assert response.json()["message"] == "Email and password are required"


class TestRefresh:
    """Tests for refresh token rotation."""

    def test_rotation_and_replay(self, client, registered):
        first = client.post("/auth/refresh-token", json={"refreshToken": registered["refreshToken"]})

        assert first.status_code == 200
        assert set(first.json()) == {"accessToken", "refreshToken"}

        replay = client.post("/auth/refresh-token", json={"refreshToken": registered["refreshToken"]})
        assert replay.status_code == 401
        assert replay.json()["code"] == "INVALID_REFRESH_TOKEN"

        second = client.post("/auth/refresh-token", json={"refreshToken": first.json()["refreshToken"]})
        assert second.status_code == 200

    def test_missing_token(self, client):
        response = client.post("/auth/refresh-token", json={})

        assert response.status_code == 400
        assert response.json()["message"] == "Refresh token is required"

    def test_user_deleted_out_of_band(self, client, registered, memory_store):
        memory_store.users.pop(registered["user"]["id"])

        response = client.post("/auth/refresh-token", json={"refreshToken": registered["refreshToken"]})

        assert response.status_code == 404
        assert response.json()["code"] == "USER_NOT_FOUND"
        assert memory_store.get_refresh_token(registered["refreshToken"]) is None

    def test_concurrent_double_submit(self, client, registered):
        app = client.app
        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def submit():
            worker = TestClient(app)
            barrier.wait()
            response = worker.post(
                "/auth/refresh-token", json={"refreshToken": registered["refreshToken"]}
            )
            with lock:
                outcomes.append((response.status_code, response.json()))

        threads = [threading.Thread(target=submit) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(status for status, _ in outcomes) == [200, 401]
        rejected = next(body for status, body in outcomes if status == 401)
        assert rejected["code"] == "INVALID_REFRESH_TOKEN"


class TestLogout:
    """Tests for logout."""

    def test_logout_revokes_and_audits(self, client, registered, memory_store):
        response = client.post(
            "/auth/logout",
            json={"refreshToken": registered["refreshToken"]},
            headers=_auth(registered["accessToken"]),
        )

        assert response.status_code == 200
        assert response.json() == {"message": "Logged out successfully"}
        assert memory_store.get_refresh_token(registered["refreshToken"]) is None
        latest = memory_store.list_audit_events(registered["user"]["id"])[0]
        assert latest.event_type == AuditEvent.LOGOUT

    def test_logout_twice(self, client, registered):
        payload = {"refreshToken": registered["refreshToken"]}

        assert client.post("/auth/logout", json=payload).status_code == 200
        assert client.post("/auth/logout", json=payload).status_code == 200

    def test_logout_without_body(self, client):
        response = client.post("/auth/logout")

        assert response.status_code == 200

    def test_logout_with_oversized_token(self, client):
        response = client.post("/auth/logout", json={"refreshToken": "x" * 3000})

        assert response.status_code == 200
        assert response.json() == {"message": "Logged out successfully"}

    def test_logout_with_non_string_token(self, client, registered, memory_store):
        response = client.post("/auth/logout", json={"refreshToken": 12345})

        assert response.status_code == 200
        assert memory_store.get_refresh_token(registered["refreshToken"]) is not None

    def test_logout_with_unparseable_body(self, client, registered, memory_store):
        response = client.post(
            "/auth/logout",
            content=b"not json",
            headers={"Content-Type": "application/json", **_auth(registered["accessToken"])},
        )

        assert response.status_code == 200
        assert response.json() == {"message": "Logged out successfully"}
        latest = memory_store.list_audit_events(registered["user"]["id"])[0]
        assert latest.event_type == AuditEvent.LOGOUT

    def test_logout_with_bad_bearer_still_succeeds(self, client, registered, memory_store):
        response = client.post(
            "/auth/logout",
            json={"refreshToken": registered["refreshToken"]},
            headers=_auth("not-a-token"),
        )

        assert response.status_code == 200
        assert memory_store.get_refresh_token(registered["refreshToken"]) is None
        events = [e.event_type for e in memory_store.list_audit_events(registered["user"]["id"])]
        assert AuditEvent.LOGOUT not in events

    def test_access_token_still_valid_after_logout(self, client, registered):
        client.post("/auth/logout", json={"refreshToken": registered["refreshToken"]})

        response = client.get("/user/profile", headers=_auth(registered["accessToken"]))

        assert response.status_code == 200


class TestRequestGate:
    def test_missing_token(self, client):
        response = client.get("/user/profile")

        assert response.status_code == 401
        assert response.json() == {
            "message": "Authentication required",
            "status": 401,
            "code": "AUTH_REQUIRED",
        }

    def test_invalid_token(self, client):
        response = client.get("/user/profile", headers=_auth("a.b.c"))

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_TOKEN"
        assert response.json()["message"] == "Invalid token"

    def test_expired_token(self, client, runtime, registered):
        past = TokenIssuer(runtime.store, runtime.settings, clock=lambda: time.time() - 3600)
        token, _ = past.issue_access_token(registered["user"]["id"])

        response = client.get("/user/profile", headers=_auth(token))

        assert response.status_code == 401
        assert response.json()["code"] == "TOKEN_EXPIRED"
        assert response.json()["message"] == "Token expired"

    def test_profile_for_deleted_user(self, client, registered, memory_store):
        memory_store.delete_user(registered["user"]["id"])

        response = client.get("/user/profile", headers=_auth(registered["accessToken"]))

        assert response.status_code == 404
        assert response.json()["code"] == "USER_NOT_FOUND"


class TestProfileUpdate:
    def test_update_names(self, client, registered):
        response = client.put(
            "/user/profile",
            json={"firstName": "Grace", "lastName": "Hopper"},
            headers=_auth(registered["accessToken"]),
        )

        assert response.status_code == 200
        assert response.json()["firstName"] == "Grace"
        assert response.json()["lastName"] == "Hopper"
        assert response.json()["email"] == "a@b.com"

    def test_no_updates(self, client, registered):
        response = client.put("/user/profile", json={}, headers=_auth(registered["accessToken"]))

        assert response.status_code == 400
        assert response.json()["message"] == "No updates provided"

    def test_email_in_use(self, client, registered):
        other = client.post(
            "/auth/register", json={**REGISTRATION, "email": "c@d.com"}
        ).json()

        response = client.put(
            "/user/profile", json={"email": "a@b.com"}, headers=_auth(other["accessToken"])
        )

        assert response.status_code == 400
        assert response.json()["code"] == "EMAIL_IN_USE"


class TestChangePassword:
    def test_change_password_flow(self, client, registered):
        response = client.put(
            "/user/change-password",
            json={"currentPassword": "secret1", "newPassword": "secret2"},
            headers=_auth(registered["accessToken"]),
        )

        assert response.status_code == 200
        assert response.json() == {"message": "Password updated successfully"}
        assert client.post("/auth/login", json={"email": "a@b.com", "password": "secret2"}).status_code == 200
        refresh = client.post("/auth/refresh-token", json={"refreshToken": registered["refreshToken"]})
        assert refresh.status_code == 401

    def test_incorrect_current_password(self, client, registered):
        response = client.put(
            "/user/change-password",
            json={"currentPassword": "wrong-one", "newPassword": "secret2"},
            headers=_auth(registered["accessToken"]),
        )

        assert response.status_code == 401
        assert response.json()["code"] == "INCORRECT_PASSWORD"

    def test_requires_auth(self, client):
        response = client.put(
            "/user/change-password",
            json={"currentPassword": "secret1", "newPassword": "secret2"},
        )

        assert response.status_code == 401


def test_unexpected_error_is_generic_500(runtime, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("SELECT * FROM app_user exploded")

    monkeypatch.setattr(runtime.credentials, "find_by_email", boom)
    client = TestClient(create_app(runtime=runtime), raise_server_exceptions=False)

    response = client.post("/auth/login", json={"email": "a@b.com", "password": "secret1"})

    assert response.status_code == 500
    assert response.json() == {
        "message": "Internal server error",
        "status": 500,
        "code": "INTERNAL_ERROR",
    }
