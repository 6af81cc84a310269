"""Integration tests for the cookie-based authentication flow.

Tests the complete auth flow including:
- Registration and login
- Profile lookup through the access cookie
- Refresh rotation and replay rejection
- Logout
"""

import threading

import pytest
from fastapi.testclient import TestClient

from rxportal import app as app_module
from rxportal.service.runtime import get_runtime

DOCTOR = {
    "email": "dr@test.com",
    "password": "doctor123",
    "name": "Dr. Demo",
    "role": "doctor",
    "specialty": "Cardiology",
}


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _client_with(cookies):
    return TestClient(app_module.app, cookies=cookies)


def _set_cookie_headers(response, name):
    return [h for h in response.headers.get_list("set-cookie") if h.startswith(f"{name}=")]


class TestRegister:
    """Tests for account registration."""

    def test_register_sets_both_cookies(self, client):
        response = client.post("/api/auth/register", json=DOCTOR)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        user = body["data"]["user"]
        assert set(user) == {"id", "email", "name", "role"}
        assert user["email"] == "dr@test.com"
        assert user["role"] == "doctor"
        assert response.cookies.get("access_token")
        assert response.cookies.get("refresh_token")

    def test_cookie_attributes(self, client):
        response = client.post("/api/auth/register", json=DOCTOR)

        access = _set_cookie_headers(response, "access_token")[0].lower()
        refresh = _set_cookie_headers(response, "refresh_token")[0].lower()
        assert "httponly" in access and "httponly" in refresh
        assert "path=/" in access and "path=/" in refresh
        assert "max-age=900" in access
        assert "max-age=604800" in refresh
        assert "samesite=strict" in access
        assert "secure" not in access

    def test_register_never_returns_password_hash(self, client):
        response = client.post("/api/auth/register", json=DOCTOR)
        assert "password" not in response.text
        assert "$argon2" not in response.text

    def test_duplicate_email_is_409(self, client):
        client.post("/api/auth/register", json=DOCTOR)
        response = _client_with({}).post("/api/auth/register", json=DOCTOR)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"
        assert response.json()["error"]["message"] == "email already registered"

    @pytest.mark.parametrize(
        "patch",
        [
            {"email": "not-an-email"},
            {"password": "12345"},
            {"name": "   "},
            {"role": "nurse"},
            {"birthDate": "15/08/1985"},
        ],
    )
    def test_invalid_body_is_400(self, client, patch):
        response = client.post("/api/auth/register", json={**DOCTOR, **patch})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_register_patient_with_birth_date(self, client):
        response = client.post(
            "/api/auth/register",
            json={
                "email": "patient@test.com",
                "password": "patient123",
                "name": "Pat",
                "role": "patient",
                "birthDate": "1985-08-15",
            },
        )
        assert response.status_code == 201
        runtime = get_runtime()
        user = runtime.store.get_user_by_email("patient@test.com")
        assert runtime.store.get_patient_profile(user.id).birth_date.isoformat() == "1985-08-15"


class TestLogin:
    """Tests for login."""

    def test_login_success(self, client):
        client.post("/api/auth/register", json=DOCTOR)
        fresh = _client_with({})
        response = fresh.post(
            "/api/auth/login", json={"email": "dr@test.com", "password": "doctor123"}
        )

        assert response.status_code == 200
        assert response.json()["data"]["user"]["email"] == "dr@test.com"
        assert response.cookies.get("access_token")

    def test_email_is_case_sensitive_as_stored(self, client):
        """Emails keep their case; a differently cased address is another identity."""
        mixed = client.post("/api/auth/register", json={**DOCTOR, "email": "Dr@Test.com"})
        assert mixed.status_code == 201
        assert mixed.json()["data"]["user"]["email"] == "Dr@Test.com"

        wrong_case = _client_with({}).post(
            "/api/auth/login", json={"email": "dr@test.com", "password": "doctor123"}
        )
        assert wrong_case.status_code == 401

        exact = _client_with({}).post(
            "/api/auth/login", json={"email": "Dr@Test.com", "password": "doctor123"}
        )
        assert exact.status_code == 200

        lower = _client_with({}).post("/api/auth/register", json=DOCTOR)
        assert lower.status_code == 201

    def test_wrong_password_and_unknown_email_match(self, client):
        client.post("/api/auth/register", json=DOCTOR)
        wrong = _client_with({}).post(
            "/api/auth/login", json={"email": "dr@test.com", "password": "bad-pass"}
        )
        unknown = _client_with({}).post(
            "/api/auth/login", json={"email": "ghost@test.com", "password": "doctor123"}
        )

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["message"] == "invalid credentials"
        assert "set-cookie" not in wrong.headers


class TestProfile:
    """Tests for the authenticated profile endpoint."""

    def test_profile_with_cookie(self, client):
        client.post("/api/auth/register", json=DOCTOR)
        response = client.get("/api/auth/profile")

        assert response.status_code == 200
        assert response.json()["data"]["user"]["role"] == "doctor"

    def test_profile_without_cookie_is_401(self, client):
        response = client.get("/api/auth/profile")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_profile_with_refresh_token_in_access_cookie(self, client):
        response = client.post("/api/auth/register", json=DOCTOR)
        refresh = response.cookies.get("refresh_token")
        swapped = _client_with({"access_token": refresh})

        assert swapped.get("/api/auth/profile").status_code == 401

    def test_deleted_user_cookie_is_401(self, client):
        response = client.post("/api/auth/register", json=DOCTOR)
        user_id = response.json()["data"]["user"]["id"]
        get_runtime().store.delete_user(user_id)

        assert client.get("/api/auth/profile").status_code == 401

    def test_non_ascii_signature_is_401(self, client):
        """A cookie whose signature segment is not ASCII is rejected, not a server error."""
        response = client.post("/api/auth/register", json=DOCTOR)
        header, payload, _sig = response.cookies.get("access_token").split(".")
        raw_cookie = f"access_token={header}.{payload}.éé".encode("utf-8")

        result = _client_with({}).get("/api/auth/profile", headers={"cookie": raw_cookie})
        assert result.status_code == 401
        assert result.json()["error"]["code"] == "unauthorized"


class TestRefreshRotation:
    """Tests for refresh token rotation."""

    def test_rotation_scenario(self, client):
        """Login, refresh, then replay the first refresh token."""
        client.post("/api/auth/register", json=DOCTOR)
        login = _client_with({})
        response = login.post(
            "/api/auth/login", json={"email": "dr@test.com", "password": "doctor123"}
        )
        first_refresh = response.cookies.get("refresh_token")
        first_access = response.cookies.get("access_token")

        rotated = _client_with({"refresh_token": first_refresh}).post("/api/auth/refresh")
        assert rotated.status_code == 200
        assert rotated.json()["data"]["user"]["email"] == "dr@test.com"
        second_refresh = rotated.cookies.get("refresh_token")
        assert second_refresh and second_refresh != first_refresh
        assert rotated.cookies.get("access_token") != first_access

        replay = _client_with({"refresh_token": first_refresh}).post("/api/auth/refresh")
        assert replay.status_code == 401

        again = _client_with({"refresh_token": second_refresh}).post("/api/auth/refresh")
        assert again.status_code == 200

    def test_refresh_without_cookie_is_401(self, client):
        response = client.post("/api/auth/refresh")
        assert response.status_code == 401

    def test_refresh_with_access_token_is_401(self, client):
        response = client.post("/api/auth/register", json=DOCTOR)
        access = response.cookies.get("access_token")
        assert _client_with({"refresh_token": access}).post("/api/auth/refresh").status_code == 401

    def test_signed_but_unstored_token_is_401(self, client):
        """A well-formed refresh token with no store row is rejected."""
        response = client.post("/api/auth/register", json=DOCTOR)
        user_id = response.json()["data"]["user"]["id"]
        forged = get_runtime().tokens.sign_refresh_token(user_id, "no-such-row")
        assert _client_with({"refresh_token": forged}).post("/api/auth/refresh").status_code == 401

    def test_non_ascii_refresh_signature_is_401(self, client):
        response = client.post("/api/auth/register", json=DOCTOR)
        header, payload, _sig = response.cookies.get("refresh_token").split(".")
        raw_cookie = f"refresh_token={header}.{payload}.éé".encode("utf-8")

        result = _client_with({}).post("/api/auth/refresh", headers={"cookie": raw_cookie})
        assert result.status_code == 401

    def test_concurrent_refresh_has_one_winner(self, client):
        response = client.post("/api/auth/register", json=DOCTOR)
        token = response.cookies.get("refresh_token")
        barrier = threading.Barrier(2)
        statuses = []
        lock = threading.Lock()

        def _refresh():
            worker = _client_with({"refresh_token": token})
            barrier.wait()
            result = worker.post("/api/auth/refresh")
            with lock:
                statuses.append(result.status_code)

        threads = [threading.Thread(target=_refresh) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sorted(statuses) == [200, 401]


class TestLogout:
    """Tests for logout."""

    def test_logout_clears_cookies_and_revokes(self, client):
        response = client.post("/api/auth/register", json=DOCTOR)
        refresh = response.cookies.get("refresh_token")

        out = client.post("/api/auth/logout")
        assert out.status_code == 200
        assert out.json()["data"] == {"message": "session closed"}
        cleared = _set_cookie_headers(out, "access_token") + _set_cookie_headers(
            out, "refresh_token"
        )
        assert len(cleared) == 2
        assert all("max-age=0" in h.lower() for h in cleared)

        assert get_runtime().store.get_refresh_token(refresh) is None
        assert _client_with({"refresh_token": refresh}).post("/api/auth/refresh").status_code == 401

    def test_logout_keeps_other_sessions(self, client):
        client.post("/api/auth/register", json=DOCTOR)
        other = _client_with({})
        other.post("/api/auth/login", json={"email": "dr@test.com", "password": "doctor123"})

        client.post("/api/auth/logout")
        assert other.get("/api/auth/profile").status_code == 200
        assert other.post("/api/auth/refresh").status_code == 200

    def test_logout_requires_session(self, client):
        assert client.post("/api/auth/logout").status_code == 401

    def test_logout_twice_with_same_cookies(self, client):
        """Repeating logout with the same cookies still succeeds and clears them."""
        response = client.post("/api/auth/register", json=DOCTOR)
        cookies = {
            "access_token": response.cookies.get("access_token"),
            "refresh_token": response.cookies.get("refresh_token"),
        }

        for _ in range(2):
            out = _client_with(cookies).post("/api/auth/logout")
            assert out.status_code == 200
            cleared = _set_cookie_headers(out, "access_token") + _set_cookie_headers(
                out, "refresh_token"
            )
            assert len(cleared) == 2
            assert all("max-age=0" in h.lower() for h in cleared)
