"""Unit tests for the auth service.

Tests for:
- Password hashing and verification
- Registration with role profiles
- Login and uniform credential errors
- Refresh rotation and logout
"""

from datetime import date, timedelta

import pytest

from rxportal.config import Settings
from rxportal.service.auth import PASSWORD_ALGO, AuthService
from rxportal.service.errors import (
    EmailAlreadyRegisteredError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    ValidationError,
)
from rxportal.service.tokens import TokenKind, TokenService
from rxportal.storage.memory import MemoryStore
from rxportal.storage.models import utcnow


@pytest.fixture
def settings(tmp_path):
    """Create test settings."""
    return Settings(
        shared_fs_root=str(tmp_path),
        jwt_access_secret="Test-Access-Secret_for-Automation-Only-1234",
        jwt_refresh_secret="Test-Refresh-Secret_for-Automation-Only-5678",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24 * 7,
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def tokens(settings):
    return TokenService(settings)


@pytest.fixture
def auth_service(memory_store, settings, tokens):
    """Create auth service for testing."""
    return AuthService(memory_store, settings, tokens)


class TestPasswordHashing:
    """Tests for password hashing."""

    def test_password_hash_is_argon2id(self, auth_service):
        pwd_hash, algo = auth_service._hash_password("dr123")
        assert algo == PASSWORD_ALGO
        assert pwd_hash.startswith("$argon2id$")
        assert "dr123" not in pwd_hash

    def test_same_password_produces_different_hashes(self, auth_service):
        """Salting makes every hash unique."""
        hash1, _ = auth_service._hash_password("dr123")
        hash2, _ = auth_service._hash_password("dr123")
        assert hash1 != hash2

    def test_verify_password_without_user_is_false(self, auth_service):
        """Unknown users still cost one verification and never match."""
        assert auth_service.verify_password(None, "anything") is False

    async def test_corrupt_hash_is_false(self, auth_service):
        user, _ = await auth_service.register("x@test.com", "secret1", "X", "admin")
        user.password_hash = "not-a-hash"
        assert auth_service.verify_password(user, "secret1") is False


class TestRegistration:
    """Account creation."""

    async def test_register_doctor_creates_profile(self, auth_service, memory_store, tokens):
        user, session = await auth_service.register(
            "dr@test.com", "dr123", "Dr. Who", "doctor", specialty="Cardiology"
        )
        assert user.role == "doctor"
        profile = memory_store.get_doctor_profile(user.id)
        assert profile is not None
        assert profile.specialty == "Cardiology"
        assert memory_store.get_patient_profile(user.id) is None
        access = tokens.verify(session.access_token, TokenKind.ACCESS)
        assert access["sub"] == user.id
        assert access["role"] == "doctor"

    async def test_register_patient_creates_profile(self, auth_service, memory_store):
        user, _ = await auth_service.register(
            "p@test.com", "patient123", "Pat", "patient", birth_date=date(1985, 8, 15)
        )
        profile = memory_store.get_patient_profile(user.id)
        assert profile.birth_date == date(1985, 8, 15)

    async def test_register_admin_has_no_profile(self, auth_service, memory_store):
        user, _ = await auth_service.register("a@test.com", "admin123", "Ad", "admin")
        assert memory_store.get_doctor_profile(user.id) is None
        assert memory_store.get_patient_profile(user.id) is None

    async def test_register_stores_refresh_row(self, auth_service, memory_store):
        user, session = await auth_service.register("a@test.com", "admin123", "Ad", "admin")
        record = memory_store.get_refresh_token(session.refresh_token)
        assert record is not None
        assert record.user_id == user.id
        assert record.id == session.refresh_token_id

    async def test_duplicate_email_rejected(self, auth_service, memory_store):
        await auth_service.register("dup@test.com", "secret1", "One", "admin")
        with pytest.raises(EmailAlreadyRegisteredError):
            await auth_service.register("dup@test.com", "secret2", "Two", "patient")
        assert len([u for u in memory_store.users.values() if u.email == "dup@test.com"]) == 1

    async def test_invalid_role_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.register("r@test.com", "secret1", "R", "nurse")


class TestLogin:
    """Credential checks."""

    async def test_login_success(self, auth_service):
        registered, _ = await auth_service.register("dr@test.com", "dr123", "Dr", "doctor")
        user, session = await auth_service.login("dr@test.com", "dr123")
        assert user.id == registered.id
        assert session.access_token
        assert session.access_max_age == 900
        assert session.refresh_max_age == 604800

    async def test_wrong_password_and_unknown_email_look_identical(self, auth_service):
        await auth_service.register("dr@test.com", "dr123", "Dr", "doctor")
        with pytest.raises(InvalidCredentialsError) as wrong_password:
            await auth_service.login("dr@test.com", "nope")
        with pytest.raises(InvalidCredentialsError) as unknown_email:
            await auth_service.login("ghost@test.com", "dr123")
        assert wrong_password.value.message == unknown_email.value.message == "invalid credentials"
        assert wrong_password.value.status_code == unknown_email.value.status_code == 401

    async def test_each_login_adds_a_session(self, auth_service, memory_store):
        user, _ = await auth_service.register("dr@test.com", "dr123", "Dr", "doctor")
        await auth_service.login("dr@test.com", "dr123")
        rows = [r for r in memory_store.refresh_tokens.values() if r.user_id == user.id]
        assert len(rows) == 2


class TestRefresh:
    """Rotation semantics."""

    async def test_refresh_rotates(self, auth_service, memory_store):
        user, first = await auth_service.register("dr@test.com", "dr123", "Dr", "doctor")
        same_user, second = await auth_service.refresh(user.id, first.refresh_token)
        assert same_user.id == user.id
        assert second.refresh_token != first.refresh_token
        assert memory_store.get_refresh_token(first.refresh_token) is None
        assert memory_store.get_refresh_token(second.refresh_token) is not None

    async def test_rotated_token_cannot_be_reused(self, auth_service):
        user, first = await auth_service.register("dr@test.com", "dr123", "Dr", "doctor")
        await auth_service.refresh(user.id, first.refresh_token)
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(user.id, first.refresh_token)

    async def test_token_of_other_user_rejected(self, auth_service):
        alice, alice_session = await auth_service.register("a@test.com", "secret1", "A", "admin")
        bob, _ = await auth_service.register("b@test.com", "secret1", "B", "admin")
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(bob.id, alice_session.refresh_token)

    async def test_expired_row_is_deleted(self, auth_service, memory_store):
        user, session = await auth_service.register("dr@test.com", "dr123", "Dr", "doctor")
        record = memory_store.get_refresh_token(session.refresh_token)
        record.expires_at = utcnow() - timedelta(seconds=1)
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(user.id, session.refresh_token)
        assert memory_store.get_refresh_token(session.refresh_token) is None

    async def test_lost_delete_race_is_rejected(self, auth_service, memory_store, monkeypatch):
        """If another request consumed the row first, this refresh fails."""
        user, session = await auth_service.register("dr@test.com", "dr123", "Dr", "doctor")
        monkeypatch.setattr(memory_store, "delete_refresh_token", lambda token_id: False)
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(user.id, session.refresh_token)

    async def test_token_id_must_match_stored_row(self, auth_service, memory_store):
        """A ``tid`` claim naming another row fails and leaves the row usable."""
        user, session = await auth_service.register("dr@test.com", "dr123", "Dr", "doctor")
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(user.id, session.refresh_token, token_id="other-row")
        assert memory_store.get_refresh_token(session.refresh_token) is not None

        _, rotated = await auth_service.refresh(
            user.id, session.refresh_token, token_id=session.refresh_token_id
        )
        assert rotated.refresh_token != session.refresh_token


class TestLogout:
    """Session teardown."""

    async def test_logout_removes_only_presented_row(self, auth_service, memory_store):
        user, first = await auth_service.register("dr@test.com", "dr123", "Dr", "doctor")
        _, second = await auth_service.login("dr@test.com", "dr123")
        removed = await auth_service.logout(user.id, first.refresh_token)
        assert removed == 1
        assert memory_store.get_refresh_token(first.refresh_token) is None
        assert memory_store.get_refresh_token(second.refresh_token) is not None

    async def test_logout_without_cookie_is_noop(self, auth_service):
        user, _ = await auth_service.register("dr@test.com", "dr123", "Dr", "doctor")
        assert await auth_service.logout(user.id, None) == 0

    async def test_revoke_all(self, auth_service, memory_store):
        user, _ = await auth_service.register("dr@test.com", "dr123", "Dr", "doctor")
        await auth_service.login("dr@test.com", "dr123")
        assert await auth_service.revoke_all(user.id) == 2
        assert not [r for r in memory_store.refresh_tokens.values() if r.user_id == user.id]

    async def test_purge_expired(self, auth_service, memory_store):
        user, stale = await auth_service.register("dr@test.com", "dr123", "Dr", "doctor")
        _, fresh = await auth_service.login("dr@test.com", "dr123")
        memory_store.get_refresh_token(stale.refresh_token).expires_at = utcnow() - timedelta(
            minutes=1
        )
        assert auth_service.purge_expired_refresh_tokens() == 1
        assert memory_store.get_refresh_token(fresh.refresh_token) is not None
