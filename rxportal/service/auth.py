from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from rxportal.config import Settings
from rxportal.logging import get_logger
from rxportal.service.errors import (
    EmailAlreadyRegisteredError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    ValidationError,
)
from rxportal.service.tokens import TokenKind, TokenService
from rxportal.storage.errors import ConstraintViolation
from rxportal.storage.models import (
    DoctorProfile,
    PatientProfile,
    RefreshToken,
    Role,
    User,
    new_id,
)

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class AuthStore(Protocol):
    def create_user(
        self,
        user: User,
        *,
        doctor: Optional[DoctorProfile] = None,
        patient: Optional[PatientProfile] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        query: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[User], int]: ...

    def update_user(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token_id: str) -> bool: ...

    def delete_refresh_tokens(self, user_id: str, token: Optional[str] = None) -> int: ...

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...


@dataclass
class IssuedSession:
    """Access/refresh pair handed to the transport layer as cookies."""

    access_token: str
    refresh_token: str
    access_max_age: int
    refresh_max_age: int
    refresh_token_id: str


class AuthService:
    """Registration, login, refresh rotation and logout."""

    def __init__(self, store: AuthStore, settings: Settings, tokens: TokenService) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both failures cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        digest = self._pwd_hasher.hash(password)
        return digest, PASSWORD_ALGO

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def verify_password(self, user: Optional[User], password: str) -> bool:
        """Check ``password`` against the user's hash; always performs one verification."""
        if not user or user.password_algo != PASSWORD_ALGO or not user.password_hash:
            self._verify_hash(self._dummy_hash, password)
            return False
        return self._verify_hash(user.password_hash, password)

    @staticmethod
    def build_profiles(
        user_id: str,
        role: str,
        specialty: Optional[str] = None,
        birth_date: Optional[date] = None,
    ) -> Tuple[Optional[DoctorProfile], Optional[PatientProfile]]:
        if role == Role.DOCTOR.value:
            return DoctorProfile(id=new_id(), user_id=user_id, specialty=specialty), None
        if role == Role.PATIENT.value:
            return None, PatientProfile(id=new_id(), user_id=user_id, birth_date=birth_date)
        return None, None

    async def create_account(
        self,
        email: str,
        password: str,
        name: str,
        role: str,
        *,
        specialty: Optional[str] = None,
        birth_date: Optional[date] = None,
    ) -> User:
        """Persist a user with its role profile; no session is issued."""
        try:
            role = Role(role).value
        except ValueError:
            raise ValidationError("invalid role", detail={"field": "role"})
        pwd_hash, algo = await asyncio.to_thread(self._hash_password, password)
        user = User(
            id=new_id(),
            email=email,
            name=name,
            role=role,
            password_hash=pwd_hash,
            password_algo=algo,
            created_at=self._now(),
        )
        doctor, patient = self.build_profiles(user.id, role, specialty, birth_date)
        try:
            # Uniqueness is enforced by the store, never by a racy pre-check
            self.store.create_user(user, doctor=doctor, patient=patient)
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise EmailAlreadyRegisteredError()
            raise
        self.logger.info("user_created", user_id=user.id, role=role)
        return user

    async def register(
        self,
        email: str,
        password: str,
        name: str,
        role: str,
        *,
        specialty: Optional[str] = None,
        birth_date: Optional[date] = None,
    ) -> Tuple[User, IssuedSession]:
        user = await self.create_account(
            email, password, name, role, specialty=specialty, birth_date=birth_date
        )
        session = self.issue_session(user)
        return user, session

    async def login(self, email: str, password: str) -> Tuple[User, IssuedSession]:
        user = self.store.get_user_by_email(email)
        verified = await asyncio.to_thread(self.verify_password, user, password)
        if not user or not verified:
            # Same error for unknown email and wrong password
            self.logger.warning("login_failed")
            raise InvalidCredentialsError()
        if self._pwd_hasher.check_needs_rehash(user.password_hash):
            pwd_hash, algo = await asyncio.to_thread(self._hash_password, password)
            self.store.update_user(user.id, password_hash=pwd_hash, password_algo=algo)
            self.logger.info("password_rehashed", user_id=user.id)
        session = self.issue_session(user)
        self.logger.info("user_logged_in", user_id=user.id)
        return user, session

    async def refresh(
        self, user_id: str, presented_token: str, token_id: Optional[str] = None
    ) -> Tuple[User, IssuedSession]:
        """Rotate a refresh token: consume the stored row, then issue a new pair.

        The presented row is deleted before the new session is written. If
        issuance fails afterwards the client is simply logged out; the old
        token never becomes valid again.

        ``token_id`` is the ``tid`` claim of the presented token and must name
        the stored row when given.
        """
        record = self.store.get_refresh_token(presented_token)
        if not record or record.user_id != user_id:
            self.logger.warning("refresh_token_unknown", user_id=user_id)
            raise InvalidRefreshTokenError()
        if token_id is not None and token_id != record.id:
            self.logger.warning("refresh_token_id_mismatch", user_id=user_id)
            raise InvalidRefreshTokenError()
        if record.is_expired(self._now()):
            self.store.delete_refresh_token(record.id)
            self.logger.info("refresh_token_expired", user_id=user_id, token_id=record.id)
            raise InvalidRefreshTokenError()
        if not self.store.delete_refresh_token(record.id):
            # Another request consumed this row first
            self.logger.warning("refresh_token_reused", user_id=user_id, token_id=record.id)
            raise InvalidRefreshTokenError()
        user = self.store.get_user(user_id)
        if not user:
            raise InvalidRefreshTokenError()
        session = self.issue_session(user)
        self.logger.info("refresh_token_rotated", user_id=user.id, token_id=record.id)
        return user, session

    async def logout(self, user_id: str, presented_token: Optional[str]) -> int:
        """Drop the caller's refresh row; idempotent when nothing matches."""
        removed = 0
        if presented_token:
            removed = self.store.delete_refresh_tokens(user_id, presented_token)
        self.logger.info("user_logged_out", user_id=user_id, revoked=removed)
        return removed

    async def revoke_all(self, user_id: str) -> int:
        removed = self.store.delete_refresh_tokens(user_id)
        self.logger.info("user_sessions_revoked", user_id=user_id, revoked=removed)
        return removed

    def purge_expired_refresh_tokens(self) -> int:
        removed = self.store.delete_expired_refresh_tokens(self._now())
        if removed:
            self.logger.info("expired_refresh_tokens_purged", count=removed)
        return removed

    def issue_session(self, user: User) -> IssuedSession:
        """Mint an access/refresh pair and persist the refresh row in one write."""
        access_ttl = self.tokens.ttl_seconds(TokenKind.ACCESS)
        refresh_ttl = self.tokens.ttl_seconds(TokenKind.REFRESH)
        token_id = new_id()
        refresh_token = self.tokens.sign_refresh_token(user.id, token_id)
        record = RefreshToken.new(
            user.id,
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            token_id=token_id,
            token=refresh_token,
        )
        self.store.create_refresh_token(record)
        access_token = self.tokens.sign_access_token(user.id, user.email, user.role)
        return IssuedSession(
            access_token=access_token,
            refresh_token=refresh_token,
            access_max_age=access_ttl,
            refresh_max_age=refresh_ttl,
            refresh_token_id=token_id,
        )
