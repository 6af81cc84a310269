from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date
from typing import Optional

from rxportal.logging import get_logger
from rxportal.service.auth import AuthService, AuthStore
from rxportal.service.errors import (
    ConflictError,
    EmailAlreadyRegisteredError,
    NotFoundError,
    UserNotFoundError,
    ValidationError,
)
from rxportal.storage.errors import ConstraintViolation
from rxportal.storage.models import (
    DoctorProfile,
    Page,
    PatientProfile,
    Role,
    User,
)

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100


def page_bounds(page: int, limit: int) -> tuple[int, int]:
    """Validate pagination input and return (offset, limit)."""
    if page < 1:
        raise ValidationError("page must be >= 1", detail={"field": "page"})
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(
            f"limit must be between 1 and {MAX_PAGE_SIZE}", detail={"field": "limit"}
        )
    return (page - 1) * limit, limit


@dataclass
class UserRecord:
    user: User
    doctor: Optional[DoctorProfile] = None
    patient: Optional[PatientProfile] = None


class UserDirectory:
    """Admin-facing user management on top of the credential store."""

    def __init__(self, store: AuthStore, auth: AuthService) -> None:
        self.store = store
        self.auth = auth

    def require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError()
        return user

    def _record(self, user: User) -> UserRecord:
        return UserRecord(
            user=user,
            doctor=self.store.get_doctor_profile(user.id) if user.role == Role.DOCTOR.value else None,
            patient=self.store.get_patient_profile(user.id) if user.role == Role.PATIENT.value else None,
        )

    async def create_user(
        self,
        email: str,
        password: str,
        name: str,
        role: str,
        *,
        specialty: Optional[str] = None,
        birth_date: Optional[date] = None,
    ) -> UserRecord:
        user = await self.auth.create_account(
            email, password, name, role, specialty=specialty, birth_date=birth_date
        )
        return self._record(user)

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        query: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page[UserRecord]:
        offset, limit = page_bounds(page, limit)
        users, total = self.store.list_users(
            role=role, query=query.strip() if query else None, offset=offset, limit=limit
        )
        return Page(items=[self._record(u) for u in users], total=total, page=page, limit=limit)

    def list_doctors(self, page: int = 1, limit: int = 10) -> Page[UserRecord]:
        return self.list_users(role=Role.DOCTOR.value, page=page, limit=limit)

    def list_patients(self, page: int = 1, limit: int = 10) -> Page[UserRecord]:
        return self.list_users(role=Role.PATIENT.value, page=page, limit=limit)

    def get_user(self, user_id: str) -> UserRecord:
        try:
            return self._record(self.require_user(user_id))
        except UserNotFoundError:
            raise NotFoundError(f"user {user_id} not found")

    async def update_user(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
        specialty: Optional[str] = None,
        birth_date: Optional[date] = None,
        role: Optional[str] = None,
    ) -> UserRecord:
        record = self.get_user(user_id)
        if role is not None and role != record.user.role:
            raise ValidationError("role is immutable", detail={"field": "role"})
        if specialty is not None and record.doctor is None:
            raise ValidationError("specialty applies to doctors only", detail={"field": "specialty"})
        if birth_date is not None and record.patient is None:
            raise ValidationError("birthDate applies to patients only", detail={"field": "birthDate"})
        pwd_hash = algo = None
        if password:
            pwd_hash, algo = await asyncio.to_thread(self.auth._hash_password, password)
        try:
            user = self.store.update_user(
                user_id,
                name=name,
                email=email,
                password_hash=pwd_hash,
                password_algo=algo,
            )
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise EmailAlreadyRegisteredError()
            raise
        if not user:
            raise NotFoundError(f"user {user_id} not found")
        if specialty is not None or birth_date is not None:
            self.store.update_profile(user_id, specialty=specialty, birth_date=birth_date)
        if pwd_hash:
            # A new password ends every existing session
            await self.auth.revoke_all(user_id)
        logger.info(
            "user_updated",
            user_id=user_id,
            fields=sorted(
                k
                for k, v in {
                    "name": name,
                    "email": email,
                    "password": password,
                    "specialty": specialty,
                    "birth_date": birth_date,
                }.items()
                if v is not None
            ),
        )
        return self._record(user)

    def delete_user(self, user_id: str, *, acting_user_id: Optional[str] = None) -> None:
        if acting_user_id and acting_user_id == user_id:
            raise ValidationError("admins cannot delete their own account")
        try:
            deleted = self.store.delete_user(user_id)
        except ConstraintViolation as exc:
            raise ConflictError(
                "user has prescriptions and cannot be deleted", detail=exc.detail
            )
        if not deleted:
            raise NotFoundError(f"user {user_id} not found")
        logger.info("user_deleted", user_id=user_id)
