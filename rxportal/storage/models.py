from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Generic, List, Optional, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Role(str, Enum):
    ADMIN = "admin"
    DOCTOR = "doctor"
    PATIENT = "patient"


class PrescriptionStatus(str, Enum):
    PENDING = "pending"
    CONSUMED = "consumed"


@dataclass
class User:
    id: str
    email: str
    name: str
    role: str
    password_hash: str = field(default="", repr=False)
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=utcnow)

    def projection(self) -> dict:
        """Public view of the user; never includes credentials."""
        return {"id": self.id, "email": self.email, "name": self.name, "role": self.role}


@dataclass
class DoctorProfile:
    id: str
    user_id: str
    specialty: Optional[str] = None


@dataclass
class PatientProfile:
    id: str
    user_id: str
    birth_date: Optional[date] = None


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token: str = field(repr=False)
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 7 * 24 * 60,
        *,
        token_id: Optional[str] = None,
        token: str = "",
    ) -> "RefreshToken":
        now = utcnow()
        return cls(
            id=token_id or new_id(),
            user_id=user_id,
            token=token,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class PrescriptionItem:
    id: str
    prescription_id: str
    name: str
    dosage: Optional[str] = None
    quantity: Optional[int] = None
    instructions: Optional[str] = None


@dataclass
class Prescription:
    id: str
    code: str
    patient_id: str
    author_id: str
    status: str = PrescriptionStatus.PENDING.value
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    consumed_at: Optional[datetime] = None
    items: List[PrescriptionItem] = field(default_factory=list)


@dataclass
class Page(Generic[T]):
    """One page of a filtered listing plus the total match count."""

    items: List[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit
