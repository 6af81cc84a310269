from __future__ import annotations

import json
import os
import tempfile
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from rxportal.logging import get_logger
from rxportal.storage.errors import ConstraintViolation
from rxportal.storage.models import (
    DoctorProfile,
    PatientProfile,
    Prescription,
    PrescriptionItem,
    PrescriptionStatus,
    RefreshToken,
    User,
    utcnow,
)

class MemoryStore:
    """In-process backing store with a JSON snapshot under ``fs_root/state``."""

    def __init__(self, fs_root: str = "/tmp/rxportal") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.doctors: Dict[str, DoctorProfile] = {}
        self.patients: Dict[str, PatientProfile] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.prescriptions: Dict[str, Prescription] = {}
        # RLock for all data operations; nested acquisitions happen within one thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "rxportal_state.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def create_user(
        self,
        user: User,
        *,
        doctor: Optional[DoctorProfile] = None,
        patient: Optional[PatientProfile] = None,
    ) -> User:
        """Insert a user and its role profile as a single write."""
        with self._data_lock:
            if any(existing.email == user.email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            self.users[user.id] = user
            if doctor:
                self.doctors[doctor.id] = doctor
            if patient:
                self.patients[patient.id] = patient
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        query: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[User], int]:
        with self._data_lock:
            needle = query.lower() if query else None
            results = [
                u
                for u in self.users.values()
                if (not role or u.role == role)
                and (
                    not needle
                    or needle in u.name.lower()
                    or needle in u.email.lower()
                )
            ]
            results.sort(key=lambda u: u.created_at, reverse=True)
            return results[offset : offset + limit], len(results)

    def update_user(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if email and email != user.email:
                if any(
                    u.email == email for u in self.users.values() if u.id != user_id
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
                user.email = email
            if name:
                user.name = name
            if password_hash:
                user.password_hash = password_hash
                user.password_algo = password_algo or user.password_algo
            self._persist_state()
            return user

    def delete_user(self, user_id: str) -> bool:
        """Delete a user, cascading to tokens and profile.

        Raises ConstraintViolation when a prescription still references the
        user's doctor or patient profile.
        """
        with self._data_lock:
            if user_id not in self.users:
                return False
            profile_ids = {
                p.id for p in self.doctors.values() if p.user_id == user_id
            } | {p.id for p in self.patients.values() if p.user_id == user_id}
            if any(
                rx.author_id in profile_ids or rx.patient_id in profile_ids
                for rx in self.prescriptions.values()
            ):
                raise ConstraintViolation(
                    "user has prescriptions", {"field": "prescriptions", "user_id": user_id}
                )
            self.users.pop(user_id, None)
            for profile_id in profile_ids:
                self.doctors.pop(profile_id, None)
                self.patients.pop(profile_id, None)
            for token_id, record in list(self.refresh_tokens.items()):
                if record.user_id == user_id:
                    self.refresh_tokens.pop(token_id, None)
            self._persist_state()
            return True

    def get_doctor_profile(self, user_id: str) -> Optional[DoctorProfile]:
        with self._data_lock:
            return next((p for p in self.doctors.values() if p.user_id == user_id), None)

    def get_patient_profile(self, user_id: str) -> Optional[PatientProfile]:
        with self._data_lock:
            return next((p for p in self.patients.values() if p.user_id == user_id), None)

    def get_doctor_profile_by_id(self, profile_id: str) -> Optional[DoctorProfile]:
        with self._data_lock:
            return self.doctors.get(profile_id)

    def get_patient_profile_by_id(self, profile_id: str) -> Optional[PatientProfile]:
        with self._data_lock:
            return self.patients.get(profile_id)

    def update_profile(
        self,
        user_id: str,
        *,
        specialty: Optional[str] = None,
        birth_date: Optional[date] = None,
    ) -> None:
        with self._data_lock:
            if specialty is not None:
                doctor = self.get_doctor_profile(user_id)
                if doctor:
                    doctor.specialty = specialty
            if birth_date is not None:
                patient = self.get_patient_profile(user_id)
                if patient:
                    patient.birth_date = birth_date
            self._persist_state()

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
            if any(t.token == record.token for t in self.refresh_tokens.values()):
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[record.id] = record
            self._persist_state()
            return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return next(
                (t for t in self.refresh_tokens.values() if t.token == token), None
            )

    def delete_refresh_token(self, token_id: str) -> bool:
        """Remove one row; only the caller that actually removed it gets True."""
        with self._data_lock:
            removed = self.refresh_tokens.pop(token_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def delete_refresh_tokens(self, user_id: str, token: Optional[str] = None) -> int:
        with self._data_lock:
            stale = [
                tid
                for tid, record in self.refresh_tokens.items()
                if record.user_id == user_id and (token is None or record.token == token)
            ]
            for tid in stale:
                self.refresh_tokens.pop(tid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            stale = [
                tid for tid, record in self.refresh_tokens.items() if record.is_expired(cutoff)
            ]
            for tid in stale:
                self.refresh_tokens.pop(tid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def create_prescription(self, prescription: Prescription) -> Prescription:
        with self._data_lock:
            if any(rx.code == prescription.code for rx in self.prescriptions.values()):
                raise ConstraintViolation("prescription code already exists", {"field": "code"})
            if prescription.author_id not in self.doctors:
                raise ConstraintViolation("doctor does not exist", {"field": "author_id"})
            if prescription.patient_id not in self.patients:
                raise ConstraintViolation("patient does not exist", {"field": "patient_id"})
            self.prescriptions[prescription.id] = prescription
            self._persist_state()
            return prescription

    def get_prescription(self, prescription_id: str) -> Optional[Prescription]:
        with self._data_lock:
            return self.prescriptions.get(prescription_id)

    def list_prescriptions(
        self,
        *,
        author_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        status: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        order: str = "desc",
        pending_first: bool = False,
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[Prescription], int]:
        with self._data_lock:
            results = [
                rx
                for rx in self.prescriptions.values()
                if (not author_id or rx.author_id == author_id)
                and (not patient_id or rx.patient_id == patient_id)
                and (not status or rx.status == status)
                and (not created_from or rx.created_at >= created_from)
                and (not created_to or rx.created_at <= created_to)
            ]
            results.sort(key=lambda rx: rx.created_at, reverse=order != "asc")
            if pending_first:
                # list.sort is stable, so created_at order survives within each status
                results.sort(key=lambda rx: rx.status != PrescriptionStatus.PENDING.value)
            return results[offset : offset + limit], len(results)

    def consume_prescription(
        self, prescription_id: str, consumed_at: Optional[datetime] = None
    ) -> Optional[Prescription]:
        """Mark a pending prescription consumed; None when it was not pending."""
        with self._data_lock:
            rx = self.prescriptions.get(prescription_id)
            if not rx or rx.status != PrescriptionStatus.PENDING.value:
                return None
            rx.status = PrescriptionStatus.CONSUMED.value
            rx.consumed_at = consumed_at or utcnow()
            self._persist_state()
            return rx

    def verify_connection(self) -> None:
        self._state_path()

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "doctors": [
                {"id": d.id, "user_id": d.user_id, "specialty": d.specialty}
                for d in self.doctors.values()
            ],
            "patients": [
                {
                    "id": p.id,
                    "user_id": p.user_id,
                    "birth_date": p.birth_date.isoformat() if p.birth_date else None,
                }
                for p in self.patients.values()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
            "prescriptions": [
                self._serialize_prescription(rx) for rx in self.prescriptions.values()
            ],
        }
        path = self._state_path()
        try:
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Read directly instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.doctors = {
            d["id"]: DoctorProfile(id=d["id"], user_id=d["user_id"], specialty=d.get("specialty"))
            for d in data.get("doctors", [])
        }
        self.patients = {
            p["id"]: PatientProfile(
                id=p["id"],
                user_id=p["user_id"],
                birth_date=date.fromisoformat(p["birth_date"]) if p.get("birth_date") else None,
            )
            for p in data.get("patients", [])
        }
        self.refresh_tokens = {
            t["id"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self.prescriptions = {
            rx["id"]: self._deserialize_prescription(rx)
            for rx in data.get("prescriptions", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "password_hash": user.password_hash,
            "password_algo": user.password_algo,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            role=data["role"],
            password_hash=data.get("password_hash", ""),
            password_algo=data.get("password_algo", "argon2id"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_refresh_token(self, record: RefreshToken) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token": record.token,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            user_id=data["user_id"],
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_prescription(self, rx: Prescription) -> dict:
        return {
            "id": rx.id,
            "code": rx.code,
            "patient_id": rx.patient_id,
            "author_id": rx.author_id,
            "status": rx.status,
            "notes": rx.notes,
            "created_at": self._serialize_datetime(rx.created_at),
            "consumed_at": self._serialize_datetime(rx.consumed_at),
            "items": [
                {
                    "id": item.id,
                    "name": item.name,
                    "dosage": item.dosage,
                    "quantity": item.quantity,
                    "instructions": item.instructions,
                }
                for item in rx.items
            ],
        }

    def _deserialize_prescription(self, data: dict) -> Prescription:
        return Prescription(
            id=data["id"],
            code=data["code"],
            patient_id=data["patient_id"],
            author_id=data["author_id"],
            status=data.get("status", PrescriptionStatus.PENDING.value),
            notes=data.get("notes"),
            created_at=self._deserialize_datetime(data["created_at"]),
            consumed_at=self._deserialize_datetime(data.get("consumed_at")),
            items=[
                PrescriptionItem(
                    id=item["id"],
                    prescription_id=data["id"],
                    name=item["name"],
                    dosage=item.get("dosage"),
                    quantity=item.get("quantity"),
                    instructions=item.get("instructions"),
                )
                for item in data.get("items", [])
            ],
        )
