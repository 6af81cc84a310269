from __future__ import annotations

import uuid
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_REQUIRED_TABLES = [
    "app_user",
    "doctor_profile",
    "patient_profile",
    "refresh_token",
    "prescription",
    "prescription_item",
]

_UNIQUE_FIELDS = {
    "app_user_email_key": "email",
    "refresh_token_token_key": "token",
    "prescription_code_key": "code",
}


def _constraint_field(exc: errors.IntegrityError) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    name = getattr(diag, "constraint_name", None) if diag else None
    return _UNIQUE_FIELDS.get(name or "", name)


def apply_schema(dsn: str, path: Path) -> None:
    """Run a DDL file outside the pool; the store refuses to start without its tables."""
    with psycopg.connect(dsn, autocommit=True) as conn:
        conn.execute(path.read_text())
    get_logger(__name__).info("postgres_schema_applied", path=str(path))


def _is_uuid(value: Optional[str]) -> bool:
    """Ids are UUID columns; anything else can never match a row."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed store for users, refresh tokens and prescriptions."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure core tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply schema/001_init.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            role=str(row["role"]),
            password_hash=row.get("password_hash") or "",
            password_algo=row.get("password_algo") or "argon2id",
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _prescription_from_row(
        row: Dict[str, Any], items: List[Dict[str, Any]]
    ) -> Prescription:
        rx_id = str(row["id"])
        return Prescription(
            id=rx_id,
            code=row["code"],
            patient_id=str(row["patient_id"]),
            author_id=str(row["author_id"]),
            status=str(row["status"]),
            notes=row.get("notes"),
            created_at=row["created_at"],
            consumed_at=row.get("consumed_at"),
            items=[
                PrescriptionItem(
                    id=str(item["id"]),
                    prescription_id=rx_id,
                    name=item["name"],
                    dosage=item.get("dosage"),
                    quantity=item.get("quantity"),
                    instructions=item.get("instructions"),
                )
                for item in items
            ],
        )

    def create_user(
        self,
        user: User,
        *,
        doctor: Optional[DoctorProfile] = None,
        patient: Optional[PatientProfile] = None,
    ) -> User:
        """Insert a user and its role profile in one transaction."""
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, role, password_hash, password_algo, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.name,
                        user.role,
                        user.password_hash,
                        user.password_algo,
                        user.created_at,
                    ),
                )
                if doctor:
                    conn.execute(
                        "INSERT INTO doctor_profile (id, user_id, specialty) VALUES (%s, %s, %s)",
                        (doctor.id, doctor.user_id, doctor.specialty),
                    )
                if patient:
                    conn.execute(
                        "INSERT INTO patient_profile (id, user_id, birth_date) VALUES (%s, %s, %s)",
                        (patient.id, patient.user_id, patient.birth_date),
                    )
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc) or "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        query: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[User], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if role:
            clauses.append("role = %s")
            params.append(role)
        if query:
            clauses.append("(name ILIKE %s OR email ILIKE %s)")
            pattern = f"%{query}%"
            params.extend([pattern, pattern])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM app_user {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM app_user {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        total = int(total_row["total"]) if total_row else 0
        return [self._user_from_row(r) for r in rows], total

    def update_user(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        assignments: List[str] = []
        params: List[Any] = []
        if name:
            assignments.append("name = %s")
            params.append(name)
        if email:
            assignments.append("email = %s")
            params.append(email)
        if password_hash:
            assignments.append("password_hash = %s")
            params.append(password_hash)
            assignments.append("password_algo = %s")
            params.append(password_algo or "argon2id")
        if not assignments:
            return self.get_user(user_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                    [*params, user_id],
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        """Delete a user with its tokens and profile in one transaction.

        Prescriptions are never removed here; a referenced profile makes the
        profile delete fail and the whole transaction roll back.
        """
        if not _is_uuid(user_id):
            return False
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
                conn.execute("DELETE FROM doctor_profile WHERE user_id = %s", (user_id,))
                conn.execute("DELETE FROM patient_profile WHERE user_id = %s", (user_id,))
                result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
                return result.rowcount > 0
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user has prescriptions", {"field": "prescriptions", "user_id": user_id}
            )

    def get_doctor_profile(self, user_id: str) -> Optional[DoctorProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM doctor_profile WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return DoctorProfile(id=str(row["id"]), user_id=str(row["user_id"]), specialty=row.get("specialty"))

    def get_patient_profile(self, user_id: str) -> Optional[PatientProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM patient_profile WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return PatientProfile(id=str(row["id"]), user_id=str(row["user_id"]), birth_date=row.get("birth_date"))

    def get_doctor_profile_by_id(self, profile_id: str) -> Optional[DoctorProfile]:
        if not _is_uuid(profile_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM doctor_profile WHERE id = %s", (profile_id,)
            ).fetchone()
        if not row:
            return None
        return DoctorProfile(id=str(row["id"]), user_id=str(row["user_id"]), specialty=row.get("specialty"))

    def get_patient_profile_by_id(self, profile_id: str) -> Optional[PatientProfile]:
        if not _is_uuid(profile_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM patient_profile WHERE id = %s", (profile_id,)
            ).fetchone()
        if not row:
            return None
        return PatientProfile(id=str(row["id"]), user_id=str(row["user_id"]), birth_date=row.get("birth_date"))

    def update_profile(
        self,
        user_id: str,
        *,
        specialty: Optional[str] = None,
        birth_date: Optional[date] = None,
    ) -> None:
        with self._connect() as conn:
            if specialty is not None:
                conn.execute(
                    "UPDATE doctor_profile SET specialty = %s WHERE user_id = %s",
                    (specialty, user_id),
                )
            if birth_date is not None:
                conn.execute(
                    "UPDATE patient_profile SET birth_date = %s WHERE user_id = %s",
                    (birth_date, user_id),
                )

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (record.id, record.user_id, record.token, record.expires_at, record.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def delete_refresh_token(self, token_id: str) -> bool:
        # DELETE ... RETURNING gives exactly one concurrent caller the row
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM refresh_token WHERE id = %s RETURNING id", (token_id,)
            ).fetchone()
        return row is not None

    def delete_refresh_tokens(self, user_id: str, token: Optional[str] = None) -> int:
        with self._connect() as conn:
            if token is None:
                result = conn.execute(
                    "DELETE FROM refresh_token WHERE user_id = %s", (user_id,)
                )
            else:
                result = conn.execute(
                    "DELETE FROM refresh_token WHERE user_id = %s AND token = %s",
                    (user_id, token),
                )
            return result.rowcount

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount

    def create_prescription(self, prescription: Prescription) -> Prescription:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO prescription (id, code, status, notes, patient_id, author_id, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        prescription.id,
                        prescription.code,
                        prescription.status,
                        prescription.notes,
                        prescription.patient_id,
                        prescription.author_id,
                        prescription.created_at,
                    ),
                )
                for item in prescription.items:
                    conn.execute(
                        """
                        INSERT INTO prescription_item (id, prescription_id, name, dosage, quantity, instructions)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        (
                            item.id,
                            prescription.id,
                            item.name,
                            item.dosage,
                            item.quantity,
                            item.instructions,
                        ),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("prescription code already exists", {"field": "code"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "prescription references a missing profile", {"field": "patient_id"}
            )
        return prescription

    def _load_items(self, conn, prescription_ids: List[str]) -> Dict[str, List[Dict[str, Any]]]:
        grouped: Dict[str, List[Dict[str, Any]]] = {rx_id: [] for rx_id in prescription_ids}
        if not prescription_ids:
            return grouped
        rows = conn.execute(
            "SELECT * FROM prescription_item WHERE prescription_id = ANY(%s::uuid[]) ORDER BY name",
            (prescription_ids,),
        ).fetchall()
        for row in rows:
            grouped.setdefault(str(row["prescription_id"]), []).append(row)
        return grouped

    def get_prescription(self, prescription_id: str) -> Optional[Prescription]:
        if not _is_uuid(prescription_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM prescription WHERE id = %s", (prescription_id,)
            ).fetchone()
            if not row:
                return None
            items = self._load_items(conn, [str(row["id"])])
        return self._prescription_from_row(row, items[str(row["id"])])

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
        if not all(_is_uuid(value) for value in (author_id, patient_id) if value):
            return [], 0
        clauses: List[str] = []
        params: List[Any] = []
        if author_id:
            clauses.append("author_id = %s")
            params.append(author_id)
        if patient_id:
            clauses.append("patient_id = %s")
            params.append(patient_id)
        if status:
            clauses.append("status = %s")
            params.append(status)
        if created_from:
            clauses.append("created_at >= %s")
            params.append(created_from)
        if created_to:
            clauses.append("created_at <= %s")
            params.append(created_to)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        direction = "ASC" if order == "asc" else "DESC"
        # prescription_status enum declares 'pending' first
        order_by = f"status ASC, created_at {direction}" if pending_first else f"created_at {direction}"
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM prescription {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM prescription {where} ORDER BY {order_by} LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
            items = self._load_items(conn, [str(r["id"]) for r in rows])
        total = int(total_row["total"]) if total_row else 0
        return [self._prescription_from_row(r, items[str(r["id"])]) for r in rows], total

    def consume_prescription(
        self, prescription_id: str, consumed_at: Optional[datetime] = None
    ) -> Optional[Prescription]:
        """Mark a pending prescription consumed; None when it was not pending."""
        if not _is_uuid(prescription_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE prescription SET status = %s, consumed_at = %s
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (
                    PrescriptionStatus.CONSUMED.value,
                    consumed_at or utcnow(),
                    prescription_id,
                    PrescriptionStatus.PENDING.value,
                ),
            ).fetchone()
            if not row:
                return None
            items = self._load_items(conn, [str(row["id"])])
        return self._prescription_from_row(row, items[str(row["id"])])
