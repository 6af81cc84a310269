from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from rxportal.logging import get_logger
from rxportal.service.errors import (
    ForbiddenError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from rxportal.service.users import page_bounds
from rxportal.storage.errors import ConstraintViolation
from rxportal.storage.models import (
    DoctorProfile,
    Page,
    PatientProfile,
    Prescription,
    PrescriptionItem,
    PrescriptionStatus,
    Role,
    User,
    new_id,
)

logger = get_logger(__name__)

MAX_CODE_ATTEMPTS = 10
SORT_ORDERS = ("asc", "desc")


class PrescriptionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_doctor_profile(self, user_id: str) -> Optional[DoctorProfile]: ...

    def get_patient_profile(self, user_id: str) -> Optional[PatientProfile]: ...

    def get_doctor_profile_by_id(self, profile_id: str) -> Optional[DoctorProfile]: ...

    def get_patient_profile_by_id(self, profile_id: str) -> Optional[PatientProfile]: ...

    def create_prescription(self, prescription: Prescription) -> Prescription: ...

    def get_prescription(self, prescription_id: str) -> Optional[Prescription]: ...

    def list_prescriptions(self, **filters: Any) -> Tuple[List[Prescription], int]: ...

    def consume_prescription(
        self, prescription_id: str, consumed_at: Optional[datetime] = None
    ) -> Optional[Prescription]: ...


@dataclass
class ItemInput:
    name: str
    dosage: Optional[str] = None
    quantity: Optional[int] = None
    instructions: Optional[str] = None


def generate_code(year: Optional[int] = None) -> str:
    year = year or datetime.now(timezone.utc).year
    return f"RX-{year}-{1000 + secrets.randbelow(9000)}"


class PrescriptionService:
    def __init__(self, store: PrescriptionStore) -> None:
        self.store = store

    def _doctor_for(self, user: User) -> DoctorProfile:
        doctor = self.store.get_doctor_profile(user.id)
        if not doctor:
            raise ForbiddenError("doctor profile required")
        return doctor

    def _patient_for(self, user: User) -> PatientProfile:
        patient = self.store.get_patient_profile(user.id)
        if not patient:
            raise ForbiddenError("patient profile required")
        return patient

    @staticmethod
    def _check_status(status: Optional[str]) -> Optional[str]:
        if status is None:
            return None
        try:
            return PrescriptionStatus(status).value
        except ValueError:
            raise ValidationError("invalid status", detail={"field": "status"})

    @staticmethod
    def _check_range(created_from: Optional[datetime], created_to: Optional[datetime]) -> None:
        if created_from and created_to and created_from > created_to:
            raise ValidationError("from must not be after to", detail={"field": "from"})

    async def create(
        self,
        doctor_user: User,
        patient_id: str,
        items: List[ItemInput],
        *,
        notes: Optional[str] = None,
    ) -> Prescription:
        doctor = self._doctor_for(doctor_user)
        if not self.store.get_patient_profile_by_id(patient_id):
            raise NotFoundError("patient not found", detail={"patient_id": patient_id})
        if not items:
            raise ValidationError("at least one item is required", detail={"field": "items"})
        for item in items:
            if not item.name or not item.name.strip():
                raise ValidationError("item name is required", detail={"field": "items.name"})
            if item.quantity is not None and item.quantity < 1:
                raise ValidationError("quantity must be >= 1", detail={"field": "items.quantity"})

        for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
            rx_id = new_id()
            prescription = Prescription(
                id=rx_id,
                code=generate_code(),
                patient_id=patient_id,
                author_id=doctor.id,
                notes=notes,
                items=[
                    PrescriptionItem(
                        id=new_id(),
                        prescription_id=rx_id,
                        name=item.name.strip(),
                        dosage=item.dosage,
                        quantity=item.quantity,
                        instructions=item.instructions,
                    )
                    for item in items
                ],
            )
            try:
                created = self.store.create_prescription(prescription)
            except ConstraintViolation as exc:
                if exc.field != "code":
                    raise
                logger.info("prescription_code_collision", attempt=attempt)
                continue
            logger.info(
                "prescription_created",
                prescription_id=created.id,
                code=created.code,
                author_id=doctor.id,
                items=len(created.items),
            )
            return created
        logger.error("prescription_code_exhausted", attempts=MAX_CODE_ATTEMPTS)
        raise ServerError("could not allocate a prescription code")

    def list_for_doctor(
        self,
        doctor_user: User,
        *,
        mine: bool = False,
        status: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        page: int = 1,
        limit: int = 10,
        order: str = "desc",
    ) -> Page[Prescription]:
        doctor = self._doctor_for(doctor_user)
        if order not in SORT_ORDERS:
            raise ValidationError("order must be asc or desc", detail={"field": "order"})
        self._check_range(created_from, created_to)
        offset, limit = page_bounds(page, limit)
        items, total = self.store.list_prescriptions(
            author_id=doctor.id if mine else None,
            status=self._check_status(status),
            created_from=created_from,
            created_to=created_to,
            order=order,
            offset=offset,
            limit=limit,
        )
        return Page(items=items, total=total, page=page, limit=limit)

    def list_for_patient(
        self,
        patient_user: User,
        *,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page[Prescription]:
        patient = self._patient_for(patient_user)
        offset, limit = page_bounds(page, limit)
        items, total = self.store.list_prescriptions(
            patient_id=patient.id,
            status=self._check_status(status),
            order="desc",
            pending_first=True,
            offset=offset,
            limit=limit,
        )
        return Page(items=items, total=total, page=page, limit=limit)

    def list_for_admin(
        self,
        *,
        status: Optional[str] = None,
        doctor_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page[Prescription]:
        self._check_range(created_from, created_to)
        offset, limit = page_bounds(page, limit)
        items, total = self.store.list_prescriptions(
            author_id=doctor_id,
            patient_id=patient_id,
            status=self._check_status(status),
            created_from=created_from,
            created_to=created_to,
            order="desc",
            offset=offset,
            limit=limit,
        )
        return Page(items=items, total=total, page=page, limit=limit)

    def get(self, prescription_id: str, user: User) -> Prescription:
        rx = self.store.get_prescription(prescription_id)
        if not rx:
            raise NotFoundError("prescription not found")
        if user.role == Role.PATIENT.value:
            patient = self.store.get_patient_profile(user.id)
            if not patient or rx.patient_id != patient.id:
                raise ForbiddenError("not allowed to view this prescription")
        elif user.role == Role.DOCTOR.value:
            doctor = self.store.get_doctor_profile(user.id)
            if not doctor or rx.author_id != doctor.id:
                raise ForbiddenError("not allowed to view this prescription")
        return rx

    async def consume(self, prescription_id: str, patient_user: User) -> Prescription:
        patient = self._patient_for(patient_user)
        rx = self.store.get_prescription(prescription_id)
        if not rx:
            raise NotFoundError("prescription not found")
        if rx.patient_id != patient.id:
            raise ForbiddenError("not allowed to consume this prescription")
        consumed = self.store.consume_prescription(
            prescription_id, datetime.now(timezone.utc)
        )
        if not consumed:
            raise ValidationError("prescription already consumed")
        logger.info(
            "prescription_consumed", prescription_id=consumed.id, patient_id=patient.id
        )
        return consumed

    def describe(self, rx: Prescription) -> Dict[str, Any]:
        """Render a prescription with its patient and author identities."""

        def _person(profile, extra: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            if not profile:
                return None
            user = self.store.get_user(profile.user_id)
            identity = {"id": user.id, "name": user.name, "email": user.email} if user else None
            return {"id": profile.id, **extra, "user": identity}

        patient = self.store.get_patient_profile_by_id(rx.patient_id)
        author = self.store.get_doctor_profile_by_id(rx.author_id)
        return {
            "id": rx.id,
            "code": rx.code,
            "status": rx.status,
            "notes": rx.notes,
            "createdAt": rx.created_at.isoformat(),
            "consumedAt": rx.consumed_at.isoformat() if rx.consumed_at else None,
            "patientId": rx.patient_id,
            "authorId": rx.author_id,
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
            "patient": _person(
                patient,
                {"birthDate": patient.birth_date.isoformat() if patient and patient.birth_date else None},
            ),
            "author": _person(author, {"specialty": author.specialty if author else None}),
        }
