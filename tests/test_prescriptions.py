"""Tests for prescription creation, listing, access rules and consumption."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from rxportal import app as app_module
from rxportal.service.errors import ServerError, ValidationError
from rxportal.service.prescriptions import ItemInput, PrescriptionService, generate_code
from rxportal.service.runtime import get_runtime
from rxportal.storage.errors import ConstraintViolation


def _register(payload):
    client = TestClient(app_module.app)
    response = client.post("/api/auth/register", json=payload)
    assert response.status_code == 201, response.text
    return client, response.json()["data"]["user"]


@pytest.fixture
def doctor():
    return _register(
        {
            "email": "dr@test.com",
            "password": "doctor123",
            "name": "Dr. Demo",
            "role": "doctor",
            "specialty": "Cardiology",
        }
    )


@pytest.fixture
def other_doctor():
    return _register(
        {"email": "dr2@test.com", "password": "doctor123", "name": "Dr. Two", "role": "doctor"}
    )


@pytest.fixture
def patient():
    return _register(
        {
            "email": "patient@test.com",
            "password": "patient123",
            "name": "Pat",
            "role": "patient",
            "birthDate": "1985-08-15",
        }
    )


@pytest.fixture
def other_patient():
    return _register(
        {"email": "p2@test.com", "password": "patient123", "name": "Pat Two", "role": "patient"}
    )


@pytest.fixture
def admin():
    client, _ = _register(
        {"email": "admin@test.com", "password": "admin123", "name": "Admin", "role": "admin"}
    )
    return client


def _patient_profile_id(user):
    return get_runtime().store.get_patient_profile(user["id"]).id


def _create(doctor_client, patient_user, **extra):
    body = {
        "patientId": _patient_profile_id(patient_user),
        "items": [{"name": "Amoxicillin", "dosage": "500mg", "quantity": 21}],
        **extra,
    }
    response = doctor_client.post("/api/prescriptions", json=body)
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestCreate:
    """Doctors issue prescriptions."""

    def test_create_returns_code_and_items(self, doctor, patient):
        doctor_client, _ = doctor
        _, patient_user = patient
        rx = _create(doctor_client, patient_user, notes="after meals")

        assert rx["status"] == "pending"
        assert rx["code"].startswith("RX-")
        year, number = rx["code"].split("-")[1:]
        assert len(year) == 4 and len(number) == 4
        assert rx["items"][0]["name"] == "Amoxicillin"
        assert rx["items"][0]["quantity"] == 21
        assert rx["notes"] == "after meals"
        assert rx["author"]["specialty"] == "Cardiology"
        assert rx["patient"]["user"]["email"] == "patient@test.com"
        assert rx["consumedAt"] is None

    def test_empty_items_is_400(self, doctor, patient):
        doctor_client, _ = doctor
        _, patient_user = patient
        response = doctor_client.post(
            "/api/prescriptions",
            json={"patientId": _patient_profile_id(patient_user), "items": []},
        )
        assert response.status_code == 400

    def test_zero_quantity_is_400(self, doctor, patient):
        doctor_client, _ = doctor
        _, patient_user = patient
        response = doctor_client.post(
            "/api/prescriptions",
            json={
                "patientId": _patient_profile_id(patient_user),
                "items": [{"name": "X", "quantity": 0}],
            },
        )
        assert response.status_code == 400

    def test_unknown_patient_is_404(self, doctor):
        doctor_client, _ = doctor
        response = doctor_client.post(
            "/api/prescriptions", json={"patientId": "nope", "items": [{"name": "X"}]}
        )
        assert response.status_code == 404

    def test_patient_cannot_create(self, patient):
        patient_client, patient_user = patient
        response = patient_client.post(
            "/api/prescriptions",
            json={"patientId": _patient_profile_id(patient_user), "items": [{"name": "X"}]},
        )
        assert response.status_code == 403


class TestCodeGeneration:
    """Unique code allocation."""

    def test_code_format(self):
        code = generate_code(2024)
        prefix, year, number = code.split("-")
        assert prefix == "RX" and year == "2024"
        assert 1000 <= int(number) <= 9999

    async def test_collision_is_retried(self, doctor, patient, monkeypatch):
        _, doctor_user = doctor
        _, patient_user = patient
        runtime = get_runtime()
        original = runtime.store.create_prescription
        attempts = []

        def flaky(prescription):
            attempts.append(prescription.code)
            if len(attempts) < 3:
                raise ConstraintViolation("prescription code already exists", {"field": "code"})
            return original(prescription)

        monkeypatch.setattr(runtime.store, "create_prescription", flaky)
        user = runtime.store.get_user(doctor_user["id"])
        rx = await runtime.prescriptions.create(
            user, _patient_profile_id(patient_user), [ItemInput(name="X")]
        )
        assert len(attempts) == 3
        assert rx.code == attempts[-1]

    async def test_exhausted_retries_is_server_error(self, doctor, patient, monkeypatch):
        _, doctor_user = doctor
        _, patient_user = patient
        runtime = get_runtime()

        def always_collide(prescription):
            raise ConstraintViolation("prescription code already exists", {"field": "code"})

        monkeypatch.setattr(runtime.store, "create_prescription", always_collide)
        user = runtime.store.get_user(doctor_user["id"])
        with pytest.raises(ServerError):
            await runtime.prescriptions.create(
                user, _patient_profile_id(patient_user), [ItemInput(name="X")]
            )

    async def test_service_rejects_empty_items(self, doctor, patient):
        _, doctor_user = doctor
        _, patient_user = patient
        runtime = get_runtime()
        service = PrescriptionService(runtime.store)
        with pytest.raises(ValidationError):
            await service.create(
                runtime.store.get_user(doctor_user["id"]), _patient_profile_id(patient_user), []
            )


class TestReadAccess:
    """Who may read which prescription."""

    def test_owner_patient_and_author_can_read(self, doctor, patient):
        doctor_client, _ = doctor
        patient_client, patient_user = patient
        rx = _create(doctor_client, patient_user)

        assert patient_client.get(f"/api/prescriptions/{rx['id']}").status_code == 200
        assert doctor_client.get(f"/api/prescriptions/{rx['id']}").status_code == 200

    def test_other_patient_is_403(self, doctor, patient, other_patient):
        doctor_client, _ = doctor
        _, patient_user = patient
        other_client, _ = other_patient
        rx = _create(doctor_client, patient_user)

        assert other_client.get(f"/api/prescriptions/{rx['id']}").status_code == 403

    def test_other_doctor_is_403(self, doctor, other_doctor, patient):
        doctor_client, _ = doctor
        other_client, _ = other_doctor
        _, patient_user = patient
        rx = _create(doctor_client, patient_user)

        assert other_client.get(f"/api/prescriptions/{rx['id']}").status_code == 403

    def test_admin_reads_any(self, admin, doctor, patient):
        doctor_client, _ = doctor
        _, patient_user = patient
        rx = _create(doctor_client, patient_user)

        assert admin.get(f"/api/prescriptions/{rx['id']}").status_code == 200

    def test_missing_is_404(self, admin):
        assert admin.get("/api/prescriptions/nope").status_code == 404


class TestConsume:
    """Patients mark prescriptions as used."""

    def test_consume_then_second_consume_is_400(self, doctor, patient):
        doctor_client, _ = doctor
        patient_client, patient_user = patient
        rx = _create(doctor_client, patient_user)

        first = patient_client.patch(f"/api/prescriptions/{rx['id']}/consume")
        assert first.status_code == 200
        assert first.json()["data"]["status"] == "consumed"
        assert first.json()["data"]["consumedAt"]

        second = patient_client.patch(f"/api/prescriptions/{rx['id']}/consume")
        assert second.status_code == 400
        assert second.json()["error"]["message"] == "prescription already consumed"

    def test_other_patient_cannot_consume(self, doctor, patient, other_patient):
        doctor_client, _ = doctor
        _, patient_user = patient
        other_client, _ = other_patient
        rx = _create(doctor_client, patient_user)

        assert other_client.patch(f"/api/prescriptions/{rx['id']}/consume").status_code == 403

    def test_doctor_cannot_consume(self, doctor, patient):
        doctor_client, _ = doctor
        _, patient_user = patient
        rx = _create(doctor_client, patient_user)

        assert doctor_client.patch(f"/api/prescriptions/{rx['id']}/consume").status_code == 403


class TestListing:
    """Role-specific listings."""

    def test_patient_list_puts_pending_first(self, doctor, patient):
        doctor_client, _ = doctor
        patient_client, patient_user = patient
        first = _create(doctor_client, patient_user)
        second = _create(doctor_client, patient_user)
        third = _create(doctor_client, patient_user)
        patient_client.patch(f"/api/prescriptions/{third['id']}/consume")

        listing = patient_client.get("/api/me/prescriptions").json()["data"]
        statuses = [rx["status"] for rx in listing["data"]]
        assert statuses == ["pending", "pending", "consumed"]
        pending_ids = [rx["id"] for rx in listing["data"][:2]]
        assert set(pending_ids) == {first["id"], second["id"]}
        assert listing["meta"]["total"] == 3

    def test_patient_sees_only_own(self, doctor, patient, other_patient):
        doctor_client, _ = doctor
        _, patient_user = patient
        other_client, _ = other_patient
        _create(doctor_client, patient_user)

        listing = other_client.get("/api/me/prescriptions").json()["data"]
        assert listing["data"] == []
        assert listing["meta"]["total"] == 0

    def test_doctor_mine_filter(self, doctor, other_doctor, patient):
        doctor_client, _ = doctor
        other_client, _ = other_doctor
        _, patient_user = patient
        _create(doctor_client, patient_user)
        _create(other_client, patient_user)

        all_rx = doctor_client.get("/api/prescriptions").json()["data"]
        mine = doctor_client.get("/api/prescriptions", params={"mine": "true"}).json()["data"]
        assert all_rx["meta"]["total"] == 2
        assert mine["meta"]["total"] == 1

    def test_doctor_status_filter_and_order(self, doctor, patient):
        doctor_client, _ = doctor
        patient_client, patient_user = patient
        older = _create(doctor_client, patient_user)
        newer = _create(doctor_client, patient_user)
        store = get_runtime().store
        store.prescriptions[older["id"]].created_at -= timedelta(days=1)

        desc = doctor_client.get("/api/prescriptions").json()["data"]["data"]
        asc = doctor_client.get("/api/prescriptions", params={"order": "asc"}).json()["data"]["data"]
        assert [rx["id"] for rx in desc] == [newer["id"], older["id"]]
        assert [rx["id"] for rx in asc] == [older["id"], newer["id"]]

        patient_client.patch(f"/api/prescriptions/{newer['id']}/consume")
        consumed = doctor_client.get(
            "/api/prescriptions", params={"status": "consumed"}
        ).json()["data"]["data"]
        assert [rx["id"] for rx in consumed] == [newer["id"]]

    def test_doctor_date_range(self, doctor, patient):
        doctor_client, _ = doctor
        _, patient_user = patient
        rx = _create(doctor_client, patient_user)
        created = get_runtime().store.prescriptions[rx["id"]].created_at.date()

        hit = doctor_client.get(
            "/api/prescriptions", params={"from": created.isoformat(), "to": created.isoformat()}
        ).json()["data"]
        miss = doctor_client.get(
            "/api/prescriptions", params={"from": (created + timedelta(days=1)).isoformat()}
        ).json()["data"]
        assert hit["meta"]["total"] == 1
        assert miss["meta"]["total"] == 0

    def test_bad_order_is_400(self, doctor):
        doctor_client, _ = doctor
        assert doctor_client.get("/api/prescriptions", params={"order": "up"}).status_code == 400

    def test_bad_status_is_400(self, doctor):
        doctor_client, _ = doctor
        assert doctor_client.get("/api/prescriptions", params={"status": "x"}).status_code == 400

    def test_admin_listing_filters(self, admin, doctor, other_doctor, patient):
        doctor_client, doctor_user = doctor
        other_client, _ = other_doctor
        _, patient_user = patient
        _create(doctor_client, patient_user)
        _create(other_client, patient_user)
        doctor_profile = get_runtime().store.get_doctor_profile(doctor_user["id"])

        everything = admin.get("/api/admin/prescriptions").json()["data"]
        by_doctor = admin.get(
            "/api/admin/prescriptions", params={"doctorId": doctor_profile.id}
        ).json()["data"]
        by_patient = admin.get(
            "/api/admin/prescriptions", params={"patientId": _patient_profile_id(patient_user)}
        ).json()["data"]
        assert everything["meta"]["total"] == 2
        assert by_doctor["meta"]["total"] == 1
        assert by_patient["meta"]["total"] == 2

    def test_admin_listing_forbidden_for_doctor(self, doctor):
        doctor_client, _ = doctor
        assert doctor_client.get("/api/admin/prescriptions").status_code == 403
