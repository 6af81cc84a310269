from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Dict, Optional, Tuple

from fastapi import APIRouter, Depends, Query, Request, Response

from rxportal.api.schemas import (
    Envelope,
    LoginRequest,
    PagedResponse,
    PageMeta,
    PrescriptionCreateRequest,
    RegisterRequest,
    UpdateUserRequest,
    UserDetailResponse,
    UserResponse,
)
from rxportal.config import get_settings
from rxportal.logging import get_logger
from rxportal.service.auth import IssuedSession
from rxportal.service.errors import ValidationError
from rxportal.service.guards import (
    ACCESS_COOKIE,
    AUTHENTICATED,
    PUBLIC,
    REFRESH,
    REFRESH_COOKIE,
    RequestContext,
    RoutePolicy,
    require_roles,
)
from rxportal.service.prescriptions import ItemInput
from rxportal.service.runtime import get_runtime
from rxportal.service.users import UserRecord
from rxportal.storage.models import Page, Role, User

logger = get_logger(__name__)

# Every routed endpoint declares its requirements here; unlisted routes
# fall back to AUTHENTICATED.
ROUTE_POLICIES: Dict[Tuple[str, str], RoutePolicy] = {
    ("POST", "/auth/register"): PUBLIC,
    ("POST", "/auth/login"): PUBLIC,
    ("POST", "/auth/refresh"): REFRESH,
    ("GET", "/auth/profile"): AUTHENTICATED,
    ("POST", "/auth/logout"): AUTHENTICATED,
    ("POST", "/users"): require_roles(Role.ADMIN),
    ("GET", "/users"): require_roles(Role.ADMIN),
    ("GET", "/doctors"): require_roles(Role.ADMIN),
    ("GET", "/patients"): require_roles(Role.ADMIN),
    ("GET", "/users/{user_id}"): require_roles(Role.ADMIN),
    ("PATCH", "/users/{user_id}"): require_roles(Role.ADMIN),
    ("DELETE", "/users/{user_id}"): require_roles(Role.ADMIN),
    ("POST", "/prescriptions"): require_roles(Role.DOCTOR),
    ("GET", "/prescriptions"): require_roles(Role.DOCTOR),
    ("GET", "/prescriptions/{prescription_id}"): require_roles(
        Role.DOCTOR, Role.PATIENT, Role.ADMIN
    ),
    ("GET", "/me/prescriptions"): require_roles(Role.PATIENT),
    ("PATCH", "/prescriptions/{prescription_id}/consume"): require_roles(Role.PATIENT),
    ("GET", "/admin/prescriptions"): require_roles(Role.ADMIN),
}


def policy_for(method: str, route_path: str) -> RoutePolicy:
    prefix = get_settings().api_prefix
    if prefix and route_path.startswith(prefix):
        route_path = route_path[len(prefix):] or "/"
    return ROUTE_POLICIES.get((method.upper(), route_path), AUTHENTICATED)


async def run_guards(request: Request) -> RequestContext:
    """Resolve the matched route's policy and run the guard chain over it."""
    route = request.scope.get("route")
    route_path = getattr(route, "path", request.url.path)
    ctx = RequestContext(
        method=request.method,
        path=request.url.path,
        policy=policy_for(request.method, route_path),
        cookies=request.cookies,
        client_ip=request.client.host if request.client else None,
    )
    return await get_runtime().guard_chain.run(ctx)


router = APIRouter(prefix=get_settings().api_prefix, dependencies=[Depends(run_guards)])


def _cookie_options() -> dict:
    settings = get_settings()
    if settings.is_production:
        return {"httponly": True, "secure": True, "samesite": "none", "path": "/"}
    return {"httponly": True, "secure": False, "samesite": "strict", "path": "/"}


def _apply_session_cookies(response: Response, session: IssuedSession) -> None:
    options = _cookie_options()
    response.set_cookie(
        ACCESS_COOKIE, session.access_token, max_age=session.access_max_age, **options
    )
    response.set_cookie(
        REFRESH_COOKIE, session.refresh_token, max_age=session.refresh_max_age, **options
    )


def _clear_session_cookies(response: Response) -> None:
    options = _cookie_options()
    response.delete_cookie(ACCESS_COOKIE, **options)
    response.delete_cookie(REFRESH_COOKIE, **options)


def _user_payload(user: User) -> dict:
    return UserResponse(**user.projection()).model_dump()


def _user_detail(record: UserRecord) -> dict:
    user = record.user
    detail = UserDetailResponse(
        **user.projection(),
        created_at=user.created_at.isoformat() if user.created_at else None,
        doctor_profile_id=record.doctor.id if record.doctor else None,
        specialty=record.doctor.specialty if record.doctor else None,
        patient_profile_id=record.patient.id if record.patient else None,
        birth_date=(
            record.patient.birth_date.isoformat()
            if record.patient and record.patient.birth_date
            else None
        ),
    )
    return detail.model_dump(by_alias=True, exclude_none=True)


def _paged(page: Page, render) -> dict:
    return PagedResponse(
        data=[render(item) for item in page.items], meta=PageMeta.from_page(page)
    ).model_dump()


def _parse_bound(raw: Optional[str], field: str, *, end_of_day: bool = False) -> Optional[datetime]:
    """Parse an ISO date or datetime query value into an aware UTC datetime."""
    if not raw:
        return None
    try:
        if len(raw) == 10:
            day = date.fromisoformat(raw)
            parsed = datetime.combine(day, time.max if end_of_day else time.min)
        else:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date", detail={"field": field})
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create an account with its role profile and open a session.

    Raises:
        400: Invalid body
        409: Email already registered
    """
    runtime = get_runtime()
    user, session = await runtime.auth.register(
        email=body.email,
        password=body.password,
        name=body.name,
        role=body.role,
        specialty=body.specialty,
        birth_date=body.birth_date,
    )
    _apply_session_cookies(response, session)
    return Envelope(status="ok", data={"user": _user_payload(user)})


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    runtime = get_runtime()
    user, session = await runtime.auth.login(body.email, body.password)
    _apply_session_cookies(response, session)
    return Envelope(status="ok", data={"user": _user_payload(user)})


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(response: Response, ctx: RequestContext = Depends(run_guards)):
    """Rotate the refresh cookie; the presented token is unusable afterwards."""
    runtime = get_runtime()
    user, session = await runtime.auth.refresh(
        ctx.refresh_claims["sub"], ctx.refresh_token, token_id=ctx.refresh_claims.get("tid")
    )
    _apply_session_cookies(response, session)
    return Envelope(status="ok", data={"user": _user_payload(user)})


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def profile(ctx: RequestContext = Depends(run_guards)):
    return Envelope(status="ok", data={"user": _user_payload(ctx.user)})


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response, ctx: RequestContext = Depends(run_guards)):
    runtime = get_runtime()
    await runtime.auth.logout(ctx.user.id, request.cookies.get(REFRESH_COOKIE))
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"message": "session closed"})


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(body: RegisterRequest):
    runtime = get_runtime()
    record = await runtime.users.create_user(
        body.email,
        body.password,
        body.name,
        body.role,
        specialty=body.specialty,
        birth_date=body.birth_date,
    )
    return Envelope(status="ok", data=_user_detail(record))


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    role: Optional[Role] = Query(None),
    query: Optional[str] = Query(None, max_length=200),
    page: int = Query(1),
    limit: int = Query(10),
):
    runtime = get_runtime()
    result = runtime.users.list_users(
        role=role.value if role else None, query=query, page=page, limit=limit
    )
    return Envelope(status="ok", data=_paged(result, _user_detail))


@router.get("/doctors", response_model=Envelope, tags=["users"])
async def list_doctors(page: int = Query(1), limit: int = Query(10)):
    result = get_runtime().users.list_doctors(page=page, limit=limit)
    return Envelope(status="ok", data=_paged(result, _user_detail))


@router.get("/patients", response_model=Envelope, tags=["users"])
async def list_patients(page: int = Query(1), limit: int = Query(10)):
    result = get_runtime().users.list_patients(page=page, limit=limit)
    return Envelope(status="ok", data=_paged(result, _user_detail))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(user_id: str):
    return Envelope(status="ok", data=_user_detail(get_runtime().users.get_user(user_id)))


@router.patch("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(user_id: str, body: UpdateUserRequest):
    """Update a user's profile fields.

    Changing the password revokes every refresh token the user holds. The
    role cannot be changed once assigned.
    """
    runtime = get_runtime()
    record = await runtime.users.update_user(
        user_id,
        name=body.name,
        email=body.email,
        password=body.password,
        specialty=body.specialty,
        birth_date=body.birth_date,
        role=body.role,
    )
    return Envelope(status="ok", data=_user_detail(record))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(user_id: str, ctx: RequestContext = Depends(run_guards)):
    get_runtime().users.delete_user(user_id, acting_user_id=ctx.user_id)
    return Envelope(status="ok", data={"id": user_id, "deleted": True})


@router.post("/prescriptions", response_model=Envelope, status_code=201, tags=["prescriptions"])
async def create_prescription(
    body: PrescriptionCreateRequest, ctx: RequestContext = Depends(run_guards)
):
    runtime = get_runtime()
    rx = await runtime.prescriptions.create(
        ctx.user,
        body.patient_id,
        [
            ItemInput(
                name=item.name,
                dosage=item.dosage,
                quantity=item.quantity,
                instructions=item.instructions,
            )
            for item in body.items
        ],
        notes=body.notes,
    )
    return Envelope(status="ok", data=runtime.prescriptions.describe(rx))


@router.get("/prescriptions", response_model=Envelope, tags=["prescriptions"])
async def list_doctor_prescriptions(
    ctx: RequestContext = Depends(run_guards),
    mine: bool = Query(False),
    status: Optional[str] = Query(None),
    created_from: Optional[str] = Query(None, alias="from"),
    created_to: Optional[str] = Query(None, alias="to"),
    page: int = Query(1),
    limit: int = Query(10),
    order: str = Query("desc"),
):
    runtime = get_runtime()
    result = runtime.prescriptions.list_for_doctor(
        ctx.user,
        mine=mine,
        status=status,
        created_from=_parse_bound(created_from, "from"),
        created_to=_parse_bound(created_to, "to", end_of_day=True),
        page=page,
        limit=limit,
        order=order,
    )
    return Envelope(status="ok", data=_paged(result, runtime.prescriptions.describe))


@router.get("/me/prescriptions", response_model=Envelope, tags=["prescriptions"])
async def list_my_prescriptions(
    ctx: RequestContext = Depends(run_guards),
    status: Optional[str] = Query(None),
    page: int = Query(1),
    limit: int = Query(10),
):
    runtime = get_runtime()
    result = runtime.prescriptions.list_for_patient(
        ctx.user, status=status, page=page, limit=limit
    )
    return Envelope(status="ok", data=_paged(result, runtime.prescriptions.describe))


@router.get("/admin/prescriptions", response_model=Envelope, tags=["prescriptions"])
async def list_all_prescriptions(
    status: Optional[str] = Query(None),
    doctor_id: Optional[str] = Query(None, alias="doctorId"),
    patient_id: Optional[str] = Query(None, alias="patientId"),
    created_from: Optional[str] = Query(None, alias="from"),
    created_to: Optional[str] = Query(None, alias="to"),
    page: int = Query(1),
    limit: int = Query(10),
):
    runtime = get_runtime()
    result = runtime.prescriptions.list_for_admin(
        status=status,
        doctor_id=doctor_id,
        patient_id=patient_id,
        created_from=_parse_bound(created_from, "from"),
        created_to=_parse_bound(created_to, "to", end_of_day=True),
        page=page,
        limit=limit,
    )
    return Envelope(status="ok", data=_paged(result, runtime.prescriptions.describe))


@router.get("/prescriptions/{prescription_id}", response_model=Envelope, tags=["prescriptions"])
async def get_prescription(prescription_id: str, ctx: RequestContext = Depends(run_guards)):
    runtime = get_runtime()
    rx = runtime.prescriptions.get(prescription_id, ctx.user)
    return Envelope(status="ok", data=runtime.prescriptions.describe(rx))


@router.patch(
    "/prescriptions/{prescription_id}/consume", response_model=Envelope, tags=["prescriptions"]
)
async def consume_prescription(prescription_id: str, ctx: RequestContext = Depends(run_guards)):
    runtime = get_runtime()
    rx = await runtime.prescriptions.consume(prescription_id, ctx.user)
    return Envelope(status="ok", data=runtime.prescriptions.describe(rx))
