"""Request guard chain.

Every routed request passes through an ordered list of guards before its
handler runs. Each guard receives the request context and a continuation; it
either raises a ServiceError to stop the request or awaits the continuation.
Per-route requirements come from the RoutePolicy table in rxportal.api.routes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from rxportal.config import Settings
from rxportal.logging import get_logger
from rxportal.service.errors import (
    ForbiddenError,
    InvalidRefreshTokenError,
    RateLimitedError,
    UnauthenticatedError,
    UserNotFoundError,
)
from rxportal.service.tokens import TokenError, TokenExpired, TokenKind, TokenService
from rxportal.storage.models import Role, User

logger = get_logger(__name__)

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


@dataclass(frozen=True)
class RoutePolicy:
    """What a route demands before dispatch.

    ``public`` skips access-token authentication, ``refresh`` requires a valid
    refresh cookie instead, and ``roles`` restricts the authenticated user's
    role (empty means any role).
    """

    public: bool = False
    refresh: bool = False
    roles: FrozenSet[Role] = frozenset()


PUBLIC = RoutePolicy(public=True)
REFRESH = RoutePolicy(public=True, refresh=True)
AUTHENTICATED = RoutePolicy()


def require_roles(*roles: Role) -> RoutePolicy:
    return RoutePolicy(roles=frozenset(roles))


@dataclass
class RequestContext:
    method: str
    path: str
    policy: RoutePolicy
    cookies: Mapping[str, str] = field(default_factory=dict)
    client_ip: Optional[str] = None
    user: Optional[User] = None
    refresh_token: Optional[str] = None
    refresh_claims: Optional[Dict[str, Any]] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.user.id if self.user else None


Next = Callable[[RequestContext], Awaitable[RequestContext]]
Guard = Callable[[RequestContext, Next], Awaitable[RequestContext]]
RateCheck = Callable[[str, int, int], Awaitable[Tuple[bool, int, int]]]


class GuardChain:
    """Run guards in list order; the context returned by the last one wins."""

    def __init__(self, guards: Sequence[Guard]) -> None:
        self.guards: Tuple[Guard, ...] = tuple(guards)

    async def run(self, ctx: RequestContext) -> RequestContext:
        async def dispatch(index: int, current: RequestContext) -> RequestContext:
            if index >= len(self.guards):
                return current
            guard = self.guards[index]
            return await guard(current, lambda nxt: dispatch(index + 1, nxt))

        return await dispatch(0, ctx)


class ThrottleGuard:
    """Global per-client request budget; runs before any authentication."""

    def __init__(self, check: RateCheck, settings: Settings) -> None:
        self.check = check
        self.limit = settings.rate_limit_requests
        self.window_seconds = settings.rate_limit_window_seconds

    async def __call__(self, ctx: RequestContext, call_next: Next) -> RequestContext:
        key = f"client:{ctx.client_ip or 'unknown'}"
        allowed, _remaining, retry_after = await self.check(
            key, self.limit, self.window_seconds
        )
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                path=ctx.path,
                method=ctx.method,
                client_ip=ctx.client_ip,
                retry_after=retry_after,
            )
            raise RateLimitedError(
                retry_after=retry_after or self.window_seconds,
                detail={"retry_after": retry_after or self.window_seconds},
            )
        return await call_next(ctx)


class AuthenticationGuard:
    """Resolve the access cookie to a live user for non-public routes."""

    def __init__(self, tokens: TokenService, load_user: Callable[[str], User]) -> None:
        self.tokens = tokens
        self.load_user = load_user

    def authenticate(self, token: Optional[str]) -> User:
        if not token:
            raise UnauthenticatedError()
        try:
            claims = self.tokens.verify(token, TokenKind.ACCESS)
        except TokenExpired:
            raise UnauthenticatedError("access token expired")
        except TokenError:
            raise UnauthenticatedError("invalid access token")
        try:
            return self.load_user(claims["sub"])
        except UserNotFoundError:
            # Token outlived its user; treat as anonymous
            logger.warning("access_token_user_missing", user_id=claims["sub"])
            raise UnauthenticatedError()

    async def __call__(self, ctx: RequestContext, call_next: Next) -> RequestContext:
        if ctx.policy.public:
            return await call_next(ctx)
        ctx.user = self.authenticate(ctx.cookies.get(ACCESS_COOKIE))
        return await call_next(ctx)


class RefreshGuard:
    """Check the refresh cookie's signature and expiry.

    Store presence is checked afterwards by AuthService.refresh; a refresh
    succeeds only when both checks pass.
    """

    def __init__(self, tokens: TokenService) -> None:
        self.tokens = tokens

    async def __call__(self, ctx: RequestContext, call_next: Next) -> RequestContext:
        if not ctx.policy.refresh:
            return await call_next(ctx)
        token = ctx.cookies.get(REFRESH_COOKIE)
        if not token:
            raise InvalidRefreshTokenError("refresh token missing")
        try:
            claims = self.tokens.verify(token, TokenKind.REFRESH)
        except TokenExpired:
            raise InvalidRefreshTokenError("refresh token expired")
        except TokenError:
            raise InvalidRefreshTokenError()
        ctx.refresh_token = token
        ctx.refresh_claims = claims
        return await call_next(ctx)


class AuthorizationGuard:
    """Compare the declared role set with the authenticated user's role."""

    async def __call__(self, ctx: RequestContext, call_next: Next) -> RequestContext:
        roles = ctx.policy.roles
        if ctx.policy.public or not roles:
            return await call_next(ctx)
        if ctx.user is None:
            raise UnauthenticatedError()
        # Roles are flat: admin does not imply doctor or patient
        if Role(ctx.user.role) not in roles:
            logger.warning(
                "role_forbidden",
                path=ctx.path,
                user_id=ctx.user.id,
                role=ctx.user.role,
                required=sorted(r.value for r in roles),
            )
            raise ForbiddenError(
                "insufficient role",
                detail={"required_roles": sorted(r.value for r in roles)},
            )
        return await call_next(ctx)


def build_guard_chain(
    settings: Settings,
    tokens: TokenService,
    load_user: Callable[[str], User],
    rate_check: RateCheck,
) -> GuardChain:
    return GuardChain(
        [
            ThrottleGuard(rate_check, settings),
            AuthenticationGuard(tokens, load_user),
            RefreshGuard(tokens),
            AuthorizationGuard(),
        ]
    )
