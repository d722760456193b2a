from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from crm.security.rate_limit import FixedWindowRateLimiter, RateLimitExceeded
from crm.users.models import ELEVATED_ROLES, STAFF_ROLES, Role, User
from crm.users.service import AuthService, InvalidTokenError

bearer_scheme = HTTPBearer(auto_error=False)


async def get_auth_service(request: Request) -> AuthService:
    service = getattr(request.app.state, "auth_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Authentication service is not configured")
    return service


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
) -> User:
    """Resolve the bearer token to a freshly loaded, active user."""

    cached = getattr(request.state, "user", None)
    if isinstance(cached, User):
        return cached

    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=401,
            detail="Access token required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        user = await auth_service.resolve_token(credentials.credentials)
    except InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail=str(exc), headers={"WWW-Authenticate": "Bearer"}) from exc

    request.state.user = user
    return user


def role_required(*roles: Role) -> Callable[[User], User]:
    """Dependency factory ensuring the current user holds one of ``roles``."""

    async def dependency(user: Annotated[User, Depends(get_current_user)]) -> User:
        if not user.has_role(*roles):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return dependency


async def auth_rate_limit(request: Request) -> None:
    limiter: FixedWindowRateLimiter | None = getattr(request.app.state, "auth_rate_limiter", None)
    if limiter is None:
        return
    client = request.client.host if request.client else "unknown"
    try:
        limiter.hit(client)
    except RateLimitExceeded as exc:
        raise HTTPException(
            status_code=429,
            detail=str(exc),
            headers={"Retry-After": str(exc.retry_after)},
        ) from exc


require_staff = role_required(*STAFF_ROLES)
require_elevated = role_required(*ELEVATED_ROLES)
require_admin = role_required(Role.ADMIN)

CurrentUser = Annotated[User, Depends(get_current_user)]
StaffUser = Annotated[User, Depends(require_staff)]
ElevatedUser = Annotated[User, Depends(require_elevated)]
AdminUser = Annotated[User, Depends(require_admin)]
AuthServiceDep = Annotated[AuthService, Depends(get_auth_service)]
