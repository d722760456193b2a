from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from crm.core.responses import ApiResponse
from crm.dependencies.auth import AuthServiceDep, CurrentUser, auth_rate_limit
from crm.users.models import Role, User
from crm.users.service import (
    AuthServiceError,
    InvalidPhoneNumberError,
    InvalidTokenError,
    InvalidVerificationCodeError,
    LoginResult,
    UserNotFoundError,
)

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginRequest(BaseModel):
    phone: str = Field(..., min_length=1, max_length=32)


class VerifyRequest(BaseModel):
    phone: str = Field(..., min_length=1, max_length=32)
    code: str = Field(..., min_length=1, max_length=16)


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    phone: str
    name: str | None
    role: Role
    is_active: bool
    last_login_at: datetime | None
    created_at: datetime
    updated_at: datetime


class SessionResponse(BaseModel):
    user: UserResponse
    token: str


class TokenResponse(BaseModel):
    token: str


def to_user_response(user: User) -> UserResponse:
    return UserResponse.model_validate(user)


def _to_session(result: LoginResult) -> SessionResponse:
    return SessionResponse(user=to_user_response(result.user), token=result.token)


def _auth_error(exc: AuthServiceError) -> HTTPException:
    if isinstance(exc, (InvalidPhoneNumberError, InvalidVerificationCodeError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, UserNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidTokenError):
        return HTTPException(status_code=401, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@router.post(
    "/login",
    response_model=ApiResponse[SessionResponse],
    dependencies=[Depends(auth_rate_limit)],
)
async def login(payload: LoginRequest, service: AuthServiceDep) -> ApiResponse[SessionResponse]:
    try:
        result = await service.login(payload.phone)
    except AuthServiceError as exc:
        raise _auth_error(exc) from exc
    return ApiResponse(message="Login successful", data=_to_session(result))


@router.post(
    "/verify",
    response_model=ApiResponse[SessionResponse],
    dependencies=[Depends(auth_rate_limit)],
)
async def verify(payload: VerifyRequest, service: AuthServiceDep) -> ApiResponse[SessionResponse]:
    try:
        result = await service.verify(payload.phone, payload.code)
    except AuthServiceError as exc:
        raise _auth_error(exc) from exc
    return ApiResponse(message="Verification successful", data=_to_session(result))


@router.get("/profile", response_model=ApiResponse[UserResponse])
async def profile(user: CurrentUser) -> ApiResponse[UserResponse]:
    return ApiResponse(message="Profile retrieved successfully", data=to_user_response(user))


@router.post("/refresh", response_model=ApiResponse[TokenResponse])
async def refresh(user: CurrentUser, service: AuthServiceDep) -> ApiResponse[TokenResponse]:
    try:
        token = await service.refresh(user)
    except AuthServiceError as exc:
        raise _auth_error(exc) from exc
    return ApiResponse(message="Token refreshed successfully", data=TokenResponse(token=token))
