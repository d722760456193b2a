from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from crm.core.responses import ApiResponse, PaginationModel
from crm.dependencies.auth import AdminUser, AuthServiceDep
from crm.dependencies.pagination import PageParams, pagination
from crm.users.models import Role
from crm.users.service import UserNotFoundError

from .auth import UserResponse, to_user_response

router = APIRouter(prefix="/users", tags=["users"])


class RoleUpdateRequest(BaseModel):
    role: str = Field(..., min_length=1)


class UserListResponse(BaseModel):
    users: list[UserResponse]
    pagination: PaginationModel


@router.get("", response_model=ApiResponse[UserListResponse])
async def list_users(
    service: AuthServiceDep,
    _: AdminUser,
    paging: Annotated[PageParams, Depends(pagination())],
    role: Role | None = Query(default=None),
) -> ApiResponse[UserListResponse]:
    users, total = await service.list_users(role=role, page=paging.page, limit=paging.limit)
    return ApiResponse(
        message="Users retrieved successfully",
        data=UserListResponse(
            users=[to_user_response(user) for user in users],
            pagination=PaginationModel.build(page=paging.page, limit=paging.limit, total=total),
        ),
    )


@router.put("/{user_id}/role", response_model=ApiResponse[UserResponse])
async def update_user_role(
    user_id: int,
    payload: RoleUpdateRequest,
    service: AuthServiceDep,
    _: AdminUser,
) -> ApiResponse[UserResponse]:
    try:
        role = Role.parse(payload.role)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        user = await service.update_role(user_id, role)
    except UserNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ApiResponse(message="User role updated successfully", data=to_user_response(user))
