from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from crm.core.responses import ApiResponse, PaginationModel
from crm.dependencies.auth import StaffUser
from crm.dependencies.pagination import PageParams, pagination
from crm.dependencies.tickets import TicketServiceDep
from crm.tickets.errors import TicketServiceError
from crm.tickets.models import ActivityAction, ActivityFilters

from .tickets import ActivityResponse, ticket_http_error, to_activity_response

router = APIRouter(prefix="/history", tags=["history"])


class ActivityFeedResponse(BaseModel):
    activities: list[ActivityResponse]
    pagination: PaginationModel


@router.get("", response_model=ApiResponse[ActivityFeedResponse])
async def list_activity_feed(
    service: TicketServiceDep,
    user: StaffUser,
    paging: Annotated[PageParams, Depends(pagination(default_limit=20))],
    action: ActivityAction | None = Query(default=None),
    actor_id: int | None = Query(default=None),
    assignee_id: int | None = Query(default=None),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
) -> ApiResponse[ActivityFeedResponse]:
    filters = ActivityFilters(
        action=action,
        actor_id=actor_id,
        assignee_id=assignee_id,
        start_date=start_date,
        end_date=end_date,
    )
    try:
        result = await service.list_activity_feed(user, filters=filters, page=paging.page, limit=paging.limit)
    except TicketServiceError as exc:
        raise ticket_http_error(exc) from exc
    return ApiResponse(
        message="Activity history retrieved successfully",
        data=ActivityFeedResponse(
            activities=[to_activity_response(entry) for entry in result.items],
            pagination=PaginationModel.build(page=result.page, limit=result.limit, total=result.total),
        ),
    )


class ActionCount(BaseModel):
    action: ActivityAction
    count: int


class ActiveUserResponse(BaseModel):
    user_id: int
    name: str | None = None
    role: str | None = None
    activity_count: int


class ActivityStatsResponse(BaseModel):
    total_activities: int
    recent_activities: int
    activities_by_action: list[ActionCount]
    most_active_users: list[ActiveUserResponse]


@router.get("/stats", response_model=ApiResponse[ActivityStatsResponse])
async def get_activity_stats(
    service: TicketServiceDep,
    user: StaffUser,
    days: int = Query(default=30, ge=1, le=365),
) -> ApiResponse[ActivityStatsResponse]:
    try:
        stats = await service.get_activity_stats(user, days=days)
    except TicketServiceError as exc:
        raise ticket_http_error(exc) from exc
    return ApiResponse(
        message="Activity statistics retrieved successfully",
        data=ActivityStatsResponse(
            total_activities=stats.total,
            recent_activities=stats.recent,
            activities_by_action=[
                ActionCount(action=action, count=count) for action, count in stats.by_action.items()
            ],
            most_active_users=[
                ActiveUserResponse(
                    user_id=entry.actor_id, name=entry.name, role=entry.role, activity_count=entry.count
                )
                for entry in stats.most_active
            ],
        ),
    )
