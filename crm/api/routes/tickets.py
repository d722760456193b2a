from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from crm.core.responses import ApiResponse, PaginationModel
from crm.dependencies.auth import CurrentUser, ElevatedUser, StaffUser
from crm.dependencies.pagination import PageParams, pagination
from crm.dependencies.tickets import TicketServiceDep
from crm.tickets.errors import (
    DuplicateTicketNumberError,
    InvalidAssigneeError,
    StaleTicketVersionError,
    TicketNotFoundError,
    TicketPermissionError,
    TicketServiceError,
    TransitionNotAllowedError,
)
from crm.tickets.models import (
    ActivityAction,
    PageRequest,
    Ticket,
    TicketActivity,
    TicketComment,
    TicketFilters,
    TicketPriority,
    TicketType,
)
from crm.tickets.state import TicketStatus

router = APIRouter(prefix="/tickets", tags=["tickets"])


class TicketCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    priority: TicketPriority = TicketPriority.MEDIUM
    type: TicketType = TicketType.COMPLAINT
    customer_name: str | None = Field(default=None, max_length=255)
    customer_phone: str | None = Field(default=None, max_length=32)
    customer_email: str | None = Field(default=None, max_length=255)
    customer_address: str | None = None
    customer_area: str | None = Field(default=None, max_length=255)
    meter_number: str | None = Field(default=None, max_length=64)
    account_number: str | None = Field(default=None, max_length=64)


class TicketUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, min_length=1)
    expected_version: int | None = Field(default=None, ge=1)

    def ensure_payload(self) -> None:
        if self.title is None and self.description is None:
            raise HTTPException(status_code=400, detail="No fields provided for update")


class TicketStatusChangeRequest(BaseModel):
    status: str = Field(..., min_length=1)
    notes: str | None = Field(default=None, max_length=1000)
    expected_version: int | None = Field(default=None, ge=1)


class TicketAssignRequest(BaseModel):
    assignee_id: int = Field(..., ge=1)


class CommentCreateRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)
    is_internal: bool = False


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ticket_number: str
    title: str
    description: str
    status: TicketStatus
    priority: TicketPriority
    type: TicketType
    author_id: int
    assignee_id: int | None
    version: int
    customer_name: str | None
    customer_phone: str | None
    customer_email: str | None
    customer_address: str | None
    customer_area: str | None
    meter_number: str | None
    account_number: str | None
    resolution: str | None
    resolved_at: datetime | None
    resolved_by_id: int | None
    first_response_at: datetime | None
    created_at: datetime
    updated_at: datetime


class TicketListResponse(BaseModel):
    tickets: list[TicketResponse]
    pagination: PaginationModel


class ActivityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ticket_id: int
    action: ActivityAction
    actor_id: int
    actor_role: str
    before: dict[str, Any]
    after: dict[str, Any]
    changes: dict[str, Any]
    comment: str | None
    created_at: datetime


class CommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ticket_id: int
    author_id: int
    content: str
    is_internal: bool
    created_at: datetime


class TransitionsResponse(BaseModel):
    ticket_id: int
    current_status: TicketStatus
    available_transitions: list[TicketStatus]


def _to_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse.model_validate(ticket)


def to_activity_response(entry: TicketActivity) -> ActivityResponse:
    return ActivityResponse.model_validate(entry)


def _to_comment_response(comment: TicketComment) -> CommentResponse:
    return CommentResponse.model_validate(comment)


def ticket_http_error(exc: TicketServiceError) -> HTTPException:
    """Translate a ticket domain error into the matching HTTP failure."""

    if isinstance(exc, TransitionNotAllowedError):
        return HTTPException(
            status_code=403,
            detail={
                "message": str(exc),
                "current_status": exc.current,
                "available_transitions": exc.allowed,
            },
        )
    if isinstance(exc, TicketNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, TicketPermissionError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, StaleTicketVersionError):
        return HTTPException(
            status_code=409,
            detail={"message": str(exc), "expected_version": exc.expected},
        )
    if isinstance(exc, InvalidAssigneeError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, DuplicateTicketNumberError):
        return HTTPException(status_code=409, detail="Could not allocate a unique ticket number")
    return HTTPException(status_code=500, detail=str(exc))


def _parse_status(value: str) -> TicketStatus:
    try:
        return TicketStatus.parse(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("", response_model=ApiResponse[TicketListResponse])
async def list_tickets(
    service: TicketServiceDep,
    user: CurrentUser,
    paging: Annotated[PageParams, Depends(pagination())],
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
    priority: TicketPriority | None = Query(default=None),
    type_filter: TicketType | None = Query(default=None, alias="type"),
    assignee_id: int | None = Query(default=None),
    author_id: int | None = Query(default=None),
    search: str | None = Query(default=None, max_length=200),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    sort_by: Literal["created_at", "updated_at", "title", "status"] = Query(default="created_at"),
    sort_order: Literal["asc", "desc"] = Query(default="desc"),
) -> ApiResponse[TicketListResponse]:
    filters = TicketFilters(
        status=status_filter,
        priority=priority,
        type=type_filter,
        author_id=author_id,
        assignee_id=assignee_id,
        search=search or None,
        date_from=date_from,
        date_to=date_to,
    )
    page = PageRequest(page=paging.page, limit=paging.limit, sort_by=sort_by, sort_order=sort_order)
    result = await service.list_tickets(user, filters=filters, page=page)
    return ApiResponse(
        message="Tickets retrieved successfully",
        data=TicketListResponse(
            tickets=[_to_response(ticket) for ticket in result.items],
            pagination=PaginationModel.build(page=result.page, limit=result.limit, total=result.total),
        ),
    )


@router.post("", response_model=ApiResponse[TicketResponse], status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateRequest,
    service: TicketServiceDep,
    user: CurrentUser,
) -> ApiResponse[TicketResponse]:
    customer = payload.model_dump(exclude={"title", "description", "priority", "type"})
    try:
        ticket = await service.create_ticket(
            user,
            title=payload.title,
            description=payload.description,
            priority=payload.priority,
            type=payload.type,
            customer=customer,
        )
    except TicketServiceError as exc:
        raise ticket_http_error(exc) from exc
    return ApiResponse(message="Ticket created successfully", data=_to_response(ticket))


@router.get("/stats", response_model=ApiResponse[dict[str, int]])
async def get_ticket_stats(
    service: TicketServiceDep,
    user: CurrentUser,
    author_id: int | None = Query(default=None),
    assignee_id: int | None = Query(default=None),
) -> ApiResponse[dict[str, int]]:
    stats = await service.get_stats(user, author_id=author_id, assignee_id=assignee_id)
    return ApiResponse(message="Ticket statistics retrieved successfully", data=stats.as_dict())


@router.get("/{ticket_id}", response_model=ApiResponse[TicketResponse])
async def get_ticket(ticket_id: int, service: TicketServiceDep, user: CurrentUser) -> ApiResponse[TicketResponse]:
    try:
        ticket = await service.get_ticket(user, ticket_id)
    except TicketServiceError as exc:
        raise ticket_http_error(exc) from exc
    return ApiResponse(message="Ticket retrieved successfully", data=_to_response(ticket))


@router.get("/{ticket_id}/transitions", response_model=ApiResponse[TransitionsResponse])
async def get_available_transitions(
    ticket_id: int, service: TicketServiceDep, user: CurrentUser
) -> ApiResponse[TransitionsResponse]:
    try:
        ticket, allowed = await service.available_transitions(user, ticket_id)
    except TicketServiceError as exc:
        raise ticket_http_error(exc) from exc
    return ApiResponse(
        message="Available transitions retrieved successfully",
        data=TransitionsResponse(
            ticket_id=ticket.id,
            current_status=ticket.status,
            available_transitions=sorted(allowed, key=lambda item: item.value),
        ),
    )


@router.put("/{ticket_id}/status", response_model=ApiResponse[TicketResponse])
async def change_ticket_status(
    ticket_id: int,
    payload: TicketStatusChangeRequest,
    service: TicketServiceDep,
    user: CurrentUser,
) -> ApiResponse[TicketResponse]:
    new_status = _parse_status(payload.status)
    try:
        ticket = await service.change_status(
            user,
            ticket_id,
            new_status=new_status,
            notes=payload.notes,
            expected_version=payload.expected_version,
        )
    except TicketServiceError as exc:
        raise ticket_http_error(exc) from exc
    return ApiResponse(message="Ticket status updated successfully", data=_to_response(ticket))


@router.put("/{ticket_id}/assign", response_model=ApiResponse[TicketResponse])
async def assign_ticket(
    ticket_id: int,
    payload: TicketAssignRequest,
    service: TicketServiceDep,
    user: StaffUser,
) -> ApiResponse[TicketResponse]:
    try:
        ticket = await service.assign_ticket(user, ticket_id, assignee_id=payload.assignee_id)
    except TicketServiceError as exc:
        raise ticket_http_error(exc) from exc
    return ApiResponse(message="Ticket assigned successfully", data=_to_response(ticket))


@router.put("/{ticket_id}", response_model=ApiResponse[TicketResponse])
async def update_ticket(
    ticket_id: int,
    payload: TicketUpdateRequest,
    service: TicketServiceDep,
    user: CurrentUser,
) -> ApiResponse[TicketResponse]:
    payload.ensure_payload()
    try:
        ticket = await service.update_content(
            user,
            ticket_id,
            title=payload.title,
            description=payload.description,
            expected_version=payload.expected_version,
        )
    except TicketServiceError as exc:
        raise ticket_http_error(exc) from exc
    return ApiResponse(message="Ticket updated successfully", data=_to_response(ticket))


@router.delete("/{ticket_id}", response_model=ApiResponse[None])
async def delete_ticket(ticket_id: int, service: TicketServiceDep, user: ElevatedUser) -> ApiResponse[None]:
    try:
        await service.delete_ticket(user, ticket_id)
    except TicketServiceError as exc:
        raise ticket_http_error(exc) from exc
    return ApiResponse(message="Ticket deleted successfully")


@router.get("/{ticket_id}/history", response_model=ApiResponse[list[ActivityResponse]])
async def get_ticket_history(
    ticket_id: int, service: TicketServiceDep, user: CurrentUser
) -> ApiResponse[list[ActivityResponse]]:
    try:
        entries = await service.get_history(user, ticket_id)
    except TicketServiceError as exc:
        raise ticket_http_error(exc) from exc
    return ApiResponse(
        message="Ticket history retrieved successfully",
        data=[to_activity_response(entry) for entry in entries],
    )


@router.get("/{ticket_id}/comments", response_model=ApiResponse[list[CommentResponse]])
async def list_ticket_comments(
    ticket_id: int, service: TicketServiceDep, user: CurrentUser
) -> ApiResponse[list[CommentResponse]]:
    try:
        comments = await service.list_comments(user, ticket_id)
    except TicketServiceError as exc:
        raise ticket_http_error(exc) from exc
    return ApiResponse(
        message="Comments retrieved successfully",
        data=[_to_comment_response(comment) for comment in comments],
    )


@router.post(
    "/{ticket_id}/comments",
    response_model=ApiResponse[CommentResponse],
    status_code=status.HTTP_201_CREATED,
)
async def add_ticket_comment(
    ticket_id: int,
    payload: CommentCreateRequest,
    service: TicketServiceDep,
    user: CurrentUser,
) -> ApiResponse[CommentResponse]:
    try:
        comment = await service.add_comment(
            user, ticket_id, content=payload.content, is_internal=payload.is_internal
        )
    except TicketServiceError as exc:
        raise ticket_http_error(exc) from exc
    return ApiResponse(message="Comment added successfully", data=_to_comment_response(comment))
