from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Sequence

from .state import TicketStatus


class TicketPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"
    CRITICAL = "CRITICAL"


class TicketType(str, Enum):
    COMPLAINT = "COMPLAINT"
    REQUEST = "REQUEST"
    INQUIRY = "INQUIRY"
    TECHNICAL = "TECHNICAL"
    BILLING = "BILLING"
    CONNECTION = "CONNECTION"
    MAINTENANCE = "MAINTENANCE"


class ActivityAction(str, Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    UPDATED = "updated"
    ASSIGNED = "assigned"
    COMMENT_ADDED = "comment_added"


CUSTOMER_FIELDS: tuple[str, ...] = (
    "customer_name",
    "customer_phone",
    "customer_email",
    "customer_address",
    "customer_area",
    "meter_number",
    "account_number",
)


@dataclass(slots=True)
class Ticket:
    """Primary ticket record."""

    id: int
    ticket_number: str
    title: str
    description: str
    status: TicketStatus
    priority: TicketPriority
    type: TicketType
    author_id: int
    assignee_id: int | None
    created_at: datetime
    updated_at: datetime
    version: int = 1
    customer_name: str | None = None
    customer_phone: str | None = None
    customer_email: str | None = None
    customer_address: str | None = None
    customer_area: str | None = None
    meter_number: str | None = None
    account_number: str | None = None
    resolution: str | None = None
    resolved_at: datetime | None = None
    resolved_by_id: int | None = None
    first_response_at: datetime | None = None

    def snapshot(self) -> dict[str, Any]:
        """Fields recorded as the ``after`` image of a creation entry."""

        data: dict[str, Any] = {
            "ticket_number": self.ticket_number,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "type": self.type.value,
            "author_id": self.author_id,
            "assignee_id": self.assignee_id,
        }
        for name in CUSTOMER_FIELDS:
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data


@dataclass(slots=True)
class TicketActivity:
    """Immutable audit record of one ticket mutation."""

    id: int
    ticket_id: int
    action: ActivityAction
    actor_id: int
    actor_role: str
    before: Mapping[str, Any]
    after: Mapping[str, Any]
    changes: Mapping[str, Any]
    created_at: datetime
    comment: str | None = None


@dataclass(slots=True)
class ActivityDraft:
    """Activity values before they are persisted."""

    ticket_id: int
    action: ActivityAction
    actor_id: int
    actor_role: str
    before: Mapping[str, Any] = field(default_factory=dict)
    after: Mapping[str, Any] = field(default_factory=dict)
    changes: Mapping[str, Any] = field(default_factory=dict)
    comment: str | None = None


@dataclass(slots=True)
class TicketComment:
    id: int
    ticket_id: int
    author_id: int
    content: str
    is_internal: bool
    created_at: datetime


@dataclass(slots=True)
class TicketFilters:
    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    type: TicketType | None = None
    author_id: int | None = None
    assignee_id: int | None = None
    search: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None


@dataclass(slots=True)
class PageRequest:
    page: int = 1
    limit: int = 10
    sort_by: str = "created_at"
    sort_order: str = "desc"

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass(slots=True)
class TicketPage:
    items: Sequence[Ticket]
    total: int
    page: int
    limit: int


@dataclass(slots=True)
class ActivityFilters:
    action: ActivityAction | None = None
    actor_id: int | None = None
    assignee_id: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


@dataclass(slots=True)
class ActivityPage:
    items: Sequence[TicketActivity]
    total: int
    page: int
    limit: int


@dataclass(slots=True)
class TicketStats:
    """Ticket counts per status for one access scope."""

    total: int
    by_status: Mapping[TicketStatus, int]

    @classmethod
    def from_counts(cls, counts: Mapping[str, int]) -> "TicketStats":
        by_status = {status: int(counts.get(status.value, 0)) for status in TicketStatus}
        return cls(total=sum(by_status.values()), by_status=by_status)

    def as_dict(self) -> dict[str, int]:
        data = {status.value: count for status, count in self.by_status.items()}
        data["total"] = self.total
        return data


@dataclass(slots=True)
class ActorActivity:
    actor_id: int
    count: int
    name: str | None = None
    role: str | None = None


@dataclass(slots=True)
class ActivityStats:
    """Audit trail volume overall and for the recent window."""

    total: int
    recent: int
    by_action: Mapping[ActivityAction, int]
    most_active: Sequence[ActorActivity]
