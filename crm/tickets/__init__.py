"""Ticket domain: lifecycle, access rules, persistence and audit trail."""

from .access import AccessPolicy
from .audit import AuditTrail
from .errors import (
    DuplicateTicketNumberError,
    InvalidAssigneeError,
    StaleTicketVersionError,
    TicketNotFoundError,
    TicketPermissionError,
    TicketServiceError,
    TransitionNotAllowedError,
)
from .models import (
    ActivityAction,
    ActivityFilters,
    ActivityStats,
    PageRequest,
    Ticket,
    TicketActivity,
    TicketComment,
    TicketFilters,
    TicketPriority,
    TicketStats,
    TicketType,
)
from .repository import TicketRepository
from .service import TicketService
from .state import TicketStatus, TransitionPolicy

__all__ = [
    "AccessPolicy",
    "ActivityAction",
    "ActivityFilters",
    "ActivityStats",
    "AuditTrail",
    "DuplicateTicketNumberError",
    "InvalidAssigneeError",
    "PageRequest",
    "StaleTicketVersionError",
    "Ticket",
    "TicketActivity",
    "TicketComment",
    "TicketFilters",
    "TicketNotFoundError",
    "TicketPermissionError",
    "TicketPriority",
    "TicketRepository",
    "TicketService",
    "TicketServiceError",
    "TicketStats",
    "TicketStatus",
    "TicketType",
    "TransitionNotAllowedError",
    "TransitionPolicy",
]
