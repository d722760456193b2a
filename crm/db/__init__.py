"""Database models and utilities."""

from .models import (
    TicketActivityTable,
    TicketCommentTable,
    TicketTable,
    UserTable,
)

__all__ = [
    "TicketActivityTable",
    "TicketCommentTable",
    "TicketTable",
    "UserTable",
]
