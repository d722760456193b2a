"""SQLModel table definitions for the CRM data layer."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


class UserTable(SQLModel, table=True):
    """Accounts identified by their normalized phone number."""

    __tablename__ = "users"

    id: int | None = Field(default=None, sa_column=Column(Integer, primary_key=True, autoincrement=True))
    phone: str = Field(sa_column=Column(String(32), nullable=False, unique=True, index=True))
    name: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    role: str = Field(sa_column=Column(String(20), nullable=False))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    last_login_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketTable(SQLModel, table=True):
    """Customer complaints and requests."""

    __tablename__ = "tickets"

    id: int | None = Field(default=None, sa_column=Column(Integer, primary_key=True, autoincrement=True))
    ticket_number: str = Field(sa_column=Column(String(32), nullable=False, unique=True, index=True))
    title: str = Field(sa_column=Column(String(200), nullable=False))
    description: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(sa_column=Column(String(20), nullable=False, index=True))
    priority: str = Field(sa_column=Column(String(20), nullable=False))
    type: str = Field(sa_column=Column(String(20), nullable=False))
    author_id: int = Field(sa_column=Column(Integer, ForeignKey("users.id"), nullable=False, index=True))
    assignee_id: int | None = Field(
        default=None, sa_column=Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    )
    customer_name: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    customer_phone: str | None = Field(default=None, sa_column=Column(String(32), nullable=True))
    customer_email: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    customer_address: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    customer_area: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    meter_number: str | None = Field(default=None, sa_column=Column(String(64), nullable=True))
    account_number: str | None = Field(default=None, sa_column=Column(String(64), nullable=True))
    resolution: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    resolved_by_id: int | None = Field(default=None, sa_column=Column(Integer, ForeignKey("users.id"), nullable=True))
    first_response_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    version: int = Field(default=1, sa_column=Column(Integer, nullable=False, default=1))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketActivityTable(SQLModel, table=True):
    """Audit trail describing every ticket mutation."""

    __tablename__ = "ticket_activities"

    id: int | None = Field(default=None, sa_column=Column(Integer, primary_key=True, autoincrement=True))
    ticket_id: int = Field(
        sa_column=Column(Integer, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    action: str = Field(sa_column=Column(String(50), nullable=False, index=True))
    actor_id: int = Field(sa_column=Column(Integer, nullable=False))
    actor_role: str = Field(sa_column=Column(String(20), nullable=False))
    before: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    after: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    changes: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    comment: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketCommentTable(SQLModel, table=True):
    """Public and staff-internal comments on a ticket."""

    __tablename__ = "ticket_comments"

    id: int | None = Field(default=None, sa_column=Column(Integer, primary_key=True, autoincrement=True))
    ticket_id: int = Field(
        sa_column=Column(Integer, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    author_id: int = Field(sa_column=Column(Integer, ForeignKey("users.id"), nullable=False))
    content: str = Field(sa_column=Column(Text, nullable=False))
    is_internal: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


def ensure_datetime(value: datetime | None) -> datetime:
    """Attach UTC to naive timestamps returned by drivers that drop the offset."""

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    raise TypeError("Expected datetime value from database")


def ensure_optional_datetime(value: datetime | None) -> datetime | None:
    return None if value is None else ensure_datetime(value)
