from __future__ import annotations

import logging
import random
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Protocol, Sequence

from crm.core.logging import get_tracer
from crm.users.models import User

from . import audit
from .access import AccessPolicy
from .audit import AuditTrail
from .errors import (
    DuplicateTicketNumberError,
    InvalidAssigneeError,
    TicketNotFoundError,
    TicketPermissionError,
)
from .models import (
    CUSTOMER_FIELDS,
    ActivityFilters,
    ActivityPage,
    ActivityStats,
    PageRequest,
    Ticket,
    TicketActivity,
    TicketComment,
    TicketFilters,
    TicketPage,
    TicketPriority,
    TicketStats,
    TicketType,
)
from .repository import TicketRepository
from .state import TicketStatus, TransitionPolicy

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

_MAX_NUMBER_ATTEMPTS = 5


class UserLookup(Protocol):
    async def get_user(self, user_id: int) -> User | None:
        ...


def generate_ticket_number() -> str:
    """``TK`` + last six digits of the millisecond clock + three random digits."""

    millis = str(int(time.time() * 1000))
    return f"TK{millis[-6:]}{random.randint(0, 999):03d}"


class TicketService:
    """High level orchestration: access check, transition check, write, audit."""

    def __init__(
        self,
        repository: TicketRepository,
        *,
        users: UserLookup | None = None,
        audit_trail: AuditTrail | None = None,
        transitions: TransitionPolicy | None = None,
        access: AccessPolicy | None = None,
        number_factory: Callable[[], str] = generate_ticket_number,
    ) -> None:
        self._repository = repository
        self._users = users
        self._audit = audit_trail or AuditTrail(repository)
        self._transitions = transitions or TransitionPolicy()
        self._access = access or AccessPolicy()
        self._number_factory = number_factory

    @property
    def transitions(self) -> TransitionPolicy:
        return self._transitions

    async def ensure_schema(self) -> None:
        await self._repository.ensure_schema()

    async def create_ticket(
        self,
        actor: User,
        *,
        title: str,
        description: str,
        priority: TicketPriority = TicketPriority.MEDIUM,
        type: TicketType = TicketType.COMPLAINT,
        customer: Mapping[str, Any] | None = None,
    ) -> Ticket:
        snapshot = {name: (customer or {}).get(name) for name in CUSTOMER_FIELDS}
        if not snapshot["customer_phone"]:
            snapshot["customer_phone"] = actor.phone
        if not snapshot["customer_name"] and actor.name:
            snapshot["customer_name"] = actor.name

        values: dict[str, Any] = {
            "title": title,
            "description": description,
            "status": self._transitions.initial_state().value,
            "priority": priority.value,
            "type": type.value,
            "author_id": actor.id,
            **snapshot,
        }

        ticket = await self._insert_with_fresh_number(values)

        await self._audit.record(audit.created_entry(ticket, actor))
        logger.info("Ticket %s created by user %s", ticket.id, actor.id)
        return ticket

    async def _insert_with_fresh_number(self, values: Mapping[str, Any]) -> Ticket:
        attempt = 1
        while True:
            try:
                return await self._repository.create_ticket({**values, "ticket_number": self._number_factory()})
            except DuplicateTicketNumberError:
                if attempt >= _MAX_NUMBER_ATTEMPTS:
                    raise
                logger.warning("Ticket number collision, retrying (attempt %s)", attempt)
                attempt += 1

    async def list_tickets(
        self,
        actor: User,
        *,
        filters: TicketFilters | None = None,
        page: PageRequest | None = None,
    ) -> TicketPage:
        filters = filters or TicketFilters()
        page = page or PageRequest()
        scoped = replace(
            filters,
            author_id=self._access.scope_author_id(actor, filters.author_id),
            assignee_id=self._access.scope_assignee_id(actor, filters.assignee_id),
        )
        items, total = await self._repository.list_tickets(scoped, page)
        return TicketPage(items=items, total=total, page=page.page, limit=page.limit)

    async def get_ticket(self, actor: User, ticket_id: int) -> Ticket:
        ticket = await self._repository.get_ticket(ticket_id)
        if ticket is None or not self._access.can_view(actor, ticket):
            raise TicketNotFoundError(f"Ticket {ticket_id} not found or access denied")
        return ticket

    async def available_transitions(self, actor: User, ticket_id: int) -> tuple[Ticket, frozenset[TicketStatus]]:
        ticket = await self.get_ticket(actor, ticket_id)
        return ticket, self._transitions.available_transitions(ticket.status, actor.role)

    async def change_status(
        self,
        actor: User,
        ticket_id: int,
        *,
        new_status: TicketStatus,
        notes: str | None = None,
        expected_version: int | None = None,
    ) -> Ticket:
        with tracer.start_as_current_span("tickets.change_status") as span:
            span.set_attribute("ticket.id", ticket_id)
            span.set_attribute("actor.role", actor.role.value)
            ticket = await self.get_ticket(actor, ticket_id)
            current = ticket.status
            span.set_attribute("ticket.status.from", current.value)
            span.set_attribute("ticket.status.to", new_status.value)
            self._transitions.assert_transition(current, new_status, actor.role)

            now = datetime.now(timezone.utc)
            values: dict[str, Any] = {"status": new_status.value}
            if new_status is TicketStatus.RESOLVED:
                values.update(resolved_at=now, resolved_by_id=actor.id)
                if notes:
                    values["resolution"] = notes
            if actor.is_staff and ticket.first_response_at is None and new_status is TicketStatus.IN_PROGRESS:
                values["first_response_at"] = now

            updated = await self._repository.update_ticket(ticket_id, values, expected_version=expected_version)
            if updated is None:
                raise TicketNotFoundError(f"Ticket {ticket_id} not found or access denied")

        await self._audit.record(
            audit.status_changed_entry(ticket_id, actor, old=current, new=new_status, notes=notes)
        )
        logger.info("Ticket %s status %s -> %s by user %s", ticket_id, current.value, new_status.value, actor.id)
        return updated

    async def update_content(
        self,
        actor: User,
        ticket_id: int,
        *,
        title: str | None = None,
        description: str | None = None,
        expected_version: int | None = None,
    ) -> Ticket:
        ticket = await self._repository.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found or access denied")
        if not self._access.can_edit_content(actor, ticket):
            raise TicketPermissionError("You can only update your own tickets")

        old = {"title": ticket.title, "description": ticket.description}
        new = {
            "title": title if title else ticket.title,
            "description": description if description else ticket.description,
        }

        updated = await self._repository.update_ticket(ticket_id, new, expected_version=expected_version)
        if updated is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found or access denied")

        await self._audit.record(audit.content_updated_entry(ticket_id, actor, old=old, new=new))
        return updated

    async def assign_ticket(self, actor: User, ticket_id: int, *, assignee_id: int) -> Ticket:
        if not self._access.can_assign(actor):
            raise TicketPermissionError("You do not have permission to assign tickets")
        ticket = await self.get_ticket(actor, ticket_id)

        if self._users is not None:
            assignee = await self._users.get_user(assignee_id)
            if assignee is None or not self._access.can_be_assignee(assignee):
                raise InvalidAssigneeError(f"User {assignee_id} cannot be assigned tickets")

        updated = await self._repository.update_ticket(ticket_id, {"assignee_id": assignee_id})
        if updated is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found or access denied")

        await self._audit.record(audit.assigned_entry(ticket_id, actor, old=ticket.assignee_id, new=assignee_id))
        return updated

    async def delete_ticket(self, actor: User, ticket_id: int) -> None:
        if not self._access.can_delete(actor):
            raise TicketPermissionError("Only administrators and managers can delete tickets")
        deleted = await self._repository.delete_ticket(ticket_id)
        if not deleted:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        logger.info("Ticket %s deleted by user %s", ticket_id, actor.id)

    async def get_history(self, actor: User, ticket_id: int) -> Sequence[TicketActivity]:
        await self.get_ticket(actor, ticket_id)
        activities = await self._repository.list_activities(ticket_id)
        return [entry for entry in activities if self._access.can_view_activity(actor, entry)]

    async def list_activity_feed(
        self,
        actor: User,
        *,
        filters: ActivityFilters | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> ActivityPage:
        if not self._access.can_view_activity_feed(actor):
            raise TicketPermissionError("Insufficient permissions")
        items, total = await self._repository.list_activity_feed(filters or ActivityFilters(), page=page, limit=limit)
        return ActivityPage(items=items, total=total, page=page, limit=limit)

    async def get_activity_stats(self, actor: User, *, days: int = 30) -> ActivityStats:
        if not self._access.can_view_activity_feed(actor):
            raise TicketPermissionError("Insufficient permissions")
        stats = await self._repository.activity_stats(since=datetime.now(timezone.utc) - timedelta(days=days))
        if self._users is not None:
            for entry in stats.most_active:
                user = await self._users.get_user(entry.actor_id)
                if user is not None:
                    entry.name = user.name or user.phone
                    entry.role = user.role.value
        return stats

    async def add_comment(
        self, actor: User, ticket_id: int, *, content: str, is_internal: bool = False
    ) -> TicketComment:
        ticket = await self.get_ticket(actor, ticket_id)
        if not self._access.can_comment(actor, ticket, internal=is_internal):
            raise TicketPermissionError("Clients cannot add internal comments")

        comment = await self._repository.add_comment(
            ticket_id=ticket_id, author_id=actor.id, content=content, is_internal=is_internal
        )
        await self._audit.record(audit.comment_added_entry(comment, actor))
        return comment

    async def list_comments(self, actor: User, ticket_id: int) -> Sequence[TicketComment]:
        await self.get_ticket(actor, ticket_id)
        return await self._repository.list_comments(
            ticket_id, include_internal=self._access.can_view_internal_comments(actor)
        )

    async def get_stats(
        self, actor: User, *, author_id: int | None = None, assignee_id: int | None = None
    ) -> TicketStats:
        counts = await self._repository.count_by_status(
            author_id=self._access.scope_author_id(actor, author_id),
            assignee_id=self._access.scope_assignee_id(actor, assignee_id),
        )
        return TicketStats.from_counts(counts)
