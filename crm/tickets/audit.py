"""Audit trail for ticket mutations.

Entries are written after the primary write has committed and in their own
session. A failed append is logged and swallowed so that the mutation the
caller asked for still succeeds.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

from crm.users.models import User

from .models import ActivityAction, ActivityDraft, Ticket, TicketActivity, TicketComment
from .state import TicketStatus

logger = logging.getLogger(__name__)


class ActivityWriter(Protocol):
    async def add_activity(self, draft: ActivityDraft) -> TicketActivity:
        ...


def created_entry(ticket: Ticket, actor: User) -> ActivityDraft:
    return ActivityDraft(
        ticket_id=ticket.id,
        action=ActivityAction.CREATED,
        actor_id=actor.id,
        actor_role=actor.role.value,
        before={},
        after=ticket.snapshot(),
        changes={
            "action": ActivityAction.CREATED.value,
            "ticket_number": ticket.ticket_number,
            "status": ticket.status.value,
        },
    )


def status_changed_entry(
    ticket_id: int,
    actor: User,
    *,
    old: TicketStatus,
    new: TicketStatus,
    notes: str | None = None,
) -> ActivityDraft:
    changes: dict[str, Any] = {
        "action": ActivityAction.STATUS_CHANGED.value,
        "from": old.value,
        "to": new.value,
        "updatedBy": actor.role.value,
    }
    if notes:
        changes["notes"] = notes
    return ActivityDraft(
        ticket_id=ticket_id,
        action=ActivityAction.STATUS_CHANGED,
        actor_id=actor.id,
        actor_role=actor.role.value,
        before={"status": old.value},
        after={"status": new.value},
        changes=changes,
    )


def content_updated_entry(
    ticket_id: int,
    actor: User,
    *,
    old: Mapping[str, Any],
    new: Mapping[str, Any],
) -> ActivityDraft:
    """Record only the fields whose value actually changed."""

    changed = [name for name, value in new.items() if old.get(name) != value]
    return ActivityDraft(
        ticket_id=ticket_id,
        action=ActivityAction.UPDATED,
        actor_id=actor.id,
        actor_role=actor.role.value,
        before={name: old.get(name) for name in changed},
        after={name: new[name] for name in changed},
        changes={name: {"from": old.get(name), "to": new[name]} for name in changed},
    )


def assigned_entry(ticket_id: int, actor: User, *, old: int | None, new: int) -> ActivityDraft:
    return ActivityDraft(
        ticket_id=ticket_id,
        action=ActivityAction.ASSIGNED,
        actor_id=actor.id,
        actor_role=actor.role.value,
        before={"assignee_id": old},
        after={"assignee_id": new},
        changes={
            "action": "reassigned" if old is not None else "assigned",
            "from": old,
            "to": new,
            "assignedBy": actor.role.value,
        },
    )


def comment_added_entry(comment: TicketComment, actor: User) -> ActivityDraft:
    return ActivityDraft(
        ticket_id=comment.ticket_id,
        action=ActivityAction.COMMENT_ADDED,
        actor_id=actor.id,
        actor_role=actor.role.value,
        changes={
            "action": ActivityAction.COMMENT_ADDED.value,
            "comment_id": comment.id,
            "is_internal": comment.is_internal,
        },
        comment=comment.content,
    )


class AuditTrail:
    """Best-effort, append-only writer for ticket activities."""

    def __init__(self, writer: ActivityWriter) -> None:
        self._writer = writer

    async def record(self, draft: ActivityDraft) -> TicketActivity | None:
        try:
            return await self._writer.add_activity(draft)
        except Exception:
            logger.exception(
                "Failed to record %s activity for ticket %s", draft.action.value, draft.ticket_id
            )
            return None
