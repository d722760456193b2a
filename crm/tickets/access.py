"""Role based visibility and mutability rules for tickets."""

from __future__ import annotations

from crm.users.models import ELEVATED_ROLES, STAFF_ROLES, Role, User

from .models import ActivityAction, Ticket, TicketActivity


class AccessPolicy:
    """Every ticket permission decision lives here, free of HTTP concerns."""

    @staticmethod
    def can_view(user: User, ticket: Ticket) -> bool:
        if user.role is Role.CLIENT:
            return ticket.author_id == user.id
        return user.role in STAFF_ROLES

    @staticmethod
    def scope_author_id(user: User, requested: int | None = None) -> int | None:
        """Author restriction to apply to list and stats queries.

        Clients are always pinned to their own id; staff may narrow by author.
        """

        if user.role is Role.CLIENT:
            return user.id
        return requested

    @staticmethod
    def scope_assignee_id(user: User, requested: int | None = None) -> int | None:
        if user.role is Role.CLIENT:
            return None
        return requested

    @staticmethod
    def can_edit_content(user: User, ticket: Ticket) -> bool:
        if user.role in STAFF_ROLES:
            return True
        return ticket.author_id == user.id

    @staticmethod
    def can_assign(user: User) -> bool:
        return user.role in STAFF_ROLES

    @staticmethod
    def can_be_assignee(user: User) -> bool:
        return user.is_active and user.role in STAFF_ROLES

    @staticmethod
    def can_delete(user: User) -> bool:
        return user.role in ELEVATED_ROLES

    @staticmethod
    def can_comment(user: User, ticket: Ticket, *, internal: bool = False) -> bool:
        if not AccessPolicy.can_view(user, ticket):
            return False
        return not internal or user.role in STAFF_ROLES

    @staticmethod
    def can_view_internal_comments(user: User) -> bool:
        return user.role in STAFF_ROLES

    @staticmethod
    def can_view_activity(user: User, activity: TicketActivity) -> bool:
        """Entries for internal comments follow the internal comment rule."""

        if activity.action is ActivityAction.COMMENT_ADDED and activity.changes.get("is_internal"):
            return AccessPolicy.can_view_internal_comments(user)
        return True

    @staticmethod
    def can_view_activity_feed(user: User) -> bool:
        return user.role in STAFF_ROLES
