from datetime import datetime, timezone

import pytest

from crm.tickets.access import AccessPolicy
from crm.tickets.models import ActivityAction, TicketActivity
from crm.users.models import Role

from factories import build_ticket, build_user

STAFF = [Role.EMPLOYEE, Role.MANAGER, Role.ADMIN]


def test_client_sees_only_own_tickets():
    client = build_user(Role.CLIENT, user_id=7)
    assert AccessPolicy.can_view(client, build_ticket(author_id=7))
    assert not AccessPolicy.can_view(client, build_ticket(author_id=8))


@pytest.mark.parametrize("role", STAFF)
def test_staff_see_every_ticket(role):
    assert AccessPolicy.can_view(build_user(role, user_id=2), build_ticket(author_id=99))


def test_client_list_scope_is_pinned_to_self():
    client = build_user(Role.CLIENT, user_id=7)
    assert AccessPolicy.scope_author_id(client, requested=8) == 7
    assert AccessPolicy.scope_assignee_id(client, requested=3) is None


def test_staff_list_scope_honours_requested_filters():
    employee = build_user(Role.EMPLOYEE, user_id=2)
    assert AccessPolicy.scope_author_id(employee, requested=8) == 8
    assert AccessPolicy.scope_author_id(employee) is None
    assert AccessPolicy.scope_assignee_id(employee, requested=3) == 3


def test_content_edit_requires_ownership_for_clients():
    client = build_user(Role.CLIENT, user_id=7)
    assert AccessPolicy.can_edit_content(client, build_ticket(author_id=7))
    assert not AccessPolicy.can_edit_content(client, build_ticket(author_id=8))
    assert AccessPolicy.can_edit_content(build_user(Role.EMPLOYEE, user_id=2), build_ticket(author_id=8))


@pytest.mark.parametrize(
    ("role", "allowed"),
    [(Role.CLIENT, False), (Role.EMPLOYEE, False), (Role.MANAGER, True), (Role.ADMIN, True)],
)
def test_only_elevated_roles_delete(role, allowed):
    assert AccessPolicy.can_delete(build_user(role)) is allowed


def test_assignment_rules():
    assert not AccessPolicy.can_assign(build_user(Role.CLIENT))
    assert AccessPolicy.can_assign(build_user(Role.EMPLOYEE))
    assert AccessPolicy.can_be_assignee(build_user(Role.MANAGER))
    assert not AccessPolicy.can_be_assignee(build_user(Role.CLIENT))

    inactive = build_user(Role.EMPLOYEE)
    inactive.is_active = False
    assert not AccessPolicy.can_be_assignee(inactive)


def test_internal_comments_are_staff_only():
    client = build_user(Role.CLIENT, user_id=7)
    own_ticket = build_ticket(author_id=7)

    assert AccessPolicy.can_comment(client, own_ticket)
    assert not AccessPolicy.can_comment(client, own_ticket, internal=True)
    assert not AccessPolicy.can_comment(client, build_ticket(author_id=8))
    assert AccessPolicy.can_comment(build_user(Role.EMPLOYEE, user_id=2), own_ticket, internal=True)
    assert not AccessPolicy.can_view_internal_comments(client)


def test_activity_feed_requires_staff():
    assert not AccessPolicy.can_view_activity_feed(build_user(Role.CLIENT))
    assert AccessPolicy.can_view_activity_feed(build_user(Role.EMPLOYEE))


def _comment_activity(*, internal: bool) -> TicketActivity:
    return TicketActivity(
        id=1,
        ticket_id=1,
        action=ActivityAction.COMMENT_ADDED,
        actor_id=2,
        actor_role="EMPLOYEE",
        before={},
        after={},
        changes={"action": "comment_added", "comment_id": 5, "is_internal": internal},
        created_at=datetime.now(timezone.utc),
        comment="text",
    )


def test_internal_comment_activity_follows_comment_visibility():
    client = build_user(Role.CLIENT, user_id=7)
    employee = build_user(Role.EMPLOYEE, user_id=2)

    assert AccessPolicy.can_view_activity(client, _comment_activity(internal=False))
    assert not AccessPolicy.can_view_activity(client, _comment_activity(internal=True))
    assert AccessPolicy.can_view_activity(employee, _comment_activity(internal=True))
