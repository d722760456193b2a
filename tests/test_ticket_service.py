from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from crm.tickets.audit import AuditTrail
from crm.tickets.errors import (
    DuplicateTicketNumberError,
    InvalidAssigneeError,
    StaleTicketVersionError,
    TicketNotFoundError,
    TicketPermissionError,
    TransitionNotAllowedError,
)
from crm.tickets.models import ActivityAction, ActivityFilters, TicketFilters
from crm.tickets.repository import TicketRepository
from crm.tickets.service import TicketService, generate_ticket_number
from crm.tickets.state import TicketStatus
from crm.users.models import Role
from crm.users.repository import UserRepository


def test_generate_ticket_number_format():
    number = generate_ticket_number()
    assert number.startswith("TK")
    assert len(number) == 11
    assert number[2:].isdigit()


@pytest.mark.asyncio
async def test_lifecycle_scenario(ticket_service: TicketService, make_user):
    customer = await make_user(Role.CLIENT, name="Customer")
    employee = await make_user(Role.EMPLOYEE)
    manager = await make_user(Role.MANAGER)

    ticket = await ticket_service.create_ticket(customer, title="No power", description="Since 8am")
    assert ticket.status is TicketStatus.UNSEEN
    assert ticket.customer_phone == customer.phone
    assert ticket.customer_name == "Customer"

    moved = await ticket_service.change_status(employee, ticket.id, new_status=TicketStatus.IN_PROGRESS)
    assert moved.status is TicketStatus.IN_PROGRESS
    assert moved.first_response_at is not None

    with pytest.raises(TransitionNotAllowedError) as denied:
        await ticket_service.change_status(employee, ticket.id, new_status=TicketStatus.CLOSED)
    assert denied.value.allowed == ["resolved"]

    closed = await ticket_service.change_status(manager, ticket.id, new_status=TicketStatus.CLOSED)
    assert closed.status is TicketStatus.CLOSED

    history = await ticket_service.get_history(manager, ticket.id)
    status_changes = [entry for entry in reversed(history) if entry.action is ActivityAction.STATUS_CHANGED]
    assert [(entry.before, entry.after) for entry in status_changes] == [
        ({"status": "unseen"}, {"status": "in_progress"}),
        ({"status": "in_progress"}, {"status": "closed"}),
    ]
    assert history[-1].action is ActivityAction.CREATED


@pytest.mark.asyncio
async def test_each_status_change_appends_one_entry(ticket_service: TicketService, make_user):
    customer = await make_user()
    admin = await make_user(Role.ADMIN)
    ticket = await ticket_service.create_ticket(customer, title="Leak", description="Water meter leak")

    path = [TicketStatus.IN_PROGRESS, TicketStatus.REJECTED, TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED]
    for step, target in enumerate(path, start=1):
        await ticket_service.change_status(admin, ticket.id, new_status=target)
        history = await ticket_service.get_history(admin, ticket.id)
        changes = [entry for entry in history if entry.action is ActivityAction.STATUS_CHANGED]
        assert len(changes) == step
        assert changes[0].after == {"status": target.value}


@pytest.mark.asyncio
async def test_resolving_records_resolution(ticket_service: TicketService, make_user):
    customer = await make_user()
    employee = await make_user(Role.EMPLOYEE)
    ticket = await ticket_service.create_ticket(customer, title="Bill", description="Too high")

    resolved = await ticket_service.change_status(
        employee, ticket.id, new_status=TicketStatus.RESOLVED, notes="Refund issued"
    )

    assert resolved.resolution == "Refund issued"
    assert resolved.resolved_by_id == employee.id
    assert resolved.resolved_at is not None


@pytest.mark.asyncio
async def test_client_cannot_change_status(ticket_service: TicketService, make_user):
    customer = await make_user()
    ticket = await ticket_service.create_ticket(customer, title="Bill", description="Too high")

    with pytest.raises(TransitionNotAllowedError) as exc:
        await ticket_service.change_status(customer, ticket.id, new_status=TicketStatus.CLOSED)
    assert exc.value.allowed == []


@pytest.mark.asyncio
async def test_client_only_lists_own_tickets(ticket_service: TicketService, make_user):
    alice = await make_user()
    bob = await make_user()
    for index in range(3):
        await ticket_service.create_ticket(alice, title=f"Alice {index}", description="x")
    await ticket_service.create_ticket(bob, title="Bob", description="x")

    page = await ticket_service.list_tickets(alice, filters=TicketFilters(author_id=bob.id))

    assert page.total == 3
    assert all(ticket.author_id == alice.id for ticket in page.items)


@pytest.mark.asyncio
async def test_foreign_ticket_is_invisible_to_client(ticket_service: TicketService, make_user):
    alice = await make_user()
    bob = await make_user()
    ticket = await ticket_service.create_ticket(bob, title="Bob", description="x")

    with pytest.raises(TicketNotFoundError):
        await ticket_service.get_ticket(alice, ticket.id)
    with pytest.raises(TicketNotFoundError):
        await ticket_service.get_history(alice, ticket.id)
    with pytest.raises(TicketPermissionError):
        await ticket_service.update_content(alice, ticket.id, title="Hijacked")


@pytest.mark.asyncio
async def test_content_update_records_changed_fields(ticket_service: TicketService, make_user):
    customer = await make_user()
    ticket = await ticket_service.create_ticket(customer, title="Old title", description="Body")

    updated = await ticket_service.update_content(customer, ticket.id, title="New title")

    assert updated.title == "New title"
    assert updated.description == "Body"
    assert updated.version == ticket.version + 1
    latest = (await ticket_service.get_history(customer, ticket.id))[0]
    assert latest.action is ActivityAction.UPDATED
    assert latest.changes == {"title": {"from": "Old title", "to": "New title"}}


@pytest.mark.asyncio
async def test_stale_expected_version_is_refused(ticket_service: TicketService, make_user):
    customer = await make_user()
    employee = await make_user(Role.EMPLOYEE)
    ticket = await ticket_service.create_ticket(customer, title="Bill", description="Too high")
    await ticket_service.update_content(customer, ticket.id, title="Edited", expected_version=ticket.version)

    with pytest.raises(StaleTicketVersionError):
        await ticket_service.change_status(
            employee, ticket.id, new_status=TicketStatus.IN_PROGRESS, expected_version=ticket.version
        )
    current = await ticket_service.get_ticket(employee, ticket.id)
    assert current.status is TicketStatus.UNSEEN


@pytest.mark.asyncio
async def test_delete_cascades_and_requires_elevated_role(
    ticket_service: TicketService, ticket_repository: TicketRepository, make_user
):
    customer = await make_user()
    employee = await make_user(Role.EMPLOYEE)
    manager = await make_user(Role.MANAGER)
    ticket = await ticket_service.create_ticket(customer, title="Bill", description="Too high")
    await ticket_service.change_status(employee, ticket.id, new_status=TicketStatus.IN_PROGRESS)
    await ticket_service.add_comment(employee, ticket.id, content="On it", is_internal=True)

    with pytest.raises(TicketPermissionError):
        await ticket_service.delete_ticket(employee, ticket.id)

    await ticket_service.delete_ticket(manager, ticket.id)

    assert await ticket_repository.get_ticket(ticket.id) is None
    assert await ticket_repository.list_activities(ticket.id) == []
    feed = await ticket_service.list_activity_feed(manager)
    assert all(entry.ticket_id != ticket.id for entry in feed.items)
    with pytest.raises(TicketNotFoundError):
        await ticket_service.delete_ticket(manager, ticket.id)


@pytest.mark.asyncio
async def test_assignment_validates_assignee(ticket_service: TicketService, make_user):
    customer = await make_user()
    manager = await make_user(Role.MANAGER)
    employee = await make_user(Role.EMPLOYEE)
    ticket = await ticket_service.create_ticket(customer, title="Bill", description="Too high")

    with pytest.raises(TicketPermissionError):
        await ticket_service.assign_ticket(customer, ticket.id, assignee_id=employee.id)
    with pytest.raises(InvalidAssigneeError):
        await ticket_service.assign_ticket(manager, ticket.id, assignee_id=customer.id)
    with pytest.raises(InvalidAssigneeError):
        await ticket_service.assign_ticket(manager, ticket.id, assignee_id=9999)

    assigned = await ticket_service.assign_ticket(manager, ticket.id, assignee_id=employee.id)
    assert assigned.assignee_id == employee.id
    assert assigned.status is TicketStatus.UNSEEN

    entry = (await ticket_service.get_history(manager, ticket.id))[0]
    assert entry.action is ActivityAction.ASSIGNED
    assert entry.changes["action"] == "assigned"


@pytest.mark.asyncio
async def test_comments_respect_internal_visibility(ticket_service: TicketService, make_user):
    customer = await make_user()
    employee = await make_user(Role.EMPLOYEE)
    ticket = await ticket_service.create_ticket(customer, title="Bill", description="Too high")

    await ticket_service.add_comment(customer, ticket.id, content="Any news?")
    await ticket_service.add_comment(employee, ticket.id, content="Check meter first", is_internal=True)
    with pytest.raises(TicketPermissionError):
        await ticket_service.add_comment(customer, ticket.id, content="sneaky", is_internal=True)

    assert [c.content for c in await ticket_service.list_comments(customer, ticket.id)] == ["Any news?"]
    assert len(await ticket_service.list_comments(employee, ticket.id)) == 2


@pytest.mark.asyncio
async def test_stats_are_scoped(ticket_service: TicketService, make_user):
    alice = await make_user()
    bob = await make_user()
    manager = await make_user(Role.MANAGER)
    employee = await make_user(Role.EMPLOYEE)
    first = await ticket_service.create_ticket(alice, title="A", description="x")
    await ticket_service.create_ticket(alice, title="B", description="x")
    await ticket_service.create_ticket(bob, title="C", description="x")
    await ticket_service.change_status(manager, first.id, new_status=TicketStatus.CLOSED)
    await ticket_service.assign_ticket(manager, first.id, assignee_id=employee.id)

    alice_stats = await ticket_service.get_stats(alice)
    assert alice_stats.as_dict() == {
        "unseen": 1,
        "in_progress": 0,
        "resolved": 0,
        "closed": 1,
        "rejected": 0,
        "total": 2,
    }
    assert (await ticket_service.get_stats(manager)).total == 3
    assert (await ticket_service.get_stats(manager, assignee_id=employee.id)).total == 1
    assert (await ticket_service.get_stats(alice, assignee_id=employee.id)).total == 2
    assert (await ticket_service.get_stats(manager, author_id=alice.id)).total == 2
    assert (await ticket_service.get_stats(alice, author_id=bob.id)).total == 2


@pytest.mark.asyncio
async def test_activity_feed_is_staff_only(ticket_service: TicketService, make_user):
    customer = await make_user()
    employee = await make_user(Role.EMPLOYEE)
    await ticket_service.create_ticket(customer, title="A", description="x")

    with pytest.raises(TicketPermissionError):
        await ticket_service.list_activity_feed(customer)

    feed = await ticket_service.list_activity_feed(
        employee, filters=ActivityFilters(action=ActivityAction.CREATED)
    )
    assert feed.total == 1


@pytest.mark.asyncio
async def test_audit_failure_does_not_fail_mutation(ticket_repository: TicketRepository, make_user):
    writer = AsyncMock()
    writer.add_activity = AsyncMock(side_effect=RuntimeError("audit store down"))
    service = TicketService(ticket_repository, audit_trail=AuditTrail(writer))
    customer = await make_user()
    employee = await make_user(Role.EMPLOYEE)

    ticket = await service.create_ticket(customer, title="A", description="x")
    moved = await service.change_status(employee, ticket.id, new_status=TicketStatus.IN_PROGRESS)

    assert moved.status is TicketStatus.IN_PROGRESS
    assert writer.add_activity.await_count == 2
    assert await ticket_repository.list_activities(ticket.id) == []


@pytest.mark.asyncio
async def test_ticket_number_collisions_are_retried(ticket_repository: TicketRepository, make_user):
    numbers = iter(["TK1", "TK1", "TK2"])
    service = TicketService(ticket_repository, number_factory=lambda: next(numbers))
    customer = await make_user()

    first = await service.create_ticket(customer, title="A", description="x")
    second = await service.create_ticket(customer, title="B", description="x")

    assert (first.ticket_number, second.ticket_number) == ("TK1", "TK2")


@pytest.mark.asyncio
async def test_ticket_number_collisions_give_up(ticket_repository: TicketRepository, make_user):
    service = TicketService(ticket_repository, number_factory=lambda: "TK1")
    customer = await make_user()
    await service.create_ticket(customer, title="A", description="x")

    with pytest.raises(DuplicateTicketNumberError):
        await service.create_ticket(customer, title="B", description="x")


@pytest.mark.asyncio
async def test_concurrent_status_changes_both_succeed(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'crm.db'}")
    try:
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        factory = async_sessionmaker(engine, expire_on_commit=False)
        users = UserRepository(factory)
        service = TicketService(TicketRepository(factory, engine=engine), users=users)
        customer = await users.create_user(phone="09350000001", role=Role.CLIENT)
        manager = await users.create_user(phone="09350000002", role=Role.MANAGER)
        ticket = await service.create_ticket(customer, title="A", description="x")

        results = await asyncio.gather(
            service.change_status(manager, ticket.id, new_status=TicketStatus.IN_PROGRESS),
            service.change_status(manager, ticket.id, new_status=TicketStatus.RESOLVED),
        )

        assert {result.status for result in results} == {TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED}
        final = await service.get_ticket(manager, ticket.id)
        assert final.version == 3
        history = await service.get_history(manager, ticket.id)
        assert len([entry for entry in history if entry.action is ActivityAction.STATUS_CHANGED]) == 2
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_internal_comment_entries_are_hidden_from_clients(ticket_service: TicketService, make_user):
    customer = await make_user()
    employee = await make_user(Role.EMPLOYEE)
    ticket = await ticket_service.create_ticket(customer, title="Bill", description="Too high")

    await ticket_service.add_comment(customer, ticket.id, content="Any news?")
    await ticket_service.add_comment(employee, ticket.id, content="Customer disputes reading", is_internal=True)

    customer_view = await ticket_service.get_history(customer, ticket.id)
    assert [entry.comment for entry in customer_view if entry.action is ActivityAction.COMMENT_ADDED] == [
        "Any news?"
    ]

    staff_view = await ticket_service.get_history(employee, ticket.id)
    comments = [entry.comment for entry in staff_view if entry.action is ActivityAction.COMMENT_ADDED]
    assert sorted(comments) == ["Any news?", "Customer disputes reading"]


@pytest.mark.asyncio
async def test_activity_stats_counts_actions_and_actors(ticket_service: TicketService, make_user):
    customer = await make_user()
    employee = await make_user(Role.EMPLOYEE, name="Sara")
    ticket = await ticket_service.create_ticket(customer, title="Bill", description="Too high")
    await ticket_service.change_status(employee, ticket.id, new_status=TicketStatus.IN_PROGRESS)
    await ticket_service.add_comment(employee, ticket.id, content="Checking")

    stats = await ticket_service.get_activity_stats(employee)

    assert stats.total == 3
    assert stats.recent == 3
    assert stats.by_action[ActivityAction.CREATED] == 1
    assert stats.by_action[ActivityAction.STATUS_CHANGED] == 1
    assert stats.by_action[ActivityAction.ASSIGNED] == 0
    top = stats.most_active[0]
    assert (top.actor_id, top.count, top.name, top.role) == (employee.id, 2, "Sara", "EMPLOYEE")
    assert stats.most_active[1].name == customer.phone

    with pytest.raises(TicketPermissionError):
        await ticket_service.get_activity_stats(customer)
