from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from crm.dependencies import auth as auth_deps
from crm.dependencies import tickets as ticket_deps
from crm.main import create_app
from crm.tickets.errors import (
    StaleTicketVersionError,
    TicketNotFoundError,
    TicketPermissionError,
    TransitionNotAllowedError,
)
from crm.tickets.models import (
    ActivityAction,
    ActivityStats,
    ActorActivity,
    TicketActivity,
    TicketPage,
    TicketStats,
)
from crm.tickets.state import TicketStatus
from crm.users.models import Role

from factories import build_ticket, build_user


@pytest.fixture
def ticket_client():
    app = create_app()
    service = AsyncMock()
    state = {"user": build_user(Role.EMPLOYEE, user_id=2)}

    async def override_service():
        return service

    app.dependency_overrides[ticket_deps.get_ticket_service] = override_service
    app.dependency_overrides[auth_deps.get_current_user] = lambda: state["user"]

    client = TestClient(app)
    try:
        yield client, service, state
    finally:
        app.dependency_overrides.clear()


def test_create_ticket_returns_envelope(ticket_client):
    client, service, _ = ticket_client
    ticket = build_ticket(ticket_id=4)
    service.create_ticket = AsyncMock(return_value=ticket)

    response = client.post(
        "/api/tickets",
        json={"title": "No power", "description": "Since 8am", "priority": "HIGH", "meter_number": "M-1"},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Ticket created successfully"
    assert body["data"]["id"] == 4
    assert body["data"]["status"] == "unseen"
    kwargs = service.create_ticket.await_args.kwargs
    assert kwargs["priority"].value == "HIGH"
    assert kwargs["customer"]["meter_number"] == "M-1"


def test_create_ticket_validation_error_is_400(ticket_client):
    client, _, _ = ticket_client

    response = client.post("/api/tickets", json={"title": ""})

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "Validation failed"
    assert isinstance(body["error"], list)


def test_list_tickets_returns_pagination(ticket_client):
    client, service, _ = ticket_client
    service.list_tickets = AsyncMock(
        return_value=TicketPage(items=[build_ticket(status=TicketStatus.RESOLVED)], total=11, page=2, limit=5)
    )

    response = client.get(
        "/api/tickets", params={"status": "resolved", "page": 2, "limit": 5, "sort_by": "title", "sort_order": "asc"}
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["tickets"][0]["status"] == "resolved"
    assert data["pagination"] == {
        "page": 2,
        "limit": 5,
        "total": 11,
        "totalPages": 3,
        "hasNext": True,
        "hasPrev": True,
    }
    kwargs = service.list_tickets.await_args.kwargs
    assert kwargs["filters"].status is TicketStatus.RESOLVED
    assert kwargs["page"].sort_by == "title"


def test_list_tickets_clamps_limit(ticket_client):
    client, service, _ = ticket_client
    service.list_tickets = AsyncMock(return_value=TicketPage(items=[], total=0, page=1, limit=100))

    client.get("/api/tickets", params={"limit": 500})

    assert service.list_tickets.await_args.kwargs["page"].limit == 100


def test_list_tickets_rejects_unknown_sort_field(ticket_client):
    client, _, _ = ticket_client
    assert client.get("/api/tickets", params={"sort_by": "priority"}).status_code == 400


def test_get_ticket_not_found(ticket_client):
    client, service, _ = ticket_client
    service.get_ticket = AsyncMock(side_effect=TicketNotFoundError("Ticket 9 not found or access denied"))

    response = client.get("/api/tickets/9")

    assert response.status_code == 404
    assert response.json() == {"success": False, "message": "Ticket 9 not found or access denied"}


def test_status_change_denied_exposes_allowed_set(ticket_client):
    client, service, _ = ticket_client
    service.change_status = AsyncMock(
        side_effect=TransitionNotAllowedError("in_progress", "closed", ["resolved"])
    )

    response = client.put("/api/tickets/1/status", json={"status": "closed"})

    assert response.status_code == 403
    body = response.json()
    assert body["success"] is False
    assert body["data"] == {"current_status": "in_progress", "available_transitions": ["resolved"]}


def test_status_change_with_unknown_status_is_400(ticket_client):
    client, service, _ = ticket_client

    response = client.put("/api/tickets/1/status", json={"status": "archived"})

    assert response.status_code == 400
    assert "Valid statuses" in response.json()["message"]
    service.change_status.assert_not_called()


def test_status_change_accepts_uppercase_and_version(ticket_client):
    client, service, _ = ticket_client
    service.change_status = AsyncMock(return_value=build_ticket(status=TicketStatus.IN_PROGRESS, version=3))

    response = client.put(
        "/api/tickets/1/status", json={"status": "IN_PROGRESS", "notes": "Crew sent", "expected_version": 2}
    )

    assert response.status_code == 200
    assert response.json()["data"]["version"] == 3
    kwargs = service.change_status.await_args.kwargs
    assert kwargs == {"new_status": TicketStatus.IN_PROGRESS, "notes": "Crew sent", "expected_version": 2}


def test_stale_version_is_409(ticket_client):
    client, service, _ = ticket_client
    service.update_content = AsyncMock(side_effect=StaleTicketVersionError(1, 1))

    response = client.put("/api/tickets/1", json={"title": "New", "expected_version": 1})

    assert response.status_code == 409
    assert response.json()["data"] == {"expected_version": 1}


def test_update_requires_fields(ticket_client):
    client, _, _ = ticket_client
    assert client.put("/api/tickets/1", json={}).status_code == 400


def test_update_by_non_owner_is_403(ticket_client):
    client, service, state = ticket_client
    state["user"] = build_user(Role.CLIENT, user_id=7)
    service.update_content = AsyncMock(side_effect=TicketPermissionError("You can only update your own tickets"))

    response = client.put("/api/tickets/1", json={"title": "Mine now"})

    assert response.status_code == 403


def test_delete_requires_elevated_role(ticket_client):
    client, service, state = ticket_client

    assert client.delete("/api/tickets/1").status_code == 403
    service.delete_ticket.assert_not_called()

    state["user"] = build_user(Role.ADMIN, user_id=1)
    response = client.delete("/api/tickets/1")
    assert response.status_code == 200
    assert response.json()["message"] == "Ticket deleted successfully"


def test_assign_requires_staff(ticket_client):
    client, service, state = ticket_client
    state["user"] = build_user(Role.CLIENT, user_id=7)

    assert client.put("/api/tickets/1/assign", json={"assignee_id": 2}).status_code == 403
    service.assign_ticket.assert_not_called()


def test_transitions_endpoint(ticket_client):
    client, service, _ = ticket_client
    service.available_transitions = AsyncMock(
        return_value=(build_ticket(), frozenset({TicketStatus.RESOLVED, TicketStatus.IN_PROGRESS}))
    )

    response = client.get("/api/tickets/1/transitions")

    assert response.json()["data"] == {
        "ticket_id": 1,
        "current_status": "unseen",
        "available_transitions": ["in_progress", "resolved"],
    }


def test_stats_endpoint(ticket_client):
    client, service, _ = ticket_client
    service.get_stats = AsyncMock(return_value=TicketStats.from_counts({"unseen": 2, "closed": 1}))

    response = client.get("/api/tickets/stats", params={"author_id": 5, "assignee_id": 3})

    assert response.status_code == 200
    assert response.json()["data"]["total"] == 3
    assert service.get_stats.await_args.kwargs == {"author_id": 5, "assignee_id": 3}


def test_history_endpoint(ticket_client):
    client, service, _ = ticket_client
    entry = TicketActivity(
        id=1,
        ticket_id=1,
        action=ActivityAction.STATUS_CHANGED,
        actor_id=2,
        actor_role="EMPLOYEE",
        before={"status": "unseen"},
        after={"status": "in_progress"},
        changes={"action": "status_changed"},
        created_at=datetime.now(timezone.utc),
    )
    service.get_history = AsyncMock(return_value=[entry])

    response = client.get("/api/tickets/1/history")

    assert response.json()["data"][0]["after"] == {"status": "in_progress"}


def test_missing_service_returns_503():
    app = create_app()
    app.dependency_overrides[auth_deps.get_current_user] = lambda: build_user(Role.ADMIN)
    client = TestClient(app)

    response = client.get("/api/tickets")

    assert response.status_code == 503
    assert response.json()["success"] is False


def test_missing_token_is_401():
    app = create_app()
    app.state.auth_service = AsyncMock()
    app.state.ticket_service = AsyncMock()
    client = TestClient(app)

    response = client.get("/api/tickets")

    assert response.status_code == 401
    assert response.json() == {"success": False, "message": "Access token required"}


def test_unknown_route_uses_envelope():
    client = TestClient(create_app())
    response = client.get("/api/nope")
    assert response.status_code == 404
    assert response.json()["success"] is False


def test_activity_stats_endpoint(ticket_client):
    client, service, _ = ticket_client
    service.get_activity_stats = AsyncMock(
        return_value=ActivityStats(
            total=12,
            recent=4,
            by_action={ActivityAction.CREATED: 3, ActivityAction.UPDATED: 1},
            most_active=[ActorActivity(actor_id=2, count=4, name="Sara", role="EMPLOYEE")],
        )
    )

    response = client.get("/api/history/stats", params={"days": 7})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total_activities"] == 12
    assert data["recent_activities"] == 4
    assert data["activities_by_action"] == [
        {"action": "created", "count": 3},
        {"action": "updated", "count": 1},
    ]
    assert data["most_active_users"] == [{"user_id": 2, "name": "Sara", "role": "EMPLOYEE", "activity_count": 4}]
    assert service.get_activity_stats.await_args.kwargs == {"days": 7}


def test_activity_stats_requires_staff(ticket_client):
    client, service, state = ticket_client
    state["user"] = build_user(Role.CLIENT, user_id=9)

    response = client.get("/api/history/stats")

    assert response.status_code == 403
    service.get_activity_stats.assert_not_awaited()
