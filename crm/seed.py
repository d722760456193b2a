"""Load demo users and tickets through the service layer.

Kept apart from request handling so demo data never mixes with production
data-fetch paths. Run with ``python -m crm.seed``.
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from crm.core.config import get_settings
from crm.core.logging import configure_logging
from crm.main import _to_asyncpg_dsn
from crm.tickets.models import TicketPriority, TicketType
from crm.tickets.repository import TicketRepository
from crm.tickets.service import TicketService
from crm.tickets.state import TicketStatus
from crm.users.models import Role, User
from crm.users.repository import UserRepository

logger = logging.getLogger(__name__)

DEMO_USERS: tuple[tuple[str, Role, str], ...] = (
    ("09120000001", Role.ADMIN, "System Admin"),
    ("09120000002", Role.MANAGER, "Support Manager"),
    ("09120000003", Role.EMPLOYEE, "Field Technician"),
    ("09120000004", Role.CLIENT, "Demo Customer"),
)

DEMO_TICKETS: tuple[tuple[str, str, TicketType, TicketPriority], ...] = (
    ("Power outage on my street", "No electricity since this morning.", TicketType.COMPLAINT, TicketPriority.HIGH),
    ("Meter reading looks wrong", "This month's bill is double the usual.", TicketType.BILLING, TicketPriority.MEDIUM),
    ("New connection request", "Requesting a connection for a new building.", TicketType.CONNECTION, TicketPriority.LOW),
)


async def _ensure_user(repository: UserRepository, phone: str, role: Role, name: str) -> User:
    user = await repository.get_by_phone(phone)
    if user is None:
        user = await repository.create_user(phone=phone, role=role, name=name)
        logger.info("Created %s user %s (%s)", role.value, user.id, phone)
    elif user.role is not role:
        user = await repository.update_role(user.id, role) or user
    return user


async def seed(database_url: str, *, with_tickets: bool = True) -> None:
    engine = create_async_engine(_to_asyncpg_dsn(database_url), future=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    try:
        users = UserRepository(session_factory)
        tickets = TicketRepository(session_factory, engine=engine)
        await tickets.ensure_schema()
        service = TicketService(tickets, users=users)

        seeded = {role: await _ensure_user(users, phone, role, name) for phone, role, name in DEMO_USERS}
        if not with_tickets:
            return

        client = seeded[Role.CLIENT]
        employee = seeded[Role.EMPLOYEE]
        existing = await service.list_tickets(client)
        if existing.total:
            logger.info("Demo tickets already present, skipping")
            return

        created = [
            await service.create_ticket(client, title=title, description=description, type=kind, priority=priority)
            for title, description, kind, priority in DEMO_TICKETS
        ]
        await service.assign_ticket(seeded[Role.MANAGER], created[0].id, assignee_id=employee.id)
        await service.change_status(employee, created[0].id, new_status=TicketStatus.IN_PROGRESS)
        await service.change_status(
            employee, created[1].id, new_status=TicketStatus.RESOLVED, notes="Meter re-read, bill corrected"
        )
        logger.info("Seeded %s demo tickets", len(created))
    finally:
        await engine.dispose()


def _parse_args() -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Seed demo users and tickets")
    parser.add_argument("--database-url", default=settings.database_url, help="Database URL to seed")
    parser.add_argument("--users-only", dest="with_tickets", action="store_false", help="Do not create demo tickets")
    parser.set_defaults(with_tickets=True)
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    configure_logging(get_settings())
    asyncio.run(seed(args.database_url, with_tickets=args.with_tickets))


if __name__ == "__main__":
    main()
