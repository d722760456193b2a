from __future__ import annotations

from collections.abc import Awaitable, Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from crm.tickets.repository import TicketRepository
from crm.tickets.service import TicketService
from crm.users.models import Role, User
from crm.users.repository import UserRepository


@pytest_asyncio.fixture
async def engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def user_repository(session_factory: async_sessionmaker) -> UserRepository:
    return UserRepository(session_factory)


@pytest.fixture
def ticket_repository(session_factory: async_sessionmaker, engine: AsyncEngine) -> TicketRepository:
    return TicketRepository(session_factory, engine=engine)


@pytest.fixture
def ticket_service(ticket_repository: TicketRepository, user_repository: UserRepository) -> TicketService:
    return TicketService(ticket_repository, users=user_repository)


@pytest.fixture
def make_user(user_repository: UserRepository) -> Callable[..., Awaitable[User]]:
    counter = {"next": 1}

    async def factory(role: Role = Role.CLIENT, *, name: str | None = None) -> User:
        phone = f"0935{counter['next']:07d}"
        counter["next"] += 1
        return await user_repository.create_user(phone=phone, role=role, name=name)

    return factory
