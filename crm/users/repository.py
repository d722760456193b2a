from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from crm.db.models import UserTable, ensure_datetime, ensure_optional_datetime

from .models import Role, User


class UserRepository:
    """Persistence helper for the `users` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_user(self, user_id: int) -> User | None:
        async with self._session_factory() as session:
            row = await session.get(UserTable, user_id)
            return self._table_to_user(row) if row is not None else None

    async def get_by_phone(self, phone: str) -> User | None:
        async with self._session_factory() as session:
            result = await session.execute(select(UserTable).where(UserTable.phone == phone))
            row = result.scalars().first()
            return self._table_to_user(row) if row is not None else None

    async def create_user(self, *, phone: str, role: Role = Role.CLIENT, name: str | None = None) -> User:
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            async with session.begin():
                row = UserTable(phone=phone, name=name, role=role.value, created_at=now, updated_at=now)
                session.add(row)
                await session.flush()
            return self._table_to_user(row)

    async def record_login(self, user_id: int) -> User | None:
        async with self._session_factory() as session:
            row = await session.get(UserTable, user_id)
            if row is None:
                return None
            row.last_login_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(row)
            return self._table_to_user(row)

    async def update_role(self, user_id: int, role: Role) -> User | None:
        async with self._session_factory() as session:
            row = await session.get(UserTable, user_id)
            if row is None:
                return None
            row.role = role.value
            row.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(row)
            return self._table_to_user(row)

    async def list_users(
        self, *, role: Role | None = None, page: int = 1, limit: int = 20
    ) -> tuple[Sequence[User], int]:
        statement = select(UserTable)
        count_statement = select(func.count()).select_from(UserTable)
        if role is not None:
            statement = statement.where(UserTable.role == role.value)
            count_statement = count_statement.where(UserTable.role == role.value)
        statement = statement.order_by(UserTable.id.asc()).offset((page - 1) * limit).limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(statement)
            total = (await session.execute(count_statement)).scalar_one()
            return [self._table_to_user(row) for row in result.scalars().all()], int(total)

    @staticmethod
    def _table_to_user(row: UserTable) -> User:
        return User(
            id=int(row.id),
            phone=row.phone,
            name=row.name,
            role=Role.parse(row.role),
            is_active=bool(row.is_active),
            last_login_at=ensure_optional_datetime(row.last_login_at),
            created_at=ensure_datetime(row.created_at),
            updated_at=ensure_datetime(row.updated_at),
        )
