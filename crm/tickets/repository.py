from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from sqlalchemy import delete, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from crm.db.models import (
    TicketActivityTable,
    TicketCommentTable,
    TicketTable,
    ensure_datetime,
    ensure_optional_datetime,
)

from .errors import DuplicateTicketNumberError, StaleTicketVersionError
from .models import (
    ActivityAction,
    ActivityDraft,
    ActivityFilters,
    ActivityStats,
    ActorActivity,
    PageRequest,
    Ticket,
    TicketActivity,
    TicketComment,
    TicketFilters,
    TicketPriority,
    TicketType,
)
from .state import TicketStatus

_SORT_COLUMNS = {
    "created_at": TicketTable.created_at,
    "updated_at": TicketTable.updated_at,
    "title": TicketTable.title,
    "status": TicketTable.status,
}


class TicketRepository:
    """Persistence helper wrapping `tickets`, `ticket_comments` and `ticket_activities`."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine: AsyncEngine | None = engine

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        async with self._engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)

    async def create_ticket(self, values: Mapping[str, Any]) -> Ticket:
        now = datetime.now(timezone.utc)
        row = TicketTable(**{"created_at": now, "updated_at": now, "version": 1, **values})
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(row)
                    await session.flush()
                return self._table_to_ticket(row)
        except IntegrityError as exc:
            raise DuplicateTicketNumberError(str(values.get("ticket_number"))) from exc

    async def get_ticket(self, ticket_id: int) -> Ticket | None:
        async with self._session_factory() as session:
            row = await session.get(TicketTable, ticket_id)
            return self._table_to_ticket(row) if row is not None else None

    async def list_tickets(self, filters: TicketFilters, page: PageRequest) -> tuple[Sequence[Ticket], int]:
        conditions = self._ticket_conditions(filters)
        sort_column = _SORT_COLUMNS.get(page.sort_by, TicketTable.created_at)
        ordering = sort_column.asc() if page.sort_order == "asc" else sort_column.desc()
        tiebreak = TicketTable.id.asc() if page.sort_order == "asc" else TicketTable.id.desc()

        statement = (
            select(TicketTable).where(*conditions).order_by(ordering, tiebreak).offset(page.offset).limit(page.limit)
        )
        count_statement = select(func.count()).select_from(TicketTable).where(*conditions)

        async with self._session_factory() as session:
            result = await session.execute(statement)
            total = (await session.execute(count_statement)).scalar_one()
            return [self._table_to_ticket(row) for row in result.scalars().all()], int(total)

    async def count_by_status(
        self, *, author_id: int | None = None, assignee_id: int | None = None
    ) -> dict[str, int]:
        conditions = self._ticket_conditions(TicketFilters(author_id=author_id, assignee_id=assignee_id))
        statement = (
            select(TicketTable.status, func.count()).where(*conditions).group_by(TicketTable.status)
        )
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return {str(status): int(count) for status, count in result.all()}

    async def update_ticket(
        self,
        ticket_id: int,
        values: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> Ticket | None:
        """Apply ``values`` and bump the version.

        With ``expected_version`` the write only succeeds against that exact
        version; otherwise the last writer wins.
        """

        statement = (
            update(TicketTable)
            .where(TicketTable.id == ticket_id)
            .values(**values, version=TicketTable.version + 1, updated_at=datetime.now(timezone.utc))
        )
        if expected_version is not None:
            statement = statement.where(TicketTable.version == expected_version)

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(statement.execution_options(synchronize_session=False))
                if result.rowcount == 0:
                    exists = await session.get(TicketTable, ticket_id)
                    if exists is None:
                        return None
                    raise StaleTicketVersionError(ticket_id, expected_version or 0)
                row = await session.get(TicketTable, ticket_id, populate_existing=True)
            return self._table_to_ticket(row) if row is not None else None

    async def delete_ticket(self, ticket_id: int) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(TicketTable, ticket_id)
                if row is None:
                    return False
                await session.execute(delete(TicketActivityTable).where(TicketActivityTable.ticket_id == ticket_id))
                await session.execute(delete(TicketCommentTable).where(TicketCommentTable.ticket_id == ticket_id))
                await session.delete(row)
            return True

    async def add_activity(self, draft: ActivityDraft) -> TicketActivity:
        row = TicketActivityTable(
            ticket_id=draft.ticket_id,
            action=draft.action.value,
            actor_id=draft.actor_id,
            actor_role=draft.actor_role,
            before=dict(draft.before),
            after=dict(draft.after),
            changes=dict(draft.changes),
            comment=draft.comment,
            created_at=datetime.now(timezone.utc),
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(row)
                await session.flush()
            return self._table_to_activity(row)

    async def list_activities(self, ticket_id: int) -> Sequence[TicketActivity]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TicketActivityTable)
                .where(TicketActivityTable.ticket_id == ticket_id)
                .order_by(TicketActivityTable.created_at.desc(), TicketActivityTable.id.desc())
            )
            return [self._table_to_activity(row) for row in result.scalars().all()]

    async def list_activity_feed(
        self, filters: ActivityFilters, *, page: int, limit: int
    ) -> tuple[Sequence[TicketActivity], int]:
        conditions: list[Any] = []
        if filters.action is not None:
            conditions.append(TicketActivityTable.action == filters.action.value)
        if filters.actor_id is not None:
            conditions.append(TicketActivityTable.actor_id == filters.actor_id)
        if filters.start_date is not None:
            conditions.append(TicketActivityTable.created_at >= _as_utc(filters.start_date))
        if filters.end_date is not None:
            conditions.append(TicketActivityTable.created_at <= _as_utc(filters.end_date))
        if filters.assignee_id is not None:
            assigned = select(TicketTable.id).where(TicketTable.assignee_id == filters.assignee_id)
            conditions.append(TicketActivityTable.ticket_id.in_(assigned))

        statement = (
            select(TicketActivityTable)
            .where(*conditions)
            .order_by(TicketActivityTable.created_at.desc(), TicketActivityTable.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        count_statement = select(func.count()).select_from(TicketActivityTable).where(*conditions)

        async with self._session_factory() as session:
            result = await session.execute(statement)
            total = (await session.execute(count_statement)).scalar_one()
            return [self._table_to_activity(row) for row in result.scalars().all()], int(total)

    async def activity_stats(self, *, since: datetime, top: int = 10) -> ActivityStats:
        """Totals plus per-action and per-actor counts for activities newer than ``since``."""

        recent = TicketActivityTable.created_at >= _as_utc(since)
        activity_count = func.count(TicketActivityTable.id).label("activity_count")
        by_action_statement = (
            select(TicketActivityTable.action, func.count()).where(recent).group_by(TicketActivityTable.action)
        )
        actors_statement = (
            select(TicketActivityTable.actor_id, activity_count)
            .where(recent)
            .group_by(TicketActivityTable.actor_id)
            .order_by(activity_count.desc(), TicketActivityTable.actor_id.asc())
            .limit(top)
        )

        async with self._session_factory() as session:
            total = (await session.execute(select(func.count()).select_from(TicketActivityTable))).scalar_one()
            recent_total = (
                await session.execute(select(func.count()).select_from(TicketActivityTable).where(recent))
            ).scalar_one()
            counts = {str(action): int(count) for action, count in (await session.execute(by_action_statement)).all()}
            actors = (await session.execute(actors_statement)).all()

        return ActivityStats(
            total=int(total),
            recent=int(recent_total),
            by_action={action: counts.get(action.value, 0) for action in ActivityAction},
            most_active=[ActorActivity(actor_id=int(actor_id), count=int(count)) for actor_id, count in actors],
        )

    async def add_comment(
        self, *, ticket_id: int, author_id: int, content: str, is_internal: bool
    ) -> TicketComment:
        row = TicketCommentTable(
            ticket_id=ticket_id,
            author_id=author_id,
            content=content,
            is_internal=is_internal,
            created_at=datetime.now(timezone.utc),
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(row)
                await session.flush()
            return self._table_to_comment(row)

    async def list_comments(self, ticket_id: int, *, include_internal: bool) -> Sequence[TicketComment]:
        statement = select(TicketCommentTable).where(TicketCommentTable.ticket_id == ticket_id)
        if not include_internal:
            statement = statement.where(TicketCommentTable.is_internal.is_(False))
        statement = statement.order_by(TicketCommentTable.created_at.asc(), TicketCommentTable.id.asc())
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return [self._table_to_comment(row) for row in result.scalars().all()]

    @staticmethod
    def _ticket_conditions(filters: TicketFilters) -> list[Any]:
        conditions: list[Any] = []
        if filters.status is not None:
            conditions.append(TicketTable.status == filters.status.value)
        if filters.priority is not None:
            conditions.append(TicketTable.priority == filters.priority.value)
        if filters.type is not None:
            conditions.append(TicketTable.type == filters.type.value)
        if filters.author_id is not None:
            conditions.append(TicketTable.author_id == filters.author_id)
        if filters.assignee_id is not None:
            conditions.append(TicketTable.assignee_id == filters.assignee_id)
        if filters.search:
            pattern = f"%{_escape_like(filters.search)}%"
            searchable = (
                TicketTable.title,
                TicketTable.description,
                TicketTable.ticket_number,
                TicketTable.customer_name,
                TicketTable.customer_phone,
            )
            conditions.append(or_(*(column.ilike(pattern, escape="\\") for column in searchable)))
        if filters.date_from is not None:
            conditions.append(TicketTable.created_at >= _as_utc(filters.date_from))
        if filters.date_to is not None:
            conditions.append(TicketTable.created_at <= _as_utc(filters.date_to))
        return conditions

    @staticmethod
    def _table_to_ticket(row: TicketTable) -> Ticket:
        return Ticket(
            id=int(row.id),
            ticket_number=row.ticket_number,
            title=row.title,
            description=row.description,
            status=TicketStatus.parse(row.status),
            priority=TicketPriority(row.priority),
            type=TicketType(row.type),
            author_id=int(row.author_id),
            assignee_id=row.assignee_id,
            version=int(row.version),
            customer_name=row.customer_name,
            customer_phone=row.customer_phone,
            customer_email=row.customer_email,
            customer_address=row.customer_address,
            customer_area=row.customer_area,
            meter_number=row.meter_number,
            account_number=row.account_number,
            resolution=row.resolution,
            resolved_at=ensure_optional_datetime(row.resolved_at),
            resolved_by_id=row.resolved_by_id,
            first_response_at=ensure_optional_datetime(row.first_response_at),
            created_at=ensure_datetime(row.created_at),
            updated_at=ensure_datetime(row.updated_at),
        )

    @staticmethod
    def _table_to_activity(row: TicketActivityTable) -> TicketActivity:
        return TicketActivity(
            id=int(row.id),
            ticket_id=int(row.ticket_id),
            action=ActivityAction(row.action),
            actor_id=int(row.actor_id),
            actor_role=row.actor_role,
            before=dict(row.before or {}),
            after=dict(row.after or {}),
            changes=dict(row.changes or {}),
            comment=row.comment,
            created_at=ensure_datetime(row.created_at),
        )

    @staticmethod
    def _table_to_comment(row: TicketCommentTable) -> TicketComment:
        return TicketComment(
            id=int(row.id),
            ticket_id=int(row.ticket_id),
            author_id=int(row.author_id),
            content=row.content,
            is_internal=bool(row.is_internal),
            created_at=ensure_datetime(row.created_at),
        )


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
