from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import Select, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ticketvault.core.clock import as_utc, isoformat, utc_now
from ticketvault.core.errors import DatabaseError
from ticketvault.domain.models import Ticket
from ticketvault.persistence.guards import tenant_predicate


DEFAULT_PAGE_SIZE = 20


@dataclass(frozen=True)
class ArchivedSearch:
    tenant_id: str
    query: str | None = None
    statuses: Sequence[str] = ()
    archived_from: datetime | None = None
    archived_to: datetime | None = None
    limit: int = DEFAULT_PAGE_SIZE
    offset: int = 0
    owner_ids: Sequence[str] | None = None


@dataclass(frozen=True)
class ArchivedTicket:
    ticket_id: str
    title: str
    status: str
    priority: str
    archived_at: datetime
    created_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticketId": self.ticket_id,
            "title": self.title,
            "status": self.status,
            "priority": self.priority,
            "archivedAt": isoformat(self.archived_at),
            "createdBy": self.created_by,
        }


@dataclass(frozen=True)
class ArchivedPage:
    tickets: list[ArchivedTicket] = field(default_factory=list)
    total: int = 0
    limit: int = DEFAULT_PAGE_SIZE
    offset: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tickets": [ticket.to_dict() for ticket in self.tickets],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }


@dataclass(frozen=True)
class ArchivalStats:
    total_archived: int = 0
    archived_this_month: int = 0
    archived_this_year: int = 0
    oldest_archived: datetime | None = None
    newest_archived: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalArchived": self.total_archived,
            "archivedThisMonth": self.archived_this_month,
            "archivedThisYear": self.archived_this_year,
            "oldestArchived": isoformat(self.oldest_archived),
            "newestArchived": isoformat(self.newest_archived),
        }


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _archived_filter(query: Select, tenant_id: str, owner_ids: Sequence[str] | None) -> Select:
    query = query.where(tenant_predicate(Ticket, tenant_id), Ticket.archived_at.is_not(None))
    if owner_ids is not None:
        query = query.where(Ticket.created_by.in_(list(owner_ids)))
    return query


async def search_archived_tickets(session: AsyncSession, search: ArchivedSearch) -> ArchivedPage:
    """Page through a tenant's archived tickets, newest archive first.

    ``query`` matches title or description case-insensitively; ``total`` counts
    every match regardless of the page window.
    """
    limit = max(1, search.limit)
    offset = max(0, search.offset)
    if search.owner_ids is not None and len(search.owner_ids) == 0:
        return ArchivedPage(limit=limit, offset=offset)

    conditions = []
    if search.query and search.query.strip():
        pattern = f"%{_escape_like(search.query.strip())}%"
        conditions.append(
            or_(Ticket.title.ilike(pattern, escape="\\"), Ticket.description.ilike(pattern, escape="\\"))
        )
    if search.statuses:
        conditions.append(Ticket.status.in_(list(search.statuses)))
    if search.archived_from is not None:
        conditions.append(Ticket.archived_at >= as_utc(search.archived_from))
    if search.archived_to is not None:
        conditions.append(Ticket.archived_at <= as_utc(search.archived_to))

    rows_query = _archived_filter(
        select(Ticket.id, Ticket.title, Ticket.status, Ticket.priority, Ticket.archived_at, Ticket.created_by),
        search.tenant_id,
        search.owner_ids,
    ).where(*conditions)
    count_query = _archived_filter(
        select(func.count()).select_from(Ticket), search.tenant_id, search.owner_ids
    ).where(*conditions)
    try:
        total = int(await session.scalar(count_query) or 0)
        result = await session.execute(
            rows_query.order_by(Ticket.archived_at.desc(), Ticket.id.asc()).limit(limit).offset(offset)
        )
    except SQLAlchemyError as exc:
        raise DatabaseError(f"Failed to search archived tickets: {exc}") from exc
    tickets = [
        ArchivedTicket(
            ticket_id=row.id,
            title=row.title,
            status=row.status,
            priority=row.priority,
            archived_at=as_utc(row.archived_at),
            created_by=row.created_by,
        )
        for row in result.all()
    ]
    return ArchivedPage(tickets=tickets, total=total, limit=limit, offset=offset)


async def get_archival_stats(
    session: AsyncSession,
    tenant_id: str,
    *,
    owner_ids: Sequence[str] | None = None,
    now: datetime | None = None,
) -> ArchivalStats:
    # Month and year windows are calendar boundaries in UTC.
    if owner_ids is not None and len(owner_ids) == 0:
        return ArchivalStats()
    resolved_now = as_utc(now) or utc_now()
    start_of_month = resolved_now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    start_of_year = start_of_month.replace(month=1)
    query = _archived_filter(
        select(
            func.count(),
            func.count().filter(Ticket.archived_at >= start_of_month),
            func.count().filter(Ticket.archived_at >= start_of_year),
            func.min(Ticket.archived_at),
            func.max(Ticket.archived_at),
        ).select_from(Ticket),
        tenant_id,
        owner_ids,
    )
    try:
        total, this_month, this_year, oldest, newest = (await session.execute(query)).one()
    except SQLAlchemyError as exc:
        raise DatabaseError(f"Failed to load archival stats: {exc}") from exc
    return ArchivalStats(
        total_archived=int(total or 0),
        archived_this_month=int(this_month or 0),
        archived_this_year=int(this_year or 0),
        oldest_archived=as_utc(oldest),
        newest_archived=as_utc(newest),
    )
