from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ticketvault.domain.models import TERMINAL_TICKET_STATUSES, Ticket
from ticketvault.persistence.guards import tenant_predicate


@dataclass(frozen=True)
class UsageSnapshot:
    # Point-in-time ticket counts; archived tickets are excluded from every quota count.
    active_count: int
    completed_count: int
    total_count: int
    archived_count: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "activeCount": self.active_count,
            "completedCount": self.completed_count,
            "totalCount": self.total_count,
            "archivedCount": self.archived_count,
        }


async def get_tenant_usage(session: AsyncSession, tenant_id: str) -> UsageSnapshot:
    # Aggregate in a single query so the snapshot is internally consistent.
    is_terminal = Ticket.status.in_(TERMINAL_TICKET_STATUSES)
    not_archived = Ticket.archived_at.is_(None)
    result = await session.execute(
        select(
            func.coalesce(func.sum(case((not_archived & ~is_terminal, 1), else_=0)), 0),
            func.coalesce(func.sum(case((not_archived & is_terminal, 1), else_=0)), 0),
            func.coalesce(func.sum(case((Ticket.archived_at.is_not(None), 1), else_=0)), 0),
        ).where(tenant_predicate(Ticket, tenant_id))
    )
    active, completed, archived = result.one()
    active = int(active)
    completed = int(completed)
    return UsageSnapshot(
        active_count=active,
        completed_count=completed,
        total_count=active + completed,
        archived_count=int(archived),
    )
