from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ticketvault.core.clock import as_utc, isoformat, utc_now
from ticketvault.domain.models import TERMINAL_TICKET_STATUSES, Ticket
from ticketvault.persistence.guards import tenant_predicate


DEFAULT_AGE_THRESHOLD_DAYS = 30
DEFAULT_MAX_RESULTS = 100


def completion_timestamp():
    # Closed beats resolved; tickets without either fall back to their last update.
    return func.coalesce(Ticket.closed_at, Ticket.resolved_at, Ticket.updated_at)


@dataclass(frozen=True)
class SelectionScope:
    tenant_id: str
    max_results: int = DEFAULT_MAX_RESULTS
    age_threshold_days: int = DEFAULT_AGE_THRESHOLD_DAYS
    owner_ids: Sequence[str] | None = None


@dataclass(frozen=True)
class ArchivableRecord:
    ticket_id: str
    tenant_id: str
    title: str
    status: str
    completed_at: datetime
    created_by: str | None = None

    def days_since_completion(self, now: datetime) -> int:
        return max(0, (now - self.completed_at).days)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticketId": self.ticket_id,
            "title": self.title,
            "status": self.status,
            "completedAt": isoformat(self.completed_at),
            "createdBy": self.created_by,
        }


async def select_archival_candidates(
    session: AsyncSession,
    scope: SelectionScope,
    *,
    now: datetime | None = None,
) -> list[ArchivableRecord]:
    """List terminal, unarchived tickets old enough to archive.

    Results are ordered oldest completion first with the ticket id as a
    tiebreaker, so capped runs always drain the oldest backlog.
    """
    if scope.max_results <= 0:
        return []
    if scope.owner_ids is not None and len(scope.owner_ids) == 0:
        return []
    resolved_now = now or utc_now()
    cutoff = resolved_now - timedelta(days=max(0, scope.age_threshold_days))
    completed_at = completion_timestamp().label("completed_at")
    query = (
        select(Ticket.id, Ticket.tenant_id, Ticket.title, Ticket.status, Ticket.created_by, completed_at)
        .where(
            tenant_predicate(Ticket, scope.tenant_id),
            Ticket.status.in_(TERMINAL_TICKET_STATUSES),
            Ticket.archived_at.is_(None),
            completion_timestamp() <= cutoff,
        )
        .order_by(completion_timestamp().asc(), Ticket.id.asc())
        .limit(scope.max_results)
    )
    if scope.owner_ids is not None:
        query = query.where(Ticket.created_by.in_(list(scope.owner_ids)))
    result = await session.execute(query)
    return [
        ArchivableRecord(
            ticket_id=row.id,
            tenant_id=row.tenant_id,
            title=row.title,
            status=row.status,
            completed_at=as_utc(row.completed_at),
            created_by=row.created_by,
        )
        for row in result.all()
    ]
