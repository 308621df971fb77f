from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ticketvault.core.clock import utc_now
from ticketvault.domain.actors import Actor
from ticketvault.domain.models import TERMINAL_TICKET_STATUSES, Ticket
from ticketvault.services.audit import add_ticket_history


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArchiveOutcome:
    ticket_id: str
    success: bool
    error: str | None = None
    # One of not_found, invalid_status, not_archived, storage_error.
    error_code: str | None = None
    already_archived: bool = False


@dataclass
class BulkArchiveResult:
    successful: list[str] = field(default_factory=list)
    failed: list[dict[str, str]] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return len(self.successful) + len(self.failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "successful": list(self.successful),
            "failed": list(self.failed),
            "totalProcessed": self.total_processed,
            "archivedCount": len(self.successful),
        }


async def _load_ticket(session: AsyncSession, ticket_id: str, tenant_id: str | None) -> Ticket | None:
    ticket = await session.get(Ticket, ticket_id)
    # Tickets from another tenant are reported exactly like missing ones.
    if ticket is None or (tenant_id is not None and ticket.tenant_id != tenant_id):
        return None
    return ticket


async def archive_ticket(
    session: AsyncSession,
    ticket_id: str,
    actor: Actor,
    *,
    tenant_id: str | None = None,
) -> ArchiveOutcome:
    """Mark one terminal ticket archived and append its history row.

    Never raises for per-ticket problems; they come back as ``error`` strings.
    Archiving an already archived ticket succeeds without writing anything.
    """
    try:
        ticket = await _load_ticket(session, ticket_id, tenant_id)
        if ticket is None:
            return ArchiveOutcome(
                ticket_id=ticket_id, success=False, error=f"Ticket {ticket_id} not found", error_code="not_found"
            )
        if ticket.archived_at is not None:
            return ArchiveOutcome(ticket_id=ticket_id, success=True, already_archived=True)
        if ticket.status not in TERMINAL_TICKET_STATUSES:
            return ArchiveOutcome(
                ticket_id=ticket_id,
                success=False,
                error=f"Ticket {ticket_id} cannot be archived from status {ticket.status}",
                error_code="invalid_status",
            )
        ticket.archived_at = utc_now()
        add_ticket_history(
            session,
            ticket_id=ticket.id,
            tenant_id=ticket.tenant_id,
            actor=actor,
            action="archived",
            metadata={"status": ticket.status},
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("ticket_archive_failed ticket_id=%s actor_type=%s", ticket_id, actor.actor_type, exc_info=exc)
        return ArchiveOutcome(
            ticket_id=ticket_id,
            success=False,
            error=f"Failed to archive ticket {ticket_id}: {exc}",
            error_code="storage_error",
        )
    logger.info(
        "ticket_archived ticket_id=%s tenant_id=%s actor_type=%s actor_id=%s",
        ticket_id,
        ticket.tenant_id,
        actor.actor_type,
        actor.actor_id,
    )
    return ArchiveOutcome(ticket_id=ticket_id, success=True)


async def restore_ticket(
    session: AsyncSession,
    ticket_id: str,
    actor: Actor,
    *,
    tenant_id: str | None = None,
) -> ArchiveOutcome:
    # Restoring puts the ticket back into quota-counted totals.
    try:
        ticket = await _load_ticket(session, ticket_id, tenant_id)
        if ticket is None:
            return ArchiveOutcome(
                ticket_id=ticket_id, success=False, error=f"Ticket {ticket_id} not found", error_code="not_found"
            )
        if ticket.archived_at is None:
            return ArchiveOutcome(
                ticket_id=ticket_id, success=False, error=f"Ticket {ticket_id} is not archived", error_code="not_archived"
            )
        ticket.archived_at = None
        add_ticket_history(
            session,
            ticket_id=ticket.id,
            tenant_id=ticket.tenant_id,
            actor=actor,
            action="restored",
            metadata={"status": ticket.status},
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("ticket_restore_failed ticket_id=%s", ticket_id, exc_info=exc)
        return ArchiveOutcome(
            ticket_id=ticket_id,
            success=False,
            error=f"Failed to restore ticket {ticket_id}: {exc}",
            error_code="storage_error",
        )
    logger.info("ticket_restored ticket_id=%s actor_id=%s", ticket_id, actor.actor_id)
    return ArchiveOutcome(ticket_id=ticket_id, success=True)


async def bulk_archive_tickets(
    session: AsyncSession,
    ticket_ids: Sequence[str],
    actor: Actor,
    *,
    tenant_id: str | None = None,
) -> BulkArchiveResult:
    result = BulkArchiveResult()
    # Preserve caller order but archive each id only once.
    for ticket_id in dict.fromkeys(ticket_ids):
        outcome = await archive_ticket(session, ticket_id, actor, tenant_id=tenant_id)
        if outcome.success:
            result.successful.append(ticket_id)
        else:
            result.failed.append({"ticketId": ticket_id, "error": outcome.error or "unknown error"})
    logger.info(
        "bulk_archive_completed processed=%s archived=%s failed=%s",
        result.total_processed,
        len(result.successful),
        len(result.failed),
    )
    return result
