from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any, Literal
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketvault.core.clock import isoformat, utc_now
from ticketvault.domain.actors import Actor
from ticketvault.domain.models import DataActivityLog, User
from ticketvault.persistence.db import SessionLocal
from ticketvault.services.audit import sanitize_metadata


logger = logging.getLogger(__name__)

ActivityKind = Literal["export", "import", "archival"]


@dataclass(frozen=True)
class ActivityEntry:
    run_id: str
    kind: str
    tenant_id: str | None
    actor_type: str
    actor_id: str | None
    created_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    actor_email: str | None = None
    actor_first_name: str | None = None
    actor_last_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        actor: dict[str, Any] | None = None
        if self.actor_email is not None:
            actor = {
                "email": self.actor_email,
                "firstName": self.actor_first_name,
                "lastName": self.actor_last_name,
            }
        return {
            "runId": self.run_id,
            "kind": self.kind,
            "tenantId": self.tenant_id,
            "actorType": self.actor_type,
            "actorId": self.actor_id,
            "actor": actor,
            "payload": self.payload,
            "createdAt": isoformat(self.created_at),
        }


async def _write_entry(session: AsyncSession, entry: DataActivityLog) -> bool:
    try:
        session.add(entry)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning(
            "activity_write_failed kind=%s run_id=%s tenant_id=%s",
            entry.kind,
            entry.run_id,
            entry.tenant_id,
            exc_info=exc,
        )
        return False
    return True


async def record_activity(
    *,
    kind: ActivityKind,
    tenant_id: str | None,
    actor: Actor,
    payload: dict[str, Any],
    run_id: str | None = None,
    session: AsyncSession | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> bool:
    """Append one ledger entry for an export, import or archival run.

    Ledger failures are logged and reported through the return value; they
    never fail the operation being recorded. The caller must have committed
    its own work before passing ``session``.
    """
    entry = DataActivityLog(
        tenant_id=tenant_id,
        actor_type=actor.actor_type,
        actor_id=actor.actor_id,
        run_id=run_id or uuid4().hex,
        kind=kind,
        payload_json=sanitize_metadata(payload),
        created_at=utc_now(),
    )
    if session is not None:
        return await _write_entry(session, entry)
    async with (session_factory or SessionLocal)() as ledger_session:
        return await _write_entry(ledger_session, entry)


async def list_activity(
    session: AsyncSession,
    *,
    tenant_id: str,
    kind: ActivityKind | None = None,
    limit: int = 10,
) -> list[ActivityEntry]:
    # Newest first; system entries have no actor row to join.
    query = (
        select(DataActivityLog, User.email, User.first_name, User.last_name)
        .outerjoin(User, User.id == DataActivityLog.actor_id)
        .where(DataActivityLog.tenant_id == tenant_id)
    )
    if kind is not None:
        query = query.where(DataActivityLog.kind == kind)
    query = query.order_by(DataActivityLog.created_at.desc(), DataActivityLog.id.desc()).limit(
        max(1, int(limit))
    )
    result = await session.execute(query)
    entries: list[ActivityEntry] = []
    for row, email, first_name, last_name in result.all():
        entries.append(
            ActivityEntry(
                run_id=row.run_id,
                kind=row.kind,
                tenant_id=row.tenant_id,
                actor_type=row.actor_type,
                actor_id=row.actor_id,
                created_at=row.created_at,
                payload=dict(row.payload_json or {}),
                actor_email=email,
                actor_first_name=first_name,
                actor_last_name=last_name,
            )
        )
    return entries
