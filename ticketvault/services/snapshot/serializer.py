from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
import logging
from typing import Any, Iterable, Sequence
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ticketvault.core.clock import isoformat, utc_now
from ticketvault.core.errors import SnapshotExportError
from ticketvault.domain.actors import Actor
from ticketvault.domain.models import CustomField, FileAttachment, Ticket, TicketNote, User
from ticketvault.persistence.guards import tenant_predicate
from ticketvault.services.tenancy import ensure_tenant_access, load_tenant_members


logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT_VERSION = "1"
# Bound IN-lists when loading child rows for large tenants.
_CHUNK_SIZE = 500


@dataclass(frozen=True)
class ExportOptions:
    include_users: bool = True
    include_tickets: bool = True
    include_attachments: bool = True
    include_custom_fields: bool = True
    date_from: datetime | None = None
    date_to: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "includeUsers": self.include_users,
            "includeTickets": self.include_tickets,
            "includeAttachments": self.include_attachments,
            "includeCustomFields": self.include_custom_fields,
            "dateFrom": isoformat(self.date_from),
            "dateTo": isoformat(self.date_to),
        }


@dataclass(frozen=True)
class ExportSnapshotDocument:
    export_id: str
    header: dict[str, Any]
    data: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    def counts(self) -> dict[str, int]:
        tickets = self.data.get("tickets", [])
        return {
            "users": len(self.data.get("users", [])),
            "tickets": len(tickets),
            "notes": sum(len(ticket.get("notes", [])) for ticket in tickets),
            "customFields": len(self.data.get("customFields", [])),
            "attachments": len(self.data.get("attachments", [])),
        }

    def to_dict(self) -> dict[str, Any]:
        return {"exportInfo": dict(self.header), "data": {key: list(value) for key, value in self.data.items()}}


class _UserRefs:
    # Resolve internal user ids to portable email references, members only.
    def __init__(self, members: Iterable[User]) -> None:
        self._by_id = {user.id: user for user in members}

    def ref(self, user_id: str | None) -> dict[str, Any] | None:
        user = self._by_id.get(user_id) if user_id else None
        if user is None:
            return None
        return {"email": user.email, "firstName": user.first_name, "lastName": user.last_name}


def _chunks(values: Sequence[str]) -> Iterable[Sequence[str]]:
    for start in range(0, len(values), _CHUNK_SIZE):
        yield values[start : start + _CHUNK_SIZE]


def _serialize_user(user: User, tenant_role: str) -> dict[str, Any]:
    return {
        "email": user.email,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "phone": user.phone,
        "role": user.role,
        "tenantRole": tenant_role,
        "isActive": user.is_active,
        "emailVerified": user.email_verified,
        "preferences": user.preferences or {},
        "createdAt": isoformat(user.created_at),
        "updatedAt": isoformat(user.updated_at),
    }


def _serialize_custom_field(row: CustomField) -> dict[str, Any]:
    return {
        "name": row.name,
        "fieldType": row.field_type,
        "options": row.options,
        "isRequired": row.is_required,
        "isActive": row.is_active,
        "displayOrder": row.display_order,
        "createdAt": isoformat(row.created_at),
    }


async def _load_tickets(session: AsyncSession, tenant_id: str, options: ExportOptions) -> list[Ticket]:
    query = select(Ticket).where(tenant_predicate(Ticket, tenant_id))
    if options.date_from is not None:
        query = query.where(Ticket.created_at >= options.date_from)
    if options.date_to is not None:
        query = query.where(Ticket.created_at <= options.date_to)
    result = await session.execute(query.order_by(Ticket.created_at.asc(), Ticket.id.asc()))
    return list(result.scalars().all())


async def _load_notes(session: AsyncSession, ticket_ids: Sequence[str]) -> dict[str, list[TicketNote]]:
    notes: dict[str, list[TicketNote]] = {ticket_id: [] for ticket_id in ticket_ids}
    for chunk in _chunks(ticket_ids):
        result = await session.execute(
            select(TicketNote)
            .where(TicketNote.ticket_id.in_(list(chunk)))
            .order_by(TicketNote.created_at.asc(), TicketNote.id.asc())
        )
        for note in result.scalars().all():
            notes[note.ticket_id].append(note)
    return notes


async def _load_attachments(session: AsyncSession, ticket_ids: Sequence[str]) -> list[FileAttachment]:
    rows: list[FileAttachment] = []
    for chunk in _chunks(ticket_ids):
        result = await session.execute(
            select(FileAttachment)
            .where(FileAttachment.ticket_id.in_(list(chunk)))
            .order_by(FileAttachment.uploaded_at.asc(), FileAttachment.id.asc())
        )
        rows.extend(result.scalars().all())
    return rows


def _serialize_ticket(ticket: Ticket, notes: list[TicketNote], refs: _UserRefs) -> dict[str, Any]:
    return {
        "id": ticket.id,
        "title": ticket.title,
        "description": ticket.description,
        "status": ticket.status,
        "priority": ticket.priority,
        "category": ticket.category,
        "customFields": ticket.custom_field_values or {},
        "createdBy": refs.ref(ticket.created_by),
        "assignedTo": refs.ref(ticket.assigned_to),
        "notes": [
            {
                "content": note.content,
                "isInternal": note.is_internal,
                "author": refs.ref(note.created_by),
                "createdAt": isoformat(note.created_at),
            }
            for note in notes
        ],
        "createdAt": isoformat(ticket.created_at),
        "updatedAt": isoformat(ticket.updated_at),
        "resolvedAt": isoformat(ticket.resolved_at),
        "closedAt": isoformat(ticket.closed_at),
        "archivedAt": isoformat(ticket.archived_at),
    }


def _serialize_attachment(row: FileAttachment, refs: _UserRefs) -> dict[str, Any]:
    return {
        "ticketId": row.ticket_id,
        "fileName": row.file_name,
        "fileSize": row.file_size,
        "fileType": row.file_type,
        "filePath": row.file_path,
        "uploadedBy": refs.ref(row.uploaded_by),
        "uploadedAt": isoformat(row.uploaded_at),
    }


async def serialize_tenant_snapshot(
    session: AsyncSession,
    tenant_id: str,
    actor: Actor,
    options: ExportOptions | None = None,
    *,
    export_id: str | None = None,
    now: datetime | None = None,
) -> ExportSnapshotDocument:
    """Read a tenant's exportable data into a self-contained snapshot document.

    User references are emitted as emails and only for tenant members, so every
    reference resolves inside the document's users section. Attachment
    ``ticketId`` values refer to ``id`` entries of the tickets section, so
    attachments are only emitted alongside tickets.
    """
    resolved = options or ExportOptions()
    if resolved.include_attachments and not resolved.include_tickets:
        resolved = replace(resolved, include_attachments=False)
    resolved_id = export_id or uuid4().hex
    try:
        tenant = await ensure_tenant_access(session, tenant_id, actor)
        members = await load_tenant_members(session, tenant_id)
        refs = _UserRefs(user for user, _ in members)
        data: dict[str, list[dict[str, Any]]] = {}

        if resolved.include_users:
            data["users"] = [_serialize_user(user, role) for user, role in members]

        ticket_ids: list[str] = []
        if resolved.include_tickets:
            tickets = await _load_tickets(session, tenant_id, resolved)
            ticket_ids = [ticket.id for ticket in tickets]
            notes = await _load_notes(session, ticket_ids)
            data["tickets"] = [_serialize_ticket(ticket, notes[ticket.id], refs) for ticket in tickets]

        if resolved.include_custom_fields:
            result = await session.execute(
                select(CustomField)
                .where(tenant_predicate(CustomField, tenant_id))
                .order_by(CustomField.display_order.asc(), CustomField.name.asc())
            )
            data["customFields"] = [_serialize_custom_field(row) for row in result.scalars().all()]

        if resolved.include_attachments:
            attachments = await _load_attachments(session, ticket_ids)
            data["attachments"] = [_serialize_attachment(row, refs) for row in attachments]

        exported_by_email = None
        if actor.actor_id is not None:
            exported_by = await session.get(User, actor.actor_id)
            exported_by_email = exported_by.email if exported_by else None
    except SQLAlchemyError as exc:
        logger.error("snapshot_read_failed tenant_id=%s export_id=%s", tenant_id, resolved_id, exc_info=exc)
        raise SnapshotExportError(f"Failed to read tenant {tenant_id} snapshot: {exc}") from exc

    header = {
        "exportId": resolved_id,
        "formatVersion": SNAPSHOT_FORMAT_VERSION,
        "tenantId": tenant.id,
        "tenantName": tenant.name,
        "exportedBy": {
            "actorType": actor.actor_type,
            "actorId": actor.actor_id,
            "email": exported_by_email,
        },
        "exportedAt": isoformat(now or utc_now()),
        "options": resolved.to_dict(),
    }
    document = ExportSnapshotDocument(export_id=resolved_id, header=header, data=data)
    logger.info("snapshot_serialized tenant_id=%s export_id=%s counts=%s", tenant_id, resolved_id, document.counts())
    return document
