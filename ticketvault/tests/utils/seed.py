from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable
from uuid import uuid4

from ticketvault.core.clock import utc_now
from ticketvault.domain.models import (
    UNLIMITED,
    CustomField,
    FileAttachment,
    Plan,
    PlanFeature,
    Tenant,
    TenantMembership,
    TenantSubscription,
    Ticket,
    TicketNote,
    User,
)
from ticketvault.persistence.db import SessionLocal
from ticketvault.services.entitlements import FEATURE_ARCHIVAL_AUTOMATION


def days_ago(days: float, *, now: datetime | None = None) -> datetime:
    return (now or utc_now()) - timedelta(days=days)


def auth_headers(tenant_id: str, actor_id: str, role: str = "admin") -> dict[str, str]:
    # Identity headers the upstream gateway would inject.
    return {"X-Tenant-Id": tenant_id, "X-Actor-Id": actor_id, "X-Role": role}


async def seed_tenant(
    *,
    tenant_id: str | None = None,
    name: str = "Acme Support",
    completed_limit: int | None = UNLIMITED,
    automation: bool = False,
    subscribed: bool = True,
) -> str:
    # Tenant plus plan and an active subscription starting yesterday.
    resolved_id = tenant_id or f"t-{uuid4().hex[:12]}"
    async with SessionLocal() as session:
        session.add(Tenant(id=resolved_id, name=name))
        if subscribed:
            plan_id = f"plan-{uuid4().hex[:8]}"
            session.add(
                Plan(
                    id=plan_id,
                    name="Growth",
                    completed_ticket_limit=completed_limit if completed_limit is not None else UNLIMITED,
                )
            )
            if automation:
                session.add(PlanFeature(plan_id=plan_id, feature_key=FEATURE_ARCHIVAL_AUTOMATION, enabled=True))
            await session.flush()
            session.add(
                TenantSubscription(
                    tenant_id=resolved_id,
                    plan_id=plan_id,
                    effective_from=days_ago(1),
                    status="active",
                )
            )
        await session.commit()
    return resolved_id


async def seed_user(
    tenant_id: str | None,
    *,
    email: str | None = None,
    first_name: str = "Dana",
    last_name: str = "Reyes",
    role: str = "agent",
    tenant_role: str = "member",
) -> str:
    user_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(
            User(
                id=user_id,
                email=(email or f"user-{user_id[:8]}@example.com").lower(),
                first_name=first_name,
                last_name=last_name,
                role=role,
                email_verified=True,
                preferences={"theme": "dark"},
            )
        )
        await session.flush()
        if tenant_id is not None:
            session.add(TenantMembership(tenant_id=tenant_id, user_id=user_id, role=tenant_role))
        await session.commit()
    return user_id


async def seed_ticket(
    tenant_id: str,
    *,
    title: str = "Printer on fire",
    status: str = "open",
    created_by: str | None = None,
    assigned_to: str | None = None,
    closed_at: datetime | None = None,
    resolved_at: datetime | None = None,
    archived_at: datetime | None = None,
    created_at: datetime | None = None,
    custom_fields: dict | None = None,
    notes: Iterable[str] = (),
    note_author: str | None = None,
) -> str:
    ticket_id = uuid4().hex
    async with SessionLocal() as session:
        ticket = Ticket(
            id=ticket_id,
            tenant_id=tenant_id,
            title=title,
            description=f"{title} details",
            status=status,
            created_by=created_by,
            assigned_to=assigned_to,
            closed_at=closed_at,
            resolved_at=resolved_at,
            archived_at=archived_at,
            custom_field_values=custom_fields or {},
        )
        if created_at is not None:
            ticket.created_at = created_at
            ticket.updated_at = created_at
        session.add(ticket)
        await session.flush()
        for offset, content in enumerate(notes):
            session.add(
                TicketNote(
                    id=uuid4().hex,
                    ticket_id=ticket_id,
                    content=content,
                    created_by=note_author or created_by,
                    created_at=(created_at or utc_now()) + timedelta(minutes=offset + 1),
                )
            )
        await session.commit()
    return ticket_id


async def seed_closed_tickets(
    tenant_id: str,
    count: int,
    *,
    closed_days_ago: float = 45,
    created_by: str | None = None,
) -> list[str]:
    ids = []
    for index in range(count):
        ids.append(
            await seed_ticket(
                tenant_id,
                title=f"Closed {index}",
                status="closed",
                created_by=created_by,
                # Stagger so completion order is deterministic.
                closed_at=days_ago(closed_days_ago + index),
            )
        )
    return ids


async def seed_custom_field(tenant_id: str, *, name: str = "Region", field_type: str = "select") -> str:
    field_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(
            CustomField(
                id=field_id,
                tenant_id=tenant_id,
                name=name,
                field_type=field_type,
                options=["EMEA", "APAC"],
                display_order=1,
            )
        )
        await session.commit()
    return field_id


async def seed_attachment(ticket_id: str, *, uploaded_by: str | None = None) -> str:
    attachment_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(
            FileAttachment(
                id=attachment_id,
                ticket_id=ticket_id,
                file_name="screenshot.png",
                file_size=2048,
                file_type="image/png",
                file_path=f"uploads/{attachment_id}.png",
                uploaded_by=uploaded_by,
            )
        )
        await session.commit()
    return attachment_id
