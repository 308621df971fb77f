from __future__ import annotations

import json

import pytest
from sqlalchemy import func, select

from ticketvault.core.errors import ImportValidationError, TenantAccessError, TenantNotFoundError
from ticketvault.domain.actors import SYSTEM_ACTOR, Actor
from ticketvault.domain.models import Base, CustomField, TenantMembership, Ticket, TicketNote, User
from ticketvault.persistence.db import SessionLocal, engine
from ticketvault.services.snapshot.importer import ImportOptions, import_tenant_snapshot
from ticketvault.services.snapshot.serializer import ExportOptions, serialize_tenant_snapshot
from ticketvault.tests.utils.seed import (
    days_ago,
    seed_attachment,
    seed_custom_field,
    seed_tenant,
    seed_ticket,
    seed_user,
)


async def _seed_source_tenant(tenant_id: str = "t-source") -> dict[str, str]:
    await seed_tenant(tenant_id=tenant_id, name="Source Co")
    agent = await seed_user(tenant_id, email="agent@example.com", first_name="Ana", role="agent", tenant_role="admin")
    customer = await seed_user(tenant_id, email="customer@example.com", first_name="Cy", role="customer")
    outsider = await seed_user(None, email="outsider@example.com")
    await seed_custom_field(tenant_id, name="Region")
    ticket = await seed_ticket(
        tenant_id,
        title="VPN drops hourly",
        status="closed",
        created_by=customer,
        assigned_to=agent,
        closed_at=days_ago(12),
        created_at=days_ago(20),
        custom_fields={"Region": "EMEA"},
        notes=("First reply", "Fixed by rotating keys"),
        note_author=agent,
    )
    # Outsiders are not members, so their references must not leak into snapshots.
    stray = await seed_ticket(tenant_id, title="Imported by outsider", created_by=outsider, created_at=days_ago(3))
    await seed_attachment(ticket, uploaded_by=customer)
    return {"agent": agent, "customer": customer, "ticket": ticket, "stray": stray}


async def _export_json(tenant_id: str, options: ExportOptions | None = None) -> dict:
    async with SessionLocal() as session:
        document = await serialize_tenant_snapshot(session, tenant_id, SYSTEM_ACTOR, options)
    # Round-trip through JSON exactly as an uploaded file would.
    return json.loads(json.dumps(document.to_dict()))


async def _reset_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


@pytest.mark.asyncio
async def test_snapshot_shape_uses_member_email_references() -> None:
    seeded = await _seed_source_tenant()

    document = await _export_json("t-source")

    header = document["exportInfo"]
    assert header["tenantId"] == "t-source"
    assert header["tenantName"] == "Source Co"
    assert header["exportedBy"] == {"actorType": "system", "actorId": None, "email": None}
    data = document["data"]
    assert [user["email"] for user in data["users"]] == ["agent@example.com", "customer@example.com"]
    tickets = {ticket["title"]: ticket for ticket in data["tickets"]}
    vpn = tickets["VPN drops hourly"]
    assert vpn["createdBy"]["email"] == "customer@example.com"
    assert vpn["assignedTo"]["email"] == "agent@example.com"
    assert [note["content"] for note in vpn["notes"]] == ["First reply", "Fixed by rotating keys"]
    assert tickets["Imported by outsider"]["createdBy"] is None
    assert data["attachments"][0]["ticketId"] == seeded["ticket"]
    assert data["customFields"][0]["name"] == "Region"


@pytest.mark.asyncio
async def test_export_options_trim_sections_and_dates() -> None:
    await _seed_source_tenant()

    document = await _export_json(
        "t-source",
        ExportOptions(include_users=False, include_attachments=False, date_from=days_ago(10)),
    )

    assert "users" not in document["data"]
    assert "attachments" not in document["data"]
    assert [ticket["title"] for ticket in document["data"]["tickets"]] == ["Imported by outsider"]
    assert document["exportInfo"]["options"]["includeUsers"] is False


@pytest.mark.asyncio
async def test_round_trip_into_fresh_database_preserves_content() -> None:
    await _seed_source_tenant()
    document = await _export_json("t-source")

    await _reset_schema()
    await seed_tenant(tenant_id="t-source", name="Source Co")
    async with SessionLocal() as session:
        result = await import_tenant_snapshot(session, "t-source", SYSTEM_ACTOR, document)

    assert result.success is True
    summary = result.summary
    assert summary.users_imported == 2
    assert summary.custom_fields_imported == 1
    assert summary.tickets_imported == 2
    assert summary.notes_imported == 2
    assert summary.errors == ()

    reexported = await _export_json("t-source")
    before = {ticket["title"]: ticket for ticket in document["data"]["tickets"]}
    after = {ticket["title"]: ticket for ticket in reexported["data"]["tickets"]}
    assert set(after) == set(before)
    for title, original in before.items():
        copy = after[title]
        for key in ("status", "priority", "customFields", "createdBy", "assignedTo", "closedAt", "createdAt"):
            assert copy[key] == original[key], (title, key)
        assert [(n["content"], n["author"]) for n in copy["notes"]] == [
            (n["content"], n["author"]) for n in original["notes"]
        ]
    assert [(u["email"], u["tenantRole"]) for u in reexported["data"]["users"]] == [
        (u["email"], u["tenantRole"]) for u in document["data"]["users"]
    ]
    # Imported identities must re-verify their email.
    assert all(user["emailVerified"] is False for user in reexported["data"]["users"])
    assert reexported["data"]["customFields"][0]["options"] == ["EMEA", "APAC"]


@pytest.mark.asyncio
async def test_reimport_skips_existing_users_and_fields() -> None:
    await _seed_source_tenant()
    document = await _export_json("t-source")

    async with SessionLocal() as session:
        result = await import_tenant_snapshot(session, "t-source", SYSTEM_ACTOR, document)

    assert result.summary.users_imported == 0
    assert result.summary.users_skipped == 2
    assert result.summary.custom_fields_skipped == 1
    assert result.summary.tickets_imported == 2
    async with SessionLocal() as session:
        users = await session.scalar(select(func.count()).select_from(User))
        fields = await session.scalar(select(func.count()).select_from(CustomField))
        tickets = await session.scalar(select(func.count()).select_from(Ticket))
    assert users == 3
    assert fields == 1
    assert tickets == 4


@pytest.mark.asyncio
async def test_overwrite_updates_existing_records() -> None:
    await _seed_source_tenant()
    document = await _export_json("t-source")
    document["data"]["users"][0]["firstName"] = "Anastasia"
    document["data"]["customFields"][0]["options"] = ["AMER"]
    document["data"]["tickets"] = []

    async with SessionLocal() as session:
        result = await import_tenant_snapshot(
            session,
            "t-source",
            SYSTEM_ACTOR,
            document,
            ImportOptions(overwrite_existing=True, skip_duplicates=False),
        )

    assert result.summary.users_imported == 2
    assert result.summary.custom_fields_imported == 1
    async with SessionLocal() as session:
        agent = (await session.execute(select(User).where(User.email == "agent@example.com"))).scalar_one()
        field = (await session.execute(select(CustomField))).scalar_one()
    assert agent.first_name == "Anastasia"
    assert field.options == ["AMER"]


@pytest.mark.asyncio
async def test_unresolvable_people_leave_ticket_unassigned() -> None:
    await seed_tenant(tenant_id="t-target")
    document = {
        "exportInfo": {"exportId": "x"},
        "data": {
            "tickets": [
                {
                    "title": "Ghost ticket",
                    "status": "open",
                    "createdBy": {"email": "nobody@example.com"},
                    "assignedTo": {"email": "ghost@example.com"},
                    "notes": [{"content": "hello", "author": {"email": "ghost@example.com"}}],
                },
                {"status": "open"},
            ]
        },
    }

    async with SessionLocal() as session:
        result = await import_tenant_snapshot(session, "t-target", SYSTEM_ACTOR, document)

    assert result.summary.tickets_imported == 1
    assert result.summary.tickets_skipped == 1
    assert result.summary.notes_imported == 1
    assert result.summary.errors == ("Failed to import ticket #2: missing title",)
    async with SessionLocal() as session:
        ticket = (await session.execute(select(Ticket).where(Ticket.tenant_id == "t-target"))).scalar_one()
        note = (await session.execute(select(TicketNote))).scalar_one()
    assert ticket.created_by is None
    assert ticket.assigned_to is None
    assert note.created_by is None


@pytest.mark.asyncio
async def test_validate_only_never_writes() -> None:
    await _seed_source_tenant()
    document = await _export_json("t-source")
    await _reset_schema()
    await seed_tenant(tenant_id="t-source")

    async with SessionLocal() as session:
        result = await import_tenant_snapshot(
            session, "t-source", SYSTEM_ACTOR, document, ImportOptions(validate_only=True)
        )
        broken = await import_tenant_snapshot(
            session, "t-source", SYSTEM_ACTOR, {"exportInfo": {}}, ImportOptions(validate_only=True)
        )

    assert result.success is True
    assert result.summary.tickets_imported == 0
    assert broken.success is False
    assert broken.to_dict()["validationErrors"] == ["Missing data section"]
    async with SessionLocal() as session:
        assert await session.scalar(select(func.count()).select_from(Ticket)) == 0


@pytest.mark.asyncio
async def test_invalid_document_raises_outside_dry_run() -> None:
    await seed_tenant(tenant_id="t-target")

    async with SessionLocal() as session:
        with pytest.raises(ImportValidationError) as excinfo:
            await import_tenant_snapshot(session, "t-target", SYSTEM_ACTOR, {"exportInfo": {}, "data": {"users": 1}})

    assert excinfo.value.errors == ["Users data must be an array"]
    assert str(excinfo.value) == "Invalid import data: Users data must be an array"


@pytest.mark.asyncio
async def test_access_is_checked_for_user_actors() -> None:
    await seed_tenant(tenant_id="t-target")
    outsider = await seed_user(None)

    async with SessionLocal() as session:
        with pytest.raises(TenantAccessError):
            await serialize_tenant_snapshot(session, "t-target", Actor.user(outsider, "admin"))
        with pytest.raises(TenantNotFoundError):
            await import_tenant_snapshot(session, "t-missing", Actor.user(outsider, "admin"), {})


async def _seed_busy_tenant(tenant_id: str = "t-busy") -> list[str]:
    await seed_tenant(tenant_id=tenant_id, name="Busy Co")
    people = [
        await seed_user(tenant_id, email=f"person{index}@example.com", role="agent")
        for index in range(3)
    ]
    for index in range(5):
        await seed_ticket(
            tenant_id,
            title=f"Ticket {index}",
            status="closed" if index % 2 else "open",
            created_by=people[index % 3],
            assigned_to=people[(index + 1) % 3],
            closed_at=days_ago(index + 1) if index % 2 else None,
            created_at=days_ago(20 - index),
            notes=(f"question {index}", f"answer {index}"),
            note_author=people[(index + 2) % 3],
        )
    return people


async def _note_counts(tenant_id: str) -> dict[str, int]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(Ticket.title, func.count(TicketNote.id))
            .outerjoin(TicketNote, TicketNote.ticket_id == Ticket.id)
            .where(Ticket.tenant_id == tenant_id)
            .group_by(Ticket.id, Ticket.title)
        )
        return {title: count for title, count in result.all()}


@pytest.mark.asyncio
async def test_round_trip_keeps_every_ticket_with_its_notes_and_never_dedups_tickets() -> None:
    await _seed_busy_tenant()
    document = await _export_json("t-busy")
    assert len(document["data"]["users"]) == 3

    await _reset_schema()
    await seed_tenant(tenant_id="t-busy", name="Busy Co")
    async with SessionLocal() as session:
        first = await import_tenant_snapshot(session, "t-busy", SYSTEM_ACTOR, document)

    assert first.summary.users_imported == 3
    assert first.summary.tickets_imported == 5
    assert first.summary.notes_imported == 10
    assert first.summary.errors == ()
    assert await _note_counts("t-busy") == {f"Ticket {index}": 2 for index in range(5)}

    async with SessionLocal() as session:
        second = await import_tenant_snapshot(session, "t-busy", SYSTEM_ACTOR, document)

    assert second.summary.users_imported == 0
    assert second.summary.users_skipped == 3
    # Tickets have no natural key, so a second import creates fresh copies.
    assert second.summary.tickets_imported == 5
    assert second.summary.notes_imported == 10
    async with SessionLocal() as session:
        assert await session.scalar(select(func.count()).select_from(Ticket)) == 10
        assert await session.scalar(select(func.count()).select_from(User)) == 3


@pytest.mark.asyncio
async def test_import_into_second_tenant_resolves_existing_users() -> None:
    seeded = await _seed_source_tenant()
    document = await _export_json("t-source")
    await seed_tenant(tenant_id="t-dest", name="Dest Co")

    async with SessionLocal() as session:
        result = await import_tenant_snapshot(session, "t-dest", SYSTEM_ACTOR, document)

    assert result.summary.users_imported == 0
    assert result.summary.users_skipped == 2
    assert result.summary.tickets_imported == 2
    assert result.summary.errors == ()
    async with SessionLocal() as session:
        ticket = (
            await session.execute(
                select(Ticket).where(Ticket.tenant_id == "t-dest", Ticket.title == "VPN drops hourly")
            )
        ).scalar_one()
        authors = (
            await session.execute(
                select(TicketNote.created_by).where(TicketNote.ticket_id == ticket.id).order_by(TicketNote.created_at)
            )
        ).scalars().all()
        memberships = (
            await session.execute(select(TenantMembership.user_id).where(TenantMembership.tenant_id == "t-dest"))
        ).scalars().all()
    assert ticket.created_by == seeded["customer"]
    assert ticket.assigned_to == seeded["agent"]
    assert authors == [seeded["agent"], seeded["agent"]]
    assert sorted(memberships) == sorted([seeded["agent"], seeded["customer"]])

    reexported = await _export_json("t-dest")
    vpn = next(item for item in reexported["data"]["tickets"] if item["title"] == "VPN drops hourly")
    assert vpn["createdBy"]["email"] == "customer@example.com"
    assert vpn["assignedTo"]["email"] == "agent@example.com"


@pytest.mark.asyncio
async def test_attachments_are_left_out_without_the_tickets_section() -> None:
    await _seed_source_tenant()

    document = await _export_json("t-source", ExportOptions(include_tickets=False, include_users=False))

    assert set(document["data"]) == {"customFields"}
    assert document["exportInfo"]["options"]["includeAttachments"] is False

    with_tickets = await _export_json("t-source", ExportOptions(include_users=False))
    ticket_ids = {ticket["id"] for ticket in with_tickets["data"]["tickets"]}
    assert [item["ticketId"] in ticket_ids for item in with_tickets["data"]["attachments"]] == [True]
