from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ticketvault.core.clock import parse_datetime
from ticketvault.core.errors import ImportValidationError
from ticketvault.domain.actors import Actor
from ticketvault.domain.models import CustomField, TenantMembership, Ticket, TicketNote, User
from ticketvault.services.activity import record_activity
from ticketvault.services.snapshot.validator import DATA_KEY, validate_import_document
from ticketvault.services.tenancy import (
    ensure_tenant_access,
    find_user_by_email,
    is_tenant_member,
    normalize_email,
    user_ids_by_email,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImportOptions:
    overwrite_existing: bool = False
    skip_duplicates: bool = True
    validate_only: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {
            "overwriteExisting": self.overwrite_existing,
            "skipDuplicates": self.skip_duplicates,
            "validateOnly": self.validate_only,
        }


@dataclass(frozen=True)
class ImportSummary:
    users_imported: int = 0
    users_skipped: int = 0
    custom_fields_imported: int = 0
    custom_fields_skipped: int = 0
    tickets_imported: int = 0
    # Ticket entries that could not be created; each has a matching error string.
    tickets_skipped: int = 0
    notes_imported: int = 0
    errors: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "usersImported": self.users_imported,
            "usersSkipped": self.users_skipped,
            "customFieldsImported": self.custom_fields_imported,
            "customFieldsSkipped": self.custom_fields_skipped,
            "ticketsImported": self.tickets_imported,
            "ticketsSkipped": self.tickets_skipped,
            "notesImported": self.notes_imported,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class ImportResult:
    success: bool
    import_id: str
    summary: ImportSummary
    validation_errors: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "importId": self.import_id,
            "summary": self.summary.to_dict(),
        }
        if self.validation_errors or not self.success:
            payload["validationErrors"] = list(self.validation_errors)
        return payload


@dataclass
class _Tally:
    imported: int = 0
    skipped: int = 0
    children: int = 0
    errors: list[str] = field(default_factory=list)


def _label(item: Any, key: str, index: int) -> str:
    if isinstance(item, dict) and item.get(key):
        return str(item[key])
    return f"#{index + 1}"


def _email_of(reference: Any) -> str | None:
    if isinstance(reference, dict):
        return normalize_email(reference.get("email"))
    return None


def _referenced_emails(tickets: Any) -> set[str]:
    # Creator, assignee and note author emails across every ticket entry.
    emails: set[str] = set()
    if not isinstance(tickets, list):
        return emails
    for ticket in tickets:
        if not isinstance(ticket, dict):
            continue
        references = [ticket.get("createdBy"), ticket.get("assignedTo")]
        notes = ticket.get("notes")
        if isinstance(notes, list):
            references.extend(note.get("author") for note in notes if isinstance(note, dict))
        emails.update(email for email in map(_email_of, references) if email)
    return emails


class _ImportRun:
    """Apply one validated document to a tenant, item by item.

    Each item runs inside its own SAVEPOINT so a failure rolls back only that
    item; the error becomes a string and the loop continues.
    """

    def __init__(self, session: AsyncSession, tenant_id: str, options: ImportOptions) -> None:
        self.session = session
        self.tenant_id = tenant_id
        self.options = options

    async def _ensure_membership(self, user_id: str, role: str) -> None:
        if not await is_tenant_member(self.session, self.tenant_id, user_id):
            self.session.add(TenantMembership(tenant_id=self.tenant_id, user_id=user_id, role=role))

    async def _import_user(self, item: dict[str, Any], tally: _Tally) -> None:
        email = normalize_email(item.get("email"))
        if email is None:
            raise ValueError("missing email")
        tenant_role = item.get("tenantRole") or "member"
        existing = await find_user_by_email(self.session, email)
        if existing is None:
            user = User(
                id=uuid4().hex,
                email=email,
                first_name=item.get("firstName"),
                last_name=item.get("lastName"),
                phone=item.get("phone"),
                role=item.get("role") or "customer",
                is_active=item.get("isActive") is not False,
                # Imported identities always re-verify.
                email_verified=False,
                preferences=item.get("preferences") or {},
            )
            self.session.add(user)
            await self.session.flush()
            await self._ensure_membership(user.id, tenant_role)
            tally.imported += 1
            return
        if self.options.skip_duplicates or not self.options.overwrite_existing:
            # Listed users belong to the tenant even when their profile is left untouched.
            await self._ensure_membership(existing.id, tenant_role)
            tally.skipped += 1
            return
        existing.first_name = item.get("firstName", existing.first_name)
        existing.last_name = item.get("lastName", existing.last_name)
        existing.phone = item.get("phone", existing.phone)
        existing.preferences = item.get("preferences", existing.preferences)
        await self._ensure_membership(existing.id, tenant_role)
        tally.imported += 1

    async def _import_custom_field(self, item: dict[str, Any], tally: _Tally) -> None:
        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValueError("missing name")
        result = await self.session.execute(
            select(CustomField).where(CustomField.tenant_id == self.tenant_id, CustomField.name == name)
        )
        existing = result.scalar_one_or_none()
        if existing is None:
            self.session.add(
                CustomField(
                    id=uuid4().hex,
                    tenant_id=self.tenant_id,
                    name=name,
                    field_type=item.get("fieldType") or "text",
                    options=item.get("options"),
                    is_required=bool(item.get("isRequired", False)),
                    is_active=item.get("isActive") is not False,
                    display_order=int(item.get("displayOrder") or 0),
                )
            )
            tally.imported += 1
            return
        if self.options.skip_duplicates or not self.options.overwrite_existing:
            tally.skipped += 1
            return
        existing.field_type = item.get("fieldType") or existing.field_type
        existing.options = item.get("options", existing.options)
        existing.is_required = bool(item.get("isRequired", existing.is_required))
        existing.is_active = item.get("isActive", existing.is_active) is not False
        existing.display_order = int(item.get("displayOrder", existing.display_order) or 0)
        tally.imported += 1

    async def _import_ticket(self, item: dict[str, Any], people: dict[str, str], tally: _Tally) -> None:
        title = item.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ValueError("missing title")
        # Unresolvable people degrade to unassigned instead of failing the ticket.
        creator_id = people.get(_email_of(item.get("createdBy")) or "")
        assignee_id = people.get(_email_of(item.get("assignedTo")) or "")
        ticket = Ticket(
            id=uuid4().hex,
            tenant_id=self.tenant_id,
            title=title,
            description=item.get("description"),
            status=item.get("status") or "open",
            priority=item.get("priority") or "medium",
            category=item.get("category"),
            custom_field_values=item.get("customFields") or {},
            created_by=creator_id,
            assigned_to=assignee_id,
            resolved_at=parse_datetime(item.get("resolvedAt")),
            closed_at=parse_datetime(item.get("closedAt")),
        )
        created_at = parse_datetime(item.get("createdAt"))
        if created_at is not None:
            ticket.created_at = created_at
            ticket.updated_at = parse_datetime(item.get("updatedAt")) or created_at
        self.session.add(ticket)
        await self.session.flush()

        notes = item.get("notes") or []
        if not isinstance(notes, list):
            tally.errors.append(f"Failed to import notes for ticket {title}: notes must be an array")
            notes = []
        for note in notes:
            try:
                async with self.session.begin_nested():
                    self._add_note(ticket, note, people, creator_id)
                tally.children += 1
            except (SQLAlchemyError, ValueError, TypeError) as exc:
                tally.errors.append(f"Failed to import note for ticket {title}: {exc}")
        tally.imported += 1

    def _add_note(
        self,
        ticket: Ticket,
        note: Any,
        people: dict[str, str],
        fallback_author: str | None,
    ) -> None:
        if not isinstance(note, dict):
            raise ValueError("note must be an object")
        content = note.get("content")
        if not isinstance(content, str):
            raise ValueError("missing content")
        author_id = people.get(_email_of(note.get("author")) or "") or fallback_author
        row = TicketNote(
            id=uuid4().hex,
            ticket_id=ticket.id,
            content=content,
            is_internal=bool(note.get("isInternal", False)),
            created_by=author_id,
        )
        created_at = parse_datetime(note.get("createdAt"))
        if created_at is not None:
            row.created_at = created_at
        self.session.add(row)

    async def _run_section(self, name: str, key: str, label_key: str, items: list[Any], handler) -> _Tally:  # noqa: ANN001
        tally = _Tally()
        for index, item in enumerate(items):
            label = _label(item, label_key, index)
            try:
                if not isinstance(item, dict):
                    raise ValueError("entry must be an object")
                async with self.session.begin_nested():
                    await handler(item, tally)
            except (SQLAlchemyError, ValueError, TypeError) as exc:
                tally.errors.append(f"Failed to import {name} {label}: {exc}")
                if key == "tickets":
                    tally.skipped += 1
        await self.session.commit()
        return tally

    async def execute(self, data: dict[str, Any]) -> ImportSummary:
        # Users, then custom fields, then tickets: tickets reference both.
        users = await self._safe_section("user", "users", "email", data, self._import_user)
        fields = await self._safe_section("custom field", "customFields", "name", data, self._import_custom_field)
        people = await user_ids_by_email(self.session, _referenced_emails(data.get("tickets")))

        async def _ticket_handler(item: dict[str, Any], tally: _Tally) -> None:
            await self._import_ticket(item, people, tally)

        tickets = await self._safe_section("ticket", "tickets", "title", data, _ticket_handler)
        return ImportSummary(
            users_imported=users.imported,
            users_skipped=users.skipped,
            custom_fields_imported=fields.imported,
            custom_fields_skipped=fields.skipped,
            tickets_imported=tickets.imported,
            tickets_skipped=tickets.skipped,
            notes_imported=tickets.children,
            errors=tuple(users.errors + fields.errors + tickets.errors),
        )

    async def _safe_section(self, name: str, key: str, label_key: str, data: dict[str, Any], handler) -> _Tally:  # noqa: ANN001
        items = data.get(key) or []
        try:
            return await self._run_section(name, key, label_key, items, handler)
        except SQLAlchemyError as exc:
            # A failed commit loses the section; later sections still run.
            await self.session.rollback()
            logger.warning("import_section_failed tenant_id=%s section=%s", self.tenant_id, key, exc_info=exc)
            return _Tally(errors=[f"Failed to import {key} section: {exc}"])


async def import_tenant_snapshot(
    session: AsyncSession,
    tenant_id: str,
    actor: Actor,
    document: Any,
    options: ImportOptions | None = None,
) -> ImportResult:
    """Validate then apply a snapshot document to ``tenant_id``.

    Raises ``TenantNotFoundError``/``TenantAccessError`` for access problems and
    ``ImportValidationError`` for a malformed document outside a dry run.
    Per-item problems are returned in ``summary.errors``.
    """
    resolved = options or ImportOptions()
    import_id = uuid4().hex
    await ensure_tenant_access(session, tenant_id, actor)

    validation_errors = validate_import_document(document)
    if validation_errors:
        logger.info("import_validation_failed tenant_id=%s errors=%s", tenant_id, len(validation_errors))
        if resolved.validate_only:
            return ImportResult(
                success=False,
                import_id=import_id,
                summary=ImportSummary(),
                validation_errors=tuple(validation_errors),
            )
        raise ImportValidationError(validation_errors)
    if resolved.validate_only:
        return ImportResult(success=True, import_id=import_id, summary=ImportSummary())

    # Release the access-check read transaction before item savepoints begin.
    await session.commit()
    summary = await _ImportRun(session, tenant_id, resolved).execute(document[DATA_KEY])
    logger.info(
        "import_completed tenant_id=%s import_id=%s users=%s tickets=%s errors=%s",
        tenant_id,
        import_id,
        summary.users_imported,
        summary.tickets_imported,
        len(summary.errors),
    )
    await record_activity(
        kind="import",
        tenant_id=tenant_id,
        actor=actor,
        run_id=import_id,
        payload={"options": resolved.to_dict(), **summary.to_dict()},
        session=session,
    )
    return ImportResult(success=True, import_id=import_id, summary=summary)
