from __future__ import annotations

from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ticketvault.core.errors import TenantAccessError, TenantNotFoundError
from ticketvault.domain.actors import Actor
from ticketvault.domain.models import Tenant, TenantMembership, User


def normalize_email(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip().lower()
    return cleaned or None


async def is_tenant_member(session: AsyncSession, tenant_id: str, user_id: str) -> bool:
    membership = await session.get(TenantMembership, (tenant_id, user_id))
    return membership is not None


async def ensure_tenant_access(session: AsyncSession, tenant_id: str, actor: Actor) -> Tenant:
    """Load the tenant and confirm the actor may operate on it.

    The system actor is trusted for every tenant; users need a membership row.
    """
    tenant = await session.get(Tenant, tenant_id)
    if tenant is None:
        raise TenantNotFoundError(f"Tenant {tenant_id} not found")
    if actor.is_system:
        return tenant
    if actor.actor_id is None or not await is_tenant_member(session, tenant_id, actor.actor_id):
        raise TenantAccessError(f"Actor does not have access to tenant {tenant_id}")
    return tenant


async def load_tenant_members(session: AsyncSession, tenant_id: str) -> list[tuple[User, str]]:
    # Members with their tenant role, ordered by email for stable snapshots.
    result = await session.execute(
        select(User, TenantMembership.role)
        .join(TenantMembership, TenantMembership.user_id == User.id)
        .where(TenantMembership.tenant_id == tenant_id)
        .order_by(User.email)
    )
    return [(user, role) for user, role in result.all()]


async def find_user_by_email(session: AsyncSession, email: str) -> User | None:
    normalized = normalize_email(email)
    if normalized is None:
        return None
    result = await session.execute(select(User).where(func.lower(User.email) == normalized))
    return result.scalars().first()


async def user_ids_by_email(session: AsyncSession, emails: Iterable[object]) -> dict[str, str]:
    # Map lower-cased email to user id across the whole deployment.
    wanted = sorted({email for email in (normalize_email(item) for item in emails) if email})
    found: dict[str, str] = {}
    for start in range(0, len(wanted), 500):
        result = await session.execute(
            select(func.lower(User.email), User.id).where(func.lower(User.email).in_(wanted[start : start + 500]))
        )
        found.update({email: user_id for email, user_id in result.all()})
    return found
