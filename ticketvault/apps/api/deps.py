from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ticketvault.core.config import get_settings
from ticketvault.domain.actors import Actor
from ticketvault.persistence.db import get_session
from ticketvault.services.archival.scheduler import ArchivalScheduler


ROLE_ORDER: dict[str, int] = {
    "customer": 1,
    "agent": 2,
    "admin": 3,
}
DEFAULT_ROLE = "customer"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request, closed on success and error alike.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity asserted by the upstream auth gateway.
    tenant_id: str
    actor_id: str
    role: str

    def to_actor(self) -> Actor:
        return Actor.user(self.actor_id, self.role)


def normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def get_current_principal(request: Request) -> Principal:
    settings = get_settings()
    tenant_id = (request.headers.get(settings.auth_header_tenant) or "").strip()
    actor_id = (request.headers.get(settings.auth_header_actor) or "").strip()
    if not tenant_id or not actor_id:
        raise _auth_error(
            f"{settings.auth_header_tenant} and {settings.auth_header_actor} headers are required"
        )
    try:
        role = normalize_role(request.headers.get(settings.auth_header_role) or DEFAULT_ROLE)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    return Principal(tenant_id=tenant_id, actor_id=actor_id, role=role)


def require_role(minimum_role: str):
    # Dependency factory enforcing the customer < agent < admin ordering.
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"code": "AUTH_FORBIDDEN", "message": "Insufficient role for this operation"},
            )
        return principal

    return _dependency


def get_archival_scheduler(request: Request) -> ArchivalScheduler:
    scheduler = getattr(request.app.state, "archival_scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SCHEDULER_UNAVAILABLE", "message": "Archival scheduler is not configured"},
        )
    return scheduler
