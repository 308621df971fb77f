from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from ticketvault.apps.api.deps import (
    Principal,
    get_archival_scheduler,
    get_current_principal,
    get_db,
    require_role,
    role_allows,
)
from ticketvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from ticketvault.apps.api.response import SuccessEnvelope, success_response
from ticketvault.core.config import get_settings
from ticketvault.services.archival.archived import ArchivedSearch, get_archival_stats, search_archived_tickets
from ticketvault.services.archival.executor import (
    ArchiveOutcome,
    archive_ticket,
    bulk_archive_tickets,
    restore_ticket,
)
from ticketvault.services.archival.runner import ArchivalConfig
from ticketvault.services.archival.scheduler import ArchivalScheduler
from ticketvault.services.archival.selector import SelectionScope, select_archival_candidates
from ticketvault.services.archival.suggestions import build_archival_suggestions
from ticketvault.services.entitlements import FEATURE_ARCHIVAL_AUTOMATION, require_feature


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/archival", tags=["archival"], responses=DEFAULT_ERROR_RESPONSES)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ArchiveResponse(CamelModel):
    ticket_id: str
    success: bool
    already_archived: bool = False


class BulkArchiveRequest(CamelModel):
    ticket_ids: list[str] = Field(min_length=1, max_length=500)


class BulkArchiveResponse(CamelModel):
    successful: list[str]
    failed: list[dict[str, str]]
    total_processed: int
    archived_count: int


class RunResponse(CamelModel):
    status: str
    summary: dict[str, Any] | None = None


def _outcome_or_error(outcome: ArchiveOutcome) -> dict[str, Any]:
    if outcome.success:
        return ArchiveResponse(
            ticket_id=outcome.ticket_id,
            success=True,
            already_archived=outcome.already_archived,
        ).model_dump(by_alias=True)
    if outcome.error_code == "not_found":
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "TICKET_NOT_FOUND", "message": outcome.error or "Ticket not found"},
        )
    if outcome.error_code == "storage_error":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "DB_UNAVAILABLE", "message": outcome.error or "Storage unavailable"},
        )
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={
            "code": "ARCHIVE_CONFLICT",
            "message": outcome.error or "Ticket cannot change archive state",
            "reason": outcome.error_code,
        },
    )


def _owner_filter(principal: Principal) -> list[str] | None:
    # Customers only ever see their own tickets.
    if role_allows(role=principal.role, minimum_role="agent"):
        return None
    return [principal.actor_id]


@router.post(
    "/tickets/{ticket_id}/archive",
    response_model=SuccessEnvelope[ArchiveResponse],
)
async def archive_single_ticket(
    request: Request,
    ticket_id: str,
    principal: Principal = Depends(require_role("agent")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    outcome = await archive_ticket(db, ticket_id, principal.to_actor(), tenant_id=principal.tenant_id)
    return success_response(request=request, data=_outcome_or_error(outcome))


@router.post(
    "/tickets/{ticket_id}/restore",
    response_model=SuccessEnvelope[ArchiveResponse],
)
async def restore_single_ticket(
    request: Request,
    ticket_id: str,
    principal: Principal = Depends(require_role("agent")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    outcome = await restore_ticket(db, ticket_id, principal.to_actor(), tenant_id=principal.tenant_id)
    return success_response(request=request, data=_outcome_or_error(outcome))


@router.post(
    "/tickets/bulk-archive",
    response_model=SuccessEnvelope[BulkArchiveResponse],
)
async def bulk_archive(
    request: Request,
    payload: BulkArchiveRequest,
    principal: Principal = Depends(require_role("agent")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await bulk_archive_tickets(
        db, payload.ticket_ids, principal.to_actor(), tenant_id=principal.tenant_id
    )
    return success_response(request=request, data=result.to_dict())


@router.get("/candidates")
async def list_candidates(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    age_threshold_days: int | None = Query(default=None, alias="ageThresholdDays", ge=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    threshold = (
        age_threshold_days if age_threshold_days is not None else get_settings().archival_age_threshold_days
    )
    records = await select_archival_candidates(
        db,
        SelectionScope(
            tenant_id=principal.tenant_id,
            max_results=limit,
            age_threshold_days=threshold,
            owner_ids=_owner_filter(principal),
        ),
    )
    return success_response(
        request=request,
        data={"candidates": [record.to_dict() for record in records], "count": len(records)},
    )


@router.get("/suggestions")
async def archival_suggestions(
    request: Request,
    limit: int | None = Query(default=None, ge=1, le=500),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    scheduler: ArchivalScheduler = Depends(get_archival_scheduler),
) -> dict:
    report = await build_archival_suggestions(
        db,
        principal.tenant_id,
        owner_ids=_owner_filter(principal),
        limit=limit,
        next_run_at=scheduler.next_run_at,
    )
    return success_response(request=request, data=report.to_dict())


@router.get("/archived")
async def list_archived_tickets(
    request: Request,
    q: str | None = Query(default=None, max_length=200),
    status_filter: list[str] | None = Query(default=None, alias="status"),
    archived_from: datetime | None = Query(default=None, alias="archivedFrom"),
    archived_to: datetime | None = Query(default=None, alias="archivedTo"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page = await search_archived_tickets(
        db,
        ArchivedSearch(
            tenant_id=principal.tenant_id,
            query=q,
            statuses=tuple(status_filter or ()),
            archived_from=archived_from,
            archived_to=archived_to,
            limit=limit,
            offset=offset,
            owner_ids=_owner_filter(principal),
        ),
    )
    return success_response(request=request, data=page.to_dict())


@router.get("/stats")
async def archival_stats(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    stats = await get_archival_stats(db, principal.tenant_id, owner_ids=_owner_filter(principal))
    return success_response(request=request, data=stats.to_dict())


@router.post("/run", response_model=SuccessEnvelope[RunResponse])
async def run_archival_pass(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    scheduler: ArchivalScheduler = Depends(get_archival_scheduler),
) -> dict:
    summary = await scheduler.run_now(trigger="manual")
    logger.info("archival_run_requested actor_id=%s ran=%s", principal.actor_id, summary is not None)
    if summary is None:
        payload = RunResponse(status="skipped_in_progress")
    else:
        payload = RunResponse(status="completed", summary=summary.to_dict())
    return success_response(request=request, data=payload.model_dump(by_alias=True))


@router.post("/trigger")
async def trigger_tenant_archival(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
    scheduler: ArchivalScheduler = Depends(get_archival_scheduler),
) -> dict:
    await require_feature(session=db, tenant_id=principal.tenant_id, feature_key=FEATURE_ARCHIVAL_AUTOMATION)
    # Release the entitlement read before the runner opens its own sessions.
    await db.commit()
    result = await scheduler.runner.run_for_tenant(
        principal.tenant_id,
        ArchivalConfig.from_settings(),
        bypass_quota=True,
        actor=principal.to_actor(),
    )
    return success_response(request=request, data=result.to_dict())


@router.get("/status")
async def scheduler_status(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    scheduler: ArchivalScheduler = Depends(get_archival_scheduler),
) -> dict:
    data = scheduler.get_status()
    data["config"] = ArchivalConfig.from_settings().to_dict()
    return success_response(request=request, data=data)
