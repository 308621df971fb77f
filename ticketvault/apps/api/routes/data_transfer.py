from __future__ import annotations

from datetime import datetime
import json
import logging
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, status
from fastapi.responses import FileResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from ticketvault.apps.api.deps import Principal, get_current_principal, get_db, require_role
from ticketvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from ticketvault.apps.api.response import SuccessEnvelope, success_response
from ticketvault.core.clock import isoformat
from ticketvault.core.config import get_settings
from ticketvault.services.activity import list_activity, record_activity
from ticketvault.services.maintenance import cleanup_exports as cleanup_export_dirs
from ticketvault.services.snapshot.importer import ImportOptions, import_tenant_snapshot
from ticketvault.services.snapshot.serializer import ExportOptions, serialize_tenant_snapshot
from ticketvault.services.snapshot.writer import (
    ARCHIVE_FILENAME,
    resolve_download_path,
    write_export_archive,
)
from ticketvault.services.tenancy import ensure_tenant_access


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/data", tags=["data-transfer"], responses=DEFAULT_ERROR_RESPONSES)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExportRequest(CamelModel):
    tenant_id: str
    include_users: bool = True
    include_tickets: bool = True
    include_attachments: bool = True
    include_custom_fields: bool = True
    date_from: datetime | None = None
    date_to: datetime | None = None


class IncludedCounts(CamelModel):
    users: int
    tickets: int
    notes: int
    custom_fields: int
    attachments: int


class ExportResponse(CamelModel):
    export_id: str
    file_name: str
    file_size_bytes: int
    download_url: str
    expires_at: str
    included_counts: IncludedCounts


class ImportSummaryResponse(CamelModel):
    users_imported: int
    users_skipped: int
    custom_fields_imported: int
    custom_fields_skipped: int
    tickets_imported: int
    tickets_skipped: int
    notes_imported: int
    errors: list[str]


class ImportResponse(CamelModel):
    success: bool
    import_id: str
    summary: ImportSummaryResponse
    validation_errors: list[str] | None = None


class HistoryResponse(CamelModel):
    exports: list[dict[str, Any]]
    imports: list[dict[str, Any]]
    archivals: list[dict[str, Any]]


class CleanupRequest(CamelModel):
    older_than_hours: float = Field(default=24.0, ge=0)


class CleanupResponse(CamelModel):
    removed: int


@router.post("/export", response_model=SuccessEnvelope[ExportResponse])
async def export_tenant_data(
    request: Request,
    payload: ExportRequest,
    principal: Principal = Depends(require_role("agent")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    actor = principal.to_actor()
    export_id = uuid4().hex
    options = ExportOptions(
        include_users=payload.include_users,
        include_tickets=payload.include_tickets,
        include_attachments=payload.include_attachments,
        include_custom_fields=payload.include_custom_fields,
        date_from=payload.date_from,
        date_to=payload.date_to,
    )
    document = await serialize_tenant_snapshot(db, payload.tenant_id, actor, options, export_id=export_id)
    artifact = await write_export_archive(document.to_dict(), export_id=export_id)
    counts = document.counts()
    await record_activity(
        kind="export",
        tenant_id=payload.tenant_id,
        actor=actor,
        run_id=export_id,
        payload={**artifact.to_dict(), "includedCounts": counts, "options": options.to_dict()},
        session=db,
    )
    data = ExportResponse(
        export_id=artifact.export_id,
        file_name=artifact.file_name,
        file_size_bytes=artifact.file_size_bytes,
        download_url=artifact.download_path,
        expires_at=isoformat(artifact.expires_at),
        included_counts=IncludedCounts.model_validate(counts),
    )
    return success_response(request=request, data=data.model_dump(by_alias=True))


@router.get("/download/{export_id}/{file_name}", response_class=FileResponse, response_model=None)
async def download_export(
    export_id: str,
    file_name: str,
    principal: Principal = Depends(get_current_principal),
) -> FileResponse:
    # Export ids are random capabilities; expired or unknown ids look identical.
    path = resolve_download_path(export_id, file_name)
    if path is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "EXPORT_NOT_FOUND", "message": "Export not found or expired"},
        )
    logger.info("export_downloaded export_id=%s actor_id=%s", export_id, principal.actor_id)
    return FileResponse(path, filename=ARCHIVE_FILENAME, media_type="application/zip")


@router.post("/import", response_model=SuccessEnvelope[ImportResponse])
async def import_tenant_data(
    request: Request,
    tenant_id: str = Form(..., alias="tenantId"),
    file: UploadFile = File(...),
    overwrite_existing: bool = Form(default=False, alias="overwriteExisting"),
    skip_duplicates: bool = Form(default=True, alias="skipDuplicates"),
    validate_only: bool = Form(default=False, alias="validateOnly"),
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    max_bytes = get_settings().import_max_bytes
    body = await file.read(max_bytes + 1)
    if len(body) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail={"code": "PAYLOAD_TOO_LARGE", "message": f"Import file exceeds {max_bytes} bytes"},
        )
    options = ImportOptions(
        overwrite_existing=overwrite_existing,
        skip_duplicates=skip_duplicates,
        validate_only=validate_only,
    )
    try:
        document: Any = json.loads(body)
    except (UnicodeDecodeError, ValueError):
        # Undecodable files flow into validation as a non-object document.
        document = None
    result = await import_tenant_snapshot(db, tenant_id, principal.to_actor(), document, options)
    return success_response(request=request, data=result.to_dict())


@router.get("/history/{tenant_id}", response_model=SuccessEnvelope[HistoryResponse])
async def data_history(
    request: Request,
    tenant_id: str,
    limit: int | None = None,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await ensure_tenant_access(db, tenant_id, principal.to_actor())
    resolved_limit = max(1, min(limit or get_settings().history_default_limit, 100))
    history: dict[str, list[dict[str, Any]]] = {}
    for key, kind in (("exports", "export"), ("imports", "import"), ("archivals", "archival")):
        entries = await list_activity(db, tenant_id=tenant_id, kind=kind, limit=resolved_limit)
        history[key] = [entry.to_dict() for entry in entries]
    return success_response(request=request, data=history)


@router.post("/cleanup", response_model=SuccessEnvelope[CleanupResponse])
async def cleanup_exports(
    request: Request,
    payload: CleanupRequest | None = None,
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    resolved = payload or CleanupRequest()
    removed = await cleanup_export_dirs(older_than_hours=resolved.older_than_hours)
    logger.info("exports_cleanup_requested actor_id=%s removed=%s", principal.actor_id, removed)
    return success_response(request=request, data={"removed": removed})

