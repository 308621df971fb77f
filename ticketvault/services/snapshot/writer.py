from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import json
import logging
import os
from pathlib import Path
import re
import shutil
from typing import Any
from uuid import uuid4
import zipfile

from ticketvault.core.clock import isoformat, utc_now
from ticketvault.core.config import get_settings
from ticketvault.core.errors import ArchiveWriteError


logger = logging.getLogger(__name__)

SNAPSHOT_FILENAME = "snapshot.json"
ARCHIVE_FILENAME = "archive.zip"
DOWNLOAD_ROUTE = "/v1/data/download"

_EXPORT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


@dataclass(frozen=True)
class ExportArtifact:
    # Describe a packaged export so callers can advertise the download.
    export_id: str
    file_name: str
    file_size_bytes: int
    sha256: str
    download_path: str
    created_at: datetime
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "exportId": self.export_id,
            "fileName": self.file_name,
            "fileSizeBytes": self.file_size_bytes,
            "sha256": self.sha256,
            "downloadUrl": self.download_path,
            "createdAt": isoformat(self.created_at),
            "expiresAt": isoformat(self.expires_at),
        }


@dataclass(frozen=True)
class LocalExportStorage:
    # Every export owns exactly one directory named after its id.
    base_dir: Path

    def export_dir(self, export_id: str) -> Path:
        return self.base_dir / export_id

    def create_export_dir(self, export_id: str) -> Path:
        path = self.export_dir(export_id)
        path.mkdir(parents=True, exist_ok=False)
        return path


def _base_dir(base_dir: Path | str | None) -> Path:
    return Path(base_dir) if base_dir is not None else Path(get_settings().export_base_dir)


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def is_safe_export_id(export_id: str) -> bool:
    return bool(_EXPORT_ID_PATTERN.match(export_id or ""))


def _write_export_files(export_dir: Path, document: dict[str, Any]) -> tuple[int, str]:
    snapshot_path = export_dir / SNAPSHOT_FILENAME
    with snapshot_path.open("w", encoding="utf-8") as handle:
        json.dump(document, handle, ensure_ascii=False, indent=2, default=str)
    # Build under a temporary name so a reachable archive.zip is always complete.
    partial_path = export_dir / (ARCHIVE_FILENAME + ".partial")
    with zipfile.ZipFile(partial_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.write(snapshot_path, arcname=SNAPSHOT_FILENAME)
    archive_path = export_dir / ARCHIVE_FILENAME
    os.replace(partial_path, archive_path)
    return archive_path.stat().st_size, _sha256_file(archive_path)


async def write_export_archive(
    document: dict[str, Any],
    *,
    base_dir: Path | str | None = None,
    export_id: str | None = None,
    ttl_hours: int | None = None,
    now: datetime | None = None,
) -> ExportArtifact:
    """Persist a snapshot document and its zip under ``<base_dir>/<export_id>/``.

    Any failure removes the export directory and raises ``ArchiveWriteError``;
    a failed write is never advertised for download.
    """
    resolved_id = export_id or uuid4().hex
    if not is_safe_export_id(resolved_id):
        raise ArchiveWriteError(f"invalid export id: {resolved_id!r}")
    storage = LocalExportStorage(_base_dir(base_dir))
    created_at = now or utc_now()
    ttl = ttl_hours if ttl_hours is not None else get_settings().export_ttl_hours
    try:
        export_dir = await asyncio.to_thread(storage.create_export_dir, resolved_id)
    except OSError as exc:
        raise ArchiveWriteError(f"could not create export directory: {exc}") from exc
    try:
        size_bytes, checksum = await asyncio.to_thread(_write_export_files, export_dir, document)
    except (OSError, TypeError, ValueError, zipfile.BadZipFile) as exc:
        shutil.rmtree(export_dir, ignore_errors=True)
        logger.warning("export_write_failed export_id=%s", resolved_id, exc_info=exc)
        raise ArchiveWriteError(f"failed to write export {resolved_id}: {exc}") from exc

    artifact = ExportArtifact(
        export_id=resolved_id,
        file_name=ARCHIVE_FILENAME,
        file_size_bytes=size_bytes,
        sha256=checksum,
        download_path=f"{DOWNLOAD_ROUTE}/{resolved_id}/{ARCHIVE_FILENAME}",
        created_at=created_at,
        expires_at=created_at + timedelta(hours=ttl),
    )
    logger.info("export_written export_id=%s size_bytes=%s", resolved_id, size_bytes)
    return artifact


def _artifact_created_at(export_dir: Path) -> datetime | None:
    # The archive mtime marks creation; fall back to the directory for half-written exports.
    for candidate in (export_dir / ARCHIVE_FILENAME, export_dir):
        try:
            return datetime.fromtimestamp(candidate.stat().st_mtime, tz=timezone.utc)
        except FileNotFoundError:
            continue
    return None


def resolve_download_path(
    export_id: str,
    file_name: str,
    *,
    base_dir: Path | str | None = None,
    ttl_hours: int | None = None,
    now: datetime | None = None,
) -> Path | None:
    # Only the packaged archive of an unexpired export is downloadable.
    if not is_safe_export_id(export_id) or file_name != ARCHIVE_FILENAME:
        return None
    path = LocalExportStorage(_base_dir(base_dir)).export_dir(export_id) / ARCHIVE_FILENAME
    created_at = _artifact_created_at(path.parent) if path.is_file() else None
    if created_at is None:
        return None
    ttl = ttl_hours if ttl_hours is not None else get_settings().export_ttl_hours
    if (now or utc_now()) >= created_at + timedelta(hours=ttl):
        return None
    return path


def _cleanup_sync(base_dir: Path, cutoff: datetime) -> int:
    removed = 0
    try:
        entries = list(base_dir.iterdir())
    except FileNotFoundError:
        return 0
    for export_dir in entries:
        if not export_dir.is_dir():
            continue
        created_at = _artifact_created_at(export_dir)
        if created_at is None or created_at > cutoff:
            continue
        # A concurrent download or sweep may already have removed files.
        shutil.rmtree(export_dir, ignore_errors=True)
        if not export_dir.exists():
            removed += 1
    return removed


async def cleanup_expired_exports(
    *,
    base_dir: Path | str | None = None,
    older_than_hours: float | None = None,
    now: datetime | None = None,
) -> int:
    hours = older_than_hours if older_than_hours is not None else get_settings().export_ttl_hours
    cutoff = (now or utc_now()) - timedelta(hours=max(0.0, float(hours)))
    removed = await asyncio.to_thread(_cleanup_sync, _base_dir(base_dir), cutoff)
    logger.info("exports_cleanup_completed removed=%s older_than_hours=%s", removed, hours)
    return removed
