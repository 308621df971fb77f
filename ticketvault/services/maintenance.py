from __future__ import annotations

from pathlib import Path
from typing import Any

from ticketvault.core.config import get_settings
from ticketvault.services.archival.runner import ArchivalConfig, ArchivalRunner
from ticketvault.services.snapshot.writer import cleanup_expired_exports


async def run_archival_pass(
    *,
    runner: ArchivalRunner | None = None,
    config: ArchivalConfig | None = None,
) -> dict[str, Any]:
    # One pass outside the scheduler, e.g. from cron.
    summary = await (runner or ArchivalRunner()).run(config or ArchivalConfig.from_settings())
    return summary.to_dict()


async def cleanup_exports(
    *,
    base_dir: Path | str | None = None,
    older_than_hours: float | None = None,
) -> int:
    hours = older_than_hours if older_than_hours is not None else get_settings().export_ttl_hours
    return await cleanup_expired_exports(base_dir=base_dir, older_than_hours=hours)

