from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketvault.core.clock import isoformat, utc_now
from ticketvault.core.config import Settings, get_settings
from ticketvault.core.errors import DatabaseError
from ticketvault.domain.actors import SYSTEM_ACTOR, Actor
from ticketvault.persistence.db import SessionLocal
from ticketvault.services.activity import record_activity
from ticketvault.services.archival.executor import archive_ticket
from ticketvault.services.archival.selector import SelectionScope, select_archival_candidates
from ticketvault.services.entitlements import FEATURE_ARCHIVAL_AUTOMATION, list_tenants_with_feature
from ticketvault.services.quota import check_tenant_quota


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArchivalConfig:
    enabled: bool = True
    age_threshold_days: int = 30
    max_records_per_run: int = 100
    only_when_approaching_limit: bool = True
    limit_threshold_percent: float = 80.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ArchivalConfig":
        resolved = settings or get_settings()
        return cls(
            enabled=resolved.archival_enabled,
            age_threshold_days=resolved.archival_age_threshold_days,
            max_records_per_run=resolved.archival_max_records_per_run,
            only_when_approaching_limit=resolved.archival_only_when_approaching_limit,
            limit_threshold_percent=resolved.archival_limit_threshold_percent,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "ageThresholdDays": self.age_threshold_days,
            "maxRecordsPerRun": self.max_records_per_run,
            "onlyWhenApproachingLimit": self.only_when_approaching_limit,
            "limitThresholdPercent": self.limit_threshold_percent,
        }


@dataclass(frozen=True)
class TenantArchivalResult:
    tenant_id: str
    archived_count: int = 0
    errors: tuple[str, ...] = ()
    skipped: bool = False
    skip_reason: str | None = None
    usage_percent: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenantId": self.tenant_id,
            "archivedCount": self.archived_count,
            "errors": list(self.errors),
            "skipped": self.skipped,
            "skipReason": self.skip_reason,
            "usagePercent": self.usage_percent,
        }


@dataclass(frozen=True)
class ArchivalRunSummary:
    run_id: str
    started_at: datetime
    finished_at: datetime
    enabled: bool
    results: tuple[TenantArchivalResult, ...] = ()

    @property
    def tenants_processed(self) -> int:
        return len(self.results)

    @property
    def total_archived(self) -> int:
        return sum(result.archived_count for result in self.results)

    @property
    def tenants_with_errors(self) -> list[str]:
        return [result.tenant_id for result in self.results if result.errors]

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "enabled": self.enabled,
            "startedAt": isoformat(self.started_at),
            "finishedAt": isoformat(self.finished_at),
            "tenantsProcessed": self.tenants_processed,
            "totalArchived": self.total_archived,
            "tenantsWithErrors": self.tenants_with_errors,
            "results": [result.to_dict() for result in self.results],
        }


@dataclass
class _TenantProgress:
    archived: int = 0
    errors: list[str] = field(default_factory=list)


class ArchivalRunner:
    """Run one archival pass across every tenant entitled to automation."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        time_provider: Callable[[], datetime] | None = None,
        tenant_concurrency: int | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._time_provider = time_provider or utc_now
        concurrency = tenant_concurrency or get_settings().archival_tenant_concurrency
        self._tenant_concurrency = max(1, int(concurrency))
        self._actor = actor

    async def list_eligible_tenants(self) -> list[str]:
        # Without the tenant list the whole pass cannot start.
        try:
            async with self._session_factory() as session:
                return await list_tenants_with_feature(
                    session, FEATURE_ARCHIVAL_AUTOMATION, now=self._time_provider()
                )
        except SQLAlchemyError as exc:
            raise DatabaseError(f"Failed to list tenants eligible for archival: {exc}") from exc

    async def run(self, config: ArchivalConfig | None = None) -> ArchivalRunSummary:
        resolved = config or ArchivalConfig.from_settings()
        run_id = uuid4().hex
        started_at = self._time_provider()
        if not resolved.enabled:
            logger.info("archival_run_disabled run_id=%s", run_id)
            return ArchivalRunSummary(
                run_id=run_id, started_at=started_at, finished_at=started_at, enabled=False
            )

        tenant_ids = await self.list_eligible_tenants()
        logger.info("archival_run_started run_id=%s tenants=%s", run_id, len(tenant_ids))
        semaphore = asyncio.Semaphore(self._tenant_concurrency)

        async def _bounded(tenant_id: str) -> TenantArchivalResult:
            async with semaphore:
                return await self._process_tenant_safely(tenant_id, resolved, run_id=run_id)

        results = await asyncio.gather(*(_bounded(tenant_id) for tenant_id in tenant_ids))
        summary = ArchivalRunSummary(
            run_id=run_id,
            started_at=started_at,
            finished_at=self._time_provider(),
            enabled=True,
            results=tuple(results),
        )
        logger.info(
            "archival_run_completed run_id=%s tenants=%s archived=%s tenants_with_errors=%s",
            run_id,
            summary.tenants_processed,
            summary.total_archived,
            len(summary.tenants_with_errors),
        )
        return summary

    async def run_for_tenant(
        self,
        tenant_id: str,
        config: ArchivalConfig | None = None,
        *,
        bypass_quota: bool = False,
        actor: Actor | None = None,
    ) -> TenantArchivalResult:
        # Immediate archival for one tenant; entitlement checks belong to the caller.
        resolved = config or ArchivalConfig.from_settings()
        return await self._process_tenant_safely(
            tenant_id,
            resolved,
            run_id=uuid4().hex,
            bypass_quota=bypass_quota,
            actor=actor,
        )

    async def _process_tenant_safely(
        self,
        tenant_id: str,
        config: ArchivalConfig,
        *,
        run_id: str,
        bypass_quota: bool = False,
        actor: Actor | None = None,
    ) -> TenantArchivalResult:
        acting = actor or self._actor
        try:
            result = await self._process_tenant(tenant_id, config, acting, bypass_quota=bypass_quota)
        except Exception as exc:  # noqa: BLE001 - one tenant must not abort the pass.
            logger.exception("archival_tenant_failed run_id=%s tenant_id=%s", run_id, tenant_id)
            result = TenantArchivalResult(
                tenant_id=tenant_id,
                errors=(f"Tenant {tenant_id} archival failed: {exc}",),
            )
        if not result.skipped:
            await record_activity(
                kind="archival",
                tenant_id=tenant_id,
                actor=acting,
                payload={"runId": run_id, **result.to_dict()},
                session_factory=self._session_factory,
            )
        return result

    async def _process_tenant(
        self,
        tenant_id: str,
        config: ArchivalConfig,
        actor: Actor,
        *,
        bypass_quota: bool,
    ) -> TenantArchivalResult:
        now = self._time_provider()
        async with self._session_factory() as session:
            usage_percent: float | None = None
            if config.only_when_approaching_limit and not bypass_quota:
                check = await check_tenant_quota(
                    session, tenant_id, threshold_percent=config.limit_threshold_percent
                )
                usage_percent = check.decision.usage_percent
                if not check.decision.should_archive:
                    logger.debug(
                        "archival_tenant_skipped tenant_id=%s usage_percent=%.2f",
                        tenant_id,
                        usage_percent,
                    )
                    return TenantArchivalResult(
                        tenant_id=tenant_id,
                        skipped=True,
                        skip_reason="below_threshold",
                        usage_percent=usage_percent,
                    )

            candidates = await select_archival_candidates(
                session,
                SelectionScope(
                    tenant_id=tenant_id,
                    max_results=config.max_records_per_run,
                    age_threshold_days=config.age_threshold_days,
                ),
                now=now,
            )
            progress = _TenantProgress()
            # Sequential within a tenant so history rows follow completion order.
            for candidate in candidates:
                outcome = await archive_ticket(session, candidate.ticket_id, actor, tenant_id=tenant_id)
                if outcome.success:
                    if not outcome.already_archived:
                        progress.archived += 1
                else:
                    progress.errors.append(outcome.error or f"Ticket {candidate.ticket_id} failed")

        logger.info(
            "archival_tenant_completed tenant_id=%s candidates=%s archived=%s errors=%s",
            tenant_id,
            len(candidates),
            progress.archived,
            len(progress.errors),
        )
        return TenantArchivalResult(
            tenant_id=tenant_id,
            archived_count=progress.archived,
            errors=tuple(progress.errors),
            usage_percent=usage_percent,
        )
