from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ticketvault.domain.models import UNLIMITED, Plan
from ticketvault.services.entitlements import get_tenant_plan
from ticketvault.services.usage import UsageSnapshot, get_tenant_usage


logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_PERCENT = 80.0


@dataclass(frozen=True)
class PlanLimits:
    # Ticket quotas for a tenant plan; UNLIMITED disables the matching check.
    active_limit: int = UNLIMITED
    completed_limit: int = UNLIMITED
    total_limit: int = UNLIMITED

    @classmethod
    def from_plan(cls, plan: Plan | None) -> "PlanLimits":
        # Tenants without a current plan are never pushed into archival.
        if plan is None:
            return cls()
        return cls(
            active_limit=plan.active_ticket_limit,
            completed_limit=plan.completed_ticket_limit,
            total_limit=plan.total_ticket_limit,
        )

    @property
    def completed_unlimited(self) -> bool:
        return self.completed_limit == UNLIMITED


@dataclass(frozen=True)
class QuotaDecision:
    should_archive: bool
    usage_percent: float


@dataclass(frozen=True)
class QuotaCheck:
    # Usage, limits and the resulting decision for one tenant.
    tenant_id: str
    usage: UsageSnapshot
    limits: PlanLimits
    decision: QuotaDecision


def evaluate_quota(
    usage: UsageSnapshot,
    limits: PlanLimits,
    threshold_percent: float = DEFAULT_THRESHOLD_PERCENT,
) -> QuotaDecision:
    """Decide whether a tenant's completed tickets should be archived now.

    Only the completed-ticket limit drives archival. An unlimited limit never
    triggers; a limit of zero counts as already over quota.
    """
    if limits.completed_unlimited:
        return QuotaDecision(should_archive=False, usage_percent=0.0)
    if limits.completed_limit <= 0:
        return QuotaDecision(should_archive=True, usage_percent=100.0)
    usage_percent = usage.completed_count / limits.completed_limit * 100
    return QuotaDecision(
        should_archive=usage_percent >= threshold_percent,
        usage_percent=usage_percent,
    )


async def check_tenant_quota(
    session: AsyncSession,
    tenant_id: str,
    *,
    threshold_percent: float = DEFAULT_THRESHOLD_PERCENT,
) -> QuotaCheck:
    plan = await get_tenant_plan(session, tenant_id)
    limits = PlanLimits.from_plan(plan)
    usage = await get_tenant_usage(session, tenant_id)
    decision = evaluate_quota(usage, limits, threshold_percent)
    logger.debug(
        "quota_evaluated tenant_id=%s completed=%s limit=%s usage_percent=%.2f should_archive=%s",
        tenant_id,
        usage.completed_count,
        limits.completed_limit,
        decision.usage_percent,
        decision.should_archive,
    )
    return QuotaCheck(tenant_id=tenant_id, usage=usage, limits=limits, decision=decision)
