from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from ticketvault.core.clock import isoformat, utc_now
from ticketvault.core.config import get_settings
from ticketvault.services.archival.selector import SelectionScope, select_archival_candidates
from ticketvault.services.entitlements import (
    FEATURE_ARCHIVAL_AUTOMATION,
    get_active_subscription,
    get_tenant_plan,
    tenant_has_feature,
)
from ticketvault.services.quota import PlanLimits, evaluate_quota
from ticketvault.services.usage import get_tenant_usage


Priority = Literal["high", "medium", "low"]

REASON_NO_SUBSCRIPTION = "No active subscription found"
REASON_UNLIMITED = "Unlimited plan - no archival needed"
REASON_BELOW_THRESHOLD = "Usage below threshold for archival suggestions"


@dataclass(frozen=True)
class ArchivalSuggestion:
    ticket_id: str
    title: str
    status: str
    completed_at: datetime
    days_since_completion: int
    priority: Priority

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticketId": self.ticket_id,
            "title": self.title,
            "status": self.status,
            "completedAt": isoformat(self.completed_at),
            "daysSinceCompletion": self.days_since_completion,
            "priority": self.priority,
        }


@dataclass(frozen=True)
class SuggestionReport:
    should_suggest: bool
    reason: str
    usage_current: int = 0
    usage_limit: int = 0
    usage_percent: float = 0.0
    automation_available: bool = False
    next_run_at: datetime | None = None
    suggestions: tuple[ArchivalSuggestion, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "shouldSuggestArchival": self.should_suggest,
            "reason": self.reason,
            "usageInfo": {
                "current": self.usage_current,
                "limit": self.usage_limit,
                "percentage": self.usage_percent,
            },
            "automationAvailable": self.automation_available,
            "nextRunAt": isoformat(self.next_run_at),
            "suggestions": [item.to_dict() for item in self.suggestions],
        }


def suggestion_priority(usage_percent: float, days_since_completion: int) -> Priority:
    if usage_percent >= 95 or days_since_completion > 90:
        return "high"
    if usage_percent >= 85 or days_since_completion > 60:
        return "medium"
    return "low"


def usage_reason(usage_percent: float) -> str:
    if usage_percent >= 95:
        return "Critical: Very close to completed ticket limit"
    if usage_percent >= 85:
        return "Warning: Approaching completed ticket limit"
    if usage_percent >= 75:
        return "Notice: Consider archiving old completed tickets"
    return "Usage is within normal range"


async def build_archival_suggestions(
    session: AsyncSession,
    tenant_id: str,
    *,
    owner_ids: Sequence[str] | None = None,
    threshold_percent: float | None = None,
    limit: int | None = None,
    next_run_at: datetime | None = None,
    now: datetime | None = None,
) -> SuggestionReport:
    """Suggest completed tickets to archive when a tenant nears its quota.

    Any completed ticket qualifies regardless of age; priority rises with
    both usage and ticket age. Unlimited plans never receive suggestions.
    """
    settings = get_settings()
    resolved_now = now or utc_now()
    threshold = (
        threshold_percent if threshold_percent is not None else settings.archival_suggestion_threshold_percent
    )
    if await get_active_subscription(session, tenant_id, now=resolved_now) is None:
        return SuggestionReport(should_suggest=False, reason=REASON_NO_SUBSCRIPTION)

    automation = await tenant_has_feature(session, tenant_id, FEATURE_ARCHIVAL_AUTOMATION, now=resolved_now)
    limits = PlanLimits.from_plan(await get_tenant_plan(session, tenant_id, now=resolved_now))
    usage = await get_tenant_usage(session, tenant_id)
    if limits.completed_unlimited:
        return SuggestionReport(
            should_suggest=False,
            reason=REASON_UNLIMITED,
            usage_current=usage.completed_count,
            usage_limit=limits.completed_limit,
            automation_available=automation,
        )

    decision = evaluate_quota(usage, limits, threshold)
    base = {
        "usage_current": usage.completed_count,
        "usage_limit": limits.completed_limit,
        "usage_percent": round(decision.usage_percent, 2),
        "automation_available": automation,
        "next_run_at": next_run_at if automation else None,
    }
    if not decision.should_archive:
        return SuggestionReport(should_suggest=False, reason=REASON_BELOW_THRESHOLD, **base)

    candidates = await select_archival_candidates(
        session,
        SelectionScope(
            tenant_id=tenant_id,
            max_results=limit if limit is not None else settings.archival_suggestion_limit,
            age_threshold_days=0,
            owner_ids=owner_ids,
        ),
        now=resolved_now,
    )
    suggestions = tuple(
        ArchivalSuggestion(
            ticket_id=record.ticket_id,
            title=record.title,
            status=record.status,
            completed_at=record.completed_at,
            days_since_completion=record.days_since_completion(resolved_now),
            priority=suggestion_priority(decision.usage_percent, record.days_since_completion(resolved_now)),
        )
        for record in candidates
    )
    return SuggestionReport(
        should_suggest=bool(suggestions),
        reason=usage_reason(decision.usage_percent),
        suggestions=suggestions,
        **base,
    )
