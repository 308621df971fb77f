from __future__ import annotations

from datetime import datetime, timezone
import logging

from fastapi import HTTPException, status
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ticketvault.domain.models import Plan, PlanFeature, TenantSubscription


logger = logging.getLogger(__name__)

FEATURE_ARCHIVAL_AUTOMATION = "feature.archival.automation"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _active_subscription_filter(now: datetime):
    # A subscription is current when active and inside its effective window.
    return and_(
        TenantSubscription.status == "active",
        TenantSubscription.effective_from <= now,
        or_(TenantSubscription.effective_to.is_(None), TenantSubscription.effective_to > now),
    )


async def get_active_subscription(
    session: AsyncSession,
    tenant_id: str,
    *,
    now: datetime | None = None,
) -> TenantSubscription | None:
    # Pick the newest current subscription when history rows overlap.
    resolved_now = now or _utc_now()
    result = await session.execute(
        select(TenantSubscription)
        .where(TenantSubscription.tenant_id == tenant_id, _active_subscription_filter(resolved_now))
        .order_by(TenantSubscription.effective_from.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_tenant_plan(
    session: AsyncSession,
    tenant_id: str,
    *,
    now: datetime | None = None,
) -> Plan | None:
    subscription = await get_active_subscription(session, tenant_id, now=now)
    if subscription is None:
        return None
    return await session.get(Plan, subscription.plan_id)


async def tenant_has_feature(
    session: AsyncSession,
    tenant_id: str,
    feature_key: str,
    *,
    now: datetime | None = None,
) -> bool:
    subscription = await get_active_subscription(session, tenant_id, now=now)
    if subscription is None:
        return False
    feature = await session.get(PlanFeature, (subscription.plan_id, feature_key))
    return bool(feature and feature.enabled)


async def require_feature(
    *,
    session: AsyncSession,
    tenant_id: str,
    feature_key: str,
) -> None:
    # Use a stable 403 payload when the tenant plan lacks a feature.
    if await tenant_has_feature(session, tenant_id, feature_key):
        return
    logger.info("feature_denied tenant_id=%s feature_key=%s", tenant_id, feature_key)
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "code": "FEATURE_NOT_ENABLED",
            "message": "Feature not enabled for tenant plan",
            "feature_key": feature_key,
        },
    )


async def list_tenants_with_feature(
    session: AsyncSession,
    feature_key: str,
    *,
    now: datetime | None = None,
) -> list[str]:
    """Return tenant ids whose current plan enables ``feature_key``.

    Ordered by tenant id so archival passes visit tenants deterministically.
    """
    resolved_now = now or _utc_now()
    result = await session.execute(
        select(TenantSubscription.tenant_id)
        .join(PlanFeature, PlanFeature.plan_id == TenantSubscription.plan_id)
        .where(
            _active_subscription_filter(resolved_now),
            PlanFeature.feature_key == feature_key,
            PlanFeature.enabled.is_(True),
        )
        .distinct()
        .order_by(TenantSubscription.tenant_id)
    )
    return [row[0] for row in result.all()]
