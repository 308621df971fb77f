from __future__ import annotations

from datetime import datetime, timezone

import pytest

from ticketvault.persistence.db import SessionLocal
from ticketvault.services.archival.suggestions import (
    REASON_BELOW_THRESHOLD,
    REASON_NO_SUBSCRIPTION,
    REASON_UNLIMITED,
    build_archival_suggestions,
    suggestion_priority,
    usage_reason,
)
from ticketvault.tests.utils.seed import days_ago, seed_closed_tickets, seed_tenant, seed_ticket, seed_user


@pytest.mark.parametrize(
    ("usage", "days", "expected"),
    [
        (96.0, 1, "high"),
        (10.0, 91, "high"),
        (85.0, 1, "medium"),
        (10.0, 61, "medium"),
        (80.0, 60, "low"),
    ],
)
def test_priority_rises_with_usage_or_age(usage: float, days: int, expected: str) -> None:
    assert suggestion_priority(usage, days) == expected


def test_usage_reason_bands() -> None:
    assert usage_reason(99).startswith("Critical")
    assert usage_reason(90).startswith("Warning")
    assert usage_reason(76).startswith("Notice")


@pytest.mark.asyncio
async def test_no_subscription_and_unlimited_plans_get_no_suggestions() -> None:
    unsubscribed = await seed_tenant(subscribed=False)
    unlimited = await seed_tenant()
    await seed_closed_tickets(unlimited, 3)

    async with SessionLocal() as session:
        first = await build_archival_suggestions(session, unsubscribed)
        second = await build_archival_suggestions(session, unlimited)

    assert (first.should_suggest, first.reason) == (False, REASON_NO_SUBSCRIPTION)
    assert (second.should_suggest, second.reason) == (False, REASON_UNLIMITED)
    assert second.usage_current == 3


@pytest.mark.asyncio
async def test_below_threshold_reports_usage_only() -> None:
    tenant_id = await seed_tenant(completed_limit=10)
    await seed_closed_tickets(tenant_id, 5)

    async with SessionLocal() as session:
        report = await build_archival_suggestions(session, tenant_id)

    payload = report.to_dict()
    assert payload["shouldSuggestArchival"] is False
    assert payload["reason"] == REASON_BELOW_THRESHOLD
    assert payload["usageInfo"] == {"current": 5, "limit": 10, "percentage": 50.0}
    assert payload["suggestions"] == []


@pytest.mark.asyncio
async def test_near_limit_suggests_any_completed_ticket() -> None:
    tenant_id = await seed_tenant(completed_limit=4, automation=True)
    recent = await seed_ticket(tenant_id, status="closed", closed_at=days_ago(2))
    ancient = await seed_ticket(tenant_id, status="resolved", resolved_at=days_ago(120))
    await seed_ticket(tenant_id, status="closed", closed_at=days_ago(70))
    next_run = datetime(2026, 5, 1, tzinfo=timezone.utc)

    async with SessionLocal() as session:
        report = await build_archival_suggestions(session, tenant_id, next_run_at=next_run)

    payload = report.to_dict()
    assert payload["shouldSuggestArchival"] is True
    assert payload["reason"].startswith("Notice")
    assert payload["automationAvailable"] is True
    assert payload["nextRunAt"] == "2026-05-01T00:00:00+00:00"
    ids = [item["ticketId"] for item in payload["suggestions"]]
    assert ids[0] == ancient
    assert ids[-1] == recent
    assert [item["priority"] for item in payload["suggestions"]] == ["high", "medium", "low"]


@pytest.mark.asyncio
async def test_customer_scope_only_lists_own_tickets() -> None:
    tenant_id = await seed_tenant(completed_limit=2)
    customer = await seed_user(tenant_id, role="customer")
    own = await seed_ticket(tenant_id, status="closed", closed_at=days_ago(10), created_by=customer)
    await seed_ticket(tenant_id, status="closed", closed_at=days_ago(10))

    async with SessionLocal() as session:
        report = await build_archival_suggestions(session, tenant_id, owner_ids=[customer])

    assert [item.ticket_id for item in report.suggestions] == [own]
    assert report.automation_available is False
    assert report.next_run_at is None
