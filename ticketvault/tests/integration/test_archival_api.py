from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from ticketvault.apps.api.main import create_app
from ticketvault.services.archival.runner import ArchivalConfig, ArchivalRunSummary
from ticketvault.services.archival.scheduler import ArchivalScheduler
from ticketvault.tests.utils.seed import (
    auth_headers,
    days_ago,
    seed_closed_tickets,
    seed_tenant,
    seed_ticket,
    seed_user,
)


async def _staffed_tenant(**tenant_kwargs) -> tuple[str, str, str]:
    tenant_id = await seed_tenant(**tenant_kwargs)
    agent = await seed_user(tenant_id, role="agent")
    admin = await seed_user(tenant_id, role="admin", tenant_role="admin")
    return tenant_id, agent, admin


@pytest.mark.asyncio
async def test_health(client) -> None:
    response = await client.get("/v1/health")
    assert response.status_code == 200
    assert response.json()["data"] == {"status": "ok"}


@pytest.mark.asyncio
async def test_archive_and_restore_single_ticket(client) -> None:
    tenant_id, agent, _ = await _staffed_tenant()
    ticket_id = await seed_ticket(tenant_id, status="closed", closed_at=days_ago(40))
    headers = auth_headers(tenant_id, agent, "agent")

    archived = await client.post(f"/v1/archival/tickets/{ticket_id}/archive", headers=headers)
    again = await client.post(f"/v1/archival/tickets/{ticket_id}/archive", headers=headers)
    restored = await client.post(f"/v1/archival/tickets/{ticket_id}/restore", headers=headers)
    conflict = await client.post(f"/v1/archival/tickets/{ticket_id}/restore", headers=headers)
    missing = await client.post("/v1/archival/tickets/nope/archive", headers=headers)

    assert archived.status_code == 200
    assert archived.json()["data"] == {"ticketId": ticket_id, "success": True, "alreadyArchived": False}
    assert again.json()["data"]["alreadyArchived"] is True
    assert restored.status_code == 200
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "ARCHIVE_CONFLICT"
    assert conflict.json()["error"]["details"] == {"reason": "not_archived"}
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_open_ticket_archive_conflicts_and_customers_are_forbidden(client) -> None:
    tenant_id, _, _ = await _staffed_tenant()
    customer = await seed_user(tenant_id, role="customer")
    ticket_id = await seed_ticket(tenant_id, status="open")

    as_customer = await client.post(
        f"/v1/archival/tickets/{ticket_id}/archive", headers=auth_headers(tenant_id, customer, "customer")
    )
    open_ticket = await client.post(
        f"/v1/archival/tickets/{ticket_id}/archive", headers=auth_headers(tenant_id, "agent-x", "agent")
    )

    assert as_customer.status_code == 403
    assert open_ticket.status_code == 409
    assert open_ticket.json()["error"]["details"] == {"reason": "invalid_status"}


@pytest.mark.asyncio
async def test_bulk_archive(client) -> None:
    tenant_id, agent, _ = await _staffed_tenant()
    closed = await seed_closed_tickets(tenant_id, 2)
    open_ticket = await seed_ticket(tenant_id, status="open")

    response = await client.post(
        "/v1/archival/tickets/bulk-archive",
        json={"ticketIds": [*closed, open_ticket]},
        headers=auth_headers(tenant_id, agent, "agent"),
    )
    empty = await client.post(
        "/v1/archival/tickets/bulk-archive", json={"ticketIds": []}, headers=auth_headers(tenant_id, agent, "agent")
    )

    data = response.json()["data"]
    assert data["successful"] == closed
    assert data["failed"][0]["ticketId"] == open_ticket
    assert data["archivedCount"] == 2
    assert empty.status_code == 422


@pytest.mark.asyncio
async def test_candidates_are_scoped_for_customers(client) -> None:
    tenant_id, agent, _ = await _staffed_tenant()
    customer = await seed_user(tenant_id, role="customer")
    own = await seed_ticket(tenant_id, status="closed", closed_at=days_ago(45), created_by=customer)
    await seed_ticket(tenant_id, status="closed", closed_at=days_ago(50), created_by=agent)

    as_agent = await client.get("/v1/archival/candidates", headers=auth_headers(tenant_id, agent, "agent"))
    as_customer = await client.get(
        "/v1/archival/candidates", headers=auth_headers(tenant_id, customer, "customer")
    )
    strict = await client.get(
        "/v1/archival/candidates?ageThresholdDays=47", headers=auth_headers(tenant_id, agent, "agent")
    )

    assert as_agent.json()["data"]["count"] == 2
    assert [item["ticketId"] for item in as_customer.json()["data"]["candidates"]] == [own]
    assert strict.json()["data"]["count"] == 1


@pytest.mark.asyncio
async def test_suggestions_endpoint(client) -> None:
    tenant_id, agent, _ = await _staffed_tenant(completed_limit=2, automation=True)
    await seed_closed_tickets(tenant_id, 2)

    response = await client.get("/v1/archival/suggestions", headers=auth_headers(tenant_id, agent, "agent"))

    data = response.json()["data"]
    assert data["shouldSuggestArchival"] is True
    assert data["usageInfo"]["percentage"] == 100.0
    assert data["automationAvailable"] is True
    # The scheduler is not armed in tests, so there is no next run.
    assert data["nextRunAt"] is None
    assert len(data["suggestions"]) == 2


@pytest.mark.asyncio
async def test_manual_run_and_status(client) -> None:
    tenant_id, _, admin = await _staffed_tenant(completed_limit=2, automation=True)
    await seed_closed_tickets(tenant_id, 2)
    headers = auth_headers(tenant_id, admin, "admin")

    run = await client.post("/v1/archival/run", headers=headers)
    status = await client.get("/v1/archival/status", headers=headers)
    history = await client.get(f"/v1/data/history/{tenant_id}", headers=headers)

    assert run.status_code == 200
    assert run.json()["data"]["status"] == "completed"
    assert run.json()["data"]["summary"]["totalArchived"] == 2
    status_data = status.json()["data"]
    assert status_data["armed"] is False
    assert status_data["lastRun"]["runId"] == run.json()["data"]["summary"]["runId"]
    assert status_data["config"]["ageThresholdDays"] == 30
    assert history.json()["data"]["archivals"][0]["payload"]["archivedCount"] == 2


@pytest.mark.asyncio
async def test_run_requires_admin(client) -> None:
    tenant_id, agent, _ = await _staffed_tenant()

    response = await client.post("/v1/archival/run", headers=auth_headers(tenant_id, agent, "agent"))

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_trigger_requires_feature_and_bypasses_quota(client) -> None:
    plain, _, plain_admin = await _staffed_tenant(completed_limit=1000)
    entitled, _, entitled_admin = await _staffed_tenant(completed_limit=1000, automation=True)
    await seed_closed_tickets(entitled, 3)

    denied = await client.post("/v1/archival/trigger", headers=auth_headers(plain, plain_admin, "admin"))
    allowed = await client.post("/v1/archival/trigger", headers=auth_headers(entitled, entitled_admin, "admin"))

    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "FEATURE_NOT_ENABLED"
    assert allowed.status_code == 200
    assert allowed.json()["data"]["archivedCount"] == 3


class _BlockingRunner:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def run(self, config: ArchivalConfig | None = None) -> ArchivalRunSummary:
        self.started.set()
        await self.release.wait()
        now = datetime.now(timezone.utc)
        return ArchivalRunSummary(run_id="blocked", started_at=now, finished_at=now, enabled=True)


@pytest.mark.asyncio
async def test_run_during_active_pass_is_skipped() -> None:
    tenant_id, _, admin = await _staffed_tenant()
    runner = _BlockingRunner()
    scheduler = ArchivalScheduler(runner, interval_hours=24)  # type: ignore[arg-type]
    app = create_app(scheduler=scheduler)

    in_flight = asyncio.create_task(scheduler.run_now(trigger="scheduled"))
    await runner.started.wait()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        response = await http_client.post("/v1/archival/run", headers=auth_headers(tenant_id, admin, "admin"))
    runner.release.set()
    await in_flight

    assert response.status_code == 200
    assert response.json()["data"] == {"status": "skipped_in_progress", "summary": None}
    assert scheduler.get_status()["skippedRuns"] == 1


@pytest.mark.asyncio
async def test_archived_search_and_stats_endpoints(client) -> None:
    tenant_id, agent, _ = await _staffed_tenant()
    customer = await seed_user(tenant_id, role="customer")
    newest = await seed_ticket(tenant_id, title="Refund request", status="closed", archived_at=days_ago(2))
    owned = await seed_ticket(
        tenant_id, title="Login loop", status="resolved", archived_at=days_ago(5), created_by=customer
    )
    await seed_ticket(tenant_id, title="Refund pending", status="closed", closed_at=days_ago(40))
    agent_headers = auth_headers(tenant_id, agent, "agent")

    everything = await client.get("/v1/archival/archived", headers=agent_headers)
    filtered = await client.get(
        "/v1/archival/archived", params={"q": "refund", "status": ["closed"]}, headers=agent_headers
    )
    paged = await client.get("/v1/archival/archived", params={"limit": 1, "offset": 1}, headers=agent_headers)
    as_customer = await client.get(
        "/v1/archival/archived", headers=auth_headers(tenant_id, customer, "customer")
    )
    stats = await client.get("/v1/archival/stats", headers=agent_headers)

    assert [item["ticketId"] for item in everything.json()["data"]["tickets"]] == [newest, owned]
    assert [item["ticketId"] for item in filtered.json()["data"]["tickets"]] == [newest]
    assert paged.json()["data"]["total"] == 2
    assert [item["ticketId"] for item in paged.json()["data"]["tickets"]] == [owned]
    assert [item["ticketId"] for item in as_customer.json()["data"]["tickets"]] == [owned]
    stats_data = stats.json()["data"]
    assert stats_data["totalArchived"] == 2
    assert stats_data["newestArchived"] is not None
    assert stats_data["oldestArchived"] < stats_data["newestArchived"]
