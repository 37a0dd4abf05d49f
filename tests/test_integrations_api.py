"""Tests for the integrations REST API and the Kommo sync endpoints.

Uses httpx AsyncClient with ASGITransport against the FastAPI app. The
repository is real (SQLite file per test); the sync engine is either a
KommoSyncEngine over an AsyncMock Kommo client, or an AsyncMock engine when
only the error translation is under test.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from tenacity import wait_none

from src.app.platform.crm.kommo import KommoClient
from src.app.platform.crm.rate_limit import SlidingWindowRateLimiter
from src.app.platform.crm.sync import KommoSyncEngine
from src.app.platform.crm.tokens import AccessGrant
from src.app.platform.exceptions import (
    AccessDeniedError,
    KommoAPIError,
    NotFoundError,
    PreconditionFailedError,
    SyncInProgressError,
)
from src.app.platform.notifications import NotificationService
from src.app.platform.schemas import AgentCreate, IntegrationStats


async def _no_sleep(seconds: float) -> None:
    return None


@pytest_asyncio.fixture
async def sync_engine(app, repo, kommo_client) -> KommoSyncEngine:
    engine = KommoSyncEngine(
        repository=repo,
        client=kommo_client,
        notifications=NotificationService(repo.notifications),
        batch_delay=0,
        sleep=_no_sleep,
    )
    app.state.kommo_sync_engine = engine
    return engine


@pytest_asyncio.fixture
async def mock_engine(app) -> AsyncMock:
    engine = AsyncMock()
    app.state.kommo_sync_engine = engine
    return engine


# ── Kommo Sync ───────────────────────────────────────────────────────────────


async def test_sync_success(client, auth_headers, repo, agent, sync_engine):
    await repo.upsert_integration(agent.id, "kommo", is_connected=True)

    response = await client.post(
        f"/api/agents/{agent.id}/integrations/kommo/sync", headers=auth_headers
    )

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["success"] is True
    assert data["message"] == "Kommo sync completed successfully"
    assert "lastSynced" in data
    assert data["stats"]["pipelines"] == 1
    assert data["stats"]["dealFields"] == 7
    assert "syncTime" in data["stats"]
    assert "snapshot" not in data


async def test_sync_requires_auth(client, agent, sync_engine):
    response = await client.post(f"/api/agents/{agent.id}/integrations/kommo/sync")

    assert response.status_code == 401


async def test_sync_rejects_invalid_token(client, agent, sync_engine):
    response = await client.post(
        f"/api/agents/{agent.id}/integrations/kommo/sync",
        headers={"Authorization": "Bearer not-a-token"},
    )

    assert response.status_code == 401


async def test_sync_disconnected_integration_is_400(client, auth_headers, repo, agent, sync_engine):
    await repo.upsert_integration(agent.id, "kommo", is_connected=False)

    response = await client.post(
        f"/api/agents/{agent.id}/integrations/kommo/sync", headers=auth_headers
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Kommo integration is not connected"


async def test_sync_other_users_agent_is_403(client, auth_headers, repo, other_user, sync_engine):
    foreign = await repo.agents.create(AgentCreate(name="Theirs", user_id=other_user.id))

    response = await client.post(
        f"/api/agents/{foreign.id}/integrations/kommo/sync", headers=auth_headers
    )

    assert response.status_code == 403


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (NotFoundError("agent", "a-1"), 404),
        (NotFoundError("Kommo integration", "a-1"), 404),
        (AccessDeniedError(), 403),
        (PreconditionFailedError("Kommo integration is not connected"), 400),
        (SyncInProgressError("a-1"), 409),
    ],
)
async def test_sync_error_translation(client, auth_headers, mock_engine, error, status_code):
    mock_engine.sync.side_effect = error

    response = await client.post("/api/agents/a-1/integrations/kommo/sync", headers=auth_headers)

    assert response.status_code == status_code
    assert response.json()["detail"] == str(error)


async def test_sync_upstream_failure_is_500_body(client, auth_headers, mock_engine):
    mock_engine.sync.side_effect = KommoAPIError(502, "Bad Gateway", "/api/v4/users")

    response = await client.post("/api/agents/a-1/integrations/kommo/sync", headers=auth_headers)

    assert response.status_code == 500
    data = response.json()
    assert data["success"] is False
    assert data["message"].startswith("Kommo sync failed:")
    assert "502" in data["message"]


async def test_sync_non_json_upstream_body_is_500_body(client, app, auth_headers, repo, agent):
    await repo.upsert_integration(agent.id, "kommo", is_connected=True)
    token_store = AsyncMock()
    token_store.get_valid_access_token.return_value = AccessGrant(
        token="t", base_domain="acme.kommo.com", api_domain="api-c.kommo.com"
    )
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, text="<html>maintenance</html>")
        )
    )
    app.state.kommo_sync_engine = KommoSyncEngine(
        repository=repo,
        client=KommoClient(
            http=http,
            token_store=token_store,
            rate_limiter=SlidingWindowRateLimiter(100, 1.0),
            retry_wait=wait_none(),
        ),
        notifications=NotificationService(repo.notifications),
        batch_delay=0,
        sleep=_no_sleep,
    )

    response = await client.post(
        f"/api/agents/{agent.id}/integrations/kommo/sync", headers=auth_headers
    )
    await http.aclose()

    assert response.status_code == 500
    data = response.json()
    assert data["success"] is False
    assert data["message"].startswith("Kommo sync failed:")
    loaded = await repo.agents.find_first({"id": agent.id})
    assert loaded.crm_data is None


async def test_sync_value_error_is_500_body(client, auth_headers, mock_engine):
    mock_engine.sync.side_effect = ValueError("bad snapshot")

    response = await client.post("/api/agents/a-1/integrations/kommo/sync", headers=auth_headers)

    assert response.status_code == 500
    assert response.json() == {"success": False, "message": "Kommo sync failed: bad snapshot"}


async def test_sync_503_when_not_initialized(app, client, auth_headers):
    app.state.kommo_sync_engine = None

    response = await client.post("/api/agents/a-1/integrations/kommo/sync", headers=auth_headers)

    assert response.status_code == 503


# ── Stats ────────────────────────────────────────────────────────────────────


async def test_stats_camel_case(client, auth_headers, mock_engine):
    mock_engine.get_stats.return_value = IntegrationStats(
        pipelines=2, stages=9, users=3, deal_fields=10, contact_fields=8, channels=5
    )

    response = await client.get("/api/agents/a-1/integrations/kommo/stats", headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {
        "pipelines": 2,
        "stages": 9,
        "users": 3,
        "dealFields": 10,
        "contactFields": 8,
        "channels": 5,
        "lastSync": None,
    }


async def test_stats_after_real_sync(client, auth_headers, repo, agent, sync_engine):
    await repo.upsert_integration(agent.id, "kommo", is_connected=True)
    await client.post(f"/api/agents/{agent.id}/integrations/kommo/sync", headers=auth_headers)

    response = await client.get(
        f"/api/agents/{agent.id}/integrations/kommo/stats", headers=auth_headers
    )

    assert response.status_code == 200
    data = response.json()
    assert data["pipelines"] == 1
    assert data["stages"] == 2
    assert data["lastSync"] is not None


async def test_stats_with_free_form_settings(client, auth_headers, agent, sync_engine):
    await client.post(
        f"/api/agents/{agent.id}/integrations",
        json={"integration_type": "kommo", "settings": {"pipelines": [{"id": "1"}]}},
        headers=auth_headers,
    )

    response = await client.get(
        f"/api/agents/{agent.id}/integrations/kommo/stats", headers=auth_headers
    )

    assert response.status_code == 200, response.text
    assert response.json()["pipelines"] == 0


async def test_stats_missing_integration_is_404(client, auth_headers, agent, sync_engine):
    response = await client.get(
        f"/api/agents/{agent.id}/integrations/kommo/stats", headers=auth_headers
    )

    assert response.status_code == 404


# ── Integrations ─────────────────────────────────────────────────────────────


async def test_upsert_and_list_integrations(client, auth_headers, agent):
    created = await client.post(
        f"/api/agents/{agent.id}/integrations",
        json={"integration_type": "kommo", "is_active": True},
        headers=auth_headers,
    )
    assert created.status_code == 200, created.text
    assert created.json()["is_active"] is True
    assert created.json()["is_connected"] is False

    updated = await client.post(
        f"/api/agents/{agent.id}/integrations",
        json={"integration_type": "kommo", "is_connected": True},
        headers=auth_headers,
    )
    assert updated.json()["id"] == created.json()["id"]
    assert updated.json()["is_active"] is True
    assert updated.json()["connected_at"] is not None

    listed = await client.get(f"/api/agents/{agent.id}/integrations", headers=auth_headers)
    assert listed.status_code == 200
    assert [i["integration_type"] for i in listed.json()] == ["kommo"]


async def test_list_integrations_unknown_agent_is_404(client, auth_headers):
    response = await client.get("/api/agents/missing/integrations", headers=auth_headers)

    assert response.status_code == 404
