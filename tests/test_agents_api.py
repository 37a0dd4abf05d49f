"""Agent, notification, health and authentication API tests.

Tests Bearer JWT authentication on protected endpoints, agent CRUD with
ownership checks, the notification inbox, request ids and health probes.
"""

from __future__ import annotations

from datetime import timedelta

from jose import jwt

from src.app.config import get_settings
from src.app.core.security import (
    create_access_token,
    hash_password,
    verify_password,
    verify_token,
)
from src.app.platform.schemas import AgentCreate, NotificationCreate


# ── Authentication ───────────────────────────────────────────────────────────


def test_access_token_claims():
    token = create_access_token({"sub": "user-1"})

    settings = get_settings()
    payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    assert payload["sub"] == "user-1"
    assert payload["type"] == "access"
    assert verify_token(token)["sub"] == "user-1"


def test_password_hashing():
    hashed = hash_password("s3cret")

    assert hashed != "s3cret"
    assert verify_password("s3cret", hashed) is True
    assert verify_password("wrong", hashed) is False


async def test_access_without_token(client):
    response = await client.get("/api/agents")

    assert response.status_code == 401


async def test_access_with_expired_token(client, user):
    token = create_access_token({"sub": user.id}, expires_delta=timedelta(seconds=-5))

    response = await client.get("/api/agents", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


async def test_response_has_request_id(client, auth_headers):
    response = await client.get("/api/agents", headers=auth_headers)

    assert response.status_code == 200
    assert "X-Request-ID" in response.headers
    assert len(response.headers["X-Request-ID"]) == 36


# ── Agents ───────────────────────────────────────────────────────────────────


async def test_create_and_list_agents(client, auth_headers, repo, other_user):
    await repo.agents.create(AgentCreate(name="Not mine", user_id=other_user.id))

    created = await client.post(
        "/api/agents",
        json={"name": "Support bot", "is_active": True, "pipeline_settings": {"all": True}},
        headers=auth_headers,
    )
    assert created.status_code == 201, created.text
    assert created.json()["is_active"] is True
    assert created.json()["pipeline_settings"] == {"all": True}

    listed = await client.get("/api/agents", headers=auth_headers)
    assert [a["name"] for a in listed.json()] == ["Support bot"]


async def test_get_agent_ownership(client, auth_headers, repo, agent, other_user):
    own = await client.get(f"/api/agents/{agent.id}", headers=auth_headers)
    assert own.status_code == 200
    assert own.json()["name"] == "Sales bot"

    foreign = await repo.agents.create(AgentCreate(name="Theirs", user_id=other_user.id))
    denied = await client.get(f"/api/agents/{foreign.id}", headers=auth_headers)
    assert denied.status_code == 403

    missing = await client.get("/api/agents/missing", headers=auth_headers)
    assert missing.status_code == 404


async def test_patch_agent_writes_only_present_fields(client, auth_headers, repo, user):
    agent = await repo.agents.create(
        AgentCreate(name="Bot", user_id=user.id, system_instructions="Be brief")
    )

    response = await client.patch(
        f"/api/agents/{agent.id}", json={"name": "Renamed"}, headers=auth_headers
    )

    assert response.status_code == 200
    assert response.json()["name"] == "Renamed"
    assert response.json()["system_instructions"] == "Be brief"

    cleared = await client.patch(
        f"/api/agents/{agent.id}", json={"system_instructions": None}, headers=auth_headers
    )
    assert cleared.json()["system_instructions"] is None
    assert cleared.json()["name"] == "Renamed"


async def test_delete_agent(client, auth_headers, repo, agent):
    response = await client.delete(f"/api/agents/{agent.id}", headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {"success": True, "id": agent.id}
    assert await repo.agents.find_first({"id": agent.id}) is None


async def test_agents_503_when_not_initialized(app, client, auth_headers):
    app.state.platform_repository = None

    response = await client.get("/api/agents", headers=auth_headers)

    assert response.status_code == 503


# ── Notifications ────────────────────────────────────────────────────────────


async def test_list_and_mark_notifications(client, auth_headers, repo, user):
    first = await repo.notifications.create(
        NotificationCreate(user_id=user.id, title="One", message="m", type="success")
    )
    await repo.notifications.create(
        NotificationCreate(user_id=user.id, title="Two", message="m", type="error")
    )

    listed = await client.get("/api/notifications", headers=auth_headers)
    assert listed.status_code == 200
    assert {n["title"] for n in listed.json()} == {"One", "Two"}

    marked = await client.patch(f"/api/notifications/{first.id}/read", headers=auth_headers)
    assert marked.status_code == 200
    assert marked.json()["is_read"] is True

    unread = await client.get(
        "/api/notifications", params={"unreadOnly": "true"}, headers=auth_headers
    )
    assert [n["title"] for n in unread.json()] == ["Two"]


async def test_mark_other_users_notification_is_404(client, auth_headers, repo, other_user):
    theirs = await repo.notifications.create(
        NotificationCreate(user_id=other_user.id, title="Private", message="m")
    )

    response = await client.patch(f"/api/notifications/{theirs.id}/read", headers=auth_headers)

    assert response.status_code == 404


# ── Health ───────────────────────────────────────────────────────────────────


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


async def test_metrics_endpoint(client):
    await client.get("/health")

    response = await client.get("/metrics")

    assert response.status_code == 200
    assert "http_requests_total" in response.text
