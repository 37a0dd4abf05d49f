"""Shared test fixtures for the platform.

Provides:
- A per-test SQLite database file with every table created
- A PlatformRepository bound to that engine
- A seeded user with one agent, and a second user for ownership checks
- A Kommo client double (AsyncMock) with canned envelopes
- A FastAPI app with services placed directly on app.state (no lifespan)
- An async HTTP client for that app and Bearer headers for the seeded user
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.app.core.database import build_engine, init_db, make_session_factory
from src.app.core.security import create_access_token
from src.app.platform.repository import PlatformRepository
from src.app.platform.schemas import AgentCreate, UserCreate


# ── Database ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database file per test."""
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'platform.db'}")
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest_asyncio.fixture
async def repo(engine) -> PlatformRepository:
    return PlatformRepository(session_factory=make_session_factory(engine))


@pytest_asyncio.fixture
async def user(repo):
    return await repo.users.create(
        UserCreate(email="owner@example.com", password_hash="hashed", name="Owner")
    )


@pytest_asyncio.fixture
async def other_user(repo):
    return await repo.users.create(
        UserCreate(email="intruder@example.com", password_hash="hashed", name="Intruder")
    )


@pytest_asyncio.fixture
async def agent(repo, user):
    return await repo.agents.create(AgentCreate(name="Sales bot", user_id=user.id))


# ── Kommo ────────────────────────────────────────────────────────────────────


@pytest.fixture
def kommo_client() -> AsyncMock:
    """Kommo client double answering every fetch with a small account.

    One pipeline with two stages, one custom deal field, one active user,
    one salesbot, no task types and no sources.
    """
    client = AsyncMock()
    client.fetch_pipelines.return_value = {
        "_embedded": {
            "pipelines": [
                {
                    "id": 1,
                    "name": "Sales",
                    "_embedded": {
                        "statuses": [{"id": 11, "name": "New"}, {"id": 12, "name": "Won"}]
                    },
                }
            ]
        }
    }
    client.fetch_leads_custom_fields.return_value = {
        "_embedded": {"custom_fields": [{"id": 5, "name": "Budget", "type": "numeric"}]}
    }
    client.fetch_contacts_custom_fields.return_value = {"_embedded": {"custom_fields": []}}
    client.fetch_users.return_value = {
        "_embedded": {"users": [{"id": 1, "name": "Ana", "rights": {"is_active": True}}]}
    }
    client.fetch_task_types.return_value = {"_embedded": {"task_types": []}}
    client.fetch_salesbots.return_value = {"_embedded": {"bots": [{"id": 3, "name": "Bot"}]}}
    client.fetch_sources.return_value = {"_embedded": {"sources": []}}
    return client


# ── API ──────────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def app(repo):
    """FastAPI app with the repository on app.state.

    Tests that exercise Kommo endpoints set ``kommo_sync_engine``,
    ``kommo_token_store`` or ``kommo_oauth`` themselves.
    """
    from src.app.main import create_app

    application = create_app()
    application.state.platform_repository = repo
    yield application
    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def auth_headers(user) -> dict[str, str]:
    """Bearer headers for the seeded user."""
    token = create_access_token({"sub": user.id})
    return {"Authorization": f"Bearer {token}"}
