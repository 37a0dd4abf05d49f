"""Tests for the Kommo REST client, OAuth client and token store.

The HTTP layer is an httpx.MockTransport, so every request the client makes
is observable and no network is touched. Retries use ``wait_none`` to keep
the suite fast.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from jose import jwt
from tenacity import wait_none

from src.app.platform.crm.kommo import KommoClient, KommoOAuthClient
from src.app.platform.crm.rate_limit import SlidingWindowRateLimiter
from src.app.platform.crm.tokens import AccessGrant, KommoTokenStore, is_token_expired
from src.app.platform.exceptions import (
    KommoAPIError,
    KommoTimeoutError,
    PreconditionFailedError,
    TokenNotFoundError,
)
from src.app.platform.schemas import IntegrationCreate, KommoTokenRead


# ── Test Doubles ─────────────────────────────────────────────────────────────


class StaticTokenStore:
    """Token store that always hands out the same grant."""

    def __init__(self) -> None:
        self.grant = AccessGrant(
            token="token-abc", base_domain="acme.kommo.com", api_domain="api-c.kommo.com"
        )

    async def get_valid_access_token(self, integration_id: str) -> AccessGrant:
        return self.grant


class Recorder:
    """MockTransport handler replaying a list of responses or exceptions."""

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, type) and issubclass(outcome, Exception):
            raise outcome("boom", request=request)
        return outcome


def _client(recorder: Recorder, max_attempts: int = 3) -> KommoClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return KommoClient(
        http=http,
        token_store=StaticTokenStore(),
        rate_limiter=SlidingWindowRateLimiter(100, 1.0),
        timeout=1.0,
        max_attempts=max_attempts,
        retry_wait=wait_none(),
    )


PIPELINES = {"_embedded": {"pipelines": [{"id": 1, "name": "Sales"}]}}


# ── REST Client ──────────────────────────────────────────────────────────────


async def test_fetch_sends_bearer_to_api_domain():
    recorder = Recorder(httpx.Response(200, json=PIPELINES))

    result = await _client(recorder).fetch_pipelines("int-1")

    assert result == PIPELINES
    request = recorder.requests[0]
    assert request.url.host == "api-c.kommo.com"
    assert request.url.path == "/api/v4/leads/pipelines"
    assert request.headers["Authorization"] == "Bearer token-abc"


async def test_no_content_is_empty_envelope():
    recorder = Recorder(httpx.Response(204))

    assert await _client(recorder).fetch_salesbots("int-1") == {"_embedded": {}}


async def test_server_error_is_retried():
    recorder = Recorder(httpx.Response(500, text="oops"), httpx.Response(200, json=PIPELINES))

    result = await _client(recorder).fetch_pipelines("int-1")

    assert result == PIPELINES
    assert len(recorder.requests) == 2


async def test_rate_limited_answer_is_retried_until_exhausted():
    recorder = Recorder(httpx.Response(429, text="slow down"))

    with pytest.raises(KommoAPIError) as exc_info:
        await _client(recorder, max_attempts=3).fetch_users("int-1")

    assert exc_info.value.status_code == 429
    assert len(recorder.requests) == 3


async def test_client_error_is_not_retried():
    recorder = Recorder(httpx.Response(400, text="bad request"))

    with pytest.raises(KommoAPIError) as exc_info:
        await _client(recorder).fetch_users("int-1")

    assert exc_info.value.status_code == 400
    assert exc_info.value.body == "bad request"
    assert exc_info.value.endpoint == "/api/v4/users"
    assert len(recorder.requests) == 1


async def test_timeout_raises_without_retry():
    recorder = Recorder(httpx.ReadTimeout)

    with pytest.raises(KommoTimeoutError):
        await _client(recorder).fetch_sources("int-1")

    assert len(recorder.requests) == 1


async def test_connection_failure_is_retried():
    recorder = Recorder(httpx.ConnectError, httpx.Response(200, json=PIPELINES))

    assert await _client(recorder).fetch_pipelines("int-1") == PIPELINES


async def test_non_json_success_body_raises_api_error():
    recorder = Recorder(httpx.Response(200, text="<html>maintenance</html>"))

    with pytest.raises(KommoAPIError) as exc_info:
        await _client(recorder).fetch_pipelines("int-1")

    assert exc_info.value.status_code == 200
    assert exc_info.value.body == "<html>maintenance</html>"
    assert exc_info.value.endpoint == "/api/v4/leads/pipelines"
    assert len(recorder.requests) == 1
    assert len(recorder.requests) == 2


async def test_task_types_read_from_account():
    account = {"id": 1, "_embedded": {"task_types": [{"id": 1, "name": "Call"}]}}
    recorder = Recorder(httpx.Response(200, json=account))

    result = await _client(recorder).fetch_task_types("int-1")

    assert result == {"_embedded": {"task_types": [{"id": 1, "name": "Call"}]}}
    assert recorder.requests[0].url.params["with"] == "task_types"


async def test_custom_fields_request_page_limit():
    recorder = Recorder(httpx.Response(200, json={"_embedded": {"custom_fields": []}}))

    await _client(recorder).fetch_leads_custom_fields("int-1")

    assert recorder.requests[0].url.params["limit"] == "250"


# ── OAuth ────────────────────────────────────────────────────────────────────


def _oauth(recorder: Recorder) -> KommoOAuthClient:
    return KommoOAuthClient(
        http=httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
        client_id="client-id",
        client_secret="secret",
        redirect_uri="https://app.example.com/api/kommo/callback",
    )


def test_authorization_url_carries_state():
    url = _oauth(Recorder(httpx.Response(200))).authorization_url("acme.kommo.com", "int-1")

    assert url.startswith("https://acme.kommo.com/oauth?")
    assert "state=int-1" in url
    assert "client_id=client-id" in url


async def test_exchange_code_uses_referer_domain():
    recorder = Recorder(
        httpx.Response(
            200, json={"access_token": "a", "refresh_token": "r", "expires_in": 86400}
        )
    )

    data = await _oauth(recorder).exchange_code("code-1", "https://acme.kommo.com")

    assert data == {
        "access_token": "a",
        "refresh_token": "r",
        "expires_in": 86400,
        "base_domain": "acme.kommo.com",
    }
    assert recorder.requests[0].url.host == "acme.kommo.com"
    assert recorder.requests[0].url.path == "/oauth2/access_token"


async def test_exchange_code_error_raises():
    recorder = Recorder(httpx.Response(401, text="invalid code"))

    with pytest.raises(KommoAPIError):
        await _oauth(recorder).exchange_code("bad", "acme.kommo.com")


# ── Token Store ──────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def integration(repo, agent):
    return await repo.integrations.create(
        IntegrationCreate(agent_id=agent.id, integration_type="kommo")
    )


def _store(repo, oauth=None) -> KommoTokenStore:
    return KommoTokenStore(repo.kommo_tokens, oauth or AsyncMock(), "api-g.kommo.com")


async def test_missing_tokens_raise(repo, integration):
    with pytest.raises(TokenNotFoundError):
        await _store(repo).get_valid_access_token(integration.id)


async def test_fresh_token_returned_without_refresh(repo, integration):
    oauth = AsyncMock()
    store = _store(repo, oauth)
    await store.store_tokens(integration.id, "access", "refresh", 3600, "acme.kommo.com")

    grant = await store.get_valid_access_token(integration.id)

    assert grant.token == "access"
    assert grant.api_domain == "api-g.kommo.com"
    oauth.refresh.assert_not_awaited()


async def test_expiring_token_is_refreshed_and_stored(repo, integration):
    oauth = AsyncMock()
    oauth.refresh.return_value = {
        "access_token": "new-access",
        "refresh_token": "new-refresh",
        "expires_in": 86400,
    }
    store = _store(repo, oauth)
    # Expires inside the 5 minute margin
    await store.store_tokens(integration.id, "old", "old-refresh", 60, "acme.kommo.com")

    grant = await store.get_valid_access_token(integration.id)

    assert grant.token == "new-access"
    oauth.refresh.assert_awaited_once_with("acme.kommo.com", "old-refresh")
    stored = await store.get_tokens(integration.id)
    assert stored.refresh_token == "new-refresh"


async def test_store_tokens_replaces_existing_row(repo, integration):
    store = _store(repo)
    await store.store_tokens(integration.id, "a1", "r1", 3600, "acme.kommo.com")
    await store.store_tokens(integration.id, "a2", "r2", 3600, "acme.kommo.com")

    rows = await repo.kommo_tokens.find_many(where={"integration_id": integration.id})

    assert len(rows) == 1
    assert rows[0].access_token == "a2"


async def test_long_lived_token_reads_claims(repo, integration):
    exp = int((datetime.now(timezone.utc) + timedelta(days=30)).timestamp())
    token = jwt.encode(
        {"base_domain": "acme.kommo.com", "account_domain": "api-c.kommo.com", "exp": exp},
        "kommo-secret",
        algorithm="HS256",
    )
    store = _store(repo)

    stored = await store.store_long_lived_token(integration.id, token)

    assert stored.base_domain == "acme.kommo.com"
    assert stored.api_domain == "api-c.kommo.com"
    assert stored.refresh_token == token
    grant = await store.get_valid_access_token(integration.id)
    assert grant.api_domain == "api-c.kommo.com"


async def test_long_lived_token_without_domain_uses_fallback(repo, integration):
    token = jwt.encode({"sub": "1"}, "kommo-secret", algorithm="HS256")

    stored = await _store(repo).store_long_lived_token(
        integration.id, token, fallback_domain="acme.kommo.com"
    )

    assert stored.base_domain == "acme.kommo.com"


async def test_long_lived_token_rejects_garbage(repo, integration):
    with pytest.raises(PreconditionFailedError):
        await _store(repo).store_long_lived_token(integration.id, "not-a-jwt")


def test_is_token_expired_margin():
    now = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

    def tokens(expires_at: datetime) -> KommoTokenRead:
        return KommoTokenRead(
            id="t",
            integration_id="i",
            access_token="a",
            refresh_token="r",
            expires_at=expires_at,
            base_domain="acme.kommo.com",
        )

    assert is_token_expired(tokens(now + timedelta(minutes=4)), now) is True
    assert is_token_expired(tokens(now + timedelta(minutes=10)), now) is False
    # Naive timestamps (as SQLite returns them) are treated as UTC
    assert is_token_expired(tokens((now + timedelta(hours=1)).replace(tzinfo=None)), now) is False
