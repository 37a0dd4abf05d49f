"""Kommo CRM REST v4 client and OAuth helpers.

KommoClient exposes one ``fetch_*`` method per resource the sync needs. Each
call:
- resolves a valid bearer token and API domain through the token store
  (refreshing tokens that are expired or about to expire)
- waits for a slot on the shared rate limiter (keyed by API domain)
- is bounded by a per-request timeout (KommoTimeoutError on expiry)
- retries 429/5xx and connection failures with exponential backoff (tenacity)
- raises KommoAPIError(status_code, body) on any other non-2xx answer

Every method returns the raw ``{"_embedded": {...}}`` envelope.

KommoOAuthClient wraps the OAuth endpoints on the account's base domain
(authorization URL, code exchange, refresh).

Both take an injected httpx.AsyncClient created once at application startup.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode, urlparse

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from src.app.core.monitoring import kommo_api_request_duration_seconds, kommo_api_requests_total
from src.app.platform.crm.rate_limit import SlidingWindowRateLimiter
from src.app.platform.exceptions import KommoAPIError, KommoTimeoutError

if TYPE_CHECKING:
    from src.app.platform.crm.tokens import KommoTokenStore

logger = structlog.get_logger(__name__)

PIPELINES_PATH = "/api/v4/leads/pipelines"
LEADS_CUSTOM_FIELDS_PATH = "/api/v4/leads/custom_fields"
CONTACTS_CUSTOM_FIELDS_PATH = "/api/v4/contacts/custom_fields"
USERS_PATH = "/api/v4/users"
ACCOUNT_PATH = "/api/v4/account"
SALESBOTS_PATH = "/api/v4/bots"
SOURCES_PATH = "/api/v4/sources"

PAGE_LIMIT = 250


def _is_transient(exc: BaseException) -> bool:
    """429/5xx answers and connection failures are worth another attempt."""
    if isinstance(exc, KommoAPIError):
        return exc.retryable
    if isinstance(exc, httpx.TimeoutException):
        return False
    return isinstance(exc, httpx.TransportError)


def _default_wait() -> wait_base:
    return wait_exponential(multiplier=0.5, min=0.5, max=4)


# ── OAuth ───────────────────────────────────────────────────────────────────


class KommoOAuthClient:
    """OAuth 2.0 endpoints of a Kommo account.

    Args:
        http: Shared httpx.AsyncClient.
        client_id: Integration client id.
        client_secret: Integration client secret.
        redirect_uri: Redirect URI registered for the integration.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        timeout: float = 15.0,
    ) -> None:
        self._http = http
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._timeout = timeout

    def authorization_url(self, base_domain: str, state: str) -> str:
        """Build the URL the user opens to grant access."""
        params = urlencode(
            {
                "client_id": self._client_id,
                "redirect_uri": self._redirect_uri,
                "response_type": "code",
                "state": state,
                "mode": "post_message",
            }
        )
        return f"https://{base_domain}/oauth?{params}"

    async def _token_request(self, base_domain: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"https://{base_domain}/oauth2/access_token"
        body = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "redirect_uri": self._redirect_uri,
            **payload,
        }
        try:
            response = await self._http.post(url, json=body, timeout=self._timeout)
        except httpx.TimeoutException as exc:
            raise KommoTimeoutError("/oauth2/access_token", self._timeout) from exc
        if response.status_code >= 400:
            raise KommoAPIError(response.status_code, response.text, "/oauth2/access_token")
        return response.json()

    async def exchange_code(self, code: str, referer: str) -> dict[str, Any]:
        """Trade an authorization code for a token pair.

        Args:
            code: Authorization code from the callback.
            referer: Account domain Kommo sent back (``acme.kommo.com`` or a URL).

        Returns:
            Dict with access_token, refresh_token, expires_in and base_domain.
        """
        base_domain = urlparse(referer).hostname if "://" in referer else referer
        data = await self._token_request(
            base_domain, {"grant_type": "authorization_code", "code": code}
        )
        logger.info("kommo.oauth_code_exchanged", base_domain=base_domain)
        return {
            "access_token": data["access_token"],
            "refresh_token": data["refresh_token"],
            "expires_in": int(data["expires_in"]),
            "base_domain": base_domain,
        }

    async def refresh(self, base_domain: str, refresh_token: str) -> dict[str, Any]:
        """Obtain a new token pair from a refresh token."""
        data = await self._token_request(
            base_domain, {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )
        return {
            "access_token": data["access_token"],
            "refresh_token": data["refresh_token"],
            "expires_in": int(data["expires_in"]),
        }


# ── REST Client ─────────────────────────────────────────────────────────────


class KommoClient:
    """Rate-limited, retrying Kommo REST v4 client.

    Args:
        http: Shared httpx.AsyncClient.
        token_store: Resolves a valid AccessGrant per integration.
        rate_limiter: Limiter shared by every call to the same API domain.
        timeout: Per-request timeout in seconds.
        max_attempts: Attempts per call, including the first.
        retry_wait: tenacity wait strategy between attempts.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        token_store: KommoTokenStore,
        rate_limiter: SlidingWindowRateLimiter,
        timeout: float = 15.0,
        max_attempts: int = 3,
        retry_wait: wait_base | None = None,
    ) -> None:
        self._http = http
        self._tokens = token_store
        self._limiter = rate_limiter
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._retry_wait = retry_wait or _default_wait()

    async def _get(
        self, integration_id: str, path: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """GET ``path`` for an integration with limiting, timeout and retries."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception(_is_transient),
            reraise=True,
        ):
            with attempt:
                return await self._request_once(integration_id, path, params)
        raise AssertionError("unreachable")  # pragma: no cover

    async def _request_once(
        self, integration_id: str, path: str, params: dict[str, Any] | None
    ) -> dict[str, Any]:
        grant = await self._tokens.get_valid_access_token(integration_id)
        await self._limiter.acquire(grant.api_domain)

        url = f"https://{grant.api_domain}{path}"
        start = time.perf_counter()
        try:
            response = await self._http.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {grant.token}"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            kommo_api_requests_total.labels(endpoint=path, status="timeout").inc()
            logger.warning("kommo.request_timeout", path=path, timeout=self._timeout)
            raise KommoTimeoutError(path, self._timeout) from exc
        finally:
            kommo_api_request_duration_seconds.labels(endpoint=path).observe(
                time.perf_counter() - start
            )

        kommo_api_requests_total.labels(endpoint=path, status=str(response.status_code)).inc()

        if response.status_code == 204:
            return {"_embedded": {}}
        if response.status_code >= 400:
            logger.warning(
                "kommo.request_failed",
                path=path,
                status_code=response.status_code,
                integration_id=integration_id,
            )
            raise KommoAPIError(response.status_code, response.text, path)
        try:
            return response.json()
        except ValueError as exc:
            # Maintenance and proxy pages answer 200 with HTML
            logger.warning(
                "kommo.invalid_json",
                path=path,
                status_code=response.status_code,
                integration_id=integration_id,
            )
            raise KommoAPIError(response.status_code, response.text, path) from exc

    # ── Resources ───────────────────────────────────────────────────────────

    async def fetch_pipelines(self, integration_id: str) -> dict[str, Any]:
        """Lead pipelines with their statuses (``_embedded.pipelines``)."""
        return await self._get(integration_id, PIPELINES_PATH)

    async def fetch_leads_custom_fields(self, integration_id: str) -> dict[str, Any]:
        """Custom fields defined on leads (``_embedded.custom_fields``)."""
        return await self._get(integration_id, LEADS_CUSTOM_FIELDS_PATH, {"limit": PAGE_LIMIT})

    async def fetch_contacts_custom_fields(self, integration_id: str) -> dict[str, Any]:
        """Custom fields defined on contacts (``_embedded.custom_fields``)."""
        return await self._get(
            integration_id, CONTACTS_CUSTOM_FIELDS_PATH, {"limit": PAGE_LIMIT}
        )

    async def fetch_users(self, integration_id: str) -> dict[str, Any]:
        """Account users with their rights (``_embedded.users``)."""
        return await self._get(integration_id, USERS_PATH, {"limit": PAGE_LIMIT})

    async def fetch_task_types(self, integration_id: str) -> dict[str, Any]:
        """Task types, read from the account resource (``_embedded.task_types``)."""
        account = await self._get(integration_id, ACCOUNT_PATH, {"with": "task_types"})
        task_types = (account.get("_embedded") or {}).get("task_types") or []
        return {"_embedded": {"task_types": task_types}}

    async def fetch_salesbots(self, integration_id: str) -> dict[str, Any]:
        """Salesbots configured on the account (``_embedded.bots``)."""
        return await self._get(integration_id, SALESBOTS_PATH)

    async def fetch_sources(self, integration_id: str) -> dict[str, Any]:
        """Lead sources, i.e. connected channels (``_embedded.sources``)."""
        return await self._get(integration_id, SOURCES_PATH)
