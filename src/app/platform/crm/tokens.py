"""Kommo OAuth token storage and refresh.

KommoTokenStore persists token pairs through the KommoToken repository and
hands out a valid access token per integration, refreshing it in place when
it is expired or expires within the refresh margin (5 minutes).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from jose import JWTError, jwt

from src.app.platform.crm.kommo import KommoOAuthClient
from src.app.platform.exceptions import PreconditionFailedError, TokenNotFoundError
from src.app.platform.schemas import KommoTokenCreate, KommoTokenRead, KommoTokenUpdate

logger = structlog.get_logger(__name__)

REFRESH_MARGIN = timedelta(minutes=5)


@dataclass(frozen=True)
class AccessGrant:
    """Bearer token plus the domains to call with it."""

    token: str
    base_domain: str
    api_domain: str


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; they were written as UTC
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def is_token_expired(tokens: KommoTokenRead, now: datetime | None = None) -> bool:
    """True when the access token expires within REFRESH_MARGIN."""
    now = now or datetime.now(timezone.utc)
    return _as_utc(tokens.expires_at) < now + REFRESH_MARGIN


class KommoTokenStore:
    """Reads, stores and refreshes Kommo tokens.

    Args:
        repository: KommoTokenRepository.
        oauth: KommoOAuthClient used for refresh.
        default_api_domain: API host used when a token row has none.
    """

    def __init__(
        self,
        repository: Any,
        oauth: KommoOAuthClient,
        default_api_domain: str = "api-g.kommo.com",
    ) -> None:
        self._repository = repository
        self._oauth = oauth
        self._default_api_domain = default_api_domain

    async def get_tokens(self, integration_id: str) -> KommoTokenRead | None:
        return await self._repository.find_first({"integration_id": integration_id})

    async def store_tokens(
        self,
        integration_id: str,
        access_token: str,
        refresh_token: str,
        expires_in: int,
        base_domain: str,
        api_domain: str | None = None,
    ) -> KommoTokenRead:
        """Insert or replace the token pair for an integration.

        Args:
            expires_in: Lifetime of the access token in seconds.
        """
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        return await self._store(
            integration_id, access_token, refresh_token, expires_at, base_domain, api_domain
        )

    async def _store(
        self,
        integration_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        base_domain: str,
        api_domain: str | None,
    ) -> KommoTokenRead:
        changes: dict[str, Any] = {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_at": expires_at,
            "base_domain": base_domain,
        }
        # A refresh keeps the stored api_domain
        if api_domain is not None:
            changes["api_domain"] = api_domain
        update = KommoTokenUpdate(**changes)
        return await self._repository.upsert(
            {"integration_id": integration_id},
            create=KommoTokenCreate(
                integration_id=integration_id,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                base_domain=base_domain,
                api_domain=api_domain,
            ),
            update=update,
        )

    async def store_long_lived_token(
        self, integration_id: str, access_token: str, fallback_domain: str = ""
    ) -> KommoTokenRead:
        """Store a long-lived token issued in the Kommo integration settings.

        Long-lived tokens are JWTs; the (unverified) claims carry the account
        domain and expiry. The same token is stored as its own refresh token.

        Raises:
            PreconditionFailedError: If the token is not a decodable JWT or
                names no domain.
        """
        try:
            claims = jwt.get_unverified_claims(access_token)
        except JWTError as exc:
            raise PreconditionFailedError("Invalid token format") from exc

        base_domain = claims.get("base_domain") or fallback_domain
        if not base_domain:
            raise PreconditionFailedError("Token does not name an account domain")
        api_domain = claims.get("account_domain") or base_domain
        exp = claims.get("exp")
        expires_at = (
            datetime.fromtimestamp(int(exp), tz=timezone.utc)
            if exp
            else datetime.now(timezone.utc) + timedelta(days=365)
        )

        logger.info(
            "kommo.long_lived_token_stored",
            integration_id=integration_id,
            base_domain=base_domain,
            api_domain=api_domain,
            expires_at=expires_at.isoformat(),
        )
        return await self._store(
            integration_id, access_token, access_token, expires_at, base_domain, api_domain
        )

    async def refresh_access_token(self, tokens: KommoTokenRead) -> KommoTokenRead:
        """Refresh ``tokens`` through OAuth and persist the new pair."""
        data = await self._oauth.refresh(tokens.base_domain, tokens.refresh_token)
        logger.info("kommo.token_refreshed", integration_id=tokens.integration_id)
        return await self.store_tokens(
            tokens.integration_id,
            data["access_token"],
            data["refresh_token"],
            data["expires_in"],
            tokens.base_domain,
        )

    async def get_valid_access_token(self, integration_id: str) -> AccessGrant:
        """Return a usable token for the integration, refreshing when needed.

        Raises:
            TokenNotFoundError: If the integration has no stored tokens.
        """
        tokens = await self.get_tokens(integration_id)
        if tokens is None:
            raise TokenNotFoundError(integration_id)

        if is_token_expired(tokens):
            tokens = await self.refresh_access_token(tokens)

        return AccessGrant(
            token=tokens.access_token,
            base_domain=tokens.base_domain,
            api_domain=tokens.api_domain or self._default_api_domain,
        )
