"""Exception hierarchy for the platform domain and the Kommo integration.

Routers translate these into HTTP responses:
- NotFoundError -> 404
- AccessDeniedError -> 403
- PreconditionFailedError -> 400
- SyncInProgressError -> 409
- everything else -> 500
"""

from __future__ import annotations


class PlatformError(Exception):
    """Base class for all domain errors raised by the platform package."""


class NotFoundError(PlatformError):
    """Raised when a requested row does not exist.

    Attributes:
        entity: Entity name ("agent", "integration", ...).
        key: The identifier that was looked up.
    """

    def __init__(self, entity: str, key: str) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity.capitalize()} not found: {key}")


class AccessDeniedError(PlatformError):
    """Raised when the caller does not own the requested resource."""

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(message)


class PreconditionFailedError(PlatformError):
    """Raised when a resource exists but is not in a usable state."""


class SyncInProgressError(PlatformError):
    """Raised when a sync is already running for the same agent."""

    def __init__(self, agent_id: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"Sync already in progress for agent {agent_id}")


class InvalidFilterError(PlatformError, ValueError):
    """Raised when a where-clause cannot identify rows.

    A single-row operation was called without an id or natural key, or the
    filter names a column the entity does not have. This is a caller bug,
    never a silent no-op.
    """


# ── Kommo ───────────────────────────────────────────────────────────────────


class KommoError(PlatformError):
    """Base class for Kommo integration failures."""


class TokenNotFoundError(KommoError):
    """Raised when no OAuth tokens are stored for an integration."""

    def __init__(self, integration_id: str) -> None:
        self.integration_id = integration_id
        super().__init__(f"No tokens found for integration {integration_id}")


class KommoAPIError(KommoError):
    """Raised when Kommo answers with a non-2xx status or an unreadable body.

    Attributes:
        status_code: Upstream HTTP status.
        body: Raw upstream response body.
        endpoint: API path that was called.
    """

    def __init__(self, status_code: int, body: str, endpoint: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.endpoint = endpoint
        super().__init__(f"Kommo API error: {status_code} {body}")

    @property
    def retryable(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500


class MalformedPayloadError(KommoError):
    """Raised when a Kommo response does not have the expected shape."""

    def __init__(self, resource: str, detail: str) -> None:
        self.resource = resource
        super().__init__(f"Malformed Kommo {resource} payload: {detail}")


class KommoTimeoutError(KommoError):
    """Raised when a Kommo call exceeds its per-request timeout."""

    def __init__(self, endpoint: str, timeout: float) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        super().__init__(f"Kommo request to {endpoint} timed out after {timeout}s")
