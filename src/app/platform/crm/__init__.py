"""CRM integration layer -- Kommo client, token storage and snapshot sync.

Provides:
- KommoClient / KommoOAuthClient: REST v4 and OAuth access over a shared httpx client
- SlidingWindowRateLimiter: per-API-domain request pacing (7 requests/second)
- KommoTokenStore: OAuth token persistence with refresh ahead of expiry
- build_snapshot and friends: pure Kommo -> snapshot transformers
- KommoSyncEngine: fetch, transform and atomically persist an agent's CRM snapshot

Architecture: the snapshot is built completely in memory and written in one
transaction, so a failed sync never leaves a partial Agent.crm_data behind.
"""

from src.app.platform.crm.kommo import KommoClient, KommoOAuthClient
from src.app.platform.crm.rate_limit import SlidingWindowRateLimiter
from src.app.platform.crm.sync import KommoSyncEngine
from src.app.platform.crm.tokens import KommoTokenStore
from src.app.platform.crm.transformers import KommoPayloads, build_snapshot, map_field_type

__all__ = [
    "KommoClient",
    "KommoOAuthClient",
    "SlidingWindowRateLimiter",
    "KommoTokenStore",
    "KommoSyncEngine",
    "KommoPayloads",
    "build_snapshot",
    "map_field_type",
]
