"""Kommo sync engine -- rebuilds an agent's CRM snapshot from Kommo.

Orchestrates one sync per call:
1. Ownership and precondition checks (agent exists and belongs to the
   caller, Kommo integration exists and is connected)
2. Per-agent guard: a second sync for the same agent while one is running is
   rejected with SyncInProgressError
3. Two parallel batches of Kommo calls (4 then 3) separated by a fixed delay;
   the shared rate limiter still caps requests per rolling second. If any
   call in a batch fails, its siblings are cancelled.
4. Full snapshot built in memory (transformers), then one transactional
   write of Integration.settings/last_synced and Agent.crm_data
5. Success or error notification for the agent owner

Nothing is written to Agent.crm_data unless every fetch and transform succeeded.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Coroutine
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.app.core.monitoring import kommo_sync_duration_seconds, kommo_sync_runs_total
from src.app.platform.crm.kommo import KommoClient
from src.app.platform.crm.transformers import KommoPayloads, build_snapshot
from src.app.platform.exceptions import (
    NotFoundError,
    PreconditionFailedError,
    SyncInProgressError,
)
from src.app.platform.notifications import NotificationService
from src.app.platform.repository import PlatformRepository
from src.app.platform.schemas import (
    AgentRead,
    CrmSnapshot,
    IntegrationRead,
    IntegrationStats,
    IntegrationUpdate,
    SyncCounts,
    SyncResult,
    SyncStats,
)

logger = structlog.get_logger(__name__)

KOMMO = "kommo"


async def gather_or_cancel(*coros: Coroutine[Any, Any, Any]) -> list[Any]:
    """Run coroutines concurrently; on the first failure cancel the rest."""
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class KommoSyncEngine:
    """Synchronizes Kommo configuration into an agent's CRM snapshot.

    Args:
        repository: PlatformRepository for agents, integrations and the
            transactional sync write.
        client: KommoClient used for the seven fetches.
        notifications: NotificationService for user-facing results.
        batch_delay: Seconds to wait between the two fetch batches.
        sleep: Coroutine used for the inter-batch delay.
    """

    def __init__(
        self,
        repository: PlatformRepository,
        client: KommoClient,
        notifications: NotificationService,
        batch_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._client = client
        self._notifications = notifications
        self._batch_delay = batch_delay
        self._sleep = sleep
        self._locks: dict[str, asyncio.Lock] = {}

    def is_syncing(self, agent_id: str) -> bool:
        lock = self._locks.get(agent_id)
        return lock is not None and lock.locked()

    # ── Preconditions ───────────────────────────────────────────────────────

    async def _get_integration(self, agent_id: str) -> IntegrationRead:
        integration = await self._repository.integrations.find_first(
            {"agent_id": agent_id, "integration_type": KOMMO}
        )
        if integration is None:
            raise NotFoundError("Kommo integration", agent_id)
        return integration

    # ── Sync ────────────────────────────────────────────────────────────────

    async def sync(self, agent_id: str, user_id: str) -> SyncResult:
        """Run a full Kommo sync for one agent.

        Args:
            agent_id: Agent whose snapshot is rebuilt.
            user_id: Caller; must own the agent.

        Returns:
            SyncResult with counts and the new last_synced timestamp.

        Raises:
            NotFoundError: Agent or Kommo integration missing.
            AccessDeniedError: Caller does not own the agent.
            PreconditionFailedError: Integration is not connected.
            SyncInProgressError: A sync for this agent is already running.
            KommoError / SQLAlchemyError: Upstream or persistence failure
                (an error notification has been sent).
        """
        agent = await self._repository.get_owned_agent(agent_id, user_id)
        integration = await self._get_integration(agent_id)
        if not integration.is_connected:
            raise PreconditionFailedError("Kommo integration is not connected")

        lock = self._locks.setdefault(agent_id, asyncio.Lock())
        if lock.locked():
            raise SyncInProgressError(agent_id)

        async with lock:
            try:
                return await self._run(agent, integration)
            finally:
                self._locks.pop(agent_id, None)

    async def _run(self, agent: AgentRead, integration: IntegrationRead) -> SyncResult:
        start = time.perf_counter()
        log = logger.bind(agent_id=agent.id, integration_id=integration.id)
        log.info("kommo_sync.started")

        await self._repository.integrations.update(
            {"id": integration.id}, IntegrationUpdate(sync_status="running")
        )

        try:
            payloads = await self._fetch_all(integration.id)
            synced_at = datetime.now(timezone.utc)
            snapshot = build_snapshot(payloads, synced_at)
            counts = SyncCounts.from_snapshot(snapshot)
            await self._repository.save_crm_sync(
                agent_id=agent.id,
                integration_id=integration.id,
                snapshot=snapshot,
                counts=counts,
                crm_type=KOMMO,
                synced_at=synced_at,
            )
        except asyncio.CancelledError:
            log.warning("kommo_sync.cancelled")
            await self._mark_failed(integration.id)
            raise
        except Exception as exc:
            duration = time.perf_counter() - start
            kommo_sync_runs_total.labels(status="error").inc()
            kommo_sync_duration_seconds.observe(duration)
            log.error("kommo_sync.failed", error=str(exc), duration_s=round(duration, 3))
            await self._mark_failed(integration.id)
            await self._notifications.integration_error(agent.user_id, "Kommo", str(exc))
            raise

        duration = time.perf_counter() - start
        kommo_sync_runs_total.labels(status="success").inc()
        kommo_sync_duration_seconds.observe(duration)

        stats = SyncStats(
            pipelines=counts.pipelines,
            deal_fields=counts.deal_fields,
            contact_fields=counts.contact_fields,
            users=counts.users,
            salesbots=counts.salesbots,
            sync_time=round(duration, 3),
        )
        log.info("kommo_sync.completed", **stats.model_dump())

        await self._notifications.success(
            agent.user_id,
            "Kommo sync completed",
            f"Synced {stats.pipelines} pipelines, {stats.deal_fields} deal fields, "
            f"{stats.contact_fields} contact fields, {stats.users} users, "
            f"{stats.salesbots} salesbots",
        )

        return SyncResult(
            message="Kommo sync completed successfully",
            last_synced=synced_at,
            stats=stats,
            snapshot=snapshot,
        )

    async def _fetch_all(self, integration_id: str) -> KommoPayloads:
        """Fetch all seven resources in two paced batches."""
        pipelines, leads_fields, contacts_fields, users = await gather_or_cancel(
            self._client.fetch_pipelines(integration_id),
            self._client.fetch_leads_custom_fields(integration_id),
            self._client.fetch_contacts_custom_fields(integration_id),
            self._client.fetch_users(integration_id),
        )
        await self._sleep(self._batch_delay)
        task_types, salesbots, sources = await gather_or_cancel(
            self._client.fetch_task_types(integration_id),
            self._client.fetch_salesbots(integration_id),
            self._client.fetch_sources(integration_id),
        )
        return KommoPayloads(
            pipelines=pipelines,
            leads_custom_fields=leads_fields,
            contacts_custom_fields=contacts_fields,
            users=users,
            task_types=task_types,
            salesbots=salesbots,
            sources=sources,
        )

    async def _mark_failed(self, integration_id: str) -> None:
        try:
            await self._repository.integrations.update(
                {"id": integration_id}, IntegrationUpdate(sync_status="failed")
            )
        except SQLAlchemyError:
            logger.warning(
                "kommo_sync.mark_failed_error", integration_id=integration_id, exc_info=True
            )

    # ── Stats ───────────────────────────────────────────────────────────────

    async def get_stats(self, agent_id: str, user_id: str) -> IntegrationStats:
        """Dashboard counters for the agent's Kommo integration.

        Counts come from Integration.settings; stages are counted from the
        stored snapshot, which also backfills counters missing from settings.

        Raises:
            NotFoundError: Agent or Kommo integration missing.
            AccessDeniedError: Caller does not own the agent.
        """
        agent = await self._repository.get_owned_agent(agent_id, user_id)
        integration = await self._get_integration(agent_id)

        snapshot = CrmSnapshot.from_document(agent.crm_data)
        counts = SyncCounts.from_settings(integration.settings)
        if counts is None:
            counts = SyncCounts.from_snapshot(snapshot) if snapshot else SyncCounts()

        return IntegrationStats(
            pipelines=counts.pipelines,
            stages=snapshot.stage_count if snapshot else 0,
            users=counts.users,
            deal_fields=counts.deal_fields,
            contact_fields=counts.contact_fields,
            channels=counts.channels,
            last_sync=integration.last_synced,
        )
