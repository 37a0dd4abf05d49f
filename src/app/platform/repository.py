"""Platform repository -- async CRUD for every entity behind one calling convention.

Provides EntityRepository, a generic repository with the session_factory
callable pattern (``async for session in self._session_factory()``), and a
subclass per entity. Every repository exposes the same operations:

- find_many(where, order_by, include) -> list of records
- find_first(where, include) -> record or None
- create(data) -> record with generated id and timestamps
- update(where, data) -> record; only fields set on ``data`` are written
- delete(where) -> id of the removed row
- delete_many(where) -> number of removed rows
- upsert(where, create, update) -> record

``where`` is a mapping of column name to value (a list/tuple/set value means
IN). Single-row operations require the row id or a full natural key, and a
filter naming an unknown column is rejected; both raise InvalidFilterError.

Nested writes: triggers accept ``actions``; chains accept ``conditions``,
``steps`` (each with ``actions``) and ``schedules``. On create the children
are inserted after the parent in the same transaction; on update new
children are appended (delete explicitly first to replace).

PlatformRepository bundles the entity repositories and owns the multi-table
writes that must commit atomically (the CRM sync write).
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable, Iterable, Mapping
from datetime import datetime, timezone
from typing import Any, ClassVar, Generic, TypeVar

import structlog
from pydantic import BaseModel
from sqlalchemy import delete as sa_delete
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.platform.exceptions import AccessDeniedError, InvalidFilterError, NotFoundError
from src.app.platform.models import (
    AgentModel,
    ChainConditionModel,
    ChainModel,
    ChainScheduleModel,
    ChainStepActionModel,
    ChainStepModel,
    ContactModel,
    DealModel,
    IntegrationModel,
    KbArticleModel,
    KbCategoryModel,
    KommoTokenModel,
    NotificationModel,
    TriggerActionModel,
    TriggerModel,
    UserModel,
)
from src.app.platform.schemas import (
    AgentRead,
    ChainConditionCreate,
    ChainConditionRead,
    ChainRead,
    ChainScheduleCreate,
    ChainScheduleRead,
    ChainStepActionRead,
    ChainStepCreate,
    ChainStepRead,
    ContactRead,
    CrmSnapshot,
    DealRead,
    IntegrationCreate,
    IntegrationRead,
    IntegrationUpdate,
    KbArticleRead,
    KbCategoryRead,
    KommoTokenRead,
    NotificationRead,
    SyncCounts,
    TriggerActionCreate,
    TriggerActionRead,
    TriggerRead,
    UserRead,
)

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT")
ReadT = TypeVar("ReadT", bound=BaseModel)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]
Where = Mapping[str, Any]
OrderBy = Mapping[str, str] | Iterable[tuple[str, str]] | None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Generic Repository ──────────────────────────────────────────────────────


class EntityRepository(Generic[ModelT, ReadT]):
    """Generic async CRUD over one SQLAlchemy model.

    Subclasses set ``model``, ``read_schema`` and ``entity_name``, may declare
    ``natural_keys`` (column tuples that identify a single row), and override
    ``_create_children`` / ``_hydrate`` for nested collections.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    model: ClassVar[type]
    read_schema: ClassVar[type[BaseModel]]
    entity_name: ClassVar[str]
    natural_keys: ClassVar[tuple[tuple[str, ...], ...]] = ()
    child_fields: ClassVar[frozenset[str]] = frozenset()
    includes: ClassVar[frozenset[str]] = frozenset()

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # ── Filter helpers ──────────────────────────────────────────────────────

    def _column(self, name: str) -> Any:
        column = self.model.__table__.columns.get(name)
        if column is None:
            raise InvalidFilterError(f"{self.entity_name} has no column '{name}'")
        return getattr(self.model, name)

    def _conditions(self, where: Where | None) -> list[Any]:
        conditions = []
        for key, value in (where or {}).items():
            column = self._column(key)
            if isinstance(value, (list, tuple, set, frozenset)):
                conditions.append(column.in_(list(value)))
            elif value is None:
                conditions.append(column.is_(None))
            else:
                conditions.append(column == value)
        return conditions

    def _require_identity(self, where: Where | None) -> None:
        """Reject a single-row filter that names neither an id nor a natural key."""
        keys = {k for k, v in (where or {}).items() if v is not None}
        if "id" in keys:
            return
        for natural_key in self.natural_keys:
            if keys.issuperset(natural_key):
                return
        accepted = ["id", *(" + ".join(nk) for nk in self.natural_keys)]
        raise InvalidFilterError(
            f"{self.entity_name} filter must include one of: {', '.join(accepted)}; "
            f"got {sorted((where or {}).keys())}"
        )

    def _order_clauses(self, order_by: OrderBy) -> list[Any]:
        if not order_by:
            return []
        items = order_by.items() if isinstance(order_by, Mapping) else order_by
        clauses = []
        for name, direction in items:
            column = self._column(name)
            if direction.lower() not in ("asc", "desc"):
                raise InvalidFilterError(f"Invalid sort direction '{direction}' for {name}")
            clauses.append(column.desc() if direction.lower() == "desc" else column.asc())
        return clauses

    def _check_includes(self, include: Iterable[str] | None) -> set[str]:
        requested = set(include or ())
        unknown = requested - self.includes
        if unknown:
            raise InvalidFilterError(
                f"{self.entity_name} cannot include {sorted(unknown)}"
            )
        return requested

    # ── Hydration ───────────────────────────────────────────────────────────

    def _to_read(self, model: Any) -> ReadT:
        """Convert a model row to its read schema (columns only)."""
        return self.read_schema.model_validate(model)  # type: ignore[return-value]

    async def _hydrate(
        self, session: AsyncSession, rows: list[Any], include: set[str]
    ) -> list[ReadT]:
        """Convert rows to records, loading requested child collections."""
        return [self._to_read(row) for row in rows]

    async def _create_children(
        self, session: AsyncSession, parent: Any, data: BaseModel
    ) -> None:
        """Insert nested children declared on ``data`` (no-op by default)."""

    async def _get_row(self, session: AsyncSession, where: Where) -> Any:
        self._require_identity(where)
        stmt = select(self.model).where(*self._conditions(where)).limit(2)
        result = await session.execute(stmt)
        rows = list(result.scalars().all())
        if len(rows) > 1:
            raise InvalidFilterError(
                f"{self.entity_name} filter {dict(where)} matched more than one row"
            )
        return rows[0] if rows else None

    # ── Reads ───────────────────────────────────────────────────────────────

    async def find_many(
        self,
        where: Where | None = None,
        order_by: OrderBy = None,
        include: Iterable[str] | None = None,
    ) -> list[ReadT]:
        """Return every row matching ``where`` in ``order_by`` order.

        Args:
            where: Column filters; empty or None selects all rows.
            order_by: ``{"created_at": "desc"}`` or ``[("name", "asc")]``.
            include: Child collections to hydrate.

        Returns:
            List of read records (possibly empty).
        """
        requested = self._check_includes(include)
        async for session in self._session_factory():
            stmt = select(self.model).where(*self._conditions(where))
            stmt = stmt.order_by(*self._order_clauses(order_by))
            result = await session.execute(stmt)
            rows = list(result.scalars().all())
            return await self._hydrate(session, rows, requested)

    async def find_first(
        self, where: Where, include: Iterable[str] | None = None
    ) -> ReadT | None:
        """Return the row identified by ``where``, or None when absent.

        Raises:
            InvalidFilterError: If ``where`` names neither an id nor a natural key.
        """
        requested = self._check_includes(include)
        async for session in self._session_factory():
            row = await self._get_row(session, where)
            if row is None:
                return None
            hydrated = await self._hydrate(session, [row], requested)
            return hydrated[0]

    # ── Writes ──────────────────────────────────────────────────────────────

    async def create(self, data: BaseModel) -> ReadT:
        """Insert a row (and any nested children) in one transaction.

        Returns:
            Read record with generated id and timestamps; nested children are
            included when the entity has any.
        """
        values = data.model_dump(exclude=set(self.child_fields))
        async for session in self._session_factory():
            now = _utcnow()
            row = self.model(**values, created_at=now, updated_at=now)
            session.add(row)
            await session.flush()
            await self._create_children(session, row, data)
            await session.commit()
            await session.refresh(row)
            hydrated = await self._hydrate(session, [row], set(self.includes) & self.child_fields)
            logger.debug("repository.created", entity=self.entity_name, id=row.id)
            return hydrated[0]

    async def update(self, where: Where, data: BaseModel) -> ReadT:
        """Apply a partial update to the row identified by ``where``.

        Only fields explicitly set on ``data`` are written; ``updated_at`` is
        always refreshed. Nested child lists are appended.

        Raises:
            InvalidFilterError: If ``where`` cannot identify a single row.
            NotFoundError: If no row matches.
        """
        values = data.model_dump(exclude_unset=True, exclude=set(self.child_fields))
        async for session in self._session_factory():
            row = await self._get_row(session, where)
            if row is None:
                raise NotFoundError(self.entity_name, str(dict(where)))
            for key, value in values.items():
                self._column(key)
                setattr(row, key, value)
            row.updated_at = _utcnow()
            await self._create_children(session, row, data)
            await session.commit()
            await session.refresh(row)
            touched = {f for f in self.child_fields if f in data.model_fields_set}
            hydrated = await self._hydrate(session, [row], touched & self.includes)
            return hydrated[0]

    async def delete(self, where: Where) -> str:
        """Delete the row identified by ``where`` and return its id.

        Child rows are removed by the store's ON DELETE CASCADE.

        Raises:
            InvalidFilterError: If ``where`` cannot identify a single row.
            NotFoundError: If no row matches.
        """
        async for session in self._session_factory():
            row = await self._get_row(session, where)
            if row is None:
                raise NotFoundError(self.entity_name, str(dict(where)))
            row_id = row.id
            await session.delete(row)
            await session.commit()
            logger.debug("repository.deleted", entity=self.entity_name, id=row_id)
            return row_id

    async def delete_many(self, where: Where) -> int:
        """Delete every row matching ``where``. An empty filter is rejected."""
        if not where:
            raise InvalidFilterError(f"{self.entity_name}.delete_many requires a filter")
        async for session in self._session_factory():
            stmt = sa_delete(self.model).where(*self._conditions(where))
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def upsert(self, where: Where, create: BaseModel, update: BaseModel) -> ReadT:
        """Update the row identified by ``where`` or create it from ``create``."""
        existing = await self.find_first(where)
        if existing is None:
            return await self.create(create)
        return await self.update({"id": existing.id}, update)


# ── Entity Repositories ─────────────────────────────────────────────────────


class UserRepository(EntityRepository[UserModel, UserRead]):
    model = UserModel
    read_schema = UserRead
    entity_name = "user"
    natural_keys = (("email",),)


class AgentRepository(EntityRepository[AgentModel, AgentRead]):
    model = AgentModel
    read_schema = AgentRead
    entity_name = "agent"


class IntegrationRepository(EntityRepository[IntegrationModel, IntegrationRead]):
    model = IntegrationModel
    read_schema = IntegrationRead
    entity_name = "integration"
    natural_keys = (("agent_id", "integration_type"),)


class KommoTokenRepository(EntityRepository[KommoTokenModel, KommoTokenRead]):
    model = KommoTokenModel
    read_schema = KommoTokenRead
    entity_name = "kommo_token"
    natural_keys = (("integration_id",),)


class TriggerRepository(EntityRepository[TriggerModel, TriggerRead]):
    """Triggers with a nested, ordered list of actions."""

    model = TriggerModel
    read_schema = TriggerRead
    entity_name = "trigger"
    child_fields = frozenset({"actions"})
    includes = frozenset({"actions"})

    async def _create_children(
        self, session: AsyncSession, parent: Any, data: BaseModel
    ) -> None:
        actions: list[TriggerActionCreate] | None = getattr(data, "actions", None)
        for action in actions or []:
            session.add(TriggerActionModel(trigger_id=parent.id, **action.model_dump()))
        await session.flush()

    async def _hydrate(
        self, session: AsyncSession, rows: list[Any], include: set[str]
    ) -> list[TriggerRead]:
        records = [self._to_read(row) for row in rows]
        if "actions" not in include or not rows:
            return records

        result = await session.execute(
            select(TriggerActionModel)
            .where(TriggerActionModel.trigger_id.in_([r.id for r in rows]))
            .order_by(TriggerActionModel.order.asc(), TriggerActionModel.created_at.asc())
        )
        by_trigger: dict[str, list[TriggerActionRead]] = {}
        for action in result.scalars().all():
            by_trigger.setdefault(action.trigger_id, []).append(
                TriggerActionRead.model_validate(action)
            )
        return [
            rec.model_copy(update={"actions": by_trigger.get(rec.id, [])}) for rec in records
        ]


class TriggerActionRepository(EntityRepository[TriggerActionModel, TriggerActionRead]):
    model = TriggerActionModel
    read_schema = TriggerActionRead
    entity_name = "trigger_action"


class ChainRepository(EntityRepository[ChainModel, ChainRead]):
    """Chains with nested conditions, steps (with step actions) and schedules."""

    model = ChainModel
    read_schema = ChainRead
    entity_name = "chain"
    child_fields = frozenset({"conditions", "steps", "schedules"})
    includes = frozenset({"conditions", "steps", "schedules"})

    async def _create_children(
        self, session: AsyncSession, parent: Any, data: BaseModel
    ) -> None:
        conditions: list[ChainConditionCreate] = getattr(data, "conditions", None) or []
        steps: list[ChainStepCreate] = getattr(data, "steps", None) or []
        schedules: list[ChainScheduleCreate] = getattr(data, "schedules", None) or []

        for condition in conditions:
            session.add(ChainConditionModel(chain_id=parent.id, stage_id=condition.stage_id))

        for step in steps:
            step_row = ChainStepModel(
                chain_id=parent.id,
                step_order=step.step_order,
                delay_value=step.delay_value,
                delay_unit=step.delay_unit,
            )
            session.add(step_row)
            await session.flush()  # step id needed for its actions
            for action in step.actions:
                session.add(ChainStepActionModel(step_id=step_row.id, **action.model_dump()))

        for schedule in schedules:
            session.add(ChainScheduleModel(chain_id=parent.id, **schedule.model_dump()))

        await session.flush()

    async def _hydrate(
        self, session: AsyncSession, rows: list[Any], include: set[str]
    ) -> list[ChainRead]:
        records = [self._to_read(row) for row in rows]
        if not include or not rows:
            return records

        chain_ids = [r.id for r in rows]
        updates: dict[str, dict[str, Any]] = {cid: {} for cid in chain_ids}

        if "conditions" in include:
            result = await session.execute(
                select(ChainConditionModel)
                .where(ChainConditionModel.chain_id.in_(chain_ids))
                .order_by(ChainConditionModel.created_at.asc())
            )
            for cid in chain_ids:
                updates[cid]["conditions"] = []
            for cond in result.scalars().all():
                updates[cond.chain_id]["conditions"].append(
                    ChainConditionRead.model_validate(cond)
                )

        if "steps" in include:
            step_result = await session.execute(
                select(ChainStepModel)
                .where(ChainStepModel.chain_id.in_(chain_ids))
                .order_by(ChainStepModel.step_order.asc())
            )
            steps = list(step_result.scalars().all())
            actions_by_step: dict[str, list[ChainStepActionRead]] = {}
            if steps:
                action_result = await session.execute(
                    select(ChainStepActionModel)
                    .where(ChainStepActionModel.step_id.in_([s.id for s in steps]))
                    .order_by(ChainStepActionModel.action_order.asc())
                )
                for action in action_result.scalars().all():
                    actions_by_step.setdefault(action.step_id, []).append(
                        ChainStepActionRead.model_validate(action)
                    )
            for cid in chain_ids:
                updates[cid]["steps"] = []
            for step in steps:
                step_read = ChainStepRead.model_validate(step).model_copy(
                    update={"actions": actions_by_step.get(step.id, [])}
                )
                updates[step.chain_id]["steps"].append(step_read)

        if "schedules" in include:
            result = await session.execute(
                select(ChainScheduleModel)
                .where(ChainScheduleModel.chain_id.in_(chain_ids))
                .order_by(ChainScheduleModel.day_of_week.asc())
            )
            for cid in chain_ids:
                updates[cid]["schedules"] = []
            for schedule in result.scalars().all():
                updates[schedule.chain_id]["schedules"].append(
                    ChainScheduleRead.model_validate(schedule)
                )

        return [rec.model_copy(update=updates[rec.id]) for rec in records]


class ChainStepRepository(EntityRepository[ChainStepModel, ChainStepRead]):
    model = ChainStepModel
    read_schema = ChainStepRead
    entity_name = "chain_step"


class ChainConditionRepository(EntityRepository[ChainConditionModel, ChainConditionRead]):
    model = ChainConditionModel
    read_schema = ChainConditionRead
    entity_name = "chain_condition"


class ChainScheduleRepository(EntityRepository[ChainScheduleModel, ChainScheduleRead]):
    model = ChainScheduleModel
    read_schema = ChainScheduleRead
    entity_name = "chain_schedule"


class KbCategoryRepository(EntityRepository[KbCategoryModel, KbCategoryRead]):
    model = KbCategoryModel
    read_schema = KbCategoryRead
    entity_name = "kb_category"


class KbArticleRepository(EntityRepository[KbArticleModel, KbArticleRead]):
    model = KbArticleModel
    read_schema = KbArticleRead
    entity_name = "kb_article"


class ContactRepository(EntityRepository[ContactModel, ContactRead]):
    model = ContactModel
    read_schema = ContactRead
    entity_name = "contact"
    natural_keys = (("crm_id", "user_id"),)


class DealRepository(EntityRepository[DealModel, DealRead]):
    """Deals, optionally hydrated with their linked contact."""

    model = DealModel
    read_schema = DealRead
    entity_name = "deal"
    natural_keys = (("crm_id", "user_id"),)
    includes = frozenset({"contact"})

    async def _hydrate(
        self, session: AsyncSession, rows: list[Any], include: set[str]
    ) -> list[DealRead]:
        records = [self._to_read(row) for row in rows]
        contact_ids = {r.contact_id for r in rows if r.contact_id}
        if "contact" not in include or not contact_ids:
            return records

        result = await session.execute(
            select(ContactModel).where(ContactModel.id.in_(contact_ids))
        )
        contacts = {c.id: ContactRead.model_validate(c) for c in result.scalars().all()}
        return [
            rec.model_copy(update={"contact": contacts.get(rec.contact_id)})
            if rec.contact_id
            else rec
            for rec in records
        ]


class NotificationRepository(EntityRepository[NotificationModel, NotificationRead]):
    model = NotificationModel
    read_schema = NotificationRead
    entity_name = "notification"


# ── Facade ──────────────────────────────────────────────────────────────────


class PlatformRepository:
    """All entity repositories plus the atomic multi-table writes.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory
        self.users = UserRepository(session_factory)
        self.agents = AgentRepository(session_factory)
        self.integrations = IntegrationRepository(session_factory)
        self.kommo_tokens = KommoTokenRepository(session_factory)
        self.triggers = TriggerRepository(session_factory)
        self.trigger_actions = TriggerActionRepository(session_factory)
        self.chains = ChainRepository(session_factory)
        self.chain_steps = ChainStepRepository(session_factory)
        self.chain_conditions = ChainConditionRepository(session_factory)
        self.chain_schedules = ChainScheduleRepository(session_factory)
        self.kb_categories = KbCategoryRepository(session_factory)
        self.kb_articles = KbArticleRepository(session_factory)
        self.contacts = ContactRepository(session_factory)
        self.deals = DealRepository(session_factory)
        self.notifications = NotificationRepository(session_factory)

    async def get_owned_agent(self, agent_id: str, user_id: str) -> AgentRead:
        """Load an agent and check that ``user_id`` owns it.

        Raises:
            NotFoundError: If the agent does not exist.
            AccessDeniedError: If it belongs to another user.
        """
        agent = await self.agents.find_first({"id": agent_id})
        if agent is None:
            raise NotFoundError("agent", agent_id)
        if agent.user_id != user_id:
            raise AccessDeniedError()
        return agent

    async def upsert_integration(
        self,
        agent_id: str,
        integration_type: str,
        is_active: bool | None = None,
        is_connected: bool | None = None,
        settings: dict[str, Any] | None = None,
    ) -> IntegrationRead:
        """Create or update the agent's integration of ``integration_type``.

        Connecting an integration stamps connected_at and last_synced; flags
        and settings left as None are not touched on an existing row.
        """
        changes: dict[str, Any] = {}
        if is_active is not None:
            changes["is_active"] = is_active
        if is_connected is not None:
            changes["is_connected"] = is_connected
        if settings is not None:
            changes["settings"] = settings
        if is_connected:
            now = _utcnow()
            changes["connected_at"] = now
            changes["last_synced"] = now

        return await self.integrations.upsert(
            {"agent_id": agent_id, "integration_type": integration_type},
            create=IntegrationCreate(
                agent_id=agent_id, integration_type=integration_type, **changes
            ),
            update=IntegrationUpdate(**changes),
        )

    async def save_crm_sync(
        self,
        agent_id: str,
        integration_id: str,
        snapshot: CrmSnapshot,
        counts: SyncCounts,
        crm_type: str,
        synced_at: datetime,
    ) -> None:
        """Persist a completed sync to Integration and Agent in one transaction.

        Writes Integration.settings (counts), last_synced and sync_status,
        then Agent.crm_data, crm_connected and crm_type. Either both rows
        change or neither does.

        Raises:
            NotFoundError: If the agent or integration vanished mid-sync.
        """
        document = snapshot.to_document()
        settings_doc = counts.model_dump(by_alias=True)

        async for session in self._session_factory():
            async with session.begin():
                integration = await session.get(IntegrationModel, integration_id)
                if integration is None:
                    raise NotFoundError("integration", integration_id)
                agent = await session.get(AgentModel, agent_id)
                if agent is None:
                    raise NotFoundError("agent", agent_id)

                integration.settings = settings_doc
                integration.last_synced = synced_at
                integration.sync_status = "idle"
                integration.updated_at = synced_at

                agent.crm_data = document
                agent.crm_connected = True
                agent.crm_type = crm_type
                agent.updated_at = synced_at

            logger.info(
                "repository.crm_sync_saved",
                agent_id=agent_id,
                integration_id=integration_id,
                schema_version=snapshot.schema_version,
            )
            return
