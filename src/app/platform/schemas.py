"""Pydantic schemas for the platform -- typed records for every entity.

Defines:
- Entity records: <Entity>Create / <Entity>Update / <Entity>Read for users,
  agents, integrations, Kommo tokens, triggers, chains, KB, contacts, deals
  and notifications
- CRM snapshot document: CrmSnapshot and its parts (pipelines, fields,
  actions, users, channels, salesbots), versioned via ``schema_version``
- Sync payloads: SyncCounts (Integration.settings), SyncStats, SyncResult,
  IntegrationStats

Update schemas are presence-aware: repositories write
``model_dump(exclude_unset=True)``, so a field the caller never set is left
untouched while an explicit ``None`` clears the column.

Document columns are decoded exactly once, at hydration. Rows written by
older code paths that stored an encoded string inside the JSON column are
decoded here with a warning; nothing in the platform writes that shape.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

logger = structlog.get_logger(__name__)

CRM_SNAPSHOT_SCHEMA_VERSION = 1


def _decode_legacy_document(value: Any, column: str) -> Any:
    """Decode a document that was stored as an encoded string."""
    if isinstance(value, str):
        logger.warning("schemas.legacy_encoded_document", column=column)
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return value


class ReadModel(BaseModel):
    """Base for records hydrated from ORM rows."""

    model_config = ConfigDict(from_attributes=True)


class CamelModel(BaseModel):
    """Base for documents serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Users ───────────────────────────────────────────────────────────────────


class UserCreate(BaseModel):
    email: str
    password_hash: str
    name: str
    role: str = "USER"


class UserUpdate(BaseModel):
    email: str | None = None
    password_hash: str | None = None
    name: str | None = None
    role: str | None = None


class UserRead(ReadModel):
    id: str
    email: str
    password_hash: str
    name: str
    role: str = "USER"
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Agents ──────────────────────────────────────────────────────────────────


class AgentCreate(BaseModel):
    """Schema for creating a new agent."""

    name: str
    user_id: str
    is_active: bool = False
    model: str = "Google Gemini 2.5 Flash"
    system_instructions: str | None = None
    pipeline_settings: dict[str, Any] | None = None
    channel_settings: dict[str, Any] | None = None
    kb_settings: dict[str, Any] | None = None
    crm_type: str | None = None
    crm_connected: bool = False
    crm_data: dict[str, Any] | None = None


class AgentUpdate(BaseModel):
    """Partial agent update -- only fields explicitly set are written."""

    name: str | None = None
    is_active: bool | None = None
    model: str | None = None
    system_instructions: str | None = None
    pipeline_settings: dict[str, Any] | None = None
    channel_settings: dict[str, Any] | None = None
    kb_settings: dict[str, Any] | None = None
    crm_type: str | None = None
    crm_connected: bool | None = None
    crm_data: dict[str, Any] | None = None


class AgentRead(ReadModel):
    id: str
    name: str
    is_active: bool
    model: str
    system_instructions: str | None = None
    pipeline_settings: dict[str, Any] | None = None
    channel_settings: dict[str, Any] | None = None
    kb_settings: dict[str, Any] | None = None
    crm_type: str | None = None
    crm_connected: bool
    crm_data: dict[str, Any] | None = None
    user_id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator(
        "pipeline_settings", "channel_settings", "kb_settings", "crm_data", mode="before"
    )
    @classmethod
    def _decode_documents(cls, value: Any, info: Any) -> Any:
        return _decode_legacy_document(value, info.field_name)


# ── Integrations ────────────────────────────────────────────────────────────


class IntegrationCreate(BaseModel):
    agent_id: str
    integration_type: str
    is_active: bool = False
    is_connected: bool = False
    connected_at: datetime | None = None
    last_synced: datetime | None = None
    settings: dict[str, Any] | None = None


class IntegrationUpdate(BaseModel):
    is_active: bool | None = None
    is_connected: bool | None = None
    connected_at: datetime | None = None
    last_synced: datetime | None = None
    settings: dict[str, Any] | None = None
    sync_status: str | None = None


class IntegrationRead(ReadModel):
    id: str
    agent_id: str
    integration_type: str
    is_active: bool
    is_connected: bool
    connected_at: datetime | None = None
    last_synced: datetime | None = None
    settings: dict[str, Any] | None = None
    sync_status: str = "idle"
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("settings", mode="before")
    @classmethod
    def _decode_settings(cls, value: Any) -> Any:
        return _decode_legacy_document(value, "settings")


class KommoTokenCreate(BaseModel):
    integration_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    base_domain: str
    api_domain: str | None = None


class KommoTokenUpdate(BaseModel):
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    base_domain: str | None = None
    api_domain: str | None = None


class KommoTokenRead(ReadModel):
    id: str
    integration_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    base_domain: str
    api_domain: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Triggers ────────────────────────────────────────────────────────────────


class TriggerActionCreate(BaseModel):
    action: str
    order: int = 0


class TriggerActionRead(ReadModel):
    id: str
    trigger_id: str
    action: str
    order: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TriggerCreate(BaseModel):
    """Trigger with an optional nested list of actions created alongside it."""

    agent_id: str
    name: str
    condition: str
    is_active: bool = True
    cancel_message: str | None = None
    run_limit: int | None = None
    actions: list[TriggerActionCreate] = Field(default_factory=list)


class TriggerUpdate(BaseModel):
    """Partial trigger update. ``actions`` are appended, never replaced."""

    name: str | None = None
    condition: str | None = None
    is_active: bool | None = None
    cancel_message: str | None = None
    run_limit: int | None = None
    actions: list[TriggerActionCreate] | None = None


class TriggerRead(ReadModel):
    id: str
    agent_id: str
    name: str
    is_active: bool
    condition: str
    cancel_message: str | None = None
    run_limit: int | None = None
    actions: list[TriggerActionRead] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Chains ──────────────────────────────────────────────────────────────────


class ChainConditionCreate(BaseModel):
    stage_id: str


class ChainConditionRead(ReadModel):
    id: str
    chain_id: str
    stage_id: str


class ChainStepActionCreate(BaseModel):
    action_type: str
    instruction: str | None = None
    action_order: int = 0


class ChainStepActionRead(ReadModel):
    id: str
    step_id: str
    action_type: str
    instruction: str | None = None
    action_order: int


class ChainStepCreate(BaseModel):
    step_order: int = 0
    delay_value: int = 0
    delay_unit: str = "minutes"
    actions: list[ChainStepActionCreate] = Field(default_factory=list)


class ChainStepRead(ReadModel):
    id: str
    chain_id: str
    step_order: int
    delay_value: int
    delay_unit: str
    actions: list[ChainStepActionRead] = Field(default_factory=list)


class ChainScheduleCreate(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    enabled: bool = True
    start_time: str = "09:00"
    end_time: str = "18:00"


class ChainScheduleRead(ReadModel):
    id: str
    chain_id: str
    day_of_week: int
    enabled: bool
    start_time: str
    end_time: str


class ChainCreate(BaseModel):
    """Chain with nested conditions, steps (each with actions) and schedules."""

    agent_id: str
    name: str
    is_active: bool = True
    condition_type: str = "all"
    condition_exclude: str | None = None
    run_limit: int | None = None
    conditions: list[ChainConditionCreate] = Field(default_factory=list)
    steps: list[ChainStepCreate] = Field(default_factory=list)
    schedules: list[ChainScheduleCreate] = Field(default_factory=list)


class ChainUpdate(BaseModel):
    """Partial chain update. Nested lists are appended to existing children."""

    name: str | None = None
    is_active: bool | None = None
    condition_type: str | None = None
    condition_exclude: str | None = None
    run_limit: int | None = None
    conditions: list[ChainConditionCreate] | None = None
    steps: list[ChainStepCreate] | None = None
    schedules: list[ChainScheduleCreate] | None = None


class ChainRead(ReadModel):
    id: str
    agent_id: str
    name: str
    is_active: bool
    condition_type: str
    condition_exclude: str | None = None
    run_limit: int | None = None
    conditions: list[ChainConditionRead] | None = None
    steps: list[ChainStepRead] | None = None
    schedules: list[ChainScheduleRead] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Knowledge Base ──────────────────────────────────────────────────────────


class KbCategoryCreate(BaseModel):
    name: str
    user_id: str
    parent_id: str | None = None


class KbCategoryUpdate(BaseModel):
    name: str | None = None
    parent_id: str | None = None


class KbCategoryRead(ReadModel):
    id: str
    name: str
    parent_id: str | None = None
    user_id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class KbArticleCreate(BaseModel):
    title: str
    user_id: str
    content: str = ""
    is_active: bool = True
    category_id: str | None = None
    related_articles: list[str] | None = None


class KbArticleUpdate(BaseModel):
    title: str | None = None
    content: str | None = None
    is_active: bool | None = None
    category_id: str | None = None
    related_articles: list[str] | None = None


class KbArticleRead(ReadModel):
    id: str
    title: str
    content: str
    is_active: bool
    category_id: str | None = None
    related_articles: list[str] | None = None
    user_id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Contacts & Deals ────────────────────────────────────────────────────────


class ContactCreate(BaseModel):
    name: str
    user_id: str
    phone: str | None = None
    email: str | None = None
    company: str | None = None
    position: str | None = None
    tags: list[str] | None = None
    custom_fields: dict[str, Any] | None = None
    crm_id: str | None = None
    crm_type: str | None = None


class ContactUpdate(BaseModel):
    name: str | None = None
    phone: str | None = None
    email: str | None = None
    company: str | None = None
    position: str | None = None
    tags: list[str] | None = None
    custom_fields: dict[str, Any] | None = None
    crm_id: str | None = None
    crm_type: str | None = None


class ContactRead(ReadModel):
    id: str
    name: str
    phone: str | None = None
    email: str | None = None
    company: str | None = None
    position: str | None = None
    tags: list[str] | None = None
    custom_fields: dict[str, Any] | None = None
    crm_id: str | None = None
    crm_type: str | None = None
    user_id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DealCreate(BaseModel):
    name: str
    user_id: str
    price: float = 0.0
    currency: str = "RUB"
    status: str = "open"
    stage: str | None = None
    pipeline_id: str | None = None
    pipeline_name: str | None = None
    responsible_user_id: str | None = None
    contact_id: str | None = None
    tags: list[str] | None = None
    custom_fields: dict[str, Any] | None = None
    crm_id: str | None = None
    crm_type: str | None = None
    closed_at: datetime | None = None


class DealUpdate(BaseModel):
    name: str | None = None
    price: float | None = None
    currency: str | None = None
    status: str | None = None
    stage: str | None = None
    pipeline_id: str | None = None
    pipeline_name: str | None = None
    responsible_user_id: str | None = None
    contact_id: str | None = None
    tags: list[str] | None = None
    custom_fields: dict[str, Any] | None = None
    crm_id: str | None = None
    crm_type: str | None = None
    closed_at: datetime | None = None


class DealRead(ReadModel):
    id: str
    name: str
    price: float
    currency: str
    status: str
    stage: str | None = None
    pipeline_id: str | None = None
    pipeline_name: str | None = None
    responsible_user_id: str | None = None
    contact_id: str | None = None
    contact: ContactRead | None = None
    tags: list[str] | None = None
    custom_fields: dict[str, Any] | None = None
    crm_id: str | None = None
    crm_type: str | None = None
    closed_at: datetime | None = None
    user_id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Notifications ───────────────────────────────────────────────────────────


class NotificationCreate(BaseModel):
    user_id: str
    title: str
    message: str
    type: str = "info"
    is_read: bool = False


class NotificationUpdate(BaseModel):
    is_read: bool | None = None


class NotificationRead(ReadModel):
    id: str
    user_id: str
    type: str
    title: str
    message: str
    is_read: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── CRM Snapshot Document (Agent.crm_data) ──────────────────────────────────


class CrmStage(CamelModel):
    id: str
    name: str
    sort: int | None = None
    color: str | None = None


class CrmPipeline(CamelModel):
    id: str
    name: str
    stages: list[CrmStage] = Field(default_factory=list)


class CrmField(CamelModel):
    id: str
    key: str
    label: str
    type: str


class ActionOption(CamelModel):
    value: str
    label: str


class CrmAction(CamelModel):
    id: str
    name: str
    type: str
    pipeline_id: str | None = None
    pipeline_name: str | None = None
    options: list[ActionOption] | None = None


class CrmUser(CamelModel):
    id: str
    name: str
    email: str | None = None


class CrmChannel(CamelModel):
    id: str
    name: str
    type: str
    pipeline_id: str | None = None
    service: str | None = None


class CrmSalesbot(CamelModel):
    id: str
    name: str
    active: bool = True


class CrmSnapshot(CamelModel):
    """Point-in-time copy of the remote CRM configuration for one agent.

    Fully replaced on every sync. Serialized once via ``to_document()`` when
    written to Agent.crm_data and parsed once via ``from_document()``.
    """

    schema_version: int = CRM_SNAPSHOT_SCHEMA_VERSION
    pipelines: list[CrmPipeline] = Field(default_factory=list)
    deal_fields: list[CrmField] = Field(default_factory=list)
    contact_fields: list[CrmField] = Field(default_factory=list)
    actions: list[CrmAction] = Field(default_factory=list)
    users: list[CrmUser] = Field(default_factory=list)
    channels: list[CrmChannel] = Field(default_factory=list)
    salesbots: list[CrmSalesbot] = Field(default_factory=list)
    last_synced: datetime | None = None

    def to_document(self) -> dict[str, Any]:
        """Return the JSON-ready document stored in Agent.crm_data."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_document(cls, document: dict[str, Any] | None) -> CrmSnapshot | None:
        """Parse a stored document, or None when the agent was never synced."""
        if not document:
            return None
        return cls.model_validate(document)

    @property
    def stage_count(self) -> int:
        return sum(len(p.stages) for p in self.pipelines)


# ── Sync Payloads ───────────────────────────────────────────────────────────


class SyncCounts(CamelModel):
    """Summary counters stored in Integration.settings after a sync."""

    pipelines: int = 0
    deal_fields: int = 0
    contact_fields: int = 0
    channels: int = 0
    actions: int = 0
    users: int = 0
    salesbots: int = 0

    @classmethod
    def from_snapshot(cls, snapshot: CrmSnapshot) -> SyncCounts:
        return cls(
            pipelines=len(snapshot.pipelines),
            deal_fields=len(snapshot.deal_fields),
            contact_fields=len(snapshot.contact_fields),
            channels=len(snapshot.channels),
            actions=len(snapshot.actions),
            users=len(snapshot.users),
            salesbots=len(snapshot.salesbots),
        )

    @classmethod
    def from_settings(cls, settings: dict[str, Any] | None) -> SyncCounts | None:
        """Read counters from a free-form Integration.settings document.

        Only integer values under a counter key (camelCase or snake_case) are
        taken; anything else a client stored there is ignored. Returns None
        when the document holds no counters at all.
        """
        if not settings:
            return None
        counts: dict[str, int] = {}
        for name, field in cls.model_fields.items():
            for key in (field.alias, name):
                value = settings.get(key)
                if isinstance(value, int) and not isinstance(value, bool):
                    counts[name] = value
                    break
        if not counts:
            return None
        return cls(**counts)


class SyncStats(CamelModel):
    pipelines: int
    deal_fields: int
    contact_fields: int
    users: int
    salesbots: int
    sync_time: float  # seconds


class SyncResult(CamelModel):
    """Outcome of a successful Kommo sync."""

    success: bool = True
    message: str
    last_synced: datetime
    stats: SyncStats
    snapshot: CrmSnapshot | None = Field(default=None, exclude=True)


class IntegrationStats(CamelModel):
    """Dashboard counters derived from Integration.settings and Agent.crm_data."""

    pipelines: int = 0
    stages: int = 0
    users: int = 0
    deal_fields: int = 0
    contact_fields: int = 0
    channels: int = 0
    last_sync: datetime | None = None
