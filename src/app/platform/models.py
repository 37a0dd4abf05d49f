"""Platform persistence models -- every table behind the data-access layer.

SQLAlchemy models on the shared ``Base``:
- UserModel: account owner; deleting a user cascades to everything below
- AgentModel: configured AI agent, including the CRM snapshot (crm_data)
- IntegrationModel: one row per (agent, integration_type)
- KommoTokenModel: OAuth tokens for a Kommo integration (one per integration)
- TriggerModel / TriggerActionModel: stage-triggered action lists
- ChainModel + ChainConditionModel / ChainStepModel / ChainStepActionModel /
  ChainScheduleModel: delayed follow-up chains
- KbCategoryModel / KbArticleModel: knowledge base
- ContactModel / DealModel: local CRM mirror
- NotificationModel: user-facing notifications

Boolean flags use ``Boolean`` (stored as 0/1 on SQLite, always loaded as
``bool``). Document columns use ``JSON`` and are loaded as structured values.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """created_at / updated_at columns shared by every table."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


# ── Accounts & Agents ───────────────────────────────────────────────────────


class UserModel(TimestampMixin, Base):
    """Platform user. Owns agents, contacts, deals, KB rows and notifications."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(200), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="USER")


class AgentModel(TimestampMixin, Base):
    """Conversational AI agent configured by a user.

    ``crm_data`` holds the synchronized CRM snapshot as a JSON document and is
    fully replaced on each sync.
    """

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    model: Mapped[str] = mapped_column(
        String(200), nullable=False, default="Google Gemini 2.5 Flash"
    )
    system_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    pipeline_settings: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    channel_settings: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    kb_settings: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    crm_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    crm_connected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    crm_data: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )


# ── Integrations ────────────────────────────────────────────────────────────


class IntegrationModel(TimestampMixin, Base):
    """Third-party integration attached to an agent (kommo, google, ...)."""

    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("agent_id", "integration_type", name="uq_integration_agent_type"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    agent_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    integration_type: Mapped[str] = mapped_column(String(50), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_connected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    connected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_synced: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    settings: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    sync_status: Mapped[str] = mapped_column(String(20), nullable=False, default="idle")


class KommoTokenModel(TimestampMixin, Base):
    """Kommo OAuth token pair for a single integration."""

    __tablename__ = "kommo_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    integration_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("integrations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    base_domain: Mapped[str] = mapped_column(String(255), nullable=False)
    api_domain: Mapped[str | None] = mapped_column(String(255), nullable=True)


# ── Triggers ────────────────────────────────────────────────────────────────


class TriggerModel(TimestampMixin, Base):
    """Agent trigger: when ``condition`` matches, run the ordered actions."""

    __tablename__ = "triggers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    agent_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    condition: Mapped[str] = mapped_column(Text, nullable=False)
    cancel_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)


class TriggerActionModel(TimestampMixin, Base):
    __tablename__ = "trigger_actions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    trigger_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("triggers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(Text, nullable=False)
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# ── Chains ──────────────────────────────────────────────────────────────────


class ChainModel(TimestampMixin, Base):
    """Follow-up chain: timed steps that run while a deal sits in given stages."""

    __tablename__ = "chains"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    agent_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    condition_type: Mapped[str] = mapped_column(String(20), nullable=False, default="all")
    condition_exclude: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)


class ChainConditionModel(TimestampMixin, Base):
    __tablename__ = "chain_conditions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    chain_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("chains.id", ondelete="CASCADE"), nullable=False, index=True
    )
    stage_id: Mapped[str] = mapped_column(String(100), nullable=False)


class ChainStepModel(TimestampMixin, Base):
    __tablename__ = "chain_steps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    chain_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("chains.id", ondelete="CASCADE"), nullable=False, index=True
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delay_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delay_unit: Mapped[str] = mapped_column(String(20), nullable=False, default="minutes")


class ChainStepActionModel(TimestampMixin, Base):
    __tablename__ = "chain_step_actions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    step_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("chain_steps.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    instruction: Mapped[str | None] = mapped_column(Text, nullable=True)
    action_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ChainScheduleModel(TimestampMixin, Base):
    __tablename__ = "chain_schedules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    chain_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("chains.id", ondelete="CASCADE"), nullable=False, index=True
    )
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False, default="09:00")
    end_time: Mapped[str] = mapped_column(String(5), nullable=False, default="18:00")


# ── Knowledge Base ──────────────────────────────────────────────────────────


class KbCategoryModel(TimestampMixin, Base):
    __tablename__ = "kb_categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    parent_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("kb_categories.id", ondelete="CASCADE"), nullable=True
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )


class KbArticleModel(TimestampMixin, Base):
    __tablename__ = "kb_articles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    category_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("kb_categories.id", ondelete="SET NULL"), nullable=True
    )
    related_articles: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )


# ── Local CRM mirror ────────────────────────────────────────────────────────


class ContactModel(TimestampMixin, Base):
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    company: Mapped[str | None] = mapped_column(String(300), nullable=True)
    position: Mapped[str | None] = mapped_column(String(200), nullable=True)
    tags: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    custom_fields: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    crm_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    crm_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )


class DealModel(TimestampMixin, Base):
    __tablename__ = "deals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="RUB")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="open")
    stage: Mapped[str | None] = mapped_column(String(200), nullable=True)
    pipeline_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    pipeline_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    responsible_user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    contact_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True
    )
    tags: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    custom_fields: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    crm_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    crm_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )


# ── Notifications ───────────────────────────────────────────────────────────


class NotificationModel(TimestampMixin, Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(30), nullable=False, default="info")
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
