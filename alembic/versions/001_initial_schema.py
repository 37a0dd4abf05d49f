"""Initial platform schema: users, agents, integrations, Kommo tokens,
triggers, chains, knowledge base, CRM mirror and notifications.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column("id", sa.String(36), nullable=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _owner(
    table: str, column: str, parent: str, ondelete: str = "CASCADE", nullable: bool = False
) -> sa.Column:
    return sa.Column(
        column,
        sa.String(36),
        sa.ForeignKey(f"{parent}.id", ondelete=ondelete, name=f"fk_{table}_{column}_{parent}"),
        nullable=nullable,
    )


def upgrade() -> None:
    op.create_table(
        "users",
        _id(),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("password_hash", sa.String(200), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )

    op.create_table(
        "agents",
        _id(),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("model", sa.String(200), nullable=False),
        sa.Column("system_instructions", sa.Text(), nullable=True),
        sa.Column("pipeline_settings", sa.JSON(), nullable=True),
        sa.Column("channel_settings", sa.JSON(), nullable=True),
        sa.Column("kb_settings", sa.JSON(), nullable=True),
        sa.Column("crm_type", sa.String(50), nullable=True),
        sa.Column("crm_connected", sa.Boolean(), nullable=False),
        sa.Column("crm_data", sa.JSON(), nullable=True),
        _owner("agents", "user_id", "users"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_agents"),
    )
    op.create_index("ix_agents_user_id", "agents", ["user_id"])

    op.create_table(
        "integrations",
        _id(),
        _owner("integrations", "agent_id", "agents"),
        sa.Column("integration_type", sa.String(50), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_connected", sa.Boolean(), nullable=False),
        sa.Column("connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settings", sa.JSON(), nullable=True),
        sa.Column("sync_status", sa.String(20), nullable=False, server_default="idle"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_integrations"),
        sa.UniqueConstraint("agent_id", "integration_type", name="uq_integration_agent_type"),
    )
    op.create_index("ix_integrations_agent_id", "integrations", ["agent_id"])

    op.create_table(
        "kommo_tokens",
        _id(),
        _owner("kommo_tokens", "integration_id", "integrations"),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("base_domain", sa.String(255), nullable=False),
        sa.Column("api_domain", sa.String(255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_kommo_tokens"),
        sa.UniqueConstraint("integration_id", name="uq_kommo_tokens_integration_id"),
    )

    # ── Triggers ────────────────────────────────────────────────────────────

    op.create_table(
        "triggers",
        _id(),
        _owner("triggers", "agent_id", "agents"),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("condition", sa.Text(), nullable=False),
        sa.Column("cancel_message", sa.Text(), nullable=True),
        sa.Column("run_limit", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_triggers"),
    )
    op.create_index("ix_triggers_agent_id", "triggers", ["agent_id"])

    op.create_table(
        "trigger_actions",
        _id(),
        _owner("trigger_actions", "trigger_id", "triggers"),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("order", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_trigger_actions"),
    )
    op.create_index("ix_trigger_actions_trigger_id", "trigger_actions", ["trigger_id"])

    # ── Chains ──────────────────────────────────────────────────────────────

    op.create_table(
        "chains",
        _id(),
        _owner("chains", "agent_id", "agents"),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("condition_type", sa.String(20), nullable=False),
        sa.Column("condition_exclude", sa.Text(), nullable=True),
        sa.Column("run_limit", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_chains"),
    )
    op.create_index("ix_chains_agent_id", "chains", ["agent_id"])

    op.create_table(
        "chain_conditions",
        _id(),
        _owner("chain_conditions", "chain_id", "chains"),
        sa.Column("stage_id", sa.String(100), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_chain_conditions"),
    )
    op.create_index("ix_chain_conditions_chain_id", "chain_conditions", ["chain_id"])

    op.create_table(
        "chain_steps",
        _id(),
        _owner("chain_steps", "chain_id", "chains"),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("delay_value", sa.Integer(), nullable=False),
        sa.Column("delay_unit", sa.String(20), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_chain_steps"),
    )
    op.create_index("ix_chain_steps_chain_id", "chain_steps", ["chain_id"])

    op.create_table(
        "chain_step_actions",
        _id(),
        _owner("chain_step_actions", "step_id", "chain_steps"),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("instruction", sa.Text(), nullable=True),
        sa.Column("action_order", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_chain_step_actions"),
    )
    op.create_index("ix_chain_step_actions_step_id", "chain_step_actions", ["step_id"])

    op.create_table(
        "chain_schedules",
        _id(),
        _owner("chain_schedules", "chain_id", "chains"),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("start_time", sa.String(5), nullable=False),
        sa.Column("end_time", sa.String(5), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_chain_schedules"),
    )
    op.create_index("ix_chain_schedules_chain_id", "chain_schedules", ["chain_id"])

    # ── Knowledge Base ──────────────────────────────────────────────────────

    op.create_table(
        "kb_categories",
        _id(),
        sa.Column("name", sa.String(200), nullable=False),
        _owner("kb_categories", "parent_id", "kb_categories", nullable=True),
        _owner("kb_categories", "user_id", "users"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_kb_categories"),
    )
    op.create_index("ix_kb_categories_user_id", "kb_categories", ["user_id"])

    op.create_table(
        "kb_articles",
        _id(),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _owner("kb_articles", "category_id", "kb_categories", ondelete="SET NULL", nullable=True),
        sa.Column("related_articles", sa.JSON(), nullable=True),
        _owner("kb_articles", "user_id", "users"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_kb_articles"),
    )
    op.create_index("ix_kb_articles_user_id", "kb_articles", ["user_id"])

    # ── Local CRM mirror ────────────────────────────────────────────────────

    op.create_table(
        "contacts",
        _id(),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("company", sa.String(300), nullable=True),
        sa.Column("position", sa.String(200), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("custom_fields", sa.JSON(), nullable=True),
        sa.Column("crm_id", sa.String(100), nullable=True),
        sa.Column("crm_type", sa.String(50), nullable=True),
        _owner("contacts", "user_id", "users"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_contacts"),
    )
    op.create_index("ix_contacts_user_id", "contacts", ["user_id"])

    op.create_table(
        "deals",
        _id(),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(10), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("stage", sa.String(200), nullable=True),
        sa.Column("pipeline_id", sa.String(100), nullable=True),
        sa.Column("pipeline_name", sa.String(200), nullable=True),
        sa.Column("responsible_user_id", sa.String(100), nullable=True),
        _owner("deals", "contact_id", "contacts", ondelete="SET NULL", nullable=True),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("custom_fields", sa.JSON(), nullable=True),
        sa.Column("crm_id", sa.String(100), nullable=True),
        sa.Column("crm_type", sa.String(50), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        _owner("deals", "user_id", "users"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_deals"),
    )
    op.create_index("ix_deals_user_id", "deals", ["user_id"])

    op.create_table(
        "notifications",
        _id(),
        _owner("notifications", "user_id", "users"),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_notifications"),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])


def downgrade() -> None:
    for table in (
        "notifications",
        "deals",
        "contacts",
        "kb_articles",
        "kb_categories",
        "chain_schedules",
        "chain_step_actions",
        "chain_steps",
        "chain_conditions",
        "chains",
        "trigger_actions",
        "triggers",
        "kommo_tokens",
        "integrations",
        "agents",
        "users",
    ):
        op.drop_table(table)
