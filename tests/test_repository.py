"""Tests for the platform repository (data-access layer).

Covers the uniform CRUD surface over an in-memory SQLite database:
- Boolean and document columns come back as real bools / structured values
- Partial updates write only the fields that were set; explicit None clears
- Single-row operations reject filters without an id or natural key
- Nested trigger and chain writes, hydrated on read
- Deals hydrated with their contact
- ON DELETE CASCADE from users down to owned rows
- Legacy string-encoded documents decoded on read
- Integration upsert and the atomic CRM sync write
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from src.app.core.security import hash_password, verify_password
from src.app.platform.exceptions import AccessDeniedError, InvalidFilterError, NotFoundError
from src.app.platform.models import AgentModel
from src.app.platform.schemas import (
    AgentCreate,
    AgentUpdate,
    ChainConditionCreate,
    ChainCreate,
    ChainScheduleCreate,
    ChainStepActionCreate,
    ChainStepCreate,
    ContactCreate,
    CrmPipeline,
    CrmSnapshot,
    CrmStage,
    DealCreate,
    IntegrationCreate,
    NotificationCreate,
    SyncCounts,
    TriggerActionCreate,
    TriggerCreate,
    TriggerUpdate,
    UserCreate,
)


# ── Basic CRUD ───────────────────────────────────────────────────────────────


async def test_create_returns_generated_id_and_bools(repo, user):
    agent = await repo.agents.create(
        AgentCreate(name="Closer", user_id=user.id, is_active=True)
    )

    assert agent.id
    assert agent.created_at is not None
    assert agent.is_active is True
    assert agent.crm_connected is False

    loaded = await repo.agents.find_first({"id": agent.id})
    assert loaded is not None
    assert loaded.is_active is True
    assert isinstance(loaded.crm_connected, bool)


async def test_document_columns_round_trip_as_structures(repo, user):
    agent = await repo.agents.create(
        AgentCreate(
            name="Doc agent",
            user_id=user.id,
            pipeline_settings={"pipelines": ["1", "2"], "all": False},
        )
    )

    loaded = await repo.agents.find_first({"id": agent.id})
    assert loaded.pipeline_settings == {"pipelines": ["1", "2"], "all": False}


async def test_user_stores_password_hash(repo):
    created = await repo.users.create(
        UserCreate(email="hash@example.com", password_hash=hash_password("s3cret"), name="Hash")
    )

    loaded = await repo.users.find_first({"email": "hash@example.com"})

    assert loaded.id == created.id
    assert loaded.password_hash != "s3cret"
    assert verify_password("s3cret", loaded.password_hash) is True


async def test_find_first_returns_none_when_absent(repo):
    assert await repo.agents.find_first({"id": "missing"}) is None


async def test_find_many_filters_and_orders(repo, user, other_user):
    await repo.agents.create(AgentCreate(name="b-agent", user_id=user.id))
    await repo.agents.create(AgentCreate(name="a-agent", user_id=user.id))
    await repo.agents.create(AgentCreate(name="foreign", user_id=other_user.id))

    agents = await repo.agents.find_many(
        where={"user_id": user.id}, order_by={"name": "asc"}
    )

    assert [a.name for a in agents] == ["a-agent", "b-agent"]


async def test_find_many_list_value_means_in(repo, user):
    first = await repo.agents.create(AgentCreate(name="one", user_id=user.id))
    second = await repo.agents.create(AgentCreate(name="two", user_id=user.id))
    await repo.agents.create(AgentCreate(name="three", user_id=user.id))

    agents = await repo.agents.find_many(where={"id": [first.id, second.id]})

    assert {a.name for a in agents} == {"one", "two"}


async def test_partial_update_leaves_unset_fields(repo, user):
    agent = await repo.agents.create(
        AgentCreate(
            name="Before",
            user_id=user.id,
            is_active=True,
            system_instructions="Be polite",
            pipeline_settings={"all": True},
        )
    )
    later = datetime(2099, 1, 1, tzinfo=timezone.utc)

    with patch("src.app.platform.repository._utcnow", return_value=later):
        updated = await repo.agents.update({"id": agent.id}, AgentUpdate(name="After"))

    before = agent.model_dump()
    after = updated.model_dump()
    changed = {key for key in before if before[key] != after[key]}
    assert changed == {"name", "updated_at"}
    assert updated.name == "After"
    assert updated.updated_at.replace(tzinfo=timezone.utc) == later


async def test_explicit_none_clears_column(repo, user):
    agent = await repo.agents.create(
        AgentCreate(name="Agent", user_id=user.id, system_instructions="Be polite")
    )

    updated = await repo.agents.update(
        {"id": agent.id}, AgentUpdate(system_instructions=None)
    )

    assert updated.system_instructions is None


async def test_update_missing_row_raises_not_found(repo):
    with pytest.raises(NotFoundError):
        await repo.agents.update({"id": "missing"}, AgentUpdate(name="x"))


# ── Filter Validation ────────────────────────────────────────────────────────


async def test_single_row_filter_requires_identity(repo, agent):
    with pytest.raises(InvalidFilterError):
        await repo.agents.find_first({"name": agent.name})

    with pytest.raises(InvalidFilterError):
        await repo.agents.update({"user_id": agent.user_id}, AgentUpdate(name="x"))

    with pytest.raises(InvalidFilterError):
        await repo.agents.delete({})


async def test_natural_key_identifies_single_row(repo, agent):
    await repo.integrations.create(
        IntegrationCreate(agent_id=agent.id, integration_type="kommo")
    )

    found = await repo.integrations.find_first(
        {"agent_id": agent.id, "integration_type": "kommo"}
    )

    assert found is not None
    assert found.integration_type == "kommo"


async def test_unknown_column_rejected(repo):
    with pytest.raises(InvalidFilterError):
        await repo.agents.find_many(where={"not_a_column": 1})

    with pytest.raises(InvalidFilterError):
        await repo.agents.find_many(order_by={"created_at": "sideways"})


async def test_delete_many_requires_filter(repo):
    with pytest.raises(InvalidFilterError):
        await repo.notifications.delete_many({})


async def test_delete_many_returns_count(repo, user):
    for i in range(3):
        await repo.notifications.create(
            NotificationCreate(user_id=user.id, title=f"n{i}", message="m")
        )

    removed = await repo.notifications.delete_many({"user_id": user.id})

    assert removed == 3
    assert await repo.notifications.find_many(where={"user_id": user.id}) == []


# ── Nested Writes ────────────────────────────────────────────────────────────


async def test_trigger_created_with_ordered_actions(repo, agent):
    trigger = await repo.triggers.create(
        TriggerCreate(
            agent_id=agent.id,
            name="Qualified",
            condition="stage == qualified",
            actions=[
                TriggerActionCreate(action="second", order=2),
                TriggerActionCreate(action="first", order=1),
            ],
        )
    )

    assert [a.action for a in trigger.actions] == ["first", "second"]

    loaded = await repo.triggers.find_first({"id": trigger.id}, include=["actions"])
    assert [a.order for a in loaded.actions] == [1, 2]

    # Without include the collection is not loaded
    bare = await repo.triggers.find_first({"id": trigger.id})
    assert bare.actions is None


async def test_trigger_update_appends_actions(repo, agent):
    trigger = await repo.triggers.create(
        TriggerCreate(
            agent_id=agent.id,
            name="Qualified",
            condition="stage == qualified",
            actions=[TriggerActionCreate(action="first", order=1)],
        )
    )

    updated = await repo.triggers.update(
        {"id": trigger.id},
        TriggerUpdate(actions=[TriggerActionCreate(action="second", order=2)]),
    )

    assert [a.action for a in updated.actions] == ["first", "second"]


async def test_chain_created_with_steps_conditions_and_schedules(repo, agent):
    chain = await repo.chains.create(
        ChainCreate(
            agent_id=agent.id,
            name="Follow-up",
            conditions=[ChainConditionCreate(stage_id="101")],
            steps=[
                ChainStepCreate(
                    step_order=2,
                    delay_value=1,
                    delay_unit="days",
                    actions=[ChainStepActionCreate(action_type="send_message")],
                ),
                ChainStepCreate(
                    step_order=1,
                    delay_value=30,
                    actions=[
                        ChainStepActionCreate(action_type="add_tag", action_order=1),
                        ChainStepActionCreate(
                            action_type="generate_ai_reply",
                            instruction="Ask about budget",
                            action_order=0,
                        ),
                    ],
                ),
            ],
            schedules=[ChainScheduleCreate(day_of_week=1), ChainScheduleCreate(day_of_week=0)],
        )
    )

    loaded = await repo.chains.find_first(
        {"id": chain.id}, include=["conditions", "steps", "schedules"]
    )

    assert [c.stage_id for c in loaded.conditions] == ["101"]
    assert [s.step_order for s in loaded.steps] == [1, 2]
    assert [a.action_type for a in loaded.steps[0].actions] == [
        "generate_ai_reply",
        "add_tag",
    ]
    assert [s.day_of_week for s in loaded.schedules] == [0, 1]


async def test_unknown_include_rejected(repo, agent):
    with pytest.raises(InvalidFilterError):
        await repo.agents.find_first({"id": agent.id}, include=["actions"])


async def test_deal_includes_contact(repo, user):
    contact = await repo.contacts.create(
        ContactCreate(name="Ana", user_id=user.id, email="ana@example.com")
    )
    deal = await repo.deals.create(
        DealCreate(name="Big deal", user_id=user.id, price=1500.0, contact_id=contact.id)
    )

    loaded = await repo.deals.find_first({"id": deal.id}, include=["contact"])

    assert loaded.contact is not None
    assert loaded.contact.email == "ana@example.com"


# ── Delete & Cascade ─────────────────────────────────────────────────────────


async def test_delete_returns_id(repo, agent):
    deleted = await repo.agents.delete({"id": agent.id})

    assert deleted == agent.id
    assert await repo.agents.find_first({"id": agent.id}) is None


async def test_delete_missing_raises_not_found(repo):
    with pytest.raises(NotFoundError):
        await repo.agents.delete({"id": "missing"})


async def test_deleting_user_cascades_to_owned_rows(repo, user, agent):
    integration = await repo.integrations.create(
        IntegrationCreate(agent_id=agent.id, integration_type="kommo")
    )
    trigger = await repo.triggers.create(
        TriggerCreate(
            agent_id=agent.id,
            name="t",
            condition="c",
            actions=[TriggerActionCreate(action="a")],
        )
    )

    await repo.users.delete({"id": user.id})

    assert await repo.agents.find_first({"id": agent.id}) is None
    assert await repo.integrations.find_first({"id": integration.id}) is None
    assert await repo.triggers.find_first({"id": trigger.id}) is None
    assert await repo.trigger_actions.find_many(where={"trigger_id": trigger.id}) == []


# ── Legacy Documents ─────────────────────────────────────────────────────────


async def test_legacy_encoded_crm_data_is_decoded(repo, engine, user):
    from sqlalchemy.ext.asyncio import AsyncSession

    async with AsyncSession(engine) as session:
        session.add(
            AgentModel(
                id="legacy-agent",
                name="Legacy",
                user_id=user.id,
                crm_data='{"pipelines": [], "schemaVersion": 1}',
            )
        )
        await session.commit()

    agent = await repo.agents.find_first({"id": "legacy-agent"})

    assert agent.crm_data == {"pipelines": [], "schemaVersion": 1}


# ── Owner Checks & Integrations ──────────────────────────────────────────────


async def test_get_owned_agent(repo, agent, user, other_user):
    assert (await repo.get_owned_agent(agent.id, user.id)).id == agent.id

    with pytest.raises(AccessDeniedError):
        await repo.get_owned_agent(agent.id, other_user.id)

    with pytest.raises(NotFoundError):
        await repo.get_owned_agent("missing", user.id)


async def test_upsert_integration_creates_then_updates(repo, agent):
    created = await repo.upsert_integration(agent.id, "kommo", is_connected=True)

    assert created.is_connected is True
    assert created.connected_at is not None
    assert created.last_synced is not None

    updated = await repo.upsert_integration(agent.id, "kommo", settings={"note": "x"})

    assert updated.id == created.id
    assert updated.is_connected is True
    assert updated.settings == {"note": "x"}
    assert len(await repo.integrations.find_many(where={"agent_id": agent.id})) == 1


# ── CRM Sync Write ───────────────────────────────────────────────────────────


def _snapshot() -> CrmSnapshot:
    return CrmSnapshot(
        pipelines=[
            CrmPipeline(id="1", name="Sales", stages=[CrmStage(id="10", name="New")])
        ],
    )


async def test_save_crm_sync_writes_agent_and_integration(repo, agent):
    integration = await repo.upsert_integration(agent.id, "kommo", is_connected=True)
    snapshot = _snapshot()
    synced_at = datetime.now(timezone.utc)

    await repo.save_crm_sync(
        agent_id=agent.id,
        integration_id=integration.id,
        snapshot=snapshot,
        counts=SyncCounts.from_snapshot(snapshot),
        crm_type="kommo",
        synced_at=synced_at,
    )

    loaded_agent = await repo.agents.find_first({"id": agent.id})
    loaded_integration = await repo.integrations.find_first({"id": integration.id})

    assert loaded_agent.crm_connected is True
    assert loaded_agent.crm_type == "kommo"
    assert loaded_agent.crm_data["pipelines"][0]["stages"][0]["name"] == "New"
    assert loaded_agent.crm_data["schemaVersion"] == 1
    assert loaded_integration.settings["pipelines"] == 1
    assert loaded_integration.settings["dealFields"] == 0
    assert loaded_integration.sync_status == "idle"


async def test_save_crm_sync_is_all_or_nothing(repo, agent):
    snapshot = _snapshot()

    with pytest.raises(NotFoundError):
        await repo.save_crm_sync(
            agent_id=agent.id,
            integration_id="missing",
            snapshot=snapshot,
            counts=SyncCounts.from_snapshot(snapshot),
            crm_type="kommo",
            synced_at=datetime.now(timezone.utc),
        )

    loaded_agent = await repo.agents.find_first({"id": agent.id})
    assert loaded_agent.crm_data is None
    assert loaded_agent.crm_connected is False
