"""Kommo -> platform transformers for the CRM snapshot.

Pure functions reshaping raw Kommo envelopes into the snapshot vocabulary:
- Field types: Kommo custom-field types/codes -> internal field types
- Fields: fixed built-in deal/contact fields followed by custom fields
- Pipelines: active pipelines with their stages, in upstream order
- Actions: fixed baseline actions, then assign-user (only with >=1 active
  user), then one change-stage action per pipeline with stages, then
  create-task (only with >=1 task type)
- Channels: lead sources, or a fixed fallback list when there are none
- Users / salesbots

Identical input always yields identical output, in identical order.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from src.app.platform.exceptions import MalformedPayloadError
from src.app.platform.schemas import (
    ActionOption,
    CrmAction,
    CrmChannel,
    CrmField,
    CrmPipeline,
    CrmSalesbot,
    CrmSnapshot,
    CrmStage,
    CrmUser,
)

CUSTOM_FIELD_PREFIX = "kommo_"
SOURCE_PREFIX = "source_"
CHANGE_STAGE_PREFIX = "change_stage_"


# ── Field Type Mapping ─────────────────────────────────────────────────────

FIELD_TYPE_MAP: dict[str, str] = {
    "numeric": "number",
    "price": "number",
    "date": "date",
    "birthday": "date",
    "checkbox": "boolean",
    "select": "select",
    "multiselect": "select",
    "url": "url",
}

FIELD_CODE_MAP: dict[str, str] = {
    "PHONE": "phone",
    "EMAIL": "email",
}


def map_field_type(field_type: str | None, code: str | None = None) -> str:
    """Map a Kommo field type (and code) to an internal field type.

    The type table wins; otherwise a PHONE/EMAIL code decides; everything
    else is plain text.
    """
    mapped = FIELD_TYPE_MAP.get((field_type or "").lower())
    if mapped:
        return mapped
    return FIELD_CODE_MAP.get((code or "").upper(), "text")


# ── Built-in Fields ────────────────────────────────────────────────────────

DEFAULT_DEAL_FIELDS: tuple[CrmField, ...] = (
    CrmField(id="deal_stage", key="stage_id", label="Deal stage", type="select"),
    CrmField(id="deal_name", key="name", label="Deal name", type="text"),
    CrmField(id="deal_budget", key="price", label="Budget", type="number"),
    CrmField(
        id="deal_responsible", key="responsible_user_id", label="Responsible user", type="select"
    ),
    CrmField(id="deal_created", key="created_at", label="Created at", type="date"),
    CrmField(id="deal_tags", key="tags", label="Tags", type="tags"),
)

DEFAULT_CONTACT_FIELDS: tuple[CrmField, ...] = (
    CrmField(id="contact_name", key="name", label="Contact name", type="text"),
    CrmField(id="contact_phone", key="phone", label="Phone", type="phone"),
    CrmField(id="contact_email", key="email", label="Email", type="email"),
    CrmField(id="contact_company", key="company", label="Company", type="text"),
    CrmField(id="contact_position", key="position", label="Position", type="text"),
    CrmField(id="contact_tags", key="tags", label="Tags", type="tags"),
)

# ── Actions & Channels ─────────────────────────────────────────────────────

BASELINE_ACTIONS: tuple[CrmAction, ...] = (
    CrmAction(id="send_message", name="Send message", type="text"),
    CrmAction(id="generate_ai_reply", name="Generate AI reply", type="instruction"),
    CrmAction(id="add_note", name="Add note", type="text"),
    CrmAction(id="add_tag", name="Add tag", type="text"),
    CrmAction(id="change_budget", name="Change deal budget", type="number"),
)

FALLBACK_CHANNELS: tuple[CrmChannel, ...] = (
    CrmChannel(id="whatsapp", name="WhatsApp", type="whatsapp"),
    CrmChannel(id="telegram", name="Telegram", type="telegram"),
    CrmChannel(id="instagram", name="Instagram", type="instagram"),
    CrmChannel(id="facebook", name="Facebook Messenger", type="facebook"),
    CrmChannel(id="email", name="Email", type="email"),
)


# ── Envelope Helpers ───────────────────────────────────────────────────────


def embedded_items(envelope: Any, key: str) -> list[dict[str, Any]]:
    """Return ``envelope["_embedded"][key]``; a missing key means no items."""
    if not isinstance(envelope, dict) or not isinstance(envelope.get("_embedded"), dict):
        raise MalformedPayloadError(key, "missing _embedded envelope")
    items = envelope["_embedded"].get(key)
    if items is None:
        return []
    if not isinstance(items, list):
        raise MalformedPayloadError(key, f"_embedded.{key} is not a list")
    return items


def _require(item: dict[str, Any], key: str, resource: str) -> Any:
    try:
        return item[key]
    except (KeyError, TypeError) as exc:
        raise MalformedPayloadError(resource, f"item without '{key}'") from exc


# ── Transformers ───────────────────────────────────────────────────────────


def transform_custom_fields(fields: list[dict[str, Any]], resource: str) -> list[CrmField]:
    """Kommo custom fields -> CrmField, id ``kommo_<upstream id>``."""
    result = []
    for field in fields:
        field_id = _require(field, "id", resource)
        code = field.get("code")
        result.append(
            CrmField(
                id=f"{CUSTOM_FIELD_PREFIX}{field_id}",
                key=code.lower() if code else str(field_id),
                label=field.get("name") or str(field_id),
                type=map_field_type(field.get("type") or field.get("field_type"), code),
            )
        )
    return result


def transform_pipelines(pipelines: list[dict[str, Any]]) -> list[CrmPipeline]:
    """Active pipelines with stages, both in upstream order."""
    result = []
    for pipeline in pipelines:
        if pipeline.get("is_archive"):
            continue
        statuses = (pipeline.get("_embedded") or {}).get("statuses") or []
        result.append(
            CrmPipeline(
                id=str(_require(pipeline, "id", "pipelines")),
                name=pipeline.get("name") or "",
                stages=[
                    CrmStage(
                        id=str(_require(status, "id", "statuses")),
                        name=status.get("name") or "",
                        sort=status.get("sort"),
                        color=status.get("color"),
                    )
                    for status in statuses
                ],
            )
        )
    return result


def active_users(users: list[dict[str, Any]]) -> list[CrmUser]:
    """Users whose ``rights.is_active`` is true."""
    return [
        CrmUser(
            id=str(_require(user, "id", "users")),
            name=user.get("name") or "",
            email=user.get("email"),
        )
        for user in users
        if (user.get("rights") or {}).get("is_active") is True
    ]


def build_actions(
    pipelines: list[CrmPipeline],
    users: list[CrmUser],
    task_types: list[dict[str, Any]],
) -> list[CrmAction]:
    """Assemble the action catalogue in its fixed order.

    Args:
        pipelines: Transformed pipelines (upstream order).
        users: Active users only.
        task_types: Raw Kommo task types.
    """
    actions = [action.model_copy() for action in BASELINE_ACTIONS]

    if users:
        actions.append(
            CrmAction(
                id="assign_user",
                name="Change responsible user",
                type="select",
                options=[ActionOption(value=u.id, label=u.name) for u in users],
            )
        )

    for pipeline in pipelines:
        if not pipeline.stages:
            continue
        actions.append(
            CrmAction(
                id=f"{CHANGE_STAGE_PREFIX}{pipeline.id}",
                name=f"Change stage: {pipeline.name}",
                type="select",
                pipeline_id=pipeline.id,
                pipeline_name=pipeline.name,
                options=[ActionOption(value=s.id, label=s.name) for s in pipeline.stages],
            )
        )

    if task_types:
        actions.append(
            CrmAction(
                id="create_task",
                name="Create task",
                type="select",
                options=[
                    ActionOption(
                        value=str(_require(t, "id", "task_types")),
                        label=t.get("name") or "",
                    )
                    for t in task_types
                ],
            )
        )

    return actions


def transform_sources(sources: list[dict[str, Any]]) -> list[CrmChannel]:
    """Lead sources -> channels; the fixed fallback list when there are none."""
    if not sources:
        return [channel.model_copy() for channel in FALLBACK_CHANNELS]

    channels = []
    for source in sources:
        services = source.get("services") or []
        service_type = services[0].get("type") if services else None
        pipeline_id = source.get("pipeline_id")
        channels.append(
            CrmChannel(
                id=f"{SOURCE_PREFIX}{_require(source, 'id', 'sources')}",
                name=source.get("name") or "",
                type=source.get("origin_code") or service_type or "other",
                pipeline_id=str(pipeline_id) if pipeline_id is not None else None,
                service=service_type,
            )
        )
    return channels


def transform_salesbots(bots: list[dict[str, Any]]) -> list[CrmSalesbot]:
    return [
        CrmSalesbot(
            id=str(_require(bot, "id", "salesbots")),
            name=bot.get("name") or "",
            active=not bot.get("is_disabled", False),
        )
        for bot in bots
    ]


# ── Snapshot Assembly ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class KommoPayloads:
    """The seven raw envelopes one sync fetches."""

    pipelines: dict[str, Any]
    leads_custom_fields: dict[str, Any]
    contacts_custom_fields: dict[str, Any]
    users: dict[str, Any]
    task_types: dict[str, Any]
    salesbots: dict[str, Any]
    sources: dict[str, Any]


def build_snapshot(payloads: KommoPayloads, synced_at: datetime) -> CrmSnapshot:
    """Transform every payload into a complete snapshot, entirely in memory.

    Raises:
        MalformedPayloadError: If any envelope has an unexpected shape.
    """
    pipelines = transform_pipelines(embedded_items(payloads.pipelines, "pipelines"))
    users = active_users(embedded_items(payloads.users, "users"))
    task_types = embedded_items(payloads.task_types, "task_types")

    deal_fields = list(DEFAULT_DEAL_FIELDS) + transform_custom_fields(
        embedded_items(payloads.leads_custom_fields, "custom_fields"), "leads_custom_fields"
    )
    contact_fields = list(DEFAULT_CONTACT_FIELDS) + transform_custom_fields(
        embedded_items(payloads.contacts_custom_fields, "custom_fields"), "contacts_custom_fields"
    )

    return CrmSnapshot(
        pipelines=pipelines,
        deal_fields=deal_fields,
        contact_fields=contact_fields,
        actions=build_actions(pipelines, users, task_types),
        users=users,
        channels=transform_sources(embedded_items(payloads.sources, "sources")),
        salesbots=transform_salesbots(embedded_items(payloads.salesbots, "bots")),
        last_synced=synced_at,
    )
