"""Kommo webhook payload parsing.

Kommo posts webhooks form-encoded with bracketed keys
(``leads[status][0][id]=42&leads[status][0][status_id]=7``); test tools and
proxies sometimes re-post them as JSON keyed by event
(``{"leads[status]": [{"id": 42, "status_id": 7}]}``). Both shapes parse to
the same ``{event: [item, ...]}`` mapping.
"""

from __future__ import annotations

import json
import re
from typing import Any
from urllib.parse import parse_qsl

WEBHOOK_EVENTS: tuple[str, ...] = (
    "leads[add]",
    "leads[update]",
    "leads[delete]",
    "leads[status]",
    "contacts[add]",
    "contacts[update]",
    "contacts[delete]",
    "companies[add]",
    "companies[update]",
    "companies[delete]",
)

_FORM_KEY = re.compile(r"^(?P<event>\w+\[\w+\])\[(?P<index>\d+)\]\[(?P<field>\w+)\]")


def _parse_form(body: str) -> dict[str, list[dict[str, Any]]]:
    grouped: dict[str, dict[int, dict[str, Any]]] = {}
    for key, value in parse_qsl(body, keep_blank_values=True):
        match = _FORM_KEY.match(key)
        if not match:
            continue
        items = grouped.setdefault(match["event"], {})
        items.setdefault(int(match["index"]), {})[match["field"]] = value
    return {event: [items[i] for i in sorted(items)] for event, items in grouped.items()}


def parse_webhook_payload(body: bytes, content_type: str | None) -> dict[str, list[dict[str, Any]]]:
    """Return the webhook's events mapped to their items.

    Raises:
        ValueError: If a JSON body is not an object.
    """
    text = body.decode("utf-8", errors="replace")
    if content_type and "json" in content_type:
        data = json.loads(text) if text.strip() else {}
        if not isinstance(data, dict):
            raise ValueError("Webhook JSON body must be an object")
        return {
            event: items if isinstance(items, list) else [items]
            for event, items in data.items()
            if event in WEBHOOK_EVENTS
        }
    return {
        event: items for event, items in _parse_form(text).items() if event in WEBHOOK_EVENTS
    }
