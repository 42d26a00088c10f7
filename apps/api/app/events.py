from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from app.context import get_company_id, get_correlation_id
from app.core.events import event_bus

published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any]) -> None:
    """Stamp a domain event envelope and hand it to in-process subscribers.

    Missing ``correlation_id`` and ``company_id`` are taken from the request
    context; every envelope gets its own ``event_id`` and ``occurred_at``.
    """
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()
    if envelope.get("company_id") is None:
        envelope["company_id"] = get_company_id()
    envelope.setdefault("event_id", str(uuid.uuid4()))
    envelope.setdefault("occurred_at", datetime.now(timezone.utc).isoformat())

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)


def events_for_deal(deal_id: str) -> list[dict[str, Any]]:
    return [envelope for envelope in published_events if envelope.get("deal_id") == deal_id]
