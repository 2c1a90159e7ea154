from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from educrm.context import get_correlation_id
from educrm.core.events import event_bus

published_events: list[dict[str, Any]] = []


def build_envelope(
    event_type: str,
    *,
    tenant_id: uuid.UUID | str,
    actor_user_id: str | None,
    payload: dict[str, Any],
    sub_account_id: uuid.UUID | str | None = None,
) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "tenant_id": str(tenant_id),
        "sub_account_id": str(sub_account_id) if sub_account_id is not None else None,
        "version": 1,
        "payload": payload,
    }


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
