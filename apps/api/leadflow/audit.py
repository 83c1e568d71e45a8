from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from leadflow.context import get_correlation_id

# Process-local trail of lead and workflow mutations, newest last.
audit_entries: list[dict[str, Any]] = []


def record(
    *,
    actor_user_id: str,
    entity_type: str,
    entity_id: uuid.UUID | str,
    action: str,
    sub_account_id: uuid.UUID | None,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "sub_account_id": str(sub_account_id) if sub_account_id is not None else None,
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": correlation_id or get_correlation_id(),
    }
    audit_entries.append(entry)
    return entry


def entries_for(entity_type: str, entity_id: uuid.UUID | str, action: str | None = None) -> list[dict[str, Any]]:
    wanted_id = str(entity_id)
    return [
        entry
        for entry in audit_entries
        if entry["entity_type"] == entity_type
        and entry["entity_id"] == wanted_id
        and (action is None or entry["action"] == action)
    ]
