from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from dealflow.context import get_correlation_id

if TYPE_CHECKING:
    from dealflow.pipeline.access import Identity


audit_entries: list[dict[str, Any]] = []


def record(
    identity: Identity,
    entity_type: str,
    entity_id: str,
    action: str,
    *,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Append a before/after snapshot of a change made inside the current transaction."""
    entry = {
        "id": str(uuid.uuid4()),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": identity.user_id,
        "actor_role": identity.role.value,
        "correlation_id": identity.correlation_id or get_correlation_id(),
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
    }
    audit_entries.append(entry)
    return entry

