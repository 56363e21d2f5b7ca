from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.models.audit import AuditLog


def record(
    session: Session,
    *,
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    reason: str | None = None,
    correlation_id: str | None = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction.

    The entry is committed or rolled back together with the change it describes.
    """
    entry = AuditLog(
        actor_id=actor_user_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        before=before,
        after=after,
        reason=reason,
        correlation_id=correlation_id or get_correlation_id(),
    )
    session.add(entry)
    return entry
