"""Audit log for payment and provisioning decisions."""

from typing import Any

from app.db.base import RecordStore
from app.models.audit_log import AuditEvent


async def log_event(
    store: RecordStore,
    user_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append to the audit trail."""
    await store.insert_audit_event(
        AuditEvent(
            user_id=user_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata or {},
        )
    )
