from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from app.escrow.models import AuditRecord
from services.observability import get_request_id


def write_audit_log(
    tx,
    *,
    actor_id: Optional[str],
    action: str,
    metadata: dict[str, Any] | None = None,
    now: Optional[datetime] = None,
) -> AuditRecord:
    """Stage an audit row in the caller's transaction; it commits or vanishes with it."""
    meta = dict(metadata or {})
    meta.setdefault("request_id", get_request_id())
    rec = AuditRecord(
        id=str(uuid4()),
        project_id=tx.project_id,
        action=action,
        actor_id=actor_id,
        metadata=meta,
        created_at=now or datetime.now(timezone.utc),
    )
    tx.add_audit(rec)
    return rec
