"""Audit sink: persist engine decisions and mirror them to the structured log."""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from followup.logging_utils import current_context
from followup.models import AuditLog
from followup.services.clock import system_clock

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def record_audit(
    db: Session,
    *,
    entity_type: str,
    entity_id: UUID | str,
    action: str,
    actor: str | None = None,
    details: dict[str, Any] | None = None,
    level: int = logging.INFO,
) -> AuditLog:
    """Append an audit entry and emit the matching log record.

    Entries written while serving an HTTP request carry its ``request_id``.
    """

    request_id = current_context()["request_id"]
    if request_id is not None:
        details = {**(details or {}), "request_id": request_id}

    entry = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or SYSTEM_ACTOR,
        level=logging.getLevelName(level),
        occurred_at=system_clock(),
        details=details,
    )
    db.add(entry)
    db.flush()

    logger.log(
        level,
        action,
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "actor": entry.actor,
            "details": details,
        },
    )
    return entry
