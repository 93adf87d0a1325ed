from __future__ import annotations

import json
import logging
from typing import Any

from flask import g, has_request_context
from sqlalchemy.orm import Session

from app.sopdesk.models import AuditEvent, User

logger = logging.getLogger(__name__)


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent | None:
    """
    Append-only audit event helper.

    Best-effort: the row is written inside a SAVEPOINT and a failure is logged and
    swallowed, so the audited operation still commits.
    """
    rid = request_id or (getattr(g, "request_id", None) if has_request_context() else None)
    try:
        with s.begin_nested():
            ev = AuditEvent(
                request_id=rid,
                actor_user_id=actor.id if actor else None,
                actor_user_email=actor.email if actor else None,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                reason=reason,
                metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
            )
            s.add(ev)
            s.flush()
        return ev
    except Exception:
        logger.exception("Audit write failed (action=%s entity=%s:%s)", action, entity_type, entity_id)
        return None
