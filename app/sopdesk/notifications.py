"""
Notification sink.

Notifications are stored as rows for whatever delivery transport reads them.
From the workflow's point of view `notify` is fire-and-forget: a failed write is
logged and the triggering operation carries on.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.sopdesk.models import Notification

logger = logging.getLogger(__name__)

KIND_REVIEW_REQUEST = "working_copy_review"
KIND_DECISION = "working_copy_decision"
KIND_MERGED = "working_copy_merged"

_TITLES = {
    KIND_REVIEW_REQUEST: "Working Copy Review Request",
    KIND_DECISION: "Working Copy Reviewed",
    KIND_MERGED: "Working Copy Merged",
}

_PRIORITIES = {
    KIND_REVIEW_REQUEST: "high",
}


def _message(kind: str, payload: dict[str, Any]) -> str:
    title = payload.get("document_title") or "a document"
    if kind == KIND_REVIEW_REQUEST:
        author = payload.get("author_name") or "A user"
        return f'{author} has submitted a working copy of "{title}" for your review.'
    if kind == KIND_DECISION:
        reviewer = payload.get("reviewer_name") or "A reviewer"
        status = (payload.get("status") or "").replace("_", " ")
        return f'{reviewer} {status} your working copy of "{title}".'
    if kind == KIND_MERGED:
        return f'Your working copy of "{title}" has been approved and merged successfully.'
    return payload.get("message") or kind


def notify(s: Session, user_id: int, kind: str, payload: dict[str, Any]) -> Notification | None:
    try:
        with s.begin_nested():
            n = Notification(
                user_id=user_id,
                kind=kind,
                title=_TITLES.get(kind, kind),
                message=_message(kind, payload),
                payload=dict(payload),
                priority=_PRIORITIES.get(kind, "medium"),
            )
            s.add(n)
            s.flush()
        return n
    except Exception:
        logger.exception("Notification write failed (user_id=%s kind=%s)", user_id, kind)
        return None


def list_notifications(s: Session, user_id: int, *, unread_only: bool = False) -> list[Notification]:
    q = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        q = q.where(Notification.read.is_(False))
    return list(s.scalars(q.order_by(Notification.created_at.desc(), Notification.id.desc())))
