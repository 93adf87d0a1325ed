"""
Working copy store: create, edit, discard and look up working copies.

Functions take the caller's session and never commit; the caller owns the
transaction so each operation lands atomically or not at all.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.sopdesk.audit import record_event
from app.sopdesk.errors import Conflict, Forbidden, Invalid, NotFound
from app.sopdesk.modules.documents.service import METADATA_FIELDS, get_document
from app.sopdesk.rbac import PERM_DISCARD_ANY, user_has_permission

from .models import (
    REVIEW_CHANGES_REQUESTED,
    REVIEW_REJECTED,
    WorkingCopy,
    WorkingCopyReview,
)

if TYPE_CHECKING:
    from app.sopdesk.models import User

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "content", "description")
TITLE_MAX_LENGTH = 255

# Keys in `changes` written by the system; owners cannot overwrite them.
SYSTEM_CHANGE_KEYS = frozenset(
    {"created_from_version", "submission_summary"}
    | {f"original_{f}" for f in EDITABLE_FIELDS + METADATA_FIELDS}
)


def _check_revision(wc: WorkingCopy, expected_revision: int | None) -> None:
    if expected_revision is not None and int(expected_revision) != wc.revision:
        raise Conflict(
            f"Working copy {wc.id} was modified (revision {wc.revision}, expected {expected_revision})."
        )


def _check_changes(changes: Any) -> dict:
    if changes is None:
        return {}
    if not isinstance(changes, dict):
        raise Invalid("changes must be an object.")
    protected = sorted(SYSTEM_CHANGE_KEYS.intersection(changes))
    if protected:
        raise Invalid(f"changes cannot set system keys: {', '.join(protected)}")
    unknown = sorted(set(changes) - set(METADATA_FIELDS))
    if unknown:
        raise Invalid(f"Unknown changes key(s): {', '.join(map(str, unknown))}")
    for key, value in changes.items():
        if value is not None and not isinstance(value, str):
            raise Invalid(f"changes.{key} must be a string or null.")
    return dict(changes)


def _check_fields(fields: dict[str, Any], *, allow_null: bool) -> None:
    """
    Type-check title/content/description. On create a null falls back to the
    document's value, so allow_null=True; on update only description may be null.
    """
    for name in EDITABLE_FIELDS:
        if name not in fields:
            continue
        value = fields[name]
        if value is None and (allow_null or name == "description"):
            continue
        if not isinstance(value, str):
            raise Invalid(f"{name} must be a string.")
    title = fields.get("title")
    if isinstance(title, str) and len(title) > TITLE_MAX_LENGTH:
        raise Invalid(f"title cannot exceed {TITLE_MAX_LENGTH} characters.")


def get_working_copy(s: Session, working_copy_id: str, *, for_update: bool = False) -> WorkingCopy:
    """
    Load a working copy. With for_update=True the row is locked for the rest of
    the transaction (SELECT ... FOR UPDATE; a no-op on SQLite, whose transactions
    are already exclusive).
    """
    q = select(WorkingCopy).where(WorkingCopy.id == str(working_copy_id))
    if for_update:
        q = q.with_for_update().execution_options(populate_existing=True)
    wc = s.scalars(q).one_or_none()
    if not wc:
        raise NotFound(f"Working copy {working_copy_id} not found.")
    return wc


def create_working_copy(
    s: Session,
    document_id: int,
    user: User,
    fields: dict[str, Any] | None = None,
) -> WorkingCopy:
    """
    Branch a working copy of a published document for `user`.

    Fields not supplied default to the document's current values. The
    document's version and field values are kept in `changes` as
    created_from_version / original_* for comparison at merge time.
    Raises Conflict if the user already has a copy of this document.
    """
    fields = dict(fields or {})
    doc = get_document(s, document_id)
    _check_fields(fields, allow_null=True)
    staged = _check_changes(fields.get("changes"))

    changes: dict[str, Any] = {
        "created_from_version": doc.version,
        "original_title": doc.title,
        "original_content": doc.content,
        "original_description": doc.description,
        "original_department": doc.department,
        "original_priority": doc.priority,
        "original_category": doc.category,
    }
    changes.update(staged)

    now = datetime.utcnow()
    try:
        # The unique constraint is the uniqueness check; concurrent creates lose here.
        with s.begin_nested():
            wc = WorkingCopy(
                document_id=doc.id,
                user_id=user.id,
                title=fields.get("title") or doc.title,
                content=fields.get("content") or doc.content,
                description=fields.get("description") or doc.description,
                changes=changes,
                is_submitted=False,
                revision=1,
                created_at=now,
                updated_at=now,
            )
            s.add(wc)
            s.flush()
    except IntegrityError:
        logger.info("Duplicate working copy rejected (document_id=%s user_id=%s)", doc.id, user.id)
        raise Conflict("You already have a working copy for this document.") from None

    record_event(
        s,
        actor=user,
        action="working_copy.create",
        entity_type="WorkingCopy",
        entity_id=wc.id,
        metadata={"document_id": doc.id, "from_version": doc.version},
    )
    return wc


def update_working_copy(
    s: Session,
    working_copy_id: str,
    user: User,
    fields: dict[str, Any],
    *,
    expected_revision: int | None = None,
) -> WorkingCopy:
    """Partially update an unsubmitted working copy. Only its owner may edit it."""
    wc = get_working_copy(s, working_copy_id, for_update=True)
    if wc.user_id != user.id:
        raise Forbidden("Only the owner can edit this working copy.")
    if wc.is_submitted:
        raise Invalid("Cannot edit a submitted working copy.")
    _check_revision(wc, expected_revision)

    _check_fields(fields, allow_null=False)
    staged = _check_changes(fields.get("changes"))
    if "title" in fields and not fields["title"].strip():
        raise Invalid("title cannot be empty.")

    edited: list[str] = []
    for name in EDITABLE_FIELDS:
        if name in fields and getattr(wc, name) != fields[name]:
            setattr(wc, name, fields[name])
            edited.append(name)
    if staged:
        merged = dict(wc.changes or {})
        merged.update(staged)
        wc.changes = merged
        edited.extend(f"changes.{k}" for k in sorted(staged))

    wc.revision += 1
    wc.updated_at = datetime.utcnow()
    s.flush()

    if edited:
        record_event(
            s,
            actor=user,
            action="working_copy.edit",
            entity_type="WorkingCopy",
            entity_id=wc.id,
            metadata={"fields": edited, "revision": wc.revision},
        )
    return wc


def can_discard(wc: WorkingCopy, user: User) -> tuple[bool, str | None]:
    """
    A draft may be discarded by its owner. A submitted copy may be discarded only
    once a reviewer rejected it or requested changes, by its owner or by a user
    holding the discard_any permission.
    """
    is_owner = wc.user_id == user.id
    if not wc.is_submitted:
        if not is_owner:
            return False, "forbidden"
        return True, None
    if not any(r.status in (REVIEW_REJECTED, REVIEW_CHANGES_REQUESTED) for r in wc.reviews):
        if not is_owner and not user_has_permission(user, PERM_DISCARD_ANY):
            return False, "forbidden"
        return False, "invalid"
    if is_owner or user_has_permission(user, PERM_DISCARD_ANY):
        return True, None
    return False, "forbidden"


def discard_working_copy(s: Session, working_copy_id: str, user: User) -> None:
    wc = get_working_copy(s, working_copy_id, for_update=True)
    ok, why = can_discard(wc, user)
    if not ok:
        if why == "forbidden":
            raise Forbidden("You cannot discard this working copy.")
        raise Invalid("Cannot discard a submitted working copy that is still under review.")

    meta = {
        "document_id": wc.document_id,
        "owner_user_id": wc.user_id,
        "was_submitted": wc.is_submitted,
        "review_statuses": [r.status for r in wc.reviews],
    }
    s.delete(wc)
    s.flush()

    record_event(
        s,
        actor=user,
        action="working_copy.discard",
        entity_type="WorkingCopy",
        entity_id=str(working_copy_id),
        metadata=meta,
    )


def list_for_document(s: Session, document_id: int) -> list[WorkingCopy]:
    q = (
        select(WorkingCopy)
        .where(WorkingCopy.document_id == document_id)
        .order_by(WorkingCopy.updated_at.desc())
    )
    return list(s.scalars(q))


def list_for_user(s: Session, user_id: int) -> list[WorkingCopy]:
    q = select(WorkingCopy).where(WorkingCopy.user_id == user_id).order_by(WorkingCopy.updated_at.desc())
    return list(s.scalars(q))


def list_pending(s: Session) -> list[WorkingCopy]:
    """Submitted copies awaiting a merge or discard, oldest submission first."""
    q = (
        select(WorkingCopy)
        .where(WorkingCopy.is_submitted.is_(True))
        .order_by(WorkingCopy.submitted_at.asc())
    )
    return list(s.scalars(q))


def list_reviews_for_reviewer(s: Session, reviewer_id: int, *, status: str | None = None) -> list[WorkingCopyReview]:
    q = select(WorkingCopyReview).where(WorkingCopyReview.reviewer_id == reviewer_id)
    if status:
        q = q.where(WorkingCopyReview.status == status)
    return list(s.scalars(q.order_by(WorkingCopyReview.created_at.desc())))
