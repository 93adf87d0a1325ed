"""
Merge engine: fold an approved working copy into its published document.

Order matters: the version snapshot is written before the document is touched,
so even without a surrounding transaction a failure leaves at worst an unused
snapshot, never an overwritten document without its history.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.sopdesk.audit import record_event
from app.sopdesk.errors import Invalid
from app.sopdesk.modules.documents.models import Document
from app.sopdesk.modules.documents.service import (
    METADATA_FIELDS,
    get_document,
    next_version,
    save_document,
    snapshot_document,
)
from app.sopdesk.notifications import KIND_MERGED, notify

from .models import REVIEW_APPROVED, WorkingCopy, WorkingCopyReview
from .service import get_working_copy

if TYPE_CHECKING:
    from app.sopdesk.models import User

logger = logging.getLogger(__name__)


def _apply_overrides(doc: Document, wc: WorkingCopy) -> dict[str, object]:
    applied: dict[str, object] = {}
    changes = wc.changes or {}
    for field in METADATA_FIELDS:
        if field not in changes:
            continue
        value = changes[field]
        if value == changes.get(f"original_{field}"):
            continue
        if field == "category" and value == "none":
            value = None
        setattr(doc, field, value)
        applied[field] = value
    return applied


def change_summary_for(wc: WorkingCopy) -> str:
    summary = f"Merged working copy from {wc.user.display_name}"
    note = ((wc.changes or {}).get("submission_summary") or "").strip()
    if note:
        summary = f"{summary}: {note}"
    return summary


def merge_working_copy(s: Session, working_copy_id: str, *, actor: User | None = None) -> Document:
    """
    Apply an approved working copy to its document and delete the copy.

    Approval is re-checked here against the stored reviews rather than trusted
    from the caller. Runs in the caller's transaction.
    """
    wc = get_working_copy(s, working_copy_id, for_update=True)
    statuses = list(s.scalars(select(WorkingCopyReview.status).where(WorkingCopyReview.working_copy_id == wc.id)))
    if not statuses or any(st != REVIEW_APPROVED for st in statuses):
        raise Invalid("Working copy has not been fully approved.")

    doc = get_document(s, wc.document_id, for_update=True)
    base_version = (wc.changes or {}).get("created_from_version")
    if base_version is not None and base_version != doc.version:
        logger.warning(
            "Merging working copy %s created from version %s onto document %s at version %s",
            wc.id,
            base_version,
            doc.id,
            doc.version,
        )

    previous_version = doc.version
    snap = snapshot_document(s, doc, change_summary=change_summary_for(wc), author_user_id=wc.user_id)

    doc.version = next_version(previous_version)
    doc.title = wc.title
    doc.content = wc.content
    doc.description = wc.description
    overrides = _apply_overrides(doc, wc)
    save_document(s, doc)

    owner_id = wc.user_id
    wc_id = wc.id
    s.delete(wc)
    s.flush()

    record_event(
        s,
        actor=actor,
        action="working_copy.merge",
        entity_type="Document",
        entity_id=str(doc.id),
        metadata={
            "working_copy_id": wc_id,
            "owner_user_id": owner_id,
            "from_version": previous_version,
            "to_version": doc.version,
            "snapshot_id": snap.id,
            "overrides": overrides,
        },
    )
    notify(
        s,
        owner_id,
        KIND_MERGED,
        {"document_id": doc.id, "document_title": doc.title, "version": doc.version},
    )
    logger.info("Merged working copy %s into document %s (%s -> %s)", wc_id, doc.id, previous_version, doc.version)
    return doc
