"""
Review gate: submission, per-reviewer decisions and the auto-merge trigger.

States of a working copy:

    DRAFT      not submitted; the owner edits freely
    SUBMITTED  submitted, every review still pending
    DECIDED    at least one reviewer has recorded a decision

A merge (all reviewers approved) or a discard deletes the row, so those end
states are never stored.

A decision locks the working copy row before reading anything, so on one copy
decisions run one at a time and exactly one of them sees the unanimous set of
approvals and runs the merge.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.sopdesk.audit import record_event
from app.sopdesk.errors import Forbidden, Invalid, NotFound
from app.sopdesk.models import User
from app.sopdesk.notifications import KIND_DECISION, KIND_REVIEW_REQUEST, notify

from .merge import merge_working_copy
from .models import (
    OPEN_REVIEW_STATUSES,
    REVIEW_APPROVED,
    REVIEW_CHANGES_REQUESTED,
    REVIEW_PENDING,
    REVIEW_REJECTED,
    WorkingCopy,
    WorkingCopyReview,
)
from .service import _check_revision, get_working_copy

if TYPE_CHECKING:
    from app.sopdesk.modules.documents.models import Document

logger = logging.getLogger(__name__)

STATE_DRAFT = "DRAFT"
STATE_SUBMITTED = "SUBMITTED"
STATE_DECIDED = "DECIDED"

DECISION_STATUSES = (REVIEW_APPROVED, REVIEW_REJECTED, REVIEW_CHANGES_REQUESTED)


@dataclass
class DecisionResult:
    review: WorkingCopyReview
    # Set when this decision completed unanimous approval and the merge ran.
    merged_document: Document | None = None

    @property
    def merged(self) -> bool:
        return self.merged_document is not None


def lifecycle_state(wc: WorkingCopy) -> str:
    if not wc.is_submitted:
        return STATE_DRAFT
    if all(r.status == REVIEW_PENDING for r in wc.reviews):
        return STATE_SUBMITTED
    return STATE_DECIDED


def _distinct_ids(ids: list) -> list[int]:
    seen: set[int] = set()
    out: list[int] = []
    for raw in ids or []:
        try:
            rid = int(raw)
        except (TypeError, ValueError):
            raise Invalid(f"Invalid reviewer id: {raw!r}") from None
        if rid not in seen:
            seen.add(rid)
            out.append(rid)
    return out


def submit_for_review(
    s: Session,
    working_copy_id: str,
    user: User,
    reviewer_ids: list[int],
    summary: str = "",
    *,
    expected_revision: int | None = None,
) -> WorkingCopy:
    """
    Freeze the working copy and open one pending review per distinct reviewer.

    The reviewer set is fixed from here on; changing it means discarding and
    resubmitting.
    """
    wc = get_working_copy(s, working_copy_id, for_update=True)
    if wc.user_id != user.id:
        raise Forbidden("Only the owner can submit this working copy.")
    reviewers = _distinct_ids(reviewer_ids)
    if not reviewers:
        raise Invalid("At least one reviewer is required.")
    if user.id in reviewers:
        raise Invalid("You cannot review your own working copy.")
    if wc.is_submitted:
        raise Invalid("Working copy already submitted.")
    _check_revision(wc, expected_revision)

    found = {
        u.id: u
        for u in s.scalars(select(User).where(User.id.in_(reviewers), User.is_active.is_(True)))
    }
    missing = [rid for rid in reviewers if rid not in found]
    if missing:
        raise Invalid(f"Unknown or inactive reviewer(s): {', '.join(str(m) for m in missing)}")

    now = datetime.utcnow()
    wc.is_submitted = True
    wc.submitted_at = now
    wc.changes = {**(wc.changes or {}), "submission_summary": (summary or "").strip()}
    wc.revision += 1
    wc.updated_at = now

    for rid in reviewers:
        wc.reviews.append(
            WorkingCopyReview(
                reviewer_id=rid,
                status=REVIEW_PENDING,
                comments=None,
                reviewed_at=None,
                created_at=now,
            )
        )
    s.flush()

    record_event(
        s,
        actor=user,
        action="working_copy.submit",
        entity_type="WorkingCopy",
        entity_id=wc.id,
        metadata={"document_id": wc.document_id, "reviewer_ids": reviewers, "summary": summary},
    )
    for rid in reviewers:
        notify(
            s,
            rid,
            KIND_REVIEW_REQUEST,
            {
                "working_copy_id": wc.id,
                "document_id": wc.document_id,
                "document_title": wc.document.title,
                "author_name": user.display_name,
            },
        )
    logger.info("Working copy %s submitted to %d reviewer(s)", wc.id, len(reviewers))
    return wc


def record_decision(
    s: Session,
    working_copy_id: str,
    review_id: str,
    reviewer: User,
    status: str,
    comments: str | None = None,
    *,
    expected_revision: int | None = None,
) -> DecisionResult:
    """
    Record one reviewer's decision and merge if it completes unanimous approval.

    approved/rejected are final for that reviewer; changes_requested may be
    revised. A rejection leaves the copy un-merged until it is discarded.
    """
    wc = get_working_copy(s, working_copy_id, for_update=True)
    review = s.get(WorkingCopyReview, str(review_id), populate_existing=True)
    if not review or review.working_copy_id != wc.id:
        raise NotFound(f"Review {review_id} not found for working copy {working_copy_id}.")
    if review.reviewer_id != reviewer.id:
        raise Forbidden("Only the assigned reviewer can decide this review.")
    if status not in DECISION_STATUSES:
        raise Invalid(f"Invalid decision status: {status!r}")
    if review.status not in OPEN_REVIEW_STATUSES:
        raise Invalid(f"Review already {review.status}.")
    _check_revision(wc, expected_revision)

    previous = review.status
    now = datetime.utcnow()
    # Single conditional write: a concurrent duplicate decision finds no open row.
    res = s.execute(
        update(WorkingCopyReview)
        .where(
            WorkingCopyReview.id == review.id,
            WorkingCopyReview.reviewer_id == reviewer.id,
            WorkingCopyReview.status.in_(OPEN_REVIEW_STATUSES),
        )
        .values(status=status, comments=comments or None, reviewed_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise Invalid("Review was already decided.")
    s.refresh(review)

    wc.revision += 1
    wc.updated_at = now
    s.flush()

    record_event(
        s,
        actor=reviewer,
        action="working_copy.review",
        entity_type="WorkingCopyReview",
        entity_id=review.id,
        metadata={"working_copy_id": wc.id, "from": previous, "to": status},
    )
    notify(
        s,
        wc.user_id,
        KIND_DECISION,
        {
            "working_copy_id": wc.id,
            "review_id": review.id,
            "document_id": wc.document_id,
            "document_title": wc.document.title,
            "reviewer_name": reviewer.display_name,
            "status": status,
            "comments": comments,
        },
    )

    statuses = list(s.scalars(select(WorkingCopyReview.status).where(WorkingCopyReview.working_copy_id == wc.id)))
    if statuses and all(st == REVIEW_APPROVED for st in statuses):
        logger.info("Working copy %s unanimously approved; merging", wc.id)
        doc = merge_working_copy(s, wc.id, actor=reviewer)
        return DecisionResult(review=review, merged_document=doc)
    return DecisionResult(review=review)
