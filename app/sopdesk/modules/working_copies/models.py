from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.sopdesk.models import Base, JSONType

if TYPE_CHECKING:
    from app.sopdesk.models import User
    from app.sopdesk.modules.documents.models import Document


REVIEW_PENDING = "pending"
REVIEW_APPROVED = "approved"
REVIEW_REJECTED = "rejected"
REVIEW_CHANGES_REQUESTED = "changes_requested"

REVIEW_STATUSES = (REVIEW_PENDING, REVIEW_APPROVED, REVIEW_REJECTED, REVIEW_CHANGES_REQUESTED)

# A reviewer may still revise these.
OPEN_REVIEW_STATUSES = (REVIEW_PENDING, REVIEW_CHANGES_REQUESTED)


def _uuid() -> str:
    return str(uuid.uuid4())


class WorkingCopy(Base):
    """
    A user's private draft of a published document.

    Rows are hard-deleted on merge or discard, so every stored row is live and the
    (document_id, user_id) unique constraint is the one-copy-per-user guarantee.
    """

    __tablename__ = "working_copies"
    __table_args__ = (
        UniqueConstraint("document_id", "user_id", name="uq_working_copy_document_user"),
        Index("idx_working_copies_user", "user_id"),
        Index("idx_working_copies_submitted", "is_submitted", "submitted_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Staged overrides (department/priority/category) plus original_* values captured at creation.
    changes: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    is_submitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # Bumped on every write; callers may pass it back as expected_revision.
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    document: Mapped["Document"] = relationship("Document", lazy="selectin")
    user: Mapped["User"] = relationship("User", lazy="selectin")

    reviews: Mapped[list["WorkingCopyReview"]] = relationship(
        "WorkingCopyReview",
        back_populates="working_copy",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
        order_by="WorkingCopyReview.created_at.asc()",
    )


class WorkingCopyReview(Base):
    __tablename__ = "working_copy_reviews"
    __table_args__ = (
        UniqueConstraint("working_copy_id", "reviewer_id", name="uq_working_copy_review_reviewer"),
        Index("idx_working_copy_reviews_reviewer", "reviewer_id", "status"),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'changes_requested')",
            name="ck_working_copy_review_status",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)

    working_copy_id: Mapped[str] = mapped_column(
        ForeignKey("working_copies.id", ondelete="CASCADE"),
        nullable=False,
    )
    reviewer_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default=REVIEW_PENDING)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    working_copy: Mapped[WorkingCopy] = relationship("WorkingCopy", back_populates="reviews", lazy="selectin")
    reviewer: Mapped["User"] = relationship("User", lazy="selectin")
