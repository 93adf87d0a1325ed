"""add working copies and working copy reviews

Revision ID: b7e2d9c4a1f3
Revises: a1f0c2d3e4b5
Create Date: 2026-10-17

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


# revision identifiers, used by Alembic.
revision: str = "b7e2d9c4a1f3"
down_revision: Union[str, Sequence[str], None] = "a1f0c2d3e4b5"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "working_copies",
        sa.Column("id", sa.String(36), primary_key=True, nullable=False),
        sa.Column("document_id", sa.Integer(), sa.ForeignKey("documents.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("changes", sa.JSON().with_variant(JSONB(), "postgresql"), nullable=False),
        sa.Column("is_submitted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("submitted_at", sa.DateTime(timezone=False), nullable=True),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.current_timestamp()),
        sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.current_timestamp()),
        sa.UniqueConstraint("document_id", "user_id", name="uq_working_copy_document_user"),
    )
    op.create_index("idx_working_copies_user", "working_copies", ["user_id"])
    op.create_index("idx_working_copies_submitted", "working_copies", ["is_submitted", "submitted_at"])

    op.create_table(
        "working_copy_reviews",
        sa.Column("id", sa.String(36), primary_key=True, nullable=False),
        sa.Column(
            "working_copy_id",
            sa.String(36),
            sa.ForeignKey("working_copies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("reviewer_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=False), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.current_timestamp()),
        sa.UniqueConstraint("working_copy_id", "reviewer_id", name="uq_working_copy_review_reviewer"),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'changes_requested')",
            name="ck_working_copy_review_status",
        ),
    )
    op.create_index("idx_working_copy_reviews_reviewer", "working_copy_reviews", ["reviewer_id", "status"])


def downgrade() -> None:
    op.drop_index("idx_working_copy_reviews_reviewer", table_name="working_copy_reviews")
    op.drop_table("working_copy_reviews")
    op.drop_index("idx_working_copies_submitted", table_name="working_copies")
    op.drop_index("idx_working_copies_user", table_name="working_copies")
    op.drop_table("working_copies")
