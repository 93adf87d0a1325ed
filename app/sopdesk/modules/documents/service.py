"""
Document repository: reads and writes of published SOPs and their history.

The review workflow only ever touches documents through these functions.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.sopdesk.audit import record_event
from app.sopdesk.errors import Invalid, NotFound

from .models import Document, DocumentVersion

if TYPE_CHECKING:
    from app.sopdesk.models import User


VERSION_STEP = Decimal("0.1")
_ONE_PLACE = Decimal("0.1")

METADATA_FIELDS = ("department", "priority", "category")


def parse_version(version: str) -> Decimal:
    try:
        v = Decimal((version or "").strip())
    except InvalidOperation:
        raise ValueError(f"Unsupported version format: {version!r}") from None
    if not v.is_finite() or v < 0:
        raise ValueError(f"Unsupported version format: {version!r}")
    return v


def next_version(current: str) -> str:
    """
    Bump a decimal version string by 0.1, formatted to one decimal place.

    "1.0" -> "1.1", "1.9" -> "2.0", "2" -> "2.1".
    This is a plain monotonic counter, not major.minor semantics.
    """
    v = parse_version(current) + VERSION_STEP
    return str(v.quantize(_ONE_PLACE, rounding=ROUND_HALF_UP))


def get_document(s: Session, document_id: int, *, for_update: bool = False) -> Document:
    if for_update:
        d = s.get(Document, document_id, with_for_update=True, populate_existing=True)
    else:
        d = s.get(Document, document_id)
    if not d:
        raise NotFound(f"Document {document_id} not found.")
    return d


def save_document(s: Session, document: Document) -> Document:
    document.updated_at = datetime.utcnow()
    s.add(document)
    s.flush()
    return document


def create_document(
    s: Session,
    *,
    title: str,
    content: str = "",
    description: str | None = None,
    version: str = "1.0",
    department: str | None = None,
    priority: str | None = None,
    category: str | None = None,
    user: User | None = None,
) -> Document:
    """Publish a new document directly (authoring path, not reviewed)."""
    title = (title or "").strip()
    if not title:
        raise Invalid("title is required.")
    try:
        version = str(parse_version(version).quantize(_ONE_PLACE, rounding=ROUND_HALF_UP))
    except ValueError as e:
        raise Invalid(str(e)) from None

    d = Document(
        title=title,
        content=content or "",
        description=description,
        version=version,
        department=department,
        priority=priority,
        category=category,
        author_user_id=user.id if user else None,
    )
    s.add(d)
    s.flush()

    record_event(
        s,
        actor=user,
        action="doc.create",
        entity_type="Document",
        entity_id=str(d.id),
        metadata={"title": d.title, "version": d.version},
    )
    return d


def snapshot_document(s: Session, document: Document, *, change_summary: str, author_user_id: int | None) -> DocumentVersion:
    """Archive the document's current state before it is overwritten."""
    snap = DocumentVersion(
        document_id=document.id,
        version=document.version,
        title=document.title,
        content=document.content,
        description=document.description,
        change_summary=change_summary[:1024],
        author_user_id=author_user_id,
    )
    s.add(snap)
    s.flush()
    return snap


def list_versions(s: Session, document_id: int) -> list[DocumentVersion]:
    get_document(s, document_id)
    q = (
        select(DocumentVersion)
        .where(DocumentVersion.document_id == document_id)
        .order_by(DocumentVersion.created_at.desc(), DocumentVersion.version.desc())
    )
    return list(s.scalars(q))
