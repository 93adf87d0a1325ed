from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.sopdesk.db import db_session
from app.sopdesk.models import User
from app.sopdesk.modules.documents.models import Document, DocumentVersion
from app.sopdesk.modules.documents.service import create_document, get_document, list_versions
from app.sopdesk.rbac import PERM_DOCS_CREATE, require_login, require_permission

bp = Blueprint("documents", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _iso(dt) -> str | None:
    return dt.isoformat() if dt else None


def serialize_document(d: Document) -> dict:
    return {
        "id": d.id,
        "title": d.title,
        "content": d.content,
        "description": d.description,
        "version": d.version,
        "department": d.department,
        "priority": d.priority,
        "category": d.category,
        "author_user_id": d.author_user_id,
        "created_at": _iso(d.created_at),
        "updated_at": _iso(d.updated_at),
    }


def serialize_version(v: DocumentVersion) -> dict:
    return {
        "id": v.id,
        "document_id": v.document_id,
        "version": v.version,
        "title": v.title,
        "content": v.content,
        "description": v.description,
        "change_summary": v.change_summary,
        "author_user_id": v.author_user_id,
        "created_at": _iso(v.created_at),
    }


@bp.post("/documents")
@require_permission(PERM_DOCS_CREATE)
def create_document_post():
    s = db_session()
    data = request.get_json(silent=True) or {}
    d = create_document(
        s,
        title=data.get("title") or "",
        content=data.get("content") or "",
        description=data.get("description"),
        version=str(data.get("version") or "1.0"),
        department=data.get("department"),
        priority=data.get("priority"),
        category=data.get("category"),
        user=_current_user(),
    )
    s.commit()
    return jsonify(serialize_document(d)), 201


@bp.get("/documents/<int:doc_id>")
@require_login
def document_detail(doc_id: int):
    s = db_session()
    return jsonify(serialize_document(get_document(s, doc_id)))


@bp.get("/documents/<int:doc_id>/versions")
@require_login
def document_versions(doc_id: int):
    s = db_session()
    return jsonify([serialize_version(v) for v in list_versions(s, doc_id)])
