"""
JSON endpoints for the working-copy workflow.

Each mutating handler runs one service call and commits; WorkflowError rolls the
session back in the app-level error handler.
"""

from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.sopdesk.db import db_session
from app.sopdesk.errors import Invalid
from app.sopdesk.models import User
from app.sopdesk.modules.documents.admin import serialize_document
from app.sopdesk.notifications import list_notifications
from app.sopdesk.rbac import require_login

from .diff import diff, summarize
from .models import WorkingCopy, WorkingCopyReview
from .review import lifecycle_state, record_decision, submit_for_review
from .service import (
    EDITABLE_FIELDS,
    create_working_copy,
    discard_working_copy,
    get_working_copy,
    list_for_document,
    list_for_user,
    list_pending,
    list_reviews_for_reviewer,
    update_working_copy,
)

bp = Blueprint("working_copies", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise Invalid("Request body must be a JSON object.")
    return data


def _revision(data: dict) -> int | None:
    raw = data.get("revision")
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise Invalid("revision must be an integer.") from None


def _iso(dt) -> str | None:
    return dt.isoformat() if dt else None


def serialize_review(r: WorkingCopyReview) -> dict:
    return {
        "id": r.id,
        "working_copy_id": r.working_copy_id,
        "reviewer_id": r.reviewer_id,
        "status": r.status,
        "comments": r.comments,
        "reviewed_at": _iso(r.reviewed_at),
        "created_at": _iso(r.created_at),
    }


def serialize_working_copy(wc: WorkingCopy, *, include_reviews: bool = True) -> dict:
    out = {
        "id": wc.id,
        "document_id": wc.document_id,
        "user_id": wc.user_id,
        "title": wc.title,
        "content": wc.content,
        "description": wc.description,
        "changes": wc.changes or {},
        "is_submitted": wc.is_submitted,
        "submitted_at": _iso(wc.submitted_at),
        "revision": wc.revision,
        "state": lifecycle_state(wc),
        "created_at": _iso(wc.created_at),
        "updated_at": _iso(wc.updated_at),
    }
    if include_reviews:
        out["reviews"] = [serialize_review(r) for r in wc.reviews]
    return out


@bp.post("/documents/<int:doc_id>/working-copies")
@require_login
def create_working_copy_post(doc_id: int):
    s = db_session()
    data = _json_body()
    fields = {k: data[k] for k in EDITABLE_FIELDS + ("changes",) if k in data}
    wc = create_working_copy(s, doc_id, _current_user(), fields)
    s.commit()
    return jsonify(serialize_working_copy(wc)), 201


@bp.get("/documents/<int:doc_id>/working-copies")
@require_login
def document_working_copies(doc_id: int):
    s = db_session()
    return jsonify([serialize_working_copy(wc) for wc in list_for_document(s, doc_id)])


@bp.get("/working-copies")
@require_login
def list_working_copies():
    s = db_session()
    scope = (request.args.get("scope") or "mine").strip().lower()
    if scope == "pending":
        copies = list_pending(s)
    elif scope == "mine":
        copies = list_for_user(s, _current_user().id)
    else:
        raise Invalid(f"Unknown scope: {scope!r}")
    return jsonify([serialize_working_copy(wc) for wc in copies])


@bp.get("/working-copies/<wc_id>")
@require_login
def working_copy_detail(wc_id: str):
    s = db_session()
    return jsonify(serialize_working_copy(get_working_copy(s, wc_id)))


@bp.patch("/working-copies/<wc_id>")
@require_login
def update_working_copy_patch(wc_id: str):
    s = db_session()
    data = _json_body()
    fields = {k: data[k] for k in EDITABLE_FIELDS + ("changes",) if k in data}
    wc = update_working_copy(s, wc_id, _current_user(), fields, expected_revision=_revision(data))
    s.commit()
    return jsonify(serialize_working_copy(wc))


@bp.delete("/working-copies/<wc_id>")
@require_login
def discard_working_copy_delete(wc_id: str):
    s = db_session()
    discard_working_copy(s, wc_id, _current_user())
    s.commit()
    return "", 204


@bp.post("/working-copies/<wc_id>/submit")
@require_login
def submit_working_copy_post(wc_id: str):
    s = db_session()
    data = _json_body()
    reviewer_ids = data.get("reviewer_ids") or []
    if not isinstance(reviewer_ids, list):
        raise Invalid("reviewer_ids must be a list.")
    wc = submit_for_review(
        s,
        wc_id,
        _current_user(),
        reviewer_ids,
        data.get("summary") or "",
        expected_revision=_revision(data),
    )
    s.commit()
    return jsonify(serialize_working_copy(wc))


@bp.post("/working-copies/<wc_id>/reviews/<review_id>")
@require_login
def record_review_post(wc_id: str, review_id: str):
    s = db_session()
    data = _json_body()
    result = record_decision(
        s,
        wc_id,
        review_id,
        _current_user(),
        (data.get("status") or "").strip(),
        data.get("comments"),
        expected_revision=_revision(data),
    )
    s.commit()
    body = {"review": serialize_review(result.review), "merged": result.merged}
    if result.merged_document is not None:
        body["document"] = serialize_document(result.merged_document)
    return jsonify(body)


@bp.get("/working-copies/<wc_id>/diff")
@require_login
def working_copy_diff(wc_id: str):
    s = db_session()
    wc = get_working_copy(s, wc_id)
    lines = diff(wc.document.content, wc.content)
    changed = [f for f in EDITABLE_FIELDS if getattr(wc, f) != getattr(wc.document, f)]
    return jsonify(
        {
            "working_copy_id": wc.id,
            "document_id": wc.document_id,
            "document_version": wc.document.version,
            "changed_fields": changed,
            "summary": summarize(lines).to_dict(),
            "lines": [line.to_dict() for line in lines],
        }
    )


@bp.post("/diff")
@require_login
def diff_preview():
    data = _json_body()
    original = data.get("original") or ""
    modified = data.get("modified") or ""
    if not isinstance(original, str) or not isinstance(modified, str):
        raise Invalid("original and modified must be strings.")
    lines = diff(original, modified)
    return jsonify({"summary": summarize(lines).to_dict(), "lines": [line.to_dict() for line in lines]})


@bp.get("/reviews")
@require_login
def my_reviews():
    s = db_session()
    status = (request.args.get("status") or "").strip() or None
    reviews = list_reviews_for_reviewer(s, _current_user().id, status=status)
    return jsonify([serialize_review(r) for r in reviews])


@bp.get("/notifications")
@require_login
def my_notifications():
    s = db_session()
    unread = (request.args.get("unread") or "").strip() == "1"
    items = list_notifications(s, _current_user().id, unread_only=unread)
    return jsonify(
        [
            {
                "id": n.id,
                "kind": n.kind,
                "title": n.title,
                "message": n.message,
                "payload": n.payload,
                "priority": n.priority,
                "read": n.read,
                "created_at": _iso(n.created_at),
            }
            for n in items
        ]
    )
