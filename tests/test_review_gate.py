"""Tests for submission, reviewer decisions and the auto-merge on unanimous approval."""
import types

import pytest
from werkzeug.security import generate_password_hash

from app.sopdesk import create_app
from app.sopdesk.db import session_scope
from app.sopdesk.errors import Conflict, Forbidden, Invalid, NotFound
from app.sopdesk.models import AuditEvent, Base, Notification, User
from app.sopdesk.modules.documents.models import Document, DocumentVersion
from app.sopdesk.modules.documents.service import create_document
from app.sopdesk.modules.working_copies.models import WorkingCopy, WorkingCopyReview
from app.sopdesk.modules.working_copies.review import (
    STATE_DECIDED,
    STATE_DRAFT,
    STATE_SUBMITTED,
    lifecycle_state,
    record_decision,
    submit_for_review,
)
from app.sopdesk.modules.working_copies.service import (
    create_working_copy,
    get_working_copy,
    update_working_copy,
)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


@pytest.fixture()
def ids(app):
    with session_scope(app) as s:
        users = {}
        for key in ("owner", "alice", "bob", "carol"):
            u = User(
                email=f"{key}@example.com",
                password_hash=generate_password_hash("pw"),
                first_name=key.title(),
                last_name="Tester",
                is_active=True,
            )
            s.add(u)
            users[key] = u
        s.flush()
        doc = create_document(s, title="A", content="line1\nline2", version="2.0", department="Ops")
        out = {k: u.id for k, u in users.items()}
        out["doc"] = doc.id
    return out


def _user(s, ids, key):
    return s.get(User, ids[key])


def _submitted_copy(app, ids, reviewers, *, content="line1\nline2-changed", summary="fix"):
    with session_scope(app) as s:
        owner = _user(s, ids, "owner")
        wc = create_working_copy(s, ids["doc"], owner, {})
        update_working_copy(s, wc.id, owner, {"content": content})
        wc = submit_for_review(s, wc.id, owner, [ids[r] for r in reviewers], summary)
        review_ids = {r.reviewer_id: r.id for r in wc.reviews}
        return wc.id, {key: review_ids[ids[key]] for key in reviewers}


def _decide(app, ids, wc_id, review_id, who, status, comments=None):
    with session_scope(app) as s:
        result = record_decision(s, wc_id, review_id, _user(s, ids, who), status, comments)
        return result.merged


def test_end_to_end_single_reviewer_merge(app, ids):
    wc_id, reviews = _submitted_copy(app, ids, ["alice"])
    assert _decide(app, ids, wc_id, reviews["alice"], "alice", "approved") is True

    with session_scope(app) as s:
        doc = s.get(Document, ids["doc"])
        assert doc.version == "2.1"
        assert doc.content == "line1\nline2-changed"
        assert doc.title == "A"
        snaps = s.query(DocumentVersion).filter(DocumentVersion.document_id == doc.id).all()
        assert len(snaps) == 1
        assert snaps[0].version == "2.0"
        assert snaps[0].content == "line1\nline2"
        assert snaps[0].title == "A"
        assert snaps[0].author_user_id == ids["owner"]
        assert "Owner Tester" in snaps[0].change_summary
        assert "fix" in snaps[0].change_summary
        assert s.get(WorkingCopy, wc_id) is None
        assert s.query(WorkingCopyReview).count() == 0
        merged = s.query(Notification).filter(Notification.kind == "working_copy_merged").all()
        assert [n.user_id for n in merged] == [ids["owner"]]
        assert "working_copy.merge" in [e.action for e in s.query(AuditEvent).all()]


def test_submit_sets_state_and_notifies_each_reviewer(app, ids):
    with session_scope(app) as s:
        wc = create_working_copy(s, ids["doc"], _user(s, ids, "owner"), {})
        assert lifecycle_state(wc) == STATE_DRAFT
        wc_id = wc.id
    with session_scope(app) as s:
        wc = submit_for_review(
            s, wc_id, _user(s, ids, "owner"), [ids["alice"], ids["bob"], ids["alice"]], "  tidy up  "
        )
        assert wc.is_submitted is True
        assert wc.submitted_at is not None
        assert wc.changes["submission_summary"] == "tidy up"
        assert [r.reviewer_id for r in wc.reviews] == [ids["alice"], ids["bob"]]
        assert {r.status for r in wc.reviews} == {"pending"}
        assert lifecycle_state(wc) == STATE_SUBMITTED
    with session_scope(app) as s:
        notes = s.query(Notification).filter(Notification.kind == "working_copy_review").all()
        assert sorted(n.user_id for n in notes) == sorted([ids["alice"], ids["bob"]])
        assert all(n.priority == "high" for n in notes)
        assert all(n.payload["working_copy_id"] == wc_id for n in notes)


@pytest.mark.parametrize(
    "who,reviewers,exc",
    [
        ("alice", ["bob"], Forbidden),
        ("owner", [], Invalid),
        ("owner", [424242], Invalid),
        ("owner", ["owner"], Invalid),
        ("owner", ["alice", "owner"], Invalid),
    ],
)
def test_submit_rejections(app, ids, who, reviewers, exc):
    with session_scope(app) as s:
        wc_id = create_working_copy(s, ids["doc"], _user(s, ids, "owner"), {}).id
    reviewer_ids = [ids[r] if isinstance(r, str) else r for r in reviewers]
    with session_scope(app) as s:
        with pytest.raises(exc):
            submit_for_review(s, wc_id, _user(s, ids, who), reviewer_ids, "")
    with session_scope(app) as s:
        assert get_working_copy(s, wc_id).is_submitted is False


def test_submit_twice_is_invalid(app, ids):
    wc_id, _ = _submitted_copy(app, ids, ["alice"])
    with session_scope(app) as s:
        with pytest.raises(Invalid):
            submit_for_review(s, wc_id, _user(s, ids, "owner"), [ids["bob"]], "again")


def test_submit_with_stale_revision_conflicts(app, ids):
    with session_scope(app) as s:
        owner = _user(s, ids, "owner")
        wc_id = create_working_copy(s, ids["doc"], owner, {}).id
        update_working_copy(s, wc_id, owner, {"title": "B"})
    with session_scope(app) as s:
        with pytest.raises(Conflict):
            submit_for_review(s, wc_id, _user(s, ids, "owner"), [ids["alice"]], "", expected_revision=1)


def test_partial_approval_leaves_document_untouched(app, ids):
    wc_id, reviews = _submitted_copy(app, ids, ["alice", "bob"])
    assert _decide(app, ids, wc_id, reviews["alice"], "alice", "approved") is False
    with session_scope(app) as s:
        doc = s.get(Document, ids["doc"])
        assert doc.version == "2.0"
        assert doc.content == "line1\nline2"
        wc = get_working_copy(s, wc_id)
        assert lifecycle_state(wc) == STATE_DECIDED
        assert s.query(DocumentVersion).count() == 0

    assert _decide(app, ids, wc_id, reviews["bob"], "bob", "approved") is True
    with session_scope(app) as s:
        doc = s.get(Document, ids["doc"])
        assert doc.version == "2.1"
        assert s.query(DocumentVersion).count() == 1
        assert s.get(WorkingCopy, wc_id) is None


def test_rejection_blocks_merge(app, ids):
    wc_id, reviews = _submitted_copy(app, ids, ["alice", "bob"])
    _decide(app, ids, wc_id, reviews["alice"], "alice", "approved")
    assert _decide(app, ids, wc_id, reviews["bob"], "bob", "rejected", "not yet") is False
    with session_scope(app) as s:
        wc = get_working_copy(s, wc_id)
        assert lifecycle_state(wc) == STATE_DECIDED
        assert s.get(Document, ids["doc"]).version == "2.0"
        assert s.query(DocumentVersion).count() == 0
        decisions = s.query(Notification).filter(Notification.kind == "working_copy_decision").all()
        assert len(decisions) == 2
        assert all(n.user_id == ids["owner"] for n in decisions)


def test_terminal_reviews_cannot_be_redecided(app, ids):
    wc_id, reviews = _submitted_copy(app, ids, ["alice", "bob"])
    _decide(app, ids, wc_id, reviews["alice"], "alice", "approved")
    with pytest.raises(Invalid):
        _decide(app, ids, wc_id, reviews["alice"], "alice", "rejected")
    _decide(app, ids, wc_id, reviews["bob"], "bob", "rejected")
    with pytest.raises(Invalid):
        _decide(app, ids, wc_id, reviews["bob"], "bob", "approved")


def test_changes_requested_can_be_revised(app, ids):
    wc_id, reviews = _submitted_copy(app, ids, ["alice"])
    assert _decide(app, ids, wc_id, reviews["alice"], "alice", "changes_requested", "reword") is False
    with session_scope(app) as s:
        # The copy stays frozen for its owner.
        with pytest.raises(Invalid):
            update_working_copy(s, wc_id, _user(s, ids, "owner"), {"content": "reworded"})
    assert _decide(app, ids, wc_id, reviews["alice"], "alice", "approved") is True
    with session_scope(app) as s:
        assert s.get(Document, ids["doc"]).version == "2.1"


def test_decision_by_someone_else_is_forbidden(app, ids):
    wc_id, reviews = _submitted_copy(app, ids, ["alice"])
    with pytest.raises(Forbidden):
        _decide(app, ids, wc_id, reviews["alice"], "bob", "approved")
    with pytest.raises(Forbidden):
        _decide(app, ids, wc_id, reviews["alice"], "owner", "approved")
    with session_scope(app) as s:
        assert s.get(WorkingCopyReview, reviews["alice"]).status == "pending"


def test_decision_validation(app, ids):
    wc_id, reviews = _submitted_copy(app, ids, ["alice"])
    with pytest.raises(Invalid):
        _decide(app, ids, wc_id, reviews["alice"], "alice", "pending")
    with pytest.raises(Invalid):
        _decide(app, ids, wc_id, reviews["alice"], "alice", "maybe")
    with pytest.raises(NotFound):
        _decide(app, ids, wc_id, "no-such-review", "alice", "approved")
    with pytest.raises(NotFound):
        _decide(app, ids, "no-such-copy", reviews["alice"], "alice", "approved")


def test_review_must_belong_to_the_working_copy(app, ids):
    first, first_reviews = _submitted_copy(app, ids, ["alice"])
    with session_scope(app) as s:
        bob = _user(s, ids, "bob")
        other = create_working_copy(s, ids["doc"], bob, {})
        submit_for_review(s, other.id, bob, [ids["alice"]], "")
        other_id = other.id
    with pytest.raises(NotFound):
        _decide(app, ids, other_id, first_reviews["alice"], "alice", "approved")


def test_notification_failure_does_not_roll_back_submit(app, ids, monkeypatch):
    def boom(kind, payload):
        raise RuntimeError("notification transport down")

    monkeypatch.setattr("app.sopdesk.notifications._message", boom)
    wc_id, _ = _submitted_copy(app, ids, ["alice", "bob"])
    with session_scope(app) as s:
        wc = get_working_copy(s, wc_id)
        assert wc.is_submitted is True
        assert len(wc.reviews) == 2
        assert s.query(Notification).count() == 0


def test_audit_failure_does_not_abort_merge(app, ids, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("audit store down")

    monkeypatch.setattr("app.sopdesk.audit.json", types.SimpleNamespace(dumps=boom))
    wc_id, reviews = _submitted_copy(app, ids, ["alice"])
    assert _decide(app, ids, wc_id, reviews["alice"], "alice", "approved") is True
    with session_scope(app) as s:
        assert s.get(Document, ids["doc"]).version == "2.1"
        assert "working_copy.merge" not in [e.action for e in s.query(AuditEvent).all()]
