"""Tests for the merge engine and the document repository helpers."""
import logging

import pytest
from werkzeug.security import generate_password_hash

from app.sopdesk import create_app
from app.sopdesk.db import session_scope
from app.sopdesk.errors import Invalid, NotFound
from app.sopdesk.models import Base, User
from app.sopdesk.modules.documents.models import Document, DocumentVersion
from app.sopdesk.modules.documents.service import (
    create_document,
    get_document,
    list_versions,
    next_version,
)
from app.sopdesk.modules.working_copies.merge import merge_working_copy
from app.sopdesk.modules.working_copies.review import record_decision, submit_for_review
from app.sopdesk.modules.working_copies.service import create_working_copy, update_working_copy


class TestNextVersion:
    @pytest.mark.parametrize(
        "current,expected",
        [
            ("1.0", "1.1"),
            ("2.0", "2.1"),
            ("1.8", "1.9"),
            ("1.9", "2.0"),
            ("2", "2.1"),
            (" 3.4 ", "3.5"),
            ("10.9", "11.0"),
        ],
    )
    def test_bumps_by_one_tenth(self, current, expected):
        assert next_version(current) == expected

    @pytest.mark.parametrize("bad", ["", "v1", "1.0.0", "NaN", "-1.0"])
    def test_rejects_non_decimal_versions(self, bad):
        with pytest.raises(ValueError):
            next_version(bad)


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
        for key in ("owner", "second", "reviewer"):
            u = User(email=f"{key}@example.com", password_hash=generate_password_hash("pw"), first_name=key.title())
            s.add(u)
            users[key] = u
        s.flush()
        doc = create_document(
            s,
            title="Handling",
            content="a\nb",
            description="desc",
            version="1.0",
            department="Ops",
            priority="low",
            category="general",
        )
        out = {k: u.id for k, u in users.items()}
        out["doc"] = doc.id
    return out


def _approve_copy(app, ids, owner_key, fields, changes=None):
    with session_scope(app) as s:
        owner = s.get(User, ids[owner_key])
        wc = create_working_copy(s, ids["doc"], owner, {})
        payload = dict(fields)
        if changes:
            payload["changes"] = changes
        update_working_copy(s, wc.id, owner, payload)
        wc = submit_for_review(s, wc.id, owner, [ids["reviewer"]], "")
        wc_id, review_id = wc.id, wc.reviews[0].id
    with session_scope(app) as s:
        result = record_decision(s, wc_id, review_id, s.get(User, ids["reviewer"]), "approved")
        assert result.merged
    return wc_id


def test_merge_copies_fields_and_applies_changed_overrides(app, ids):
    _approve_copy(
        app,
        ids,
        "owner",
        {"title": "Handling v2", "description": "new desc"},
        changes={"department": "QA", "priority": "low", "category": "none"},
    )
    with session_scope(app) as s:
        doc = get_document(s, ids["doc"])
        assert doc.title == "Handling v2"
        assert doc.description == "new desc"
        assert doc.content == "a\nb"
        assert doc.department == "QA"
        assert doc.priority == "low"
        # "none" clears the category.
        assert doc.category is None
        assert doc.version == "1.1"


def test_unchanged_override_does_not_clobber_newer_document_value(app, ids):
    with session_scope(app) as s:
        owner = s.get(User, ids["owner"])
        stale = create_working_copy(s, ids["doc"], owner, {"changes": {"department": "Ops"}})
        stale_id = stale.id

    # Another user's copy changes the department first.
    _approve_copy(app, ids, "second", {"content": "a\nb\nc"}, changes={"department": "Legal"})

    with session_scope(app) as s:
        owner = s.get(User, ids["owner"])
        wc = submit_for_review(s, stale_id, owner, [ids["reviewer"]], "")
        review_id = wc.reviews[0].id
    with session_scope(app) as s:
        record_decision(s, stale_id, review_id, s.get(User, ids["reviewer"]), "approved")

    with session_scope(app) as s:
        doc = get_document(s, ids["doc"])
        # The stale copy staged "Ops" == its original, so the newer "Legal" survives.
        assert doc.department == "Legal"
        assert doc.version == "1.2"
        versions = list_versions(s, doc.id)
        assert sorted(v.version for v in versions) == ["1.0", "1.1"]


def test_merging_a_stale_copy_logs_a_warning(app, ids, caplog):
    with session_scope(app) as s:
        stale_id = create_working_copy(s, ids["doc"], s.get(User, ids["owner"]), {}).id
    _approve_copy(app, ids, "second", {"content": "x"})

    with session_scope(app) as s:
        wc = submit_for_review(s, stale_id, s.get(User, ids["owner"]), [ids["reviewer"]], "")
        review_id = wc.reviews[0].id
    with caplog.at_level(logging.WARNING, logger="app.sopdesk.modules.working_copies.merge"):
        with session_scope(app) as s:
            record_decision(s, stale_id, review_id, s.get(User, ids["reviewer"]), "approved")
    assert any("created from version 1.0" in r.getMessage() for r in caplog.records)


def test_merge_refuses_without_unanimous_approval(app, ids):
    with session_scope(app) as s:
        owner = s.get(User, ids["owner"])
        wc_id = create_working_copy(s, ids["doc"], owner, {}).id
    with session_scope(app) as s:
        # Draft with no reviews.
        with pytest.raises(Invalid):
            merge_working_copy(s, wc_id)
    with session_scope(app) as s:
        submit_for_review(s, wc_id, s.get(User, ids["owner"]), [ids["reviewer"]], "")
    with session_scope(app) as s:
        with pytest.raises(Invalid):
            merge_working_copy(s, wc_id)
    with session_scope(app) as s:
        assert s.get(Document, ids["doc"]).version == "1.0"
        assert s.query(DocumentVersion).count() == 0


def test_merge_of_missing_copy(app, ids):
    with session_scope(app) as s:
        with pytest.raises(NotFound):
            merge_working_copy(s, "gone")


def test_create_document_validates_input(app, ids):
    with session_scope(app) as s:
        with pytest.raises(Invalid):
            create_document(s, title="  ")
        with pytest.raises(Invalid):
            create_document(s, title="X", version="one")
        d = create_document(s, title="X", version="3")
        assert d.version == "3.0"
    with session_scope(app) as s:
        with pytest.raises(NotFound):
            list_versions(s, 12345)
