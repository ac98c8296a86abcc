import pytest

from stepdocs.errors import NotFound
from stepdocs.models.document import TimelineDocument
from stepdocs.services.document_version_service import document_version_service as service


def _current_ids(db, step_id):
    return sorted(d.id for d in service.get_current_documents(db, step_id))


class TestCompletionSessions:
    def test_start_session_ids_are_unique(self, db, step):
        first = service.start_session(db, step.id)
        second = service.start_session(db, step.id)
        assert first != second
        assert first.startswith(f"session_{step.id}_")

    def test_start_session_unknown_step(self, db):
        with pytest.raises(NotFound):
            service.start_session(db, "missing")

    def test_list_sessions_in_order(self, db, step, upload, ts):
        upload(step.id, "CONTRACT", "s-b", ts(20))
        upload(step.id, "CONTRACT", "s-a", ts(10))
        upload(step.id, "TITLE", "s-a", ts(11))

        sessions = service.list_sessions(db, step.id)
        assert [(s.session_id, s.session_number, s.document_count) for s in sessions] == [
            ("s-a", 1, 2),
            ("s-b", 2, 1),
        ]
        assert sessions[0].created_at == ts(10)

    def test_sessions_starting_together_order_by_session_id(self, db, step, insert_raw, ts):
        insert_raw(step.id, "CONTRACT", "zeta", ts(10), id="a-doc")
        insert_raw(step.id, "CONTRACT", "alpha", ts(10), id="b-doc")
        service.rebuild(db, step.id)

        assert [s.session_id for s in service.list_sessions(db, step.id)] == ["alpha", "zeta"]
        assert _current_ids(db, step.id) == ["a-doc"]
        db.expire_all()
        assert db.get(TimelineDocument, "b-doc").superseded_by == "a-doc"


class TestWithdrawal:
    def test_reopening_step_restores_previous_versions(self, db, step, upload, ts):
        v1 = upload(step.id, "CONTRACT", "s1", ts(10)).document.id
        v2 = upload(step.id, "CONTRACT", "s2", ts(20)).document.id
        inspection = upload(step.id, "INSPECTION", "s2", ts(21)).document.id
        service.set_step_completed(db, step.id, True)

        reopened = service.set_step_completed(db, step.id, False)
        assert reopened.is_completed == 0
        assert _current_ids(db, step.id) == [v1]
        assert service.get_version_history(db, step.id) == []
        assert [s.session_id for s in service.list_sessions(db, step.id)] == ["s1"]

        db.expire_all()
        withdrawn = db.query(TimelineDocument).filter(TimelineDocument.id.in_([v2, inspection])).all()
        assert len(withdrawn) == 2
        for doc in withdrawn:
            assert doc.withdrawn_at is not None
            assert doc.document_version is None
            assert doc.is_current_version == 0
            assert doc.superseded_by is None

    def test_new_session_after_withdrawal_takes_next_version(self, db, step, upload, ts):
        v1 = upload(step.id, "CONTRACT", "s1", ts(10)).document.id
        upload(step.id, "CONTRACT", "s2", ts(20))
        service.withdraw_latest_session(db, step.id)

        v2 = upload(step.id, "CONTRACT", "s3", ts(30)).document
        assert v2.document_version == 2
        db.expire_all()
        assert db.get(TimelineDocument, v1).superseded_by == v2.id
        assert service.check_consistency(db, step.id).consistent

    def test_completing_does_not_withdraw(self, db, step, upload, ts):
        doc = upload(step.id, "CONTRACT", "s1", ts(10)).document.id
        service.set_step_completed(db, step.id, True)
        service.set_step_completed(db, step.id, True)
        assert _current_ids(db, step.id) == [doc]

    def test_duplicate_upload_into_reused_session_returns_kept_document(self, db, step, insert_raw, upload, ts):
        insert_raw(step.id, "CONTRACT", "s1", ts(5), id="0-withdrawn", withdrawn_at=ts(6))
        kept = upload(step.id, "CONTRACT", "s1", ts(10))
        folded = upload(step.id, "CONTRACT", "s1", ts(20))

        assert kept.kept
        assert not folded.kept
        assert folded.document.id == kept.document.id
        assert folded.document.is_current_version == 1

    def test_withdraw_without_sessions_is_noop(self, db, step):
        assert service.withdraw_latest_session(db, step.id) is None


class TestDeleteDocument:
    def test_deleting_current_promotes_predecessor(self, db, step, upload, ts):
        v1 = upload(step.id, "CONTRACT", "s1", ts(10)).document.id
        v2 = upload(step.id, "CONTRACT", "s2", ts(20)).document.id

        report = service.delete_document(db, step.id, v2)
        assert v1 in report.updated_ids

        db.expire_all()
        doc = db.get(TimelineDocument, v1)
        assert doc.is_current_version == 1
        assert doc.superseded_by is None
        assert doc.superseded_at is None

    def test_deleting_middle_version_relinks_chain(self, db, step, upload, ts):
        v1 = upload(step.id, "CONTRACT", "s1", ts(10)).document.id
        v2 = upload(step.id, "CONTRACT", "s2", ts(20)).document.id
        v3 = upload(step.id, "CONTRACT", "s3", ts(30)).document.id

        service.delete_document(db, step.id, v2)
        db.expire_all()
        first, last = db.get(TimelineDocument, v1), db.get(TimelineDocument, v3)
        assert first.superseded_by == v3
        assert first.superseded_at == ts(30)
        assert last.document_version == 2

    def test_delete_unknown_document(self, db, step):
        with pytest.raises(NotFound):
            service.delete_document(db, step.id, "missing")


class TestConsistencyAndSweep:
    def test_fresh_step_is_consistent(self, db, step, upload, ts):
        upload(step.id, "CONTRACT", "s1", ts(10))
        upload(step.id, "CONTRACT", "s2", ts(20))
        report = service.check_consistency(db, step.id)
        assert report.consistent
        assert report.problems == []

    def test_detects_duplicates_and_double_current(self, db, step, insert_raw, ts):
        insert_raw(step.id, "CONTRACT", "s1", ts(10), document_version=1, is_current_version=True)
        insert_raw(step.id, "CONTRACT", "s1", ts(11), document_version=1, is_current_version=True)

        problems = service.check_consistency(db, step.id).problems
        assert any("2 CONTRACT documents in session s1" in p for p in problems)
        assert any("2 current documents" in p for p in problems)

    def test_detects_cycle(self, db, step, insert_raw, ts):
        insert_raw(step.id, "CONTRACT", "s1", ts(10), id="a", document_version=1, superseded_by="b")
        insert_raw(step.id, "CONTRACT", "s2", ts(20), id="b", document_version=2, superseded_by="a")

        problems = service.check_consistency(db, step.id).problems
        assert any("cycle" in p for p in problems)

    def test_detects_withdrawn_with_version(self, db, step, insert_raw, ts):
        insert_raw(step.id, "CONTRACT", "s1", ts(10), document_version=1, is_current_version=True,
                   withdrawn_at=ts(50))
        problems = service.check_consistency(db, step.id).problems
        assert any("withdrawn" in p for p in problems)

    def test_check_does_not_write(self, db, step, insert_raw, ts):
        doc_id = insert_raw(step.id, "CONTRACT", "s1", ts(10))
        service.check_consistency(db, step.id)
        db.expire_all()
        assert db.get(TimelineDocument, doc_id).document_version is None

    def test_sweep_repairs_every_versioned_step(self, db, insert_raw, ts):
        first = service.create_step(db, "timeline-1", "Appraisal")
        second = service.create_step(db, "timeline-1", "Closing")
        untouched = service.create_step(db, "timeline-1", "Walkthrough")
        insert_raw(first.id, "APPRAISAL", "s1", ts(10))
        insert_raw(second.id, "CLOSING", "s1", ts(10))
        insert_raw(second.id, "CLOSING", "s1", ts(12))
        insert_raw(untouched.id, "OTHER", None, ts(10))

        result = service.sweep(db)
        assert result.failed == {}
        assert sorted(r.step_id for r in result.rebuilt) == sorted([first.id, second.id])
        for step_id in (first.id, second.id):
            assert service.check_consistency(db, step_id).consistent

        repeat = service.sweep(db)
        assert not any(r.changed for r in repeat.rebuilt)


class TestCli:
    def test_sweep_and_check_commands(self, db, test_db, tmp_store, insert_raw, ts, monkeypatch, capsys):
        from stepdocs import __main__ as cli
        from stepdocs import database
        from stepdocs.config import settings

        monkeypatch.setattr(settings, "data_path", tmp_store)
        monkeypatch.setattr(database, "SessionLocal", test_db)

        step = service.create_step(db, "timeline-1", "Inspection")
        insert_raw(step.id, "INSPECTION", "s1", ts(10))

        assert cli.main(["check", step.id]) == 1
        assert cli.main(["sweep"]) == 0
        assert cli.main(["check", step.id]) == 0
        assert cli.main(["rebuild", "missing"]) == 1
        assert '"consistent": true' in capsys.readouterr().out
