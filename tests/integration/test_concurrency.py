"""Concurrency tests: each thread works through its own session and connection."""

import threading
from uuid import UUID

import pytest
from sqlalchemy.orm.exc import StaleDataError

from mocflow.core.errors import ConflictError
from mocflow.core.workflow.service import ChangeRequestService
from mocflow.db.models import ChangeRequest, StatusChange
from tests.factories import create_department, create_user, submit_change_request


def run_concurrently(session_factory, settings, jobs):
    """Run each ``job(service)`` in its own thread; return results and errors."""
    barrier = threading.Barrier(len(jobs))
    results, errors = [], []

    def worker(job):
        session = session_factory()
        try:
            service = ChangeRequestService(session, settings=settings)
            barrier.wait()
            results.append(job(service))
        except Exception as exc:
            errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=worker, args=(job,)) for job in jobs]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return results, errors


class TestConcurrentCreation:

    def test_sequence_numbers_are_distinct_and_contiguous(self, db_session, session_factory, settings):
        submitter = create_user(db_session)
        db_session.commit()
        submitter_id = submitter.id
        count = 8

        def create(service):
            return service.create_change_request(
                submitter_id, {"title": "Concurrent", "description": "Created in parallel"},
            )

        results, errors = run_concurrently(session_factory, settings, [create] * count)

        assert errors == []
        numbers = sorted(r["sequence_number"] for r in results)
        assert numbers == list(range(numbers[0], numbers[0] + count))
        assert len({r["display_id"] for r in results}) == count


class TestConcurrentVotes:

    def test_votes_on_different_departments_both_land(self, db_session, session_factory, settings):
        submitter = create_user(db_session)
        ops_approver = create_user(db_session)
        maint_approver = create_user(db_session)
        ops = create_department(db_session, approvers=[ops_approver])
        maint = create_department(db_session, approvers=[maint_approver])
        db_session.commit()

        service = ChangeRequestService(db_session, settings=settings)
        cr = submit_change_request(service, submitter, departments_affected=[ops.id, maint.id])

        def vote(department, approver):
            return lambda svc: svc.cast_department_vote(cr["id"], department.id, "approved", approver.id)

        results, errors = run_concurrently(
            session_factory, settings, [vote(ops, ops_approver), vote(maint, maint_approver)],
        )

        assert errors == []
        db_session.expire_all()
        stored = db_session.get(ChangeRequest, UUID(cr["id"]))
        assert stored.status == "approved"
        assert [a.status for a in stored.department_approvals] == ["approved", "approved"]
        assert sorted(r["status"] for r in results) == ["approved", "pending_department_approval"]


class TestStaleWrites:

    def make(self, db_session, settings):
        submitter = create_user(db_session)
        service = ChangeRequestService(db_session, settings=settings)
        cr = service.create_change_request(submitter.id, {"title": "Stale", "description": "Retry me"})
        return service, submitter, cr

    def test_stale_write_is_retried(self, db_session, settings, monkeypatch):
        service, submitter, cr = self.make(db_session, settings)
        real_commit = db_session.commit
        failures = []

        def flaky_commit():
            if not failures:
                failures.append(1)
                raise StaleDataError("row version changed")
            return real_commit()

        monkeypatch.setattr(db_session, "commit", flaky_commit)
        result = service.request_transition(cr["id"], "pending_department_approval", submitter.id)

        assert failures == [1]
        assert result["status"] == "pending_department_approval"
        assert db_session.query(StatusChange).count() == 1

    def test_gives_up_after_retries(self, db_session, settings, monkeypatch):
        service, submitter, cr = self.make(db_session, settings)
        attempts = []

        def stale_commit():
            attempts.append(1)
            raise StaleDataError("row version changed")

        monkeypatch.setattr(db_session, "commit", stale_commit)
        with pytest.raises(ConflictError):
            service.request_transition(cr["id"], "pending_department_approval", submitter.id)

        assert len(attempts) == settings.max_conflict_retries
        monkeypatch.undo()
        db_session.expire_all()
        assert db_session.get(ChangeRequest, UUID(cr["id"])).status == "draft"
