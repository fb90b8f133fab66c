"""Integration tests for the change request workflow against a real database."""

from types import SimpleNamespace
from uuid import UUID, uuid4

import pytest

from mocflow.core.config import Settings
from mocflow.core.errors import (
    AlreadyProcessedError,
    InvalidStatusError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from mocflow.core.workflow.service import ChangeRequestService
from mocflow.db.models import ChangeRequest, EditHistoryEntry, Notification, StatusChange
from tests.factories import (
    create_change_request,
    create_department,
    create_user,
    submit_change_request,
)


@pytest.fixture
def people(db_session):
    """A small plant: two departments, two technical authorities, a closeout approver."""
    world = SimpleNamespace(
        submitter=create_user(db_session, name="Sam Submitter"),
        assignee=create_user(db_session, name="Ann Assignee"),
        ops_approver=create_user(db_session, name="Olga Ops"),
        maint_approver=create_user(db_session, name="Max Maint"),
        ta_one=create_user(db_session, name="Tom Authority"),
        ta_two=create_user(db_session, name="Tia Authority"),
        closer=create_user(db_session, name="Cal Closeout"),
        admin=create_user(db_session, name="Ada Admin", is_admin=True, permissions=[]),
        outsider=create_user(db_session, name="Otto Outsider", permissions=[]),
    )
    world.ops = create_department(db_session, name="Operations", approvers=[world.ops_approver])
    world.maint = create_department(db_session, name="Maintenance", approvers=[world.maint_approver])
    db_session.commit()
    return world


def submit(service, people, **fields):
    fields.setdefault("departments_affected", [people.ops.id, people.maint.id])
    fields.setdefault("assigned_to_id", people.assignee.id)
    return submit_change_request(service, people.submitter, **fields)


def approve_departments(service, people, cr):
    service.cast_department_vote(cr["id"], people.ops.id, "approved", people.ops_approver.id)
    return service.cast_department_vote(cr["id"], people.maint.id, "approved", people.maint_approver.id)


def department_statuses(cr):
    return [a["status"] for a in cr["department_approvals"]]


class TestCreate:
    """Test change request creation."""

    def test_create_draft(self, service, people):
        cr = create_change_request(
            service, people.submitter,
            departments_affected=[people.ops.id],
            change_type="permanent",
            deadline="2025-03-01",
        )
        assert cr["status"] == "draft"
        assert cr["submitter_id"] == str(people.submitter.id)
        assert cr["change_type"] == "permanent"
        assert cr["deadline"] == "2025-03-01"
        assert cr["department_approvals"] == [{
            "department_id": str(people.ops.id),
            "status": "pending",
            "approver_id": str(people.ops_approver.id),
            "approved_at": None,
            "comments": None,
        }]

    def test_display_ids_are_sequential(self, service, people):
        first = create_change_request(service, people.submitter)
        second = create_change_request(service, people.submitter)
        assert second["sequence_number"] == first["sequence_number"] + 1
        assert second["display_id"] == f"MOC-{second['sequence_number']}"

    def test_requires_create_permission(self, service, people):
        with pytest.raises(PermissionDeniedError):
            create_change_request(service, people.outsider)

    def test_admin_may_create(self, service, people):
        assert create_change_request(service, people.admin)["status"] == "draft"

    def test_title_required(self, service, people):
        with pytest.raises(ValidationError):
            service.create_change_request(people.submitter.id, {"description": "No title"})

    def test_workflow_fields_rejected(self, service, people):
        with pytest.raises(ValidationError):
            create_change_request(service, people.submitter, status="approved")

    def test_unknown_user_reference(self, service, people):
        with pytest.raises(NotFoundError):
            create_change_request(service, people.submitter, assigned_to_id=uuid4())

    def test_unapproved_user_reference(self, service, people, db_session):
        pending = create_user(db_session, is_approved=False)
        db_session.commit()
        with pytest.raises(ValidationError):
            create_change_request(service, people.submitter, viewer_ids=[pending.id])

    def test_unknown_department_reference(self, service, people):
        with pytest.raises(NotFoundError):
            create_change_request(service, people.submitter, departments_affected=[uuid4()])

    def test_failed_create_does_not_consume_sequence(self, service, people):
        first = create_change_request(service, people.submitter)
        with pytest.raises(NotFoundError):
            create_change_request(service, people.submitter, departments_affected=[uuid4()])
        second = create_change_request(service, people.submitter)
        assert second["sequence_number"] == first["sequence_number"] + 1


class TestDepartmentApproval:
    """Department votes and their aggregation."""

    def test_submission(self, service, people, db_session):
        cr = submit(service, people)
        assert cr["status"] == "pending_department_approval"
        assert cr["submitted_at"] is not None
        assert department_statuses(cr) == ["pending", "pending"]
        recipients = {n.recipient_id for n in db_session.query(Notification).all()}
        assert recipients == {people.ops_approver.id, people.maint_approver.id, people.assignee.id}

    def test_one_department_is_not_enough(self, service, people):
        cr = submit(service, people)
        cr = service.cast_department_vote(cr["id"], people.ops.id, "approved", people.ops_approver.id)
        assert cr["status"] == "pending_department_approval"
        assert department_statuses(cr) == ["approved", "pending"]

    def test_all_departments_approve_without_panel(self, service, people):
        cr = approve_departments(service, people, submit(service, people))
        assert cr["status"] == "approved"
        assert cr["review_comments"] == "All departments approved"
        assert cr["reviewer_id"] == str(people.maint_approver.id)

    def test_rejection_is_immediate(self, service, people):
        cr = submit(service, people)
        cr = service.cast_department_vote(
            cr["id"], people.ops.id, "rejected", people.ops_approver.id, comments="Not isolated",
        )
        assert cr["status"] == "rejected"
        assert department_statuses(cr) == ["rejected", "pending"]
        assert cr["department_approvals"][0]["comments"] == "Not isolated"

    def test_vote_notifies_submitter(self, service, people, db_session):
        cr = submit(service, people)
        service.cast_department_vote(cr["id"], people.ops.id, "approved", people.ops_approver.id)
        notes = db_session.query(Notification).filter(
            Notification.recipient_id == people.submitter.id,
            Notification.type == "department_action",
        ).all()
        assert [n.message for n in notes] == [f'Olga Ops approved MOC "{cr["title"]}" for their department.']

    def test_wrong_department_approver(self, service, people):
        cr = submit(service, people)
        with pytest.raises(PermissionDeniedError):
            service.cast_department_vote(cr["id"], people.ops.id, "approved", people.maint_approver.id)

    def test_vote_after_decision(self, service, people):
        cr = approve_departments(service, people, submit(service, people))
        with pytest.raises(AlreadyProcessedError):
            service.cast_department_vote(cr["id"], people.ops.id, "rejected", people.ops_approver.id)

    def test_pending_is_not_a_decision(self, service, people):
        cr = submit(service, people)
        with pytest.raises(ValidationError):
            service.cast_department_vote(cr["id"], people.ops.id, "pending", people.ops_approver.id)

    def test_unknown_department(self, service, people):
        cr = submit(service, people)
        with pytest.raises(NotFoundError):
            service.cast_department_vote(cr["id"], uuid4(), "approved", people.admin.id)

    def test_department_not_on_request(self, service, people, db_session):
        other = create_department(db_session, name="Finance", approvers=[people.ops_approver])
        db_session.commit()
        cr = submit(service, people)
        with pytest.raises(ValidationError):
            service.cast_department_vote(cr["id"], other.id, "approved", people.ops_approver.id)

    def test_rejection_comments_when_required(self, db_session, people):
        strict = ChangeRequestService(
            db_session, settings=Settings(_env_file=None, require_rejection_comments=True),
        )
        cr = submit(strict, people)
        with pytest.raises(ValidationError):
            strict.cast_department_vote(cr["id"], people.ops.id, "rejected", people.ops_approver.id)
        cr = strict.cast_department_vote(
            cr["id"], people.ops.id, "rejected", people.ops_approver.id, comments="Not isolated",
        )
        assert cr["status"] == "rejected"

    def test_admin_rejects_directly(self, service, people):
        cr = submit(service, people)
        cr = service.request_transition(cr["id"], "rejected", people.admin.id, "Out of scope")
        assert cr["status"] == "rejected"
        assert cr["review_comments"] == "Out of scope"


class TestTechnicalAuthority:
    """Final review by the technical authority panel."""

    def make(self, service, people):
        cr = submit(service, people, technical_authority_approver_ids=[people.ta_one.id, people.ta_two.id])
        return approve_departments(service, people, cr)

    def test_departments_hand_over_to_panel(self, service, people, db_session):
        cr = self.make(service, people)
        assert cr["status"] == "pending_final_review"
        told = {n.recipient_id for n in db_session.query(Notification).filter(
            Notification.message.contains("technical authority approval")
        )}
        assert told == {people.ta_one.id, people.ta_two.id}

    def test_unanimous_approval(self, service, people):
        cr = self.make(service, people)
        cr = service.request_transition(cr["id"], "approved", people.ta_one.id)
        assert cr["status"] == "pending_final_review"
        assert cr["technical_authority_approvals"] == {str(people.ta_one.id): "approved"}

        cr = service.request_transition(cr["id"], "approved", people.ta_two.id)
        assert cr["status"] == "approved"

    def test_any_rejection(self, service, people):
        cr = self.make(service, people)
        cr = service.request_transition(cr["id"], "rejected", people.ta_one.id, "Missing HAZOP")
        assert cr["status"] == "rejected"
        assert cr["review_comments"] == "Missing HAZOP"

    def test_owners_cannot_bypass_panel(self, service, people):
        cr = self.make(service, people)
        with pytest.raises(PermissionDeniedError):
            service.request_transition(cr["id"], "approved", people.assignee.id)

    def test_unknown_status(self, service, people):
        cr = self.make(service, people)
        with pytest.raises(InvalidStatusError):
            service.request_transition(cr["id"], "on_hold", people.ta_one.id)

    def test_unknown_transition(self, service, people):
        cr = self.make(service, people)
        with pytest.raises(InvalidTransitionError):
            service.request_transition(cr["id"], "completed", people.submitter.id)

    def test_status_history(self, service, people):
        cr = self.make(service, people)
        service.request_transition(cr["id"], "approved", people.ta_one.id)
        service.request_transition(cr["id"], "approved", people.ta_two.id)
        history = service.list_status_history(cr["id"], people.submitter.id)
        assert [(h["from_status"], h["to_status"]) for h in history] == [
            ("draft", "pending_department_approval"),
            ("pending_department_approval", "pending_final_review"),
            ("pending_final_review", "approved"),
        ]


class TestImplementationAndCloseout:
    """From approval through closeout."""

    def make(self, service, people, closers=None):
        cr = submit(service, people, closeout_approver_ids=closers if closers is not None else [people.closer.id])
        cr = approve_departments(service, people, cr)
        cr = service.request_transition(cr["id"], "in_progress", people.assignee.id)
        return service.request_transition(cr["id"], "pending_closeout", people.assignee.id)

    def test_closeout_completes(self, service, people, db_session):
        cr = self.make(service, people)
        assert cr["status"] == "pending_closeout"
        assert db_session.query(Notification).filter(
            Notification.recipient_id == people.closer.id
        ).count() == 1

        cr = service.cast_closeout_vote(cr["id"], "approved", people.closer.id)
        assert cr["status"] == "completed"
        assert cr["reviewer_id"] == str(people.closer.id)
        assert cr["review_comments"] == "Closeout approved"

    def test_closeout_rejection_returns_to_implementation(self, service, people):
        cr = self.make(service, people)
        cr = service.cast_closeout_vote(cr["id"], "rejected", people.closer.id, "Punch list open")
        assert cr["status"] == "in_progress"
        assert cr["closeout_approvals"] == {}
        assert cr["review_comments"] == "Punch list open"

    def test_owners_complete_without_closeout_panel(self, service, people):
        cr = self.make(service, people, closers=[])
        cr = service.request_transition(cr["id"], "completed", people.submitter.id)
        assert cr["status"] == "completed"

    def test_closeout_vote_by_outsider(self, service, people):
        cr = self.make(service, people)
        with pytest.raises(PermissionDeniedError):
            service.cast_closeout_vote(cr["id"], "approved", people.outsider.id)

    def test_cancel_approved_request(self, service, people):
        cr = approve_departments(service, people, submit(service, people))
        cr = service.request_transition(cr["id"], "cancelled", people.submitter.id)
        assert cr["status"] == "cancelled"


class TestEditing:
    """Content edits, invalidation and edit history."""

    def test_edit_during_review_resets_to_draft(self, service, people, db_session):
        cr = submit(service, people)
        service.cast_department_vote(cr["id"], people.ops.id, "approved", people.ops_approver.id)

        result = service.update_content(cr["id"], {"title": "Replace relief valve PSV-101"}, people.submitter.id)

        assert result["changed"] is True
        assert result["status_reset"] is True
        cr = result["change_request"]
        assert cr["status"] == "draft"
        assert department_statuses(cr) == ["pending", "pending"]
        assert cr["review_comments"] is None
        assert db_session.query(EditHistoryEntry).count() == 1

    def test_edit_clears_technical_authority_votes(self, service, people):
        cr = submit(service, people, technical_authority_approver_ids=[people.ta_one.id, people.ta_two.id])
        cr = approve_departments(service, people, cr)
        service.request_transition(cr["id"], "approved", people.ta_one.id)

        result = service.update_content(cr["id"], {"reason_for_change": "Corrosion"}, people.ta_one.id)

        assert result["change_request"]["status"] == "draft"
        assert result["change_request"]["technical_authority_approvals"] == {}

    def test_identical_patch_is_a_no_op(self, service, people, db_session):
        cr = submit(service, people, viewer_ids=[people.outsider.id, people.closer.id])
        patch = {
            "title": cr["title"],
            "departments_affected": [people.maint.id, people.ops.id],
            "viewer_ids": [str(people.closer.id), str(people.outsider.id)],
            "reason_for_change": "",
        }
        result = service.update_content(cr["id"], patch, people.submitter.id)

        assert result["changed"] is False
        assert result["field_changes"] == []
        assert result["change_request"]["status"] == "pending_department_approval"
        assert db_session.query(EditHistoryEntry).count() == 0

    def test_edit_outside_review_keeps_status(self, service, people):
        cr = approve_departments(service, people, submit(service, people))
        result = service.update_content(cr["id"], {"training_required": True}, people.assignee.id)
        assert result["status_reset"] is False
        assert result["change_request"]["status"] == "approved"

    def test_department_change_realigns_approvals(self, service, people):
        cr = create_change_request(service, people.submitter, departments_affected=[people.ops.id])
        result = service.update_content(
            cr["id"], {"departments_affected": [people.ops.id, people.maint.id]}, people.submitter.id,
        )
        approvals = result["change_request"]["department_approvals"]
        assert [a["department_id"] for a in approvals] == [str(people.ops.id), str(people.maint.id)]
        assert approvals[1]["approver_id"] == str(people.maint_approver.id)

    def test_edit_history_describes_changes(self, service, people):
        cr = create_change_request(service, people.submitter, title="Old title")
        service.update_content(
            cr["id"],
            {"title": "New title", "assigned_to_id": people.assignee.id},
            people.submitter.id,
        )
        history = service.list_edit_history(cr["id"], people.submitter.id)
        assert len(history) == 1
        entry = history[0]
        assert entry["edited_by_name"] == "Sam Submitter"
        assert entry["description"] == "Updated Title, Assigned To"
        assert entry["field_changes"] == [
            {"field_label": "Title", "old_value": "Old title", "new_value": "New title", "change_type": "changed"},
            {"field_label": "Assigned To", "old_value": None, "new_value": "Ann Assignee", "change_type": "added"},
        ]

    def test_edit_history_newest_first(self, service, people):
        cr = create_change_request(service, people.submitter)
        service.update_content(cr["id"], {"title": "First"}, people.submitter.id)
        service.update_content(cr["id"], {"title": "Second"}, people.submitter.id)
        history = service.list_edit_history(cr["id"], people.submitter.id)
        assert [h["field_changes"][0]["new_value"] for h in history] == ["Second", "First"]

    def test_outsider_cannot_edit(self, service, people):
        cr = submit(service, people)
        with pytest.raises(PermissionDeniedError):
            service.update_content(cr["id"], {"title": "Hijacked"}, people.outsider.id)

    def test_department_approver_cannot_edit(self, service, people):
        cr = submit(service, people)
        with pytest.raises(PermissionDeniedError):
            service.update_content(cr["id"], {"title": "Changed"}, people.ops_approver.id)

    def test_failed_edit_leaves_no_trace(self, service, people, db_session):
        cr = submit(service, people)
        with pytest.raises(ValidationError):
            service.update_content(cr["id"], {"title": "Fine", "change_type": "whenever"}, people.submitter.id)
        db_session.expire_all()
        stored = db_session.get(ChangeRequest, UUID(cr["id"]))
        assert stored.title == cr["title"]
        assert stored.status == "pending_department_approval"


class TestResubmit:
    """Resubmission after rejection."""

    def test_resubmit_resets_everything(self, service, people):
        cr = submit(service, people, technical_authority_approver_ids=[people.ta_one.id])
        first_submitted_at = cr["submitted_at"]
        cr = approve_departments(service, people, cr)
        cr = service.request_transition(cr["id"], "rejected", people.ta_one.id, "Redo the HAZOP")

        cr = service.resubmit(cr["id"], people.submitter.id)

        assert cr["status"] == "pending_department_approval"
        assert department_statuses(cr) == ["pending", "pending"]
        assert cr["technical_authority_approvals"] == {}
        assert cr["reviewer_id"] is None
        assert cr["review_comments"] is None
        assert cr["submitted_at"] != first_submitted_at

    def test_resubmit_requires_rejection(self, service, people):
        cr = submit(service, people)
        with pytest.raises(AlreadyProcessedError):
            service.resubmit(cr["id"], people.submitter.id)

    def test_resubmit_by_assignee(self, service, people):
        cr = submit(service, people)
        cr = service.cast_department_vote(cr["id"], people.ops.id, "rejected", people.ops_approver.id)
        with pytest.raises(PermissionDeniedError):
            service.resubmit(cr["id"], people.assignee.id)


class TestDelete:
    """Deleting change requests."""

    def test_delete_draft_cascades(self, service, people, db_session):
        cr = create_change_request(service, people.submitter, departments_affected=[people.ops.id])
        service.update_content(cr["id"], {"title": "Edited"}, people.submitter.id)

        service.delete_change_request(cr["id"], people.submitter.id)

        assert db_session.query(ChangeRequest).count() == 0
        assert db_session.query(EditHistoryEntry).count() == 0
        with pytest.raises(NotFoundError):
            service.get_change_request(cr["id"], people.submitter.id)

    def test_delete_removes_notifications(self, service, people, db_session):
        cr = submit(service, people)
        cr = service.cast_department_vote(cr["id"], people.ops.id, "rejected", people.ops_approver.id)
        assert db_session.query(Notification).count() > 0

        service.delete_change_request(cr["id"], people.submitter.id)

        assert db_session.query(Notification).count() == 0
        assert db_session.query(StatusChange).count() == 0

    def test_cannot_delete_under_review(self, service, people):
        cr = submit(service, people)
        with pytest.raises(InvalidStatusError):
            service.delete_change_request(cr["id"], people.submitter.id)

    def test_only_submitter_or_privileged(self, service, people):
        cr = create_change_request(service, people.submitter)
        with pytest.raises(PermissionDeniedError):
            service.delete_change_request(cr["id"], people.assignee.id)
        service.delete_change_request(cr["id"], people.admin.id)

    def test_missing_request(self, service, people):
        with pytest.raises(NotFoundError):
            service.delete_change_request(uuid4(), people.submitter.id)


class TestVisibility:
    """Reads filtered by participation and viewer lists."""

    def test_drafts_listed_only_for_submitter(self, service, people):
        create_change_request(service, people.submitter)
        assert len(service.list_change_requests(people.submitter.id)) == 1
        assert service.list_change_requests(people.admin.id) == []

    def test_viewer_list_restricts_reads(self, service, people):
        cr = submit(service, people, viewer_ids=[people.closer.id])
        assert service.get_change_request(cr["id"], people.closer.id)["id"] == cr["id"]
        with pytest.raises(PermissionDeniedError):
            service.get_change_request(cr["id"], people.outsider.id)
        assert service.list_change_requests(people.outsider.id) == []

    def test_open_request_visible_to_all(self, service, people):
        cr = submit(service, people)
        assert [c["id"] for c in service.list_change_requests(people.outsider.id)] == [cr["id"]]

    def test_department_approvers_see_restricted_requests(self, service, people):
        cr = submit(service, people, viewer_ids=[people.closer.id])
        assert service.get_change_request(cr["id"], people.ops_approver.id)["id"] == cr["id"]

    def test_detail_resolves_names(self, service, people):
        cr = submit(service, people)
        detail = service.get_change_request(cr["id"], people.submitter.id)
        assert detail["submitter_name"] == "Sam Submitter"
        assert detail["assigned_to_name"] == "Ann Assignee"
        assert detail["departments_affected_names"] == ["Operations", "Maintenance"]
        assert detail["department_approvals"][0]["approver_name"] == "Olga Ops"

    def test_status_filter(self, service, people):
        submitted = submit(service, people)
        create_change_request(service, people.submitter)
        listed = service.list_change_requests(people.submitter.id, status="pending_department_approval")
        assert [c["id"] for c in listed] == [submitted["id"]]
        assert len(service.list_change_requests(people.submitter.id, status="all")) == 2

    def test_invalid_status_filter(self, service, people):
        with pytest.raises(InvalidStatusError):
            service.list_change_requests(people.submitter.id, status="maybe")

    def test_newest_first(self, service, people):
        first = create_change_request(service, people.submitter)
        second = create_change_request(service, people.submitter)
        assert [c["id"] for c in service.list_change_requests(people.submitter.id)] == [second["id"], first["id"]]

    def test_department_queue(self, service, people):
        ops_only = submit(service, people, departments_affected=[people.ops.id])
        submit(service, people, departments_affected=[people.maint.id])
        queue = service.list_department_queue(people.ops_approver.id)
        assert [c["id"] for c in queue] == [ops_only["id"]]

    def test_unknown_actor(self, service, people):
        with pytest.raises(NotFoundError):
            service.list_change_requests(uuid4())
