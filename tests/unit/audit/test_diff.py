"""Tests for the field diff engine."""

from datetime import date
from uuid import uuid4

from mocflow.core.audit.diff import (
    ChangeType,
    compute_field_changes,
    format_value,
    is_material_change,
    summarize,
)

ALICE = str(uuid4())
BOB = str(uuid4())
OPS = str(uuid4())
MAINT = str(uuid4())


class FakeResolver:
    names = {ALICE: "Alice", BOB: "Bob", OPS: "Operations", MAINT: "Maintenance"}

    def user_name(self, user_id):
        return self.names.get(str(user_id), "Unknown User")

    def department_name(self, department_id):
        return self.names.get(str(department_id), "Unknown Department")


class TestFormatValue:

    def test_plain_values(self):
        assert format_value(None) == ""
        assert format_value(True) == "Yes"
        assert format_value(False) == "No"
        assert format_value("text") == "text"
        assert format_value(["a", "b"]) == "a, b"

    def test_dates(self):
        assert format_value(date(2024, 1, 2)) == "2024-01-02"
        assert format_value(1704153600000) == "2024-01-02"

    def test_small_numbers_are_not_dates(self):
        assert format_value(42) == "42"


class TestMaterialChange:

    def test_identical_values(self):
        current = {"title": "A", "viewer_ids": [ALICE, BOB]}
        assert not is_material_change(current, {"title": "A", "viewer_ids": [BOB, ALICE]})

    def test_empty_and_missing_match(self):
        assert not is_material_change({"reason_for_change": None}, {"reason_for_change": ""})

    def test_text_change(self):
        assert is_material_change({"title": "A"}, {"title": "B"})


class TestComputeFieldChanges:

    def test_changed_text(self):
        changes = compute_field_changes({"title": "Old"}, {"title": "New"}, FakeResolver())
        assert len(changes) == 1
        assert changes[0].to_dict() == {
            "field_label": "Title",
            "old_value": "Old",
            "new_value": "New",
            "change_type": "changed",
        }

    def test_added_and_removed(self):
        current = {"reason_for_change": None, "training_details": "Toolbox talk"}
        patch = {"reason_for_change": "Obsolete part", "training_details": None}
        changes = compute_field_changes(current, patch, FakeResolver())
        by_label = {c.field_label: c for c in changes}
        assert by_label["Reason for Change"].change_type is ChangeType.ADDED
        assert by_label["Reason for Change"].old_value is None
        assert by_label["Training Details"].change_type is ChangeType.REMOVED
        assert by_label["Training Details"].new_value is None

    def test_identifiers_resolve_to_names(self):
        current = {"assigned_to_id": ALICE, "departments_affected": [OPS]}
        patch = {"assigned_to_id": BOB, "departments_affected": [OPS, MAINT]}
        changes = compute_field_changes(current, patch, FakeResolver())
        assert [(c.field_label, c.old_value, c.new_value) for c in changes] == [
            ("Assigned To", "Alice", "Bob"),
            ("Departments Affected", "Operations", "Operations, Maintenance"),
        ]

    def test_unknown_ids_use_fallback_names(self):
        stranger = str(uuid4())
        changes = compute_field_changes({"viewer_ids": []}, {"viewer_ids": [stranger]}, FakeResolver())
        assert changes[0].new_value == "Unknown User"
        assert changes[0].change_type is ChangeType.ADDED

    def test_flags_render_yes_no(self):
        changes = compute_field_changes(
            {"training_required": False}, {"training_required": True}, FakeResolver(),
        )
        assert (changes[0].old_value, changes[0].new_value) == ("No", "Yes")

    def test_no_changes(self):
        assert compute_field_changes({"title": "Same"}, {"title": "Same"}, FakeResolver()) == []

    def test_summary(self):
        changes = compute_field_changes(
            {"title": "A", "description": "x"}, {"title": "B", "description": "y"}, FakeResolver(),
        )
        assert summarize(changes) == "Updated Title, Description"
