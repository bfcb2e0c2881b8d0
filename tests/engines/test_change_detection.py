"""
Tests for change detection, attribution context and edit sessions.

Covers:
- Canonical comparison (scalars, unordered and ordered lists, blanks)
- Serialization and human display of stored values
- apply_changes on mappings and objects
- ChangeContext validation and contact info handling
- Default customer summary generation
- EditSession lifecycle and the summary dirty flag
"""

from datetime import date
from types import SimpleNamespace

import pytest

from billing_engines.change_detection import (
    QUOTE_TRACKED_FIELDS,
    ChangeContext,
    ChangeSource,
    EditSession,
    EditSessionState,
    FieldKind,
    TrackedField,
    apply_changes,
    detect_changes,
    format_serialized_value,
    generate_customer_summary,
    humanize_field_name,
    normalize_attribution,
    parse_source,
    resolve_fields,
)
from billing_kernel.exceptions import (
    EditSessionStateError,
    EmptyAttributionError,
    UnknownChangeSourceError,
    UnknownTrackedFieldError,
)


def _quote(**overrides):
    values = {
        "event_name": "Harper Wedding Reception",
        "event_date": date(2024, 6, 15),
        "start_time": "17:30",
        "guest_count": 120,
        "location": "Riverside Hall",
        "service_type": "plated",
        "dietary_restrictions": ["vegetarian", "gluten_free"],
        "appetizers": ["Bruschetta", "Crab Cakes"],
        "desserts": ["Tiramisu"],
        "special_requests": None,
        "contact_phone": "555-0100",
        "email": "harper@example.com",
    }
    values.update(overrides)
    return values


class TestDetection:
    """Tests for detect_changes."""

    def test_identical_records_have_no_changes(self):
        assert detect_changes(old=_quote(), new=_quote()) == ()

    def test_scalar_change(self):
        candidates = detect_changes(old=_quote(), new=_quote(guest_count=140))

        assert len(candidates) == 1
        candidate = candidates[0]
        assert candidate.field_name == "guest_count"
        assert candidate.label == "Guest Count"
        assert candidate.old_value == "120"
        assert candidate.new_value == "140"
        assert candidate.new_raw == 140

    def test_unordered_list_reorder_is_not_a_change(self):
        new = _quote(dietary_restrictions=["gluten_free", "vegetarian"])
        assert detect_changes(old=_quote(), new=new) == ()

    def test_unordered_list_duplicates_ignored(self):
        new = _quote(desserts=["Tiramisu", "Tiramisu"])
        assert detect_changes(old=_quote(), new=new) == ()

    def test_unordered_list_addition(self):
        new = _quote(dietary_restrictions=["vegetarian", "gluten_free", "vegan"])
        (candidate,) = detect_changes(old=_quote(), new=new)

        assert candidate.old_value == '["gluten_free","vegetarian"]'
        assert candidate.new_value == '["gluten_free","vegan","vegetarian"]'

    def test_ordered_list_order_matters(self):
        field = TrackedField("courses", kind=FieldKind.ORDERED)
        candidates = detect_changes(
            old={"courses": ["soup", "main"]},
            new={"courses": ["main", "soup"]},
            fields=[field],
        )

        assert len(candidates) == 1

    def test_blank_string_equals_none(self):
        new = _quote(special_requests="   ")
        assert detect_changes(old=_quote(), new=new) == ()

    def test_empty_list_equals_none(self):
        old = _quote(desserts=None)
        new = _quote(desserts=[])
        assert detect_changes(old=old, new=new) == ()

    def test_submitted_text_equal_to_stored_number_is_not_a_change(self):
        """Form posts send strings; the stored row holds an int."""
        new = _quote(guest_count="140")
        assert detect_changes(old=_quote(guest_count=140), new=new) == ()

    def test_number_text_in_lists_not_a_change(self):
        field = TrackedField("table_numbers", kind=FieldKind.UNORDERED)
        candidates = detect_changes(
            old={"table_numbers": [1, 2]}, new={"table_numbers": ["2", "1"]}, fields=[field],
        )

        assert candidates == ()

    def test_stored_values_always_differ(self):
        new = _quote(guest_count="141", event_date="2024-06-15")

        (candidate,) = detect_changes(old=_quote(guest_count=140), new=new)

        assert candidate.field_name == "guest_count"
        assert candidate.old_value != candidate.new_value

    def test_date_serialized_iso(self):
        (candidate,) = detect_changes(
            old=_quote(), new=_quote(event_date=date(2024, 6, 22)),
        )

        assert candidate.old_value == "2024-06-15"
        assert candidate.new_value == "2024-06-22"

    def test_cleared_value(self):
        (candidate,) = detect_changes(old=_quote(), new=_quote(location=""))

        assert candidate.old_value == "Riverside Hall"
        assert candidate.new_value is None

    def test_candidates_follow_field_order(self):
        candidates = detect_changes(
            old=_quote(), new=_quote(email="new@example.com", guest_count=90),
        )

        assert [c.field_name for c in candidates] == ["guest_count", "email"]

    def test_object_and_mapping_compare(self):
        old = SimpleNamespace(**_quote())
        candidates = detect_changes(old=old, new=_quote(location="Harbor Club"))

        assert [c.field_name for c in candidates] == ["location"]

    def test_field_subset_by_name(self):
        candidates = detect_changes(
            old=_quote(), new=_quote(guest_count=1, location="Elsewhere"),
            fields=["location"],
        )

        assert [c.field_name for c in candidates] == ["location"]

    def test_unknown_field_rejected(self):
        with pytest.raises(UnknownTrackedFieldError):
            detect_changes(old=_quote(), new=_quote(), fields=["ssn"])


class TestApplyChanges:
    """Tests for applying candidates back onto records."""

    def test_mapping_copied_not_mutated(self):
        old = _quote()
        new = _quote(guest_count=140, appetizers=["Crab Cakes"])
        candidates = detect_changes(old=old, new=new)

        updated = apply_changes(old, candidates)

        assert old["guest_count"] == 120
        assert updated["guest_count"] == 140
        assert detect_changes(old=updated, new=new) == ()

    def test_object_updated_in_place(self):
        record = SimpleNamespace(**_quote())
        candidates = detect_changes(old=record, new=_quote(location="Harbor Club"))

        returned = apply_changes(record, candidates)

        assert returned is record
        assert record.location == "Harbor Club"


class TestFormatting:
    """Tests for display helpers."""

    @pytest.mark.parametrize(
        "stored, shown",
        [
            (None, "not set"),
            ("", "not set"),
            ("120", "120"),
            ('["Bruschetta","Crab Cakes"]', "Bruschetta, Crab Cakes"),
            ("[]", "none"),
            ("[not json", "[not json"),
        ],
    )
    def test_format_serialized_value(self, stored, shown):
        assert format_serialized_value(stored) == shown

    def test_humanize_field_name(self):
        assert humanize_field_name("dietary_restrictions") == "Dietary Restrictions"

    def test_describe(self):
        (candidate,) = detect_changes(old=_quote(), new=_quote(guest_count=140))
        assert candidate.describe() == "guest count changed from 120 to 140"

    def test_tracked_field_registry(self):
        names = [f.name for f in QUOTE_TRACKED_FIELDS]
        assert len(names) == 12
        assert resolve_fields(["email"])[0].label == "Email"


class TestChangeContext:
    """Tests for ChangeContext.build and its helpers."""

    def test_attribution_normalized(self):
        context = ChangeContext.build(attribution="  jd ", source="phone")

        assert context.attribution == "JD"
        assert context.source is ChangeSource.PHONE

    def test_empty_attribution_rejected(self):
        with pytest.raises(EmptyAttributionError):
            ChangeContext.build(attribution="   ", source="phone")

    def test_minimum_attribution_length(self):
        with pytest.raises(EmptyAttributionError) as exc_info:
            normalize_attribution("j", min_length=2)

        assert exc_info.value.min_length == 2

    def test_unknown_source_rejected(self):
        with pytest.raises(UnknownChangeSourceError):
            ChangeContext.build(attribution="JD", source="carrier_pigeon")

    def test_contact_info_kept_for_phone_and_email(self):
        for source in ("phone", "email"):
            context = ChangeContext.build(
                attribution="JD", source=source, contact_info="Dana Harper",
            )
            assert context.contact_info == "Dana Harper"

    @pytest.mark.parametrize("source", ["portal_change_request", "in_person", "admin_adjustment"])
    def test_contact_info_dropped_for_other_sources(self, source):
        context = ChangeContext.build(
            attribution="JD", source=source, contact_info="Dana Harper",
        )
        assert context.contact_info is None

    def test_blank_note_becomes_none(self):
        context = ChangeContext.build(attribution="JD", source="email", internal_note="  ")
        assert context.internal_note is None

    def test_source_labels(self):
        assert parse_source("in_person").label == "in-person discussion"
        assert ChangeSource.ADMIN_ADJUSTMENT.label == "internal adjustment"


class TestCustomerSummary:
    """Tests for the default customer-facing summary."""

    def test_single_change(self):
        candidates = detect_changes(old=_quote(), new=_quote(guest_count=140))
        summary = generate_customer_summary(candidates, "jd", ChangeSource.PHONE)

        assert summary == "Updated by JD via phone call: guest count changed from 120 to 140"

    def test_multiple_changes_joined(self):
        candidates = detect_changes(
            old=_quote(), new=_quote(guest_count=140, location="Harbor Club"),
        )
        summary = generate_customer_summary(candidates, "JD", ChangeSource.EMAIL)

        assert summary == (
            "Updated by JD via email request: guest count changed from 120 to 140; "
            "location changed from Riverside Hall to Harbor Club"
        )

    def test_without_context(self):
        assert generate_customer_summary((), "", None) == "Updated"


class TestEditSession:
    """Tests for the edit session lifecycle."""

    def setup_method(self):
        self.edit = EditSession(_quote(), _quote(guest_count=140))

    def test_detect_moves_to_awaiting_context(self):
        assert self.edit.state == EditSessionState.DETECTING

        candidates = self.edit.detect()

        assert len(candidates) == 1
        assert self.edit.state == EditSessionState.AWAITING_CONTEXT

    def test_no_changes_stays_detecting(self):
        edit = EditSession(_quote(), _quote())

        assert not edit.has_changes
        assert edit.state == EditSessionState.DETECTING
        assert edit.build_context() is None

    def test_summary_follows_context(self):
        self.edit.detect()
        self.edit.set_attribution("jd")
        self.edit.set_source("phone")

        assert self.edit.customer_summary == (
            "Updated by JD via phone call: guest count changed from 120 to 140"
        )

        self.edit.set_source(ChangeSource.EMAIL)
        assert "via email request" in self.edit.customer_summary

    def test_manual_summary_survives_context_edits(self):
        self.edit.detect()
        self.edit.set_attribution("jd")
        self.edit.edit_summary("Guest count is now 140.")
        self.edit.set_source("phone")
        self.edit.set_attribution("ab")

        assert self.edit.summary_is_manual
        assert self.edit.customer_summary == "Guest count is now 140."

    def test_manual_summary_equal_to_generated_still_manual(self):
        self.edit.detect()
        self.edit.set_attribution("jd")
        self.edit.set_source("phone")
        self.edit.edit_summary(self.edit.customer_summary)
        self.edit.set_attribution("ab")

        assert "by JD" in self.edit.customer_summary

    def test_reset_summary_resumes_generation(self):
        self.edit.detect()
        self.edit.edit_summary("custom")
        self.edit.set_attribution("ab")
        self.edit.reset_summary()

        assert not self.edit.summary_is_manual
        assert self.edit.customer_summary.startswith("Updated by AB")

    def test_switching_source_clears_contact_info(self):
        self.edit.set_source("phone")
        self.edit.set_contact_info("Dana Harper")
        self.edit.set_source("in_person")

        assert self.edit.contact_info is None

    def test_build_context(self):
        self.edit.set_attribution("jd")
        self.edit.set_source("phone")
        self.edit.set_contact_info("Dana Harper")
        self.edit.set_internal_note("Called about headcount")
        self.edit.set_include_in_customer_notes(True)

        context = self.edit.build_context()

        assert context.attribution == "JD"
        assert context.contact_info == "Dana Harper"
        assert context.internal_note == "Called about headcount"
        assert context.include_in_customer_notes
        assert context.customer_summary.startswith("Updated by JD via phone call")

    def test_build_context_requires_source(self):
        self.edit.set_attribution("jd")
        with pytest.raises(UnknownChangeSourceError):
            self.edit.build_context()

    def test_build_context_requires_attribution(self):
        self.edit.set_source("phone")
        with pytest.raises(EmptyAttributionError):
            self.edit.build_context()

    def test_configured_minimum_attribution(self):
        edit = EditSession(_quote(), _quote(guest_count=1), min_attribution_length=2)
        edit.set_attribution("j")
        edit.set_source("phone")

        with pytest.raises(EmptyAttributionError):
            edit.build_context()

    def test_abandon_ends_session(self):
        self.edit.detect()
        self.edit.abandon()

        assert self.edit.state == EditSessionState.ABANDONED
        with pytest.raises(EditSessionStateError):
            self.edit.set_attribution("jd")

    def test_committed_session_rejects_reuse(self):
        self.edit.mark_committed()

        with pytest.raises(EditSessionStateError) as exc_info:
            self.edit.detect()

        assert exc_info.value.state == "committed"
