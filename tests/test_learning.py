"""Tests for learning from user corrections."""

import pytest

from freight_tender.extractor import extract_candidates
from freight_tender.learning import (
    LearningDetector,
    apply_learned_cargo_defaults,
    derive_pattern,
    detect_all_edits,
    detect_reclassifications,
    is_rule_already_learned,
)
from freight_tender.schema import (
    CargoDetails,
    ReferenceNumber,
    StructuredShipment,
    SuggestedRule,
    Temperature,
)

from conftest import make_rule


def shipment(refs=(), commodity=None, temperature=None, weight=None):
    data = StructuredShipment(reference_numbers=[ReferenceNumber(type=t, value=v) for t, v in refs])
    data.cargo = CargoDetails(commodity=commodity, temperature=temperature)
    data.cargo.weight.value = weight
    return data


class TestDerivePattern:

    @pytest.mark.parametrize("value,expected", [
        ("ABC12345", r"^ABC\d{4,}$"),
        ("12-345", r"^\d+-\d+$"),
        ("1-22-333", r"^\d+-\d+-\d+$"),
        ("118585", None),
        ("A1", None),
    ])
    def test_shapes(self, value, expected):
        assert derive_pattern(value) == expected


class TestReclassifications:
    """Suggested rules from changed reference types."""

    def test_label_suggestion_from_candidate(self):
        text = "Release # 44221 for pickup tomorrow"
        candidates = extract_candidates(text).candidates
        original = shipment([("unknown", "44221")])
        final = shipment([("po", "44221")])

        suggestions = detect_reclassifications(original, final, candidates, text)

        assert len(suggestions) == 1
        assert suggestions[0].type == "label"
        assert suggestions[0].label == "Release #"
        assert suggestions[0].subtype == "po"
        assert suggestions[0].example_value == "44221"

    def test_label_from_text_context(self):
        """Without a candidate the label is read from the text around the value."""
        text = "Cust Ref: 77123 please"
        original = shipment([("unknown", "77123")])
        final = shipment([("reference", "77123")])

        suggestions = detect_reclassifications(original, final, [], text)

        assert [s.label for s in suggestions] == ["Cust Ref"]

    def test_regex_suggestion_when_no_label(self):
        text = "ABC12345"
        original = shipment([("unknown", "ABC12345")])
        final = shipment([("order", "ABC12345")])

        suggestions = detect_reclassifications(original, final, [], text)

        assert len(suggestions) == 1
        assert suggestions[0].type == "regex"
        assert suggestions[0].pattern == r"^ABC\d{4,}$"

    def test_unchanged_and_unknown_ignored(self):
        text = "PO# 118585"
        original = shipment([("po", "118585")])

        assert detect_reclassifications(original, shipment([("po", "118585")]), [], text) == []
        assert detect_reclassifications(original, shipment([("unknown", "118585")]), [], text) == []

    def test_leading_zeros_match(self):
        text = "Release # 0044221"
        candidates = extract_candidates(text).candidates
        original = shipment([("unknown", "0044221")])
        final = shipment([("po", "44221")])

        suggestions = detect_reclassifications(original, final, candidates, text)

        assert [s.label for s in suggestions] == ["Release #"]

    def test_duplicates_collapsed(self):
        text = "Release # 44221\nRelease # 55332"
        candidates = extract_candidates(text).candidates
        original = shipment([("unknown", "44221"), ("unknown", "55332")])
        final = shipment([("po", "44221"), ("po", "55332")])

        suggestions = detect_reclassifications(original, final, candidates, text)

        assert len(suggestions) == 1

    def test_extract_label_ignores_phone_labels(self):
        detector = LearningDetector()

        assert detector.extract_label_from_context("Phone: 44221", "44221") is None
        assert detector.extract_label_from_context("Release #: 44221", "44221") == "Release"


class TestAlreadyLearned:

    def test_label_case_insensitive(self):
        rules = [make_rule(pattern="Release #", target_value="po")]

        assert is_rule_already_learned(SuggestedRule(type="label", label="RELEASE #", subtype="po",
                                                     example_value="1"), rules)
        assert not is_rule_already_learned(SuggestedRule(type="label", label="release #", subtype="bol",
                                                         example_value="1"), rules)

    def test_inactive_rule_does_not_count(self):
        rules = [make_rule(pattern="Release #", target_value="po", status="proposed")]

        assert not is_rule_already_learned(SuggestedRule(type="label", label="Release #", subtype="po",
                                                         example_value="1"), rules)

    def test_regex_exact_pattern(self):
        rules = [make_rule(rule_type="regex_map", pattern=r"^\d+-\d+$", target_value="order")]

        assert is_rule_already_learned(SuggestedRule(type="regex", pattern=r"^\d+-\d+$", subtype="order",
                                                     example_value="1-2"), rules)


class TestEditEvents:
    """Learning events and cargo hint learning."""

    def test_frozen_commodity_learned(self, profile):
        """Commodity filled in on a 10F load becomes the frozen default."""
        text = "Load temp 10F"
        original = shipment(temperature=Temperature(value=10, unit="F"))
        final = shipment(commodity="Frozen Food", temperature=Temperature(value=10, unit="F"))

        events = detect_all_edits(original, final, [], text, "cust-1", "tender-1")

        commodity = [e for e in events if e.field_type == "cargo_commodity"]
        assert len(commodity) == 1
        assert commodity[0].before_value is None
        assert commodity[0].after_value == "Frozen Food"
        assert commodity[0].context.temperature_value == 10

        assert apply_learned_cargo_defaults(profile, events)
        assert profile.cargo_hints.commodity_by_temp.frozen == "Frozen Food"

    def test_existing_hint_not_overwritten(self, profile):
        profile.cargo_hints.commodity_by_temp.frozen = "Ice Cream"
        original = shipment(temperature=Temperature(value=0))
        final = shipment(commodity="Frozen Food", temperature=Temperature(value=0))
        events = detect_all_edits(original, final, [], "", "cust-1", "tender-1")

        assert not apply_learned_cargo_defaults(profile, events)
        assert profile.cargo_hints.commodity_by_temp.frozen == "Ice Cream"

    def test_reference_event_has_path_and_label(self):
        text = "Release # 44221"
        candidates = extract_candidates(text).candidates
        original = shipment([("unknown", "44221")])
        final = shipment([("po", "44221")])

        events = detect_all_edits(original, final, candidates, text, "cust-1", "tender-1")

        assert len(events) == 1
        event = events[0]
        assert event.field_type == "reference_subtype"
        assert event.field_path == "reference_numbers[0].type"
        assert event.before_value == "unknown"
        assert event.after_value == "po"
        assert event.context.label_hint == "Release #"
        assert event.id.startswith("tender-1-reference_numbers[0].type-")

    def test_weight_fill_in_is_not_a_correction(self):
        events = detect_all_edits(shipment(weight=None), shipment(weight=40000), [], "", "cust-1", "t-1")
        assert [e for e in events if e.field_type == "cargo_weight"] == []

        events = detect_all_edits(shipment(weight=40000), shipment(weight=42000), [], "", "cust-1", "t-1")
        assert [e.after_value for e in events if e.field_type == "cargo_weight"] == [42000]

    def test_temp_mode_change(self):
        original = shipment(temperature=Temperature(value=34))
        final = shipment(temperature=Temperature(value=34, mode="refrigerated"))

        events = detect_all_edits(original, final, [], "", "cust-1", "t-1")

        assert [e.field_type for e in events] == ["cargo_temp_mode"]

    def test_missing_ids_no_events(self):
        original = shipment([("unknown", "44221")])
        final = shipment([("po", "44221")])

        assert detect_all_edits(original, final, [], "44221", None, "t-1") == []
        assert detect_all_edits(original, final, [], "44221", "cust-1", None) == []
