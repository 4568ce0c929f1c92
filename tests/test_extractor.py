"""Tests for candidate extraction."""

import pytest

from freight_tender.extractor import CandidateExtractor, extract_candidates, get_context
from freight_tender.schema import CustomerProfile

from conftest import make_rule


def refs(result):
    return [c for c in result.candidates if c.type == "reference_number"]


class TestCandidateExtraction:
    """Core pattern scanning."""

    def test_po_and_city_state_zip(self):
        """A labelled PO and a city/state/zip are both found."""
        result = extract_candidates("PO# 118585 ship to Chicago, IL 60601")

        po = [c for c in refs(result) if c.value == "118585"]
        assert len(po) == 1
        assert po[0].subtype == "po"
        assert "PO" in po[0].label_hint
        assert po[0].confidence == "high"

        places = [c for c in result.candidates if c.type == "city_state_zip"]
        assert [c.value for c in places] == ["Chicago, IL 60601"]

    def test_overlapping_standalone_numbers_dropped(self):
        """Low-confidence numbers inside better candidates are filtered out."""
        result = extract_candidates("PO# 118585 ship to Chicago, IL 60601")

        values = [c.value for c in refs(result)]
        assert values.count("118585") == 1
        assert "60601" not in values

    def test_weight_and_temperature(self):
        text = "Total Lbs: 22,176\nTemp: -10 frozen"
        result = extract_candidates(text)

        weights = [c.value for c in result.candidates if c.type == "weight"]
        temps = [c.value for c in result.candidates if c.type == "temperature"]
        assert "22176" in weights
        assert "-10" in temps
        assert "frozen" in temps

    def test_candidates_in_document_order(self):
        result = extract_candidates("Load # 556677 delivers 04/12/2024 at 08:00 to Dallas, TX 75201")

        starts = [c.position.start for c in result.candidates]
        assert starts == sorted(starts)

    def test_deterministic(self):
        """Same text and rules give identical candidates."""
        text = "Load # 556677\nPickup\nDallas, TX 75201\nPU# 88812 on 04/12/2024 08:00\nRelease # 44221"
        first = extract_candidates(text)
        second = extract_candidates(text)

        assert [c.model_dump() for c in first.candidates] == [c.model_dump() for c in second.candidates]

    def test_metadata(self):
        text = "PO# 118585"
        result = extract_candidates(text)

        assert result.metadata.text_length == len(text)
        assert result.metadata.customer_id is None
        assert result.metadata.applied_customer_rules == 0
        assert result.metadata.version


class TestGuards:
    """Phone and non-reference exclusions."""

    def test_phone_number_excluded(self):
        result = extract_candidates("Phone: 555-123-4567")

        assert refs(result) == []
        reasons = [e.rule for e in result.metadata.rules_skipped_reasons]
        assert "phone_exclusion" in reasons

    def test_ten_digit_number_excluded(self):
        result = extract_candidates("Call 5551234567 for details")

        assert refs(result) == []

    def test_total_miles_excluded(self):
        result = extract_candidates("Total Miles: 1250")

        assert refs(result) == []
        assert any(e.rule == "non_reference_label" for e in result.metadata.rules_skipped_reasons)

    def test_is_definitely_phone_reasons(self):
        extractor = CandidateExtractor()

        assert extractor.is_definitely_phone("(555) 123-4567", "", 0).reason == "matches_phone_pattern"
        assert extractor.is_definitely_phone("5551234", "x", 0).reason == "partial_phone"
        assert not extractor.is_definitely_phone("118585", "PO# 118585", 4).is_phone


class TestCustomerRules:
    """Customer rule precedence."""

    def test_label_rule_resolves_subtype(self, release_profile):
        result = extract_candidates("Release # 44221", release_profile)

        candidate = [c for c in refs(result) if c.value == "44221"][0]
        assert candidate.subtype == "po"
        assert result.metadata.rules_applied_count >= 1
        assert result.metadata.applied_customer_rules == 1
        assert result.metadata.customer_id == "cust-1"
        assert result.metadata.rules_applied_details[0].rule == "customer_label:Release #"

    def test_inactive_rule_ignored(self):
        profile = CustomerProfile(id="cust-1", name="Acme", rules=[
            make_rule(pattern="Ship ID", target_value="bol", status="proposed")])
        result = extract_candidates("Ship ID 445566", profile)

        assert result.metadata.applied_customer_rules == 0

    def test_scoped_rule_skipped_outside_block(self):
        profile = CustomerProfile(id="cust-1", name="Acme", rules=[
            make_rule(pattern="Release #", target_value="delivery", scope="delivery")])
        result = extract_candidates("Release # 44221", profile)

        candidate = [c for c in refs(result) if c.value == "44221"][0]
        assert candidate.subtype == "po"
        assert any("scope delivery" in e.reason for e in result.metadata.rules_skipped_reasons)

    def test_regex_rule_needs_label_context(self):
        profile = CustomerProfile(id="cust-1", name="Acme", rules=[
            make_rule(rule_type="regex_map", pattern=r"^\d{5}$", target_value="delivery")])

        labelled = extract_candidates("Ref # 44221", profile)
        bare = extract_candidates("shipment 44221 today", profile)

        assert [c.subtype for c in refs(labelled) if c.value == "44221"] == ["delivery"]
        assert [c.subtype for c in refs(bare) if c.value == "44221"] == ["unknown"]
        assert any(e.reason == "no_label_context_nearby" for e in bare.metadata.rules_skipped_reasons)


class TestContext:

    def test_context_window_marks_truncation(self):
        text = "a" * 50 + "VALUE" + "b" * 50
        context = get_context(text, 50, 55)

        assert context == "..." + "a" * 40 + "VALUE" + "b" * 40 + "..."

    @pytest.mark.parametrize("text", ["short 12345", "12345"])
    def test_context_without_truncation(self, text):
        start = text.index("12345")
        assert not get_context(text, start, start + 5).startswith("...")
