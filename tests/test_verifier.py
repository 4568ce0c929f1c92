"""Tests for post-classification verification."""

import pytest

from freight_tender.extractor import extract_candidates
from freight_tender.schema import (
    FieldProvenance,
    ReferenceNumber,
    Stop,
    StopLocation,
    StructuredShipment,
)
from freight_tender.verifier import (
    ShipmentVerifier,
    get_hallucinated_warnings,
    get_unverified_warnings,
    get_warning_for_path,
    has_warning,
    verify_shipment,
)


TEXT = "PO# 118585 ship to Chicago, IL 60601"


@pytest.fixture
def candidates():
    return extract_candidates(TEXT).candidates


def make_shipment(refs, commodity=None):
    shipment = StructuredShipment(
        reference_numbers=[ReferenceNumber(type="po", value=v) for v in refs],
        stops=[Stop(type="delivery", sequence=1,
                    location=StopLocation(city="Chicago", state="IL", zip="60601"))],
    )
    shipment.cargo.commodity = commodity
    return shipment


class TestEvidence:
    """Evidence grading and provenance."""

    def test_supported_fields_have_document_provenance(self, candidates):
        result = verify_shipment(make_shipment(["118585"]), candidates, TEXT)

        assert result.warnings == []
        ref = result.provenance["reference_numbers[0].value"]
        assert ref.source_type == "document_text"
        assert ref.confidence == pytest.approx(0.95)
        assert ref.evidence[0].candidate_index is not None
        assert result.provenance["stops[0].location.city"].confidence == pytest.approx(0.9)

    def test_unsupported_reference_is_hallucinated(self, candidates):
        """An invented value gets exactly one hallucinated warning and an unknown type."""
        result = verify_shipment(make_shipment(["118585", "999999"]), candidates, TEXT)

        hallucinated = get_hallucinated_warnings(result.warnings)
        assert [w.path for w in hallucinated] == ["reference_numbers[1].value"]
        assert hallucinated[0].reason == "unsupported_by_source"
        ref = result.shipment.reference_numbers[1]
        assert ref.value == "999999"
        assert ref.type == "unknown"

    def test_unsupported_commodity_cleared(self, candidates):
        result = verify_shipment(make_shipment(["118585"], commodity="Frozen Food"), candidates, TEXT)

        assert result.shipment.cargo.commodity is None
        assert get_warning_for_path(result.warnings, "cargo.commodity").category == "hallucinated"

    def test_rule_provenance_trusted(self, candidates):
        """Values set by customer rules are never flagged."""
        existing = {"cargo.commodity": FieldProvenance(source_type="rule", confidence=0.9)}
        result = verify_shipment(make_shipment(["118585"], commodity="Frozen Food"), candidates, TEXT,
                                 existing_provenance=existing)

        assert result.shipment.cargo.commodity == "Frozen Food"
        assert not has_warning(result.warnings, "cargo")
        assert result.provenance["cargo.commodity"].source_type == "rule"

    def test_weak_evidence(self):
        text = "Load of fresh produce"
        result = verify_shipment(make_shipment([], commodity="Produce Fresh"), [], text)

        warning = get_warning_for_path(result.warnings, "cargo.commodity")
        assert warning.reason == "weak_evidence"
        assert warning.category == "unverified"
        assert result.shipment.cargo.commodity == "Produce Fresh"

    def test_ambiguous_match(self):
        text = "PO# 118585 Release # 445566"
        cands = extract_candidates(text).candidates
        verifier = ShipmentVerifier(cands, text)

        match = verifier.find_evidence("118585/445566")

        assert match.grade == "ambiguous"
        matched = {cands[e.candidate_index].value for e in match.evidence}
        assert matched == {"118585", "445566"}

    def test_thousands_separator_normalized(self):
        text = "Total Lbs: 22,176"
        verifier = ShipmentVerifier([], text)

        match = verifier.find_evidence(22176.0)

        assert match.grade == "normalized"
        assert match.evidence[0].match_text == "22,176"

    def test_pasted_text_is_email_source(self, candidates):
        result = ShipmentVerifier(candidates, TEXT, tender_source="paste").verify(make_shipment(["118585"]))

        assert result.provenance["reference_numbers[0].value"].source_type == "email_text"


class TestWarningHelpers:

    def test_helpers(self, candidates):
        result = verify_shipment(make_shipment(["999999"]), candidates, TEXT)

        assert has_warning(result.warnings, "reference_numbers[0]")
        assert not has_warning(result.warnings, "stops")
        assert get_unverified_warnings(result.warnings) == []
        assert get_warning_for_path(result.warnings, "stops[0].location.city") is None
