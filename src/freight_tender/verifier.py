"""
Post-classification verification: evidence grading, provenance and hallucination warnings
"""
import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import ahocorasick
from rapidfuzz import fuzz

from .normalizer import format_number
from .schema import (
    Candidate, Evidence, FieldProvenance, StructuredShipment, VerificationWarning,
)

logger = logging.getLogger(__name__)

EXACT_CANDIDATE_CONFIDENCE = 0.95
EXACT_TEXT_CONFIDENCE = 0.9
NORMALIZED_CONFIDENCE = 0.75
WEAK_CONFIDENCE = 0.4
AMBIGUOUS_CONFIDENCE = 0.3

WORD_OVERLAP_RATIO = 0.7
FUZZY_THRESHOLD = 85
MIN_CONTAINED_CANDIDATE_LENGTH = 3

# provenance that was set by a rule or a person is never second-guessed
TRUSTED_SOURCES = ("rule", "user_edit")


@dataclass
class EvidenceMatch:
    """Outcome of looking for support of one value"""
    grade: str  # exact / normalized / weak / ambiguous / none
    confidence: float
    evidence: List[Evidence] = field(default_factory=list)


@dataclass
class VerificationResult:
    shipment: StructuredShipment
    warnings: List[VerificationWarning] = field(default_factory=list)
    provenance: Dict[str, FieldProvenance] = field(default_factory=dict)


def _to_text(value: Union[str, float, int]) -> str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return format_number(value)
    return str(value).strip()


class ShipmentVerifier:
    """Cross-checks classified shipment fields against candidates and source text"""

    def __init__(self, candidates: Sequence[Candidate], original_text: str,
                 tender_source: str = "file"):
        self.candidates = list(candidates)
        self.original_text = original_text
        self.text_lower = original_text.lower()
        self.document_source = "email_text" if tender_source == "paste" else "document_text"
        self.automaton = self._build_automaton()

    def _build_automaton(self):
        """Aho-Corasick automaton over lower-cased candidate values"""
        keys: Dict[str, List[int]] = {}
        for index, candidate in enumerate(self.candidates):
            key = candidate.value.lower().strip()
            if len(key) >= MIN_CONTAINED_CANDIDATE_LENGTH:
                keys.setdefault(key, []).append(index)
        if not keys:
            return None

        automaton = ahocorasick.Automaton()
        for key, indexes in keys.items():
            automaton.add_word(key, indexes)
        automaton.make_automaton()
        return automaton

    def _candidate_evidence(self, index: int) -> Evidence:
        candidate = self.candidates[index]
        return Evidence(
            match_text=candidate.raw_match,
            char_start=candidate.position.start,
            char_end=candidate.position.end,
            label=candidate.label_hint,
            candidate_index=index,
        )

    def _text_evidence(self, needle: str) -> Optional[Evidence]:
        index = self.text_lower.find(needle)
        if index < 0:
            return None
        return Evidence(match_text=self.original_text[index:index + len(needle)],
                        char_start=index, char_end=index + len(needle))

    def _contained_candidates(self, value: str) -> List[int]:
        """Indexes of candidates that contain the value or are contained in it"""
        indexes = set()
        if self.automaton is not None:
            for _, hit in self.automaton.iter(value):
                indexes.update(hit)
        for index, candidate in enumerate(self.candidates):
            if value in candidate.value.lower():
                indexes.add(index)
        return sorted(indexes)

    def find_evidence(self, raw_value: Union[str, float, int]) -> EvidenceMatch:
        """Grade the support for a value: exact > normalized > weak/ambiguous > none"""
        value = _to_text(raw_value)
        lowered = value.lower()

        for index, candidate in enumerate(self.candidates):
            if lowered in (candidate.value.lower().strip(), candidate.raw_match.lower().strip()):
                return EvidenceMatch("exact", EXACT_CANDIDATE_CONFIDENCE,
                                     [self._candidate_evidence(index)])

        evidence = self._text_evidence(lowered)
        if evidence is not None:
            return EvidenceMatch("exact", EXACT_TEXT_CONFIDENCE, [evidence])

        compact = re.sub(r"[,\s]", "", lowered)
        if compact != lowered and compact:
            evidence = self._text_evidence(compact)
            if evidence is not None:
                return EvidenceMatch("normalized", NORMALIZED_CONFIDENCE, [evidence])
        if isinstance(raw_value, (int, float)) and not isinstance(raw_value, bool):
            if float(raw_value).is_integer() and abs(raw_value) >= 1000:
                evidence = self._text_evidence(f"{int(raw_value):,}")
                if evidence is not None:
                    return EvidenceMatch("normalized", NORMALIZED_CONFIDENCE, [evidence])

        contained = self._contained_candidates(lowered)
        distinct_values = {self.candidates[i].value.lower() for i in contained}
        if len(distinct_values) == 1:
            return EvidenceMatch("normalized", NORMALIZED_CONFIDENCE,
                                 [self._candidate_evidence(i) for i in contained])
        if len(distinct_values) > 1:
            return EvidenceMatch("ambiguous", AMBIGUOUS_CONFIDENCE,
                                 [self._candidate_evidence(i) for i in contained])

        words = [w for w in value.split() if len(w) > 2]
        if len(words) >= 2:
            present = [w for w in words if w.lower() in self.text_lower]
            if len(present) >= len(words) * WORD_OVERLAP_RATIO:
                return EvidenceMatch("weak", WEAK_CONFIDENCE,
                                     [Evidence(match_text=w) for w in present])

        if len(value) >= 4 and re.search(r"[A-Za-z]", value) and self.text_lower:
            alignment = fuzz.partial_ratio_alignment(lowered, self.text_lower)
            if alignment is not None and alignment.score >= FUZZY_THRESHOLD:
                start, end = alignment.dest_start, alignment.dest_end
                return EvidenceMatch("weak", WEAK_CONFIDENCE, [Evidence(
                    match_text=self.original_text[start:end], char_start=start, char_end=end)])

        return EvidenceMatch("none", 0.0)

    # ------------------------------------------------------------ per field

    def check(self, path: str, value, result: VerificationResult,
              existing: Dict[str, FieldProvenance]) -> bool:
        """Record provenance/warnings for one field; returns False if the value is unsupported"""
        if value is None or (isinstance(value, str) and not value.strip()):
            return True

        prior = existing.get(path)
        if prior is not None and prior.source_type in TRUSTED_SOURCES:
            result.provenance[path] = prior
            return True

        match = self.find_evidence(value)
        text_value = _to_text(value)

        if match.grade in ("exact", "normalized"):
            result.provenance[path] = FieldProvenance(
                source_type=self.document_source,
                confidence=match.confidence,
                evidence=match.evidence,
            )
            return True

        if match.grade in ("weak", "ambiguous"):
            reason = "weak_evidence" if match.grade == "weak" else "ambiguous_match"
            result.provenance[path] = FieldProvenance(
                source_type="llm_inference",
                confidence=match.confidence,
                evidence=match.evidence,
                reason=reason,
            )
            result.warnings.append(VerificationWarning(path=path, value=text_value, reason=reason))
            return True

        result.provenance[path] = FieldProvenance(
            source_type="llm_inference", confidence=0.0, reason="unsupported_by_source")
        result.warnings.append(VerificationWarning(
            path=path, value=text_value, reason="unsupported_by_source"))
        logger.info(f"❌ Unsupported value at {path}: {text_value!r}")
        return False

    def _verify_refs(self, refs, prefix: str, result: VerificationResult, existing) -> None:
        for index, ref in enumerate(refs):
            if not self.check(f"{prefix}[{index}].value", ref.value, result, existing):
                # keep the value for human review
                ref.type = "unknown"

    def verify(self, shipment: StructuredShipment,
               existing_provenance: Optional[Dict[str, FieldProvenance]] = None) -> VerificationResult:
        """Verify every scalar field of a copy of the shipment"""
        existing = dict(existing_provenance or {})
        verified = shipment.model_copy(deep=True)
        result = VerificationResult(shipment=verified)

        self._verify_refs(verified.reference_numbers, "reference_numbers", result, existing)

        for i, stop in enumerate(verified.stops):
            prefix = f"stops[{i}]"
            for name in ("name", "address", "city", "state", "zip"):
                if not self.check(f"{prefix}.location.{name}", getattr(stop.location, name), result, existing):
                    setattr(stop.location, name, None)
            for name in ("date", "time"):
                if not self.check(f"{prefix}.schedule.{name}", getattr(stop.schedule, name), result, existing):
                    setattr(stop.schedule, name, None)
            self._verify_refs(stop.reference_numbers, f"{prefix}.reference_numbers", result, existing)

        cargo = verified.cargo
        if not self.check("cargo.weight.value", cargo.weight.value, result, existing):
            cargo.weight.value = None
        if not self.check("cargo.pieces.count", cargo.pieces.count, result, existing):
            cargo.pieces.count = None
        if not self.check("cargo.pieces.type", cargo.pieces.type, result, existing):
            cargo.pieces.type = None
        if not self.check("cargo.commodity", cargo.commodity, result, existing):
            cargo.commodity = None
        if cargo.temperature is not None:
            if not self.check("cargo.temperature.value", cargo.temperature.value, result, existing):
                cargo.temperature.value = None
        if cargo.dimensions is not None:
            for name in ("length", "width", "height"):
                if not self.check(f"cargo.dimensions.{name}", getattr(cargo.dimensions, name), result, existing):
                    setattr(cargo.dimensions, name, None)

        # trusted provenance for fields not visited above (e.g. temperature mode)
        for path, prior in existing.items():
            if prior.source_type in TRUSTED_SOURCES:
                result.provenance.setdefault(path, prior)

        hallucinated = len(get_hallucinated_warnings(result.warnings))
        logger.info(f"📊 Verification: {len(result.provenance)} fields traced, "
                    f"{hallucinated} hallucinated, {len(result.warnings) - hallucinated} unverified")
        return result


def verify_shipment(shipment: StructuredShipment, candidates: Sequence[Candidate], original_text: str,
                    existing_provenance: Optional[Dict[str, FieldProvenance]] = None,
                    tender_source: str = "file") -> VerificationResult:
    verifier = ShipmentVerifier(candidates, original_text, tender_source)
    return verifier.verify(shipment, existing_provenance)


def get_hallucinated_warnings(warnings: List[VerificationWarning]) -> List[VerificationWarning]:
    return [w for w in warnings if w.category == "hallucinated"]


def get_unverified_warnings(warnings: List[VerificationWarning]) -> List[VerificationWarning]:
    return [w for w in warnings if w.category == "unverified"]


def get_warning_for_path(warnings: List[VerificationWarning], path: str) -> Optional[VerificationWarning]:
    for warning in warnings:
        if warning.path == path:
            return warning
    return None


def has_warning(warnings: List[VerificationWarning], path: str) -> bool:
    """True for a warning on the path itself or any field below it"""
    return any(w.path == path or w.path.startswith(path + ".") for w in warnings)
